"""
Product image storage.

Two interchangeable backends behind ImageStorage:
- LocalImageStorage writes files under UPLOAD_DIR, served at UPLOAD_URL_PREFIX
- CloudinaryImageStorage pushes bytes through the Cloudinary SDK

`staged_image` wraps a save so the stored file is released again when the
product write that follows it fails.
"""
import io
import os
import random
import re
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional

import cloudinary.uploader
from cloudinary.exceptions import Error as CloudinaryError

import config
from config import get_logger
from errors import StorageError, ValidationError

logger = get_logger("storage")

ALLOWED_CONTENT_TYPES = {"image/jpeg", "image/jpg"}
ALLOWED_EXTENSIONS = {".jpg", ".jpeg"}


@dataclass
class ImageUpload:
    filename: str
    content_type: Optional[str]
    data: bytes


def validate_upload(upload: ImageUpload, max_bytes: int = config.MAX_IMAGE_BYTES) -> None:
    if not upload.data:
        raise ValidationError({"image": "Product image is required"})
    if (upload.content_type or "").lower() not in ALLOWED_CONTENT_TYPES:
        raise ValidationError({"image": "Only JPG/JPEG image files are allowed"})
    if len(upload.data) > max_bytes:
        raise ValidationError({"image": f"Image must be at most {max_bytes // (1024 * 1024)}MB"})


def _unique_name(filename: str) -> str:
    ext = os.path.splitext(filename or "")[1].lower()
    if ext not in ALLOWED_EXTENSIONS:
        ext = ".jpg"
    return f"product-{int(time.time() * 1000)}-{random.randint(0, 10**9)}{ext}"


class ImageStorage:
    def save(self, upload: ImageUpload) -> str:
        """Store the bytes and return a stable reference (URL or path)."""
        raise NotImplementedError

    def delete(self, reference: str) -> None:
        raise NotImplementedError


class LocalImageStorage(ImageStorage):
    def __init__(self, root_dir: str = config.UPLOAD_DIR, url_prefix: str = config.UPLOAD_URL_PREFIX):
        self.root_dir = root_dir
        self.products_dir = os.path.join(root_dir, "products")
        self.url_prefix = url_prefix.rstrip("/")

    def save(self, upload: ImageUpload) -> str:
        name = _unique_name(upload.filename)
        try:
            os.makedirs(self.products_dir, exist_ok=True)
            with open(os.path.join(self.products_dir, name), "wb") as f:
                f.write(upload.data)
        except OSError as e:
            logger.error("could not write image %s: %s", name, e)
            raise StorageError("Could not store product image")
        return f"{self.url_prefix}/products/{name}"

    def path_for(self, reference: str) -> Optional[str]:
        prefix = f"{self.url_prefix}/products/"
        if not reference or not reference.startswith(prefix):
            return None
        name = os.path.basename(reference[len(prefix):])
        return os.path.join(self.products_dir, name) if name else None

    def delete(self, reference: str) -> None:
        path = self.path_for(reference)
        if path is None:
            # external URL, nothing of ours to remove
            return
        try:
            if os.path.exists(path):
                os.remove(path)
        except OSError as e:
            raise StorageError(f"Could not remove image {reference}: {e}")


class CloudinaryImageStorage(ImageStorage):
    def __init__(self, cloud_name: str, api_key: str, api_secret: str, folder: str = config.CLOUDINARY_FOLDER,
                 timeout: int = config.STORAGE_TIMEOUT):
        self.folder = folder
        self.options = {"cloud_name": cloud_name, "api_key": api_key, "api_secret": api_secret, "timeout": timeout}

    def save(self, upload: ImageUpload) -> str:
        public_id = os.path.splitext(_unique_name(upload.filename))[0]
        try:
            result = cloudinary.uploader.upload(
                io.BytesIO(upload.data),
                folder=self.folder,
                public_id=public_id,
                filename=upload.filename or public_id,
                **self.options,
            )
        except CloudinaryError as e:
            logger.error("cloudinary upload failed: %s", e)
            raise StorageError("Image storage is unavailable")
        url = result.get("secure_url") or result.get("url")
        if not url:
            raise StorageError("Image storage returned no URL")
        return url

    @staticmethod
    def public_id_from_url(url: str) -> Optional[str]:
        # .../image/upload/v1712345678/handcraft/products/product-1-2.jpg -> handcraft/products/product-1-2
        m = re.search(r"/upload/(?:v\d+/)?(.+?)(?:\.[A-Za-z0-9]+)?$", url or "")
        return m.group(1) if m else None

    def delete(self, reference: str) -> None:
        public_id = self.public_id_from_url(reference)
        if not public_id:
            return
        try:
            result = cloudinary.uploader.destroy(public_id, **self.options)
        except CloudinaryError as e:
            raise StorageError(f"Could not remove image {reference}: {e}")
        if result.get("result") != "ok":
            logger.info("cloudinary destroy %s: %s", public_id, result.get("result"))


def release_quietly(storage: ImageStorage, reference: Optional[str]) -> None:
    """Best-effort delete used for cleanup; failures are only logged."""
    if not reference:
        return
    try:
        storage.delete(reference)
    except StorageError as e:
        logger.warning("could not release image %s: %s", reference, e.message)


@contextmanager
def staged_image(storage: ImageStorage, upload: ImageUpload) -> Iterator[str]:
    reference = storage.save(upload)
    try:
        yield reference
    except BaseException:
        logger.info("releasing orphaned upload %s", reference)
        release_quietly(storage, reference)
        raise


def build_storage() -> ImageStorage:
    if config.IMAGE_STORAGE == "cloudinary":
        return CloudinaryImageStorage(config.CLOUDINARY_CLOUD_NAME, config.CLOUDINARY_API_KEY, config.CLOUDINARY_API_SECRET)
    return LocalImageStorage()
