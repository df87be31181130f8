import os
from types import SimpleNamespace

import cloudinary.exceptions
import cloudinary.uploader
import pytest

from errors import StorageError, ValidationError
from storage import (
    CloudinaryImageStorage,
    ImageUpload,
    LocalImageStorage,
    release_quietly,
    staged_image,
    validate_upload,
)

JPEG = b"\xff\xd8\xff\xe0" + b"\x00" * 256


def test_local_save_and_delete(storage):
    ref = storage.save(ImageUpload("Bowl.JPEG", "image/jpeg", JPEG))
    assert ref.startswith("/uploads/products/product-")
    assert ref.endswith(".jpeg")
    path = storage.path_for(ref)
    with open(path, "rb") as f:
        assert f.read() == JPEG
    storage.delete(ref)
    assert not os.path.exists(path)


def test_local_delete_ignores_foreign_references(storage):
    storage.delete("https://cdn.example.com/bowl.jpg")
    storage.delete("")


def test_local_path_stays_inside_upload_dir(storage):
    path = storage.path_for("/uploads/products/../../etc/passwd")
    assert os.path.dirname(path) == storage.products_dir


def test_local_save_failure_is_storage_error(tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("not a directory")
    storage = LocalImageStorage(root_dir=str(blocker))
    with pytest.raises(StorageError):
        storage.save(ImageUpload("a.jpg", "image/jpeg", JPEG))


@pytest.mark.parametrize("upload,message", [
    (ImageUpload("a.jpg", "image/jpeg", b""), "required"),
    (ImageUpload("a.png", "image/png", JPEG), "JPG"),
    (ImageUpload("a.jpg", None, JPEG), "JPG"),
])
def test_validate_upload(upload, message):
    with pytest.raises(ValidationError) as exc:
        validate_upload(upload)
    assert message in exc.value.errors["image"]


def test_validate_upload_size_limit():
    validate_upload(ImageUpload("a.jpg", "image/jpeg", JPEG), max_bytes=len(JPEG))
    with pytest.raises(ValidationError):
        validate_upload(ImageUpload("a.jpg", "image/jpeg", JPEG), max_bytes=len(JPEG) - 1)


def test_staged_image_releases_on_failure(storage):
    with pytest.raises(RuntimeError):
        with staged_image(storage, ImageUpload("a.jpg", "image/jpeg", JPEG)) as ref:
            path = storage.path_for(ref)
            assert os.path.exists(path)
            raise RuntimeError("insert failed")
    assert not os.path.exists(path)


def test_staged_image_keeps_on_success(storage):
    with staged_image(storage, ImageUpload("a.jpg", "image/jpeg", JPEG)) as ref:
        pass
    assert os.path.exists(storage.path_for(ref))


def test_release_quietly_logs_storage_errors():
    class Failing(LocalImageStorage):
        def delete(self, reference):
            raise StorageError("gone")

    release_quietly(Failing(), "/uploads/products/x.jpg")
    release_quietly(Failing(), None)


@pytest.fixture
def uploader(monkeypatch):
    """Replace the Cloudinary SDK calls and record what they receive."""
    calls = {"upload": [], "destroy": []}
    state = {"result": {"secure_url": "https://res.cloudinary.com/demo/image/upload/v1/handcraft/products/p.jpg"}, "error": None}

    def upload(file, **options):
        calls["upload"].append({"data": file.read(), **options})
        if state["error"]:
            raise state["error"]
        return state["result"]

    def destroy(public_id, **options):
        calls["destroy"].append({"public_id": public_id, **options})
        if state["error"]:
            raise state["error"]
        return {"result": "ok"}

    monkeypatch.setattr(cloudinary.uploader, "upload", upload)
    monkeypatch.setattr(cloudinary.uploader, "destroy", destroy)
    return SimpleNamespace(calls=calls, state=state)


def test_cloudinary_upload(uploader):
    storage = CloudinaryImageStorage("demo", "key", "secret", folder="handcraft/products", timeout=7)
    url = storage.save(ImageUpload("bowl.jpg", "image/jpeg", JPEG))

    assert url.startswith("https://res.cloudinary.com/")
    call = uploader.calls["upload"][0]
    assert call["data"] == JPEG
    assert call["folder"] == "handcraft/products"
    assert call["public_id"].startswith("product-")
    assert (call["cloud_name"], call["api_key"], call["api_secret"], call["timeout"]) == ("demo", "key", "secret", 7)


def test_cloudinary_error_is_storage_error(uploader):
    uploader.state["error"] = cloudinary.exceptions.GeneralError("Socket Error: down")
    storage = CloudinaryImageStorage("demo", "key", "secret")
    with pytest.raises(StorageError):
        storage.save(ImageUpload("bowl.jpg", "image/jpeg", JPEG))
    with pytest.raises(StorageError):
        storage.delete("https://res.cloudinary.com/demo/image/upload/v1/handcraft/products/p.jpg")


def test_cloudinary_missing_url_is_storage_error(uploader):
    uploader.state["result"] = {}
    storage = CloudinaryImageStorage("demo", "key", "secret")
    with pytest.raises(StorageError):
        storage.save(ImageUpload("bowl.jpg", "image/jpeg", JPEG))


@pytest.mark.parametrize("url,public_id", [
    ("https://res.cloudinary.com/demo/image/upload/v1712345678/handcraft/products/product-1-2.jpg", "handcraft/products/product-1-2"),
    ("https://res.cloudinary.com/demo/image/upload/sample.jpg", "sample"),
    ("https://cdn.example.com/bowl.jpg", None),
])
def test_cloudinary_public_id(url, public_id):
    assert CloudinaryImageStorage.public_id_from_url(url) == public_id


def test_cloudinary_delete_destroys_public_id(uploader):
    storage = CloudinaryImageStorage("demo", "key", "secret")
    storage.delete("https://res.cloudinary.com/demo/image/upload/v1/handcraft/products/p.jpg")
    assert uploader.calls["destroy"][0]["public_id"] == "handcraft/products/p"
    assert uploader.calls["destroy"][0]["api_key"] == "key"


def test_cloudinary_delete_skips_foreign_urls(uploader):
    CloudinaryImageStorage("demo", "key", "secret").delete("https://cdn.example.com/bowl.jpg")
    assert uploader.calls["destroy"] == []
