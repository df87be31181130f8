"""
Product catalog: persistence and queries over the "product" collection.
"""
import math
import re
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.database import Database

from access import Capability, require
from config import get_logger
from database import parse_object_id, utc_now
from errors import NotFoundError, from_pydantic
from schemas import PLAIN_SORT_FIELDS, Product as ProductSchema, ProductQuery, ProductUpdate
from storage import ImageStorage, ImageUpload, release_quietly, staged_image, validate_upload

logger = get_logger("catalog")

HIDDEN_FIELDS = ("version",)


def serialize_product(doc: Dict) -> Dict:
    if not doc:
        return doc
    d = {k: v for k, v in doc.items() if k not in HIDDEN_FIELDS}
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    d["ratings"] = [dict(r) for r in d.get("ratings", [])]
    return d


def build_filter(query: ProductQuery) -> Dict[str, Any]:
    filter_q: Dict[str, Any] = {}
    if query.category:
        filter_q["category"] = query.category.lower()
    if query.tag:
        filter_q["tag"] = query.tag
    if query.min_price is not None or query.max_price is not None:
        price_filter = {}
        if query.min_price is not None:
            price_filter["$gte"] = query.min_price
        if query.max_price is not None:
            price_filter["$lte"] = query.max_price
        filter_q["price"] = price_filter
    if query.search:
        pattern = re.escape(query.search)
        filter_q["$or"] = [
            {"name": {"$regex": pattern, "$options": "i"}},
            {"description": {"$regex": pattern, "$options": "i"}},
        ]
    return filter_q


def build_sort(query: ProductQuery) -> List:
    if query.sort == "price-low":
        field, direction = "price", ASCENDING
    elif query.sort == "price-high":
        field, direction = "price", DESCENDING
    elif query.sort == "bestsellers":
        field, direction = "average_rating", DESCENDING
    else:
        field = PLAIN_SORT_FIELDS[query.sort]
        direction = ASCENDING if query.order == "asc" else DESCENDING
    # _id breaks ties so pages don't overlap
    return [(field, direction), ("_id", direction)]


class CatalogStore:
    def __init__(self, db: Database, storage: Optional[ImageStorage] = None):
        self.collection = db["product"]
        self.storage = storage

    def _find(self, product_id: str) -> Dict:
        oid = parse_object_id(product_id)
        product = self.collection.find_one({"_id": oid}) if oid is not None else None
        if not product:
            raise NotFoundError("Product not found")
        return product

    def _upload(self, upload: ImageUpload):
        if self.storage is None:
            raise RuntimeError("CatalogStore has no image storage configured")
        validate_upload(upload)
        return staged_image(self.storage, upload)

    def create(self, data: Dict, actor_id: str, upload: Optional[ImageUpload] = None) -> Dict:
        """
        Validate and insert a product owned by `actor_id`.

        With an upload, the stored image becomes `image` and is released
        again if the insert fails. Client-sent seller_id / ratings /
        average_rating are dropped.
        """
        fields = {k: v for k, v in data.items() if k in ProductSchema.model_fields and v is not None}
        if upload is not None:
            # replaced by the stored reference once the upload succeeds
            fields["image"] = upload.filename or "upload"
        try:
            product = ProductSchema(**fields)
        except PydanticValidationError as e:
            raise from_pydantic(e, label="Product ")

        doc = product.model_dump()
        now = utc_now()
        doc.update(seller_id=str(actor_id), ratings=[], average_rating=0, created_at=now, updated_at=now, version=0)

        if upload is None:
            doc["_id"] = self.collection.insert_one(doc).inserted_id
        else:
            with self._upload(upload) as reference:
                doc["image"] = reference
                doc["_id"] = self.collection.insert_one(doc).inserted_id
        logger.info("product %s created by %s", doc["_id"], actor_id)
        return doc

    def get_by_id(self, product_id: str) -> Dict:
        return self._find(product_id)

    def list(self, filters: Union[ProductQuery, Dict, None] = None) -> Dict:
        if not isinstance(filters, ProductQuery):
            try:
                filters = ProductQuery(**{k: v for k, v in (filters or {}).items() if v is not None})
            except PydanticValidationError as e:
                raise from_pydantic(e)

        filter_q = build_filter(filters)
        skip = (filters.page - 1) * filters.limit
        cursor = self.collection.find(filter_q).sort(build_sort(filters)).skip(skip).limit(filters.limit)
        items = list(cursor)
        total = self.collection.count_documents(filter_q)
        return {
            "items": items,
            "count": len(items),
            "total": total,
            "total_pages": math.ceil(total / filters.limit),
            "current_page": filters.page,
        }

    def update(self, product_id: str, patch: Dict, actor, upload: Optional[ImageUpload] = None) -> Dict:
        product = self._find(product_id)
        require(actor, product, Capability.OWNER_MUTATE, action="update")

        known = {k: v for k, v in patch.items() if k in ProductUpdate.model_fields}
        try:
            changes = ProductUpdate(**known).model_dump(exclude_none=True)
        except PydanticValidationError as e:
            raise from_pydantic(e, label="Product ")

        if upload is None:
            updated = self._apply(product["_id"], changes)
        else:
            with self._upload(upload) as reference:
                changes["image"] = reference
                updated = self._apply(product["_id"], changes)
        old_image = product.get("image")
        if self.storage is not None and "image" in changes and changes["image"] != old_image:
            release_quietly(self.storage, old_image)
        logger.info("product %s updated by %s: %s", product["_id"], actor.id, sorted(changes))
        return updated

    def _apply(self, oid, changes: Dict) -> Dict:
        updated = self.collection.find_one_and_update(
            {"_id": oid},
            {"$set": {**changes, "updated_at": utc_now()}, "$inc": {"version": 1}},
            return_document=ReturnDocument.AFTER,
        )
        if not updated:
            raise NotFoundError("Product not found")
        return updated

    def delete(self, product_id: str, actor) -> None:
        product = self._find(product_id)
        require(actor, product, Capability.OWNER_MUTATE, action="delete")
        res = self.collection.delete_one({"_id": product["_id"]})
        if res.deleted_count == 0:
            raise NotFoundError("Product not found")
        logger.info("product %s deleted by %s", product["_id"], actor.id)
        if self.storage is not None:
            release_quietly(self.storage, product.get("image"))

    def categories(self) -> List[Dict]:
        """Category counts, most populated first, ties by name."""
        pipeline = [
            {"$group": {"_id": "$category", "count": {"$sum": 1}}},
            {"$sort": {"count": -1, "_id": 1}},
        ]
        return [{"category": c["_id"], "count": c["count"]} for c in self.collection.aggregate(pipeline)]

    def seller_products(self, seller_id: str) -> List[Dict]:
        return list(self.collection.find({"seller_id": str(seller_id)}).sort([("created_at", DESCENDING), ("_id", DESCENDING)]))
