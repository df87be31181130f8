from typing import Dict, List, Optional

from pymongo.database import Database

import config
from config import get_logger
from database import parse_object_id, utc_now
from errors import ConflictError, NotFoundError, ValidationError
from schemas import Rating

logger = get_logger("ratings")


def average(ratings: List[Dict]) -> float:
    if not ratings:
        return 0
    return sum(r["score"] for r in ratings) / len(ratings)


def check_score(score) -> int:
    if isinstance(score, bool) or not isinstance(score, int) or not 1 <= score <= 5:
        raise ValidationError({"score": "Rating must be an integer between 1 and 5"})
    return score


def upsert_rating(ratings: List[Dict], user_id: str, score: int, review: Optional[str], now) -> List[Dict]:
    """Copy of `ratings` with the user's entry replaced or appended."""
    out = [dict(r) for r in ratings]
    for r in out:
        if r.get("user_id") == user_id:
            r["score"] = score
            if review:
                r["review"] = review
            r["date"] = now
            return out
    out.append(Rating(user_id=user_id, score=score, review=review or None, date=now).model_dump())
    return out


class RatingAggregator:
    """
    One rating per user per product, with average_rating kept in step.

    Writes are conditioned on the product's `version`; a concurrent writer
    makes the update match nothing and the rating is recomputed from a fresh
    read.
    """

    def __init__(self, db: Database, max_retries: int = config.RATING_MAX_RETRIES):
        self.collection = db["product"]
        self.max_retries = max_retries

    def rate(self, product_id: str, user_id: str, score, review: Optional[str] = None) -> Dict:
        score = check_score(score)
        oid = parse_object_id(product_id)
        if oid is None:
            raise NotFoundError("Product not found")
        user_id = str(user_id)

        for attempt in range(1, self.max_retries + 1):
            product = self.collection.find_one({"_id": oid})
            if not product:
                raise NotFoundError("Product not found")
            now = utc_now()
            ratings = upsert_rating(product.get("ratings", []), user_id, score, review, now)
            avg = average(ratings)
            res = self.collection.update_one(
                {"_id": oid, "version": product.get("version")},
                {"$set": {"ratings": ratings, "average_rating": avg, "updated_at": now}, "$inc": {"version": 1}},
            )
            if res.matched_count == 1:
                product.update(ratings=ratings, average_rating=avg, updated_at=now, version=(product.get("version") or 0) + 1)
                return product
            logger.warning("rating write on %s lost a race (attempt %d/%d)", product_id, attempt, self.max_retries)

        raise ConflictError("Product is being modified concurrently, please retry")
