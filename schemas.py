"""
Database Schemas for the Handcraft marketplace

Each Pydantic model represents a collection in MongoDB.
Collection name is the lowercase of the class name:
- User -> "user"
- Product -> "product" (ratings are embedded, see Rating)
"""
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, StrictInt, field_validator

from access import Role

CATEGORIES = ("art", "clothing", "ceramics", "jewellery", "wooden", "clay", "decor")
TAGS = ("New", "Bestseller", "Trending", "Limited", "")

PLAIN_SORT_FIELDS = {
    "created_at": "created_at",
    "createdAt": "created_at",
    "updated_at": "updated_at",
    "updatedAt": "updated_at",
    "price": "price",
    "name": "name",
    "stock": "stock",
    "average_rating": "average_rating",
    "averageRating": "average_rating",
}
PRESET_SORTS = ("price-low", "price-high", "bestsellers")


def normalize_category(value: str) -> str:
    value = value.strip().lower()
    if value not in CATEGORIES:
        raise ValueError(f"Category must be one of: {', '.join(CATEGORIES)}")
    return value


def check_tag(value: str) -> str:
    if value not in TAGS:
        raise ValueError(f"Tag must be one of: {', '.join(t for t in TAGS if t)} or empty")
    return value


class User(BaseModel):
    name: str = Field(..., min_length=1, description="Display name")
    email: EmailStr = Field(..., description="Email address, unique")
    password_hash: str = Field(..., description="BCrypt hash of password")
    role: Role = Field(Role.USER)
    avatar_url: Optional[str] = None
    address: Optional[str] = None
    phone: Optional[str] = None


class Rating(BaseModel):
    user_id: str = Field(..., description="Reference to user _id")
    score: int = Field(..., ge=1, le=5)
    review: Optional[str] = None
    date: datetime


class Product(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(..., min_length=1, description="Product name")
    price: float = Field(..., ge=0, description="Price in base currency")
    description: str = Field(..., min_length=1)
    image: str = Field(..., min_length=1, description="Stored image URL or path")
    category: str = Field(..., description="One of CATEGORIES, stored lowercase")
    tag: str = Field("", description="One of TAGS")
    stock: int = Field(10, ge=0, description="Units in stock")

    @field_validator("category")
    @classmethod
    def validate_category(cls, v):
        return normalize_category(v)

    @field_validator("tag")
    @classmethod
    def validate_tag(cls, v):
        return check_tag(v)


class ProductUpdate(BaseModel):
    """Partial update; seller_id, ratings and average_rating are not part of it."""
    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(None, min_length=1)
    price: Optional[float] = Field(None, ge=0)
    description: Optional[str] = Field(None, min_length=1)
    image: Optional[str] = Field(None, min_length=1)
    category: Optional[str] = None
    tag: Optional[str] = None
    stock: Optional[int] = Field(None, ge=0)

    @field_validator("category")
    @classmethod
    def validate_category(cls, v):
        return normalize_category(v) if v is not None else v

    @field_validator("tag")
    @classmethod
    def validate_tag(cls, v):
        return check_tag(v) if v is not None else v


class ProductQuery(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    category: Optional[str] = None
    tag: Optional[str] = None
    min_price: Optional[float] = Field(None, ge=0)
    max_price: Optional[float] = Field(None, ge=0)
    search: Optional[str] = None
    sort: str = "created_at"
    order: Literal["asc", "desc"] = "desc"
    page: int = Field(1, ge=1)
    limit: int = Field(12, ge=1, le=100)

    @field_validator("sort")
    @classmethod
    def validate_sort(cls, v):
        if v not in PLAIN_SORT_FIELDS and v not in PRESET_SORTS:
            allowed = list(PLAIN_SORT_FIELDS) + list(PRESET_SORTS)
            raise ValueError(f"Sort must be one of: {', '.join(allowed)}")
        return v


class RatingRequest(BaseModel):
    score: StrictInt
    review: Optional[str] = None


class RatingsOut(BaseModel):
    average_rating: float
    ratings: List[dict]
