"""
Identity: password hashing, JWT tokens, account operations and the
id -> display name directory used by product detail views.
"""
from datetime import timedelta
from typing import Dict, Iterable, Optional

from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, EmailStr
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from access import Role
from config import ACCESS_TOKEN_EXPIRE_MINUTES, ALGORITHM, SECRET_KEY, get_logger
from database import create_document, parse_object_id, utc_now
from errors import AuthenticationError, ConflictError, NotFoundError, ValidationError
from schemas import User as UserSchema

logger = get_logger("users")

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

MIN_PASSWORD_LENGTH = 6


class UserOut(BaseModel):
    id: str
    name: str
    email: EmailStr
    role: Role = Role.USER
    avatar_url: Optional[str] = None
    address: Optional[str] = None
    phone: Optional[str] = None


def to_user_out(doc: Dict) -> UserOut:
    return UserOut(
        id=str(doc["_id"]),
        name=doc.get("name", ""),
        email=doc.get("email"),
        role=doc.get("role", Role.USER),
        avatar_url=doc.get("avatar_url"),
        address=doc.get("address"),
        phone=doc.get("phone"),
    )


def check_password_policy(password: str) -> None:
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError({"password": f"Password must be at least {MIN_PASSWORD_LENGTH} characters"})


def hash_password(password: str) -> str:
    check_password_policy(password)
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    if not hashed_password:
        return False
    return pwd_context.verify(plain_password, hashed_password)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = utc_now() + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def user_from_token(db: Database, token: Optional[str]) -> UserOut:
    credentials_error = AuthenticationError("Could not validate credentials")
    if not token:
        raise credentials_error
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        raise credentials_error
    oid = parse_object_id(payload.get("sub"))
    if oid is None:
        raise credentials_error
    user = db["user"].find_one({"_id": oid})
    if not user:
        raise credentials_error
    return to_user_out(user)


def register_user(db: Database, name: str, email: str, password: str, role: Role = Role.USER) -> UserOut:
    role = Role(role)
    if role == Role.ADMIN:
        raise ValidationError({"role": "Admin accounts cannot be self-registered"})
    if db["user"].find_one({"email": email}):
        raise ConflictError("User already exists with this email")
    doc = UserSchema(name=name, email=email, password_hash=hash_password(password), role=role).model_dump(mode="json")
    try:
        user_id = create_document(db, "user", doc)
    except DuplicateKeyError:
        raise ConflictError("User already exists with this email")
    logger.info("registered %s user %s", role.value, user_id)
    return to_user_out({**doc, "_id": user_id})


def authenticate(db: Database, email: str, password: str) -> UserOut:
    user = db["user"].find_one({"email": email})
    if not user or not verify_password(password, user.get("password_hash", "")):
        raise AuthenticationError("Incorrect email or password")
    return to_user_out(user)


def update_profile(db: Database, user_id: str, changes: Dict) -> UserOut:
    changes = {k: v for k, v in changes.items() if v is not None}
    oid = parse_object_id(user_id)
    if changes.get("email"):
        other = db["user"].find_one({"email": changes["email"], "_id": {"$ne": oid}})
        if other:
            raise ConflictError("Email already in use")
    user = db["user"].find_one_and_update(
        {"_id": oid},
        {"$set": {**changes, "updated_at": utc_now()}},
        return_document=ReturnDocument.AFTER,
    )
    if not user:
        raise NotFoundError("User not found")
    return to_user_out(user)


def change_password(db: Database, user_id: str, current_password: str, new_password: str) -> None:
    oid = parse_object_id(user_id)
    user = db["user"].find_one({"_id": oid})
    if not user:
        raise NotFoundError("User not found")
    if not verify_password(current_password, user.get("password_hash", "")):
        raise AuthenticationError("Current password is incorrect")
    db["user"].update_one({"_id": oid}, {"$set": {"password_hash": hash_password(new_password), "updated_at": utc_now()}})


def bootstrap_admin(db: Database, name: str, email: str, password: str) -> Optional[UserOut]:
    """Create the configured admin unless an admin already exists."""
    if db["user"].count_documents({"role": Role.ADMIN.value}) > 0:
        return None
    doc = UserSchema(name=name, email=email, password_hash=hash_password(password), role=Role.ADMIN).model_dump(mode="json")
    user_id = create_document(db, "user", doc)
    logger.info("bootstrapped admin %s", email)
    return to_user_out({**doc, "_id": user_id})


class UserDirectory:
    def __init__(self, db: Database):
        self.collection = db["user"]

    def display_names(self, user_ids: Iterable[str]) -> Dict[str, str]:
        oids = [oid for oid in (parse_object_id(u) for u in set(user_ids)) if oid is not None]
        if not oids:
            return {}
        return {str(u["_id"]): u.get("name", "") for u in self.collection.find({"_id": {"$in": oids}}, {"name": 1})}

    def populate(self, product: Dict) -> Dict:
        """Add `seller` {id, name} and `user_name` on each rating."""
        ids = [product.get("seller_id")] + [r.get("user_id") for r in product.get("ratings", [])]
        names = self.display_names(i for i in ids if i)
        out = dict(product)
        seller_id = out.get("seller_id")
        out["seller"] = {"id": seller_id, "name": names.get(seller_id)}
        out["ratings"] = [{**r, "user_name": names.get(r.get("user_id"))} for r in out.get("ratings", [])]
        return out
