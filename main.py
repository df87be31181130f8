import json
import os
from contextlib import asynccontextmanager
from typing import Literal, Optional

from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile, WebSocket, WebSocketDisconnect, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, EmailStr, Field

import config
import database
import users
from catalog import CatalogStore, serialize_product
from chat import registry
from errors import AuthenticationError, MarketError, field_errors
from ratings import RatingAggregator
from schemas import RatingRequest, RatingsOut
from storage import ImageStorage, ImageUpload, build_storage

logger = config.get_logger("api")

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/login")
image_storage = build_storage()


@asynccontextmanager
async def lifespan(app: FastAPI):
    if config.IMAGE_STORAGE == "local":
        os.makedirs(config.UPLOAD_DIR, exist_ok=True)
    if database.db is not None:
        database.ensure_indexes(database.db)
    yield


app = FastAPI(title="Handcraft Market API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.mount(config.UPLOAD_URL_PREFIX, StaticFiles(directory=config.UPLOAD_DIR, check_dir=False), name="uploads")


@app.exception_handler(MarketError)
async def market_error_handler(request: Request, exc: MarketError):
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, AuthenticationError) else None
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=422, content={"detail": "Validation failed", "errors": field_errors(exc)})


# Dependencies

def get_db():
    if database.db is None:
        raise HTTPException(500, "Database not configured")
    return database.db


def get_storage() -> ImageStorage:
    return image_storage


def get_catalog(db=Depends(get_db), storage: ImageStorage = Depends(get_storage)) -> CatalogStore:
    return CatalogStore(db, storage)


def get_ratings(db=Depends(get_db)) -> RatingAggregator:
    return RatingAggregator(db)


def get_current_user(token: str = Depends(oauth2_scheme), db=Depends(get_db)) -> users.UserOut:
    return users.user_from_token(db, token)


def read_upload(image: Optional[UploadFile]) -> Optional[ImageUpload]:
    if image is None or not image.filename:
        return None
    return ImageUpload(filename=image.filename, content_type=image.content_type, data=image.file.read())


def form_fields(**values) -> dict:
    """Submitted form values; blank entries are dropped except `tag`, where "" clears it."""
    return {k: v for k, v in values.items() if v is not None and (v != "" or k == "tag")}


# Request/Response Models

class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str
    role: Literal["user", "seller"] = "user"


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: users.UserOut


class ProfileUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    email: Optional[EmailStr] = None
    avatar_url: Optional[str] = None
    address: Optional[str] = None
    phone: Optional[str] = None


class PasswordChange(BaseModel):
    current_password: str
    new_password: str


@app.get("/")
def read_root():
    return {"message": "Handcraft Market API is running"}


# Auth
@app.post("/api/register", response_model=TokenResponse, status_code=201)
def register(payload: RegisterRequest, db=Depends(get_db)):
    user = users.register_user(db, payload.name, payload.email, payload.password, payload.role)
    return TokenResponse(access_token=users.create_access_token({"sub": user.id}), user=user)


@app.post("/api/login", response_model=TokenResponse)
def login(form_data: OAuth2PasswordRequestForm = Depends(), db=Depends(get_db)):
    user = users.authenticate(db, form_data.username, form_data.password)
    return TokenResponse(access_token=users.create_access_token({"sub": user.id}), user=user)


@app.get("/api/me", response_model=users.UserOut)
def me(current: users.UserOut = Depends(get_current_user)):
    return current


@app.put("/api/me", response_model=users.UserOut)
def update_me(payload: ProfileUpdate, current: users.UserOut = Depends(get_current_user), db=Depends(get_db)):
    return users.update_profile(db, current.id, payload.model_dump())


@app.put("/api/me/password")
def change_my_password(payload: PasswordChange, current: users.UserOut = Depends(get_current_user), db=Depends(get_db)):
    users.change_password(db, current.id, payload.current_password, payload.new_password)
    return {"message": "Password updated"}


@app.post("/api/init/bootstrap")
def bootstrap(db=Depends(get_db)):
    """Create the admin from ADMIN_EMAIL / ADMIN_PASSWORD if no admin exists yet."""
    admin = users.bootstrap_admin(db, config.ADMIN_NAME, config.ADMIN_EMAIL, config.ADMIN_PASSWORD)
    if admin is None:
        raise HTTPException(status_code=400, detail="Admin already exists")
    return {"message": "Admin created", "email": admin.email}


# Catalog
@app.get("/api/categories")
def list_categories(catalog: CatalogStore = Depends(get_catalog)):
    return catalog.categories()


@app.get("/api/products")
def list_products(
    category: Optional[str] = None,
    tag: Optional[str] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
    search: Optional[str] = None,
    sort: str = "created_at",
    order: str = "desc",
    page: int = 1,
    limit: int = 12,
    catalog: CatalogStore = Depends(get_catalog),
):
    result = catalog.list({
        "category": category,
        "tag": tag,
        "min_price": min_price,
        "max_price": max_price,
        "search": search,
        "sort": sort,
        "order": order,
        "page": page,
        "limit": limit,
    })
    result["items"] = [serialize_product(p) for p in result["items"]]
    return result


@app.post("/api/products", status_code=201)
def create_product(
    name: Optional[str] = Form(None),
    price: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    category: Optional[str] = Form(None),
    tag: Optional[str] = Form(None),
    stock: Optional[str] = Form(None),
    image_url: Optional[str] = Form(None),
    image: Optional[UploadFile] = File(None),
    current: users.UserOut = Depends(get_current_user),
    catalog: CatalogStore = Depends(get_catalog),
):
    data = form_fields(
        name=name,
        price=price,
        description=description,
        category=category,
        tag=tag,
        stock=stock,
        image=image_url,
    )
    product = catalog.create(data, current.id, upload=read_upload(image))
    return serialize_product(product)


@app.get("/api/products/{product_id}")
def get_product(product_id: str, catalog: CatalogStore = Depends(get_catalog), db=Depends(get_db)):
    product = catalog.get_by_id(product_id)
    return users.UserDirectory(db).populate(serialize_product(product))


@app.put("/api/products/{product_id}")
def update_product(
    product_id: str,
    name: Optional[str] = Form(None),
    price: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    category: Optional[str] = Form(None),
    tag: Optional[str] = Form(None),
    stock: Optional[str] = Form(None),
    image_url: Optional[str] = Form(None),
    image: Optional[UploadFile] = File(None),
    current: users.UserOut = Depends(get_current_user),
    catalog: CatalogStore = Depends(get_catalog),
):
    patch = form_fields(
        name=name,
        price=price,
        description=description,
        category=category,
        tag=tag,
        stock=stock,
        image=image_url,
    )
    product = catalog.update(product_id, patch, current, upload=read_upload(image))
    return serialize_product(product)


@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, current: users.UserOut = Depends(get_current_user), catalog: CatalogStore = Depends(get_catalog)):
    catalog.delete(product_id, current)
    return {"deleted": True}


@app.post("/api/products/{product_id}/rate", response_model=RatingsOut)
def rate_product(
    product_id: str,
    payload: RatingRequest,
    current: users.UserOut = Depends(get_current_user),
    ratings: RatingAggregator = Depends(get_ratings),
):
    product = ratings.rate(product_id, current.id, payload.score, payload.review)
    return RatingsOut(average_rating=product["average_rating"], ratings=product["ratings"])


@app.get("/api/seller/products")
def my_products(current: users.UserOut = Depends(get_current_user), catalog: CatalogStore = Depends(get_catalog)):
    return [serialize_product(p) for p in catalog.seller_products(current.id)]


@app.get("/api/sellers/{seller_id}/products")
def seller_products(seller_id: str, catalog: CatalogStore = Depends(get_catalog)):
    return [serialize_product(p) for p in catalog.seller_products(seller_id)]


# Chat
@app.websocket("/ws/chat")
async def chat_socket(websocket: WebSocket, token: Optional[str] = None, db=Depends(get_db)):
    try:
        user = users.user_from_token(db, token)
    except AuthenticationError:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    registry.connect(user.id, websocket)
    try:
        await websocket.send_json({"type": "joined", "user_id": user.id})
        while True:
            try:
                data = json.loads(await websocket.receive_text())
            except (KeyError, ValueError):
                await websocket.send_json({"type": "error", "detail": "Messages must be JSON objects"})
                continue
            receiver_id = str(data.get("receiver_id") or "") if isinstance(data, dict) else ""
            message = data.get("message") if isinstance(data, dict) else None
            if not receiver_id or not isinstance(message, str) or not message:
                await websocket.send_json({"type": "error", "detail": "receiver_id and message are required"})
                continue
            delivered = await registry.send(user.id, receiver_id, message)
            await websocket.send_json({"type": "sent", "receiver_id": receiver_id, "delivered": delivered})
    except WebSocketDisconnect:
        logger.debug("chat socket for %s closed by client", user.id)
    finally:
        registry.disconnect(user.id, websocket)


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if config.DATABASE_URL else "❌ Not Set",
        "database_name": config.DATABASE_NAME,
        "image_storage": config.IMAGE_STORAGE,
        "collections": [],
    }
    if database.db is not None:
        try:
            response["collections"] = database.db.list_collection_names()[:10]
            response["database"] = "✅ Connected & Working"
        except Exception as e:
            response["database"] = f"⚠️ Connected but Error: {str(e)[:50]}"
    return response


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
