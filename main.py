import logging
import math
import os
import re
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Dict, Literal

from fastapi import FastAPI, HTTPException, Depends, Request, Query
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, EmailStr, Field
from jose import jwt, JWTError
from passlib.context import CryptContext
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError
from starlette.exceptions import HTTPException as StarletteHTTPException
from bson import ObjectId
from bson.errors import InvalidId

from database import db, create_document, get_documents, to_document
from schemas import (
    Address, CamelModel, Cart as CartDocument, Curator, Discount, Order, OrderItem, OrderStatus, Product,
    ProductCategory, Review, ShippingAddress, ThemedBox, User,
)
from cart import Cart
from checkout import (
    CENT, CheckoutError, CouponUsageLimitReached, calculate_subtotal, calculate_totals, check_status_transition,
    ensure_utc, normalize_code, simulate_payment, to_money, validate_coupon,
)

# Environment
JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret")
JWT_ALG = "HS256"
TOKEN_EXPIRE_MIN = int(os.getenv("TOKEN_EXPIRE_MIN", "60"))

LOW_STOCK_LEVEL = 10
VIP_SPEND = 1000
PLACEHOLDER_IMAGE = "/images/placeholder-product.jpg"

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
auth_scheme = HTTPBearer(auto_error=False)

app = FastAPI(title="Curated Crate API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Simple in-memory rate limiting for login (per-IP)
RATE_LIMIT_WINDOW_SEC = 60 * 15  # 15 minutes
RATE_LIMIT_MAX_ATTEMPTS = 20
rate_store: Dict[str, List[float]] = {}


def check_rate_limit(ip: str):
    now = datetime.now().timestamp()
    bucket = rate_store.get(ip, [])
    # drop old timestamps
    bucket = [t for t in bucket if now - t <= RATE_LIMIT_WINDOW_SEC]
    if len(bucket) >= RATE_LIMIT_MAX_ATTEMPTS:
        raise HTTPException(status_code=429, detail="Too many login attempts. Please try again later.")
    bucket.append(now)
    rate_store[ip] = bucket


# Error responses: every failure is {"success": false, "message": ...}
def error_response(status_code: int, message, headers=None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "message": message}, headers=headers)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return error_response(exc.status_code, exc.detail, getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    problems = []
    for err in exc.errors():
        where = ".".join(str(part) for part in err.get("loc", ())[1:])
        problems.append(f"{where}: {err.get('msg')}" if where else err.get("msg"))
    return error_response(400, "; ".join(problems) or "Invalid request")


@app.exception_handler(CheckoutError)
async def checkout_error_handler(request: Request, exc: CheckoutError):
    return error_response(exc.status_code, exc.message)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return error_response(500, "Internal server error")


# Utilities
def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_object_id(value: str, label: str = "id") -> ObjectId:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise HTTPException(status_code=400, detail=f"Invalid {label}")


def serialize(doc: Optional[dict]) -> Optional[dict]:
    if doc is None:
        return None
    doc = dict(doc)
    if "_id" in doc:
        doc["_id"] = str(doc["_id"])
    doc.pop("passwordHash", None)
    return doc


def paginate(total: int, page: int, limit: int) -> dict:
    return {"currentPage": page, "totalPages": math.ceil(total / limit) if limit else 0}


def contains(text: str) -> dict:
    return {"$regex": re.escape(text), "$options": "i"}


def create_access_token(data: dict, expires_minutes: int = TOKEN_EXPIRE_MIN):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, JWT_SECRET, algorithm=JWT_ALG)


def verify_password(plain: str, hashed: str) -> bool:
    return pwd_context.verify(plain, hashed)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


async def get_current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(auth_scheme)) -> dict:
    if credentials is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    token = credentials.credentials
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
        user_id: str = payload.get("sub")
        if user_id is None:
            raise HTTPException(status_code=401, detail="Invalid token")
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token")

    # fetch user from DB
    try:
        user = db["user"].find_one({"_id": ObjectId(user_id)})
    except InvalidId:
        raise HTTPException(status_code=401, detail="Invalid token")
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    user["_id"] = str(user["_id"])
    return user


async def require_admin(user: dict = Depends(get_current_user)):
    if user.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Admin only")
    return user


def is_admin(user: dict) -> bool:
    return user.get("role") == "admin"


def display_name(user: Optional[dict]) -> str:
    if not user:
        return "N/A"
    full = f"{user.get('firstName') or ''} {user.get('lastName') or ''}".strip()
    return user.get("name") or full or user.get("email", "N/A")


# Health checks
@app.get("/")
def root():
    return {"message": "Curated Crate API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if db is not None:
            response["database"] = "✅ Available"
            response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
            response["database_name"] = db.name
            response["connection_status"] = "Connected"
            response["collections"] = db.list_collection_names()
        else:
            response["database"] = "⚠️ Available but not initialized"
    except Exception as e:
        logger.error("Database check failed: %s", e)
        response["database"] = f"❌ Error: {str(e)[:100]}"
    return response


# Auth models
class RegisterPayload(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    password: str = Field(..., min_length=6)


class LoginPayload(BaseModel):
    email: EmailStr
    password: str


def auth_response(user_id: str, user: dict) -> dict:
    role = user.get("role", "user")
    token = create_access_token({"sub": user_id, "role": role})
    return {
        "success": True,
        "token": token,
        "user": {"_id": user_id, "name": user.get("name"), "email": user.get("email"), "role": role},
    }


@app.post("/api/auth/register", status_code=201)
def register(payload: RegisterPayload):
    email = payload.email.lower()
    # check existing
    if db["user"].find_one({"email": email}):
        raise HTTPException(status_code=400, detail="Email already registered")
    user = User(name=payload.name, email=email, password_hash=hash_password(payload.password), role="user")
    try:
        user_id = create_document("user", user)
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="Email already registered")
    logger.info("Registered user %s", user_id)
    return auth_response(user_id, user.model_dump(by_alias=True))


@app.post("/api/auth/login")
def login(payload: LoginPayload, request: Request):
    # Rate limit per IP
    ip = request.client.host if request.client else "unknown"
    check_rate_limit(ip)

    doc = db["user"].find_one({"email": payload.email.lower()})
    if not doc or not verify_password(payload.password, doc.get("passwordHash", "")):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return auth_response(str(doc["_id"]), doc)


# Account
class ProfileUpdatePayload(CamelModel):
    name: Optional[str] = Field(None, max_length=100)
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = Field(None, pattern=r"^\+?[1-9]\d{1,14}$")
    password: Optional[str] = Field(None, min_length=6)
    addresses: Optional[List[Address]] = None


def normalize_addresses(addresses: List[Address]) -> List[dict]:
    """Give every address an id and leave exactly one default (the first flagged, else the first)."""
    normalized = []
    default_found = False
    for address in addresses:
        doc = address.model_dump(by_alias=True)
        doc["id"] = doc.get("id") or str(ObjectId())
        if doc["isDefault"]:
            if default_found:
                doc["isDefault"] = False
            default_found = True
        normalized.append(doc)
    if normalized and not default_found:
        normalized[0]["isDefault"] = True
    return normalized


@app.get("/api/users/me")
def get_profile(user: dict = Depends(get_current_user)):
    return {"success": True, "data": serialize(user)}


@app.put("/api/users/me")
def update_profile(payload: ProfileUpdatePayload, user: dict = Depends(get_current_user)):
    # email and role are not part of the payload and cannot change here
    update = payload.model_dump(
        by_alias=True, exclude_none=True, include={"name", "first_name", "last_name", "phone"}
    )
    if payload.password:
        update["passwordHash"] = hash_password(payload.password)
    if payload.addresses is not None:
        update["addresses"] = normalize_addresses(payload.addresses)
    update["updatedAt"] = utcnow()
    doc = db["user"].find_one_and_update(
        {"_id": ObjectId(user["_id"])}, {"$set": update}, return_document=ReturnDocument.AFTER
    )
    if not doc:
        raise HTTPException(status_code=404, detail="User not found.")
    return {"success": True, "data": serialize(doc)}


@app.get("/api/account/dashboard")
def account_dashboard(user: dict = Depends(get_current_user)):
    filt = {"userId": user["_id"]}
    recent = get_documents("order", filt, limit=3, sort=[("createdAt", -1)])
    return {
        "success": True,
        "data": {
            "totalOrders": db["order"].count_documents(filt),
            "recentOrders": [
                {
                    "id": str(o["_id"]),
                    "date": ensure_utc(o.get("createdAt")),
                    "total": o.get("totalPrice"),
                    "status": o.get("orderStatus"),
                }
                for o in recent
            ],
        },
    }


# Products
class ProductUpdatePayload(CamelModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    compare_at_price: Optional[float] = Field(None, ge=0)
    images: Optional[List[str]] = None
    category: Optional[ProductCategory] = None
    stock: Optional[int] = Field(None, ge=0)
    dimensions: Optional[str] = None
    weight: Optional[float] = Field(None, ge=0)
    materials: Optional[List[str]] = None
    is_active: Optional[bool] = None


PRODUCT_SORTS = {
    "price-low": [("price", 1)],
    "price-high": [("price", -1)],
    "name": [("name", 1)],
    "popularity": [("createdAt", -1)],
}


def find_product(product_id: str) -> dict:
    doc = db["product"].find_one({"_id": to_object_id(product_id, "product id")})
    if not doc:
        raise HTTPException(status_code=404, detail="Product not found")
    return doc


@app.get("/api/products")
def list_products(
    page: int = Query(1, ge=1),
    limit: int = Query(8, ge=1, le=100),
    categories: Optional[str] = None,
    min_price: Optional[float] = Query(None, alias="minPrice", ge=0),
    max_price: Optional[float] = Query(None, alias="maxPrice", ge=0),
    sort_by: Optional[str] = Query(None, alias="sortBy"),
):
    filter_q = {"isActive": {"$ne": False}}
    if categories:
        wanted = [c.strip() for c in categories.split(",") if c.strip()]
        if wanted:
            filter_q["category"] = {"$in": wanted}
    if min_price is not None or max_price is not None:
        price_filter = {}
        if min_price is not None:
            price_filter["$gte"] = float(min_price)
        if max_price is not None:
            price_filter["$lte"] = float(max_price)
        filter_q["price"] = price_filter
    sort = PRODUCT_SORTS.get(sort_by or "popularity", PRODUCT_SORTS["popularity"])
    total = db["product"].count_documents(filter_q)
    cursor = db["product"].find(filter_q).sort(sort).skip((page - 1) * limit).limit(limit)
    return {
        "success": True,
        "products": [serialize(p) for p in cursor],
        "totalProducts": total,
        **paginate(total, page, limit),
    }


@app.get("/api/products/{product_id}")
def get_product(product_id: str):
    return {"success": True, "data": serialize(find_product(product_id))}


@app.post("/api/products", status_code=201, dependencies=[Depends(require_admin)])
def create_product(payload: Product):
    prod_id = create_document("product", payload)
    logger.info("Created product %s", prod_id)
    return {"success": True, "data": serialize(db["product"].find_one({"_id": ObjectId(prod_id)}))}


@app.put("/api/products/{product_id}", dependencies=[Depends(require_admin)])
def update_product(product_id: str, payload: ProductUpdatePayload):
    oid = to_object_id(product_id, "product id")
    update_doc = payload.model_dump(by_alias=True, exclude_none=True)
    update_doc["updatedAt"] = utcnow()
    doc = db["product"].find_one_and_update({"_id": oid}, {"$set": update_doc}, return_document=ReturnDocument.AFTER)
    if not doc:
        raise HTTPException(status_code=404, detail="Product not found")
    return {"success": True, "data": serialize(doc)}


@app.delete("/api/products/{product_id}", dependencies=[Depends(require_admin)])
def delete_product(product_id: str):
    oid = to_object_id(product_id, "product id")
    res = db["product"].delete_one({"_id": oid})
    if res.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Product not found")
    logger.info("Deleted product %s", product_id)
    return {"success": True, "message": "Product deleted successfully"}


PRODUCT_STATUS_FILTERS = {
    "Active": {"stock": {"$gt": LOW_STOCK_LEVEL}, "isActive": True},
    "Low Stock": {"stock": {"$gt": 0, "$lte": LOW_STOCK_LEVEL}, "isActive": True},
    "Out of Stock": {"stock": 0, "isActive": True},
    "Inactive": {"isActive": False},
}


@app.get("/api/admin/products", dependencies=[Depends(require_admin)])
def admin_list_products(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    category: Optional[str] = None,
    status: Optional[str] = None,
    search: Optional[str] = None,
):
    filter_q = {}
    if search:
        filter_q["name"] = contains(search)
    if category and category != "all":
        filter_q["category"] = category
    if status and status != "all":
        filter_q.update(PRODUCT_STATUS_FILTERS.get(status, {}))
    total = db["product"].count_documents(filter_q)
    cursor = db["product"].find(filter_q).sort([("createdAt", -1)]).skip((page - 1) * limit).limit(limit)
    return {
        "success": True,
        "data": [serialize(p) for p in cursor],
        "pagination": {**paginate(total, page, limit), "totalProducts": total},
    }


@app.get("/api/search")
def search(q: Optional[str] = None):
    if not q or not q.strip():
        raise HTTPException(status_code=400, detail="Search query is required")
    pattern = contains(q.strip())
    products = get_documents(
        "product",
        {"$or": [{"name": pattern}, {"description": pattern}, {"category": pattern}]},
        limit=10,
    )
    boxes = get_documents("themedbox", {"$or": [{"name": pattern}, {"description": pattern}]}, limit=5)
    return {
        "success": True,
        "products": [serialize(p) for p in products],
        "themedBoxes": [serialize(b) for b in boxes],
    }


# Themed boxes
class ThemedBoxUpdatePayload(CamelModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    image: Optional[str] = None
    products: Optional[List[str]] = None
    features: Optional[List[str]] = None
    is_active: Optional[bool] = None


def populate_box(box: dict) -> dict:
    ids = [ObjectId(pid) for pid in box.get("products", []) if ObjectId.is_valid(pid)]
    found = {str(p["_id"]): serialize(p) for p in db["product"].find({"_id": {"$in": ids}})}
    box = serialize(box)
    box["products"] = [found[pid] for pid in box.get("products", []) if pid in found]
    return box


def find_box(box_id: str) -> dict:
    box = db["themedbox"].find_one({"_id": to_object_id(box_id, "themed box id")})
    if not box:
        raise HTTPException(status_code=404, detail="Themed box not found")
    return box


def check_product_ids(product_ids: List[str]):
    for pid in product_ids:
        to_object_id(pid, "product id")


@app.get("/api/themed-boxes")
def list_themed_boxes():
    boxes = get_documents("themedbox", {"isActive": True})
    return {"success": True, "data": [populate_box(b) for b in boxes]}


@app.get("/api/themed-boxes/{box_id}")
def get_themed_box(box_id: str):
    return {"success": True, "data": populate_box(find_box(box_id))}


@app.get("/api/admin/themed-boxes", dependencies=[Depends(require_admin)])
def admin_list_themed_boxes(search: Optional[str] = None):
    filter_q = {}
    if search:
        filter_q["$or"] = [{"name": contains(search)}, {"description": contains(search)}]
    boxes = get_documents("themedbox", filter_q, sort=[("createdAt", -1)])
    return {"success": True, "data": [serialize(b) for b in boxes]}


@app.post("/api/admin/themed-boxes", status_code=201, dependencies=[Depends(require_admin)])
def create_themed_box(payload: ThemedBox):
    check_product_ids(payload.products)
    box_id = create_document("themedbox", payload)
    logger.info("Created themed box %s", box_id)
    return {"success": True, "data": populate_box(db["themedbox"].find_one({"_id": ObjectId(box_id)}))}


@app.put("/api/admin/themed-boxes/{box_id}", dependencies=[Depends(require_admin)])
def update_themed_box(box_id: str, payload: ThemedBoxUpdatePayload):
    oid = to_object_id(box_id, "themed box id")
    if not payload.products:
        raise HTTPException(status_code=400, detail="A themed box must contain at least one product.")
    check_product_ids(payload.products)
    update_doc = payload.model_dump(by_alias=True, exclude_none=True)
    update_doc["updatedAt"] = utcnow()
    doc = db["themedbox"].find_one_and_update({"_id": oid}, {"$set": update_doc}, return_document=ReturnDocument.AFTER)
    if not doc:
        raise HTTPException(status_code=404, detail="Themed box not found")
    return {"success": True, "data": populate_box(doc)}


@app.delete("/api/admin/themed-boxes/{box_id}", dependencies=[Depends(require_admin)])
def delete_themed_box(box_id: str):
    res = db["themedbox"].delete_one({"_id": to_object_id(box_id, "themed box id")})
    if res.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Themed box not found")
    return {"success": True, "message": "Themed box deleted successfully"}


# Reviews
class ReviewPayload(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=500)


def list_reviews(target_field: str, target_id: str) -> dict:
    docs = get_documents("review", {target_field: target_id}, sort=[("createdAt", -1)])
    return {"success": True, "data": [serialize(d) for d in docs]}


def add_review(target_field: str, target_id: str, payload: ReviewPayload, user: dict, label: str) -> dict:
    if db["review"].find_one({target_field: target_id, "userId": user["_id"]}):
        raise HTTPException(status_code=409, detail=f"You have already reviewed this {label}.")
    review = Review(
        user_id=user["_id"],
        user_name=display_name(user),
        rating=payload.rating,
        comment=payload.comment,
        **{target_field: target_id},
    )
    try:
        review_id = create_document("review", review)
    except DuplicateKeyError:
        raise HTTPException(status_code=409, detail=f"You have already reviewed this {label}.")
    return {"success": True, "data": serialize(db["review"].find_one({"_id": ObjectId(review_id)}))}


@app.get("/api/themed-boxes/{box_id}/reviews")
def themed_box_reviews(box_id: str):
    find_box(box_id)
    return list_reviews("themedBoxId", box_id)


@app.post("/api/themed-boxes/{box_id}/reviews", status_code=201)
def review_themed_box(box_id: str, payload: ReviewPayload, user: dict = Depends(get_current_user)):
    find_box(box_id)
    return add_review("themedBoxId", box_id, payload, user, "themed box")


@app.get("/api/products/{product_id}/reviews")
def product_reviews(product_id: str):
    find_product(product_id)
    return list_reviews("productId", product_id)


@app.post("/api/products/{product_id}/reviews", status_code=201)
def review_product(product_id: str, payload: ReviewPayload, user: dict = Depends(get_current_user)):
    find_product(product_id)
    return add_review("productId", product_id, payload, user, "product")


# Cart
class CartAddPayload(CamelModel):
    product_id: str
    quantity: int = Field(1, ge=1)


class CartQuantityPayload(BaseModel):
    quantity: int = Field(..., ge=0)


class CheckoutSummaryPayload(BaseModel):
    code: Optional[str] = None


def load_cart(user_id: str) -> Cart:
    return Cart.from_document(db["cart"].find_one({"userId": user_id}), user_id)


def save_cart(cart: Cart):
    doc = to_document(CartDocument(**cart.to_document()))
    doc["updatedAt"] = utcnow()
    db["cart"].update_one(
        {"userId": cart.user_id},
        {"$set": doc, "$setOnInsert": {"createdAt": doc["updatedAt"]}},
        upsert=True,
    )


def lookup_discount(code: str) -> Optional[dict]:
    return db["discount"].find_one({"code": normalize_code(code)})


@app.get("/api/cart")
def get_cart(user: dict = Depends(get_current_user)):
    return {"success": True, "data": load_cart(user["_id"]).as_dict()}


@app.post("/api/cart")
def add_to_cart(payload: CartAddPayload, user: dict = Depends(get_current_user)):
    product = find_product(payload.product_id)
    cart = load_cart(user["_id"])
    cart.add(product, payload.quantity)
    save_cart(cart)
    return {"success": True, "data": cart.as_dict()}


@app.put("/api/cart/{item_id}")
def update_cart_item(item_id: str, payload: CartQuantityPayload, user: dict = Depends(get_current_user)):
    cart = load_cart(user["_id"])
    cart.set_quantity(item_id, payload.quantity)
    save_cart(cart)
    return {"success": True, "data": cart.as_dict()}


@app.delete("/api/cart/{item_id}")
def remove_cart_item(item_id: str, user: dict = Depends(get_current_user)):
    cart = load_cart(user["_id"])
    cart.remove(item_id)
    save_cart(cart)
    return {"success": True, "data": cart.as_dict()}


@app.post("/api/checkout/summary")
def checkout_summary(payload: CheckoutSummaryPayload, user: dict = Depends(get_current_user)):
    cart = load_cart(user["_id"])
    if not len(cart):
        raise HTTPException(status_code=400, detail="Cart is empty")
    coupon = None
    if payload.code and payload.code.strip():
        coupon = validate_coupon(lookup_discount(payload.code), cart.summary().subtotal)
    data = cart.as_dict(coupon)
    data["coupon"] = coupon.as_dict() if coupon else None
    return {"success": True, "data": data}


# Wishlist: one document per user holding product ids
class WishlistPayload(CamelModel):
    product_id: str


def wishlist_items(doc: Optional[dict]) -> List[dict]:
    if not doc:
        return []
    ids = [ObjectId(pid) for pid in doc.get("productIds", []) if ObjectId.is_valid(pid)]
    items = []
    for p in db["product"].find({"_id": {"$in": ids}}):
        items.append({
            "_id": str(p["_id"]),
            "productId": str(p["_id"]),
            "name": p.get("name"),
            "description": p.get("description"),
            "price": p.get("price"),
            "images": p.get("images", []),
            "stock": p.get("stock", 0),
            "category": p.get("category"),
        })
    return items


@app.get("/api/wishlist")
def get_wishlist(user: dict = Depends(get_current_user)):
    doc = db["wishlist"].find_one({"userId": user["_id"]})
    return {"success": True, "data": {"items": wishlist_items(doc)}}


@app.post("/api/wishlist")
def add_wishlist(payload: WishlistPayload, user: dict = Depends(get_current_user)):
    find_product(payload.product_id)
    doc = db["wishlist"].find_one_and_update(
        {"userId": user["_id"]},
        {"$addToSet": {"productIds": payload.product_id}, "$set": {"updatedAt": utcnow()}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return {"success": True, "data": {"items": wishlist_items(doc)}}


@app.delete("/api/wishlist/{product_id}")
def remove_wishlist(product_id: str, user: dict = Depends(get_current_user)):
    to_object_id(product_id, "product id")
    doc = db["wishlist"].find_one_and_update(
        {"userId": user["_id"]},
        {"$pull": {"productIds": product_id}, "$set": {"updatedAt": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    return {"success": True, "data": {"items": wishlist_items(doc)}}


# Discounts
class ValidateDiscountPayload(CamelModel):
    code: str
    cart_subtotal: float = Field(..., ge=0)


@app.post("/api/discounts/validate")
def validate_discount(payload: ValidateDiscountPayload, user: dict = Depends(get_current_user)):
    if not payload.code.strip():
        raise HTTPException(status_code=400, detail="Discount code is required.")
    result = validate_coupon(lookup_discount(payload.code), payload.cart_subtotal)
    return {"success": True, "message": "Discount applied successfully!", "data": result.as_dict()}


def discount_is_live(doc: dict, now: datetime) -> bool:
    expiry = ensure_utc(doc.get("expiryDate"))
    return bool(doc.get("isActive")) and (expiry is None or expiry > now)


@app.get("/api/admin/discounts", dependencies=[Depends(require_admin)])
def admin_list_discounts():
    docs = get_documents("discount", sort=[("createdAt", -1)])
    now = utcnow()
    return {
        "success": True,
        "data": [serialize(d) for d in docs],
        "stats": {
            "activeCodes": sum(1 for d in docs if discount_is_live(d, now)),
            "totalUses": sum(d.get("uses", 0) for d in docs),
        },
    }


@app.post("/api/admin/discounts", status_code=201, dependencies=[Depends(require_admin)])
def create_discount(payload: Discount):
    payload.code = normalize_code(payload.code)
    if not payload.code:
        raise HTTPException(status_code=400, detail="Discount code is required.")
    if payload.type == "percentage" and payload.value > 100:
        raise HTTPException(status_code=400, detail="Percentage discounts cannot exceed 100.")
    if db["discount"].find_one({"code": payload.code}):
        raise HTTPException(status_code=409, detail="Discount code must be unique.")
    try:
        discount_id = create_document("discount", payload)
    except DuplicateKeyError:
        raise HTTPException(status_code=409, detail="Discount code must be unique.")
    logger.info("Created discount %s (%s)", payload.code, discount_id)
    return {"success": True, "data": serialize(db["discount"].find_one({"_id": ObjectId(discount_id)}))}


@app.delete("/api/admin/discounts/{discount_id}", dependencies=[Depends(require_admin)])
def delete_discount(discount_id: str):
    res = db["discount"].delete_one({"_id": to_object_id(discount_id, "discount id")})
    if res.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Discount not found")
    return {"success": True, "message": "Discount deleted successfully"}


def redeem_discount(doc: dict) -> bool:
    """Take one use of a discount; False when a concurrent checkout took the last one."""
    filt = {"_id": doc["_id"]}
    if doc.get("maxUses") is not None:
        filt["uses"] = {"$lt": doc["maxUses"]}
    res = db["discount"].update_one(filt, {"$inc": {"uses": 1}, "$set": {"updatedAt": utcnow()}})
    return res.modified_count == 1


def release_discount(doc: dict):
    db["discount"].update_one({"_id": doc["_id"], "uses": {"$gt": 0}}, {"$inc": {"uses": -1}})


# Orders
class OrderLinePayload(CamelModel):
    type: Literal["product", "themedBox"]
    product_id: Optional[str] = None
    themed_box_id: Optional[str] = None
    quantity: int = Field(1, ge=1)


class CreateOrderPayload(CamelModel):
    shipping_address: ShippingAddress
    payment_method: str = Field(..., min_length=1)
    cart_items: List[OrderLinePayload] = Field(default_factory=list)
    total_price: Optional[float] = None
    shipping_price: Optional[float] = None
    tax_price: Optional[float] = None
    payment_details: Optional[dict] = None
    applied_coupon_code: Optional[str] = None


class OrderStatusPayload(CamelModel):
    order_status: OrderStatus


def build_order_lines(cart_items: List[OrderLinePayload]):
    """Resolve requested lines against the catalog; returns (lines, products by id, cart product ids)."""
    lines: List[OrderItem] = []
    products: Dict[str, dict] = {}
    from_cart: List[str] = []
    for item in cart_items:
        if item.type == "themedBox":
            if not item.themed_box_id:
                raise HTTPException(status_code=400, detail="Invalid item structure in cartItems payload.")
            box = find_box(item.themed_box_id)
            if not box.get("isActive", True):
                raise HTTPException(status_code=400, detail=f"\"{box.get('name')}\" is no longer available.")
            box_products = populate_box(box)["products"]
            if len(box_products) != len(box.get("products", [])):
                raise HTTPException(
                    status_code=400,
                    detail=f"A product in themed box \"{box.get('name')}\" is invalid or missing.",
                )
            retired = [p["name"] for p in box_products if not p.get("isActive", True)]
            if retired:
                raise HTTPException(
                    status_code=400,
                    detail=f"\"{retired[0]}\" in themed box \"{box.get('name')}\" is no longer available.",
                )
            # each box line expands to one line per product, times the boxes ordered
            for product in box_products:
                products[product["_id"]] = product
                lines.append(OrderItem(
                    product_id=product["_id"],
                    themed_box_id=str(box["_id"]),
                    name=product["name"],
                    price=product["price"],
                    quantity=item.quantity,
                    image_url=(product.get("images") or [PLACEHOLDER_IMAGE])[0],
                ))
        else:
            if not item.product_id:
                raise HTTPException(status_code=400, detail="Invalid item structure in cartItems payload.")
            product = serialize(find_product(item.product_id))
            if not product.get("isActive", True):
                raise HTTPException(status_code=400, detail=f"\"{product['name']}\" is no longer available.")
            products[product["_id"]] = product
            from_cart.append(product["_id"])
            lines.append(OrderItem(
                product_id=product["_id"],
                name=product["name"],
                price=product["price"],
                quantity=item.quantity,
                image_url=(product.get("images") or [PLACEHOLDER_IMAGE])[0],
            ))
    return lines, products, from_cart


def check_stock(lines: List[OrderItem], products: Dict[str, dict]) -> Dict[str, int]:
    requested: Dict[str, int] = defaultdict(int)
    for line in lines:
        requested[line.product_id] += line.quantity
    for pid, qty in requested.items():
        available = products[pid].get("stock", 0)
        if available < qty:
            raise HTTPException(
                status_code=400,
                detail=f"Insufficient stock for product \"{products[pid]['name']}\". "
                       f"Available: {available}, Requested: {qty}.",
            )
    return requested


def restock(taken: Dict[str, int]):
    for pid, qty in taken.items():
        db["product"].update_one({"_id": ObjectId(pid)}, {"$inc": {"stock": qty}})


def take_stock(requested: Dict[str, int], products: Dict[str, dict]) -> Dict[str, int]:
    taken: Dict[str, int] = {}
    for pid, qty in requested.items():
        res = db["product"].update_one({"_id": ObjectId(pid), "stock": {"$gte": qty}}, {"$inc": {"stock": -qty}})
        if res.modified_count != 1:
            restock(taken)
            raise HTTPException(status_code=400, detail=f"Insufficient stock for product \"{products[pid]['name']}\".")
        taken[pid] = qty
    return taken


def check_client_totals(payload: CreateOrderPayload, summary):
    claimed = (
        (payload.total_price, summary.total),
        (payload.shipping_price, summary.shipping),
        (payload.tax_price, summary.tax),
    )
    for sent, expected in claimed:
        if sent is not None and abs(to_money(sent) - expected) > CENT:
            raise HTTPException(
                status_code=400,
                detail="Order totals do not match the current cart. Please review your order.",
            )


def find_order(order_id: str) -> dict:
    doc = db["order"].find_one({"_id": to_object_id(order_id, "order id")})
    if not doc:
        raise HTTPException(status_code=404, detail="Order not found")
    return doc


@app.post("/api/orders", status_code=201)
def create_order(payload: CreateOrderPayload, user: dict = Depends(get_current_user)):
    if not payload.cart_items:
        raise HTTPException(status_code=400, detail="Missing required order details.")

    lines, products, from_cart = build_order_lines(payload.cart_items)
    if not lines:
        raise HTTPException(status_code=400, detail="No valid items to create an order.")
    requested = check_stock(lines, products)

    line_dicts = [line.model_dump(by_alias=True) for line in lines]
    coupon = None
    discount_doc = None
    if payload.applied_coupon_code and payload.applied_coupon_code.strip():
        discount_doc = lookup_discount(payload.applied_coupon_code)
        coupon = validate_coupon(discount_doc, calculate_subtotal(line_dicts))
    summary = calculate_totals(line_dicts, coupon.amount if coupon else 0, coupon.free_shipping if coupon else False)
    check_client_totals(payload, summary)

    payment = simulate_payment(payload.payment_method, summary.total, payload.payment_details, user.get("email"))

    taken = take_stock(requested, products)
    if discount_doc is not None and not redeem_discount(discount_doc):
        restock(taken)
        raise CouponUsageLimitReached()

    order = Order(
        user_id=user["_id"],
        items=lines,
        shipping_address=payload.shipping_address,
        payment_method=payload.payment_method,
        payment_status=payment.status,
        payment_result=payment.result,
        is_paid=payment.is_paid,
        paid_at=payment.paid_at,
        items_price=float(summary.subtotal),
        discount_price=float(summary.discount),
        shipping_price=float(summary.shipping),
        tax_price=float(summary.tax),
        total_price=float(summary.total),
        applied_discount_code=coupon.code if coupon else None,
    )
    try:
        order_id = create_document("order", order)
    except Exception:
        logger.exception("Failed to save order for user %s", user["_id"])
        restock(taken)
        if discount_doc is not None:
            release_discount(discount_doc)
        raise
    logger.info("Created order %s for user %s, total %s", order_id, user["_id"], summary.total)
    if coupon:
        logger.info("Discount code %s redeemed by order %s", coupon.code, order_id)

    if from_cart:
        cart = load_cart(user["_id"])
        if cart.remove_products(from_cart):
            save_cart(cart)

    return {"success": True, "data": serialize(db["order"].find_one({"_id": ObjectId(order_id)}))}


@app.get("/api/orders")
def list_orders(user: dict = Depends(get_current_user)):
    filt = {} if is_admin(user) else {"userId": user["_id"]}
    orders = get_documents("order", filt, sort=[("createdAt", -1)])
    return {"success": True, "data": [serialize(o) for o in orders]}


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, user: dict = Depends(get_current_user)):
    doc = find_order(order_id)
    if doc.get("userId") != user["_id"] and not is_admin(user):
        raise HTTPException(status_code=403, detail="Not allowed")
    return {"success": True, "data": serialize(doc)}


@app.put("/api/orders/{order_id}", dependencies=[Depends(require_admin)])
def update_order_status(order_id: str, payload: OrderStatusPayload):
    doc = find_order(order_id)
    if not check_status_transition(doc.get("orderStatus", "pending"), payload.order_status):
        return {"success": True, "data": serialize(doc)}
    now = utcnow()
    update = {"orderStatus": payload.order_status, "updatedAt": now}
    if payload.order_status == "delivered":
        update["deliveredAt"] = now
    doc = db["order"].find_one_and_update({"_id": doc["_id"]}, {"$set": update}, return_document=ReturnDocument.AFTER)
    logger.info("Order %s status set to %s", order_id, payload.order_status)
    return {"success": True, "data": serialize(doc)}


@app.get("/api/admin/orders", dependencies=[Depends(require_admin)])
def admin_list_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[str] = None,
    search: Optional[str] = None,
):
    filter_q = {}
    if status and status != "all":
        filter_q["orderStatus"] = status
    if search:
        users = db["user"].find({"$or": [{"name": contains(search)}, {"email": contains(search)}]})
        conditions = [{"userId": {"$in": [str(u["_id"]) for u in users]}}]
        if ObjectId.is_valid(search):
            conditions.append({"_id": ObjectId(search)})
        filter_q["$or"] = conditions
    total = db["order"].count_documents(filter_q)
    orders = list(db["order"].find(filter_q).sort([("createdAt", -1)]).skip((page - 1) * limit).limit(limit))
    owner_ids = [ObjectId(o["userId"]) for o in orders if ObjectId.is_valid(o.get("userId", ""))]
    owners = {str(u["_id"]): u for u in db["user"].find({"_id": {"$in": owner_ids}})}
    data = []
    for o in orders:
        owner = owners.get(o.get("userId"))
        item = serialize(o)
        item["user"] = {"_id": o.get("userId"), "name": display_name(owner), "email": owner.get("email") if owner else None}
        data.append(item)
    return {
        "success": True,
        "data": data,
        "pagination": {**paginate(total, page, limit), "totalOrders": total},
    }


# Admin analytics
@app.get("/api/admin/stats", dependencies=[Depends(require_admin)])
def admin_stats():
    orders = get_documents("order", sort=[("createdAt", -1)])
    now = utcnow()
    customers = {str(u["_id"]): u for u in get_documents("user")}

    week_ago = now - timedelta(days=7)
    sales_by_day: Dict[str, float] = defaultdict(float)
    for o in orders:
        created = ensure_utc(o.get("createdAt"))
        if created and created >= week_ago:
            sales_by_day[created.strftime("%Y-%m-%d")] += o.get("totalPrice", 0)
    sales_data = []
    for offset in range(6, -1, -1):
        day = now - timedelta(days=offset)
        sales_data.append({"day": day.strftime("%a"), "sales": round(sales_by_day.get(day.strftime("%Y-%m-%d"), 0), 2)})

    return {
        "success": True,
        "stats": {
            "totalRevenue": round(sum(o.get("totalPrice", 0) for o in orders if o.get("orderStatus") == "delivered"), 2),
            "totalOrders": len(orders),
            "totalCustomers": sum(1 for u in customers.values() if u.get("role") == "user"),
            "lowStockCount": db["product"].count_documents({"stock": {"$lte": LOW_STOCK_LEVEL}}),
            "recentOrders": [
                {
                    "id": str(o["_id"]),
                    "customer": display_name(customers.get(o.get("userId"))),
                    "status": o.get("orderStatus"),
                    "total": o.get("totalPrice"),
                }
                for o in orders[:10]
            ],
            "salesData": sales_data,
        },
    }


REPORT_WINDOWS = {"7days": 7, "30days": 30, "90days": 90}


def parse_day(value: Optional[str], label: str, end_of_day: bool = False) -> Optional[datetime]:
    """Parse an ISO date or datetime; a bare end date covers that whole day."""
    if not value:
        return None
    try:
        parsed = ensure_utc(datetime.fromisoformat(value))
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid {label}")
    if end_of_day and "T" not in value and " " not in value:
        parsed += timedelta(days=1, microseconds=-1)
    return parsed


def report_window(date_range: str, start: Optional[str], end: Optional[str]):
    end_date = parse_day(end, "endDate", end_of_day=True) or utcnow()
    if date_range == "custom":
        start_date = parse_day(start, "startDate") or datetime(1970, 1, 1, tzinfo=timezone.utc)
    else:
        start_date = end_date - timedelta(days=REPORT_WINDOWS.get(date_range, 30))
    return start_date, end_date


@app.get("/api/admin/analytics", dependencies=[Depends(require_admin)])
def admin_analytics(
    report_type: Literal["sales", "products", "customers"] = Query("sales", alias="reportType"),
    date_range: str = Query("30days", alias="dateRange"),
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
):
    start, end = report_window(date_range, start_date, end_date)
    orders = [
        o for o in get_documents("order")
        if o.get("createdAt") and start <= ensure_utc(o["createdAt"]) <= end
    ]

    if report_type == "sales":
        total_sales = sum(o.get("totalPrice", 0) for o in orders)
        data = {
            "totalSales": round(total_sales, 2),
            "totalOrders": len(orders),
            "averageOrderValue": round(total_sales / len(orders), 2) if orders else 0,
            "period": f"{start.date().isoformat()} - {end.date().isoformat()}",
        }
    elif report_type == "products":
        performance: Dict[str, dict] = {}
        for o in orders:
            for item in o.get("items", []):
                row = performance.setdefault(item["productId"], {"unitsSold": 0, "revenue": 0.0})
                row["unitsSold"] += item.get("quantity", 0)
                row["revenue"] += item.get("price", 0) * item.get("quantity", 0)
        top = sorted(performance.items(), key=lambda kv: kv[1]["revenue"], reverse=True)[:20]
        ids = [ObjectId(pid) for pid, _ in top if ObjectId.is_valid(pid)]
        names = {str(p["_id"]): p.get("name") for p in db["product"].find({"_id": {"$in": ids}})}
        data = [
            {"id": pid, "name": names[pid], "unitsSold": row["unitsSold"], "revenue": round(row["revenue"], 2)}
            for pid, row in top
            if pid in names
        ]
    else:
        new_customers = sum(
            1 for u in get_documents("user", {"role": "user"})
            if u.get("createdAt") and start <= ensure_utc(u["createdAt"]) <= end
        )
        per_customer: Dict[str, List[float]] = defaultdict(list)
        for o in orders:
            per_customer[o.get("userId")].append(o.get("totalPrice", 0))
        spent = [sum(totals) for totals in per_customer.values()]
        data = {
            "newCustomers": new_customers,
            "returningCustomers": sum(1 for totals in per_customer.values() if len(totals) > 1),
            "averageCLV": round(sum(spent) / len(spent), 2) if spent else 0,
        }
    return {"success": True, "data": data}


@app.get("/api/admin/customers", dependencies=[Depends(require_admin)])
def admin_customers(search: Optional[str] = None):
    filter_q = {"role": "user"}
    if search:
        filter_q["$or"] = [{"name": contains(search)}, {"email": contains(search)}]
    users = get_documents("user", filter_q)
    stats: Dict[str, dict] = defaultdict(lambda: {"totalOrders": 0, "totalSpent": 0.0})
    for o in get_documents("order", {"userId": {"$in": [str(u["_id"]) for u in users]}}):
        row = stats[o["userId"]]
        row["totalOrders"] += 1
        row["totalSpent"] += o.get("totalPrice", 0)

    data = []
    for u in users:
        row = stats[str(u["_id"])]
        status = "Inactive"
        if row["totalOrders"] > 0:
            status = "Active"
        if row["totalSpent"] > VIP_SPEND:
            status = "VIP"
        data.append({
            "id": str(u["_id"]),
            "name": display_name(u),
            "email": u.get("email"),
            "phone": u.get("phone") or "N/A",
            "signUpDate": ensure_utc(u.get("createdAt")),
            "totalOrders": row["totalOrders"],
            "totalSpent": round(row["totalSpent"], 2),
            "status": status,
        })
    return {"success": True, "data": data, "totalCustomers": db["user"].count_documents({"role": "user"})}


# Curators
@app.get("/api/curators")
def list_curators():
    return {"success": True, "data": [serialize(c) for c in get_documents("curator", {"isActive": True})]}


@app.post("/api/curators", status_code=201, dependencies=[Depends(require_admin)])
def create_curator(payload: Curator):
    curator_id = create_document("curator", payload)
    return {"success": True, "data": serialize(db["curator"].find_one({"_id": ObjectId(curator_id)}))}


# Seed demo catalog, discounts and customers
DEMO_PRODUCTS = [
    {"name": "Single-Origin Coffee Sampler", "description": "Three small-batch roasts from Ethiopia, Colombia and Sumatra.",
     "price": 24.0, "category": "Gourmet", "stock": 40, "images": ["https://images.unsplash.com/photo-1447933601403-0c6688de566e"]},
    {"name": "Lavender Bath Soak", "description": "Epsom salts with French lavender and chamomile.",
     "price": 18.5, "category": "Wellness", "stock": 25, "images": ["https://images.unsplash.com/photo-1608571423902-eed4a5ad8108"]},
    {"name": "Linen Bound Journal", "description": "A5 dotted pages, lay-flat binding.",
     "price": 16.0, "compareAtPrice": 20.0, "category": "Stationery", "stock": 60, "images": ["https://images.unsplash.com/photo-1519682337058-a94d519337bc"]},
    {"name": "Hand-Poured Soy Candle", "description": "Cedar and sea salt, 40 hour burn.",
     "price": 28.0, "category": "Home Goods", "stock": 8, "images": ["https://images.unsplash.com/photo-1602874801007-bd458bb1b8b6"]},
    {"name": "Organic Cotton Tote", "description": "Heavyweight canvas tote with inner pocket.",
     "price": 14.0, "category": "Apparel", "stock": 0, "images": ["https://images.unsplash.com/photo-1591561954557-26941169b49e"]},
]

DEMO_DISCOUNTS = [
    {"code": "SAVE10", "type": "percentage", "value": 10, "description": "10% off your order"},
    {"code": "WELCOME5", "type": "fixed", "value": 5, "description": "$5 off your first order", "maxUses": 500},
    {"code": "FREESHIP", "type": "free-shipping", "value": 0, "description": "Free shipping on any order"},
]


@app.post("/api/seed")
def seed(customers: int = Query(25, ge=0, le=500)):
    from faker import Faker
    fake = Faker()
    created = {"admin": 0, "products": 0, "themedBoxes": 0, "discounts": 0, "customers": 0}

    # Ensure one admin
    if not db["user"].find_one({"role": "admin"}):
        admin = User(name="Admin", email="admin@curatedcrate.com", password_hash=hash_password("Admin@123"), role="admin")
        create_document("user", admin)
        created["admin"] = 1

    if db["product"].count_documents({}) == 0:
        product_ids = [create_document("product", Product(**p)) for p in DEMO_PRODUCTS]
        created["products"] = len(product_ids)
        box = ThemedBox(
            name="Slow Sunday Box",
            description="Coffee, a candle and a journal for an unhurried morning.",
            price=59.0,
            image="https://images.unsplash.com/photo-1513201099705-a9746e1e201f",
            products=[product_ids[0], product_ids[2], product_ids[3]],
            features=["Hand-picked by our curators", "Gift-ready packaging"],
        )
        create_document("themedbox", box)
        created["themedBoxes"] = 1

    for d in DEMO_DISCOUNTS:
        if not db["discount"].find_one({"code": d["code"]}):
            create_document("discount", Discount(**d))
            created["discounts"] += 1

    # Create customers if not present
    existing_count = db["user"].count_documents({"role": "user"})
    to_create = max(0, customers - existing_count)
    pwd = hash_password("Password@123")
    for _ in range(to_create):
        user = User(name=fake.name(), email=fake.unique.email(), password_hash=pwd, role="user")
        create_document("user", user)
        created["customers"] += 1
    logger.info("Seed finished: %s", created)
    return {"success": True, "created": created}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
