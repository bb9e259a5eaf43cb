import os
import json
import hmac
import base64
import hashlib
import logging
import secrets
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Dict, Any

from fastapi import FastAPI, Depends, HTTPException, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer
from pydantic import BaseModel, EmailStr, Field
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError
from bson import ObjectId
from bson.errors import InvalidId

import database
from database import get_db, ensure_indexes, id_candidates, to_public, create_document, get_documents
from schemas import Buyer, Payment, PurchaseRecord, User

from dotenv import load_dotenv
load_dotenv()

logger = logging.getLogger(__name__)

# Simple JWT (HS256) without external deps
JWT_SECRET = os.getenv("JWT_SECRET", "devsecret")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "60"))

def _b64url_encode(b: bytes) -> str:
    return base64.urlsafe_b64encode(b).rstrip(b"=").decode()

def _b64url_decode(s: str) -> bytes:
    pad = '=' * (-len(s) % 4)
    return base64.urlsafe_b64decode(s + pad)

def jwt_encode(payload: dict, secret: str) -> str:
    header = {"alg": "HS256", "typ": "JWT"}
    header_b64 = _b64url_encode(json.dumps(header, separators=(',', ':')).encode())
    payload_b64 = _b64url_encode(json.dumps(payload, default=str, separators=(',', ':')).encode())
    signing_input = f"{header_b64}.{payload_b64}".encode()
    signature = hmac.new(secret.encode(), signing_input, hashlib.sha256).digest()
    sig_b64 = _b64url_encode(signature)
    return f"{header_b64}.{payload_b64}.{sig_b64}"

def jwt_decode(token: str, secret: str) -> dict:
    try:
        header_b64, payload_b64, sig_b64 = token.split('.')
        signing_input = f"{header_b64}.{payload_b64}".encode()
        expected_sig = hmac.new(secret.encode(), signing_input, hashlib.sha256).digest()
        if not hmac.compare_digest(_b64url_encode(expected_sig), sig_b64):
            raise ValueError("Invalid signature")
        payload = json.loads(_b64url_decode(payload_b64))
        if 'exp' not in payload:
            raise ValueError("Missing exp")
        exp = datetime.fromtimestamp(payload['exp'], tz=timezone.utc)
        if datetime.now(timezone.utc) >= exp:
            raise ValueError("Token expired")
        return payload
    except Exception as e:
        raise ValueError(str(e))

# Salted PBKDF2; stored as "pbkdf2_sha256$<iterations>$<salt>$<hex digest>"
PBKDF2_ITERATIONS = int(os.getenv("PBKDF2_ITERATIONS", "260000"))

def hash_password(password: str) -> str:
    salt = secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), PBKDF2_ITERATIONS).hex()
    return f"pbkdf2_sha256${PBKDF2_ITERATIONS}${salt}${digest}"

def verify_password(password: str, hashed: str) -> bool:
    try:
        _, iterations, salt, digest = hashed.split("$")
        candidate = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), int(iterations)).hex()
    except ValueError:
        return False
    return hmac.compare_digest(candidate, digest)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": int(expire.timestamp())})
    return jwt_encode(to_encode, JWT_SECRET)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        ensure_indexes(database.db)
    yield

# FastAPI app
app = FastAPI(title="Shop API", version="1.0.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/login")


@app.exception_handler(PyMongoError)
async def persistence_error_handler(request: Request, exc: PyMongoError):
    logger.exception("Database error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"success": False, "err": str(exc)})

# Pydantic models
class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    email: EmailStr
    password: str = Field(..., min_length=5)
    image: Optional[str] = None

class LoginRequest(BaseModel):
    email: EmailStr
    password: str

class CartAddRequest(BaseModel):
    productId: str = Field(..., min_length=1)

class CartDetailLine(BaseModel):
    id: str = Field(..., alias="_id", min_length=1)
    title: str
    price: float = Field(..., ge=0)
    quantity: int = Field(..., ge=1)

class CheckoutRequest(BaseModel):
    cartDetail: List[CartDetailLine]

class ProductCreate(BaseModel):
    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    price: float = Field(..., ge=0)
    images: List[str] = []

# Dependencies
def get_current_user(token: str = Depends(oauth2_scheme), db: Database = Depends(get_db)) -> dict:
    try:
        payload = jwt_decode(token, JWT_SECRET)
        user_id: str = payload.get("sub")
        if not user_id:
            raise ValueError("No sub")
        oid = ObjectId(user_id)
    except (ValueError, InvalidId, TypeError) as e:
        logger.warning("Rejected token: %s", e)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Could not validate credentials")
    user = db["user"].find_one({"_id": oid})
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return user


def require_admin(user: dict):
    if user.get("role") != 1:
        raise HTTPException(status_code=403, detail="Admin only")


def public_user(user: dict) -> Dict[str, Any]:
    return {
        "_id": str(user["_id"]),
        "email": user["email"],
        "name": user["name"],
        "role": user.get("role", 0),
        "image": user.get("image"),
        "cart": user.get("cart", []),
        "history": user.get("history", []),
    }


def lookup_products(db: Database, ids: List[str]) -> Dict[str, Dict[str, Any]]:
    """Map each requested id to its product; unknown ids are left out."""
    if not ids:
        return {}
    keys = [k for i in ids for k in id_candidates(i)]
    by_key = {p["_id"]: to_public(p) for p in db["product"].find({"_id": {"$in": keys}})}
    found = {}
    for i in ids:
        for k in id_candidates(i):
            if k in by_key:
                found[i] = by_key[k]
                break
    return found


def find_products_by_ids(db: Database, ids: List[str]) -> List[Dict[str, Any]]:
    """Products for `ids` in the same order; unknown ids are skipped."""
    found = lookup_products(db, ids)
    return [found[i] for i in ids if i in found]


def _attach_writers(db: Database, products: List[Dict[str, Any]]):
    writer_ids = {p["writer"] for p in products if isinstance(p.get("writer"), str)}
    if not writer_ids:
        return
    writers = {}
    keys = [k for w in writer_ids for k in id_candidates(w)]
    for u in db["user"].find({"_id": {"$in": keys}}, {"name": 1, "email": 1}):
        writers[str(u["_id"])] = {"_id": str(u["_id"]), "name": u["name"], "email": u["email"]}
    for p in products:
        writer = p.get("writer")
        if not isinstance(writer, str):
            continue
        for key in (writer, writer.lower()):
            if key in writers:
                p["writer"] = writers[key]
                break


def hydrate_cart(db: Database, cart: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    found = lookup_products(db, [line["id"] for line in cart])
    products = []
    for line in cart:
        if line["id"] in found:
            products.append({**found[line["id"]], "quantity": line["quantity"]})
    _attach_writers(db, products)
    return products

# Auth
@app.get("/auth")
def verify_session(current_user: dict = Depends(get_current_user)):
    return public_user(current_user)

@app.post("/register")
def register(payload: RegisterRequest, db: Database = Depends(get_db)):
    email = payload.email.lower()
    if db["user"].find_one({"email": email}):
        raise HTTPException(status_code=400, detail="Email already in use")
    user = User(name=payload.name, email=email, password=hash_password(payload.password), image=payload.image)
    try:
        user_id = create_document(db, "user", user)
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="Email already in use")
    logger.info("Registered user %s", user_id)
    return Response(status_code=200)

@app.post("/login")
def login(payload: LoginRequest, db: Database = Depends(get_db)):
    user = db["user"].find_one({"email": payload.email.lower()})
    if not user:
        logger.warning("Login failed: unknown email")
        raise HTTPException(status_code=400, detail="Auth failed, email not found")
    if not verify_password(payload.password, user.get("password", "")):
        logger.warning("Login failed: wrong password for user %s", user["_id"])
        raise HTTPException(status_code=400, detail="Wrong password")
    access_token = create_access_token({"sub": str(user["_id"])})
    logger.info("User %s logged in", user["_id"])
    return {"user": public_user(user), "accessToken": access_token}

@app.post("/logout")
def logout(current_user: dict = Depends(get_current_user)):
    # tokens stay valid until they expire; nothing to revoke server-side
    return Response(status_code=200)

# Cart
def _increment_cart_line(db: Database, user_id: ObjectId, product_id: str) -> bool:
    res = db["user"].update_one(
        {"_id": user_id, "cart.id": product_id},
        {"$inc": {"cart.$.quantity": 1}},
    )
    return res.matched_count > 0

@app.post("/cart", status_code=201)
def add_to_cart(body: CartAddRequest, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    user_id = current_user["_id"]
    if not _increment_cart_line(db, user_id, body.productId):
        res = db["user"].update_one(
            {"_id": user_id, "cart.id": {"$ne": body.productId}},
            {"$push": {"cart": {"id": body.productId, "quantity": 1, "date": datetime.now(timezone.utc)}}},
        )
        # no match means another request pushed the line between the two updates
        if res.matched_count == 0 and not _increment_cart_line(db, user_id, body.productId):
            if db["user"].find_one({"_id": user_id}, {"_id": 1}) is None:
                raise HTTPException(status_code=401, detail="User not found")
            raise HTTPException(status_code=409, detail="Cart changed during update, try again")
    user = db["user"].find_one({"_id": user_id}, {"cart": 1})
    if user is None:
        raise HTTPException(status_code=401, detail="User not found")
    return user.get("cart", [])

@app.delete("/cart")
def remove_from_cart(productId: str, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    user = db["user"].find_one_and_update(
        {"_id": current_user["_id"]},
        {"$pull": {"cart": {"id": productId}}},
        return_document=ReturnDocument.AFTER,
    )
    if user is None:
        raise HTTPException(status_code=401, detail="User not found")
    cart = user.get("cart", [])
    return {"productInfo": hydrate_cart(db, cart), "cart": cart}

# Checkout
@app.post("/payment")
def checkout(body: CheckoutRequest, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    if not body.cartDetail:
        raise HTTPException(status_code=400, detail="Cart is empty")

    catalog = lookup_products(db, [line.id for line in body.cartDetail])
    missing = [line.id for line in body.cartDetail if line.id not in catalog]
    if missing:
        raise HTTPException(status_code=400, detail=f"Product {missing[0]} not found")

    # title and price come from the catalog, not from the client
    now = datetime.now(timezone.utc)
    history = [
        PurchaseRecord(
            dateOfPurchase=now,
            name=catalog[line.id]["title"],
            id=line.id,
            price=catalog[line.id]["price"],
            quantity=line.quantity,
            paymentId=uuid.uuid4().hex,
        ).model_dump()
        for line in body.cartDetail
    ]

    db["user"].update_one(
        {"_id": current_user["_id"]},
        {"$push": {"history": {"$each": history}}, "$set": {"cart": [], "updated_at": now}},
    )

    payment = Payment(
        user=Buyer(id=str(current_user["_id"]), name=current_user["name"], email=current_user["email"]),
        product=history,
    )
    payment_id = create_document(db, "payment", payment)

    sold: Dict[str, int] = {}
    for record in history:
        sold[record["id"]] = sold.get(record["id"], 0) + record["quantity"]

    # one product at a time; history, cart and payment are already committed
    try:
        for product_id, quantity in sold.items():
            db["product"].update_one({"_id": {"$in": id_candidates(product_id)}}, {"$inc": {"sold": quantity}})
    except PyMongoError as e:
        logger.exception("Sold counter update failed for payment %s", payment_id)
        return JSONResponse(status_code=500, content={"success": False, "err": str(e)})

    logger.info("Payment %s recorded for user %s (%d lines)", payment_id, current_user["_id"], len(history))
    return {"success": True}

@app.get("/payment/history")
def purchase_history(current_user: dict = Depends(get_current_user)):
    return current_user.get("history", [])

# Products
@app.post("/products", status_code=201)
def create_product(body: ProductCreate, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    require_admin(current_user)
    doc = {**body.model_dump(), "writer": str(current_user["_id"]), "sold": 0, "views": 0}
    product_id = create_document(db, "product", doc)
    return {"_id": product_id, **doc}

@app.get("/products")
def list_products(ids: Optional[str] = None, db: Database = Depends(get_db)):
    if ids:
        return find_products_by_ids(db, [i for i in ids.split(",") if i])
    return get_documents(db, "product")

@app.get("/products/{product_id}")
def get_product(product_id: str, db: Database = Depends(get_db)):
    p = db["product"].find_one_and_update(
        {"_id": {"$in": id_candidates(product_id)}},
        {"$inc": {"views": 1}},
        return_document=ReturnDocument.AFTER,
    )
    if not p:
        raise HTTPException(status_code=404, detail="Product not found")
    products = [to_public(p)]
    _attach_writers(db, products)
    return products[0]

# Health + test
@app.get("/")
def root():
    return {"message": "Shop API running"}

@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "collections": []
    }
    try:
        if database.db is not None:
            response["collections"] = database.db.list_collection_names()[:10]
    except Exception as e:
        response["error"] = str(e)[:120]
    return response


if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
