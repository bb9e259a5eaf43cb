"""
Database Schemas for the shop

Each Pydantic model represents a MongoDB collection (or a document embedded
in one). Collection name is the lowercase of the class name.
"""
from typing import List, Literal, Optional
from pydantic import BaseModel, Field, EmailStr
from datetime import datetime

class CartLine(BaseModel):
    id: str
    quantity: int = Field(1, ge=1)
    date: datetime

class PurchaseRecord(BaseModel):
    dateOfPurchase: datetime
    name: str
    id: str
    price: float = Field(..., ge=0)
    quantity: int = Field(..., ge=1)
    paymentId: str

class User(BaseModel):
    name: str
    email: EmailStr
    password: str  # pbkdf2 hash, never the plaintext
    role: Literal[0, 1] = 0  # 0 regular, 1 admin
    image: Optional[str] = None
    cart: List[CartLine] = []
    history: List[PurchaseRecord] = []

class Product(BaseModel):
    title: str
    description: Optional[str] = None
    price: float = Field(..., ge=0)
    images: List[str] = []
    writer: Optional[str] = None
    sold: int = 0
    views: int = 0

class Buyer(BaseModel):
    id: str
    name: str
    email: EmailStr

class Payment(BaseModel):
    user: Buyer
    product: List[PurchaseRecord]
