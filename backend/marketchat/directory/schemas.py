"""Pydantic schemas for directory records."""
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class UserRole(str, Enum):
    """Marketplace roles. ADMIN is the elevated role for chat authorization."""
    BUYER = "buyer"
    FARMER = "farmer"
    ADMIN = "admin"


class UserRecord(BaseModel):
    id: str
    name: str
    email: Optional[str] = None
    role: str = UserRole.BUYER.value
    profile_image: str = Field(default="default.jpg")


class ProductRecord(BaseModel):
    id: str
    name: str
    price: float = 0.0
    images: List[str] = Field(default_factory=list)


class OrderRecord(BaseModel):
    id: str
    status: str = "pending"
    total_amount: float = 0.0
