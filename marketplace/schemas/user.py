from typing import Literal, Optional
from pydantic import BaseModel, EmailStr, UUID4
from datetime import datetime


# Shared properties
class UserBase(BaseModel):
    email: EmailStr
    full_name: str
    phone: Optional[str] = None


# Properties to receive via API on creation (POST /auth/register)
class UserCreate(UserBase):
    password: str
    role: Literal["customer", "seller"] = "customer"
    # Seller profile, required when role == "seller"
    business_name: Optional[str] = None
    business_address: Optional[str] = None
    postcode: Optional[str] = None
    city: Optional[str] = None


# Properties to receive via API on admin creation (POST /auth/admin/register)
class AdminCreate(UserBase):
    password: str
    admin_secret: str


# Properties to receive via API on update (PATCH /me)
class UserUpdate(BaseModel):
    full_name: Optional[str] = None
    phone: Optional[str] = None


class UserInDBBase(UserBase):
    id: UUID4
    role: str
    is_active: bool
    created_at: datetime
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# Properties returned via API
class User(UserInDBBase):
    pass


class Token(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str
    user: User


class TokenPayload(BaseModel):
    sub: Optional[str] = None
    role: Optional[str] = None
