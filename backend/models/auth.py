"""
JustTry CRM - Auth & user models
Roles are presets. Permissions are the real authority.
"""

from enum import Enum
from pydantic import BaseModel, ConfigDict, field_validator
from typing import Optional, List

from .lead import ServiceType


class UserRole(str, Enum):
    SALES = "sales"
    BACK_OFFICE = "back-office"
    ADMIN = "admin"


VALID_ROLES = [r.value for r in UserRole]


class User(BaseModel):
    """User as stored (password hash excluded)"""
    model_config = ConfigDict(extra="ignore")

    id: str
    name: str
    email: str
    role: UserRole
    avatar: Optional[str] = None
    service_types: List[ServiceType] = []  # back-office only: filters visible leads
    is_active: bool = True


class UserLogin(BaseModel):
    email: str
    password: str


class UserCreate(BaseModel):
    name: str
    email: str
    password: str
    role: UserRole = UserRole.SALES
    avatar: Optional[str] = None
    service_types: List[ServiceType] = []

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v):
        v = v.strip().lower()
        if "@" not in v:
            raise ValueError(f"Invalid email: {v}")
        return v

    @field_validator("password")
    @classmethod
    def password_length(cls, v):
        if len(v) < 8:
            raise ValueError("Password must be at least 8 characters")
        return v


class UserUpdate(BaseModel):
    name: Optional[str] = None
    role: Optional[UserRole] = None
    avatar: Optional[str] = None
    service_types: Optional[List[ServiceType]] = None
    is_active: Optional[bool] = None
    password: Optional[str] = None

    @field_validator("password")
    @classmethod
    def password_length(cls, v):
        if v is not None and len(v) < 8:
            raise ValueError("Password must be at least 8 characters")
        return v
