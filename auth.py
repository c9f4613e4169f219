"""
Admin authentication and school scoping.

The bearer token identifies an admin; the resulting AdminContext is passed
explicitly into every operation that filters or authorizes by role or school.
"""
from datetime import timedelta
from typing import List, Optional

import jwt
from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer
from passlib.context import CryptContext
from pydantic import BaseModel, Field

import config
from database import get_db, utcnow
from errors import AuthorizationError, ForbiddenError

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


class AdminContext(BaseModel):
    id: str
    email: str
    role: str = "admin"
    can_view_all_schools: bool = False
    assigned_schools: List[str] = Field(default_factory=list)
    name: Optional[str] = None

    @property
    def is_super_admin(self) -> bool:
        return self.role == "super_admin"

    @property
    def sees_all_schools(self) -> bool:
        return self.is_super_admin or self.can_view_all_schools

    @classmethod
    def from_document(cls, doc: dict) -> "AdminContext":
        return cls(
            id=str(doc["_id"]),
            email=doc["email"],
            role=doc.get("role", "admin"),
            can_view_all_schools=bool((doc.get("permissions") or {}).get("canViewAllSchools")),
            assigned_schools=list(doc.get("assignedSchools") or []),
            name=doc.get("name"),
        )


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    return pwd_context.verify(password, hashed)


def create_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = utcnow() + (expires_delta or timedelta(minutes=config.TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, config.JWT_SECRET, algorithm=config.JWT_ALGO)


def authenticate(db, email: str, password: str) -> AdminContext:
    admin = db["admin"].find_one({"email": email})
    if not admin or not admin.get("isActive", True) or not verify_password(password, admin.get("password_hash", "")):
        raise AuthorizationError("Incorrect email or password")
    return AdminContext.from_document(admin)


def get_current_admin(token: str = Depends(oauth2_scheme), db=Depends(get_db)) -> AdminContext:
    try:
        payload = jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGO])
    except jwt.ExpiredSignatureError:
        raise AuthorizationError("Token expired")
    except jwt.InvalidTokenError:
        raise AuthorizationError("Invalid token")
    email = payload.get("sub")
    if not email:
        raise AuthorizationError("Invalid token")
    admin = db["admin"].find_one({"email": email})
    if not admin or not admin.get("isActive", True):
        raise AuthorizationError("Admin not found")
    return AdminContext.from_document(admin)


def require_super_admin(admin: AdminContext = Depends(get_current_admin)) -> AdminContext:
    if not admin.is_super_admin:
        raise ForbiddenError("Super admin access required")
    return admin


def school_filter(admin: AdminContext) -> dict:
    """Mongo filter limiting registrations to the schools an admin may see."""
    if admin.sees_all_schools:
        return {}
    if admin.assigned_schools:
        return {
            "$or": [
                {"formDataStructured.personalInfo.school": {"$in": admin.assigned_schools}},
                {"school": {"$in": admin.assigned_schools}},
            ]
        }
    return {"_id": None}


def can_access_school(admin: AdminContext, school: str) -> bool:
    return admin.sees_all_schools or school in admin.assigned_schools
