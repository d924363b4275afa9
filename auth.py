import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from bson import ObjectId
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext

from database import db
from schemas import Role

logger = logging.getLogger(__name__)

# Auth settings
SECRET_KEY = os.getenv("SECRET_KEY", "secret-key-change-me")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24))

BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", 12))

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=BCRYPT_ROUNDS)
# auto_error=False so a missing header gets our own message instead of "Not authenticated"
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)

# Which roles may perform which operation. Every role-restricted route goes
# through require_permission() with one of these keys.
PERMISSIONS = {
    "product:create": {Role.vendor},
    "product:list_own": {Role.vendor},
    "product:update": {Role.vendor},
    "product:delete": {Role.vendor},
    "order:create": {Role.customer, Role.vendor, Role.admin},
    "order:list_own": {Role.customer, Role.vendor, Role.admin},
    "order:list_vendor": {Role.vendor},
    "order:cancel": {Role.customer, Role.vendor, Role.admin},
    "bargain:start": {Role.customer},
    "bargain:list_customer": {Role.customer},
    "bargain:list_vendor": {Role.vendor},
    "bargain:view": {Role.customer, Role.vendor},
    "bargain:message": {Role.customer, Role.vendor},
    "bargain:counter": {Role.customer, Role.vendor},
    "bargain:accept": {Role.customer, Role.vendor},
    "bargain:reject": {Role.customer, Role.vendor},
    "bargain:customer_accept": {Role.customer},
    "bargain:customer_reject": {Role.customer},
    "bargain:delete": {Role.customer, Role.vendor},
    "cart:manage": {Role.customer},
}


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password):
    return pwd_context.hash(password)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_access_token(token: str) -> Dict[str, Any]:
    return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])


def public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    """Account document as returned to clients: string id, no password hash."""
    out = {k: v for k, v in user.items() if k not in ("_id", "password_hash")}
    out["id"] = str(user["_id"])
    return out


def get_current_user(token: Optional[str] = Depends(oauth2_scheme)) -> Dict[str, Any]:
    if not token:
        raise _unauthorized("No token, authorization denied")
    try:
        payload = decode_access_token(token)
    except JWTError as e:
        logger.info("Rejected token: %s", e)
        raise _unauthorized("Invalid token")

    user_id = payload.get("sub")
    if not user_id or not ObjectId.is_valid(user_id):
        raise _unauthorized("Invalid token")
    if db is None:
        raise HTTPException(500, "Database not configured")

    user = db["user"].find_one({"_id": ObjectId(user_id)})
    if not user:
        raise _unauthorized("User not found")
    return public_user(user)


def require_roles(*roles: Role):
    allowed = {Role(r).value for r in roles}

    def checker(user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
        if user.get("role") not in allowed:
            raise HTTPException(status.HTTP_403_FORBIDDEN, "Access denied")
        return user

    return checker


def require_permission(operation: str):
    return require_roles(*PERMISSIONS[operation])
