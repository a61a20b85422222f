"""Password hashing, bearer tokens and the session dependencies used by every protected route."""

import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from bson import ObjectId
from fastapi import Depends, HTTPException
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from loguru import logger
from passlib.context import CryptContext
from pymongo.database import Database

from config import get_settings
from database import get_db, sanitize, to_obj_id

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 24 * 60

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")


def verify_password_policy(password: str) -> None:
    # 8-64 chars, at least one uppercase and one special char
    if not (8 <= len(password) <= 64):
        raise HTTPException(status_code=422, detail="Password must be 8-64 characters long")
    if not re.search(r"[A-Z]", password):
        raise HTTPException(status_code=422, detail="Password must include at least one uppercase letter")
    if not re.search(r"[^A-Za-z0-9]", password):
        raise HTTPException(status_code=422, detail="Password must include at least one special character")


def hash_password(password: str) -> str:
    verify_password_policy(password)
    return pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    if not hashed:
        return False
    return pwd_context.verify(password, hashed)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, get_settings().secret_key, algorithm=ALGORITHM)


def role_for_email(email: str) -> str:
    admin_email = get_settings().admin_email
    if admin_email and email.lower() == admin_email.lower():
        return "admin"
    return "customer"


async def get_current_user(
    token: str = Depends(oauth2_scheme),
    db: Database = Depends(get_db),
) -> Dict[str, Any]:
    credentials_exception = HTTPException(
        status_code=401,
        detail="Unauthorized - invalid token",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, get_settings().secret_key, algorithms=[ALGORITHM])
        user_id: str = payload.get("sub")
        if user_id is None or not ObjectId.is_valid(user_id):
            raise credentials_exception
    except JWTError:
        raise credentials_exception
    user = db["user"].find_one({"_id": to_obj_id(user_id)})
    if not user:
        logger.warning("Token subject {} has no matching user", user_id)
        raise HTTPException(status_code=404, detail="User not found")
    return sanitize(user)


async def require_admin(current_user=Depends(get_current_user)) -> Dict[str, Any]:
    if current_user.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Forbidden - admin access only")
    return current_user
