import datetime as dt
from typing import Optional

import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pymongo.database import Database
from werkzeug.security import check_password_hash, generate_password_hash

from config import settings
from database import get_db, parse_object_id
from errors import ForbiddenError, NotFoundError, UnauthorizedError

bearer_scheme = HTTPBearer(auto_error=False)


def hash_password(password: str) -> str:
    return generate_password_hash(password)


def verify_password(password: str, password_hash: Optional[str]) -> bool:
    if not password_hash:
        return False
    return check_password_hash(password_hash, password)


def create_access_token(user_id: str) -> str:
    now = dt.datetime.now(dt.timezone.utc)
    payload = {
        "sub": user_id,
        "iat": int(now.timestamp()),
        "exp": int((now + settings.jwt_expires_delta).timestamp()),
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm="HS256")


def decode_access_token(token: str) -> str:
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        raise UnauthorizedError("Token expired")
    except jwt.InvalidTokenError:
        raise UnauthorizedError("Not authorized, token failed")
    user_id = payload.get("sub")
    if not user_id:
        raise UnauthorizedError("Invalid token payload")
    return user_id


def get_current_user(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: Database = Depends(get_db),
) -> dict:
    if creds is None or not creds.credentials:
        raise UnauthorizedError("Not authorized, no token")
    user_id = decode_access_token(creds.credentials)
    try:
        oid = parse_object_id(user_id, "User")
    except NotFoundError:
        raise UnauthorizedError("Invalid token payload")
    user = db["user"].find_one({"_id": oid}, {"password": 0})
    if not user:
        raise UnauthorizedError("User not found")
    return user


def require_admin(user: dict = Depends(get_current_user)) -> dict:
    if settings.ENFORCE_ADMIN_ROLE and user.get("role") != "admin":
        raise ForbiddenError("Admin access required")
    return user
