"""
Authentication utilities

Bearer JWTs (HS256). Claims: sub (account id), anonymous, is_admin.
Accounts need no users-collection record; the credits store creates them
on first access.
"""
from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
import jwt
from datetime import datetime, timezone, timedelta
import os
import uuid

security = HTTPBearer()
JWT_SECRET = os.environ.get('JWT_SECRET', 'hairstyle-credits-secret-key-change-in-production')
JWT_ALGORITHM = "HS256"
TOKEN_TTL_DAYS = 7


def create_token(account_id: str, anonymous: bool = False, is_admin: bool = False) -> str:
    payload = {
        "sub": account_id,
        "anonymous": anonymous,
        "is_admin": is_admin,
        "exp": datetime.now(timezone.utc) + timedelta(days=TOKEN_TTL_DAYS)
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def create_anonymous_token() -> str:
    """Token for a fresh anonymous identity."""
    return create_token(f"anon_{uuid.uuid4().hex}", anonymous=True)


def decode_token(token: str) -> dict:
    """Decode a token into the user dict routes receive."""
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail={"error_code": "unauthenticated", "message": "Token expired"})
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail={"error_code": "unauthenticated", "message": "Invalid token"})

    account_id = payload.get("sub")
    if not account_id:
        raise HTTPException(status_code=401, detail={"error_code": "unauthenticated", "message": "Invalid token"})

    return {
        "id": account_id,
        "is_anonymous": bool(payload.get("anonymous", False)),
        "is_admin": bool(payload.get("is_admin", False))
    }


async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)):
    """Verify JWT token and return current user"""
    return decode_token(credentials.credentials)


async def get_admin_user(user: dict = Depends(get_current_user)):
    """Check if user is admin"""
    if not user.get("is_admin"):
        raise HTTPException(status_code=403, detail={"error_code": "unauthenticated", "message": "Admin access required"})
    return user
