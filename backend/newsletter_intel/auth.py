"""API auth: JWT bearer token or API key. Returns the User for protected routes."""
from datetime import datetime, timedelta
from typing import Optional

from fastapi import Depends, HTTPException, status, Query
from fastapi.security import APIKeyHeader, HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .config import settings
from .database import get_db
from .models import User


class TokenData(BaseModel):
    sub: Optional[str] = None  # user_id
    email: Optional[str] = None
    exp: Optional[datetime] = None


api_key_header = APIKeyHeader(name=settings.api_key_header, auto_error=False)
http_bearer = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def create_access_token(user_id: int, email: Optional[str] = None) -> str:
    if not settings.secret_key:
        raise ValueError("SECRET_KEY not set")
    expire = datetime.utcnow() + timedelta(minutes=settings.jwt_expire_minutes)
    to_encode = {"sub": str(user_id), "email": email, "exp": expire}
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.jwt_algorithm)


def verify_token(token: str) -> Optional[TokenData]:
    if not settings.secret_key:
        return None
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])
        exp = payload.get("exp")
        return TokenData(
            sub=payload.get("sub"),
            email=payload.get("email"),
            exp=datetime.utcfromtimestamp(exp) if exp else None,
        )
    except JWTError:
        return None


async def get_user_by_id(db: AsyncSession, user_id: int) -> Optional[User]:
    result = await db.execute(select(User).where(User.id == user_id))
    return result.scalars().first()


async def _user_from_token(db: AsyncSession, token: str) -> Optional[User]:
    data = verify_token(token)
    if not data or not data.sub:
        return None
    try:
        uid = int(data.sub)
    except ValueError:
        return None
    return await get_user_by_id(db, uid)


async def get_current_user(
    db: AsyncSession = Depends(get_db),
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(http_bearer),
    api_key: Optional[str] = Depends(api_key_header),
) -> User:
    """
    Validate API key or JWT.

    No anonymous mode: API keys must map to a specific user via API_KEY_USER_ID.
    """
    if not settings.secret_key and not settings.api_key:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Auth not configured. Set SECRET_KEY (JWT) or API_KEY (+ API_KEY_USER_ID).",
        )

    if settings.api_key and api_key and api_key == settings.api_key:
        if settings.api_key_user_id is None:
            raise _unauthorized("API key is enabled but API_KEY_USER_ID is not set.")
        user = await get_user_by_id(db, settings.api_key_user_id)
        if user:
            return user
        raise _unauthorized("API key user not found")

    if credentials and credentials.credentials:
        if not settings.secret_key:
            raise _unauthorized("JWT auth is not enabled (SECRET_KEY not set).")
        user = await _user_from_token(db, credentials.credentials)
        if user:
            return user

    raise _unauthorized("Invalid or missing credentials")


async def get_current_user_required(current_user: User = Depends(get_current_user)) -> User:
    return current_user


async def get_current_user_for_sse(
    token: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(http_bearer),
    api_key: Optional[str] = Depends(api_key_header),
) -> User:
    """Auth for SSE: accept JWT from ?token= (EventSource can't set headers) or Bearer/API key."""
    if token:
        user = await _user_from_token(db, token)
        if user:
            return user
    return await get_current_user(db=db, credentials=credentials, api_key=api_key)
