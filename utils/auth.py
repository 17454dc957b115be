import uuid
from typing import Optional
import jwt
import datetime
from passlib.context import CryptContext
from fastapi.security import OAuth2PasswordBearer
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import Settings
from database import get_db
from models.company import UserCompanyAssignment
from services.exceptions import PermissionDenied, Unauthorized

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login", auto_error=False)


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password.strip(), hashed_password.strip())


def create_access_token(settings: Settings, data: dict, expires_delta: Optional[datetime.timedelta] = None):
    to_encode = data.copy()
    expire = datetime.datetime.now(datetime.UTC) + (
        expires_delta or datetime.timedelta(minutes=settings.access_token_expire_minutes)
    )
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.jwt_algorithm)


def decode_access_token(settings: Settings, token: str):
    try:
        return jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise Unauthorized("Token expired")
    except jwt.InvalidTokenError:
        raise Unauthorized("Invalid token")


async def get_current_user(
    token: Optional[str] = Depends(oauth2_scheme), settings: Settings = Depends(get_settings)
) -> uuid.UUID:
    if not token:
        raise Unauthorized("Not authenticated")
    payload = decode_access_token(settings, token)
    if "sub" not in payload:
        raise Unauthorized("Invalid token data")

    try:
        return uuid.UUID(payload["sub"])
    except ValueError:
        raise Unauthorized("Invalid user ID format")


async def require_company_member(
    company_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> uuid.UUID:
    """Resolve the caller and make sure they work for the company in the path."""
    result = await db.execute(
        select(UserCompanyAssignment).where(
            UserCompanyAssignment.user_id == user_id, UserCompanyAssignment.company_id == company_id
        )
    )
    if not result.scalars().first():
        raise PermissionDenied("You do not have access to this company")
    return user_id
