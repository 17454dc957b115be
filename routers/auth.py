from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import Settings
from database import get_db
from models.user import User
from schemas.user import TokenResponse, UserCreate, UserLogin, UserResponse
from services.exceptions import InvalidRequest
from utils.auth import create_access_token, get_settings, hash_password, verify_password

router = APIRouter()


@router.post("/register", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
async def register(user_data: UserCreate, db: AsyncSession = Depends(get_db)):

    # Check if user exists
    result = await db.execute(select(User).where(User.email == user_data.email))
    if result.scalars().first():
        raise InvalidRequest("User already exists")

    new_user = User(
        first_name=user_data.first_name,
        last_name=user_data.last_name,
        phone=user_data.phone,
        email=user_data.email,
        hashed_password=hash_password(user_data.password),
    )

    db.add(new_user)
    await db.commit()
    await db.refresh(new_user)

    return {"message": "User registered successfully. Please proceed to login.", "id": new_user.id}


@router.post("/login", response_model=TokenResponse)
async def login(
    user_data: UserLogin, db: AsyncSession = Depends(get_db), settings: Settings = Depends(get_settings)
):
    """Handles user login and returns JWT access token."""

    result = await db.execute(select(User).where(User.email == user_data.email))
    user = result.scalars().first()

    if not user or not verify_password(user_data.password, user.hashed_password):
        raise InvalidRequest("Invalid credentials")

    access_token = create_access_token(settings, data={"sub": str(user.id)})
    return {"access_token": access_token, "token_type": "bearer"}
