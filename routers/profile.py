import uuid
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import Settings
from database import get_db
from models.company import Company, UserCompanyAssignment
from models.user import User
from schemas.profile import CompanyMembership, ProfileResponse, ProfileUpdate
from services.exceptions import InvalidRequest, NotFound
from services.whatsapp import phone_digits
from utils.auth import get_current_user, get_settings

router = APIRouter()


async def _load_profile(user_id: uuid.UUID, db: AsyncSession) -> ProfileResponse:
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalars().first()

    if not user:
        raise NotFound("User not found")

    memberships = await db.execute(
        select(Company, UserCompanyAssignment.role)
        .join(UserCompanyAssignment, UserCompanyAssignment.company_id == Company.id)
        .where(UserCompanyAssignment.user_id == user_id)
        .order_by(Company.name)
    )

    return ProfileResponse(
        id=user.id,
        first_name=user.first_name,
        last_name=user.last_name,
        phone=user.phone,
        email=user.email,
        whatsapp_authorized=user.whatsapp_authorized,
        companies=[CompanyMembership(id=c.id, name=c.name, role=role) for c, role in memberships.all()],
    )


@router.get("/profile", response_model=ProfileResponse)
async def get_profile(
    user_id: uuid.UUID = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Get the current user's profile."""
    return await _load_profile(user_id, db)


@router.put("/profile", response_model=ProfileResponse)
async def update_profile(
    profile_data: ProfileUpdate,
    user_id: uuid.UUID = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Update the current user's profile. WhatsApp intake matches senders by this phone number."""
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalars().first()

    if not user:
        raise NotFound("User not found")

    if profile_data.first_name is not None:
        user.first_name = profile_data.first_name
    if profile_data.last_name is not None:
        user.last_name = profile_data.last_name
    if profile_data.phone is not None:
        if profile_data.phone and not phone_digits(profile_data.phone, settings.default_country_code):
            raise InvalidRequest("Invalid phone number")
        user.phone = profile_data.phone or None
    if profile_data.whatsapp_authorized is not None:
        if profile_data.whatsapp_authorized and not user.phone:
            raise InvalidRequest("Set a phone number before enabling WhatsApp")
        user.whatsapp_authorized = profile_data.whatsapp_authorized

    await db.commit()

    return await _load_profile(user_id, db)
