import uuid
from typing import List
from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from database import get_db
from models.company import Company, UserCompanyAssignment
from schemas.company import CompanyCreate, CompanyResponse
from utils.auth import get_current_user

router = APIRouter()


@router.post("", response_model=CompanyResponse, status_code=status.HTTP_201_CREATED)
async def create_company(
    data: CompanyCreate,
    user_id: uuid.UUID = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Create a company; the creator becomes its owner."""
    company = Company(name=data.name.strip())
    db.add(company)
    await db.flush()
    db.add(UserCompanyAssignment(user_id=user_id, company_id=company.id, role="owner"))
    await db.commit()

    return CompanyResponse(id=company.id, name=company.name, role="owner", created_at=company.created_at)


@router.get("", response_model=List[CompanyResponse])
async def list_companies(
    user_id: uuid.UUID = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    result = await db.execute(
        select(Company, UserCompanyAssignment.role)
        .join(UserCompanyAssignment, UserCompanyAssignment.company_id == Company.id)
        .where(UserCompanyAssignment.user_id == user_id)
        .order_by(Company.name)
    )
    return [
        CompanyResponse(id=company.id, name=company.name, role=role, created_at=company.created_at)
        for company, role in result.all()
    ]
