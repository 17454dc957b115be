import uuid
from typing import List, Optional
from pydantic import BaseModel, EmailStr


class CompanyMembership(BaseModel):
    id: uuid.UUID
    name: str
    role: str


class ProfileResponse(BaseModel):
    id: uuid.UUID
    first_name: str
    last_name: str
    phone: Optional[str] = None
    email: EmailStr
    whatsapp_authorized: bool
    companies: List[CompanyMembership] = []

    class Config:
        from_attributes = True


class ProfileUpdate(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    whatsapp_authorized: Optional[bool] = None
