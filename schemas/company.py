import uuid
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field


class CompanyCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)


class CompanyResponse(BaseModel):
    id: uuid.UUID
    name: str
    role: str
    created_at: Optional[datetime] = None
