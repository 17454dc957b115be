import uuid
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, EmailStr, Field, model_validator


class SigningFieldType(str, Enum):
    FIRST_NAME = "first_name"
    LAST_NAME = "last_name"
    PHONE = "phone"
    EMAIL = "email"
    SIGNATURE = "signature"
    DATE = "date"
    TEXT = "text"
    ID_NUMBER = "id_number"


class SigningField(BaseModel):
    """
    A placement box on the document. Coordinates are fractions of the page size,
    measured from the top-left corner, so they survive any rendering resolution.
    """

    id: str = Field(min_length=1)
    type: SigningFieldType
    label: str = ""
    page: int = Field(default=1, ge=1)
    x: float = Field(ge=0, le=1)
    y: float = Field(ge=0, le=1)
    width: float = Field(gt=0, le=1)
    height: float = Field(gt=0, le=1)
    required: bool = True

    @model_validator(mode="after")
    def check_inside_page(self):
        if self.x + self.width > 1.0001 or self.y + self.height > 1.0001:
            raise ValueError(f"Field {self.id} extends past the page edge")
        return self


class SigningRequestCreate(BaseModel):
    fields: List[SigningField] = []
    recipient_name: Optional[str] = None
    recipient_phone: str = Field(min_length=1)
    recipient_email: Optional[EmailStr] = None
    expiry_days: Optional[int] = Field(default=None, ge=1, le=365)


class SigningRequestUpdate(BaseModel):
    fields: Optional[List[SigningField]] = None
    recipient_name: Optional[str] = None
    recipient_phone: Optional[str] = Field(default=None, min_length=1)
    recipient_email: Optional[EmailStr] = None
    expiry_days: Optional[int] = Field(default=None, ge=1, le=365)


class SigningRequestResponse(BaseModel):
    id: uuid.UUID
    company_id: uuid.UUID
    created_by: uuid.UUID
    file_name: str
    file_type: Optional[str] = None
    fields: List[SigningField]
    recipient_name: Optional[str] = None
    recipient_phone: str
    recipient_email: Optional[str] = None
    status: str
    status_label: str
    status_variant: str
    signing_url: str
    expires_at: datetime
    whatsapp_sent_at: Optional[datetime] = None
    signed_at: Optional[datetime] = None
    has_signed_file: bool
    signed_field_values: Optional[Dict[str, str]] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class PublicSigningRequest(BaseModel):
    """What the recipient sees; no owner or tenant identifiers."""

    id: uuid.UUID
    file_name: str
    file_type: Optional[str] = None
    fields: List[SigningField]
    recipient_name: Optional[str] = None
    status: str
    expires_at: datetime
    company_name: Optional[str] = None


class PublicSigningView(BaseModel):
    signing_request: PublicSigningRequest
    document_url: str


class CompleteSigningRequest(BaseModel):
    field_values: Dict[str, str]


class CompleteSigningResponse(BaseModel):
    success: bool
    signed_at: datetime


class DownloadUrlResponse(BaseModel):
    url: str
    expires_in: int
