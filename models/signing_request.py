# models/signing_request.py
import uuid
import enum
from sqlalchemy import Column, DateTime, Enum, ForeignKey, JSON, String, Text, Uuid
from sqlalchemy.orm import relationship
from models.base import Base, utcnow


class SigningStatus(str, enum.Enum):
    DRAFT = "draft"
    SENT = "sent"
    OPENED = "opened"
    SIGNED = "signed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({SigningStatus.SIGNED, SigningStatus.EXPIRED, SigningStatus.CANCELLED})


class SigningRequest(Base):
    __tablename__ = "signing_requests"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4, index=True)
    company_id = Column(Uuid, ForeignKey("companies.id", ondelete="CASCADE"), nullable=False, index=True)
    created_by = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    file_name = Column(String, nullable=False)
    file_url = Column(Text, nullable=False)  # storage path, never a public URL
    file_type = Column(String, nullable=True)
    fields = Column(JSON, nullable=False, default=list)

    recipient_name = Column(String, nullable=True)
    recipient_phone = Column(String, nullable=False)
    recipient_email = Column(String, nullable=True)

    access_token = Column(String(64), unique=True, nullable=False, index=True)
    status = Column(
        Enum(SigningStatus, native_enum=False, length=16, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=SigningStatus.DRAFT,
    )
    expires_at = Column(DateTime(timezone=True), nullable=False)
    whatsapp_sent_at = Column(DateTime(timezone=True), nullable=True)

    signed_at = Column(DateTime(timezone=True), nullable=True)
    signed_file_url = Column(Text, nullable=True)
    signed_field_values = Column(JSON, nullable=True)
    signer_ip = Column(String, nullable=True)
    signer_user_agent = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    audit_entries = relationship("SigningAuditLog", back_populates="signing_request", passive_deletes=True)


class SigningAuditLog(Base):
    __tablename__ = "signing_audit_log"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4, index=True)
    signing_request_id = Column(
        Uuid, ForeignKey("signing_requests.id", ondelete="CASCADE"), nullable=False, index=True
    )
    event = Column(String, nullable=False)
    details = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    signing_request = relationship("SigningRequest", back_populates="audit_entries")
