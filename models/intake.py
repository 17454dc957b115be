import uuid
from sqlalchemy import Column, DateTime, ForeignKey, Integer, JSON, String, Text, Uuid
from models.base import Base, utcnow


class ScannedDocument(Base):
    """A document received over WhatsApp, waiting for the external scanning service."""

    __tablename__ = "scanned_documents"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4, index=True)
    company_id = Column(Uuid, ForeignKey("companies.id", ondelete="CASCADE"), nullable=False, index=True)
    uploaded_by = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    file_name = Column(String, nullable=False)
    file_url = Column(Text, nullable=False)
    file_type = Column(String, nullable=False)
    file_size = Column(Integer, nullable=False)
    status = Column(String, nullable=False, default="pending_scan")
    source = Column(String, nullable=False, default="whatsapp")
    whatsapp_chat_id = Column(String, nullable=True)
    whatsapp_message_id = Column(String, unique=True, nullable=True, index=True)
    whatsapp_sender_name = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class WhatsAppPendingSelection(Base):
    """A file parked until a multi-company sender replies with the company number."""

    __tablename__ = "whatsapp_pending_selections"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4, index=True)
    chat_id = Column(String, nullable=False, index=True)
    phone_number = Column(String, nullable=False)
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    organizations = Column(JSON, nullable=False)  # [{"id": ..., "name": ...}] in the order offered
    message_id = Column(String, nullable=False)
    file_storage_path = Column(Text, nullable=False)
    media_type = Column(String, nullable=False)
    file_name = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    expires_at = Column(DateTime(timezone=True), nullable=False)
