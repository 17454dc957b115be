import uuid
from sqlalchemy import Boolean, Column, DateTime, String, Uuid
from sqlalchemy.orm import relationship
from models.base import Base, utcnow

class User(Base):
    __tablename__ = "users"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4, index=True)
    first_name = Column(String, nullable=False)
    last_name = Column(String, nullable=False)
    phone = Column(String, nullable=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    hashed_password = Column(String, nullable=False)
    whatsapp_authorized = Column(Boolean, nullable=False, default=False)  # may submit documents over WhatsApp
    created_at = Column(DateTime(timezone=True), default=utcnow)

    company_assignments = relationship("UserCompanyAssignment", back_populates="user", cascade="all, delete")
