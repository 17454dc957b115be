import uuid
from sqlalchemy import Column, DateTime, ForeignKey, String, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship
from models.base import Base, utcnow

class Company(Base):
    __tablename__ = "companies"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4, index=True)
    name = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    # Relationship to the users working for this company (tenant)
    assignments = relationship("UserCompanyAssignment", back_populates="company", cascade="all, delete-orphan")


class UserCompanyAssignment(Base):
    __tablename__ = "user_company_assignments"
    __table_args__ = (UniqueConstraint("user_id", "company_id", name="uq_user_company"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4, index=True)
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    company_id = Column(Uuid, ForeignKey("companies.id", ondelete="CASCADE"), nullable=False, index=True)
    role = Column(String, nullable=False, default="member")
    created_at = Column(DateTime(timezone=True), default=utcnow)

    user = relationship("User", back_populates="company_assignments")
    company = relationship("Company", back_populates="assignments")
