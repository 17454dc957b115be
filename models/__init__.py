from models.base import Base
from models.user import User
from models.company import Company, UserCompanyAssignment
from models.signing_request import SigningAuditLog, SigningRequest, SigningStatus
from models.intake import ScannedDocument, WhatsAppPendingSelection

__all__ = [
    "Base",
    "User",
    "Company",
    "UserCompanyAssignment",
    "SigningRequest",
    "SigningAuditLog",
    "SigningStatus",
    "ScannedDocument",
    "WhatsAppPendingSelection",
]
