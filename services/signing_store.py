import logging
import time
import uuid
from datetime import datetime, timedelta
from pathlib import PurePosixPath
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings
from models.base import utcnow
from models.signing_request import SigningAuditLog, SigningRequest, SigningStatus
from schemas.signing import SigningRequestCreate, SigningRequestUpdate
from services.exceptions import NotFound, PermissionDenied, StorageError
from services.storage import StorageBackend
from utils.tokens import generate_token

logger = logging.getLogger(__name__)


def original_storage_path(company_id: uuid.UUID, file_name: str) -> str:
    ext = PurePosixPath(file_name).suffix.lstrip(".").lower() or "bin"
    return f"{company_id}/signing/{int(time.time() * 1000)}-{generate_token(7).lower()}.{ext}"


def signed_storage_path(company_id: uuid.UUID, file_name: str) -> str:
    stem = PurePosixPath(file_name).stem or "document"
    return f"{company_id}/signing/signed/{stem}-signed-{int(time.time() * 1000)}.pdf"


class SigningRequestStore:
    """Persistence for signing requests, their files and their audit trail."""

    def __init__(self, db: AsyncSession, storage: StorageBackend, settings: Settings):
        self.db = db
        self.storage = storage
        self.settings = settings

    async def _commit(self, action: str):
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise StorageError(f"Could not {action}: {getattr(e, 'orig', e)}")

    async def create(
        self,
        company_id: uuid.UUID,
        user_id: uuid.UUID,
        file_name: str,
        content: bytes,
        content_type: Optional[str],
        params: SigningRequestCreate,
    ) -> SigningRequest:
        """
        Upload the document, then insert the draft record.

        If the insert fails the uploaded object stays behind; it is logged, not removed.
        """
        path = original_storage_path(company_id, file_name)
        await self.storage.upload(path, content, content_type)

        expiry_days = params.expiry_days or self.settings.default_expiry_days
        signing_request = SigningRequest(
            company_id=company_id,
            created_by=user_id,
            file_name=file_name,
            file_url=path,
            file_type=content_type,
            fields=[f.model_dump(mode="json") for f in params.fields],
            recipient_name=params.recipient_name or None,
            recipient_phone=params.recipient_phone,
            recipient_email=params.recipient_email or None,
            access_token=generate_token(self.settings.access_token_length),
            status=SigningStatus.DRAFT,
            expires_at=utcnow() + timedelta(days=expiry_days),
        )
        try:
            self.db.add(signing_request)
            await self.db.flush()
            self.db.add(SigningAuditLog(signing_request_id=signing_request.id, event="created"))
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.warning("Insert failed after upload, storage object %s is orphaned", path)
            raise StorageError(f"Could not create signing request: {getattr(e, 'orig', e)}")

        logger.info("Created signing request %s for company %s", signing_request.id, company_id)
        return signing_request

    async def get(self, request_id: uuid.UUID, company_id: Optional[uuid.UUID] = None) -> SigningRequest:
        query = select(SigningRequest).where(SigningRequest.id == request_id)
        if company_id is not None:
            query = query.where(SigningRequest.company_id == company_id)
        result = await self.db.execute(query.execution_options(populate_existing=True))
        signing_request = result.scalars().first()
        if not signing_request:
            raise NotFound("Signing request not found")
        return signing_request

    async def get_by_token(self, access_token: str) -> SigningRequest:
        result = await self.db.execute(
            select(SigningRequest)
            .where(SigningRequest.access_token == access_token)
            .execution_options(populate_existing=True)
        )
        signing_request = result.scalars().first()
        if not signing_request:
            raise NotFound("Signing link is invalid")
        return signing_request

    async def list_for_company(self, company_id: uuid.UUID) -> List[SigningRequest]:
        result = await self.db.execute(
            select(SigningRequest)
            .where(SigningRequest.company_id == company_id)
            .order_by(SigningRequest.created_at.desc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def update(
        self, request_id: uuid.UUID, company_id: uuid.UUID, changes: SigningRequestUpdate
    ) -> SigningRequest:
        """Apply only the supplied fields. Status is never touched here."""
        signing_request = await self.get(request_id, company_id)
        supplied = changes.model_dump(exclude_unset=True)

        if "fields" in supplied and changes.fields is not None:
            signing_request.fields = [f.model_dump(mode="json") for f in changes.fields]
        for name in ("recipient_name", "recipient_email"):
            if name in supplied:
                setattr(signing_request, name, supplied[name] or None)
        if supplied.get("recipient_phone"):
            signing_request.recipient_phone = supplied["recipient_phone"]
        if supplied.get("expiry_days"):
            signing_request.expires_at = utcnow() + timedelta(days=supplied["expiry_days"])

        await self._commit("update signing request")
        return signing_request

    async def set_status(
        self,
        request_id: uuid.UUID,
        status: SigningStatus,
        expected: Iterable[SigningStatus],
        **values: Any,
    ) -> bool:
        """
        Write `status` only if the stored status is still one of `expected`.
        Returns False when another writer got there first.
        """
        try:
            result = await self.db.execute(
                update(SigningRequest)
                .where(SigningRequest.id == request_id, SigningRequest.status.in_(list(expected)))
                .values(status=status, updated_at=utcnow(), **values)
            )
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise StorageError(f"Could not update signing request: {getattr(e, 'orig', e)}")
        await self._commit("update signing request")
        return result.rowcount == 1

    async def record_delivery(
        self, request_id: uuid.UUID, recipient_phone: str, sent_at: datetime
    ) -> SigningRequest:
        """Refresh the delivery details of a resent request without touching its status."""
        signing_request = await self.get(request_id)
        signing_request.recipient_phone = recipient_phone
        signing_request.whatsapp_sent_at = sent_at
        await self._commit("record delivery")
        return signing_request

    async def delete(
        self, request_id: uuid.UUID, requesting_user_id: uuid.UUID, company_id: Optional[uuid.UUID] = None
    ):
        """
        Only the creator may delete. Files and audit rows go first, so a failure
        part way leaves the record itself in place.
        """
        signing_request = await self.get(request_id, company_id)
        if signing_request.created_by != requesting_user_id:
            raise PermissionDenied("Only the creator of a signing request can delete it")

        paths = [p for p in (signing_request.file_url, signing_request.signed_file_url) if p]
        if paths:
            await self.storage.remove(paths)

        try:
            await self.db.execute(delete(SigningAuditLog).where(SigningAuditLog.signing_request_id == request_id))
            await self.db.execute(delete(SigningRequest).where(SigningRequest.id == request_id))
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise StorageError(f"Could not delete signing request: {getattr(e, 'orig', e)}")
        await self._commit("delete signing request")
        self.db.expunge_all()
        logger.info("Deleted signing request %s and %d stored files", request_id, len(paths))

    async def fetch_signed_download_url(
        self, request_id: uuid.UUID, company_id: uuid.UUID, which: str = "signed"
    ) -> str:
        signing_request = await self.get(request_id, company_id)
        path = signing_request.file_url if which == "original" else signing_request.signed_file_url
        if not path:
            raise NotFound("No signed document yet")
        return await self.storage.create_signed_url(path, self.settings.signed_url_ttl_seconds)

    async def add_audit(self, request_id: uuid.UUID, event: str, details: Optional[Dict[str, Any]] = None):
        self.db.add(SigningAuditLog(signing_request_id=request_id, event=event, details=details))
        await self._commit("write audit entry")

    async def audit_trail(self, request_id: uuid.UUID) -> List[SigningAuditLog]:
        result = await self.db.execute(
            select(SigningAuditLog)
            .where(SigningAuditLog.signing_request_id == request_id)
            .order_by(SigningAuditLog.created_at)
        )
        return list(result.scalars().all())
