import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import PurePosixPath
from typing import Dict, List, Optional, assert_never

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.concurrency import run_in_threadpool

from config import Settings
from models.base import utcnow
from models.company import Company
from models.signing_request import TERMINAL_STATUSES, SigningRequest, SigningStatus
from schemas.signing import (
    PublicSigningRequest,
    PublicSigningView,
    SigningField,
    SigningRequestCreate,
    SigningRequestResponse,
    SigningRequestUpdate,
)
from services.exceptions import DeliveryFailed, IllegalTransition, InvalidRequest, PermissionDenied
from services.pdf_service import stamp_fields
from services.signing_store import SigningRequestStore, signed_storage_path
from services.storage import StorageBackend
from services.whatsapp import WhatsAppGateway

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[SigningStatus, frozenset] = {
    SigningStatus.DRAFT: frozenset({SigningStatus.SENT}),
    SigningStatus.SENT: frozenset(
        {SigningStatus.OPENED, SigningStatus.SIGNED, SigningStatus.CANCELLED, SigningStatus.EXPIRED}
    ),
    SigningStatus.OPENED: frozenset({SigningStatus.SIGNED, SigningStatus.CANCELLED, SigningStatus.EXPIRED}),
    SigningStatus.SIGNED: frozenset(),
    SigningStatus.EXPIRED: frozenset(),
    SigningStatus.CANCELLED: frozenset(),
}


HEBREW_MONTHS = (
    "ינואר", "פברואר", "מרץ", "אפריל", "מאי", "יוני",
    "יולי", "אוגוסט", "ספטמבר", "אוקטובר", "נובמבר", "דצמבר",
)


def predecessors(target: SigningStatus) -> frozenset:
    """Statuses the transition table allows to move to `target`."""
    return frozenset(source for source, targets in ALLOWED_TRANSITIONS.items() if target in targets)


@dataclass(frozen=True)
class StatusPresentation:
    label: str
    variant: str


def as_utc(value: datetime) -> datetime:
    """Some drivers hand back naive datetimes; stored values are always UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def effective_status(signing_request: SigningRequest, now: Optional[datetime] = None) -> SigningStatus:
    """Stored status, except that a sent or opened request past its expiry reads as expired."""
    status = SigningStatus(signing_request.status)
    now = now or datetime.now(UTC)
    if status in predecessors(SigningStatus.EXPIRED) and as_utc(signing_request.expires_at) <= now:
        return SigningStatus.EXPIRED
    return status


def status_presentation(status: SigningStatus) -> StatusPresentation:
    match status:
        case SigningStatus.DRAFT:
            return StatusPresentation("טיוטה", "outline")
        case SigningStatus.SENT:
            return StatusPresentation("נשלח", "secondary")
        case SigningStatus.OPENED:
            return StatusPresentation("נפתח", "secondary")
        case SigningStatus.SIGNED:
            return StatusPresentation("נחתם", "default")
        case SigningStatus.EXPIRED:
            return StatusPresentation("פג תוקף", "destructive")
        case SigningStatus.CANCELLED:
            return StatusPresentation("בוטל", "destructive")
        case _:
            assert_never(status)


def format_hebrew_date(value: datetime) -> str:
    return f"{value.day} ב{HEBREW_MONTHS[value.month - 1]} {value.year}"


def build_invitation_message(
    recipient_name: Optional[str], company_name: Optional[str], file_name: str, signing_url: str, expires_at: datetime
) -> str:
    greeting = f"שלום {recipient_name}," if recipient_name else "שלום,"
    from_line = f" מ-{company_name}" if company_name else ""
    return "\n".join(
        [
            f"✍️ {greeting}",
            "",
            f"קיבלת מסמך לחתימה דיגיטלית{from_line}.",
            f"📄 {file_name}",
            "",
            f"👉 לחתימה: {signing_url}",
            "",
            f"⏰ הקישור בתוקף עד {format_hebrew_date(as_utc(expires_at))}.",
        ]
    )


def build_confirmation_message(file_name: str) -> str:
    return f'Legal Nexus ✅ תודה! המסמך "{file_name}" נחתם בהצלחה.\n\nהחתימה נשמרה במערכת.'


class SigningLifecycle:
    """
    Drives a signing request through draft, sent, opened and one of signed, cancelled or expired.

    Every decision is made on the effective status, and every status write is conditional on the
    status the decision was made on, so two racing actors cannot both succeed.
    """

    def __init__(self, db: AsyncSession, storage: StorageBackend, gateway: WhatsAppGateway, settings: Settings):
        self.db = db
        self.storage = storage
        self.gateway = gateway
        self.settings = settings
        self.store = SigningRequestStore(db, storage, settings)

    def signing_url(self, signing_request: SigningRequest) -> str:
        return f"{self.settings.app_url.rstrip('/')}/sign/{signing_request.access_token}"

    def to_response(self, signing_request: SigningRequest, now: Optional[datetime] = None) -> SigningRequestResponse:
        status = effective_status(signing_request, now)
        presentation = status_presentation(status)
        return SigningRequestResponse(
            id=signing_request.id,
            company_id=signing_request.company_id,
            created_by=signing_request.created_by,
            file_name=signing_request.file_name,
            file_type=signing_request.file_type,
            fields=signing_request.fields or [],
            recipient_name=signing_request.recipient_name,
            recipient_phone=signing_request.recipient_phone,
            recipient_email=signing_request.recipient_email,
            status=status.value,
            status_label=presentation.label,
            status_variant=presentation.variant,
            signing_url=self.signing_url(signing_request),
            expires_at=as_utc(signing_request.expires_at),
            whatsapp_sent_at=signing_request.whatsapp_sent_at,
            signed_at=signing_request.signed_at,
            has_signed_file=bool(signing_request.signed_file_url),
            signed_field_values=signing_request.signed_field_values,
            created_at=signing_request.created_at,
            updated_at=signing_request.updated_at,
        )

    async def _company_name(self, company_id: uuid.UUID) -> Optional[str]:
        result = await self.db.execute(select(Company.name).where(Company.id == company_id))
        return result.scalars().first()

    async def apply_transition(self, signing_request: SigningRequest, target: SigningStatus, **values) -> bool:
        """
        The only place a status is written.

        Legality is checked against the transition table, and the write is conditional on the
        stored status still being one the table allows to reach `target`. Returns False when a
        concurrent writer got there first; `values` are written in the same statement.
        """
        stored = SigningStatus(signing_request.status)
        current = effective_status(signing_request)
        # A request that has run out of time can only have that recorded.
        if target not in ALLOWED_TRANSITIONS[stored] or (current != stored and target != current):
            raise IllegalTransition(f"Cannot move a {current.value} signing request to {target.value}")

        if not await self.store.set_status(signing_request.id, target, predecessors(target), **values):
            return False
        logger.info("Signing request %s: %s -> %s", signing_request.id, stored.value, target.value)
        return True

    async def transition(self, signing_request: SigningRequest, target: SigningStatus, **values) -> SigningRequest:
        if not await self.apply_transition(signing_request, target, **values):
            raise IllegalTransition("The signing request was changed by someone else, reload and try again")
        return await self.store.get(signing_request.id)

    async def _expire_if_due(self, signing_request: SigningRequest) -> SigningStatus:
        status = effective_status(signing_request)
        if status == SigningStatus.EXPIRED and signing_request.status != SigningStatus.EXPIRED:
            if await self.apply_transition(signing_request, SigningStatus.EXPIRED):
                await self.store.add_audit(signing_request.id, "expired")
        return status

    # Owner side

    async def create(
        self,
        company_id: uuid.UUID,
        user_id: uuid.UUID,
        file_name: str,
        content: bytes,
        content_type: Optional[str],
        params: SigningRequestCreate,
    ) -> SigningRequest:
        if not content:
            raise InvalidRequest("The uploaded file is empty")
        return await self.store.create(company_id, user_id, file_name, content, content_type, params)

    async def list_for_company(self, company_id: uuid.UUID) -> List[SigningRequest]:
        return await self.store.list_for_company(company_id)

    async def get(self, request_id: uuid.UUID, company_id: uuid.UUID) -> SigningRequest:
        return await self.store.get(request_id, company_id)

    async def update(
        self, request_id: uuid.UUID, company_id: uuid.UUID, changes: SigningRequestUpdate
    ) -> SigningRequest:
        signing_request = await self.store.get(request_id, company_id)
        status = effective_status(signing_request)
        if status in TERMINAL_STATUSES:
            raise IllegalTransition(f"A {status.value} signing request can no longer be edited")
        return await self.store.update(request_id, company_id, changes)

    async def send(self, request_id: uuid.UUID, company_id: uuid.UUID) -> SigningRequest:
        """
        Deliver the signing link over WhatsApp.

        A draft becomes sent. Resending a sent or opened request reuses the same token and keeps
        its status. The status only changes after the provider accepted the message.
        """
        signing_request = await self.store.get(request_id, company_id)
        status = effective_status(signing_request)
        if status not in (SigningStatus.DRAFT, SigningStatus.SENT, SigningStatus.OPENED):
            raise IllegalTransition(f"Cannot send a {status.value} signing request")
        if status == SigningStatus.DRAFT and as_utc(signing_request.expires_at) <= datetime.now(UTC):
            raise InvalidRequest("The expiry date has passed, update it before sending")

        message = build_invitation_message(
            signing_request.recipient_name,
            await self._company_name(company_id),
            signing_request.file_name,
            self.signing_url(signing_request),
            signing_request.expires_at,
        )
        result = await self.gateway.send(signing_request.recipient_phone, message=message)
        if not result.ok:
            raise DeliveryFailed(result)

        normalized = result.chat_id.partition("@")[0]
        sent_at = datetime.now(UTC)
        if status == SigningStatus.DRAFT:
            signing_request = await self.transition(
                signing_request, SigningStatus.SENT, recipient_phone=normalized, whatsapp_sent_at=sent_at
            )
        else:
            signing_request = await self.store.record_delivery(signing_request.id, normalized, sent_at)

        await self.store.add_audit(
            signing_request.id,
            "sent" if status == SigningStatus.DRAFT else "resent",
            {"chat_id": result.chat_id, "phone": normalized},
        )
        return signing_request

    async def cancel(self, request_id: uuid.UUID, company_id: uuid.UUID, user_id: uuid.UUID) -> SigningRequest:
        signing_request = await self.store.get(request_id, company_id)
        if signing_request.created_by != user_id:
            raise PermissionDenied("Only the creator of a signing request can cancel it")
        if signing_request.status == SigningStatus.CANCELLED:
            return signing_request

        signing_request = await self.transition(signing_request, SigningStatus.CANCELLED)
        await self.store.add_audit(signing_request.id, "cancelled", {"user_id": str(user_id)})
        return signing_request

    async def delete(self, request_id: uuid.UUID, company_id: uuid.UUID, user_id: uuid.UUID):
        await self.store.delete(request_id, user_id, company_id)

    async def signed_download_url(self, request_id: uuid.UUID, company_id: uuid.UUID, which: str = "signed") -> str:
        return await self.store.fetch_signed_download_url(request_id, company_id, which)

    # Recipient side, authorized by the access token alone

    async def _public_request(self, access_token: str) -> SigningRequest:
        signing_request = await self.store.get_by_token(access_token)
        status = await self._expire_if_due(signing_request)
        match status:
            case SigningStatus.EXPIRED:
                raise IllegalTransition("This signing link has expired", code="expired")
            case SigningStatus.SIGNED:
                raise IllegalTransition("This document has already been signed", code="already_signed")
            case SigningStatus.CANCELLED:
                raise IllegalTransition("This signing request was cancelled", code="cancelled")
            case SigningStatus.DRAFT:
                raise IllegalTransition("This signing request has not been sent yet", code="not_sent")
        return signing_request

    async def open(
        self, access_token: str, signer_ip: Optional[str] = None, signer_user_agent: Optional[str] = None
    ) -> PublicSigningView:
        signing_request = await self._public_request(access_token)
        logger.info("Signing link %s... opened", access_token[:8])

        document_url = await self.storage.create_signed_url(
            signing_request.file_url, self.settings.signed_url_ttl_seconds
        )

        if signing_request.status == SigningStatus.SENT:
            # A concurrent open already did this if the write finds nothing to change.
            if await self.apply_transition(signing_request, SigningStatus.OPENED):
                await self.store.add_audit(
                    signing_request.id, "opened", {"ip": signer_ip, "user_agent": signer_user_agent}
                )
            signing_request = await self.store.get(signing_request.id)

        return PublicSigningView(
            signing_request=PublicSigningRequest(
                id=signing_request.id,
                file_name=signing_request.file_name,
                file_type=signing_request.file_type,
                fields=signing_request.fields or [],
                recipient_name=signing_request.recipient_name,
                status=effective_status(signing_request).value,
                expires_at=as_utc(signing_request.expires_at),
                company_name=await self._company_name(signing_request.company_id),
            ),
            document_url=document_url,
        )

    async def complete(
        self,
        access_token: str,
        field_values: Dict[str, str],
        signer_ip: Optional[str] = None,
        signer_user_agent: Optional[str] = None,
    ) -> SigningRequest:
        """
        Stamp the captured values onto the document, store the signed PDF and mark the request signed.

        The confirmation message afterwards is best effort; a failure there does not undo the signature.
        """
        signing_request = await self._public_request(access_token)
        fields = [SigningField.model_validate(f) for f in signing_request.fields or []]

        missing = [f.label or f.id for f in fields if f.required and not (field_values.get(f.id) or "").strip()]
        if missing:
            raise InvalidRequest(f"Required fields are missing: {', '.join(missing)}")

        known = {f.id for f in fields}
        values = {k: v for k, v in field_values.items() if k in known and v}

        original = await self.storage.download(signing_request.file_url)
        signed_pdf = await run_in_threadpool(stamp_fields, original, signing_request.file_type, fields, values)

        signed_path = signed_storage_path(signing_request.company_id, PurePosixPath(signing_request.file_url).name)
        await self.storage.upload(signed_path, signed_pdf, "application/pdf")

        try:
            signing_request = await self.transition(
                signing_request,
                SigningStatus.SIGNED,
                signed_file_url=signed_path,
                signed_at=utcnow(),
                signed_field_values=values,
                signer_ip=signer_ip,
                signer_user_agent=signer_user_agent,
            )
        except IllegalTransition:
            await self.storage.remove([signed_path])
            raise

        await self.store.add_audit(
            signing_request.id,
            "signed",
            {"ip": signer_ip, "user_agent": signer_user_agent, "fields_filled": len(values)},
        )
        logger.info("Signing request %s signed", signing_request.id)

        if signing_request.recipient_phone:
            confirmation = await self.gateway.send(
                signing_request.recipient_phone, message=build_confirmation_message(signing_request.file_name)
            )
            if not confirmation.ok:
                logger.warning(
                    "Signing confirmation for %s not delivered: %s", signing_request.id, confirmation.error_kind
                )

        return await self.store.get(signing_request.id)
