import logging
import time
import uuid
from datetime import timedelta
from typing import List, Optional, Tuple

import httpx
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings
from models.base import utcnow
from models.company import Company, UserCompanyAssignment
from models.intake import ScannedDocument, WhatsAppPendingSelection
from models.user import User
from schemas.whatsapp import GreenApiWebhook, WebhookAck
from services.exceptions import SigningError, StorageError
from services.storage import StorageBackend
from services.whatsapp import WhatsAppGateway, phone_digits
from utils.tokens import generate_token

logger = logging.getLogger(__name__)

INCOMING_MESSAGE = "incomingMessageReceived"
SELECTION_WINDOW = timedelta(minutes=10)

FILE_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
    "image/bmp": "bmp",
    "application/pdf": "pdf",
}

MSG_UNAUTHORIZED = (
    "Legal Nexus - מספר הטלפון שלך לא מורשה לשליחת מסמכים.\n\n"
    "פנה למנהל המערכת להפעלת הרשאת וואטסאפ בפרופיל שלך."
)
MSG_HELP = (
    "Legal Nexus - שלום! 👋\n\n"
    "שלח תמונה או PDF של מסמך משפטי ואעבד אותו אוטומטית.\n\n"
    "סוגי קבצים נתמכים: JPG, PNG, PDF"
)
MSG_UNSUPPORTED = "Legal Nexus - סוג קובץ לא נתמך.\n\nשלח תמונה (JPG, PNG) או מסמך PDF."
MSG_PROCESSING = "Legal Nexus ⏳ מעבד את המסמך..."
MSG_RECEIVED = "Legal Nexus ✅ המסמך התקבל בהצלחה\n\nסטטוס: ממתין לאישור במערכת"
MSG_FILE_GONE = "Legal Nexus ❌ הקובץ פג תוקף. שלח שוב את המסמך."
MSG_FAILED = "Legal Nexus ❌ שגיאה בעיבוד המסמך.\n\nאנא נסה שוב או העלה דרך המערכת."


def file_extension(media_type: str) -> str:
    return FILE_EXTENSIONS.get(media_type, "bin")


class WhatsAppIntake:
    """
    Turns incoming WhatsApp files from authorized staff into scanned documents.

    Staff who belong to several companies are asked which one the file is for; the file waits in a
    temporary location until they answer with the company number.
    """

    def __init__(self, db: AsyncSession, storage: StorageBackend, gateway: WhatsAppGateway, settings: Settings):
        self.db = db
        self.storage = storage
        self.gateway = gateway
        self.settings = settings

    async def reply(self, chat_id: str, message: str):
        result = await self.gateway.send_text(chat_id, message)
        if not result.ok:
            logger.warning("Reply to %s not delivered: %s", chat_id, result.error_kind)

    async def lookup_sender(self, sender: str) -> Optional[Tuple[User, List[Company]]]:
        digits = phone_digits(sender, self.settings.default_country_code)
        if not digits:
            return None

        result = await self.db.execute(select(User).where(User.whatsapp_authorized.is_(True)))
        user = next(
            (u for u in result.scalars().all() if u.phone and phone_digits(u.phone, self.settings.default_country_code) == digits),
            None,
        )
        if not user:
            return None

        result = await self.db.execute(
            select(Company)
            .join(UserCompanyAssignment, UserCompanyAssignment.company_id == Company.id)
            .where(UserCompanyAssignment.user_id == user.id)
            .order_by(Company.name)
        )
        companies = list(result.scalars().all())
        if not companies:
            return None
        return user, companies

    async def handle(self, event: GreenApiWebhook) -> WebhookAck:
        expected_instance = self.settings.green_api_instance_id
        instance = event.instanceData.idInstance if event.instanceData else None
        if expected_instance and str(instance) != expected_instance:
            return WebhookAck(skipped="instance_mismatch")

        if event.typeWebhook != INCOMING_MESSAGE:
            return WebhookAck(skipped=event.typeWebhook)
        if not event.senderData or not event.messageData:
            return WebhookAck(skipped="malformed")

        chat_id = event.senderData.chatId
        try:
            return await self._handle_message(event)
        except (SigningError, SQLAlchemyError, httpx.HTTPError) as e:
            logger.exception("Webhook processing failed for %s", chat_id)
            await self.reply(chat_id, MSG_FAILED)
            return WebhookAck(ok=False, error=e.__class__.__name__)

    async def _handle_message(self, event: GreenApiWebhook) -> WebhookAck:
        sender, message = event.senderData, event.messageData
        chat_id = sender.chatId
        sender_name = sender.senderName or sender.chatName or ""
        logger.info("Received %s from %s", message.typeMessage, chat_id)

        found = await self.lookup_sender(sender.sender or chat_id)
        if not found:
            await self.reply(chat_id, MSG_UNAUTHORIZED)
            return WebhookAck(skipped="unauthorized_phone")
        user, companies = found

        if message.typeMessage == "textMessage":
            text = message.textMessageData.textMessage if message.textMessageData else ""
            if await self.handle_selection_reply(chat_id, text, sender_name):
                return WebhookAck()
            await self.reply(chat_id, MSG_HELP)
            return WebhookAck()

        file_data = message.fileMessageData
        if message.typeMessage not in ("imageMessage", "documentMessage") or not file_data:
            await self.reply(chat_id, MSG_UNSUPPORTED)
            return WebhookAck(skipped="unsupported_type")
        if file_data.mimeType not in FILE_EXTENSIONS:
            await self.reply(chat_id, MSG_UNSUPPORTED)
            return WebhookAck(skipped="unsupported_mime")

        file_name = (
            file_data.fileName
            or file_data.caption
            or f"whatsapp-{int(time.time() * 1000)}.{file_extension(file_data.mimeType)}"
        )
        content = await self.gateway.download_media(file_data.downloadUrl)
        message_id = event.idMessage or generate_token(16)

        if len(companies) == 1:
            await self.reply(chat_id, MSG_PROCESSING)
            document = await self.process_document(
                content, file_data.mimeType, file_name, companies[0].id, user.id, chat_id, sender_name, message_id
            )
            return WebhookAck(document_id=document.id if document else None)

        await self.save_pending_selection(
            chat_id, sender.sender or chat_id, user.id, companies, content, file_data.mimeType, file_name, message_id
        )
        listing = "\n".join(f"{i}. {company.name}" for i, company in enumerate(companies, start=1))
        await self.reply(chat_id, f"Legal Nexus - לאיזה משרד שייך המסמך?\n\n{listing}\n\nהשב עם המספר המתאים.")
        return WebhookAck(pending_company_selection=True)

    async def process_document(
        self,
        content: bytes,
        media_type: str,
        file_name: str,
        company_id: uuid.UUID,
        user_id: Optional[uuid.UUID],
        chat_id: str,
        sender_name: str,
        message_id: str,
    ) -> Optional[ScannedDocument]:
        """Store the file for the company and hand it to the scanner. A repeated message id is ignored."""
        result = await self.db.execute(
            select(ScannedDocument.id).where(ScannedDocument.whatsapp_message_id == message_id)
        )
        if result.scalars().first():
            logger.info("Duplicate message %s, skipping", message_id)
            return None

        path = f"{company_id}/whatsapp/{int(time.time() * 1000)}-{generate_token(7).lower()}.{file_extension(media_type)}"
        await self.storage.upload(path, content, media_type)

        document = ScannedDocument(
            company_id=company_id,
            uploaded_by=user_id,
            file_name=file_name,
            file_url=path,
            file_type=media_type,
            file_size=len(content),
            whatsapp_chat_id=chat_id,
            whatsapp_message_id=message_id,
            whatsapp_sender_name=sender_name,
        )
        self.db.add(document)
        await self.db.commit()
        logger.info("Stored WhatsApp document %s for company %s", document.id, company_id)

        await self.request_scan(document)
        await self.reply(chat_id, MSG_RECEIVED)
        return document

    async def request_scan(self, document: ScannedDocument):
        if not self.settings.document_scanner_url:
            return
        payload = {
            "document_id": str(document.id),
            "company_id": str(document.company_id),
            "file_url": document.file_url,
            "file_type": document.file_type,
        }
        try:
            async with httpx.AsyncClient(timeout=30, transport=self.gateway.transport) as client:
                response = await client.post(self.settings.document_scanner_url, json=payload)
                response.raise_for_status()
        except httpx.HTTPError as e:
            # The document stays pending_scan and can be picked up again.
            logger.warning("Scanner call for %s failed: %s", document.id, e.__class__.__name__)

    async def save_pending_selection(
        self,
        chat_id: str,
        phone: str,
        user_id: uuid.UUID,
        companies: List[Company],
        content: bytes,
        media_type: str,
        file_name: str,
        message_id: str,
    ):
        temp_path = f"_temp/whatsapp/{chat_id}/{int(time.time() * 1000)}.{file_extension(media_type)}"
        await self.storage.upload(temp_path, content, media_type)

        await self.db.execute(delete(WhatsAppPendingSelection).where(WhatsAppPendingSelection.chat_id == chat_id))
        self.db.add(
            WhatsAppPendingSelection(
                chat_id=chat_id,
                phone_number=phone,
                user_id=user_id,
                organizations=[{"id": str(c.id), "name": c.name} for c in companies],
                message_id=message_id,
                file_storage_path=temp_path,
                media_type=media_type,
                file_name=file_name,
                expires_at=utcnow() + SELECTION_WINDOW,
            )
        )
        await self.db.commit()

    async def handle_selection_reply(self, chat_id: str, text: str, sender_name: str) -> bool:
        """Returns False when there is no open question for this chat."""
        result = await self.db.execute(
            select(WhatsAppPendingSelection)
            .where(WhatsAppPendingSelection.chat_id == chat_id, WhatsAppPendingSelection.expires_at > utcnow())
            .order_by(WhatsAppPendingSelection.created_at.desc())
            .limit(1)
        )
        pending = result.scalars().first()
        if not pending:
            return False

        organizations = pending.organizations or []
        choice = text.strip()
        if not choice.isdigit() or not 1 <= int(choice) <= len(organizations):
            await self.reply(chat_id, f"בחירה לא תקינה. השב עם מספר בין 1 ל-{len(organizations)}.")
            return True

        selected = organizations[int(choice) - 1]
        await self.reply(chat_id, f'Legal Nexus ⏳ מעבד את המסמך עבור "{selected["name"]}"...')

        try:
            content = await self.storage.download(pending.file_storage_path)
        except StorageError:
            logger.warning("Parked file %s is gone", pending.file_storage_path)
            await self.reply(chat_id, MSG_FILE_GONE)
            await self.db.delete(pending)
            await self.db.commit()
            return True

        await self.process_document(
            content,
            pending.media_type,
            pending.file_name,
            uuid.UUID(selected["id"]),
            pending.user_id,
            chat_id,
            sender_name,
            pending.message_id,
        )
        temp_path = pending.file_storage_path
        await self.db.delete(pending)
        await self.db.commit()
        await self.storage.remove([temp_path])
        return True
