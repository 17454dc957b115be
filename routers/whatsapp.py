import logging
import secrets
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings
from database import get_db
from schemas.whatsapp import GreenApiWebhook, WebhookAck, WhatsAppSendRequest, WhatsAppSendResponse
from services.exceptions import ConfigurationError, DeliveryFailed, InvalidRequest, PermissionDenied, Unauthorized
from services.intake import WhatsAppIntake
from services.storage import company_of_path, storage_path
from services.whatsapp import WhatsAppGateway
from utils.auth import get_current_user, get_settings, require_company_member
from utils.dependencies import get_gateway, get_intake

logger = logging.getLogger(__name__)

router = APIRouter()


async def _check_file_access(file_url: str, user_id: uuid.UUID, db: AsyncSession):
    """A stored file may only be sent by someone working for the company that owns it."""
    path = storage_path(file_url)
    if path is None:
        return
    company_id = company_of_path(path)
    if company_id is None:
        raise PermissionDenied("You do not have access to this file")
    await require_company_member(company_id, user_id, db)


@router.post("/send", response_model=WhatsAppSendResponse)
async def send_whatsapp(
    data: WhatsAppSendRequest,
    user_id: uuid.UUID = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    gateway: WhatsAppGateway = Depends(get_gateway),
):
    """Send a text, or a stored file with an optional caption, to a phone number."""
    if not data.phone:
        raise InvalidRequest("phone is required")
    if not data.message and not data.file_url:
        raise InvalidRequest("message or file_url is required")
    if data.file_url:
        await _check_file_access(data.file_url, user_id, db)

    result = await gateway.send(data.phone, message=data.message, file_url=data.file_url, file_name=data.file_name)
    if not result.ok:
        raise DeliveryFailed(result)
    return WhatsAppSendResponse(success=True, chat_id=result.chat_id, provider_response=result.provider_response)


@router.post("/webhook", response_model=WebhookAck, response_model_exclude_none=True)
async def whatsapp_webhook(
    event: GreenApiWebhook,
    secret: Optional[str] = Query(None),
    settings: Settings = Depends(get_settings),
    intake: WhatsAppIntake = Depends(get_intake),
):
    """Green API notification endpoint; the shared secret travels in the query string."""
    if not settings.webhook_secret:
        logger.error("WEBHOOK_SECRET not configured")
        raise ConfigurationError("Webhook not configured")
    if not secret or not secrets.compare_digest(secret, settings.webhook_secret):
        raise Unauthorized("Unauthorized")

    return await intake.handle(event)
