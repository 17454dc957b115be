import logging
import re
from typing import Any, Optional

import httpx
from pydantic import BaseModel

from config import Settings
from services.storage import StorageBackend, storage_path

logger = logging.getLogger(__name__)
# httpx logs every request line at INFO, and Green API puts the token in the URL.
logging.getLogger("httpx").setLevel(logging.WARNING)

_SEPARATORS = re.compile(r"[\s\-().]")

NOT_CONFIGURED = "not_configured"
INVALID_REQUEST = "invalid_request"
PROVIDER_ERROR = "provider_error"


class DeliveryResult(BaseModel):
    ok: bool
    chat_id: Optional[str] = None
    error_kind: Optional[str] = None
    message: str = ""
    provider_response: Optional[Any] = None


def normalize_phone(raw: str, country_code: str = "972", suffix: str = "@c.us") -> str:
    """
    Turn free-form phone input into a WhatsApp chat id.

    "050-1234567" -> "972501234567@c.us". Running it again on the result returns the same value.
    """
    local, _, domain = (raw or "").partition("@")
    local = _SEPARATORS.sub("", local).lstrip("+")
    if local.startswith("0"):
        local = country_code + local[1:]
    if not local.isdigit():
        raise ValueError(f"Invalid phone number: {raw!r}")
    if domain:
        return f"{local}@{domain}"
    return local + suffix


def phone_digits(raw: str, country_code: str = "972") -> str:
    """Bare international number, used to compare phones stored in different formats."""
    try:
        return normalize_phone(raw, country_code=country_code).partition("@")[0]
    except ValueError:
        return ""


class WhatsAppGateway:
    """Green API client. Every send makes exactly one provider call."""

    def __init__(self, settings: Settings, storage: StorageBackend, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self.storage = storage
        self.transport = transport

    def _endpoint(self, operation: str) -> str:
        base = self.settings.green_api_base_url.rstrip("/")
        return f"{base}/waInstance{self.settings.green_api_instance_id}/{operation}/{self.settings.green_api_token}"

    def _not_configured(self) -> DeliveryResult:
        return DeliveryResult(
            ok=False,
            error_kind=NOT_CONFIGURED,
            message="WhatsApp is not configured. Set GREEN_API_INSTANCE_ID and GREEN_API_TOKEN in the server settings.",
        )

    def chat_id_for(self, phone: str) -> str:
        return normalize_phone(
            phone, country_code=self.settings.default_country_code, suffix=self.settings.whatsapp_chat_suffix
        )

    async def send(
        self,
        phone: str,
        message: Optional[str] = None,
        file_url: Optional[str] = None,
        file_name: Optional[str] = None,
    ) -> DeliveryResult:
        """
        Deliver a text message, or a file with the message as its caption.

        Storage paths are exchanged for a short-lived signed URL first, since the provider fetches
        the file over the open web. A failure to sign raises StorageError and nothing is sent.
        """
        if not self.settings.whatsapp_configured:
            return self._not_configured()
        if not message and not file_url:
            return DeliveryResult(ok=False, error_kind=INVALID_REQUEST, message="A message or a file is required")
        try:
            chat_id = self.chat_id_for(phone)
        except ValueError as e:
            return DeliveryResult(ok=False, error_kind=INVALID_REQUEST, message=str(e))

        if file_url:
            url = file_url
            path = storage_path(file_url)
            if path is not None:
                url = await self.storage.create_signed_url(path, self.settings.signed_url_ttl_seconds)
            return await self._post(
                "sendFileByUrl",
                {"chatId": chat_id, "urlFile": url, "fileName": file_name or "document", "caption": message or ""},
            )
        return await self._post("sendMessage", {"chatId": chat_id, "message": message})

    async def send_text(self, chat_id: str, message: str) -> DeliveryResult:
        if not self.settings.whatsapp_configured:
            return self._not_configured()
        return await self._post("sendMessage", {"chatId": chat_id, "message": message})

    async def download_media(self, url: str) -> bytes:
        async with httpx.AsyncClient(timeout=60, transport=self.transport) as client:
            response = await client.get(url)
            response.raise_for_status()
            return response.content

    async def _post(self, operation: str, payload: dict) -> DeliveryResult:
        chat_id = payload["chatId"]
        try:
            async with httpx.AsyncClient(timeout=30, transport=self.transport) as client:
                response = await client.post(self._endpoint(operation), json=payload)
        except httpx.HTTPError as e:
            logger.error("WhatsApp %s to %s failed: %s", operation, chat_id, e.__class__.__name__)
            return DeliveryResult(
                ok=False, chat_id=chat_id, error_kind=PROVIDER_ERROR, message="Could not reach the WhatsApp provider"
            )

        try:
            body = response.json()
        except ValueError:
            body = response.text

        if response.status_code >= 400:
            logger.error("WhatsApp %s to %s rejected: HTTP %s", operation, chat_id, response.status_code)
            kind = INVALID_REQUEST if response.status_code == 400 else PROVIDER_ERROR
            return DeliveryResult(
                ok=False,
                chat_id=chat_id,
                error_kind=kind,
                message=f"WhatsApp provider returned HTTP {response.status_code}",
                provider_response=body,
            )

        logger.info("WhatsApp %s delivered to %s", operation, chat_id)
        return DeliveryResult(ok=True, chat_id=chat_id, provider_response=body)
