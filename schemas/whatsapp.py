import uuid
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict


class WhatsAppSendRequest(BaseModel):
    phone: Optional[str] = None
    message: Optional[str] = None
    file_url: Optional[str] = None
    file_name: Optional[str] = None


class WhatsAppSendResponse(BaseModel):
    success: bool
    chat_id: Optional[str] = None
    provider_response: Optional[Any] = None


# Green API webhook payload. Only the parts the intake reads are modelled.

class InstanceData(BaseModel):
    model_config = ConfigDict(extra="allow")

    idInstance: Optional[Union[int, str]] = None
    wid: Optional[str] = None


class SenderData(BaseModel):
    model_config = ConfigDict(extra="allow")

    chatId: str
    sender: str = ""
    chatName: str = ""
    senderName: str = ""


class TextMessageData(BaseModel):
    textMessage: str = ""


class FileMessageData(BaseModel):
    model_config = ConfigDict(extra="allow")

    downloadUrl: str
    caption: str = ""
    mimeType: str = ""
    fileName: Optional[str] = None


class MessageData(BaseModel):
    model_config = ConfigDict(extra="allow")

    typeMessage: str
    textMessageData: Optional[TextMessageData] = None
    fileMessageData: Optional[FileMessageData] = None


class GreenApiWebhook(BaseModel):
    model_config = ConfigDict(extra="allow")

    typeWebhook: str
    instanceData: Optional[InstanceData] = None
    timestamp: Optional[int] = None
    idMessage: Optional[str] = None
    senderData: Optional[SenderData] = None
    messageData: Optional[MessageData] = None


class WebhookAck(BaseModel):
    ok: bool = True
    skipped: Optional[str] = None
    pending_company_selection: Optional[bool] = None
    document_id: Optional[uuid.UUID] = None
    error: Optional[str] = None
