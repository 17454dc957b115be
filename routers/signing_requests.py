import json
import mimetypes
import uuid
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, File, Form, Response, UploadFile, status
from pydantic import ValidationError

from schemas.signing import (
    DownloadUrlResponse,
    SigningRequestCreate,
    SigningRequestResponse,
    SigningRequestUpdate,
)
from services.exceptions import InvalidRequest
from services.lifecycle import SigningLifecycle
from utils.auth import require_company_member
from utils.dependencies import get_lifecycle

router = APIRouter()

ACCEPTED_TYPES = {"application/pdf", "image/png", "image/jpeg"}


def _parse_fields(raw: Optional[str]) -> list:
    if not raw:
        return []
    try:
        fields = json.loads(raw)
    except ValueError:
        raise InvalidRequest("fields must be a JSON array")
    if not isinstance(fields, list):
        raise InvalidRequest("fields must be a JSON array")
    return fields


@router.post("", response_model=SigningRequestResponse, status_code=status.HTTP_201_CREATED)
async def create_signing_request(
    company_id: uuid.UUID,
    file: UploadFile = File(...),
    recipient_phone: str = Form(...),
    recipient_name: Optional[str] = Form(None),
    recipient_email: Optional[str] = Form(None),
    expiry_days: Optional[int] = Form(None),
    fields: Optional[str] = Form(None),
    user_id: uuid.UUID = Depends(require_company_member),
    lifecycle: SigningLifecycle = Depends(get_lifecycle),
):
    """Upload a document with its field layout. The request starts as a draft."""
    content_type = file.content_type
    if content_type not in ACCEPTED_TYPES:
        content_type = mimetypes.guess_type(file.filename or "")[0]
    if content_type not in ACCEPTED_TYPES:
        raise InvalidRequest("Only PDF, PNG and JPEG documents can be sent for signing")

    try:
        params = SigningRequestCreate(
            fields=_parse_fields(fields),
            recipient_name=recipient_name,
            recipient_phone=recipient_phone,
            recipient_email=recipient_email or None,
            expiry_days=expiry_days,
        )
    except ValidationError as e:
        raise InvalidRequest(f"Invalid signing request: {e.errors()[0]['msg']}")

    content = await file.read()
    signing_request = await lifecycle.create(
        company_id, user_id, file.filename or "document", content, content_type, params
    )
    return lifecycle.to_response(signing_request)


@router.get("", response_model=List[SigningRequestResponse])
async def list_signing_requests(
    company_id: uuid.UUID,
    user_id: uuid.UUID = Depends(require_company_member),
    lifecycle: SigningLifecycle = Depends(get_lifecycle),
):
    return [lifecycle.to_response(r) for r in await lifecycle.list_for_company(company_id)]


@router.get("/{request_id}", response_model=SigningRequestResponse)
async def get_signing_request(
    company_id: uuid.UUID,
    request_id: uuid.UUID,
    user_id: uuid.UUID = Depends(require_company_member),
    lifecycle: SigningLifecycle = Depends(get_lifecycle),
):
    return lifecycle.to_response(await lifecycle.get(request_id, company_id))


@router.patch("/{request_id}", response_model=SigningRequestResponse)
async def update_signing_request(
    company_id: uuid.UUID,
    request_id: uuid.UUID,
    changes: SigningRequestUpdate,
    user_id: uuid.UUID = Depends(require_company_member),
    lifecycle: SigningLifecycle = Depends(get_lifecycle),
):
    return lifecycle.to_response(await lifecycle.update(request_id, company_id, changes))


@router.post("/{request_id}/send", response_model=SigningRequestResponse)
async def send_signing_request(
    company_id: uuid.UUID,
    request_id: uuid.UUID,
    user_id: uuid.UUID = Depends(require_company_member),
    lifecycle: SigningLifecycle = Depends(get_lifecycle),
):
    """Send the signing link to the recipient over WhatsApp."""
    return lifecycle.to_response(await lifecycle.send(request_id, company_id))


@router.post("/{request_id}/resend", response_model=SigningRequestResponse)
async def resend_signing_request(
    company_id: uuid.UUID,
    request_id: uuid.UUID,
    user_id: uuid.UUID = Depends(require_company_member),
    lifecycle: SigningLifecycle = Depends(get_lifecycle),
):
    """Same link, sent again."""
    return lifecycle.to_response(await lifecycle.send(request_id, company_id))


@router.post("/{request_id}/cancel", response_model=SigningRequestResponse)
async def cancel_signing_request(
    company_id: uuid.UUID,
    request_id: uuid.UUID,
    user_id: uuid.UUID = Depends(require_company_member),
    lifecycle: SigningLifecycle = Depends(get_lifecycle),
):
    return lifecycle.to_response(await lifecycle.cancel(request_id, company_id, user_id))


@router.delete("/{request_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_signing_request(
    company_id: uuid.UUID,
    request_id: uuid.UUID,
    user_id: uuid.UUID = Depends(require_company_member),
    lifecycle: SigningLifecycle = Depends(get_lifecycle),
):
    """Delete the request, its files and its audit trail. Only the creator may do this."""
    await lifecycle.delete(request_id, company_id, user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{request_id}/download", response_model=DownloadUrlResponse)
async def download_signing_request(
    company_id: uuid.UUID,
    request_id: uuid.UUID,
    which: Literal["signed", "original"] = "signed",
    user_id: uuid.UUID = Depends(require_company_member),
    lifecycle: SigningLifecycle = Depends(get_lifecycle),
):
    url = await lifecycle.signed_download_url(request_id, company_id, which)
    return DownloadUrlResponse(url=url, expires_in=lifecycle.settings.signed_url_ttl_seconds)
