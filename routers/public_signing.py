from typing import Optional

from fastapi import APIRouter, Depends, Request

from schemas.signing import CompleteSigningRequest, CompleteSigningResponse, PublicSigningView
from services.lifecycle import SigningLifecycle, as_utc
from utils.dependencies import get_lifecycle

router = APIRouter()


def _client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for") or request.headers.get("cf-connecting-ip")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


@router.get("/{token}", response_model=PublicSigningView)
async def open_signing_request(
    token: str, request: Request, lifecycle: SigningLifecycle = Depends(get_lifecycle)
):
    """Recipient view of a signing request. The token in the link is the only credential."""
    return await lifecycle.open(token, _client_ip(request), request.headers.get("user-agent"))


@router.post("/{token}/complete", response_model=CompleteSigningResponse)
async def complete_signing_request(
    token: str,
    data: CompleteSigningRequest,
    request: Request,
    lifecycle: SigningLifecycle = Depends(get_lifecycle),
):
    signing_request = await lifecycle.complete(
        token, data.field_values, _client_ip(request), request.headers.get("user-agent")
    )
    return CompleteSigningResponse(success=True, signed_at=as_utc(signing_request.signed_at))
