from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from services.intake import WhatsAppIntake
from services.lifecycle import SigningLifecycle
from services.storage import StorageBackend
from services.template_fill import TemplateRenderer
from services.whatsapp import WhatsAppGateway


def get_storage(request: Request) -> StorageBackend:
    return request.app.state.storage


def get_gateway(request: Request) -> WhatsAppGateway:
    return request.app.state.gateway


def get_template_renderer(request: Request) -> TemplateRenderer:
    return request.app.state.template_renderer


def get_lifecycle(request: Request, db: AsyncSession = Depends(get_db)) -> SigningLifecycle:
    state = request.app.state
    return SigningLifecycle(db, state.storage, state.gateway, state.settings)


def get_intake(request: Request, db: AsyncSession = Depends(get_db)) -> WhatsAppIntake:
    state = request.app.state
    return WhatsAppIntake(db, state.storage, state.gateway, state.settings)
