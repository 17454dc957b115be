from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging

from config import Settings, load_settings
from database import create_session_factory
from routers import auth, companies, files, profile, public_signing, signing_requests, templates, whatsapp
from services.exceptions import SigningError
from services.storage import create_storage
from services.template_fill import TemplateRenderer
from services.whatsapp import WhatsAppGateway

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or load_settings()
    logging.basicConfig(level=settings.log_level.upper())

    engine, session_factory = create_session_factory(settings)
    storage = create_storage(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await engine.dispose()

    app = FastAPI(
        title="Legal Nexus Signing API",
        version="1.0.0",
        description="Document signing requests delivered over WhatsApp",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.storage = storage
    app.state.gateway = WhatsAppGateway(settings, storage)
    app.state.template_renderer = TemplateRenderer()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.allowed_origin],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(SigningError)
    async def signing_error_handler(request: Request, exc: SigningError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.code)
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "error": exc.code})

    # JWT authenticated routes
    app.include_router(auth.router, prefix="/auth", tags=["Authentication"])
    app.include_router(profile.router, prefix="/user", tags=["User Profile"])
    app.include_router(companies.router, prefix="/companies", tags=["Companies"])
    app.include_router(
        signing_requests.router, prefix="/companies/{company_id}/signing-requests", tags=["Signing Requests"]
    )
    app.include_router(templates.router, prefix="/templates", tags=["Templates"])
    app.include_router(whatsapp.router, prefix="/whatsapp", tags=["WhatsApp"])

    # Token authenticated routes (recipients and signed file links)
    app.include_router(public_signing.router, prefix="/public/signing", tags=["Public Signing"])
    app.include_router(files.router, prefix="/files", tags=["Files"])

    @app.get("/", tags=["Health"])
    def health_check():
        logger.info("Health check requested")
        return {"message": "Legal Nexus Signing API is up and running"}

    return app


app = create_app()
