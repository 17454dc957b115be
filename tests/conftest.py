"""
Test configuration and fixtures.

Every test gets its own sqlite database and storage directory under tmp_path, and the WhatsApp
provider is replaced by an in-process fake behind httpx.MockTransport.
"""
import base64
import io
import json
from typing import AsyncGenerator, List

import httpx
import pytest
from faker import Faker
from httpx import ASGITransport, AsyncClient
from PIL import Image
from reportlab.pdfgen import canvas
from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings
from main import create_app
from models import Base, Company, User, UserCompanyAssignment
from services.lifecycle import SigningLifecycle
from utils.auth import create_access_token, hash_password

fake = Faker()

MEDIA_URL = "https://media.example.test/file"


class FakeProvider:
    """Answers like Green API and records every request it receives."""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.status_code = 200
        self.media = png_bytes()

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "GET":
            return httpx.Response(200, content=self.media)
        if self.status_code >= 400:
            return httpx.Response(self.status_code, json={"error": "rejected"})
        return httpx.Response(200, json={"idMessage": f"MSG{len(self.requests)}"})

    @property
    def sent(self) -> List[dict]:
        return [json.loads(r.content) for r in self.requests if r.method == "POST"]


def pdf_bytes(pages: int = 1, text: str = "Agreement") -> bytes:
    buffer = io.BytesIO()
    c = canvas.Canvas(buffer, pagesize=(612, 792))
    for number in range(pages):
        c.drawString(72, 720, f"{text} page {number + 1}")
        c.showPage()
    c.save()
    return buffer.getvalue()


def png_bytes(width: int = 40, height: int = 20) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), (20, 20, 120)).save(buffer, format="PNG")
    return buffer.getvalue()


def signature_data_url() -> str:
    return "data:image/png;base64," + base64.b64encode(png_bytes(120, 40)).decode()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        secret_key="test-secret-key-for-testing-only",
        app_url="http://testserver",
        green_api_instance_id="1101",
        green_api_token="provider-token",
        local_storage_dir=str(tmp_path / "storage"),
        webhook_secret="hook-secret",
    )


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
async def app(settings, provider):
    app = create_app(settings)
    app.state.gateway.transport = httpx.MockTransport(provider)
    async with app.state.engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield app
    await app.state.engine.dispose()


@pytest.fixture
async def db_session(app) -> AsyncGenerator[AsyncSession, None]:
    async with app.state.session_factory() as session:
        yield session


@pytest.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
def lifecycle(app, db_session) -> SigningLifecycle:
    state = app.state
    return SigningLifecycle(db_session, state.storage, state.gateway, state.settings)


async def make_user(db_session: AsyncSession, phone: str = None, whatsapp_authorized: bool = False) -> User:
    user = User(
        first_name=fake.first_name(),
        last_name=fake.last_name(),
        email=fake.unique.email(),
        phone=phone,
        hashed_password=hash_password("password123"),
        whatsapp_authorized=whatsapp_authorized,
    )
    db_session.add(user)
    await db_session.commit()
    return user


async def make_company(db_session: AsyncSession, name: str, *members: User) -> Company:
    company = Company(name=name)
    db_session.add(company)
    await db_session.flush()
    for member in members:
        db_session.add(UserCompanyAssignment(user_id=member.id, company_id=company.id))
    await db_session.commit()
    return company


@pytest.fixture
async def owner(db_session) -> User:
    return await make_user(db_session, phone="050-1234567", whatsapp_authorized=True)


@pytest.fixture
async def colleague(db_session) -> User:
    return await make_user(db_session, phone="052-7654321")


@pytest.fixture
async def company(db_session, owner, colleague) -> Company:
    return await make_company(db_session, "משרד כהן ושות'", owner, colleague)


def headers_for(settings: Settings, user: User) -> dict:
    return {"Authorization": f"Bearer {create_access_token(settings, data={'sub': str(user.id)})}"}


@pytest.fixture
def auth_headers(settings, owner) -> dict:
    return headers_for(settings, owner)


@pytest.fixture
def colleague_headers(settings, colleague) -> dict:
    return headers_for(settings, colleague)
