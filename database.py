from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from config import Settings


def create_session_factory(settings: Settings):
    engine = create_async_engine(settings.database_url, future=True)
    return engine, async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


async def get_db(request: Request):
    async with request.app.state.session_factory() as session:
        yield session
