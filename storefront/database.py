import logging

from fastapi import Request
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from shared.security_config import validate_password_strength
from shared.utils import get_password_hash, settings
from storefront.models import Admin, Base

logger = logging.getLogger(__name__)


def get_engine(url: str = None) -> AsyncEngine:
    return create_async_engine(url or settings.DATABASE_URL, echo=False)


def get_sessionmaker(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables verified/created")


async def seed_admin(session_factory: async_sessionmaker, username: str = None, password: str = None) -> bool:
    """Create the first admin from configured credentials. Returns True if one was created."""
    username = username or settings.ADMIN_USERNAME
    password = password if password is not None else settings.ADMIN_PASSWORD

    async with session_factory() as db:
        admin_count = await db.scalar(select(func.count()).select_from(Admin))
        if admin_count:
            return False

        if not password:
            logger.warning("No admin account exists and ADMIN_PASSWORD is not set; admin panel is locked")
            return False
        if not validate_password_strength(password):
            logger.error("ADMIN_PASSWORD is too weak; refusing to seed the admin account")
            return False

        db.add(Admin(username=username, password_hash=get_password_hash(password)))
        await db.commit()

    logger.info("Default admin user created", extra={"user_id": username})
    return True


async def get_db(request: Request):
    async with request.app.db_sessionmaker() as session:
        yield session
