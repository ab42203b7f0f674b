import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.core.config import settings

logger = logging.getLogger(__name__)

logger.info(f"Using database for mode: {settings.MODE}")
engine = create_async_engine(settings.DATABASE_URL, future=True, echo=False, pool_pre_ping=True)
SessionAsync = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
