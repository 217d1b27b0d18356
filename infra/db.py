from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    async_sessionmaker,
    create_async_engine,
)

from src.config import get_settings

settings = get_settings()

# Асинхронный движок SQLAlchemy: общий пул для lookup/apply-сессий партиций
engine: AsyncEngine = create_async_engine(
    settings.database_url,
    echo=False,
    pool_pre_ping=True,
    pool_recycle=1800,
    pool_size=max(5, settings.default_parallelism * 2),
)

# Фабрика сессий: каждая партиция открывает свою сессию
async_session_factory = async_sessionmaker(
    engine,
    expire_on_commit=False,
)
