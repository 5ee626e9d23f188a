import logging

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from codebase_testing_agent.utils.config import settings

logger = logging.getLogger(__name__)

# Create the async engine
engine = create_async_engine(
    settings.database.url,
    echo=settings.database.echo,
    pool_pre_ping=True,
)
logger.debug("Async engine created for %s", engine.url.render_as_string())

# Create a configured "Session" class
AsyncSessionLocal = async_sessionmaker(
    bind=engine, autocommit=False, autoflush=False, expire_on_commit=False
)
