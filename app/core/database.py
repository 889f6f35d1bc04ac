from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.orm import DeclarativeBase
from app.core.config import settings

engine = create_async_engine(settings.DATABASE_URL, echo=settings.SQL_ECHO)

# Objects stay usable after commit, the request flow reads them back after every transition
AsyncSessionLocal = async_sessionmaker(
    bind=engine, class_=AsyncSession, expire_on_commit=False
)


# Session per HTTP request
async def get_db():
    async with AsyncSessionLocal() as session:
        yield session


# Every model registers its table on this metadata
class Base(DeclarativeBase):
    pass
