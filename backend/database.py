import datetime
import logging
import os

from dotenv import load_dotenv
from sqlalchemy import DateTime, Integer, String, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

load_dotenv()

logger = logging.getLogger(__name__)

_raw_url = os.getenv("DATABASE_URL", "sqlite:///./artha_session.db")
DATABASE_URL = _raw_url.replace("sqlite:///", "sqlite+aiosqlite:///")

engine = create_async_engine(DATABASE_URL, echo=False)
AsyncSessionLocal = async_sessionmaker(engine, expire_on_commit=False)

# Exactly one authenticated user per installation
_SINGLETON_ID = 1


class Base(DeclarativeBase):
    pass


class AuthSession(Base):
    __tablename__ = "auth_sessions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    phone_number: Mapped[str] = mapped_column(String)
    session_token: Mapped[str] = mapped_column(String)
    saved_at: Mapped[datetime.datetime] = mapped_column(
        DateTime, default=datetime.datetime.utcnow
    )


async def create_tables(bind: AsyncEngine = engine) -> None:
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


class SessionStore:
    """
    Durable home of the authenticated phone number and gateway session token.

    Both fields live in a single row, so a save is one row write committed in
    one transaction: readers see both fields or neither. Storage failures on
    read are logged and reported as "not authenticated".
    """

    def __init__(self, session_factory: async_sessionmaker = AsyncSessionLocal) -> None:
        self._session_factory = session_factory

    async def _load(self) -> AuthSession | None:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(AuthSession).where(AuthSession.id == _SINGLETON_ID)
                )
                return result.scalar_one_or_none()
        except SQLAlchemyError as exc:
            logger.error("Session store read failed: %s", exc)
            return None

    async def is_authenticated(self) -> bool:
        return await self.current_phone_number() is not None

    async def current_phone_number(self) -> str | None:
        row = await self._load()
        return row.phone_number if row else None

    async def current_session_token(self) -> str | None:
        row = await self._load()
        return row.session_token if row else None

    async def save(self, phone_number: str, session_token: str) -> bool:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    row = await session.get(AuthSession, _SINGLETON_ID)
                    if row is None:
                        session.add(AuthSession(
                            id=_SINGLETON_ID,
                            phone_number=phone_number,
                            session_token=session_token,
                        ))
                    else:
                        row.phone_number = phone_number
                        row.session_token = session_token
                        row.saved_at = datetime.datetime.utcnow()
        except SQLAlchemyError as exc:
            logger.error("Session store write failed: %s", exc)
            return False
        logger.info("Session stored for %s", phone_number)
        return True

    async def clear(self) -> None:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    row = await session.get(AuthSession, _SINGLETON_ID)
                    if row is not None:
                        await session.delete(row)
        except SQLAlchemyError as exc:
            logger.error("Session store clear failed: %s", exc)
            return
        logger.info("Session cleared")
