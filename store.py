# store.py
# =============================================================================
# User store (SQLAlchemy 2.x async). Users own an ordered list of exercises;
# the per-user exercise counter is incremented in SQL together with the
# exercise insert, inside one transaction.
# =============================================================================

from __future__ import annotations

import logging
import secrets
from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional

from sqlalchemy import Float, ForeignKey, Integer, String, delete, select, text, update
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, selectinload

log = logging.getLogger("exercise-tracker")


# -----------------------------------------------------------------------------
# Errors
# -----------------------------------------------------------------------------
class StoreError(Exception):
    """Base class for user store failures."""


class UserNotFound(StoreError):
    def __init__(self, user_id: str):
        super().__init__(f"user {user_id!r} not found")
        self.user_id = user_id


class UsernameTaken(StoreError):
    def __init__(self, username: str):
        super().__init__(f"username {username!r} already exists")
        self.username = username


class StoreUnavailable(StoreError):
    """The database could not be reached or refused the operation."""


# -----------------------------------------------------------------------------
# SQLAlchemy models
# -----------------------------------------------------------------------------
class Base(DeclarativeBase):
    pass


def new_object_id() -> str:
    """24 lowercase hex chars, same shape as a document-store object id."""
    return secrets.token_hex(12)


class User(Base):
    __tablename__ = "users"

    pk: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(24), unique=True, nullable=False, default=new_object_id)
    username: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    exercises: Mapped[List["Exercise"]] = relationship(
        back_populates="user",
        order_by="Exercise.id",
        cascade="all, delete-orphan",
    )


class Exercise(Base):
    __tablename__ = "exercises"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), index=True, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    duration: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    date: Mapped[str] = mapped_column(String(10), nullable=False)  # YYYY-MM-DD

    user: Mapped[User] = relationship(back_populates="exercises")


# -----------------------------------------------------------------------------
# Store
# -----------------------------------------------------------------------------
class UserStore:
    """Persistence for users and their exercise logs.

    Construct one per process, call ``init()`` on startup and ``close()``
    on shutdown. Every method opens its own session.
    """

    def __init__(self, engine: AsyncEngine, description: str = "SQL"):
        self.engine = engine
        self.description = description
        self._sessions = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    @classmethod
    def from_url(cls, url: str, description: Optional[str] = None, **engine_kw) -> "UserStore":
        engine = create_async_engine(url, echo=False, **engine_kw)
        return cls(engine, description or engine.dialect.name)

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._sessions() as s:
                yield s
        except (OperationalError, InterfaceError, OSError) as e:
            log.error(f"Store unavailable: {e}")
            raise StoreUnavailable(str(e)) from e

    async def init(self) -> None:
        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except (OperationalError, InterfaceError, OSError) as e:
            log.error(f"Could not initialise store ({self.description}): {e}")
            raise StoreUnavailable(str(e)) from e
        log.info(f"User store ready ({self.description})")

    async def close(self) -> None:
        await self.engine.dispose()

    async def ping(self) -> bool:
        try:
            async with self._session() as s:
                await s.execute(text("SELECT 1"))
        except StoreUnavailable:
            return False
        return True

    # -- users -----------------------------------------------------------------
    async def create_user(self, username: str) -> User:
        user = User(id=new_object_id(), username=username, count=0, exercises=[])
        async with self._session() as s:
            s.add(user)
            try:
                await s.commit()
            except IntegrityError as e:
                await s.rollback()
                log.info(f"Rejected duplicate username {username!r}")
                raise UsernameTaken(username) from e
        return user

    async def find_all_users(self) -> List[User]:
        async with self._session() as s:
            result = await s.execute(
                select(User).options(selectinload(User.exercises)).order_by(User.pk)
            )
            return list(result.scalars().all())

    async def find_user_by_id(self, user_id: str) -> User:
        async with self._session() as s:
            user = await self._load_user(s, user_id)
        if user is None:
            raise UserNotFound(user_id)
        return user

    async def append_exercise(
        self,
        user_id: str,
        description: Optional[str],
        duration: Optional[float],
        date: str,
    ) -> User:
        """Append one exercise and bump the user's count atomically."""
        async with self._session() as s:
            result = await s.execute(
                update(User)
                .where(User.id == user_id)
                .values(count=User.count + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                await s.rollback()
                raise UserNotFound(user_id)
            s.add(Exercise(user_id=user_id, description=description, duration=duration, date=date))
            await s.commit()
            user = await self._load_user(s, user_id)
        if user is None:
            raise UserNotFound(user_id)
        return user

    async def delete_all_users(self) -> int:
        async with self._session() as s:
            await s.execute(delete(Exercise))
            result = await s.execute(delete(User))
            await s.commit()
        return int(result.rowcount or 0)

    @staticmethod
    async def _load_user(s: AsyncSession, user_id: str) -> Optional[User]:
        result = await s.execute(
            select(User)
            .options(selectinload(User.exercises))
            .where(User.id == user_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()
