"""Async database service with SQLModel and SQLAlchemy 2.0."""

from datetime import datetime
from typing import List, Optional, Sequence
from sqlmodel import SQLModel, select
from sqlalchemy import delete, event, func, nulls_first, update
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from contextlib import asynccontextmanager

from core.config import Settings
from core.logging import get_logger
from models.database import (
    PaperView,
    Subscription,
    User,
    as_utc,
    decode_categories,
    encode_categories,
    utc_now,
)
from models.papers import DueSubscription
from services.errors import PersistenceError

logger = get_logger(__name__)


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class Database:
    """Async database service with SQLModel."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.engine = None
        self.async_session = None

    @property
    def dialect_name(self) -> str:
        if not self.engine:
            raise RuntimeError("Database not initialized")
        return self.engine.dialect.name

    async def startup(self):
        """Initialize database connection and create tables."""
        try:
            engine_kwargs = {"echo": self.settings.database_echo}
            if not self.settings.uses_sqlite:
                engine_kwargs["pool_size"] = self.settings.database_pool_size
                engine_kwargs["max_overflow"] = self.settings.database_max_overflow

            self.engine = create_async_engine(self.settings.database_url, **engine_kwargs)
            if self.engine.dialect.name == "sqlite":
                event.listen(self.engine.sync_engine, "connect", _enable_sqlite_foreign_keys)

            self.async_session = async_sessionmaker(
                bind=self.engine,
                class_=AsyncSession,
                expire_on_commit=False
            )

            await self.create_tables()
            logger.info("Database initialized successfully", dialect=self.engine.dialect.name)

        except Exception as e:
            logger.error("Database startup failed", error=str(e))
            raise

    async def create_tables(self):
        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)

    async def shutdown(self):
        """Close database connections."""
        if self.engine:
            await self.engine.dispose()
            logger.info("Database connections closed")

    @asynccontextmanager
    async def get_session(self):
        """Get async database session."""
        if not self.async_session:
            raise RuntimeError("Database not initialized")

        async with self.async_session() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    # ============================================================================
    # Users
    # ============================================================================

    async def get_or_create_user(self, chat_id: int, username: Optional[str] = None,
                                 first_name: Optional[str] = None,
                                 last_name: Optional[str] = None) -> Optional[User]:
        """Fetch a user by chat id, creating it on first contact."""
        try:
            async with self.get_session() as session:
                stmt = select(User).where(User.chat_id == chat_id)
                result = await session.execute(stmt)
                user = result.scalar_one_or_none()

                if user is None:
                    user = User(chat_id=chat_id, username=username,
                                first_name=first_name, last_name=last_name)
                    session.add(user)
                else:
                    if username is not None:
                        user.username = username
                    if first_name is not None:
                        user.first_name = first_name
                    if last_name is not None:
                        user.last_name = last_name
                user.last_active_at = utc_now()

                await session.commit()
                await session.refresh(user)
                return user

        except Exception as e:
            logger.error("Failed to get or create user", chat_id=chat_id, error=str(e))
            return None

    async def get_user(self, chat_id: int) -> Optional[User]:
        try:
            async with self.get_session() as session:
                result = await session.execute(select(User).where(User.chat_id == chat_id))
                return result.scalar_one_or_none()

        except Exception as e:
            logger.error("Failed to get user", chat_id=chat_id, error=str(e))
            return None

    async def delete_user(self, chat_id: int) -> bool:
        """Delete a user together with its subscriptions and view ledger."""
        try:
            async with self.get_session() as session:
                result = await session.execute(select(User).where(User.chat_id == chat_id))
                user = result.scalar_one_or_none()
                if user is None:
                    return False

                await session.execute(delete(PaperView).where(PaperView.user_id == user.id))
                await session.execute(delete(Subscription).where(Subscription.user_id == user.id))
                await session.delete(user)
                await session.commit()
                logger.info("User deleted", chat_id=chat_id, user_id=user.id)
                return True

        except Exception as e:
            logger.error("Failed to delete user", chat_id=chat_id, error=str(e))
            return False

    async def get_preferred_categories(self, chat_id: int) -> List[str]:
        user = await self.get_user(chat_id)
        if user is None:
            return []
        return decode_categories(user.preferred_categories)

    async def set_preferred_categories(self, chat_id: int, categories: Sequence[str]) -> bool:
        """Store preferred categories. Raises ValueError on malformed codes."""
        encoded = encode_categories(categories)
        try:
            async with self.get_session() as session:
                result = await session.execute(
                    update(User).where(User.chat_id == chat_id).values(preferred_categories=encoded)
                )
                await session.commit()
                return result.rowcount > 0

        except Exception as e:
            logger.error("Failed to set preferred categories", chat_id=chat_id, error=str(e))
            return False

    # ============================================================================
    # Subscriptions
    # ============================================================================

    async def create_subscription(self, user_id: int, topic: str, category: Optional[str] = None,
                                  interval_hours: int = 24) -> Optional[Subscription]:
        try:
            async with self.get_session() as session:
                subscription = Subscription(
                    user_id=user_id,
                    topic=topic,
                    category=category,
                    interval_hours=interval_hours,
                    is_active=True
                )
                session.add(subscription)
                await session.commit()
                await session.refresh(subscription)
                return subscription

        except Exception as e:
            logger.error("Failed to create subscription", user_id=user_id, topic=topic, error=str(e))
            return None

    async def get_subscription(self, subscription_id: int) -> Optional[Subscription]:
        try:
            async with self.get_session() as session:
                return await session.get(Subscription, subscription_id)

        except Exception as e:
            logger.error("Failed to get subscription", subscription_id=subscription_id, error=str(e))
            return None

    async def get_user_subscriptions(self, user_id: int, active_only: bool = True) -> List[Subscription]:
        try:
            async with self.get_session() as session:
                stmt = select(Subscription).where(Subscription.user_id == user_id)
                if active_only:
                    stmt = stmt.where(Subscription.is_active == True)  # noqa: E712
                stmt = stmt.order_by(Subscription.created_at.desc(), Subscription.id.desc())
                result = await session.execute(stmt)
                return list(result.scalars().all())

        except Exception as e:
            logger.error("Failed to get user subscriptions", user_id=user_id, error=str(e))
            return []

    async def count_active_subscriptions(self, user_id: int) -> int:
        try:
            async with self.get_session() as session:
                stmt = select(func.count()).select_from(Subscription).where(
                    Subscription.user_id == user_id,
                    Subscription.is_active == True  # noqa: E712
                )
                result = await session.execute(stmt)
                return result.scalar_one()

        except Exception as e:
            logger.error("Failed to count subscriptions", user_id=user_id, error=str(e))
            return 0

    async def count_total_active(self) -> int:
        try:
            async with self.get_session() as session:
                stmt = select(func.count()).select_from(Subscription).where(
                    Subscription.is_active == True  # noqa: E712
                )
                result = await session.execute(stmt)
                return result.scalar_one()

        except Exception as e:
            logger.error("Failed to count active subscriptions", error=str(e))
            return 0

    async def count_users(self) -> int:
        try:
            async with self.get_session() as session:
                result = await session.execute(select(func.count()).select_from(User))
                return result.scalar_one()

        except Exception as e:
            logger.error("Failed to count users", error=str(e))
            return 0

    async def find_subscription(self, user_id: int, topic: str) -> Optional[Subscription]:
        """Find a subscription (active or not) by owner and normalized topic."""
        try:
            async with self.get_session() as session:
                stmt = select(Subscription).where(
                    Subscription.user_id == user_id,
                    Subscription.topic == topic
                ).order_by(Subscription.id.desc())
                result = await session.execute(stmt)
                return result.scalars().first()

        except Exception as e:
            logger.error("Failed to find subscription", user_id=user_id, topic=topic, error=str(e))
            return None

    async def update_subscription(self, subscription_id: int, **fields) -> Optional[Subscription]:
        allowed = {"topic", "category", "interval_hours", "is_active", "last_run_at"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Cannot update subscription fields: {sorted(unknown)}")

        try:
            async with self.get_session() as session:
                subscription = await session.get(Subscription, subscription_id)
                if subscription is None:
                    return None
                for name, value in fields.items():
                    setattr(subscription, name, value)
                await session.commit()
                await session.refresh(subscription)
                return subscription

        except Exception as e:
            logger.error("Failed to update subscription", subscription_id=subscription_id, error=str(e))
            return None

    async def deactivate_subscription(self, subscription_id: int) -> bool:
        return await self.update_subscription(subscription_id, is_active=False) is not None

    async def reactivate_subscription(self, subscription_id: int) -> bool:
        return await self.update_subscription(subscription_id, is_active=True) is not None

    async def delete_subscription_by_topic(self, user_id: int, topic: str) -> bool:
        """Soft-delete the owner's active subscription for a topic."""
        try:
            async with self.get_session() as session:
                result = await session.execute(
                    update(Subscription).where(
                        Subscription.user_id == user_id,
                        Subscription.topic == topic,
                        Subscription.is_active == True  # noqa: E712
                    ).values(is_active=False)
                )
                await session.commit()
                return result.rowcount > 0

        except Exception as e:
            logger.error("Failed to delete subscription", user_id=user_id, topic=topic, error=str(e))
            return False

    async def update_last_run(self, subscription_id: int, timestamp: Optional[datetime] = None) -> None:
        """Advance last_run_at. Raises PersistenceError so callers can retry next cycle."""
        timestamp = as_utc(timestamp) or utc_now()
        try:
            async with self.get_session() as session:
                result = await session.execute(
                    update(Subscription).where(Subscription.id == subscription_id)
                    .values(last_run_at=timestamp)
                )
                await session.commit()
        except Exception as e:
            raise PersistenceError("update_last_run", str(e)) from e

        if result.rowcount == 0:
            raise PersistenceError("update_last_run", f"subscription {subscription_id} not found")

    async def list_due(self, limit: Optional[int] = None,
                       now: Optional[datetime] = None) -> List[DueSubscription]:
        """Due subscriptions, oldest last_run_at first (never-run first).

        Raises PersistenceError: a run that cannot enumerate its work must fail.
        """
        now = now or utc_now()
        try:
            async with self.get_session() as session:
                stmt = (
                    select(Subscription, User.chat_id)
                    .join(User, User.id == Subscription.user_id)
                    .where(Subscription.is_active == True)  # noqa: E712
                    .order_by(nulls_first(Subscription.last_run_at.asc()), Subscription.id.asc())
                )
                result = await session.execute(stmt)
                rows = result.all()
        except Exception as e:
            raise PersistenceError("list_due", str(e)) from e

        due: List[DueSubscription] = []
        for subscription, chat_id in rows:
            if not subscription.is_due(now):
                continue
            due.append(DueSubscription(
                id=subscription.id,
                owner_id=subscription.user_id,
                chat_id=chat_id,
                topic=subscription.topic,
                category=subscription.category,
                interval_hours=subscription.interval_hours,
                last_run_at=as_utc(subscription.last_run_at),
            ))
            if limit is not None and len(due) >= limit:
                break
        return due
