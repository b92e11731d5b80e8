"""Per-user ledger of papers already delivered or seen.

Used to filter provider results before delivery. Inserts are
conflict-tolerant: a duplicate (user, paper) pair is silently ignored.
"""

from datetime import datetime
from typing import Iterable, List, Optional, Set

from sqlalchemy import delete, func
from sqlalchemy.dialects import postgresql, sqlite
from sqlmodel import select

from core.database import Database
from core.logging import get_logger
from models.database import PaperView, as_utc, utc_now
from services.errors import PersistenceError

logger = get_logger(__name__)

_INSERT_BY_DIALECT = {
    "sqlite": sqlite.insert,
    "postgresql": postgresql.insert,
}


def _unique(paper_ids: Iterable[str]) -> List[str]:
    seen: Set[str] = set()
    ordered = []
    for paper_id in paper_ids:
        if paper_id and paper_id not in seen:
            seen.add(paper_id)
            ordered.append(paper_id)
    return ordered


class ViewLedger:
    """View ledger over the paper_views table."""

    def __init__(self, database: Database):
        self.database = database

    def _insert(self):
        dialect = self.database.dialect_name
        try:
            return _INSERT_BY_DIALECT[dialect]
        except KeyError:
            raise PersistenceError("view_ledger", f"unsupported dialect {dialect!r}") from None

    async def mark_viewed(self, owner_id: int, paper_id: str) -> Optional[PaperView]:
        """Record one view. Returns None when the pair was already recorded."""
        try:
            async with self.database.get_session() as session:
                stmt = (
                    self._insert()(PaperView)
                    .values(user_id=owner_id, paper_id=paper_id, viewed_at=utc_now())
                    .on_conflict_do_nothing(index_elements=["user_id", "paper_id"])
                    .returning(PaperView.id, PaperView.viewed_at)
                )
                result = await session.execute(stmt)
                row = result.first()
                await session.commit()
        except PersistenceError:
            raise
        except Exception as e:
            raise PersistenceError("mark_viewed", str(e)) from e

        if row is None:
            return None
        return PaperView(id=row.id, user_id=owner_id, paper_id=paper_id, viewed_at=row.viewed_at)

    async def mark_all_viewed(self, owner_id: int, paper_ids: Iterable[str]) -> int:
        """Record many views; returns how many pairs were newly inserted."""
        unique_ids = _unique(paper_ids)
        if not unique_ids:
            return 0

        viewed_at = utc_now()
        try:
            async with self.database.get_session() as session:
                stmt = (
                    self._insert()(PaperView)
                    .values([
                        {"user_id": owner_id, "paper_id": paper_id, "viewed_at": viewed_at}
                        for paper_id in unique_ids
                    ])
                    .on_conflict_do_nothing(index_elements=["user_id", "paper_id"])
                    .returning(PaperView.paper_id)
                )
                result = await session.execute(stmt)
                inserted = len(result.all())
                await session.commit()
        except PersistenceError:
            raise
        except Exception as e:
            raise PersistenceError("mark_all_viewed", str(e)) from e

        logger.debug("Papers marked viewed", owner_id=owner_id,
                     requested=len(unique_ids), inserted=inserted)
        return inserted

    async def has_viewed(self, owner_id: int, paper_id: str) -> bool:
        try:
            async with self.database.get_session() as session:
                stmt = select(PaperView.id).where(
                    PaperView.user_id == owner_id,
                    PaperView.paper_id == paper_id
                ).limit(1)
                result = await session.execute(stmt)
                return result.first() is not None
        except Exception as e:
            raise PersistenceError("has_viewed", str(e)) from e

    async def get_viewed_ids(self, owner_id: int, paper_ids: Iterable[str]) -> Set[str]:
        """Subset of paper_ids the owner has already viewed. Empty input skips the store."""
        unique_ids = _unique(paper_ids)
        if not unique_ids:
            return set()

        try:
            async with self.database.get_session() as session:
                stmt = select(PaperView.paper_id).where(
                    PaperView.user_id == owner_id,
                    PaperView.paper_id.in_(unique_ids)
                )
                result = await session.execute(stmt)
                return set(result.scalars().all())
        except Exception as e:
            raise PersistenceError("get_viewed_ids", str(e)) from e

    async def viewed_since(self, owner_id: int, since: datetime) -> List[str]:
        """Paper ids viewed at or after `since`, newest first."""
        try:
            async with self.database.get_session() as session:
                stmt = select(PaperView.paper_id).where(
                    PaperView.user_id == owner_id,
                    PaperView.viewed_at >= as_utc(since)
                ).order_by(PaperView.viewed_at.desc(), PaperView.id.desc())
                result = await session.execute(stmt)
                return list(result.scalars().all())
        except Exception as e:
            raise PersistenceError("viewed_since", str(e)) from e

    async def recent_views(self, owner_id: int, limit: int = 50) -> List[PaperView]:
        try:
            async with self.database.get_session() as session:
                stmt = select(PaperView).where(PaperView.user_id == owner_id).order_by(
                    PaperView.viewed_at.desc(), PaperView.id.desc()
                ).limit(limit)
                result = await session.execute(stmt)
                return list(result.scalars().all())
        except Exception as e:
            logger.error("Failed to get recent views", owner_id=owner_id, error=str(e))
            return []

    async def view_count(self, owner_id: int) -> int:
        try:
            async with self.database.get_session() as session:
                stmt = select(func.count()).select_from(PaperView).where(PaperView.user_id == owner_id)
                result = await session.execute(stmt)
                return result.scalar_one()
        except Exception as e:
            logger.error("Failed to count views", owner_id=owner_id, error=str(e))
            return 0

    async def total_views(self) -> int:
        try:
            async with self.database.get_session() as session:
                result = await session.execute(select(func.count()).select_from(PaperView))
                return result.scalar_one()
        except Exception as e:
            logger.error("Failed to count total views", error=str(e))
            return 0

    async def mark_unread(self, owner_id: int, paper_id: str) -> bool:
        try:
            async with self.database.get_session() as session:
                result = await session.execute(
                    delete(PaperView).where(
                        PaperView.user_id == owner_id,
                        PaperView.paper_id == paper_id
                    )
                )
                await session.commit()
                return result.rowcount > 0
        except Exception as e:
            raise PersistenceError("mark_unread", str(e)) from e

    async def clear_all(self, owner_id: int) -> int:
        try:
            async with self.database.get_session() as session:
                result = await session.execute(delete(PaperView).where(PaperView.user_id == owner_id))
                await session.commit()
                cleared = result.rowcount
        except Exception as e:
            raise PersistenceError("clear_all", str(e)) from e

        logger.info("View ledger cleared", owner_id=owner_id, cleared=cleared)
        return cleared
