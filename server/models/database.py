"""SQLModel database models and tables."""

import json
import re
from datetime import datetime, timezone
from typing import List, Optional, Sequence

from sqlmodel import SQLModel, Field, Column, DateTime
from sqlalchemy import ForeignKey, Integer, UniqueConstraint, func

from core.logging import get_logger

logger = get_logger(__name__)

# archive.SUBCLASS, e.g. cs.AI, math.CO, astro-ph.GA; plus bare archives like hep-th
CATEGORY_CODE_RE = re.compile(r"^[a-z][a-z-]*(\.[A-Za-z]{2,})?$")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class User(SQLModel, table=True):
    """Chat user who owns subscriptions and a view ledger."""

    __tablename__ = "users"

    id: Optional[int] = Field(default=None, primary_key=True)
    chat_id: int = Field(unique=True, index=True)
    username: Optional[str] = Field(default=None, max_length=255)
    first_name: Optional[str] = Field(default=None, max_length=255)
    last_name: Optional[str] = Field(default=None, max_length=255)
    results_per_page: int = Field(default=5)
    preferred_categories: Optional[str] = Field(default=None, max_length=2000)
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), server_default=func.now())
    )
    last_active_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True)
    )


class Subscription(SQLModel, table=True):
    """Topic subscription delivered on a fixed interval."""

    __tablename__ = "subscriptions"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(
        sa_column=Column(Integer, ForeignKey("users.id", ondelete="CASCADE"),
                         nullable=False, index=True)
    )
    topic: str = Field(max_length=100)
    category: Optional[str] = Field(default=None, max_length=50)
    interval_hours: int = Field(default=24)
    is_active: bool = Field(default=True, index=True)
    last_run_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), server_default=func.now())
    )

    def is_due(self, now: datetime) -> bool:
        """Active and never run, or the interval has fully elapsed."""
        if not self.is_active:
            return False
        last_run = as_utc(self.last_run_at)
        if last_run is None:
            return True
        elapsed_hours = (as_utc(now) - last_run).total_seconds() / 3600
        return elapsed_hours >= self.interval_hours


class PaperView(SQLModel, table=True):
    """One (user, paper) pair already delivered or seen."""

    __tablename__ = "paper_views"
    __table_args__ = (UniqueConstraint("user_id", "paper_id", name="uq_paper_views_user_paper"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(
        sa_column=Column(Integer, ForeignKey("users.id", ondelete="CASCADE"),
                         nullable=False, index=True)
    )
    paper_id: str = Field(max_length=64, index=True)
    viewed_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False)
    )


# ============================================================================
# Preferred categories codec (persistence boundary only)
# ============================================================================

def is_valid_category(code: str) -> bool:
    return bool(code) and bool(CATEGORY_CODE_RE.match(code))


def encode_categories(categories: Sequence[str]) -> Optional[str]:
    """Encode an ordered list of category codes for storage.

    Raises ValueError on any malformed code so bad data never reaches the table.
    """
    cleaned: List[str] = []
    for code in categories:
        code = code.strip()
        if not is_valid_category(code):
            raise ValueError(f"Invalid category code: {code!r}")
        if code not in cleaned:
            cleaned.append(code)
    if not cleaned:
        return None
    return json.dumps(cleaned)


def decode_categories(raw: Optional[str]) -> List[str]:
    """Decode stored categories; malformed data decodes to an empty list."""
    if not raw:
        return []
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("Malformed preferred categories, ignoring", raw=raw[:100])
        return []
    if not isinstance(data, list) or not all(isinstance(c, str) and is_valid_category(c) for c in data):
        logger.warning("Malformed preferred categories, ignoring", raw=raw[:100])
        return []
    return data
