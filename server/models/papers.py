"""Paper and delivery models.

All models are JSON-serializable so they can round-trip through the
result cache unchanged.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Any, List, Optional


@dataclass(frozen=True)
class PaperSummary:
    """Immutable paper record as returned by the search provider."""
    paper_id: str
    title: str
    authors: List[str] = field(default_factory=list)
    summary: str = ""
    link: str = ""
    categories: List[str] = field(default_factory=list)
    published_date: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "paper_id": self.paper_id,
            "title": self.title,
            "authors": list(self.authors),
            "summary": self.summary,
            "link": self.link,
            "categories": list(self.categories),
            "published_date": self.published_date,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PaperSummary":
        """Create from dict. Raises KeyError/TypeError on malformed input."""
        return cls(
            paper_id=str(data["paper_id"]),
            title=str(data["title"]),
            authors=list(data.get("authors") or []),
            summary=data.get("summary") or "",
            link=data.get("link") or "",
            categories=list(data.get("categories") or []),
            published_date=data.get("published_date"),
        )


@dataclass
class DueSubscription:
    """A due subscription joined with its owner's delivery address."""
    id: int
    owner_id: int
    chat_id: int
    topic: str
    category: Optional[str]
    interval_hours: int
    last_run_at: Optional[datetime] = None


class SubscriptionOutcome(str, Enum):
    """Terminal states of one subscription within a batch.

    DELIVERED and SKIPPED count as successful, FAILED as failed.
    DEFERRED is neither: the subscription stays due for the next run.
    """
    DELIVERED = "delivered"
    SKIPPED = "skipped"      # No new papers
    DEFERRED = "deferred"    # Rate limited
    FAILED = "failed"


@dataclass
class SubscriptionReport:
    """Outcome of a single subscription's pipeline."""
    subscription_id: int
    owner_id: int
    topic: str
    outcome: SubscriptionOutcome
    paper_ids: List[str] = field(default_factory=list)
    error: Optional[str] = None
    retry_after_ms: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subscription_id": self.subscription_id,
            "owner_id": self.owner_id,
            "topic": self.topic,
            "outcome": self.outcome.value,
            "paper_ids": list(self.paper_ids),
            "error": self.error,
            "retry_after_ms": self.retry_after_ms,
        }


@dataclass
class BatchResult:
    """Summary of one worker run. Logged and returned, never persisted."""
    processed: int = 0
    successful: int = 0
    failed: int = 0
    deferred: int = 0
    papers_delivered: int = 0
    duration_ms: int = 0
    dry_run: bool = False
    deadline_reached: bool = False
    reports: List[SubscriptionReport] = field(default_factory=list)

    def record(self, report: SubscriptionReport) -> None:
        self.reports.append(report)
        if report.outcome in (SubscriptionOutcome.DELIVERED, SubscriptionOutcome.SKIPPED):
            self.successful += 1
            self.papers_delivered += len(report.paper_ids)
        elif report.outcome == SubscriptionOutcome.FAILED:
            self.failed += 1
        else:
            self.deferred += 1

    def to_dict(self) -> Dict[str, Any]:
        """Structured payload for the trigger endpoint."""
        return {
            "processed": self.processed,
            "successful": self.successful,
            "failed": self.failed,
            "deferred": self.deferred,
            "papersDelivered": self.papers_delivered,
            "durationMs": self.duration_ms,
            "dryRun": self.dry_run,
            "deadlineReached": self.deadline_reached,
            "subscriptions": [r.to_dict() for r in self.reports],
        }
