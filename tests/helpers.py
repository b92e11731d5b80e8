from datetime import timedelta
from typing import List, Optional

from core.database import Database
from models.database import utc_now
from models.papers import PaperSummary
from services.errors import DeliveryError


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeProvider:
    """Search provider returning canned papers per topic."""

    def __init__(self, results=None):
        self.results = results or {}
        self.failures = {}
        self.calls: List[tuple] = []

    async def search(self, topic: str, category: Optional[str] = None,
                     offset: int = 0, limit: int = 10) -> List[PaperSummary]:
        self.calls.append((topic, category, offset, limit))
        if topic in self.failures:
            raise self.failures[topic]
        return list(self.results.get(topic, []))[:limit]


class FakeNotifier:
    def __init__(self):
        self.sent: List[tuple] = []
        self.fail_for = set()

    async def send(self, chat_id: int, message: str) -> None:
        if chat_id in self.fail_for:
            raise DeliveryError(chat_id, "Forbidden: bot was blocked by the user")
        self.sent.append((chat_id, message))


def make_paper(paper_id: str, title: Optional[str] = None) -> PaperSummary:
    return PaperSummary(
        paper_id=paper_id,
        title=title or f"Paper {paper_id}",
        authors=["Ada Lovelace", "Alan Turing"],
        summary="A study of things.",
        link=f"http://arxiv.org/abs/{paper_id}v1",
        categories=["cs.AI"],
        published_date="2024-01-15",
    )


def hours_ago(hours: float):
    return utc_now() - timedelta(hours=hours)


async def add_subscription(database: Database, chat_id: int, topic: str,
                           category: Optional[str] = None, interval_hours: int = 24,
                           last_run_at=None):
    user = await database.get_or_create_user(chat_id)
    subscription = await database.create_subscription(user.id, topic, category=category,
                                                      interval_hours=interval_hours)
    if last_run_at is not None:
        await database.update_last_run(subscription.id, last_run_at)
    return user, subscription
