"""Test configuration."""
import os
import random
import tempfile
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Generator, List, Optional

import pytest
from dotenv import load_dotenv

# Set test environment before any imports
os.environ["ENV"] = "test"
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("DATA_DIR", tempfile.mkdtemp(prefix="wordrecall-test-"))

# Load test environment variables
test_env_path = Path(__file__).parent.parent.parent.parent / ".env.test"
load_dotenv(test_env_path)

# Import after environment setup
from sqlalchemy.orm import Session

from wordrecall.config import ensure_directories
from wordrecall.models.base import Base, SessionLocal, engine
from wordrecall.models import models  # noqa: F401
from wordrecall.services.deck_service import DeckEngine
from wordrecall.services.progress_store import SqlProgressStore
from wordrecall.services.remote_store import (
    COMPARISON_FIELDS,
    RESOURCES,
    WORDS,
    RemoteStore,
    RemoteStoreError,
    parse_remote_timestamp,
)
from wordrecall.services.review_scheduler import EbbinghausScheduler
from wordrecall.services.word_history import StoreWordHistoryProvider

START = datetime(2024, 3, 4, 10, 0, tzinfo=UTC)


class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime = START):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


class FakeRemoteStore(RemoteStore):
    """In-memory remote store with microsecond ``updated_at`` stamps."""

    def __init__(self, clock: FakeClock, user_id: Optional[str] = "user-1"):
        self.clock = clock
        self._user_id = user_id
        self.rows: Dict[str, Dict[str, Dict[str, Any]]] = {resource: {} for resource in RESOURCES}
        self.fail_upserts = 0
        self.fail_fetch: set = set()
        self.upsert_calls: List[List[str]] = []
        self.blacklisted: List[str] = []
        self._tick = 0

    @property
    def user_id(self) -> Optional[str]:
        return self._user_id

    def _stamp(self) -> str:
        self._tick += 1
        return (self.clock() + timedelta(microseconds=137 * self._tick)).isoformat()

    def seed(self, resource: str, row: Dict[str, Any]) -> Dict[str, Any]:
        stored = dict(row, updated_at=self._stamp())
        stored.setdefault("is_blacklisted", False)
        self.rows[resource][row["word"]] = stored
        return stored

    def fetch_changed(self, resource: str, since: datetime) -> List[Dict[str, Any]]:
        if resource in self.fail_fetch:
            raise RemoteStoreError(f"{resource} unavailable")
        return [
            dict(row)
            for row in self.rows[resource].values()
            if parse_remote_timestamp(row["updated_at"]) > since
            and not (resource == WORDS and row.get("is_blacklisted"))
        ]

    def fetch_comparison(self, resource: str, words: List[str]) -> Dict[str, Dict[str, Any]]:
        return {
            word: {name: self.rows[resource][word].get(name) for name in COMPARISON_FIELDS[resource]}
            for word in words
            if word in self.rows[resource]
        }

    def upsert(self, resource: str, rows: List[Dict[str, Any]]) -> None:
        self.upsert_calls.append([row["word"] for row in rows])
        if self.fail_upserts > 0:
            self.fail_upserts -= 1
            raise RemoteStoreError("Request entity too large")
        for row in rows:
            self.seed(resource, row)

    def delete(self, resource: str, word: str) -> None:
        self.rows[resource].pop(word, None)

    def blacklist(self, word: str) -> None:
        self.blacklisted.append(word)
        if word in self.rows[WORDS]:
            self.rows[WORDS][word]["is_blacklisted"] = True
            self.rows[WORDS][word]["updated_at"] = self._stamp()


@pytest.fixture(autouse=True)
def setup_test_environment() -> Generator[None, None, None]:
    """Set up a clean database before each test."""
    ensure_directories()
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)

    yield


@pytest.fixture
def db() -> Generator[Session, None, None]:
    """Create a fresh database session for each test."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def store(db: Session) -> SqlProgressStore:
    return SqlProgressStore(db)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def history(store: SqlProgressStore, clock: FakeClock) -> StoreWordHistoryProvider:
    return StoreWordHistoryProvider(store, now=clock)


@pytest.fixture
def scheduler(store: SqlProgressStore, clock: FakeClock) -> EbbinghausScheduler:
    return EbbinghausScheduler(store, now=clock)


@pytest.fixture
def deck_engine(
    store: SqlProgressStore,
    scheduler: EbbinghausScheduler,
    history: StoreWordHistoryProvider,
    clock: FakeClock,
) -> DeckEngine:
    return DeckEngine(store, scheduler, history, now=clock, rng=random.Random(42))


@pytest.fixture
def remote(clock: FakeClock) -> FakeRemoteStore:
    return FakeRemoteStore(clock)


@pytest.fixture
def signed_out_remote(clock: FakeClock) -> FakeRemoteStore:
    return FakeRemoteStore(clock, user_id=None)
