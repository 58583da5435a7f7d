"""Key-value persistence for progress records and the active session."""
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from wordrecall.models.models import Document
from wordrecall.models.progress import (
    WordProgressRecord,
    WordState,
    from_millis,
    normalize_word,
    utcnow,
)

logger = logging.getLogger(__name__)

# Collections
WORD_PROGRESS = "word-progress"
FLASHCARD_SESSION = "flashcard-session"
FLASHCARD_PROGRESS = "flashcard-progress"
WORD_HISTORY = "word-history"
REVIEW_SESSION = "review-session"
META = "meta"

# Older layout kept one collection per review state
LEGACY_PENDING = "word-progress-pending"
LEGACY_REVIEWING = "word-progress-reviewing"
LEGACY_MASTERED = "word-progress-mastered"
LEGACY_COLLECTIONS = {
    LEGACY_PENDING: "pending",
    LEGACY_REVIEWING: "reviewing",
    LEGACY_MASTERED: "mastered",
}

CURRENT_KEY = "current"
BLACKLIST_KEY = "word-blacklist"


def cursor_key(resource: str) -> str:
    """Return the meta key holding a sync cursor."""
    return f"sync-cursor:{resource}"


class ProgressStore(ABC):
    """Abstract document store addressed by ``(collection, key)``.

    Records are plain dicts; the key of a record passed to ``put`` is taken
    from its ``word`` field unless given explicitly.
    """

    @abstractmethod
    def get_all(self, collection: str) -> List[Dict[str, Any]]:
        """Return every record of a collection."""

    @abstractmethod
    def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        """Return one record or None."""

    @abstractmethod
    def put(self, collection: str, record: Dict[str, Any], key: Optional[str] = None) -> None:
        """Insert or replace a record."""

    @abstractmethod
    def delete(self, collection: str, key: str) -> None:
        """Delete a record; missing keys are ignored."""

    @abstractmethod
    def clear(self, collection: str) -> None:
        """Delete every record of a collection."""

    def put_many(self, collection: str, records: List[Dict[str, Any]]) -> None:
        for record in records:
            self.put(collection, record)

    @staticmethod
    def _key_for(record: Dict[str, Any], key: Optional[str]) -> str:
        if key is not None:
            return key
        if "word" not in record:
            raise ValueError("Record has no 'word' field and no explicit key was given")
        return record["word"]


class SqlProgressStore(ProgressStore):
    """Progress store backed by the ``documents`` table."""

    def __init__(self, db: Session):
        """Initialize the store with a database session."""
        self.db = db

    def get_all(self, collection: str) -> List[Dict[str, Any]]:
        rows = (
            self.db.query(Document)
            .filter(Document.collection == collection)
            .order_by(Document.key)
            .all()
        )
        return [dict(row.data) for row in rows]

    def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        row = self.db.get(Document, (collection, key))
        return dict(row.data) if row else None

    def put(self, collection: str, record: Dict[str, Any], key: Optional[str] = None) -> None:
        key = self._key_for(record, key)
        row = self.db.get(Document, (collection, key))
        if row:
            row.data = record
        else:
            self.db.add(Document(collection=collection, key=key, data=record))
        self.db.commit()

    def put_many(self, collection: str, records: List[Dict[str, Any]]) -> None:
        """Write several records in one transaction."""
        for record in records:
            key = self._key_for(record, None)
            row = self.db.get(Document, (collection, key))
            if row:
                row.data = record
            else:
                self.db.add(Document(collection=collection, key=key, data=record))
        self.db.commit()

    def delete(self, collection: str, key: str) -> None:
        self.db.query(Document).filter(
            Document.collection == collection,
            Document.key == key,
        ).delete()
        self.db.commit()

    def clear(self, collection: str) -> None:
        self.db.query(Document).filter(Document.collection == collection).delete()
        self.db.commit()


def _from_legacy(state: str, record: Dict[str, Any]) -> WordProgressRecord:
    """Convert a legacy record with epoch-millisecond fields."""
    def ms(name: str):
        value = record.get(name)
        return from_millis(int(value)) if value else None

    added_at = ms("addedDate") or ms("lastUsed") or ms("masteredDate") or utcnow()
    return WordProgressRecord(
        word=record["word"],
        state=WordState(state),
        added_at=added_at,
        stage=int(record.get("stage") or 0),
        last_used_at=ms("lastUsed"),
        next_review_at=ms("nextReviewDate"),
        mastered_at=ms("masteredDate"),
        updated_at=utcnow(),
    )


def migrate_legacy_collections(store: ProgressStore) -> int:
    """Fold the per-state legacy collections into the tagged collection.

    When a word is found in more than one legacy collection, the most
    advanced state wins. Words already present in the tagged collection
    are left alone. Returns the number of migrated words.
    """
    merged: Dict[str, WordProgressRecord] = {}

    for collection, state in LEGACY_COLLECTIONS.items():
        for data in store.get_all(collection):
            if not normalize_word(data.get("word") or ""):
                continue
            record = _from_legacy(state, data)
            existing = merged.get(record.word)
            if existing is None or record.state.rank > existing.state.rank:
                merged[record.word] = record

    for word, record in merged.items():
        if store.get(WORD_PROGRESS, word) is None:
            store.put(WORD_PROGRESS, record.to_data())

    for collection in LEGACY_COLLECTIONS:
        store.clear(collection)

    if merged:
        logger.info("Migrated %d words from legacy review collections", len(merged))
    return len(merged)
