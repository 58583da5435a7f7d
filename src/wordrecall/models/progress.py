"""Models for per-word learning progress and drilling sessions."""
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(UTC)


def localnow() -> datetime:
    """Return the current time in the local timezone."""
    return datetime.now().astimezone()


def normalize_word(word: str) -> str:
    """Lowercase a word and strip whitespace and line breaks."""
    if not isinstance(word, str):
        return ""
    return re.sub(r"[\r\n]+", "", word.strip()).lower()


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime for JSON storage."""
    return value.isoformat() if value else None


def from_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored or remote timestamp; naive values are taken as UTC."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def to_millis(value: datetime) -> int:
    """Convert a datetime to integer epoch milliseconds (truncating)."""
    return int(value.timestamp() * 1_000_000) // 1000


def from_millis(value: int) -> datetime:
    """Convert epoch milliseconds to a UTC datetime."""
    return datetime.fromtimestamp(value / 1000, tz=UTC)


class WordState(Enum):
    """Long-term review state of a word."""
    PENDING = "pending"
    REVIEWING = "reviewing"
    MASTERED = "mastered"

    @property
    def rank(self) -> int:
        """Position in the forward-only state order."""
        return _STATE_RANK[self]


_STATE_RANK = {WordState.PENDING: 0, WordState.REVIEWING: 1, WordState.MASTERED: 2}


@dataclass
class WordProgressRecord:
    """Long-term review progress of one word.

    Only the timestamp belonging to the current state is authoritative:
    ``added_at`` for pending, ``next_review_at`` for reviewing and
    ``mastered_at`` for mastered words.
    """
    word: str
    state: WordState
    added_at: datetime
    stage: int = 0
    last_used_at: Optional[datetime] = None
    next_review_at: Optional[datetime] = None
    mastered_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        self.word = normalize_word(self.word)
        if self.stage < 0:
            raise ValueError(f"Stage cannot be negative for word {self.word!r}")

    @classmethod
    def pending(cls, word: str, added_at: datetime) -> "WordProgressRecord":
        """Create a freshly queued record."""
        return cls(word=word, state=WordState.PENDING, added_at=added_at, updated_at=added_at)

    def is_ahead_of(self, other: "WordProgressRecord") -> bool:
        """Return True if this record is strictly further along than ``other``."""
        if self.state.rank != other.state.rank:
            return self.state.rank > other.state.rank
        return self.stage > other.stage

    def to_data(self) -> Dict[str, Any]:
        """Convert to serializable data for storage."""
        return {
            "word": self.word,
            "state": self.state.value,
            "stage": self.stage,
            "added_at": to_iso(self.added_at),
            "last_used_at": to_iso(self.last_used_at),
            "next_review_at": to_iso(self.next_review_at),
            "mastered_at": to_iso(self.mastered_at),
            "updated_at": to_iso(self.updated_at),
        }

    @classmethod
    def from_data(cls, data: Dict[str, Any]) -> "WordProgressRecord":
        """Create a record from stored data."""
        return cls(
            word=data["word"],
            state=WordState(data["state"]),
            stage=int(data.get("stage") or 0),
            added_at=from_iso(data.get("added_at")) or utcnow(),
            last_used_at=from_iso(data.get("last_used_at")),
            next_review_at=from_iso(data.get("next_review_at")),
            mastered_at=from_iso(data.get("mastered_at")),
            updated_at=from_iso(data.get("updated_at")),
        )


@dataclass
class CardView:
    """One card of the active deck."""
    word: str
    context: str = ""
    correct_count: int = 0

    def to_data(self) -> Dict[str, Any]:
        return {"word": self.word, "context": self.context, "correct_count": self.correct_count}

    @classmethod
    def from_data(cls, data: Dict[str, Any]) -> "CardView":
        return cls(
            word=data["word"],
            context=data.get("context") or "",
            correct_count=int(data.get("correct_count") or 0),
        )


@dataclass
class FlashcardSession:
    """State of the single active drilling session."""
    deck: List[CardView] = field(default_factory=list)
    current_index: int = 0
    words_completed: int = 0
    progress_score: float = 0.0
    last_review_time: Optional[datetime] = None
    total_words_in_history: int = 0

    @property
    def current_card(self) -> Optional[CardView]:
        if not self.deck:
            return None
        return self.deck[self.current_index]

    @property
    def words(self) -> List[str]:
        return [card.word for card in self.deck]

    def to_data(self) -> Dict[str, Any]:
        """Convert to the persisted snapshot."""
        return {
            "deck": [card.to_data() for card in self.deck],
            "current_index": self.current_index,
            "words_completed": self.words_completed,
            "progress_score": self.progress_score,
            "last_review_time": to_iso(self.last_review_time),
            "total_words_in_history": self.total_words_in_history,
        }

    @classmethod
    def from_data(cls, data: Dict[str, Any]) -> "FlashcardSession":
        """Restore a session snapshot verbatim."""
        deck = [CardView.from_data(card) for card in data.get("deck") or []]
        index = int(data.get("current_index") or 0)
        if not 0 <= index < max(len(deck), 1):
            index = 0
        return cls(
            deck=deck,
            current_index=index,
            words_completed=int(data.get("words_completed") or 0),
            progress_score=max(0.0, float(data.get("progress_score") or 0.0)),
            last_review_time=from_iso(data.get("last_review_time")),
            total_words_in_history=int(data.get("total_words_in_history") or 0),
        )


@dataclass
class FlashcardProgress:
    """Cross-session flashcard mastery of a word (SM-2 style)."""
    word: str
    mastery_level: int = 0
    easiness_factor: float = 2.5
    review_count: int = 0
    last_reviewed_at: Optional[datetime] = None
    next_review_at: Optional[datetime] = None
    context: str = ""
    updated_at: Optional[datetime] = None

    def is_ahead_of(self, other: "FlashcardProgress") -> bool:
        return self.review_count > other.review_count or self.mastery_level > other.mastery_level

    def to_data(self) -> Dict[str, Any]:
        return {
            "word": self.word,
            "mastery_level": self.mastery_level,
            "easiness_factor": self.easiness_factor,
            "review_count": self.review_count,
            "last_reviewed_at": to_iso(self.last_reviewed_at),
            "next_review_at": to_iso(self.next_review_at),
            "context": self.context,
            "updated_at": to_iso(self.updated_at),
        }

    @classmethod
    def from_data(cls, data: Dict[str, Any]) -> "FlashcardProgress":
        return cls(
            word=normalize_word(data["word"]),
            mastery_level=int(data.get("mastery_level") or 0),
            easiness_factor=float(data.get("easiness_factor") or 2.5),
            review_count=int(data.get("review_count") or 0),
            last_reviewed_at=from_iso(data.get("last_reviewed_at")),
            next_review_at=from_iso(data.get("next_review_at")),
            context=data.get("context") or "",
            updated_at=from_iso(data.get("updated_at")),
        )


@dataclass
class WordHistoryEntry:
    """Raw lookup history of a word."""
    count: int = 0
    contexts: List[str] = field(default_factory=list)
    lookups: List[datetime] = field(default_factory=list)

    @property
    def last_context(self) -> str:
        return self.contexts[-1] if self.contexts else ""

    def to_data(self, word: str) -> Dict[str, Any]:
        return {
            "word": word,
            "count": self.count,
            "contexts": list(self.contexts),
            "lookups": [to_iso(ts) for ts in self.lookups],
        }

    @classmethod
    def from_data(cls, data: Dict[str, Any]) -> "WordHistoryEntry":
        return cls(
            count=int(data.get("count") or 0),
            contexts=list(data.get("contexts") or []),
            lookups=[from_iso(ts) for ts in data.get("lookups") or [] if ts],
        )


@dataclass
class SyncCursor:
    """Incremental pull boundary of one remote resource, in epoch milliseconds."""
    resource: str
    last_synced_ms: int = 0

    def advanced_to(self, candidate_ms: int) -> "SyncCursor":
        """Return a cursor that never moves backwards."""
        return SyncCursor(self.resource, max(self.last_synced_ms, candidate_ms))
