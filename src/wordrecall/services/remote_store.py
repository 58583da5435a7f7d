"""Remote stores used as cloud sync targets."""
import logging
import re
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from typing import Any, Dict, List, Optional

from supabase import Client, create_client

from wordrecall.config import SYNC_BATCH_SIZE
from wordrecall.models.progress import normalize_word

logger = logging.getLogger(__name__)

# Resources
WORDS = "words"
FLASHCARD_PROGRESS = "flashcard_progress"
IMMERSIVE_REVIEW = "immersive_review"
RESOURCES = (WORDS, FLASHCARD_PROGRESS, IMMERSIVE_REVIEW)

# Fields fetched for push comparison
COMPARISON_FIELDS = {
    WORDS: ("count",),
    FLASHCARD_PROGRESS: ("review_count", "mastery_level"),
    IMMERSIVE_REVIEW: ("status", "stage"),
}


class RemoteStoreError(Exception):
    """Raised when a remote request fails."""


def parse_remote_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse a remote timestamp, keeping at most microsecond precision."""
    if not value:
        return None
    value = value.replace("Z", "+00:00")
    match = re.match(r"^(.*T\d{2}:\d{2}:\d{2})\.(\d+)(.*)$", value)
    if match:
        head, fraction, tail = match.groups()
        value = f"{head}.{fraction[:6].ljust(6, '0')}{tail}"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def chunked(items: List[Any], size: int = SYNC_BATCH_SIZE) -> List[List[Any]]:
    """Split a list into consecutive chunks of at most ``size`` items."""
    return [items[i:i + size] for i in range(0, len(items), size)]


class RemoteStore(ABC):
    """Per-user, resource-oriented remote storage.

    Rows are exchanged keyed by ``word``. Row shapes per resource:

    * ``words``: word, count, contexts, lookups, updated_at
    * ``flashcard_progress``: word, mastery_level, easiness_factor,
      review_count, last_reviewed_at, next_review_at, updated_at
    * ``immersive_review``: word, status, stage, added_at, next_review_at,
      last_used_at, mastered_at, updated_at

    Timestamps are ISO 8601 strings.
    """

    @property
    @abstractmethod
    def user_id(self) -> Optional[str]:
        """Identity every request is scoped to; None when signed out."""

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None

    @abstractmethod
    def fetch_changed(self, resource: str, since: datetime) -> List[Dict[str, Any]]:
        """Return rows with ``updated_at`` strictly after ``since``."""

    @abstractmethod
    def fetch_comparison(self, resource: str, words: List[str]) -> Dict[str, Dict[str, Any]]:
        """Return the comparison fields of the given words, keyed by word."""

    @abstractmethod
    def upsert(self, resource: str, rows: List[Dict[str, Any]]) -> None:
        """Insert or update rows."""

    @abstractmethod
    def delete(self, resource: str, word: str) -> None:
        """Delete a word's row from a resource."""

    @abstractmethod
    def blacklist(self, word: str) -> None:
        """Mark a word as blacklisted so it is excluded from pulls."""


class SupabaseRemoteStore(RemoteStore):
    """Remote store backed by Supabase tables.

    Tables: ``words`` (with ``word_contexts`` and ``word_lookups``),
    ``flashcard_progress`` and ``immersive_review``, the last two keyed by
    ``(user_id, word_id)``.
    """

    def __init__(self, url: str, key: str, batch_size: int = SYNC_BATCH_SIZE):
        """Initialize the Supabase client."""
        if not url or not key:
            raise ValueError("SUPABASE_URL and SUPABASE_ANON_KEY must be set")
        self.client: Client = create_client(url, key)
        self.batch_size = batch_size
        self._user_id: Optional[str] = None

    @property
    def user_id(self) -> Optional[str]:
        return self._user_id

    def sign_in(self, email: str, password: str) -> str:
        """Sign in with email and password and return the user id."""
        try:
            response = self.client.auth.sign_in_with_password({"email": email, "password": password})
        except Exception as e:
            raise RemoteStoreError(f"Sign in failed: {e}") from e
        if not response.user:
            raise RemoteStoreError("Sign in returned no user")
        self._user_id = response.user.id
        logger.info("Signed in to cloud sync as %s", email)
        return self._user_id

    def sign_out(self) -> None:
        try:
            self.client.auth.sign_out()
        except Exception as e:
            logger.warning("Sign out failed: %s", str(e))
        self._user_id = None

    def _require_user(self) -> str:
        if self._user_id is None:
            raise RemoteStoreError("Not logged in")
        return self._user_id

    def _execute(self, query, action: str):
        try:
            return query.execute()
        except Exception as e:
            raise RemoteStoreError(f"{action} failed: {e}") from e

    def _word_ids(self, words: List[str], create: bool = False) -> Dict[str, int]:
        """Resolve word ids, optionally creating missing word rows."""
        user_id = self._require_user()
        ids: Dict[str, int] = {}
        for batch in chunked(words, self.batch_size):
            result = self._execute(
                self.client.table("words").select("id, word").eq("user_id", user_id).in_("word", batch),
                "Word id lookup",
            )
            for row in result.data or []:
                ids[row["word"]] = row["id"]

        missing = [w for w in words if w not in ids]
        if create and missing:
            for batch in chunked(missing, self.batch_size):
                rows = [
                    {"user_id": user_id, "word": w, "lookup_count": 1, "is_blacklisted": False}
                    for w in batch
                ]
                result = self._execute(
                    self.client.table("words").upsert(rows, on_conflict="user_id,word"),
                    "Word creation",
                )
                for row in result.data or []:
                    ids[row["word"]] = row["id"]
        return ids

    # Reads

    def fetch_changed(self, resource: str, since: datetime) -> List[Dict[str, Any]]:
        user_id = self._require_user()
        since_iso = since.isoformat()

        if resource == WORDS:
            result = self._execute(
                self.client.table("words")
                .select("*")
                .eq("user_id", user_id)
                .eq("is_blacklisted", False)
                .gt("updated_at", since_iso),
                "Incremental word fetch",
            )
            rows = result.data or []
            return self._with_word_details(rows)

        result = self._execute(
            self.client.table(resource)
            .select("*, words!inner(word)")
            .eq("user_id", user_id)
            .gt("updated_at", since_iso),
            f"Incremental {resource} fetch",
        )
        rows = []
        for row in result.data or []:
            word = (row.get("words") or {}).get("word")
            if not word:
                continue
            if resource == FLASHCARD_PROGRESS:
                rows.append({
                    "word": word,
                    "mastery_level": row.get("mastery_level") or 0,
                    "easiness_factor": float(row.get("easiness_factor") or 2.5),
                    "review_count": row.get("review_count") or 0,
                    "last_reviewed_at": row.get("last_reviewed_at"),
                    "next_review_at": row.get("next_review_at"),
                    "updated_at": row.get("updated_at"),
                })
            else:
                rows.append({
                    "word": word,
                    "status": row.get("status"),
                    "stage": row.get("stage") or 0,
                    "added_at": row.get("added_at"),
                    "next_review_at": row.get("next_review_at"),
                    "last_used_at": row.get("last_used_at"),
                    "mastered_at": row.get("mastered_at"),
                    "updated_at": row.get("updated_at"),
                })
        logger.info("Incremental %s fetch: %d rows since %s", resource, len(rows), since_iso)
        return rows

    def _with_word_details(self, words: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Attach contexts and lookups to word rows, fetched in id batches."""
        contexts: Dict[int, List[str]] = {}
        lookups: Dict[int, List[str]] = {}
        for batch in chunked([w["id"] for w in words], self.batch_size):
            result = self._execute(
                self.client.table("word_contexts").select("word_id, context").in_("word_id", batch),
                "Context fetch",
            )
            for row in result.data or []:
                contexts.setdefault(row["word_id"], []).append(row["context"])
            result = self._execute(
                self.client.table("word_lookups").select("word_id, looked_up_at").in_("word_id", batch),
                "Lookup fetch",
            )
            for row in result.data or []:
                lookups.setdefault(row["word_id"], []).append(row["looked_up_at"])

        rows = [
            {
                "word": w["word"],
                "count": w.get("lookup_count") or 0,
                "contexts": contexts.get(w["id"], []),
                "lookups": lookups.get(w["id"], []),
                "updated_at": w.get("updated_at"),
            }
            for w in words
        ]
        logger.info("Incremental words fetch: %d rows", len(rows))
        return rows

    def fetch_comparison(self, resource: str, words: List[str]) -> Dict[str, Dict[str, Any]]:
        user_id = self._require_user()
        if resource == WORDS:
            result = self._execute(
                self.client.table("words")
                .select("word, lookup_count")
                .eq("user_id", user_id)
                .in_("word", words),
                "Word comparison fetch",
            )
            return {row["word"]: {"count": row.get("lookup_count") or 0} for row in result.data or []}

        fields = ", ".join(COMPARISON_FIELDS[resource])
        result = self._execute(
            self.client.table(resource)
            .select(f"{fields}, words!inner(word)")
            .eq("user_id", user_id)
            .in_("words.word", words),
            f"{resource} comparison fetch",
        )
        compared = {}
        for row in result.data or []:
            word = (row.get("words") or {}).get("word")
            if word:
                compared[word] = {name: row.get(name) for name in COMPARISON_FIELDS[resource]}
        return compared

    # Writes

    def upsert(self, resource: str, rows: List[Dict[str, Any]]) -> None:
        user_id = self._require_user()
        now = datetime.now(UTC).isoformat()

        if resource == WORDS:
            records = [
                {
                    "user_id": user_id,
                    "word": row["word"],
                    "lookup_count": row.get("count") or 1,
                    "last_lookup_at": now,
                    "is_blacklisted": False,
                    "updated_at": now,
                }
                for row in rows
            ]
            self._execute(
                self.client.table("words").upsert(records, on_conflict="user_id,word"),
                "Word upsert",
            )
            self._upsert_word_details(rows)
            return

        ids = self._word_ids([row["word"] for row in rows], create=True)
        records = []
        for row in rows:
            word_id = ids.get(row["word"])
            if word_id is None:
                logger.warning("No remote id for %r, skipping %s row", row["word"], resource)
                continue
            record = {k: v for k, v in row.items() if k != "word"}
            record.update({"user_id": user_id, "word_id": word_id, "updated_at": now})
            records.append(record)
        if records:
            self._execute(
                self.client.table(resource).upsert(records, on_conflict="user_id,word_id"),
                f"{resource} upsert",
            )

    def _upsert_word_details(self, rows: List[Dict[str, Any]]) -> None:
        user_id = self._require_user()
        ids = self._word_ids([row["word"] for row in rows])

        contexts = [
            {"word_id": ids[row["word"]], "user_id": user_id, "context": context}
            for row in rows if row["word"] in ids
            for context in row.get("contexts") or []
        ]
        for batch in chunked(contexts, self.batch_size):
            self._execute(
                self.client.table("word_contexts").upsert(
                    batch, on_conflict="word_id,context", ignore_duplicates=True
                ),
                "Context upsert",
            )

        lookups = [
            {"word_id": ids[row["word"]], "user_id": user_id, "looked_up_at": ts}
            for row in rows if row["word"] in ids
            for ts in row.get("lookups") or []
        ]
        if not lookups:
            return
        # Lookups are replaced wholesale for the pushed words
        for batch in chunked(sorted({lookup["word_id"] for lookup in lookups}), self.batch_size):
            self._execute(
                self.client.table("word_lookups").delete().eq("user_id", user_id).in_("word_id", batch),
                "Lookup delete",
            )
        for batch in chunked(lookups, self.batch_size):
            self._execute(self.client.table("word_lookups").insert(batch), "Lookup insert")

    def delete(self, resource: str, word: str) -> None:
        user_id = self._require_user()
        word = normalize_word(word)
        if resource == WORDS:
            self._execute(
                self.client.table("words").delete().eq("user_id", user_id).eq("word", word),
                "Word delete",
            )
            return
        ids = self._word_ids([word])
        if word not in ids:
            return
        self._execute(
            self.client.table(resource).delete().eq("user_id", user_id).eq("word_id", ids[word]),
            f"{resource} delete",
        )

    def blacklist(self, word: str) -> None:
        user_id = self._require_user()
        self._execute(
            self.client.table("words")
            .update({"is_blacklisted": True, "updated_at": datetime.now(UTC).isoformat()})
            .eq("user_id", user_id)
            .eq("word", normalize_word(word)),
            "Word blacklist",
        )
