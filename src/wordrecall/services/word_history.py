"""Service for the raw lookup history of words."""
import logging
import re
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set, Tuple

from wordrecall.config import WORD_HISTORY_MAX_CONTEXT_LENGTH, WORD_HISTORY_MAX_CONTEXTS
from wordrecall.models.progress import WordHistoryEntry, normalize_word, utcnow
from wordrecall.services.progress_store import BLACKLIST_KEY, META, WORD_HISTORY, ProgressStore

logger = logging.getLogger(__name__)

SENTENCE_PUNCTUATION = re.compile(r"[.!?。！？]")
MAX_PHRASE_TOKENS = 5

WordCallback = Callable[[str], None]


class WordHistoryProvider(ABC):
    """Source of the words a user has looked up."""

    @abstractmethod
    def get_word_history(self) -> Dict[str, WordHistoryEntry]:
        """Return lookup history keyed by normalized word."""

    @abstractmethod
    def delete_word_permanently(self, word: str) -> None:
        """Forget a word and keep it from coming back."""


def _append_context(contexts: List[str], context: str) -> None:
    if context in contexts:
        return
    if len(contexts) >= WORD_HISTORY_MAX_CONTEXTS:
        contexts.pop(0)
    contexts.append(context)


class StoreWordHistoryProvider(WordHistoryProvider):
    """Word history kept in the progress store, with a blacklist.

    Entries are cached in memory after the first read and written through
    on every change.
    """

    def __init__(
        self,
        store: ProgressStore,
        now: Callable[[], datetime] = utcnow,
        on_second_lookup: Optional[WordCallback] = None,
        on_blacklist: Optional[WordCallback] = None,
        on_delete: Optional[WordCallback] = None,
    ):
        self.store = store
        self.now = now
        self.on_second_lookup = on_second_lookup
        self.on_blacklist = on_blacklist
        self.on_delete = on_delete
        self._entries: Optional[Dict[str, WordHistoryEntry]] = None
        self._blacklist: Optional[Set[str]] = None

    @property
    def entries(self) -> Dict[str, WordHistoryEntry]:
        if self._entries is None:
            self._entries = {}
            for data in self.store.get_all(WORD_HISTORY):
                word = normalize_word(data.get("word") or "")
                if word:
                    self._entries[word] = WordHistoryEntry.from_data(data)
            logger.debug("Loaded %d word history entries", len(self._entries))
        return self._entries

    @property
    def blacklist(self) -> Set[str]:
        if self._blacklist is None:
            data = self.store.get(META, BLACKLIST_KEY) or {}
            self._blacklist = set(data.get("words") or [])
        return self._blacklist

    def _save_entry(self, word: str) -> None:
        self.store.put(WORD_HISTORY, self.entries[word].to_data(word))

    def _save_blacklist(self) -> None:
        self.store.put(META, {"words": sorted(self.blacklist)}, key=BLACKLIST_KEY)

    def _notify(self, callback: Optional[WordCallback], word: str) -> None:
        if callback is None:
            return
        try:
            callback(word)
        except Exception as e:
            logger.error("Word history callback failed for %r: %s", word, str(e))

    def is_blacklisted(self, word: str) -> bool:
        return normalize_word(word) in self.blacklist

    def record_lookup(self, word: str, context: str = "") -> Optional[int]:
        """Record that a word was looked up.

        Sentences, empty input and blacklisted words are ignored and return
        None. Otherwise the new lookup count is returned.
        """
        if not word or not word.strip():
            return None
        trimmed = word.strip()
        if SENTENCE_PUNCTUATION.search(trimmed) or len(trimmed.split()) > MAX_PHRASE_TOKENS:
            logger.debug("Skipping sentence-like lookup: %r", trimmed[:40])
            return None

        key = normalize_word(trimmed)
        if key in self.blacklist:
            return None

        entry = self.entries.setdefault(key, WordHistoryEntry())
        entry.count += 1
        entry.lookups.append(self.now())

        if context and context.strip():
            snippet = context.strip()
            if len(snippet) > WORD_HISTORY_MAX_CONTEXT_LENGTH:
                snippet = snippet[:WORD_HISTORY_MAX_CONTEXT_LENGTH] + "..."
            _append_context(entry.contexts, snippet)

        self._save_entry(key)

        if entry.count == 2:
            self._notify(self.on_second_lookup, key)
        return entry.count

    def get_word_history(self) -> Dict[str, WordHistoryEntry]:
        return dict(self.entries)

    def get_entry(self, word: str) -> Optional[WordHistoryEntry]:
        return self.entries.get(normalize_word(word))

    def remove_context(self, word: str, index: int) -> bool:
        """Remove one saved context of a word."""
        entry = self.get_entry(word)
        if entry is None or not 0 <= index < len(entry.contexts):
            return False
        del entry.contexts[index]
        self._save_entry(normalize_word(word))
        return True

    def clear_word(self, word: str) -> bool:
        """Remove a word's history without blacklisting it."""
        key = normalize_word(word)
        if key not in self.entries:
            return False
        del self.entries[key]
        self.store.delete(WORD_HISTORY, key)
        self._notify(self.on_delete, key)
        return True

    def clear_all(self) -> int:
        count = len(self.entries)
        self.store.clear(WORD_HISTORY)
        self._entries = {}
        logger.info("Cleared %d words from history", count)
        return count

    def delete_word_permanently(self, word: str) -> None:
        key = normalize_word(word)
        if not key:
            return
        if key in self.entries:
            del self.entries[key]
            self.store.delete(WORD_HISTORY, key)

        self.blacklist.add(key)
        self._save_blacklist()
        logger.info("Word %r deleted and blacklisted", key)
        self._notify(self.on_blacklist, key)

    def merge_cloud_data(self, cloud: Dict[str, WordHistoryEntry]) -> Tuple[int, int]:
        """Merge remote history; the higher count wins and contexts are unioned.

        Returns ``(merged, added)``.
        """
        merged = added = 0
        for word, remote in cloud.items():
            key = normalize_word(word)
            if not key or key in self.blacklist:
                continue

            local = self.entries.get(key)
            if local is not None:
                before = (local.count, list(local.contexts))
                local.count = max(local.count, remote.count)
                for context in remote.contexts:
                    _append_context(local.contexts, context)
                if (local.count, local.contexts) == before:
                    continue
                merged += 1
            else:
                self.entries[key] = WordHistoryEntry(
                    count=remote.count or 1,
                    contexts=list(remote.contexts),
                    lookups=list(remote.lookups),
                )
                added += 1
            self._save_entry(key)

        logger.info("Cloud history merge complete: %d added, %d merged", added, merged)
        return merged, added
