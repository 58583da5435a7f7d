"""Tests for the flashcard deck engine."""
import random
from datetime import timedelta
from unittest.mock import Mock

import pytest
from faker import Faker

from wordrecall.config import DECK_SIZE
from wordrecall.models.progress import (
    CardView,
    FlashcardSession,
    WordHistoryEntry,
    WordProgressRecord,
    WordState,
)
from wordrecall.services.deck_service import DeckEngine
from wordrecall.services.progress_store import CURRENT_KEY, FLASHCARD_SESSION

fake = Faker()


def _deck(engine: DeckEngine, *words: str, index: int = 0) -> FlashcardSession:
    engine.session = FlashcardSession(deck=[CardView(word) for word in words], current_index=index)
    return engine.session


def _history(*words: str) -> dict:
    return {word: WordHistoryEntry(count=1, contexts=[f"{word} in context"]) for word in words}


def test_answer_scenario(deck_engine: DeckEngine) -> None:
    """Test a card moving to the back and leaving after two correct answers."""
    session = _deck(deck_engine, "a", "b", "c")

    deck_engine.answer_card(True)
    assert session.words == ["b", "c", "a"]
    assert session.deck[2].correct_count == 1
    assert session.current_index == 0

    deck_engine.answer_card(True)
    assert session.words == ["c", "a", "b"]
    session.current_index = 2

    card = deck_engine.answer_card(True)
    assert card.word == "b"
    assert session.words == ["c", "a"]
    assert session.words_completed == 1
    assert session.current_index == 0
    assert session.progress_score == pytest.approx(1.5)


def test_forgot_resets_count_and_score(deck_engine: DeckEngine) -> None:
    session = _deck(deck_engine, "a", "b")
    deck_engine.answer_card(True)
    deck_engine.answer_card(True)
    assert session.words == ["a", "b"]

    deck_engine.answer_card(False)

    assert session.words == ["b", "a"]
    assert session.deck[1].correct_count == 0
    assert session.progress_score == pytest.approx(0.5)


def test_forgot_on_fresh_card_keeps_score(deck_engine: DeckEngine) -> None:
    session = _deck(deck_engine, "a", "b")
    deck_engine.answer_card(False)
    assert session.progress_score == 0.0


def test_answer_on_last_card_resets_index(deck_engine: DeckEngine) -> None:
    session = _deck(deck_engine, "a", "b", "c", index=2)

    deck_engine.answer_card(False)

    assert session.words == ["a", "b", "c"]
    assert session.current_index == 0


def test_answer_on_empty_deck_raises(deck_engine: DeckEngine) -> None:
    _deck(deck_engine)
    with pytest.raises(ValueError):
        deck_engine.answer_card(True)


def test_answer_records_usage_once(deck_engine: DeckEngine, mocker) -> None:
    """Test that each answer reaches the review scheduler exactly once."""
    spy = mocker.spy(deck_engine.scheduler, "record_usage")
    deck_engine.session = FlashcardSession(deck=[CardView("apple", "an apple a day")])

    deck_engine.answer_card(True)

    spy.assert_called_once_with("apple", True, "an apple a day")


def test_random_answers_keep_deck_consistent(deck_engine: DeckEngine) -> None:
    """Test deck invariants under an arbitrary answer sequence."""
    words = [f"word{i}" for i in range(8)]
    session = _deck(deck_engine, *words)
    rng = random.Random(7)

    while session.deck:
        deck_engine.answer_card(rng.random() < 0.6)
        assert 0 <= session.current_index < max(len(session.deck), 1)
        assert len(set(session.words)) == len(session.words)
        assert session.words_completed + len(session.deck) == len(words)
        assert session.progress_score >= 0
        assert all(card.correct_count < 2 for card in session.deck)

    assert session.words_completed == len(words)


def test_delete_card(deck_engine: DeckEngine, history) -> None:
    """Test deleting a card before the current one."""
    history.record_lookup("a")
    session = _deck(deck_engine, "a", "b", "c", index=1)
    session.deck[0].correct_count = 1
    session.progress_score = 0.5

    card = deck_engine.delete_card("a")

    assert card.word == "a"
    assert session.words == ["b", "c"]
    assert session.current_index == 0
    assert session.current_card.word == "b"
    assert session.progress_score == 0.0
    assert history.is_blacklisted("a")
    assert history.get_entry("a") is None


def test_delete_current_card(deck_engine: DeckEngine) -> None:
    session = _deck(deck_engine, "a", "b", "c", index=2)

    assert deck_engine.delete_card().word == "c"
    assert session.current_index == 0
    assert deck_engine.delete_card("missing") is None


def test_delete_card_survives_history_failure(store, scheduler, clock) -> None:
    history = Mock()
    history.delete_word_permanently.side_effect = RuntimeError("storage full")
    engine = DeckEngine(store, scheduler, history, now=clock)
    session = _deck(engine, "a", "b")

    engine.delete_card()

    assert session.words == ["b"]


def test_background_review_moves_last_card_next(deck_engine: DeckEngine, clock) -> None:
    """Test that the current card stays put and the last card comes next."""
    session = _deck(deck_engine, "a", "b", "c", "d", index=1)

    assert deck_engine.trigger_background_review()

    assert session.words == ["a", "b", "d", "c"]
    assert session.current_card.word == "b"
    assert session.last_review_time == clock()


def test_background_review_on_last_index(deck_engine: DeckEngine) -> None:
    session = _deck(deck_engine, "a", "b", "c", index=2)

    deck_engine.trigger_background_review()

    assert session.current_card.word == "c"
    assert session.words == ["a", "b", "c"]


def test_background_review_needs_two_cards(deck_engine: DeckEngine) -> None:
    _deck(deck_engine, "a")
    assert not deck_engine.trigger_background_review()


def test_generate_deck_without_history(deck_engine: DeckEngine) -> None:
    assert deck_engine.generate_deck({}, {}) == []


def test_generate_deck_uniform_sample(deck_engine: DeckEngine) -> None:
    """Test sampling when no review progress exists."""
    words = [f"word{i}" for i in range(30)]

    deck = deck_engine.generate_deck(None, _history(*words))

    assert len(deck) == DECK_SIZE
    assert len({card.word for card in deck}) == DECK_SIZE
    assert {card.word for card in deck} <= set(words)


def test_generate_deck_balances_new_and_review(deck_engine: DeckEngine, clock) -> None:
    """Test the 12 new / 8 review split."""
    now = clock()
    new_words = [f"new{i}" for i in range(15)]
    due_words = [f"due{i}" for i in range(15)]
    progress = {word: WordProgressRecord.pending(word, now) for word in new_words}
    progress.update({
        word: WordProgressRecord(
            word=word, state=WordState.REVIEWING, added_at=now, next_review_at=now - timedelta(hours=1)
        )
        for word in due_words
    })

    deck = deck_engine.generate_deck(progress, _history(*new_words, *due_words))

    words = [card.word for card in deck]
    assert len(words) == DECK_SIZE
    assert len([w for w in words if w.startswith("new")]) == 12
    assert len([w for w in words if w.startswith("due")]) == 8


def test_generate_deck_fills_shortfall(deck_engine: DeckEngine, clock) -> None:
    """Test that a short new pool is topped up from due words."""
    now = clock()
    due_words = [f"due{i}" for i in range(30)]
    progress = {
        word: WordProgressRecord(
            word=word, state=WordState.REVIEWING, added_at=now, next_review_at=now
        )
        for word in due_words
    }

    deck = deck_engine.generate_deck(progress, _history("new0", "new1", "new2", *due_words))

    words = [card.word for card in deck]
    assert len([w for w in words if w.startswith("new")]) == 3
    assert len([w for w in words if w.startswith("due")]) == 17


def test_generate_deck_excludes_mastered_and_not_due(deck_engine: DeckEngine, clock) -> None:
    now = clock()
    progress = {
        "done": WordProgressRecord(word="done", state=WordState.MASTERED, added_at=now, stage=6),
        "later": WordProgressRecord(
            word="later", state=WordState.REVIEWING, added_at=now, next_review_at=now + timedelta(days=1)
        ),
    }
    history = _history("done", "later", "fresh")
    history["unseen"] = WordHistoryEntry(count=0)

    deck = deck_engine.generate_deck(progress, history)

    assert deck == [CardView("fresh", "fresh in context")]


def test_generate_deck_uses_last_context(deck_engine: DeckEngine) -> None:
    history = {"apple": WordHistoryEntry(count=2, contexts=["old", "new"])}
    assert deck_engine.generate_deck(None, history)[0].context == "new"


def test_start_builds_new_session_from_history(deck_engine: DeckEngine, history) -> None:
    words = {fake.word() for _ in range(5)}
    for word in words:
        history.record_lookup(word)

    session = deck_engine.start()

    assert set(session.words) == words
    assert session.total_words_in_history == len(words)
    assert session.current_index == 0


def test_start_with_unavailable_history(store, scheduler, clock) -> None:
    history = Mock()
    history.get_word_history.side_effect = RuntimeError("corrupt")
    engine = DeckEngine(store, scheduler, history, now=clock)

    assert engine.start().deck == []


def test_session_survives_restart(deck_engine: DeckEngine, store, scheduler, history, clock) -> None:
    """Test that a saved session is restored as it was."""
    session = _deck(deck_engine, "a", "b", "c", index=1)
    session.deck[0].correct_count = 1
    session.progress_score = 0.5
    session.words_completed = 4
    deck_engine.save_session()

    restored = DeckEngine(store, scheduler, history, now=clock).start()

    assert restored.words == ["a", "b", "c"]
    assert restored.current_index == 1
    assert restored.deck[0].correct_count == 1
    assert restored.progress_score == 0.5
    assert restored.words_completed == 4


def test_saving_empty_deck_removes_snapshot(deck_engine: DeckEngine, store) -> None:
    _deck(deck_engine, "a")
    deck_engine.save_session()
    assert store.get(FLASHCARD_SESSION, CURRENT_KEY) is not None

    _deck(deck_engine)
    deck_engine.save_session()
    assert store.get(FLASHCARD_SESSION, CURRENT_KEY) is None


if __name__ == "__main__":
    pytest.main([__file__])
