"""Tests for the session coordinator."""
import asyncio

import pytest

from wordrecall.models.progress import SyncCursor
from wordrecall.services.progress_store import CURRENT_KEY, FLASHCARD_SESSION
from wordrecall.services.remote_store import IMMERSIVE_REVIEW, WORDS
from wordrecall.services.session_coordinator import (
    NOTHING_TO_REVIEW,
    MutationQueue,
    SessionCoordinator,
)
from wordrecall.services.sync_service import SyncReconciler, SyncStatus


@pytest.fixture
def sync(store, scheduler, history, remote) -> SyncReconciler:
    return SyncReconciler(store, scheduler, history, remote)


@pytest.fixture
def coordinator(deck_engine, scheduler, history, sync) -> SessionCoordinator:
    return SessionCoordinator(deck_engine, scheduler, history, sync, persist_delay=0, review_every_cards=0)


def _look_up(history, *words: str) -> None:
    for word in words:
        history.record_lookup(word, f"a sentence with {word}")


@pytest.mark.asyncio
async def test_mutation_queue_runs_in_order() -> None:
    """Test that submitted callables run one after another."""
    queue = MutationQueue()
    with pytest.raises(ValueError):
        await queue.submit(list)

    await queue.start()
    order = []
    results = await asyncio.gather(*(queue.submit(order.append, i) for i in range(5)))
    await queue.stop()

    assert order == [0, 1, 2, 3, 4]
    assert results == [None] * 5
    assert not queue.running


@pytest.mark.asyncio
async def test_mutation_queue_propagates_errors() -> None:
    def fail() -> None:
        raise ValueError("deck is empty")

    queue = MutationQueue()
    await queue.start()

    with pytest.raises(ValueError, match="empty"):
        await queue.submit(fail)
    assert await queue.submit(sum, [1, 2]) == 3

    await queue.stop()


@pytest.mark.asyncio
async def test_start_without_history(coordinator: SessionCoordinator) -> None:
    status = await coordinator.start()

    assert status.remaining == 0
    assert status.current_card is None
    assert status.message == NOTHING_TO_REVIEW
    await coordinator.stop()


@pytest.mark.asyncio
async def test_answers_are_serialized(coordinator: SessionCoordinator, history, store) -> None:
    """Test that concurrent answers apply one at a time."""
    words = ["alpha", "bravo", "charlie", "delta", "echo"]
    _look_up(history, *words)
    status = await coordinator.start()
    assert status.remaining == 5
    assert status.total_words_in_history == 5

    await asyncio.gather(*(coordinator.answer(True) for _ in range(10)))

    status = coordinator.status()
    assert status.remaining == 0
    assert status.completed == 5
    assert status.progress_score == pytest.approx(5.0)
    await coordinator.stop()
    assert store.get(FLASHCARD_SESSION, CURRENT_KEY) is None


@pytest.mark.asyncio
async def test_snapshot_written_after_quiet_period(deck_engine, scheduler, history, store) -> None:
    """Test the debounced session write."""
    _look_up(history, "alpha", "bravo")
    coordinator = SessionCoordinator(deck_engine, scheduler, history, persist_delay=0.05)

    await coordinator.start()
    await coordinator.answer(True)
    assert store.get(FLASHCARD_SESSION, CURRENT_KEY) is None

    await asyncio.sleep(0.2)
    snapshot = store.get(FLASHCARD_SESSION, CURRENT_KEY)
    assert snapshot["progress_score"] == 0.5
    await coordinator.stop()


@pytest.mark.asyncio
async def test_stop_flushes_pending_snapshot(deck_engine, scheduler, history, store) -> None:
    _look_up(history, "alpha", "bravo")
    coordinator = SessionCoordinator(deck_engine, scheduler, history, persist_delay=60)

    await coordinator.start()
    await coordinator.answer(False)
    assert store.get(FLASHCARD_SESSION, CURRENT_KEY) is None

    await coordinator.stop()

    assert len(store.get(FLASHCARD_SESSION, CURRENT_KEY)["deck"]) == 2


@pytest.mark.asyncio
async def test_card_count_triggers_background_review(deck_engine, scheduler, history) -> None:
    """Test that the last card is pulled forward every N answers."""
    coordinator = SessionCoordinator(deck_engine, scheduler, history, persist_delay=0, review_every_cards=2)
    await coordinator.start()
    deck_engine.restore({"deck": [{"word": w} for w in ("a", "b", "c", "d")]})

    await coordinator.answer(False)
    assert deck_engine.session.words == ["b", "c", "d", "a"]
    await coordinator.answer(False)

    assert deck_engine.session.words == ["c", "b", "d", "a"]
    assert coordinator.status().current_card.word == "c"
    await coordinator.stop()


@pytest.mark.asyncio
async def test_second_lookup_queues_review(coordinator: SessionCoordinator, scheduler) -> None:
    await coordinator.start()

    assert await coordinator.record_lookup("Apple", "An apple a day") == 1
    assert not scheduler.is_word_in_review("apple")
    assert await coordinator.record_lookup("apple") == 2
    assert scheduler.is_word_in_review("apple")
    await coordinator.stop()


@pytest.mark.asyncio
async def test_delete_blacklists_remotely(coordinator: SessionCoordinator, history, remote) -> None:
    """Test that deleting a card blacklists the word in the cloud."""
    _look_up(history, "alpha")
    await coordinator.start()

    status = await coordinator.delete()
    await coordinator.stop()

    assert status.remaining == 0
    assert history.is_blacklisted("alpha")
    assert remote.blacklisted == ["alpha"]


@pytest.mark.asyncio
async def test_review_commands(coordinator: SessionCoordinator, scheduler, clock) -> None:
    await coordinator.start()

    assert await coordinator.toggle_word("apple")
    assert await coordinator.force_all_due() == 1
    assert await coordinator.record_usage_from_text("An apple a day") == ["apple"]
    assert await coordinator.undo_today() == ["apple"]
    assert scheduler.get_record("apple").stage == 0
    await coordinator.stop()


@pytest.mark.asyncio
async def test_run_sync(coordinator: SessionCoordinator, history, remote) -> None:
    """Test a sync pass while the session is running."""
    _look_up(history, "alpha")
    await coordinator.start()

    report = await coordinator.run_sync()
    await coordinator.stop()

    assert report.status is SyncStatus.OK
    assert "alpha" in remote.rows[WORDS]


@pytest.mark.asyncio
async def test_review_removal_reaches_cloud(coordinator: SessionCoordinator, sync, scheduler, remote) -> None:
    """Test that a word toggled out of review stays out after a full pull."""
    await coordinator.start()
    assert await coordinator.toggle_word("apple")
    await coordinator.run_sync()
    assert "apple" in remote.rows[IMMERSIVE_REVIEW]

    assert not await coordinator.toggle_word("apple")
    await asyncio.gather(*coordinator._background)
    assert "apple" not in remote.rows[IMMERSIVE_REVIEW]

    sync.save_cursor(SyncCursor(IMMERSIVE_REVIEW))
    await coordinator.run_sync()
    await coordinator.stop()

    assert not scheduler.is_word_in_review("apple")


@pytest.mark.asyncio
async def test_run_sync_without_reconciler(deck_engine, scheduler, history) -> None:
    coordinator = SessionCoordinator(deck_engine, scheduler, history, persist_delay=0)
    await coordinator.start()

    assert (await coordinator.run_sync()).status is SyncStatus.DISABLED
    await coordinator.stop()


@pytest.mark.asyncio
async def test_stop_cancels_sync(coordinator: SessionCoordinator, sync, mocker) -> None:
    cancel = mocker.spy(sync, "cancel")
    await coordinator.start()

    await coordinator.stop()

    cancel.assert_called_once()


@pytest.mark.asyncio
async def test_continue_session(coordinator: SessionCoordinator, history) -> None:
    _look_up(history, "alpha")
    await coordinator.start()
    await coordinator.answer(True)
    await coordinator.answer(True)
    assert coordinator.status().remaining == 0

    status = await coordinator.continue_session()

    assert status.remaining == 1
    assert status.completed == 0
    await coordinator.stop()


if __name__ == "__main__":
    pytest.main([__file__])
