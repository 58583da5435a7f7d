"""Monitoring configuration for the review engine."""
from prometheus_client import Counter, Gauge, start_http_server

# Drilling metrics
cards_answered = Counter(
    "wordrecall_cards_answered_total",
    "Total number of flashcard answers",
    ["result"],  # remembered / forgot
)

words_completed = Counter(
    "wordrecall_words_completed_total",
    "Total number of cards that reached the in-session mastery threshold",
)

deck_size = Gauge(
    "wordrecall_deck_size",
    "Number of cards remaining in the active deck",
)

# Long-term review metrics
words_advanced = Counter(
    "wordrecall_words_advanced_total",
    "Total number of long-term review transitions",
    ["state"],  # reviewing / mastered
)

# Sync metrics
sync_records = Counter(
    "wordrecall_sync_records_total",
    "Records handled by the cloud sync push phase",
    ["resource", "outcome"],  # synced / skipped / failed
)

sync_chunk_errors = Counter(
    "wordrecall_sync_chunk_errors_total",
    "Number of failed remote batches",
    ["resource"],
)


def start_monitoring(port: int = 9090) -> None:
    """Start the Prometheus metrics server."""
    start_http_server(port)
