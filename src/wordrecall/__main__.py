"""Main entry point for the review engine."""
from wordrecall.app import WordRecallApp
from wordrecall.config import ensure_directories
from wordrecall.logging_config import setup_logging

VERSION = "0.1.0"


def main() -> None:
    """Run the review engine."""
    ensure_directories()
    setup_logging(f"Starting WordRecall v{VERSION} ...")
    WordRecallApp().run()


if __name__ == "__main__":
    main()
