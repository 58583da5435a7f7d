"""Configuration settings for the review engine."""
import os
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Define base directory
BASE_DIR = Path(__file__).parent.parent.parent

# Load environment variables from .env file
env_file = ".env.test" if os.getenv("ENV") == "test" else ".env"
load_dotenv(env_file)

DATA_DIR = Path(os.getenv("DATA_DIR", "./data"))

# Flashcard deck settings
DECK_SIZE = 20
REVIEW_INTERVAL = timedelta(minutes=5)
MASTERY_THRESHOLD = 2  # correct answers in one session before a card leaves the deck
NEW_WORD_RATIO = 0.6
SCORE_STEP = 0.5

# Long-term review settings
EBBINGHAUS_INTERVALS = [1, 2, 4, 7, 15, 30]  # days between reviews
MAX_DAILY_REVIEW_WORDS = 20

# Flashcard mastery (SM-2) settings
MASTERY_LEVEL_INTERVALS = [0, 1, 3, 7, 14, 30]  # days, indexed by mastery level
MAX_MASTERY_LEVEL = 5
DEFAULT_EASINESS_FACTOR = 2.5
MIN_EASINESS_FACTOR = 1.3

# Word history settings
WORD_HISTORY_MAX_CONTEXTS = 10
WORD_HISTORY_MAX_CONTEXT_LENGTH = 500

# Cloud sync settings
SYNC_BATCH_SIZE = 100
# Local cursors keep millisecond precision while the remote stores microseconds,
# so the newest fetched row must be stepped over by one local tick.
CURSOR_PRECISION_PAD = timedelta(milliseconds=1)


def ensure_directories() -> None:
    """Ensure all required directories exist."""
    DATA_DIR.mkdir(parents=True, exist_ok=True)


@dataclass
class DatabaseSettings:
    """Database configuration settings."""
    url: str = os.getenv("DATABASE_URL", f"sqlite:///{DATA_DIR / 'wordrecall.db'}")
    echo: bool = os.getenv("DATABASE_ECHO", "false").lower() == "true"


@dataclass
class LoggingSettings:
    """Logging configuration settings."""
    level: str = os.getenv("LOG_LEVEL", "INFO")
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    dir: Optional[str] = os.getenv("LOG_DIR", None)
    rotation: str = os.getenv("LOG_ROTATION", "midnight")
    interval: int = int(os.getenv("LOG_INTERVAL", "1"))
    backup_count: int = int(os.getenv("LOG_BACKUP_COUNT", "7"))


@dataclass
class SyncSettings:
    """Cloud sync settings."""
    enabled: bool = os.getenv("CLOUD_SYNC_ENABLED", "false").lower() == "true"
    supabase_url: str = os.getenv("SUPABASE_URL", "")
    supabase_key: str = os.getenv("SUPABASE_ANON_KEY", "")
    email: Optional[str] = os.getenv("SUPABASE_EMAIL")
    password: Optional[str] = os.getenv("SUPABASE_PASSWORD")
    interval_seconds: int = int(os.getenv("SYNC_INTERVAL_SECONDS", "600"))


@dataclass
class SessionSettings:
    """Drilling session settings."""
    persist_delay_seconds: float = float(os.getenv("SESSION_PERSIST_DELAY", "1.0"))
    # 0 disables the card-count trigger; the timer trigger always runs
    review_every_cards: int = int(os.getenv("REVIEW_EVERY_CARDS", "0"))


@dataclass
class MonitoringSettings:
    """Metrics exporter settings."""
    enabled: bool = os.getenv("MONITORING_ENABLED", "false").lower() == "true"
    port: int = int(os.getenv("MONITORING_PORT", "9090"))


def get_database_settings() -> DatabaseSettings:
    """Get database settings."""
    return DatabaseSettings()


def get_logging_settings() -> LoggingSettings:
    """Get logging settings."""
    return LoggingSettings()


def get_sync_settings() -> SyncSettings:
    """Get cloud sync settings."""
    return SyncSettings()


def get_session_settings() -> SessionSettings:
    """Get session settings."""
    return SessionSettings()


def get_monitoring_settings() -> MonitoringSettings:
    """Get monitoring settings."""
    return MonitoringSettings()


@dataclass
class Settings:
    """Main settings class that combines all configuration settings."""
    database: DatabaseSettings = field(default_factory=get_database_settings)
    logging: LoggingSettings = field(default_factory=get_logging_settings)
    sync: SyncSettings = field(default_factory=get_sync_settings)
    session: SessionSettings = field(default_factory=get_session_settings)
    monitoring: MonitoringSettings = field(default_factory=get_monitoring_settings)

    def validate(self) -> None:
        """Validate settings and raise ValueError if invalid."""
        if self.sync.enabled and not (self.sync.supabase_url and self.sync.supabase_key):
            raise ValueError("SUPABASE_URL and SUPABASE_ANON_KEY are required when cloud sync is enabled")

        if self.sync.interval_seconds < 1:
            raise ValueError("SYNC_INTERVAL_SECONDS must be positive")

        if self.session.persist_delay_seconds < 0:
            raise ValueError("SESSION_PERSIST_DELAY cannot be negative")

        if self.session.review_every_cards < 0:
            raise ValueError("REVIEW_EVERY_CARDS cannot be negative")


# Create global settings instance
settings = Settings()
settings.validate()
