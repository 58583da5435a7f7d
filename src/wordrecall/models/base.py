"""Base model configuration."""
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from wordrecall.config import settings

# Create SQLAlchemy engine
engine = create_engine(settings.database.url, echo=settings.database.echo)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Create declarative base class
Base = declarative_base()


def init_db() -> None:
    """Initialize database."""
    # Import models so they register with the metadata
    from wordrecall.models import models  # noqa: F401

    Base.metadata.create_all(bind=engine)  # Create tables if they don't exist
