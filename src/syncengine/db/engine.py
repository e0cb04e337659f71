"""SQLModel engine singleton."""
from sqlmodel import SQLModel, create_engine

from syncengine.config import get_settings

_engine = None


def get_engine():
    """Return the module-level engine, creating it on first call."""
    global _engine
    if _engine is None:
        settings = get_settings()
        is_sqlite = settings.database_url.startswith("sqlite")
        _engine = create_engine(
            settings.database_url,
            # SQLite only; safe for FastAPI
            connect_args={"check_same_thread": False} if is_sqlite else {},
        )
        # Import all models so metadata is populated before create_all
        from syncengine.models.integration import (  # noqa
            ExternalIdMapping, IntegrationConnection, SyncMapping,
        )
        from syncengine.models.sync import SyncLog  # noqa
        SQLModel.metadata.create_all(_engine)
        if is_sqlite:
            from syncengine.db.migrations import run_migrations
            run_migrations(_engine)
    return _engine
