"""Sync audit log model."""
from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel


class SyncLog(SQLModel, table=True):
    """One row per sync execution (trigger or retry). Append-only history."""

    __tablename__ = "sync_log"

    id: Optional[int] = Field(default=None, primary_key=True)
    connection_id: int = Field(foreign_key="integration_connections.id", index=True)
    mapping_id: Optional[int] = Field(default=None, foreign_key="sync_mappings.id")
    sync_type: str = "push"  # "push", "pull", "full_sync"
    status: str = "running"  # "pending", "running", "completed", "failed", "partial"
    records_processed: int = 0
    records_created: int = 0
    records_updated: int = 0
    records_failed: int = 0
    started_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None
    error_details_json: Optional[str] = None
    retry_of_id: Optional[int] = Field(default=None, foreign_key="sync_log.id")
