"""Integration configuration models: connections, sync mappings, external ids."""
from datetime import datetime
from typing import Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel


class IntegrationConnection(SQLModel, table=True):
    """One configured link to an external system instance."""

    __tablename__ = "integration_connections"

    id: Optional[int] = Field(default=None, primary_key=True)
    connection_code: str = Field(unique=True, index=True)
    connection_name: str
    integration_type: str = "accounting"  # "accounting", "erp", "gps", ...
    provider: str  # selects the ExternalApiAdapter, e.g. "memory"
    is_active: bool = True

    # OAuth token state; maintained by the token-refresh collaborator
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_expires_at: Optional[datetime] = None

    last_sync_at: Optional[datetime] = None
    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


class SyncMapping(SQLModel, table=True):
    """
    Correspondence between one local table and one external entity type.

    Rules and conditions are stored as JSON text and decoded by
    syncengine.models.schemas before a batch runs.
    """

    __tablename__ = "sync_mappings"

    id: Optional[int] = Field(default=None, primary_key=True)
    connection_id: int = Field(foreign_key="integration_connections.id", index=True)
    local_table: str
    external_entity: str  # "invoice", "customer", ...
    field_mappings_json: str = "[]"
    filter_conditions_json: str = "[]"
    is_active: bool = True
    created_at: datetime = Field(default_factory=datetime.utcnow)


class ExternalIdMapping(SQLModel, table=True):
    """
    Local row identity ↔ external record identity.

    At most one row per (connection_id, local_table, local_id); see
    syncengine.sync.external_ids.upsert_external_id_mapping.
    """

    __tablename__ = "external_id_mappings"
    __table_args__ = (
        UniqueConstraint(
            "connection_id", "local_table", "local_id",
            name="uq_external_id_mappings_local",
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    connection_id: int = Field(foreign_key="integration_connections.id", index=True)
    local_table: str
    local_id: str
    external_id: str = Field(index=True)
    external_data_json: Optional[str] = None  # last synced payload snapshot
    synced_at: datetime = Field(default_factory=datetime.utcnow)
