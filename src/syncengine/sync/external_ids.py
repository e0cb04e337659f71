"""
External-identity lookup: which local rows already exist in the external system.

A batch reads all relevant ExternalIdMapping rows once (snapshot), then asks
the in-memory lookup for each record. No mapping → the record is a create;
a mapping → an update reusing its external_id. After a successful external
call, upsert_external_id_mapping writes exactly one row per local record.

Idempotency: the (connection_id, local_table, local_id) unique constraint
plus the upsert mean that re-running a batch converges to updates instead of
duplicate creates, and two overlapping runs converge on one row.
"""
import json
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from syncengine.models.integration import ExternalIdMapping

logger = logging.getLogger(__name__)

CREATE = "create"
UPDATE = "update"

_Key = Tuple[int, str, str]


class ExternalIdLookup:
    """Read-only snapshot of ExternalIdMapping rows for one batch."""

    def __init__(self, mappings: Iterable[ExternalIdMapping] = ()):
        self._by_local: Dict[_Key, ExternalIdMapping] = {}
        self._by_external: Dict[_Key, ExternalIdMapping] = {}
        for m in mappings:
            self._by_local[(m.connection_id, m.local_table, m.local_id)] = m
            self._by_external[(m.connection_id, m.local_table, m.external_id)] = m

    @classmethod
    def snapshot(
        cls,
        engine,
        connection_id: int,
        local_table: str,
        local_ids: Optional[Iterable[str]] = None,
    ) -> "ExternalIdLookup":
        """
        Load mappings for one connection + table in a single query.

        Args:
            local_ids: Restrict to these local ids (retry batches). None loads
                every mapping of the table.
        """
        with Session(engine) as s:
            query = select(ExternalIdMapping).where(
                ExternalIdMapping.connection_id == connection_id,
                ExternalIdMapping.local_table == local_table,
            )
            if local_ids is not None:
                query = query.where(ExternalIdMapping.local_id.in_(list(local_ids)))
            rows = s.exec(query).all()
        return cls(rows)

    def __len__(self) -> int:
        return len(self._by_local)

    def resolve(
        self, connection_id: int, local_table: str, local_id: str
    ) -> Optional[ExternalIdMapping]:
        return self._by_local.get((connection_id, local_table, str(local_id)))

    def resolve_external(
        self, connection_id: int, local_table: str, external_id: str
    ) -> Optional[ExternalIdMapping]:
        """Reverse lookup used by pull runs."""
        return self._by_external.get((connection_id, local_table, str(external_id)))


def determine_operation(existing: Optional[ExternalIdMapping]) -> str:
    return UPDATE if existing is not None else CREATE


def _find(s: Session, connection_id: int, local_table: str, local_id: str):
    return s.exec(
        select(ExternalIdMapping).where(
            ExternalIdMapping.connection_id == connection_id,
            ExternalIdMapping.local_table == local_table,
            ExternalIdMapping.local_id == local_id,
        )
    ).first()


def _update_in_place(
    s: Session, row: ExternalIdMapping, external_id: str, snapshot: Optional[str]
) -> ExternalIdMapping:
    if row.external_id != external_id:
        logger.warning(
            "External id for %s/%s changed: %s -> %s",
            row.local_table, row.local_id, row.external_id, external_id,
        )
    row.external_id = external_id
    row.external_data_json = snapshot
    row.synced_at = datetime.utcnow()
    s.add(row)
    s.commit()
    s.refresh(row)
    return row


def upsert_external_id_mapping(
    engine,
    *,
    connection_id: int,
    local_table: str,
    local_id: str,
    external_id: str,
    external_data: Optional[Dict[str, Any]] = None,
) -> ExternalIdMapping:
    """
    Insert or update the mapping for one local record.

    An existing row is updated in place (same primary key). If a concurrent
    run inserted the row between our read and our insert, the unique
    constraint rejects the insert and we update the winner's row instead.

    Returns:
        The persisted ExternalIdMapping.
    """
    local_id = str(local_id)
    snapshot = json.dumps(external_data, default=str) if external_data is not None else None

    with Session(engine) as s:
        existing = _find(s, connection_id, local_table, local_id)
        if existing:
            return _update_in_place(s, existing, external_id, snapshot)

        row = ExternalIdMapping(
            connection_id=connection_id,
            local_table=local_table,
            local_id=local_id,
            external_id=external_id,
            external_data_json=snapshot,
            synced_at=datetime.utcnow(),
        )
        s.add(row)
        try:
            s.commit()
        except IntegrityError:
            s.rollback()
            logger.info("Concurrent insert for %s/%s; updating instead", local_table, local_id)
            winner = _find(s, connection_id, local_table, local_id)
            if winner is None:
                raise
            return _update_in_place(s, winner, external_id, snapshot)
        s.refresh(row)
        return row


def refresh_snapshot(engine, mapping_id: int, external_data: Dict[str, Any]) -> None:
    """Store a pulled external record on an existing mapping row."""
    with Session(engine) as s:
        row = s.get(ExternalIdMapping, mapping_id)
        if row is None:
            raise LookupError(f"External id mapping {mapping_id} no longer exists")
        row.external_data_json = json.dumps(external_data, default=str)
        row.synced_at = datetime.utcnow()
        s.add(row)
        s.commit()
