"""
Row-level reads against arbitrary local tables.

Sync mappings name their source table as a string, so the table is reflected
at call time rather than imported as a model. Rows come back as plain dicts
of JSON-compatible values (see normalize_value), which is the shape the
filter and field-mapping evaluators expect.
"""
import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import MetaData, Table, select
from sqlalchemy.exc import NoSuchTableError, SQLAlchemyError

logger = logging.getLogger(__name__)

ID_COLUMN = "id"


class LocalTableError(RuntimeError):
    """Raised when a local table cannot be read (missing, no id column, DB error)."""


def normalize_value(value: Any) -> Any:
    """Convert DB values into str/int/float/bool/None."""
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


def _coerce_ids(table: Table, record_ids: Iterable[str]) -> List[Any]:
    """Cast string ids to the id column's Python type (int ids are common)."""
    try:
        python_type = table.c[ID_COLUMN].type.python_type
    except NotImplementedError:
        return list(record_ids)
    coerced = []
    for rid in record_ids:
        try:
            coerced.append(python_type(rid))
        except (TypeError, ValueError):
            logger.debug("Skipping id %r: not a valid %s", rid, python_type.__name__)
    return coerced


def load_local_records(
    engine,
    table_name: str,
    record_ids: Optional[Iterable[str]] = None,
) -> List[Dict[str, Any]]:
    """
    Fetch rows from a local table, ordered by id.

    Args:
        engine: SQLAlchemy engine.
        table_name: Name of the local table (SyncMapping.local_table).
        record_ids: If given, only rows whose id is in this set.

    Returns:
        List of normalized row dicts. Each dict has an "id" key.

    Raises:
        LocalTableError: if the table does not exist, has no id column, or
            the query fails.
    """
    try:
        table = Table(table_name, MetaData(), autoload_with=engine)
    except NoSuchTableError as exc:
        raise LocalTableError(f"Local table '{table_name}' does not exist") from exc
    except SQLAlchemyError as exc:
        raise LocalTableError(f"Cannot read local table '{table_name}': {exc}") from exc

    if ID_COLUMN not in table.c:
        raise LocalTableError(f"Local table '{table_name}' has no '{ID_COLUMN}' column")

    query = select(table).order_by(table.c[ID_COLUMN])
    if record_ids is not None:
        query = query.where(table.c[ID_COLUMN].in_(_coerce_ids(table, record_ids)))

    try:
        with engine.connect() as conn:
            rows = conn.execute(query).mappings().all()
    except SQLAlchemyError as exc:
        raise LocalTableError(f"Cannot read local table '{table_name}': {exc}") from exc

    return [{k: normalize_value(v) for k, v in row.items()} for row in rows]
