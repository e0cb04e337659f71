"""Shared test fixtures."""
from typing import Generator, List, Optional

import pytest
from sqlalchemy import Column, Float, Integer, MetaData, String, Table, insert
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

# Import all models so SQLModel.metadata knows about them
from syncengine.models.integration import ExternalIdMapping, IntegrationConnection, SyncMapping  # noqa: F401
from syncengine.models.sync import SyncLog  # noqa: F401
from syncengine.models.schemas import (
    CallerContext,
    FieldMappingRule,
    FilterCondition,
    encode_field_mappings,
    encode_filter_conditions,
)
from syncengine.adapters import memory

# 5 bookings, 2 of them drafts
BOOKINGS = [
    {"id": 1, "booking_number": "BKG-0001", "customer_name": "  Alice  ", "status": "confirmed", "total_amount": 100.0},
    {"id": 2, "booking_number": "BKG-0002", "customer_name": "Bob", "status": "confirmed", "total_amount": 250.5},
    {"id": 3, "booking_number": "BKG-0003", "customer_name": "Carol", "status": "draft", "total_amount": 75.0},
    {"id": 4, "booking_number": "BKG-0004", "customer_name": "Dave", "status": "confirmed", "total_amount": 19.99},
    {"id": 5, "booking_number": "BKG-0005", "customer_name": "Eve", "status": "draft", "total_amount": 10.0},
]

BOOKING_RULES = [
    FieldMappingRule(local_field="booking_number", external_field="reference"),
    FieldMappingRule(local_field="customer_name", external_field="customer", transform="trim"),
    FieldMappingRule(local_field="total_amount", external_field="amount_cents", transform="to_cents"),
]

NOT_DRAFT = [FilterCondition(field="status", operator="neq", value="draft")]


@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite engine. Tables recreated fresh for each test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="test_session")
def test_session_fixture(engine) -> Generator[Session, None, None]:
    """Provides a DB session connected to in-memory SQLite."""
    with Session(engine) as session:
        yield session


@pytest.fixture(autouse=True)
def clear_memory_stores():
    """InMemoryAdapter stores are shared per connection code across adapters."""
    memory._SHARED_STORES.clear()
    yield
    memory._SHARED_STORES.clear()


@pytest.fixture(name="bookings_table")
def bookings_table_fixture(engine) -> Table:
    """A local `bookings` table, not known to SQLModel, seeded with BOOKINGS."""
    metadata = MetaData()
    table = Table(
        "bookings",
        metadata,
        Column("id", Integer, primary_key=True),
        Column("booking_number", String, nullable=False),
        Column("customer_name", String),
        Column("status", String, nullable=False),
        Column("total_amount", Float),
    )
    metadata.create_all(engine)
    with engine.begin() as conn:
        conn.execute(insert(table), BOOKINGS)
    return table


@pytest.fixture(name="customers_table")
def customers_table_fixture(engine) -> Table:
    """A second local table: 3 customers."""
    metadata = MetaData()
    table = Table(
        "customers",
        metadata,
        Column("id", Integer, primary_key=True),
        Column("name", String, nullable=False),
        Column("email", String),
    )
    metadata.create_all(engine)
    with engine.begin() as conn:
        conn.execute(insert(table), [
            {"id": 1, "name": "Alice", "email": "ALICE@example.com"},
            {"id": 2, "name": "Bob", "email": None},
            {"id": 3, "name": "Zed", "email": "zed@example.com"},
        ])
    return table


@pytest.fixture(name="connection")
def connection_fixture(test_session: Session) -> IntegrationConnection:
    """A persisted active connection using the in-memory provider."""
    conn = IntegrationConnection(
        connection_code="ACME-BOOKS",
        connection_name="Acme Books",
        integration_type="accounting",
        provider="memory",
    )
    test_session.add(conn)
    test_session.commit()
    test_session.refresh(conn)
    return conn


@pytest.fixture(name="make_mapping")
def make_mapping_fixture(test_session: Session):
    """Factory for persisted SyncMapping rows."""

    def _make(
        connection_id: int,
        local_table: str = "bookings",
        external_entity: str = "invoice",
        rules: Optional[List[FieldMappingRule]] = None,
        conditions: Optional[List[FilterCondition]] = None,
        is_active: bool = True,
        field_mappings_json: Optional[str] = None,
    ) -> SyncMapping:
        mapping = SyncMapping(
            connection_id=connection_id,
            local_table=local_table,
            external_entity=external_entity,
            field_mappings_json=field_mappings_json
            or encode_field_mappings(BOOKING_RULES if rules is None else rules),
            filter_conditions_json=encode_filter_conditions(conditions or []),
            is_active=is_active,
        )
        test_session.add(mapping)
        test_session.commit()
        test_session.refresh(mapping)
        return mapping

    return _make


@pytest.fixture(name="mapping")
def mapping_fixture(connection, bookings_table, make_mapping) -> SyncMapping:
    """bookings → invoice, skipping drafts."""
    return make_mapping(connection.id, conditions=NOT_DRAFT)


@pytest.fixture(name="admin")
def admin_fixture() -> CallerContext:
    return CallerContext(user_id="user-1", role="owner")
