"""
Seed a local database with a demo connection, mapping and bookings table.

    python scripts/seed_demo.py [--rows 5]

Creates (in the DATABASE_URL database):
    integration_connections  — one "memory" provider connection
    sync_mappings            — bookings → invoice, skipping draft bookings
    bookings                 — N rows, every third one a draft

Then try:
    python -m syncengine sync --connection <id> --type full_sync
"""
import argparse
import sys
from pathlib import Path

# Allow running from repo root without installing the package
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from sqlalchemy import Column, Float, Integer, MetaData, String, Table, insert
from sqlmodel import Session, select

from syncengine.db.engine import get_engine
from syncengine.models.integration import IntegrationConnection, SyncMapping
from syncengine.models.schemas import (
    FieldMappingRule,
    FilterCondition,
    encode_field_mappings,
    encode_filter_conditions,
)

DEMO_CODE = "DEMO-ACCOUNTING"


def _bookings_table(metadata: MetaData) -> Table:
    return Table(
        "bookings",
        metadata,
        Column("id", Integer, primary_key=True),
        Column("booking_number", String, nullable=False),
        Column("customer_name", String),
        Column("status", String, nullable=False),
        Column("total_amount", Float),
    )


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed demo sync data")
    parser.add_argument("--rows", type=int, default=5, help="Number of bookings to create")
    args = parser.parse_args()

    engine = get_engine()
    metadata = MetaData()
    bookings = _bookings_table(metadata)
    metadata.create_all(engine)

    with engine.begin() as conn:
        conn.execute(insert(bookings), [
            {
                "booking_number": f"BKG-{i:04d}",
                "customer_name": f"  Customer {i}  ",
                "status": "draft" if i % 3 == 0 else "confirmed",
                "total_amount": 1250.5 * i,
            }
            for i in range(1, args.rows + 1)
        ])

    with Session(engine) as s:
        connection = s.exec(
            select(IntegrationConnection).where(IntegrationConnection.connection_code == DEMO_CODE)
        ).first()
        if connection is None:
            connection = IntegrationConnection(
                connection_code=DEMO_CODE,
                connection_name="Demo accounting system",
                integration_type="accounting",
                provider="memory",
            )
            s.add(connection)
            s.commit()
            s.refresh(connection)

        mapping = SyncMapping(
            connection_id=connection.id,
            local_table="bookings",
            external_entity="invoice",
            field_mappings_json=encode_field_mappings([
                FieldMappingRule(local_field="booking_number", external_field="reference"),
                FieldMappingRule(local_field="customer_name", external_field="customer", transform="trim"),
                FieldMappingRule(local_field="total_amount", external_field="amount_cents", transform="to_cents"),
            ]),
            filter_conditions_json=encode_filter_conditions([
                FilterCondition(field="status", operator="neq", value="draft"),
            ]),
        )
        s.add(mapping)
        s.commit()
        s.refresh(mapping)

    print(f"Seeded {args.rows} bookings, connection {connection.id}, mapping {mapping.id}")
    print(f"Run: python -m syncengine sync --connection {connection.id} --type full_sync")


if __name__ == "__main__":
    main()
