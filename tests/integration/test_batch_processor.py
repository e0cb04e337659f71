"""
Integration tests for BatchProcessor.

Runs against the in-memory adapter (or AsyncMock adapters) and the seeded
`bookings` table in an in-memory SQLite DB.
"""
import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy import update
from sqlmodel import Session, select

from syncengine.adapters.base import AdapterResult, ExternalApiAdapter
from syncengine.adapters.memory import InMemoryAdapter
from syncengine.models.integration import ExternalIdMapping
from syncengine.models.schemas import FieldMappingRule, FilterCondition
from syncengine.sync.engine import BatchProcessor, SyncContext
from syncengine.sync import external_ids
from syncengine.sync.external_ids import upsert_external_id_mapping
from syncengine.sync.retry import RetryConfig

NO_RETRY = RetryConfig(max_retries=0, base_delay_ms=0, max_delay_ms=0)


def make_processor(engine, adapter, **kwargs):
    kwargs.setdefault("retry_config", NO_RETRY)
    return BatchProcessor(engine, adapter, **kwargs)


def id_mappings(engine):
    with Session(engine) as s:
        return s.exec(select(ExternalIdMapping).order_by(ExternalIdMapping.local_id)).all()


def set_total(engine, bookings_table, booking_id, total):
    with engine.begin() as conn:
        conn.execute(
            update(bookings_table).where(bookings_table.c.id == booking_id).values(total_amount=total)
        )


class PushOnlyAdapter(ExternalApiAdapter):
    async def create_record(self, entity_type, payload):
        return AdapterResult(success=True, external_id="x")

    async def update_record(self, entity_type, external_id, payload):
        return AdapterResult(success=True, external_id=external_id)


# ─── Push ─────────────────────────────────────────────────────────────────────

class TestPush:
    @pytest.mark.asyncio
    async def test_creates_in_scope_records(self, engine, connection, mapping):
        adapter = InMemoryAdapter()
        ctx = await make_processor(engine, adapter).run_mapping(connection, mapping, "push")

        assert (ctx.records_processed, ctx.records_created, ctx.records_failed) == (3, 3, 0)
        assert [m.local_id for m in id_mappings(engine)] == ["1", "2", "4"]
        assert adapter.store["invoice"]["invoice-1"] == {
            "reference": "BKG-0001", "customer": "Alice", "amount_cents": 10000,
        }

    @pytest.mark.asyncio
    async def test_snapshot_stored_on_mapping(self, engine, connection, mapping):
        await make_processor(engine, InMemoryAdapter()).run_mapping(connection, mapping, "push")
        snapshot = json.loads(id_mappings(engine)[1].external_data_json)
        assert snapshot == {"reference": "BKG-0002", "customer": "Bob", "amount_cents": 25050}

    @pytest.mark.asyncio
    async def test_second_run_updates(self, engine, connection, mapping):
        adapter = InMemoryAdapter()
        await make_processor(engine, adapter).run_mapping(connection, mapping, "push")
        ctx = await make_processor(engine, adapter).run_mapping(connection, mapping, "push")

        assert (ctx.records_created, ctx.records_updated) == (0, 3)
        assert len(id_mappings(engine)) == 3
        assert [c[0] for c in adapter.calls].count("create") == 3

    @pytest.mark.asyncio
    async def test_existing_mapping_sends_update_with_its_external_id(self, engine, connection, mapping):
        upsert_external_id_mapping(
            engine, connection_id=connection.id, local_table="bookings",
            local_id="2", external_id="INV-OLD-2",
        )
        adapter = MagicMock()
        adapter.create_record = AsyncMock(return_value=AdapterResult(success=True, external_id="new"))
        adapter.update_record = AsyncMock(return_value=AdapterResult(success=True))

        ctx = await make_processor(engine, adapter).run_mapping(connection, mapping, "push")

        assert (ctx.records_created, ctx.records_updated) == (2, 1)
        adapter.update_record.assert_awaited_once()
        assert adapter.update_record.await_args.args[:2] == ("invoice", "INV-OLD-2")

    @pytest.mark.asyncio
    async def test_no_filter_processes_every_row(self, engine, connection, bookings_table, make_mapping):
        mapping = make_mapping(connection.id)
        ctx = await make_processor(engine, InMemoryAdapter()).run_mapping(connection, mapping, "push")
        assert ctx.records_processed == 5

    @pytest.mark.asyncio
    async def test_concurrent_records(self, engine, connection, mapping):
        adapter = InMemoryAdapter(latency=0.01)
        ctx = await make_processor(engine, adapter, concurrency=3).run_mapping(
            connection, mapping, "full_sync"
        )
        assert ctx.records_created == 3
        assert len({m.external_id for m in id_mappings(engine)}) == 3


# ─── Per-record failures ──────────────────────────────────────────────────────

class TestRecordFailures:
    @pytest.mark.asyncio
    async def test_adapter_failure_isolated(self, engine, connection, mapping):
        adapter = InMemoryAdapter(
            fail_when=lambda op, payload: ("VALIDATION_ERROR", "bad reference")
            if payload["reference"] == "BKG-0002" else None
        )
        ctx = await make_processor(engine, adapter).run_mapping(connection, mapping, "push")

        assert (ctx.records_processed, ctx.records_created, ctx.records_failed) == (3, 2, 1)
        assert [(e.record_id, e.error_code, e.mapping_id) for e in ctx.errors] == [
            ("2", "VALIDATION_ERROR", mapping.id),
        ]
        assert [m.local_id for m in id_mappings(engine)] == ["1", "4"]

    @pytest.mark.asyncio
    async def test_transform_error(self, engine, connection, bookings_table, make_mapping):
        mapping = make_mapping(
            connection.id,
            rules=[FieldMappingRule(local_field="total_amount", external_field="nights", transform="to_integer")],
            conditions=[FilterCondition(field="status", operator="eq", value="confirmed")],
        )
        ctx = await make_processor(engine, InMemoryAdapter()).run_mapping(connection, mapping, "push")

        assert (ctx.records_created, ctx.records_failed) == (1, 2)
        assert {e.record_id for e in ctx.errors} == {"2", "4"}
        assert all(e.error_code == "TRANSFORM_ERROR" for e in ctx.errors)

    @pytest.mark.asyncio
    async def test_adapter_exception(self, engine, connection, mapping):
        adapter = MagicMock()
        adapter.create_record = AsyncMock(side_effect=[
            AdapterResult(success=True, external_id="a"),
            ConnectionError("socket closed"),
            AdapterResult(success=True, external_id="c"),
        ])
        ctx = await make_processor(engine, adapter).run_mapping(connection, mapping, "push")

        assert (ctx.records_created, ctx.records_failed) == (2, 1)
        assert ctx.errors[0].error_code == "EXCEPTION"
        assert ctx.errors[0].message == "socket closed"

    @pytest.mark.asyncio
    async def test_success_without_external_id(self, engine, connection, mapping):
        adapter = MagicMock()
        adapter.create_record = AsyncMock(return_value=AdapterResult(success=True))
        ctx = await make_processor(engine, adapter).run_mapping(connection, mapping, "push")

        assert ctx.records_failed == 3
        assert {e.error_code for e in ctx.errors} == {"MISSING_EXTERNAL_ID"}
        assert id_mappings(engine) == []

    @pytest.mark.asyncio
    async def test_transient_failure_retried(self, engine, connection, mapping):
        adapter = MagicMock()
        adapter.create_record = AsyncMock(side_effect=[
            AdapterResult.failure("busy", "503"),
            AdapterResult(success=True, external_id="a"),
            AdapterResult(success=True, external_id="b"),
            AdapterResult(success=True, external_id="c"),
        ])
        processor = make_processor(
            engine, adapter, retry_config=RetryConfig(max_retries=2, base_delay_ms=0, max_delay_ms=0)
        )
        ctx = await processor.run_mapping(connection, mapping, "push")
        assert (ctx.records_created, ctx.records_failed) == (3, 0)

    @pytest.mark.asyncio
    async def test_token_refreshed_mid_run(self, engine, connection, mapping):
        adapter = MagicMock()
        adapter.create_record = AsyncMock(side_effect=[
            AdapterResult.failure("expired", "TOKEN_EXPIRED"),
            AdapterResult(success=True, external_id="a"),
            AdapterResult(success=True, external_id="b"),
            AdapterResult(success=True, external_id="c"),
        ])
        refresh = AsyncMock(return_value=True)
        ctx = await make_processor(engine, adapter, on_token_expired=refresh).run_mapping(
            connection, mapping, "push"
        )
        assert ctx.records_created == 3
        refresh.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_non_finite_amount_fails_only_its_record(self, engine, connection, mapping, bookings_table):
        set_total(engine, bookings_table, 2, float("inf"))
        adapter = InMemoryAdapter(latency=0.01)
        ctx = await make_processor(engine, adapter, concurrency=4).run_mapping(
            connection, mapping, "full_sync"
        )

        assert (ctx.records_processed, ctx.records_created, ctx.records_failed) == (3, 2, 1)
        assert [(e.record_id, e.error_code) for e in ctx.errors] == [("2", "TRANSFORM_ERROR")]

        await asyncio.sleep(0.05)
        assert len(adapter.calls) == 2
        assert [m.local_id for m in id_mappings(engine)] == ["1", "4"]

    @pytest.mark.asyncio
    async def test_unexpected_transform_exception(self, engine, connection, mapping):
        def flaky(record, rules):
            if record["id"] == 4:
                raise KeyError("rate_card")
            return {"reference": record["booking_number"]}

        with patch("syncengine.sync.engine.apply_field_mappings", side_effect=flaky):
            ctx = await make_processor(engine, InMemoryAdapter()).run_mapping(connection, mapping, "push")

        assert (ctx.records_created, ctx.records_failed) == (2, 1)
        assert [(e.record_id, e.error_code) for e in ctx.errors] == [("4", "TRANSFORM_ERROR")]

    @pytest.mark.asyncio
    async def test_unexpected_exception_waits_for_siblings(self, engine, connection, mapping):
        real_upsert = external_ids.upsert_external_id_mapping

        def upsert(engine_, **kwargs):
            if kwargs["local_id"] == "1":
                raise RuntimeError("mapping store offline")
            return real_upsert(engine_, **kwargs)

        adapter = InMemoryAdapter(latency=0.01)
        with patch("syncengine.sync.engine.upsert_external_id_mapping", side_effect=upsert):
            ctx = await make_processor(engine, adapter, concurrency=4).run_mapping(
                connection, mapping, "push"
            )

        assert (ctx.records_processed, ctx.records_created, ctx.records_failed) == (3, 2, 1)
        assert [(e.record_id, e.error_code, e.message) for e in ctx.errors] == [
            ("1", "SYNC_ERROR", "mapping store offline"),
        ]
        await asyncio.sleep(0.05)
        assert len(adapter.calls) == 3
        assert [m.local_id for m in id_mappings(engine)] == ["2", "4"]


# ─── Mapping-level failures ───────────────────────────────────────────────────

class TestMappingFailures:
    @pytest.mark.asyncio
    async def test_unknown_transform(self, engine, connection, bookings_table, make_mapping):
        mapping = make_mapping(
            connection.id,
            rules=[FieldMappingRule(local_field="status", external_field="s", transform="rot13")],
        )
        adapter = InMemoryAdapter()
        ctx = await make_processor(engine, adapter).run_mapping(connection, mapping, "push")

        assert ctx.records_failed == 1
        assert ctx.records_processed == 0
        assert ctx.errors[0].error_code == "MAPPING_ERROR"
        assert ctx.errors[0].record_id == ""
        assert adapter.calls == []

    @pytest.mark.asyncio
    async def test_undecodable_rules(self, engine, connection, bookings_table, make_mapping):
        mapping = make_mapping(connection.id, field_mappings_json="{not json")
        ctx = await make_processor(engine, InMemoryAdapter()).run_mapping(connection, mapping, "push")
        assert ctx.errors[0].error_code == "MAPPING_ERROR"

    @pytest.mark.asyncio
    async def test_missing_table(self, engine, connection, make_mapping):
        mapping = make_mapping(connection.id, local_table="no_such_table")
        ctx = await make_processor(engine, InMemoryAdapter()).run_mapping(connection, mapping, "push")

        assert ctx.errors[0].error_code == "FETCH_ERROR"
        assert ctx.records_failed == 1
        assert ctx.summary("no_such_table").error is not None

    @pytest.mark.asyncio
    async def test_mapping_failure_counts_every_retry_id(self, engine, connection, make_mapping):
        mapping = make_mapping(connection.id, local_table="no_such_table")
        ctx = await make_processor(engine, InMemoryAdapter()).run_mapping(
            connection, mapping, "push", record_ids=["1", "2", "3"]
        )
        assert ctx.records_failed == 3


# ─── Retry scoping and cancellation ───────────────────────────────────────────

class TestScoping:
    @pytest.mark.asyncio
    async def test_only_given_ids(self, engine, connection, mapping):
        adapter = InMemoryAdapter()
        ctx = await make_processor(engine, adapter).run_mapping(
            connection, mapping, "push", record_ids=["4"]
        )
        assert ctx.records_processed == 1
        assert [m.local_id for m in id_mappings(engine)] == ["4"]

    @pytest.mark.asyncio
    async def test_vanished_id_is_record_not_found(self, engine, connection, mapping):
        ctx = await make_processor(engine, InMemoryAdapter()).run_mapping(
            connection, mapping, "push", record_ids=["1", "42"]
        )
        assert (ctx.records_created, ctx.records_failed) == (1, 1)
        assert (ctx.errors[0].record_id, ctx.errors[0].error_code) == ("42", "RECORD_NOT_FOUND")

    @pytest.mark.asyncio
    async def test_cancel_stops_remaining_records(self, engine, connection, mapping):
        adapter = InMemoryAdapter()
        processor = make_processor(engine, adapter, is_cancelled=lambda: len(adapter.calls) >= 1)
        ctx = await processor.run_mapping(connection, mapping, "push")

        assert ctx.records_processed == 1
        assert len(adapter.calls) == 1


# ─── Pull ─────────────────────────────────────────────────────────────────────

class TestPull:
    @pytest.mark.asyncio
    async def test_refreshes_linked_and_skips_unlinked(self, engine, connection, mapping):
        adapter = InMemoryAdapter()
        await make_processor(engine, adapter).run_mapping(connection, mapping, "push")
        adapter.store["invoice"]["invoice-2"]["status"] = "paid"
        await adapter.create_record("invoice", {"reference": "created-remotely"})

        ctx = await make_processor(engine, adapter).run_mapping(connection, mapping, "pull")

        assert (ctx.records_updated, ctx.records_skipped, ctx.records_failed) == (3, 1, 0)
        row = next(m for m in id_mappings(engine) if m.external_id == "invoice-2")
        assert json.loads(row.external_data_json)["status"] == "paid"

    @pytest.mark.asyncio
    async def test_adapter_without_pull(self, engine, connection, mapping):
        ctx = await make_processor(engine, PushOnlyAdapter()).run_mapping(connection, mapping, "pull")
        assert ctx.errors[0].error_code == "NOT_SUPPORTED"
        assert ctx.records_failed == 1

    @pytest.mark.asyncio
    async def test_fetch_failure(self, engine, connection, mapping):
        adapter = InMemoryAdapter()
        adapter.fetch_records = AsyncMock(return_value=AdapterResult.failure("down", "SERVER_ERROR"))
        ctx = await make_processor(engine, adapter).run_mapping(connection, mapping, "pull")
        assert ctx.errors[0].error_code == "SERVER_ERROR"


class TestSyncContext:
    def test_absorb_sums_and_summarizes(self):
        run = SyncContext(connection_id=1, mapping_id=None, sync_type="full_sync")
        first = SyncContext(connection_id=1, mapping_id=1, sync_type="full_sync")
        first.record_create()
        first.record_failure("3", "X", "m")
        second = SyncContext(connection_id=1, mapping_id=2, sync_type="full_sync")
        second.record_update()

        run.absorb(first, "bookings")
        run.absorb(second, "customers")

        assert (run.records_processed, run.records_created, run.records_updated, run.records_failed) == (3, 1, 1, 1)
        assert run.errors[0].mapping_id == 1
        assert [m.local_table for m in run.mappings] == ["bookings", "customers"]
        assert run.terminal_status().value == "partial"
