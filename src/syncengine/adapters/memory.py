"""In-process adapter (provider "memory") for development, demos and tests."""
import asyncio
import itertools
from typing import Any, Callable, Dict, List, Optional, Tuple

from syncengine.adapters.base import AdapterResult, ExternalApiAdapter, register_adapter
from syncengine.models.integration import IntegrationConnection

# connection_code → entity_type → external_id → payload
_SHARED_STORES: Dict[str, Dict[str, Dict[str, Dict[str, Any]]]] = {}

FailureHook = Callable[[str, Dict[str, Any]], Optional[Tuple[str, str]]]


@register_adapter("memory")
class InMemoryAdapter(ExternalApiAdapter):
    """
    Keeps external records in a dict.

    Adapters built for the same connection (via create_adapter) share one
    store, so consecutive runs see each other's records like a real remote
    system would.

    Args:
        connection: Owning connection; None gives a private store.
        fail_when: Optional hook (operation, payload) → (error_code, message)
            or None. Lets callers force failures for specific payloads.
        latency: Seconds to sleep per call, to simulate network I/O.
    """

    def __init__(
        self,
        connection: Optional[IntegrationConnection] = None,
        fail_when: Optional[FailureHook] = None,
        latency: float = 0.0,
    ):
        super().__init__(connection)
        if connection is not None:
            self.store = _SHARED_STORES.setdefault(connection.connection_code, {})
        else:
            self.store = {}
        self.fail_when = fail_when
        self.latency = latency
        self.calls: List[Tuple[str, str, Optional[str]]] = []
        self._ids = itertools.count(1)

    async def _io(self) -> None:
        await asyncio.sleep(self.latency)

    def _forced_failure(self, operation: str, payload: Dict[str, Any]) -> Optional[AdapterResult]:
        if self.fail_when is None:
            return None
        outcome = self.fail_when(operation, payload)
        if outcome is None:
            return None
        code, message = outcome
        return AdapterResult.failure(message, code)

    def _next_id(self, entity_type: str) -> str:
        entity = self.store.setdefault(entity_type, {})
        while True:
            candidate = f"{entity_type}-{next(self._ids)}"
            if candidate not in entity:
                return candidate

    async def create_record(self, entity_type: str, payload: Dict[str, Any]) -> AdapterResult:
        await self._io()
        external_id = None
        failure = self._forced_failure("create", payload)
        if failure is None:
            external_id = self._next_id(entity_type)
            self.store[entity_type][external_id] = dict(payload)
        self.calls.append(("create", entity_type, external_id))
        return failure or AdapterResult(success=True, external_id=external_id)

    async def update_record(
        self, entity_type: str, external_id: str, payload: Dict[str, Any]
    ) -> AdapterResult:
        await self._io()
        self.calls.append(("update", entity_type, external_id))
        failure = self._forced_failure("update", payload)
        if failure is not None:
            return failure
        entity = self.store.setdefault(entity_type, {})
        if external_id not in entity:
            return AdapterResult.failure(f"{entity_type} {external_id} not found", "NOT_FOUND")
        entity[external_id] = dict(payload)
        return AdapterResult(success=True, external_id=external_id)

    async def fetch_records(
        self, entity_type: str, filters: Optional[Dict[str, Any]] = None
    ) -> AdapterResult:
        await self._io()
        self.calls.append(("fetch", entity_type, None))
        records = [
            {"id": ext_id, **payload}
            for ext_id, payload in self.store.get(entity_type, {}).items()
            if not filters or all(payload.get(k) == v for k, v in filters.items())
        ]
        return AdapterResult(success=True, records=records)
