"""
Abstract external system adapter.

The sync engine depends only on this interface; it never knows which
accounting/ERP platform sits behind it or how requests go over the wire.

Adapters:
  - accept an external entity type ("invoice", "customer", ...) and a payload
    produced by the field mapping evaluator
  - return AdapterResult, or raise ExternalApiError(code, message)
  - are registered per provider name with @register_adapter and built for a
    connection with create_adapter(connection)
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from syncengine.models.integration import IntegrationConnection


@dataclass
class AdapterResult:
    """Outcome of one external call."""

    success: bool
    external_id: Optional[str] = None
    records: List[Dict[str, Any]] = field(default_factory=list)  # fetch_records only
    error: Optional[str] = None
    error_code: Optional[str] = None

    @classmethod
    def failure(cls, error: str, error_code: str) -> "AdapterResult":
        return cls(success=False, error=error, error_code=error_code)


class ExternalApiError(RuntimeError):
    """Raised by adapters for failures carrying an error code."""

    def __init__(self, code: str, message: str):
        super().__init__(f"{code}: {message}")
        self.code = code
        self.message = message


class AdapterNotFoundError(LookupError):
    """No adapter registered for a connection's provider."""


class ExternalApiAdapter(ABC):
    """Create/update/fetch records in one external system."""

    def __init__(self, connection: Optional[IntegrationConnection] = None):
        self.connection = connection

    @abstractmethod
    async def create_record(self, entity_type: str, payload: Dict[str, Any]) -> AdapterResult:
        """Create a record. A successful result must carry external_id."""

    @abstractmethod
    async def update_record(
        self, entity_type: str, external_id: str, payload: Dict[str, Any]
    ) -> AdapterResult:
        """Overwrite the record identified by external_id."""

    async def fetch_records(
        self, entity_type: str, filters: Optional[Dict[str, Any]] = None
    ) -> AdapterResult:
        """
        Fetch records for pull syncs. Each record dict carries its external
        identifier under "id".

        Raises:
            NotImplementedError: If the adapter does not support pull.
        """
        raise NotImplementedError(f"{self.__class__.__name__} does not support pull sync")


# ── Registry ─────────────────────────────────────────────────────────────────

_adapter_registry: Dict[str, Callable[[IntegrationConnection], ExternalApiAdapter]] = {}


def register_adapter(provider: str):
    """Decorator to register an adapter class for a provider name."""
    def decorator(cls):
        _adapter_registry[provider.lower()] = cls
        return cls
    return decorator


def create_adapter(connection: IntegrationConnection) -> ExternalApiAdapter:
    """
    Build the adapter for a connection's provider.

    Raises:
        AdapterNotFoundError: if the provider is not registered.
    """
    provider = (connection.provider or "").lower()
    if provider not in _adapter_registry:
        raise AdapterNotFoundError(
            f"No adapter registered for provider '{connection.provider}'. "
            f"Available: {list_available_adapters()}"
        )
    return _adapter_registry[provider](connection)


def list_available_adapters() -> List[str]:
    return sorted(_adapter_registry)


def supports_pull(adapter: ExternalApiAdapter) -> bool:
    """True if the adapter's class overrides fetch_records."""
    return getattr(type(adapter), "fetch_records", None) is not ExternalApiAdapter.fetch_records
