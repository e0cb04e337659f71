"""
Exception types shared by the sync engine.

Two families:

  SyncConfigurationError — a mapping's rules, conditions or stored JSON are
      unusable. Raised before any record of that mapping is sent; the batch
      processor turns it into one mapping-level SyncError.

  SyncPreconditionError — the run cannot start (unknown or inactive
      connection, unusable token, wrong log state, ...). Raised before a
      SyncLog is opened; the service turns it into ActionResult(success=False).
"""


class SyncConfigurationError(ValueError):
    """Base class for invalid mapping configuration."""


class FieldMappingConfigError(SyncConfigurationError):
    """A field mapping rule names an unknown transform or is malformed."""


class FilterConfigurationError(SyncConfigurationError):
    """A filter condition uses an unknown operator or an invalid value."""


class MappingDecodeError(SyncConfigurationError):
    """Stored JSON for rules, conditions or errors could not be decoded."""


class TransformError(ValueError):
    """A single value could not be converted by its transform."""

    def __init__(self, field: str, transform: str, value):
        super().__init__(
            f"Cannot apply transform '{transform}' to field '{field}' (value {value!r})"
        )
        self.field = field
        self.transform = transform
        self.value = value


class SyncPreconditionError(RuntimeError):
    """Raised when a sync operation is rejected before any batch runs."""


class UnauthorizedError(SyncPreconditionError):
    """Caller lacks an administrative role. Message is always 'Unauthorized'."""

    def __init__(self):
        super().__init__("Unauthorized")


class SyncLogStateError(SyncPreconditionError):
    """Requested transition is not legal for the log's current status."""
