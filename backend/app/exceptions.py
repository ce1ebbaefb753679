"""Error taxonomy shared by the converters, store, index and analysis layers.

Propagation policy:
- ValidationError is fatal to a single conversion only.
- NotFoundError is tolerated by readers; update() surfaces it.
- PersistenceError propagates from Resource Store writes, but degrades the
  retrieval index to memory-only mode.
- UpstreamGenerationError is caught per analysis topic.
"""


class HealthRecordError(Exception):
    """Base class for all domain errors."""


class ValidationError(HealthRecordError, ValueError):
    """A required identity field is missing or invalid."""


class NotFoundError(HealthRecordError, LookupError):
    """A referenced resource or document does not exist."""

    def __init__(self, resource_type: str, resource_id: str):
        self.resource_type = resource_type
        self.resource_id = resource_id
        super().__init__(f"{resource_type}/{resource_id} not found")


class PersistenceError(HealthRecordError):
    """The store or index durability layer is unreachable."""


class UpstreamGenerationError(HealthRecordError):
    """The text-generation collaborator failed or returned nothing."""
