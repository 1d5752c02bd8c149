"""Error taxonomy for the decode-and-ingest pipeline.

Every error carries a stable ``kind`` (the class name) which is what the
session records next to the human-readable message.
"""


class IngestError(Exception):
    """Base class for all pipeline errors."""

    @property
    def kind(self) -> str:
        return type(self).__name__


# -- decoding ---------------------------------------------------------------


class MalformedHeader(IngestError):
    """A component header failed magic, length or layout validation."""


class UnsupportedGeometryType(IngestError):
    """A shape type code outside the supported set was found."""


class TruncatedRecord(IngestError):
    """Fewer bytes remain than a record declares."""


class MalformedRecord(IngestError):
    """A record decoded completely but violates a structural invariant."""


class RecordCountMismatch(IngestError):
    """The .shp, .shx and .dbf components disagree on the number of records."""


# -- session preconditions --------------------------------------------------


class MissingComponent(IngestError):
    """A required bundle component is absent from the session or the store."""


class ComponentTooLarge(IngestError):
    pass


class SessionNotFound(IngestError):
    pass


class InvalidTransition(IngestError):
    """The requested operation is not allowed in the session's current status."""


class SessionBusy(InvalidTransition):
    """Another pass already owns the session."""


class InvalidDestination(IngestError):
    pass


# -- schema and sink --------------------------------------------------------


class SchemaConflict(IngestError):
    """A manual schema or an existing table contradicts the column contract."""


class SinkTransient(IngestError):
    """A retryable sink failure (rate limit, timeout, server error)."""


class SinkPermanent(IngestError):
    """A sink failure that retrying cannot fix."""


class RowCoercionError(SinkPermanent):
    """An attribute value cannot be coerced to its column type."""


class Cancelled(IngestError):
    """The pass was cancelled by an external request."""
