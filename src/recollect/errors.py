"""Error types raised by the memory system."""


class RecollectError(Exception):
    """Base error for the memory system."""


class NotFoundError(RecollectError, LookupError):
    """A fact or conversation referenced by id does not exist."""


class ProviderUnavailableError(RecollectError):
    """The embedding provider or reasoning function cannot be used."""


class MalformedExtractionError(RecollectError):
    """The reasoning function returned output that could not be parsed."""


class ValidationError(RecollectError, ValueError):
    """Input rejected before reaching storage (empty content, bad confidence)."""


class StorageError(RecollectError):
    """The database failed while running an operation; safe to retry."""
