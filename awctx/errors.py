"""Error types for aw-context-worker.

Enrichment failures are recovered inside the component that made the
external call; these types only travel as far as that component.
"""


class AwctxError(Exception):
    """Base error for aw-context-worker."""


class ConfigError(AwctxError):
    """A capability is not configured or a config value is invalid."""


class CapabilityTimeout(AwctxError, TimeoutError):
    """An external call (LLM, search) exceeded its timeout."""


class ApiError(AwctxError):
    """An external call returned a non-success status or an empty body."""

    def __init__(self, message: str, status: int = 0):
        super().__init__(message)
        self.status = status


class ParseError(AwctxError):
    """A generative response did not contain the expected structure."""


class StorageError(AwctxError):
    """Loading or saving the persistent store failed."""
