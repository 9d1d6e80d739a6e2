"""Error taxonomy for image regeneration."""
from typing import Optional


class RegenerationError(Exception):
    """Base class. Every error carries a stable code and a user-facing message."""

    code = "REGENERATION_ERROR"

    def __init__(self, message: str, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class MissingSourceError(RegenerationError):
    """No source image could be resolved. Raised before any network call."""

    code = "MISSING_SOURCE"


class ProviderGenerationError(RegenerationError):
    """A single unit failed inside a provider (timeout, overload, rate limit...)."""

    code = "PROVIDER_ERROR"


class BatchTransportError(RegenerationError):
    """The whole batch call failed (network error or non-2xx response)."""

    code = "BATCH_TRANSPORT"

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class PersistenceError(RegenerationError):
    """Saving one selected result failed."""

    code = "PERSISTENCE_ERROR"

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class ProviderCallError(Exception):
    """Raw failure from a provider API call.

    `status` is the HTTP status when the provider answered, None for
    transport-level failures.
    """

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status
