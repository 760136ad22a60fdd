"""Error taxonomy for the extraction core.

Infrastructure errors (``StorageDegraded``) are absorbed where they happen;
provider errors travel up the fallback chain; validation errors reach the user.
"""

from __future__ import annotations


class GastoZapError(Exception):
    """Base class for every error raised inside the extraction core."""


class RateLimitExceeded(GastoZapError):
    def __init__(self, provider: str, metric: str = "requests") -> None:
        super().__init__(f"Rate limit exceeded for {provider} ({metric})")
        self.provider = provider
        self.metric = metric


class ProviderUnavailable(GastoZapError):
    def __init__(self, message: str, *, attempted: list[str] | None = None) -> None:
        super().__init__(message)
        self.attempted = list(attempted or [])


class UnsupportedOperation(GastoZapError):
    def __init__(self, provider: str, operation: str) -> None:
        super().__init__(f"Provider {provider} does not support {operation}")
        self.provider = provider
        self.operation = operation


class ValidationFailed(GastoZapError):
    def __init__(self, errors: list[str]) -> None:
        super().__init__("; ".join(errors) or "validation failed")
        self.errors = list(errors)


class RegistrationFailed(GastoZapError):
    pass


class StorageDegraded(GastoZapError):
    pass


class PipelineReentry(GastoZapError):
    pass
