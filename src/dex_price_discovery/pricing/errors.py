"""Exception hierarchy for discovery runs."""

from __future__ import annotations

from typing import Optional

from ..datalake.schemas import DiagnosticCode


class PriceDiscoveryError(RuntimeError):
    """Base class for every error raised by the discovery engine."""


class ConfigurationError(PriceDiscoveryError):
    """Anchor or run configuration makes propagation impossible."""


class MalformedPoolError(PriceDiscoveryError):
    """A single pool record cannot be used; the run continues without it."""

    def __init__(
        self,
        message: str,
        pool_id: Optional[str] = None,
        code: DiagnosticCode = DiagnosticCode.INVALID_RECORD,
    ) -> None:
        super().__init__(message)
        self.pool_id = pool_id
        self.code = code


class SourceError(PriceDiscoveryError):
    """Run inputs could not be loaded from their source."""


class RunFailedError(PriceDiscoveryError):
    """A run did not complete; no results from it were published."""


class RunTimeoutError(RunFailedError):
    """A run exceeded its wall-clock budget."""


__all__ = [
    "ConfigurationError",
    "MalformedPoolError",
    "PriceDiscoveryError",
    "RunFailedError",
    "RunTimeoutError",
    "SourceError",
]
