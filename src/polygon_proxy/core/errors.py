"""
Exceptions raised across the proxy.

Upstream and per-subscriber failures are recovered where they happen
(reconnect, detach, skip); only GainersUnavailable reaches HTTP callers
as an error payload.
"""

from typing import List, Optional


class ProxyError(Exception):
    """Base class for all proxy errors."""


class ConfigError(ProxyError):
    """Raised when required settings are missing or invalid."""


class RequestFailed(ProxyError):
    """Raised when an outbound REST call fails or times out.

    Attributes:
        endpoint: Name of the Polygon call that failed.
    """

    def __init__(self, endpoint: str, message: str = "") -> None:
        self.endpoint = endpoint
        super().__init__(f"{endpoint} failed: {message}" if message else endpoint)


class UpstreamUnavailable(ProxyError):
    """Raised when the upstream websocket cannot be opened or authenticated."""


class MalformedFrame(ProxyError):
    """Raised when an upstream frame is not valid JSON."""


class SnapshotUnavailable(ProxyError):
    """Raised when the intraday snapshot cannot be used for ranking."""


class EnrichmentFailed(ProxyError):
    """Raised when reference data for a single ticker cannot be fetched."""

    def __init__(self, ticker: str, message: str = "") -> None:
        self.ticker = ticker
        super().__init__(f"Enrichment failed for {ticker}: {message}")


class DeliveryFailed(ProxyError):
    """Raised when a frame cannot be written to a subscriber."""


class StrategiesExhausted(ProxyError):
    """Raised by the fallback combinator when every strategy raised.

    Attributes:
        errors: (strategy name, exception) pairs in the order they ran.
    """

    def __init__(self, errors: List[tuple]) -> None:
        self.errors = errors
        detail = "; ".join(f"{name}: {err}" for name, err in errors)
        super().__init__(f"All strategies failed ({detail})")


class GainersUnavailable(ProxyError):
    """Raised when neither the snapshot nor the grouped strategy produced data."""

    def __init__(self, message: str, cause: Optional[Exception] = None) -> None:
        self.cause = cause
        super().__init__(message)
