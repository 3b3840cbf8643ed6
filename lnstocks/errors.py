from __future__ import annotations


class MarketDataError(Exception):
    """Base class for market data failures."""


class UpstreamUnavailableError(MarketDataError):
    """Timeout, network failure, rate limit or auth rejection from the provider."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def rate_limited(self) -> bool:
        return self.status_code == 429


class UpstreamDataInvalidError(MarketDataError):
    """Provider answered, but the payload is malformed or incomplete."""


class NoDataAvailableError(MarketDataError):
    """No cached value and no successful fetch for a symbol."""


class IndexNotReadyError(MarketDataError):
    """Search index has not completed a successful build yet."""
