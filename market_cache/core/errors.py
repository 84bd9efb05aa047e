from __future__ import annotations


class MarketCacheError(Exception):
    """Base exception for market cache failures."""


class RepositoryError(MarketCacheError):
    """Raised when database operations fail."""


class StoreUnavailableError(RepositoryError):
    """Raised when the persistent store keeps failing after retries."""


class ProviderError(MarketCacheError):
    """Raised when provider fetches fail."""


class TickerNotFoundError(ProviderError):
    """Raised when the provider has no data for a symbol (unknown or delisted)."""


class RateLimitedError(ProviderError):
    """Raised when the provider keeps rejecting requests with HTTP 429."""


class JobNotFoundError(MarketCacheError):
    """Raised when a batch job id does not exist."""


class JobValidationError(MarketCacheError):
    """Raised when a batch job request is invalid."""


class JobStateError(MarketCacheError):
    """Raised when a job transition is not allowed from its current state."""


class ConfirmationRequiredError(MarketCacheError):
    """Raised when a protected cache operation is missing its confirmation code."""
