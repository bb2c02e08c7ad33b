"""Custom exception classes for the application."""

from typing import List, Optional


class PricePulseError(Exception):
    """Base exception for all PricePulse errors."""

    def __init__(self, message: str = "An unexpected error occurred"):
        self.message = message
        super().__init__(self.message)


class RecordValidationError(PricePulseError):
    """A single scraped record was rejected. Never retryable."""


class SchemaValidationError(RecordValidationError):
    """Raised when required fields are missing from a raw record."""

    def __init__(self, missing_fields: List[str]):
        self.missing_fields = list(missing_fields)
        super().__init__(
            f"Schema validation failed: missing required fields: {', '.join(self.missing_fields)}"
        )


class ValueValidationError(RecordValidationError):
    """Raised when present fields hold unusable values."""

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__(f"Value validation failed: {'; '.join(self.errors)}")


class FetchError(PricePulseError):
    """Raised when a scraper adapter cannot produce results."""

    retryable: bool = False

    def __init__(self, site: str, message: str):
        self.site = site
        super().__init__(f"Fetch error for {site}: {message}")


class TransientNetworkError(FetchError):
    """Timeouts, connection resets, throttling. Retried with backoff."""

    retryable = True


class NonRetryableFetchError(FetchError):
    """DNS failures, auth errors, malformed responses. Fails immediately."""

    retryable = False


class CacheWriteError(PricePulseError):
    """Raised when writing a cache envelope fails. Never reverses a DB commit."""

    def __init__(self, key: str, reason: Optional[str] = None):
        self.key = key
        super().__init__(f"Cache write failed for '{key}': {reason or 'unknown error'}")


class StoreUnavailableError(PricePulseError):
    """Raised when the relational store cannot be reached."""

    def __init__(self, reason: Optional[str] = None):
        super().__init__(f"Relational store unavailable: {reason or 'unknown error'}")
