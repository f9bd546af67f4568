"""
Error taxonomy shared by the cache, the upstream client and the HTTP layer.
"""
from typing import Optional


class RaceStatsError(Exception):
    """Base class for all service errors."""

    error_type = "internal"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.message, "type": self.error_type}


class UpstreamUnavailable(RaceStatsError):
    """Network failure, timeout or rate limit from the upstream API."""

    error_type = "upstream_unavailable"

    def __init__(
        self,
        message: str,
        cause: Optional[BaseException] = None,
        retryable: bool = True,
    ):
        super().__init__(message)
        self.cause = cause
        self.retryable = retryable


class NotFound(RaceStatsError):
    """The entity does not exist upstream."""

    error_type = "not_found"

    def __init__(self, message: str, key: Optional[str] = None):
        super().__init__(message)
        self.key = key


class InvalidKey(RaceStatsError):
    """Malformed cache key or identifier supplied by a caller."""

    error_type = "invalid_key"

    def __init__(self, message: str, key: Optional[str] = None):
        super().__init__(message)
        self.key = key
