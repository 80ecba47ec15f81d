"""
Error taxonomy for the movie catalog.

Every error carries a machine-readable code and converts to the JSON body
returned by the HTTP layer.
"""
from typing import Any, Dict, Optional

from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Standard error response format."""
    code: str
    message: str
    details: Dict[str, Any] = {}


class CatalogError(Exception):
    """Base exception for catalog errors."""

    code = "CATALOG_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(code=self.code, message=self.message, details=self.details)


class QueryValidationError(CatalogError):
    """Bad query parameters; the caller can fix and retry."""
    code = "VALIDATION_ERROR"


class RecordNotFoundError(CatalogError):
    """No movie with the requested id."""
    code = "NOT_FOUND"

    def __init__(self, record_id: str):
        super().__init__(f"Movie {record_id} not found", {"id": record_id})
        self.record_id = record_id


class StoreError(CatalogError):
    """Record store failure. Fatal for the current request."""
    code = "STORE_ERROR"


class FetchTimeoutError(StoreError):
    """A waiter gave up on a store fetch before it completed."""
    code = "STORE_TIMEOUT"


class CacheUnavailableError(CatalogError):
    """Cache client unreachable. Reads degrade to the store."""
    code = "CACHE_UNAVAILABLE"


class InvalidationFailure(CatalogError):
    """Cache entries could not be deleted after a write."""
    code = "INVALIDATION_FAILURE"
