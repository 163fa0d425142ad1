from .models import User, PriceRecord, PriceHistoryEntry, PriceChange, PriceForm, COFFEE_TYPES
from .errors import (
    ValidationError,
    AuthorizationError,
    NotAuthenticatedError,
    PriceReadError,
    PriceWriteError,
    PriceConflictError,
    StoreError,
)

__all__ = [
    "User",
    "PriceRecord",
    "PriceHistoryEntry",
    "PriceChange",
    "PriceForm",
    "COFFEE_TYPES",
    "ValidationError",
    "AuthorizationError",
    "NotAuthenticatedError",
    "PriceReadError",
    "PriceWriteError",
    "PriceConflictError",
    "StoreError",
]
