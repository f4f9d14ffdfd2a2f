"""Security utilities for the search authorization service."""

from .index_uid_validator import (
    IndexUidValidationError,
    IndexUidValidator,
    validate_index_uid,
)

__all__ = [
    'IndexUidValidator',
    'IndexUidValidationError',
    'validate_index_uid',
]
