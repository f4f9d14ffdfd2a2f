"""Index uid validation for index creation and API key index scopes.

Index uids end up in URL paths, task records, stats keys and key scopes, so a
single validator decides what a well-formed uid is.

Index Uid Format:
    - 1 to 400 characters
    - ASCII letters, digits, hyphens (-) and underscores (_)
    - The wildcard ``*`` is not an index uid; it is only accepted as a key
      index pattern (see src.auth.actions)

Dependencies:
    - re: For the format pattern
    - structlog: For security event logging

Called by:
    - src.auth.models: For validating exact index patterns on API keys
    - src.indexes.registry: For validating uids on index creation

Complexity:
    - Validation: O(n) where n is uid length
"""

import re
from typing import Any, Optional

import structlog

logger = structlog.get_logger()


class IndexUidValidationError(Exception):
    """Raised when an index uid is empty, oversized or badly formed."""


class IndexUidValidator:
    """Validator for index uids.

    Validation Steps:
        1. Type and emptiness check
        2. Length limit (DoS protection)
        3. Format check against ``INDEX_UID_PATTERN``
    """

    INDEX_UID_PATTERN = re.compile(r"[A-Za-z0-9_-]+")

    MAX_LENGTH = 400

    def validate_index_uid(self, index_uid: Any) -> str:
        """Validate an index uid and return it unchanged.

        Integers are accepted and converted to their decimal string form.

        Raises:
            IndexUidValidationError: If the uid is not a well-formed index uid
        """
        if isinstance(index_uid, bool):
            raise IndexUidValidationError("Index uid must be a string")
        if isinstance(index_uid, int):
            index_uid = str(index_uid)
        if not isinstance(index_uid, str):
            raise IndexUidValidationError("Index uid must be a string")

        if not index_uid:
            raise IndexUidValidationError("Index uid cannot be empty")

        if len(index_uid) > self.MAX_LENGTH:
            logger.warning(
                "Index uid too long",
                index_uid=index_uid[:20] + "...",
                length=len(index_uid),
                extra={"security_event": True},
            )
            raise IndexUidValidationError("Index uid too long")

        if not self.INDEX_UID_PATTERN.fullmatch(index_uid):
            logger.warning(
                "Invalid index uid format",
                index_uid=index_uid[:40],
                extra={"security_event": True},
            )
            raise IndexUidValidationError(
                "Index uid can only contain alphanumeric characters, "
                "hyphens (-) and underscores (_)"
            )

        return index_uid


_index_uid_validator: Optional[IndexUidValidator] = None


def get_index_uid_validator() -> IndexUidValidator:
    """Get the shared validator instance."""
    global _index_uid_validator
    if _index_uid_validator is None:
        _index_uid_validator = IndexUidValidator()
    return _index_uid_validator


def validate_index_uid(index_uid: Any) -> str:
    """Validate an index uid using the shared validator instance.

    Raises:
        IndexUidValidationError: If validation fails
    """
    return get_index_uid_validator().validate_index_uid(index_uid)
