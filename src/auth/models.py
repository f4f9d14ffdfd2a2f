"""API key models for the search authorization service.

This module defines the pydantic models for the API key entity and the
payloads accepted when issuing or patching a key.

Authentication Models:
    - ApiKey: The persisted, immutable key entity (secret stored as a digest)
    - IssuedApiKey: An ApiKey plus its plaintext secret, returned once at issuance
    - ApiKeyCreate: Issuance payload (indexes, actions, description, expiresAt)
    - ApiKeyPatch: Patch payload; each supplied field fully replaces the old value

Entity Invariants:
    - The secret and uid never change after issuance
    - ``actions`` and ``indexes`` are replaced as whole sets on patch
    - An empty ``actions`` set permits nothing; an empty ``indexes`` set makes
      every index invisible (distinct from ``["*"]``)
    - ``expiresAt`` of None means the key never expires

Dependencies:
    - pydantic: For data validation and serialization
    - src.security: For validating exact index patterns

Used by:
    - src.auth.key_store: For storage and patch application
    - src.auth.authorization: For authorization decisions
    - src.service.main: For key management responses
"""

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..security import IndexUidValidationError, validate_index_uid
from .actions import WILDCARD, Action

IMMUTABLE_FIELDS = ("uid", "key", "prefix", "createdAt", "updatedAt")


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an expiration timestamp.

    Accepted forms:
        - None (no expiration)
        - a datetime (naive values are taken as UTC)
        - an RFC 3339 string, e.g. ``2050-11-13T00:00:00Z``
        - ``YYYY-MM-DDTHH:MM:SS`` or ``YYYY-MM-DD`` strings, taken as UTC

    Past timestamps are valid; they produce an already-expired key.

    Raises:
        ValueError: For any other type or an unparsable string
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise ValueError(
                f"`{value}` is not a valid date. It should follow the RFC 3339 "
                "format to represents a date or datetime in the future or "
                "specified as a null value."
            ) from None
    else:
        raise ValueError(f"`{value}` is not a valid date.")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def validate_index_patterns(patterns: list[str]) -> list[str]:
    """Validate index patterns and drop duplicates, keeping first occurrences."""
    result: list[str] = []
    for pattern in patterns:
        if pattern != WILDCARD:
            try:
                validate_index_uid(pattern)
            except IndexUidValidationError as e:
                raise ValueError(f"`{pattern}` is not a valid index pattern: {e}") from None
        if pattern not in result:
            result.append(pattern)
    return result


def dedupe_actions(actions: list[Action]) -> list[Action]:
    result: list[Action] = []
    for action in actions:
        if action not in result:
            result.append(action)
    return result


class ApiKey(BaseModel):
    """Persisted API key entity.

    Instances are frozen: a patch produces a new instance that replaces the
    old one in the store in a single step, so concurrent readers observe
    either the whole old key or the whole new key.

    The plaintext secret is never kept; ``secretHash`` is its digest and
    ``prefix`` is the non-secret leading part shown in listings.
    """

    model_config = ConfigDict(frozen=True)

    uid: str = Field(..., description="Unique key identifier")
    prefix: str = Field(..., description="Displayed leading characters of the secret")
    secretHash: str = Field(..., description="Digest of the secret")
    description: Optional[str] = Field(None, description="Human-readable description")
    actions: tuple[Action, ...] = Field(default_factory=tuple, description="Granted actions")
    indexes: tuple[str, ...] = Field(default_factory=tuple, description="Index patterns")
    expiresAt: Optional[datetime] = Field(None, description="Expiration, None for never")
    createdAt: datetime = Field(..., description="Creation timestamp")
    updatedAt: datetime = Field(..., description="Last update timestamp")

    def is_expired(self, now: datetime) -> bool:
        return self.expiresAt is not None and now >= self.expiresAt

    def to_public_dict(self) -> dict[str, Any]:
        """Serialize for API responses, without the secret digest."""
        return self.model_dump(mode="json", exclude={"secretHash"})


class IssuedApiKey(ApiKey):
    """Key returned by issuance; the only place the plaintext secret appears."""

    key: str = Field(..., description="Plaintext secret, shown once")

    def stored(self) -> ApiKey:
        return ApiKey(**self.model_dump(exclude={"key"}))


class ApiKeyCreate(BaseModel):
    """Issuance payload."""

    description: Optional[str] = None
    actions: list[Action]
    indexes: list[str]
    expiresAt: Optional[datetime] = None

    @field_validator("expiresAt", mode="before")
    @classmethod
    def parse_expires_at(cls, v):
        return parse_timestamp(v)

    @field_validator("indexes")
    @classmethod
    def validate_indexes(cls, v):
        return validate_index_patterns(v)

    @field_validator("actions")
    @classmethod
    def validate_actions(cls, v):
        return dedupe_actions(v)


class ApiKeyPatch(BaseModel):
    """Patch payload.

    Only fields present in ``model_fields_set`` are applied. ``actions`` and
    ``indexes`` cannot be null when supplied; ``description`` and ``expiresAt``
    can (clearing them).
    """

    description: Optional[str] = None
    actions: Optional[list[Action]] = None
    indexes: Optional[list[str]] = None
    expiresAt: Optional[datetime] = None

    @field_validator("expiresAt", mode="before")
    @classmethod
    def parse_expires_at(cls, v):
        return parse_timestamp(v)

    @field_validator("indexes")
    @classmethod
    def validate_indexes(cls, v):
        if v is None:
            raise ValueError("`indexes` cannot be null")
        return validate_index_patterns(v)

    @field_validator("actions")
    @classmethod
    def validate_actions(cls, v):
        if v is None:
            raise ValueError("`actions` cannot be null")
        return dedupe_actions(v)
