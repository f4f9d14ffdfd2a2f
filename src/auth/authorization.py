"""Authorization engine: decides whether a key may perform an action on an index.

``authorize`` is a pure function of (key, now, action, index_uid). It holds
no state and may be called concurrently. It is the single decision
procedure used by both call sites:

    1. the synchronous request path (src.auth.auth), and
    2. the task pipeline before implicit index creation (src.tasks.lazy_creation)

Decision Procedure (first failure wins):
    1. Expiration: ``expiresAt`` set and ``now >= expiresAt`` -> key_expired
    2. Index scope: index targeted and not matched by ``indexes`` -> index_not_in_scope
       (skipped for index-agnostic requests such as ``GET /version``)
    3. Action scope: action not matched by ``actions`` -> action_not_granted
    4. Otherwise allowed

The denial reason exists for logs and tests only. At the HTTP boundary every
denial becomes the same ``invalid_api_key`` error.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from .actions import Action, pattern_matches
from .models import ApiKey


class DenialReason(str, Enum):
    KEY_UNKNOWN = "key_unknown"
    KEY_EXPIRED = "key_expired"
    ACTION_NOT_GRANTED = "action_not_granted"
    INDEX_NOT_IN_SCOPE = "index_not_in_scope"


@dataclass(frozen=True)
class AuthorizationOutcome:
    allowed: bool
    reason: Optional[DenialReason] = None

    @classmethod
    def allow(cls) -> "AuthorizationOutcome":
        return ALLOWED

    @classmethod
    def deny(cls, reason: DenialReason) -> "AuthorizationOutcome":
        return cls(allowed=False, reason=reason)

    def __bool__(self) -> bool:
        return self.allowed


ALLOWED = AuthorizationOutcome(allowed=True)


def index_in_scope(key: ApiKey, index_uid: Optional[str]) -> bool:
    """Step 2 of the decision procedure, shared with the tenant filter."""
    return pattern_matches(key.indexes, index_uid)


def action_granted(key: ApiKey, action: Action) -> bool:
    return pattern_matches(key.actions, action)


def authorize(
    key: Optional[ApiKey],
    now: datetime,
    action: Action,
    index_uid: Optional[str] = None,
) -> AuthorizationOutcome:
    """Evaluate a key against a required action and optional target index.

    Args:
        key: The key presented with the request; None if the secret was unknown
        now: Current time (timezone-aware)
        action: The action required by the route
        index_uid: Target index, or None for index-agnostic requests

    Returns:
        AuthorizationOutcome: allowed, or denied with the first failing reason
    """
    if key is None:
        return AuthorizationOutcome.deny(DenialReason.KEY_UNKNOWN)
    if key.is_expired(now):
        return AuthorizationOutcome.deny(DenialReason.KEY_EXPIRED)
    if index_uid is not None and not index_in_scope(key, index_uid):
        return AuthorizationOutcome.deny(DenialReason.INDEX_NOT_IN_SCOPE)
    if not action_granted(key, action):
        return AuthorizationOutcome.deny(DenialReason.ACTION_NOT_GRANTED)
    return AuthorizationOutcome.allow()
