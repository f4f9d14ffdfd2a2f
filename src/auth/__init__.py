"""Authorization core for the search service."""

from .actions import WILDCARD, Action
from .auth import AuthorizedRequest, authorize_request, authorize_unvalidated_request, require_master_key
from .authorization import AuthorizationOutcome, DenialReason, authorize
from .key_store import ApiKeyStore
from .models import ApiKey, IssuedApiKey
from .routes import RouteClassifier
from .tenant_filter import filter_by_scope, filter_mapping_by_scope

__all__ = [
    "Action",
    "WILDCARD",
    "ApiKey",
    "IssuedApiKey",
    "ApiKeyStore",
    "AuthorizationOutcome",
    "DenialReason",
    "authorize",
    "AuthorizedRequest",
    "authorize_request",
    "authorize_unvalidated_request",
    "require_master_key",
    "RouteClassifier",
    "filter_by_scope",
    "filter_mapping_by_scope",
]
