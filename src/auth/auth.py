"""Request authorization for the search service HTTP API.

This module turns an incoming request into an authorization decision:

    method + path --(RouteClassifier)--> required action, target index
    Authorization header --(ApiKeyStore.lookup)--> key (or None)
    key, now, action, index --(authorize)--> Allowed / Denied{reason}

Security Model:
    - The secret is read from ``Authorization: Bearer <secret>``
    - A missing header yields 401 ``missing_authorization_header``
    - Every denial (unknown, expired, out-of-scope index, missing action)
      yields the same 403 ``invalid_api_key`` payload; the internal reason is
      only written to the security log
    - Key management routes accept the master key and nothing else
    - A malformed body or parameter is only reported to an authorized caller
    - Secrets are never logged; the uid and display prefix are

Dependencies:
    - fastapi: For the bearer security scheme and dependency injection
    - structlog: For security event logging

Used by:
    - src.service.main: ``authorize_request`` on every index/task/stats/dump
      route, ``require_master_key`` on ``/keys`` routes
"""

from dataclasses import dataclass
from typing import Optional

import structlog
from fastapi import Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ..errors import InvalidApiKeyError, MissingAuthorizationHeaderError, RouteConfigurationError
from .actions import Action
from .authorization import authorize
from .models import ApiKey
from .routes import RouteMatch

logger = structlog.get_logger()

# auto_error=False so a missing header is reported with our own error payload
bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class AuthorizedRequest:
    """What a handler learns about an allowed request."""

    key: ApiKey
    action: Action
    index_uid: Optional[str]


def _secret_from(credentials: Optional[HTTPAuthorizationCredentials]) -> str:
    if credentials is None or not credentials.credentials:
        logger.warning("Missing authorization header")
        raise MissingAuthorizationHeaderError()
    return credentials.credentials


def _authorize(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials],
    route: RouteMatch,
) -> AuthorizedRequest:
    container = request.app.state.container
    store = container.get("key_store")
    clock = container.get("clock")

    secret = _secret_from(credentials)
    key = store.lookup(secret)
    outcome = authorize(key, clock(), route.action, route.index_uid)

    if not outcome:
        logger.warning(
            "Request denied",
            reason=outcome.reason.value,
            action=route.action.value,
            index_uid=route.index_uid,
            key_uid=key.uid if key else None,
            key_prefix=key.prefix if key else None,
            extra={"security_event": True},
        )
        raise InvalidApiKeyError()

    logger.debug(
        "Request authorized",
        action=route.action.value,
        index_uid=route.index_uid,
        key_uid=key.uid,
    )
    return AuthorizedRequest(key=key, action=route.action, index_uid=route.index_uid)


def _require_master(request: Request, credentials: Optional[HTTPAuthorizationCredentials]) -> ApiKey:
    store = request.app.state.container.get("key_store")
    secret = _secret_from(credentials)

    if not store.is_master_secret(secret):
        logger.warning(
            "Non-master credential used on key management route",
            path=request.url.path,
            extra={"security_event": True},
        )
        raise InvalidApiKeyError()

    return store.lookup(secret)


async def authorize_request(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
) -> AuthorizedRequest:
    """Authorize the current request or raise ``InvalidApiKeyError``.

    Raises:
        MissingAuthorizationHeaderError: 401 when no bearer token is sent
        InvalidApiKeyError: 403 on any denial
    """
    route = request.app.state.container.get("route_classifier").classify(request.method, request.url.path)
    return _authorize(request, credentials, route)


async def require_master_key(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
) -> ApiKey:
    """Admit only the master key (key management routes)."""
    return _require_master(request, credentials)


async def authorize_unvalidated_request(request: Request) -> None:
    """Apply the route's authorization to a request whose body or parameters failed validation.

    FastAPI decodes the body before running dependencies, so a malformed body
    would otherwise be reported before the key is checked. Routes outside
    the route table are the key management routes.

    Raises:
        MissingAuthorizationHeaderError: 401 when no bearer token is sent
        InvalidApiKeyError: 403 on any denial
    """
    credentials = await bearer_scheme(request)
    classifier = request.app.state.container.get("route_classifier")
    try:
        route = classifier.classify(request.method, request.url.path)
    except RouteConfigurationError:
        _require_master(request, credentials)
        return
    _authorize(request, credentials, route)
