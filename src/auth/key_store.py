"""API key store: issuance, lookup, patch, deletion and listing.

The store is the only shared mutable state of the authorization core. It is
constructed once per process (see src.container) and handed to both the HTTP
layer and the task pipeline.

Concurrency Model:
    - Keys are immutable ``ApiKey`` instances held in plain dictionaries.
    - Lookups take no lock: they read a dictionary entry, which is a single
      reference read, so any number of requests can look keys up in parallel.
    - Writes (issue, patch, delete) are serialized by one ``threading.Lock``.
      A patch builds a complete new ``ApiKey`` and swaps the reference, so a
      concurrent reader sees either the old key or the new key, never old
      actions paired with new indexes.
    - Each write goes to the persistence backend before it is published.

Secret Handling:
    - Secrets are 32 random bytes, URL-safe base64 encoded (``secrets`` module)
    - Only a SHA-256 digest and a short display prefix are stored
    - The plaintext secret is returned exactly once, by ``issue``
    - A deleted key's secret is indistinguishable from one never issued

Master Key:
    The master credential, when configured, resolves to a synthetic key with
    every action and every index and no expiration. It cannot be listed,
    patched or deleted.

Dependencies:
    - hashlib / hmac / secrets: For secret generation and digest comparison
    - threading: For serializing writers
    - pydantic: For payload validation
    - structlog: For audit logging

Used by:
    - src.auth.auth: Secret lookup on every request
    - src.service.main: Key management endpoints
"""

import hashlib
import hmac
import secrets
import threading
import uuid
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Any, Optional

import structlog
from pydantic import BaseModel, ValidationError

from ..errors import ApiKeyNotFoundError, ApiKeyValidationError
from .actions import WILDCARD, Action
from .key_backend import InMemoryKeyBackend, KeyBackend
from .models import (
    IMMUTABLE_FIELDS,
    ApiKey,
    ApiKeyCreate,
    ApiKeyPatch,
    IssuedApiKey,
    utc_now,
)

logger = structlog.get_logger()

MASTER_KEY_UID = "master"

_FIELD_ERROR_CODES = {
    "actions": "invalid_api_key_actions",
    "indexes": "invalid_api_key_indexes",
    "description": "invalid_api_key_description",
    "expiresAt": "invalid_api_key_expires_at",
}


def hash_secret(secret: str) -> str:
    return hashlib.sha256(secret.encode()).hexdigest()


def _to_api_error(exc: ValidationError) -> ApiKeyValidationError:
    """Collapse a pydantic error into the first offending field's error code."""
    error = exc.errors()[0]
    field = error["loc"][0] if error["loc"] else None
    if error["type"] == "missing":
        return ApiKeyValidationError(f"`{field}` field is mandatory.", code="missing_parameter")
    message = error["msg"].removeprefix("Value error, ")
    return ApiKeyValidationError(
        f"Invalid `{field}`: {message}", code=_FIELD_ERROR_CODES.get(field, "bad_request")
    )


def _validate(model: type[BaseModel], payload: Any) -> Any:
    if not isinstance(payload, dict):
        raise ApiKeyValidationError("The API key payload must be a JSON object.")
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        raise _to_api_error(e) from None


class ApiKeyStore:
    """In-memory API key store with write-through persistence."""

    def __init__(
        self,
        backend: Optional[KeyBackend] = None,
        master_key: Optional[str] = None,
        prefix_length: int = 8,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._backend = backend if backend is not None else InMemoryKeyBackend()
        self._master_hash = hash_secret(master_key) if master_key else None
        self._prefix_length = prefix_length
        self._clock = clock
        self._write_lock = threading.Lock()
        self._keys: dict[str, ApiKey] = {}
        self._uids_by_hash: dict[str, str] = {}
        self._master = ApiKey(
            uid=MASTER_KEY_UID,
            prefix="",
            secretHash=self._master_hash or "",
            description="Master API key",
            actions=(Action.ALL,),
            indexes=(WILDCARD,),
            createdAt=clock(),
            updatedAt=clock(),
        )

        for uid, raw in self._backend.load_all().items():
            key = ApiKey.model_validate_json(raw)
            self._keys[uid] = key
            self._uids_by_hash[key.secretHash] = uid

    @property
    def has_master_key(self) -> bool:
        return self._master_hash is not None

    def is_master_secret(self, secret: Optional[str]) -> bool:
        if not secret or self._master_hash is None:
            return False
        return hmac.compare_digest(hash_secret(secret), self._master_hash)

    def issue(
        self,
        indexes: Iterable[str],
        actions: Iterable[Any],
        description: Optional[str] = None,
        expires_at: Any = None,
    ) -> IssuedApiKey:
        """Issue a new key and return it together with its plaintext secret.

        Raises:
            ApiKeyValidationError: If a field is malformed (e.g. an unparsable
                ``expires_at``)
        """
        return self.issue_from_payload(
            {
                "indexes": list(indexes),
                "actions": list(actions),
                "description": description,
                "expiresAt": expires_at,
            }
        )

    def issue_from_payload(self, payload: Any) -> IssuedApiKey:
        """Issue a key from a raw JSON payload (HTTP layer entry point)."""
        request: ApiKeyCreate = _validate(ApiKeyCreate, payload)

        with self._write_lock:
            secret = secrets.token_urlsafe(32)
            secret_hash = hash_secret(secret)
            while secret_hash in self._uids_by_hash or secret_hash == self._master_hash:
                secret = secrets.token_urlsafe(32)
                secret_hash = hash_secret(secret)

            now = self._clock()
            issued = IssuedApiKey(
                uid=str(uuid.uuid4()),
                prefix=secret[: self._prefix_length],
                secretHash=secret_hash,
                description=request.description,
                actions=tuple(request.actions),
                indexes=tuple(request.indexes),
                expiresAt=request.expiresAt,
                createdAt=now,
                updatedAt=now,
                key=secret,
            )
            stored = issued.stored()

            self._backend.put(stored.uid, stored.model_dump_json())
            self._keys[stored.uid] = stored
            self._uids_by_hash[secret_hash] = stored.uid

        logger.info(
            "API key issued",
            key_uid=stored.uid,
            key_prefix=stored.prefix,
            actions=[a.value for a in stored.actions],
            indexes=list(stored.indexes),
            expires_at=stored.expiresAt.isoformat() if stored.expiresAt else None,
        )
        return issued

    def lookup(self, secret: Optional[str]) -> Optional[ApiKey]:
        """Resolve a presented secret to its key, or None if unknown."""
        if not secret:
            return None
        if self.is_master_secret(secret):
            return self._master

        secret_hash = hash_secret(secret)
        uid = self._uids_by_hash.get(secret_hash)
        if uid is None:
            return None
        key = self._keys.get(uid)
        if key is None or not hmac.compare_digest(key.secretHash, secret_hash):
            return None
        return key

    def get(self, uid: str) -> ApiKey:
        """Fetch a key by uid.

        Raises:
            ApiKeyNotFoundError: If no such key exists
        """
        key = self._keys.get(uid)
        if key is None:
            raise ApiKeyNotFoundError(uid)
        return key

    def patch(self, uid: str, fields: Any) -> ApiKey:
        """Replace the supplied fields of a key.

        Each supplied field replaces its old value entirely; fields not
        supplied are left untouched. Re-applying the same patch is a no-op
        (``updatedAt`` only moves when a value actually changes).

        Raises:
            ApiKeyNotFoundError: If no such key exists
            ApiKeyValidationError: For malformed fields, immutable fields, or an
                attempt to change the expiration of an already expired key
        """
        if isinstance(fields, dict):
            immutable = [name for name in IMMUTABLE_FIELDS if name in fields]
            if immutable:
                raise ApiKeyValidationError(
                    f"`{immutable[0]}` is immutable and cannot be updated.",
                    code="immutable_field",
                )
        request: ApiKeyPatch = _validate(ApiKeyPatch, fields)

        updates: dict[str, Any] = {}
        for name in request.model_fields_set:
            value = getattr(request, name)
            updates[name] = tuple(value) if name in ("actions", "indexes") else value

        with self._write_lock:
            current = self.get(uid)
            now = self._clock()

            if (
                "expiresAt" in updates
                and current.is_expired(now)
                and updates["expiresAt"] != current.expiresAt
            ):
                raise ApiKeyValidationError(
                    "An expired API key cannot have its expiration changed.",
                    code="immutable_field",
                )

            changed = {name: value for name, value in updates.items() if getattr(current, name) != value}
            if not changed:
                return current

            updated = current.model_copy(update={**changed, "updatedAt": now})
            self._backend.put(uid, updated.model_dump_json())
            self._keys[uid] = updated

        logger.info("API key patched", key_uid=uid, key_prefix=updated.prefix, fields=sorted(changed))
        return updated

    def delete(self, uid: str) -> None:
        """Delete a key immediately and irreversibly.

        Raises:
            ApiKeyNotFoundError: If no such key exists
        """
        with self._write_lock:
            key = self.get(uid)
            self._backend.delete(uid)
            self._uids_by_hash.pop(key.secretHash, None)
            self._keys.pop(uid, None)

        logger.info("API key deleted", key_uid=uid, key_prefix=key.prefix)

    def list_keys(self) -> list[ApiKey]:
        """All issued keys, oldest first. The master key is not listed."""
        return sorted(self._keys.values(), key=lambda k: (k.createdAt, k.uid))
