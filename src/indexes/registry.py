"""In-process index registry standing in for the document engine.

Holds indexes, their documents and their settings so that every route of the
route table has something real to act on. Search is a plain case-insensitive
substring match over string fields; ranking, typo tolerance and the other
engine features are out of scope.

Thread Safety:
    All reads and writes go through one ``threading.RLock``. The HTTP layer
    reads while the task worker writes.
"""

import copy
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

import structlog

from ..auth.models import utc_now
from ..errors import (
    DocumentNotFoundError,
    IndexAlreadyExistsError,
    IndexNotFoundError,
    InvalidIndexUidError,
    ResponseError,
)
from ..security import IndexUidValidationError, validate_index_uid

logger = structlog.get_logger()

DEFAULT_SETTINGS: dict[str, Any] = {
    "displayedAttributes": ["*"],
    "searchableAttributes": ["*"],
    "filterableAttributes": [],
    "sortableAttributes": [],
    "rankingRules": ["words", "typo", "proximity", "attribute", "sort", "exactness"],
    "stopWords": [],
    "synonyms": {},
    "distinctAttribute": None,
}

# settings sub-resource path segment -> settings field
SETTING_FIELDS: dict[str, str] = {
    "displayed-attributes": "displayedAttributes",
    "distinct-attribute": "distinctAttribute",
    "filterable-attributes": "filterableAttributes",
    "ranking-rules": "rankingRules",
    "searchable-attributes": "searchableAttributes",
    "sortable-attributes": "sortableAttributes",
    "stop-words": "stopWords",
    "synonyms": "synonyms",
}


def validate_settings(settings: dict[str, Any]) -> None:
    """Reject settings payloads naming fields that do not exist.

    Raises:
        ResponseError: 400 `bad_request` listing the unknown names
    """
    unknown = sorted(set(settings) - set(DEFAULT_SETTINGS))
    if unknown:
        raise ResponseError(f"Unknown settings: {', '.join(unknown)}.", code="bad_request")


def _iso(value: datetime) -> str:
    return value.isoformat().replace("+00:00", "Z")


@dataclass
class Index:
    uid: str
    primaryKey: Optional[str]
    createdAt: datetime
    updatedAt: datetime
    documents: dict[str, dict[str, Any]] = field(default_factory=dict)
    settings: dict[str, Any] = field(default_factory=lambda: copy.deepcopy(DEFAULT_SETTINGS))

    def summary(self) -> dict[str, Any]:
        return {
            "uid": self.uid,
            "name": self.uid,
            "primaryKey": self.primaryKey,
            "createdAt": _iso(self.createdAt),
            "updatedAt": _iso(self.updatedAt),
        }

    def stats(self, is_indexing: bool = False) -> dict[str, Any]:
        distribution: dict[str, int] = {}
        for document in self.documents.values():
            for name in document:
                distribution[name] = distribution.get(name, 0) + 1
        return {
            "numberOfDocuments": len(self.documents),
            "isIndexing": is_indexing,
            "fieldDistribution": distribution,
        }


class IndexRegistry:
    """Index catalog with documents and settings."""

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self._clock = clock
        self._lock = threading.RLock()
        self._indexes: dict[str, Index] = {}
        self.last_update: Optional[datetime] = None

    def _touch(self, index: Optional[Index] = None) -> None:
        now = self._clock()
        if index is not None:
            index.updatedAt = now
        self.last_update = now

    def exists(self, uid: str) -> bool:
        return uid in self._indexes

    def get(self, uid: str) -> Index:
        index = self._indexes.get(uid)
        if index is None:
            raise IndexNotFoundError(uid)
        return index

    def list_indexes(self) -> list[Index]:
        with self._lock:
            return sorted(self._indexes.values(), key=lambda i: i.uid)

    def create(self, uid: Any, primary_key: Optional[str] = None) -> Index:
        try:
            uid = validate_index_uid(uid)
        except IndexUidValidationError:
            raise InvalidIndexUidError(uid) from None

        with self._lock:
            if uid in self._indexes:
                raise IndexAlreadyExistsError(uid)
            now = self._clock()
            index = Index(uid=uid, primaryKey=primary_key, createdAt=now, updatedAt=now)
            self._indexes[uid] = index
            self._touch()

        logger.info("Index created", index_uid=uid, primary_key=primary_key)
        return index

    def update(self, uid: str, primary_key: Optional[str]) -> Index:
        with self._lock:
            index = self.get(uid)
            if primary_key is not None:
                if index.documents and index.primaryKey not in (None, primary_key):
                    raise ResponseError(
                        "The primary key cannot be changed once documents are indexed.",
                        code="primary_key_already_present",
                    )
                index.primaryKey = primary_key
            self._touch(index)
            return index

    def delete(self, uid: str) -> None:
        with self._lock:
            self.get(uid)
            del self._indexes[uid]
            self._touch()
        logger.info("Index deleted", index_uid=uid)

    # documents

    @staticmethod
    def _infer_primary_key(document: dict[str, Any]) -> str:
        for name in document:
            if name.lower().endswith("id"):
                return name
        raise ResponseError(
            "The primary key inference process failed because the engine did not "
            "find any fields containing `id` substring in their name.",
            code="primary_key_inference_failed",
        )

    def add_documents(
        self,
        uid: str,
        documents: Iterable[dict[str, Any]],
        primary_key: Optional[str] = None,
        merge: bool = False,
    ) -> int:
        """Add or replace documents; with ``merge`` existing fields are kept.

        The batch is checked as a whole before anything is written: a single
        document without the primary key leaves the index untouched.
        """
        documents = list(documents)
        with self._lock:
            index = self.get(uid)
            key = index.primaryKey
            if key is None:
                key = primary_key
                if key is None and documents:
                    key = self._infer_primary_key(documents[0])

            for document in documents:
                if key not in document:
                    raise ResponseError(
                        f"Document doesn't have a `{key}` attribute: {document}.",
                        code="missing_document_id",
                    )

            index.primaryKey = key
            for document in documents:
                doc_id = str(document[key])
                if merge and doc_id in index.documents:
                    index.documents[doc_id] = {**index.documents[doc_id], **document}
                else:
                    index.documents[doc_id] = dict(document)
            self._touch(index)
            return len(documents)

    def get_document(self, uid: str, document_id: str) -> dict[str, Any]:
        with self._lock:
            document = self.get(uid).documents.get(str(document_id))
            if document is None:
                raise DocumentNotFoundError(document_id)
            return dict(document)

    def list_documents(self, uid: str, offset: int = 0, limit: int = 20) -> list[dict[str, Any]]:
        with self._lock:
            documents = list(self.get(uid).documents.values())
        return [dict(d) for d in documents[offset:offset + limit]]

    def delete_documents(self, uid: str, document_ids: Optional[Iterable[Any]] = None) -> int:
        """Delete the given documents, or every document when ids is None."""
        with self._lock:
            index = self.get(uid)
            if document_ids is None:
                deleted = len(index.documents)
                index.documents.clear()
            else:
                deleted = 0
                for doc_id in document_ids:
                    if index.documents.pop(str(doc_id), None) is not None:
                        deleted += 1
            self._touch(index)
            return deleted

    def search(self, uid: str, query: str = "", offset: int = 0, limit: int = 20) -> dict[str, Any]:
        needle = (query or "").lower()
        with self._lock:
            documents = list(self.get(uid).documents.values())

        hits = [
            dict(d)
            for d in documents
            if not needle
            or any(isinstance(v, str) and needle in v.lower() for v in d.values())
        ]
        return {
            "hits": hits[offset:offset + limit],
            "nbHits": len(hits),
            "query": query,
            "limit": limit,
            "offset": offset,
            "processingTimeMs": 0,
        }

    # settings

    def get_settings(self, uid: str) -> dict[str, Any]:
        with self._lock:
            return copy.deepcopy(self.get(uid).settings)

    def update_settings(self, uid: str, settings: dict[str, Any]) -> None:
        """Apply a partial settings update; a None value resets that field."""
        validate_settings(settings)

        with self._lock:
            index = self.get(uid)
            for name, value in settings.items():
                index.settings[name] = copy.deepcopy(DEFAULT_SETTINGS[name] if value is None else value)
            self._touch(index)

    def reset_settings(self, uid: str) -> None:
        with self._lock:
            index = self.get(uid)
            index.settings = copy.deepcopy(DEFAULT_SETTINGS)
            self._touch(index)

    # stats

    def index_stats(self, uid: str, is_indexing: bool = False) -> dict[str, Any]:
        with self._lock:
            return self.get(uid).stats(is_indexing)

    def all_stats(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            return {uid: self._indexes[uid].stats() for uid in sorted(self._indexes)}

    def database_size(self) -> int:
        with self._lock:
            return sum(len(str(d)) for i in self._indexes.values() for d in i.documents.values())
