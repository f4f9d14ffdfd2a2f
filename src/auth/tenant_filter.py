"""Tenant filter for list-style responses.

Index listings, task listings and aggregated stats enumerate several indexes
at once. Before they leave the service they are narrowed to the indexes the
presented key can see. Visibility depends on the key's index patterns only:
the caller already passed the action check to reach the handler.

Items whose associated index is None (e.g. a dump task) are visible only to
keys holding the ``*`` index pattern.
"""

from collections.abc import Callable, Iterable, Mapping
from typing import Optional, TypeVar

from .authorization import index_in_scope
from .models import ApiKey

T = TypeVar("T")
V = TypeVar("V")


def filter_by_scope(
    items: Iterable[T],
    key: ApiKey,
    index_of: Callable[[T], Optional[str]],
) -> list[T]:
    """Keep the items whose index is in the key's scope, preserving order."""
    return [item for item in items if index_in_scope(key, index_of(item))]


def filter_mapping_by_scope(mapping: Mapping[str, V], key: ApiKey) -> dict[str, V]:
    """Same as ``filter_by_scope`` for mappings keyed by index uid."""
    return {uid: value for uid, value in mapping.items() if index_in_scope(key, uid)}
