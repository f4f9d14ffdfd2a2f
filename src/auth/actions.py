"""Action taxonomy and scope pattern matching.

An API key grants a set of actions and a set of index patterns. Both sets
accept the wildcard ``*``, which matches every current and future value.

Matching Rules:
    - ``*`` matches any candidate, including values that did not exist when
      the key was issued (new actions, indexes created later).
    - Any other pattern matches only the identical candidate string.
    - An empty pattern set matches nothing.

There is intentionally no prefix or glob matching: a pattern is either an
exact value or the universal wildcard.

Used by:
    - src.auth.authorization: Action and index scope checks
    - src.auth.tenant_filter: Index visibility of listed items
    - src.auth.routes: Route table values
"""

from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Optional

WILDCARD = "*"


class Action(str, Enum):
    """Fine-grained permission units.

    ``ALL`` is the wildcard sentinel. A key holding it is re-evaluated on every
    request, so it also grants actions added after the key was issued.
    """

    ALL = WILDCARD
    SEARCH = "search"
    DOCUMENTS_ADD = "documents.add"
    DOCUMENTS_GET = "documents.get"
    DOCUMENTS_DELETE = "documents.delete"
    INDEXES_CREATE = "indexes.create"
    INDEXES_GET = "indexes.get"
    INDEXES_UPDATE = "indexes.update"
    INDEXES_DELETE = "indexes.delete"
    SETTINGS_GET = "settings.get"
    SETTINGS_UPDATE = "settings.update"
    STATS_GET = "stats.get"
    TASKS_GET = "tasks.get"
    DUMPS_CREATE = "dumps.create"
    DUMPS_GET = "dumps.get"
    VERSION = "version"

    @classmethod
    def concrete(cls) -> list["Action"]:
        """All actions except the wildcard."""
        return [action for action in cls if action is not cls.ALL]


@dataclass(frozen=True)
class ScopePattern:
    """Either ``Exact(value)`` or ``Wildcard``.

    ``value`` is None for the wildcard variant.
    """

    value: Optional[str] = None

    @classmethod
    def parse(cls, raw: str) -> "ScopePattern":
        return cls(None) if raw == WILDCARD else cls(raw)

    @property
    def is_wildcard(self) -> bool:
        return self.value is None

    def matches(self, candidate: Optional[str]) -> bool:
        if self.is_wildcard:
            return True
        return candidate is not None and candidate == self.value


def pattern_matches(patterns: Iterable[str], candidate: Optional[str]) -> bool:
    """Return True if any raw pattern in ``patterns`` matches ``candidate``.

    This is the single matching function shared by the authorization engine
    (for actions and indexes) and the tenant filter. A None candidate is only
    matched by the wildcard.
    """
    return any(ScopePattern.parse(raw).matches(candidate) for raw in patterns)
