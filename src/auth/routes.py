"""Route classifier: maps (HTTP method, path) to the action it requires.

The route table is static and fixed at build time. Every HTTP route the
service exposes (other than the public root and the master-key-only key
management routes) must appear in it; ``RouteClassifier.ensure_covers`` is
called during application startup and aborts it when a route is missing.

Template Syntax:
    - ``{index_uid}``: the target index; its value is returned to the caller
      for the index scope check
    - any other ``{name}``: a single path segment (document id, task uid,
      settings sub-resource, ...)

Parameterized item routes resolve to the same action as their collection,
e.g. ``GET /indexes/{index_uid}/documents/{document_id}`` and
``GET /indexes/{index_uid}/documents`` both require ``documents.get``. Every
settings sub-resource collapses to ``settings.get`` or ``settings.update``.

Used by:
    - src.auth.auth: Per-request classification
    - src.service.main: Startup coverage check
"""

import re
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Optional

import structlog

from ..errors import RouteConfigurationError
from .actions import Action

logger = structlog.get_logger()

INDEX_UID_PLACEHOLDER = "index_uid"

_PLACEHOLDER = re.compile(r"\{([a-z_]+)\}")


@dataclass(frozen=True)
class RouteRule:
    method: str
    template: str
    action: Action


@dataclass(frozen=True)
class RouteMatch:
    """Result of classifying a concrete request path."""

    rule: RouteRule
    index_uid: Optional[str]

    @property
    def action(self) -> Action:
        return self.rule.action


ROUTE_TABLE: tuple[RouteRule, ...] = (
    RouteRule("POST", "/indexes/{index_uid}/search", Action.SEARCH),
    RouteRule("GET", "/indexes/{index_uid}/search", Action.SEARCH),
    RouteRule("POST", "/indexes/{index_uid}/documents", Action.DOCUMENTS_ADD),
    RouteRule("PUT", "/indexes/{index_uid}/documents", Action.DOCUMENTS_ADD),
    RouteRule("GET", "/indexes/{index_uid}/documents", Action.DOCUMENTS_GET),
    RouteRule("GET", "/indexes/{index_uid}/documents/{document_id}", Action.DOCUMENTS_GET),
    RouteRule("DELETE", "/indexes/{index_uid}/documents", Action.DOCUMENTS_DELETE),
    RouteRule("POST", "/indexes/{index_uid}/documents/delete-batch", Action.DOCUMENTS_DELETE),
    RouteRule("DELETE", "/indexes/{index_uid}/documents/{document_id}", Action.DOCUMENTS_DELETE),
    RouteRule("GET", "/tasks", Action.TASKS_GET),
    RouteRule("GET", "/tasks/{task_uid}", Action.TASKS_GET),
    RouteRule("GET", "/indexes/{index_uid}/tasks", Action.TASKS_GET),
    RouteRule("GET", "/indexes/{index_uid}/tasks/{task_uid}", Action.TASKS_GET),
    RouteRule("POST", "/indexes", Action.INDEXES_CREATE),
    RouteRule("GET", "/indexes", Action.INDEXES_GET),
    RouteRule("GET", "/indexes/{index_uid}", Action.INDEXES_GET),
    RouteRule("PUT", "/indexes/{index_uid}", Action.INDEXES_UPDATE),
    RouteRule("DELETE", "/indexes/{index_uid}", Action.INDEXES_DELETE),
    RouteRule("GET", "/indexes/{index_uid}/settings", Action.SETTINGS_GET),
    RouteRule("POST", "/indexes/{index_uid}/settings", Action.SETTINGS_UPDATE),
    RouteRule("DELETE", "/indexes/{index_uid}/settings", Action.SETTINGS_UPDATE),
    RouteRule("GET", "/indexes/{index_uid}/settings/{setting}", Action.SETTINGS_GET),
    RouteRule("POST", "/indexes/{index_uid}/settings/{setting}", Action.SETTINGS_UPDATE),
    RouteRule("PUT", "/indexes/{index_uid}/settings/{setting}", Action.SETTINGS_UPDATE),
    RouteRule("DELETE", "/indexes/{index_uid}/settings/{setting}", Action.SETTINGS_UPDATE),
    RouteRule("GET", "/indexes/{index_uid}/stats", Action.STATS_GET),
    RouteRule("GET", "/stats", Action.STATS_GET),
    RouteRule("POST", "/dumps", Action.DUMPS_CREATE),
    RouteRule("GET", "/dumps/{dump_uid}/status", Action.DUMPS_GET),
    RouteRule("GET", "/version", Action.VERSION),
)


def _compile_template(template: str) -> re.Pattern:
    """Turn a route template into an anchored regex with named groups."""
    parts = []
    position = 0
    for placeholder in _PLACEHOLDER.finditer(template):
        parts.append(re.escape(template[position:placeholder.start()]))
        parts.append(f"(?P<{placeholder.group(1)}>[^/]+)")
        position = placeholder.end()
    parts.append(re.escape(template[position:]))
    return re.compile("^" + "".join(parts) + "$")


def normalize_path(path: str) -> str:
    """Strip trailing slashes so ``/indexes/products/`` equals ``/indexes/products``."""
    stripped = path.rstrip("/")
    return stripped or "/"


class RouteClassifier:
    """Resolves concrete requests against the static route table.

    Rules are tried in table order; the first rule whose method and template
    match wins.
    """

    def __init__(self, rules: Iterable[RouteRule] = ROUTE_TABLE):
        self._rules = tuple(rules)
        self._compiled = [
            (rule, _compile_template(rule.template)) for rule in self._rules
        ]
        self._templates = {(rule.method, rule.template) for rule in self._rules}

        duplicates = len(self._rules) - len(self._templates)
        if duplicates:
            raise RouteConfigurationError(f"Route table has {duplicates} duplicate entries")

    def classify(self, method: str, path: str) -> RouteMatch:
        """Find the rule for a concrete request.

        Raises:
            RouteConfigurationError: If no rule matches (an unmapped route)
        """
        method = method.upper()
        path = normalize_path(path)
        for rule, pattern in self._compiled:
            if rule.method != method:
                continue
            match = pattern.match(path)
            if match:
                return RouteMatch(rule=rule, index_uid=match.groupdict().get(INDEX_UID_PLACEHOLDER))
        raise RouteConfigurationError(f"No action is mapped to {method} {path}")

    def required_action(self, method: str, path: str) -> Action:
        return self.classify(method, path).action

    def ensure_covers(self, routes: Iterable[tuple[str, str]]) -> None:
        """Check that every (method, template) pair has a table entry.

        Raises:
            RouteConfigurationError: Listing every unmapped route
        """
        missing = sorted(
            f"{method.upper()} {template}"
            for method, template in routes
            if (method.upper(), template) not in self._templates
        )
        if missing:
            logger.error("Unmapped routes found at startup", routes=missing)
            raise RouteConfigurationError("Routes without a required action: " + ", ".join(missing))
        logger.info("Route table covers all registered routes", rules=len(self._rules))
