"""User-visible error taxonomy for the search authorization service.

Every error that may cross the HTTP boundary is a ``ResponseError``. The
payload shape is fixed (``message``, ``code``, ``type``, ``link``) so that
clients can branch on ``code`` without parsing messages.

Error Identity Rules:
    - All authorization denials collapse into ``InvalidApiKeyError``, whatever
      the internal reason was (unknown key, expired key, action missing,
      index out of scope).
    - A task whose implicit index creation was denied fails with
      ``IndexNotFoundError``, the same identity a genuinely missing index has.

Dependencies:
    - src.config: For the documentation base URL used in ``link``

Used by:
    - src.auth: For authorization and key payload failures
    - src.tasks: For task failure records
    - src.indexes: For index/document lookups
    - src.service.main: Exception handler rendering
"""

from typing import Any, Optional

ERROR_DOCS_URL = "https://docs.meilisearch.com/errors"


class ResponseError(Exception):
    """Base class for errors rendered as a JSON error payload."""

    status_code: int = 400
    code: str = "bad_request"
    error_type: str = "invalid_request"

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code

    def to_payload(self, docs_url: str = ERROR_DOCS_URL) -> dict[str, Any]:
        return {
            "message": self.message,
            "code": self.code,
            "type": self.error_type,
            "link": f"{docs_url}#{self.code}",
        }


class InvalidApiKeyError(ResponseError):
    """Uniform authorization denial.

    The message is fixed on purpose: callers must not be able to tell an
    expired key from an unknown one or from a key lacking the action.
    """

    status_code = 403
    code = "invalid_api_key"
    error_type = "auth"

    def __init__(self):
        super().__init__("The provided API key is invalid.")


class MissingAuthorizationHeaderError(ResponseError):
    status_code = 401
    code = "missing_authorization_header"
    error_type = "auth"

    def __init__(self):
        super().__init__(
            "You must have an authorization token. "
            "The `Authorization` header is missing."
        )


class IndexNotFoundError(ResponseError):
    status_code = 404
    code = "index_not_found"

    def __init__(self, index_uid: str):
        super().__init__(f"Index `{index_uid}` not found.")
        self.index_uid = index_uid


class IndexAlreadyExistsError(ResponseError):
    status_code = 409
    code = "index_already_exists"

    def __init__(self, index_uid: str):
        super().__init__(f"Index `{index_uid}` already exists.")


class InvalidIndexUidError(ResponseError):
    code = "invalid_index_uid"

    def __init__(self, index_uid: Any):
        super().__init__(
            f"`{index_uid}` is not a valid index uid. Index uid can be an integer "
            "or a string containing only alphanumeric characters, hyphens (-) "
            "and underscores (_)."
        )


class DocumentNotFoundError(ResponseError):
    status_code = 404
    code = "document_not_found"

    def __init__(self, document_id: str):
        super().__init__(f"Document `{document_id}` not found.")


class TaskNotFoundError(ResponseError):
    status_code = 404
    code = "task_not_found"

    def __init__(self, task_uid: int):
        super().__init__(f"Task `{task_uid}` not found.")


class DumpNotFoundError(ResponseError):
    status_code = 404
    code = "dump_not_found"

    def __init__(self, dump_uid: str):
        super().__init__(f"Dump `{dump_uid}` not found.")


class ApiKeyNotFoundError(ResponseError):
    status_code = 404
    code = "api_key_not_found"

    def __init__(self, key_uid: str):
        super().__init__(f"API key `{key_uid}` not found.")


class ApiKeyValidationError(ResponseError):
    """Malformed key issuance or patch payload.

    ``code`` names the offending field, e.g. ``invalid_api_key_expires_at``.
    """


class RouteConfigurationError(Exception):
    """A registered HTTP route has no entry in the route table.

    Raised during application startup only; never rendered per request.
    """
