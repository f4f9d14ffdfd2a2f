"""FastAPI service exposing the multi-tenant search API behind API key authorization.

Every index, document, settings, task, stats, dump and version route is
guarded by ``authorize_request``: the route classifier names the action the
route requires, the key store resolves the bearer secret, and ``authorize``
decides. Key management routes accept the master key only.

API Endpoints:
    - GET /, GET /health: public service identification and liveness
    - /keys: API key issuance, listing, lookup, patch and deletion (master key)
    - /indexes: index CRUD, documents, search, settings, per-index tasks/stats
    - /tasks: task listing and lookup, narrowed to the caller's index scope
    - /stats: global stats, narrowed to the caller's index scope
    - /dumps: dump creation and status
    - /version: service version

Write Operations:
    Document, index, settings and dump writes are enqueued as tasks and
    answered with 202 and a task summary. The background worker started in
    the lifespan processes them in order. Document additions and settings
    updates on a missing index go through the lazy index creation hook.

Startup Checks:
    - MASTER_API_KEY must be configured (ConfigurationError otherwise)
    - Every registered route except the public and key management ones must
      have a route table entry (RouteConfigurationError otherwise)

Error Handling:
    Every ``ResponseError`` is rendered as ``{message, code, type, link}``
    with its status code. Malformed request bodies and parameters are
    reported as 400 ``bad_request`` in the same shape, after the request has
    passed the same authorization its route requires.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Optional

import structlog
from fastapi import Body, Depends, FastAPI, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.routing import APIRoute
from pydantic import BaseModel, Field

from ..auth import (
    AuthorizedRequest,
    authorize,
    authorize_request,
    authorize_unvalidated_request,
    filter_by_scope,
    filter_mapping_by_scope,
    require_master_key,
)
from ..auth.actions import Action
from ..auth.authorization import index_in_scope
from ..auth.models import ApiKey
from ..config import Settings, ensure_master_key
from ..container import configure_services
from ..errors import ERROR_DOCS_URL, InvalidApiKeyError, InvalidIndexUidError, ResponseError, TaskNotFoundError
from ..indexes import SETTING_FIELDS, validate_settings
from ..security import IndexUidValidationError, validate_index_uid
from ..tasks import TaskKind

logger = structlog.get_logger()

SERVICE_NAME = "Search Keyguard"
SERVICE_VERSION = "0.1.0"

# Routes served without a route table entry
UNCLASSIFIED_ROUTES = frozenset({"/", "/health", "/keys", "/keys/{key_uid}"})


def classified_routes(app: FastAPI) -> list[tuple[str, str]]:
    """(method, path template) of every API route that must be authorized."""
    return [
        (method, route.path)
        for route in app.routes
        if isinstance(route, APIRoute) and route.path not in UNCLASSIFIED_ROUTES
        for method in route.methods
    ]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the service container, verify route coverage and run the task worker.

    Raises:
        ConfigurationError: If the master key is not configured
        RouteConfigurationError: If a route has no required action
    """
    settings = ensure_master_key(Settings.from_env())
    container = configure_services(settings)

    container.get("route_classifier").ensure_covers(classified_routes(app))
    app.state.container = container

    task_queue = container.get("task_queue")
    worker = asyncio.create_task(task_queue.run_worker(settings.task_poll_interval))
    logger.info("Service started", host=settings.host, port=settings.port)

    yield

    logger.info("Shutting down services...")
    await container.dispose_async()
    await worker


app = FastAPI(
    title=SERVICE_NAME,
    version=SERVICE_VERSION,
    description="Multi-tenant search API with scoped API keys",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=Settings.from_env().cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)


def _docs_url(request: Request) -> str:
    container = getattr(request.app.state, "container", None)
    if container is None or not container.is_registered("settings"):
        return ERROR_DOCS_URL
    return container.get("settings").error_docs_url


@app.exception_handler(ResponseError)
async def response_error_handler(request: Request, exc: ResponseError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload(_docs_url(request)))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Report a malformed request as 400, once the caller has passed authorization."""
    try:
        await authorize_unvalidated_request(request)
    except ResponseError as denied:
        return JSONResponse(status_code=denied.status_code, content=denied.to_payload(_docs_url(request)))

    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()))
    message = f"{first.get('msg', 'Invalid request')} ({location})" if location else first.get("msg", "Invalid request")
    error = ResponseError(message, code="bad_request")
    return JSONResponse(status_code=error.status_code, content=error.to_payload(_docs_url(request)))


def _service(request: Request, name: str) -> Any:
    return request.app.state.container.get(name)


def _enqueue(
    request: Request,
    auth: AuthorizedRequest,
    kind: TaskKind,
    index_uid: Optional[str],
    payload: Optional[dict[str, Any]] = None,
    details: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    task = _service(request, "task_queue").enqueue(kind, index_uid, auth.key, payload=payload, details=details)
    return task.summary()


def _setting_field(setting: str) -> str:
    field = SETTING_FIELDS.get(setting)
    if field is None:
        raise ResponseError(f"Unknown setting `{setting}`.", code="not_found", status_code=404)
    return field


class SearchQuery(BaseModel):
    q: Optional[str] = None
    offset: int = Field(0, ge=0)
    limit: int = Field(20, ge=0, le=1000)


class IndexCreateRequest(BaseModel):
    uid: Any = Field(..., description="Index uid, a string or an integer")
    primaryKey: Optional[str] = None


class IndexUpdateRequest(BaseModel):
    primaryKey: Optional[str] = None


# public


@app.get("/")
async def root():
    """Service identification; no authentication required."""
    return {"service": SERVICE_NAME, "version": SERVICE_VERSION, "status": "running"}


@app.get("/health")
async def health():
    return {"status": "available"}


# key management


@app.post("/keys", status_code=201)
async def create_key(request: Request, payload: Any = Body(...), master: ApiKey = Depends(require_master_key)):
    """Issue a key. The plaintext secret is returned once, in ``key``."""
    issued = _service(request, "key_store").issue_from_payload(payload)
    return issued.model_dump(mode="json", exclude={"secretHash"})


@app.get("/keys")
async def list_keys(request: Request, master: ApiKey = Depends(require_master_key)):
    keys = _service(request, "key_store").list_keys()
    return {"results": [key.to_public_dict() for key in keys]}


@app.get("/keys/{key_uid}")
async def get_key(request: Request, key_uid: str, master: ApiKey = Depends(require_master_key)):
    return _service(request, "key_store").get(key_uid).to_public_dict()


@app.patch("/keys/{key_uid}")
async def patch_key(
    request: Request,
    key_uid: str,
    payload: Any = Body(...),
    master: ApiKey = Depends(require_master_key),
):
    return _service(request, "key_store").patch(key_uid, payload).to_public_dict()


@app.delete("/keys/{key_uid}", status_code=204)
async def delete_key(request: Request, key_uid: str, master: ApiKey = Depends(require_master_key)):
    _service(request, "key_store").delete(key_uid)
    return Response(status_code=204)


# search


@app.post("/indexes/{index_uid}/search")
async def search_post(
    request: Request,
    index_uid: str,
    query: Optional[SearchQuery] = None,
    auth: AuthorizedRequest = Depends(authorize_request),
):
    query = query or SearchQuery()
    return _service(request, "index_registry").search(index_uid, query.q or "", query.offset, query.limit)


@app.get("/indexes/{index_uid}/search")
async def search_get(
    request: Request,
    index_uid: str,
    q: Optional[str] = Query(None),
    offset: int = Query(0, ge=0),
    limit: int = Query(20, ge=0, le=1000),
    auth: AuthorizedRequest = Depends(authorize_request),
):
    return _service(request, "index_registry").search(index_uid, q or "", offset, limit)


# documents


@app.post("/indexes/{index_uid}/documents", status_code=202)
async def add_documents(
    request: Request,
    index_uid: str,
    documents: list[dict[str, Any]] = Body(...),
    primaryKey: Optional[str] = Query(None),
    auth: AuthorizedRequest = Depends(authorize_request),
):
    """Add or replace documents. Creates the index if the key may do so."""
    return _enqueue(
        request,
        auth,
        TaskKind.DOCUMENT_ADDITION,
        index_uid,
        payload={"documents": documents, "primaryKey": primaryKey},
        details={"receivedDocuments": len(documents)},
    )


@app.put("/indexes/{index_uid}/documents", status_code=202)
async def update_documents(
    request: Request,
    index_uid: str,
    documents: list[dict[str, Any]] = Body(...),
    primaryKey: Optional[str] = Query(None),
    auth: AuthorizedRequest = Depends(authorize_request),
):
    """Add documents or merge them into existing ones."""
    return _enqueue(
        request,
        auth,
        TaskKind.DOCUMENT_PARTIAL,
        index_uid,
        payload={"documents": documents, "primaryKey": primaryKey},
        details={"receivedDocuments": len(documents)},
    )


@app.get("/indexes/{index_uid}/documents")
async def list_documents(
    request: Request,
    index_uid: str,
    offset: int = Query(0, ge=0),
    limit: int = Query(20, ge=0, le=1000),
    auth: AuthorizedRequest = Depends(authorize_request),
):
    return _service(request, "index_registry").list_documents(index_uid, offset, limit)


@app.get("/indexes/{index_uid}/documents/{document_id}")
async def get_document(
    request: Request,
    index_uid: str,
    document_id: str,
    auth: AuthorizedRequest = Depends(authorize_request),
):
    return _service(request, "index_registry").get_document(index_uid, document_id)


@app.delete("/indexes/{index_uid}/documents", status_code=202)
async def clear_documents(request: Request, index_uid: str, auth: AuthorizedRequest = Depends(authorize_request)):
    return _enqueue(request, auth, TaskKind.CLEAR_ALL, index_uid)


@app.post("/indexes/{index_uid}/documents/delete-batch", status_code=202)
async def delete_documents_batch(
    request: Request,
    index_uid: str,
    document_ids: list[Any] = Body(...),
    auth: AuthorizedRequest = Depends(authorize_request),
):
    return _enqueue(
        request,
        auth,
        TaskKind.DOCUMENT_DELETION,
        index_uid,
        payload={"documentIds": document_ids},
        details={"receivedDocumentIds": len(document_ids)},
    )


@app.delete("/indexes/{index_uid}/documents/{document_id}", status_code=202)
async def delete_document(
    request: Request,
    index_uid: str,
    document_id: str,
    auth: AuthorizedRequest = Depends(authorize_request),
):
    return _enqueue(
        request,
        auth,
        TaskKind.DOCUMENT_DELETION,
        index_uid,
        payload={"documentIds": [document_id]},
        details={"receivedDocumentIds": 1},
    )


# tasks


def _task_in_scope(auth: AuthorizedRequest, task) -> bool:
    return index_in_scope(auth.key, task.indexUid)


@app.get("/tasks")
async def list_tasks(request: Request, auth: AuthorizedRequest = Depends(authorize_request)):
    tasks = filter_by_scope(_service(request, "task_queue").list_tasks(), auth.key, lambda t: t.indexUid)
    return {"results": [task.to_view() for task in tasks]}


@app.get("/tasks/{task_uid}")
async def get_task(request: Request, task_uid: int, auth: AuthorizedRequest = Depends(authorize_request)):
    """A task outside the caller's index scope reads as not found."""
    task = _service(request, "task_queue").get(task_uid)
    if not _task_in_scope(auth, task):
        raise TaskNotFoundError(task_uid)
    return task.to_view()


@app.get("/indexes/{index_uid}/tasks")
async def list_index_tasks(request: Request, index_uid: str, auth: AuthorizedRequest = Depends(authorize_request)):
    tasks = _service(request, "task_queue").list_tasks(index_uid)
    return {"results": [task.to_view() for task in tasks]}


@app.get("/indexes/{index_uid}/tasks/{task_uid}")
async def get_index_task(
    request: Request,
    index_uid: str,
    task_uid: int,
    auth: AuthorizedRequest = Depends(authorize_request),
):
    task = _service(request, "task_queue").get(task_uid)
    if task.indexUid != index_uid:
        raise TaskNotFoundError(task_uid)
    return task.to_view()


# indexes


@app.post("/indexes", status_code=202)
async def create_index(
    request: Request,
    body: IndexCreateRequest,
    auth: AuthorizedRequest = Depends(authorize_request),
):
    """Enqueue an index creation.

    The target uid travels in the body, so its scope is checked here with the
    same decision procedure the dependency applies to path-addressed routes.
    """
    try:
        index_uid = validate_index_uid(body.uid)
    except IndexUidValidationError:
        raise InvalidIndexUidError(body.uid) from None

    outcome = authorize(auth.key, _service(request, "clock")(), Action.INDEXES_CREATE, index_uid)
    if not outcome:
        logger.warning(
            "Request denied",
            reason=outcome.reason.value,
            action=Action.INDEXES_CREATE.value,
            index_uid=index_uid,
            key_uid=auth.key.uid,
            key_prefix=auth.key.prefix,
            extra={"security_event": True},
        )
        raise InvalidApiKeyError()

    return _enqueue(request, auth, TaskKind.INDEX_CREATION, index_uid, payload={"primaryKey": body.primaryKey})


@app.get("/indexes")
async def list_indexes(request: Request, auth: AuthorizedRequest = Depends(authorize_request)):
    indexes = filter_by_scope(_service(request, "index_registry").list_indexes(), auth.key, lambda i: i.uid)
    return [index.summary() for index in indexes]


@app.get("/indexes/{index_uid}")
async def get_index(request: Request, index_uid: str, auth: AuthorizedRequest = Depends(authorize_request)):
    return _service(request, "index_registry").get(index_uid).summary()


@app.put("/indexes/{index_uid}", status_code=202)
async def update_index(
    request: Request,
    index_uid: str,
    body: Optional[IndexUpdateRequest] = None,
    auth: AuthorizedRequest = Depends(authorize_request),
):
    primary_key = body.primaryKey if body else None
    return _enqueue(request, auth, TaskKind.INDEX_UPDATE, index_uid, payload={"primaryKey": primary_key})


@app.delete("/indexes/{index_uid}", status_code=202)
async def delete_index(request: Request, index_uid: str, auth: AuthorizedRequest = Depends(authorize_request)):
    return _enqueue(request, auth, TaskKind.INDEX_DELETION, index_uid)


# settings


@app.get("/indexes/{index_uid}/settings")
async def get_settings(request: Request, index_uid: str, auth: AuthorizedRequest = Depends(authorize_request)):
    return _service(request, "index_registry").get_settings(index_uid)


@app.post("/indexes/{index_uid}/settings", status_code=202)
async def update_settings(
    request: Request,
    index_uid: str,
    settings: dict[str, Any] = Body(...),
    auth: AuthorizedRequest = Depends(authorize_request),
):
    validate_settings(settings)
    return _enqueue(request, auth, TaskKind.SETTINGS_UPDATE, index_uid, payload={"settings": settings})


@app.delete("/indexes/{index_uid}/settings", status_code=202)
async def reset_settings(request: Request, index_uid: str, auth: AuthorizedRequest = Depends(authorize_request)):
    return _enqueue(request, auth, TaskKind.SETTINGS_UPDATE, index_uid, payload={"reset": True, "isDeletion": True})


@app.get("/indexes/{index_uid}/settings/{setting}")
async def get_setting(
    request: Request,
    index_uid: str,
    setting: str,
    auth: AuthorizedRequest = Depends(authorize_request),
):
    field = _setting_field(setting)
    return _service(request, "index_registry").get_settings(index_uid)[field]


async def _update_setting(
    request: Request,
    index_uid: str,
    setting: str,
    value: Any,
    auth: AuthorizedRequest,
    is_deletion: bool = False,
):
    field = _setting_field(setting)
    payload = {"settings": {field: value}, "isDeletion": is_deletion}
    return _enqueue(request, auth, TaskKind.SETTINGS_UPDATE, index_uid, payload=payload)


@app.post("/indexes/{index_uid}/settings/{setting}", status_code=202)
async def update_setting(
    request: Request,
    index_uid: str,
    setting: str,
    value: Any = Body(None),
    auth: AuthorizedRequest = Depends(authorize_request),
):
    return await _update_setting(request, index_uid, setting, value, auth)


@app.put("/indexes/{index_uid}/settings/{setting}", status_code=202)
async def replace_setting(
    request: Request,
    index_uid: str,
    setting: str,
    value: Any = Body(None),
    auth: AuthorizedRequest = Depends(authorize_request),
):
    return await _update_setting(request, index_uid, setting, value, auth)


@app.delete("/indexes/{index_uid}/settings/{setting}", status_code=202)
async def reset_setting(
    request: Request,
    index_uid: str,
    setting: str,
    auth: AuthorizedRequest = Depends(authorize_request),
):
    # None resets the field to its default
    return await _update_setting(request, index_uid, setting, None, auth, is_deletion=True)


# stats


@app.get("/indexes/{index_uid}/stats")
async def get_index_stats(request: Request, index_uid: str, auth: AuthorizedRequest = Depends(authorize_request)):
    is_indexing = _service(request, "task_queue").is_indexing(index_uid)
    return _service(request, "index_registry").index_stats(index_uid, is_indexing)


@app.get("/stats")
async def get_stats(request: Request, auth: AuthorizedRequest = Depends(authorize_request)):
    """Global stats; ``indexes`` only lists indexes in the caller's scope."""
    registry = _service(request, "index_registry")
    task_queue = _service(request, "task_queue")

    stats = filter_mapping_by_scope(registry.all_stats(), auth.key)
    for index_uid, index_stats in stats.items():
        index_stats["isIndexing"] = task_queue.is_indexing(index_uid)

    last_update = registry.last_update
    return {
        "databaseSize": registry.database_size(),
        "lastUpdate": last_update.isoformat().replace("+00:00", "Z") if last_update else None,
        "indexes": stats,
    }


# dumps


@app.post("/dumps", status_code=202)
async def create_dump(request: Request, auth: AuthorizedRequest = Depends(authorize_request)):
    dump = _service(request, "dump_registry").create()
    summary = _enqueue(request, auth, TaskKind.DUMP_CREATION, None, details={"dumpUid": dump["uid"]})
    return {**summary, "dumpUid": dump["uid"]}


@app.get("/dumps/{dump_uid}/status")
async def get_dump_status(request: Request, dump_uid: str, auth: AuthorizedRequest = Depends(authorize_request)):
    return _service(request, "dump_registry").status(dump_uid)


# version


@app.get("/version")
async def version(auth: AuthorizedRequest = Depends(authorize_request)):
    return {"pkgVersion": SERVICE_VERSION, "commitSha": "unknown", "commitDate": "unknown"}


if __name__ == "__main__":
    import uvicorn

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    settings = Settings.from_env()
    uvicorn.run("src.service.main:app", host=settings.host, port=settings.port)
