"""Local JSON API for faultline: the caller-facing surface for UI clients.

The repository and (optionally) a sync processor are injected into
``create_app``; there is no module-level store handle. When a processor is
supplied with a ``sync_interval``, the app drains the outbox in the
background for as long as it is running.

The caller is identified per request by the ``X-Actor-Id``,
``X-Actor-Name`` and ``X-Actor-Role`` headers. A request without a role can
read but is denied every mutation.

Usage:
    faultline dashboard                   # Serves http://127.0.0.1:8377/api
    faultline dashboard --port 9000       # Custom port
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import AsyncIterator
from typing import Any

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from faultline.core import DB_FILENAME, FaultlineDB, find_faultline_root, read_config
from faultline.errors import NotFound, PermissionDenied, ValidationFailed
from faultline.logging import setup_logging
from faultline.models import Actor
from faultline.repository import DefectFilter, DefectRepository
from faultline.sync import HttpRemote, SyncProcessor, load_sync_options
from faultline.validation import build_actor

DEFAULT_PORT = 8377
DEFAULT_ACTOR = "dashboard"

logger = logging.getLogger(__name__)

_BOOL_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
_BOOL_FALSE_VALUES = frozenset({"0", "false", "no", "off"})
_FILTER_STRINGS = ("status", "severity", "severity_model", "asset_id", "location_id", "site_id", "assigned_to_id", "compliance_tag", "search")
_FILTER_FLAGS = ("overdue", "unsafe", "unassigned", "from_inspection")


class BadRequest(Exception):
    """Malformed request input (400)."""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _error_response(
    message: str,
    code: str,
    status_code: int,
    details: dict[str, Any] | None = None,
) -> JSONResponse:
    """Return a structured error response and log the error."""
    logger.warning("API error [%s] %s: %s", status_code, code, message)
    return JSONResponse(
        {"error": {"message": message, "code": code, "details": details or {}}},
        status_code=status_code,
    )


async def _parse_json_body(request: Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except (json.JSONDecodeError, ValueError, UnicodeDecodeError) as exc:
        raise BadRequest("Invalid JSON body") from exc
    if not isinstance(body, dict):
        raise BadRequest("Request body must be a JSON object")
    return body


def _parse_bool(value: str, name: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _BOOL_TRUE_VALUES:
        return True
    if lowered in _BOOL_FALSE_VALUES:
        return False
    raise BadRequest(f"{name} must be a boolean (got {value!r})")


def _require_str(body: dict[str, Any], key: str) -> str:
    value = body.get(key, "")
    if not isinstance(value, str):
        raise BadRequest(f"{key} must be a string")
    return value


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def get_repo(request: Request) -> DefectRepository:
    repo: DefectRepository = request.app.state.repo
    return repo


def get_actor(request: Request) -> Actor:
    actor, err = build_actor(
        request.headers.get("x-actor-id", DEFAULT_ACTOR),
        request.headers.get("x-actor-name", ""),
        request.headers.get("x-actor-role") or None,
    )
    if actor is None:
        raise BadRequest(err or "Invalid actor")
    return actor


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


def create_router() -> APIRouter:
    """Build the APIRouter for defect, settings, and outbox endpoints.

    Handlers are async despite doing synchronous SQLite I/O so DB access
    stays serialized on the event loop thread.
    """
    router = APIRouter()

    @router.get("/defects")
    async def api_list_defects(request: Request, repo: DefectRepository = Depends(get_repo)) -> JSONResponse:
        params = request.query_params
        criteria: dict[str, Any] = {k: params[k] for k in _FILTER_STRINGS if params.get(k)}
        for flag in _FILTER_FLAGS:
            if flag in params:
                criteria[flag] = _parse_bool(params[flag], flag)
        defects = repo.query(DefectFilter(**criteria))
        return JSONResponse([d.to_dict() for d in defects])

    @router.post("/defects", status_code=201)
    async def api_create_defect(
        request: Request,
        repo: DefectRepository = Depends(get_repo),
        actor: Actor = Depends(get_actor),
    ) -> JSONResponse:
        body = await _parse_json_body(request)
        defect = repo.create(body, actor=actor)
        return JSONResponse(defect.to_dict(), status_code=201)

    @router.get("/defects/{ref}")
    async def api_defect_detail(ref: str, repo: DefectRepository = Depends(get_repo)) -> JSONResponse:
        """Accepts an id or a code in any format the resolver understands."""
        defect = repo.resolve(ref)
        if defect is None:
            raise NotFound(ref)
        return JSONResponse(defect.to_dict())

    @router.patch("/defects/{defect_id}")
    async def api_update_defect(
        defect_id: str,
        request: Request,
        repo: DefectRepository = Depends(get_repo),
        actor: Actor = Depends(get_actor),
    ) -> JSONResponse:
        body = await _parse_json_body(request)
        defect = repo.update(defect_id, body, actor=actor)
        return JSONResponse(defect.to_dict())

    @router.delete("/defects/{defect_id}")
    async def api_delete_defect(
        defect_id: str,
        repo: DefectRepository = Depends(get_repo),
        actor: Actor = Depends(get_actor),
    ) -> JSONResponse:
        repo.delete(defect_id, actor=actor)
        return JSONResponse({"deleted": defect_id})

    @router.post("/defects/{defect_id}/close")
    async def api_close_defect(
        defect_id: str,
        request: Request,
        repo: DefectRepository = Depends(get_repo),
        actor: Actor = Depends(get_actor),
    ) -> JSONResponse:
        body = await _parse_json_body(request)
        defect = repo.close(defect_id, _require_str(body, "resolution_notes"), actor=actor)
        return JSONResponse(defect.to_dict())

    @router.post("/defects/{defect_id}/reopen")
    async def api_reopen_defect(
        defect_id: str,
        request: Request,
        repo: DefectRepository = Depends(get_repo),
        actor: Actor = Depends(get_actor),
    ) -> JSONResponse:
        """Returns the reopened defect, or the newly raised one for ``mode: "new"``."""
        body = await _parse_json_body(request)
        mode = body.get("mode", "same")
        defect = repo.reopen(defect_id, _require_str(body, "reason"), mode=mode, actor=actor)
        return JSONResponse(defect.to_dict(), status_code=201 if mode == "new" else 200)

    @router.post("/defects/{defect_id}/comments", status_code=201)
    async def api_add_comment(
        defect_id: str,
        request: Request,
        repo: DefectRepository = Depends(get_repo),
        actor: Actor = Depends(get_actor),
    ) -> JSONResponse:
        body = await _parse_json_body(request)
        comment = repo.add_comment(defect_id, _require_str(body, "text"), actor=actor)
        return JSONResponse(comment.to_dict(), status_code=201)

    @router.post("/defects/{defect_id}/actions", status_code=201)
    async def api_add_action(
        defect_id: str,
        request: Request,
        repo: DefectRepository = Depends(get_repo),
        actor: Actor = Depends(get_actor),
    ) -> JSONResponse:
        body = await _parse_json_body(request)
        action = repo.add_action(defect_id, _require_str(body, "title"), required=bool(body.get("required", False)), actor=actor)
        return JSONResponse(action.to_dict(), status_code=201)

    @router.post("/defects/{defect_id}/actions/{action_id}/complete")
    async def api_complete_action(
        defect_id: str,
        action_id: str,
        repo: DefectRepository = Depends(get_repo),
        actor: Actor = Depends(get_actor),
    ) -> JSONResponse:
        action = repo.complete_action(defect_id, action_id, actor=actor)
        return JSONResponse(action.to_dict())

    @router.post("/defects/{defect_id}/attachments", status_code=201)
    async def api_add_attachment(
        defect_id: str,
        request: Request,
        repo: DefectRepository = Depends(get_repo),
        actor: Actor = Depends(get_actor),
    ) -> JSONResponse:
        body = await _parse_json_body(request)
        label = body.get("label")
        if label is not None and not isinstance(label, str):
            raise BadRequest("label must be a string")
        attachment = repo.add_attachment(
            defect_id,
            type=_require_str(body, "type"),
            filename=_require_str(body, "filename"),
            uri=_require_str(body, "uri"),
            label=label,
            actor=actor,
        )
        return JSONResponse(attachment.to_dict(), status_code=201)

    @router.get("/defects/{defect_id}/history")
    async def api_history(defect_id: str, repo: DefectRepository = Depends(get_repo)) -> JSONResponse:
        return JSONResponse([h.to_dict() for h in repo.history(defect_id)])

    @router.get("/resolve")
    async def api_resolve(ref: str = "", repo: DefectRepository = Depends(get_repo)) -> JSONResponse:
        defect = repo.resolve(ref)
        if defect is None:
            raise NotFound(ref)
        return JSONResponse({"id": defect.id, "code": defect.code})

    @router.get("/summary")
    async def api_summary(repo: DefectRepository = Depends(get_repo)) -> JSONResponse:
        return JSONResponse(repo.summary())

    @router.get("/settings")
    async def api_get_settings(repo: DefectRepository = Depends(get_repo)) -> JSONResponse:
        return JSONResponse(repo.get_settings().to_dict())

    @router.patch("/settings")
    async def api_update_settings(
        request: Request,
        repo: DefectRepository = Depends(get_repo),
        actor: Actor = Depends(get_actor),
    ) -> JSONResponse:
        body = await _parse_json_body(request)
        return JSONResponse(repo.update_settings(body, actor=actor).to_dict())

    @router.get("/outbox")
    async def api_outbox(repo: DefectRepository = Depends(get_repo)) -> JSONResponse:
        entries = repo.db.list_outbox()
        return JSONResponse({"pending": len(entries), "entries": entries})

    @router.post("/sync")
    async def api_sync(request: Request) -> JSONResponse:
        processor: SyncProcessor | None = request.app.state.processor
        if processor is None:
            return _error_response("No remote configured", "SYNC_UNAVAILABLE", 503)
        result = await processor.flush()
        return JSONResponse(result)

    return router


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------


async def _not_found_handler(request: Request, exc: Exception) -> JSONResponse:
    return _error_response(str(exc), "NOT_FOUND", 404)


async def _validation_handler(request: Request, exc: Exception) -> JSONResponse:
    reasons = exc.reasons if isinstance(exc, ValidationFailed) else [str(exc)]
    return _error_response(str(exc), "VALIDATION_ERROR", 422, {"reasons": reasons})


async def _permission_handler(request: Request, exc: Exception) -> JSONResponse:
    details = {"role": exc.role, "capability": exc.capability} if isinstance(exc, PermissionDenied) else {}
    return _error_response(str(exc), "PERMISSION_DENIED", 403, details)


async def _bad_request_handler(request: Request, exc: Exception) -> JSONResponse:
    return _error_response(str(exc), "BAD_REQUEST", 400)


def create_app(
    repo: DefectRepository,
    *,
    processor: SyncProcessor | None = None,
    sync_interval: float | None = None,
) -> FastAPI:
    """Create the FastAPI application over an injected repository.

    With both *processor* and *sync_interval*, a background task flushes the
    outbox every *sync_interval* seconds while the app is running.
    """

    @contextlib.asynccontextmanager
    async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
        if processor is None or not sync_interval:
            yield
            return
        stop = asyncio.Event()
        task = asyncio.create_task(processor.run(interval=sync_interval, stop_event=stop))
        try:
            yield
        finally:
            stop.set()
            await task

    app = FastAPI(title="Faultline", docs_url=None, redoc_url=None, lifespan=_lifespan)
    app.state.repo = repo
    app.state.processor = processor

    app.add_exception_handler(NotFound, _not_found_handler)
    app.add_exception_handler(ValidationFailed, _validation_handler)
    app.add_exception_handler(PermissionDenied, _permission_handler)
    app.add_exception_handler(BadRequest, _bad_request_handler)

    app.include_router(create_router(), prefix="/api")
    return app


def main(host: str = "127.0.0.1", port: int = DEFAULT_PORT) -> None:
    """Serve the local project's API, syncing in the background when a remote is configured."""
    import uvicorn

    faultline_dir = find_faultline_root()
    setup_logging(faultline_dir)
    config = read_config(faultline_dir)
    db = FaultlineDB(faultline_dir / DB_FILENAME, id_prefix=config.get("id_prefix", "def"), check_same_thread=False)
    db.initialize()
    repo = DefectRepository(db, code_prefix=config.get("code_prefix", "DEF"), sequence=config.get("sequence", "defect"))

    options = load_sync_options(faultline_dir)
    processor = None
    if options.remote_url:
        remote = HttpRemote(options.remote_url, timeout=options.timeout)
        processor = SyncProcessor(db, remote, max_retries=options.max_retries, timeout=options.timeout)

    app = create_app(repo, processor=processor, sync_interval=30.0 if processor else None)
    print(f"Faultline API: http://{host}:{port}/api")
    try:
        uvicorn.run(app, host=host, port=port, log_level="warning")
    finally:
        db.close()
