"""
Peer sync endpoints.

Permissions:
    Every route requires the peer auth headers (`X-Node-ID`,
    `X-Registration-Hash`). The check runs before the body is read.

Behavior:
    Handlers only parse and map errors. Snapshot, restore and session work
    lives in `backend.fullsync` and runs in the threadpool (child processes
    and psycopg calls block).
"""
from __future__ import annotations

import base64
import logging
from typing import Any, Optional

from fastapi import APIRouter, BackgroundTasks, Request
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.background import BackgroundTask
from starlette.concurrency import run_in_threadpool

from backend.fullsync.auth import NODE_ID_HEADER, REGISTRATION_HASH_HEADER, verify_peer_headers
from backend.fullsync.config import SyncConfig, load_sync_config
from backend.fullsync.errors import (
    ConfigurationError,
    ExternalToolError,
    InvalidRequestError,
    PeerAuthError,
    SessionNotFoundError,
    SnapshotNotFoundError,
    SyncError,
    TransportError,
)
from backend.fullsync.orchestrator import FullSyncOrchestrator
from backend.fullsync.peer_service import PeerService
from backend.fullsync.sessions import SyncSession, build_session_store
from backend.fullsync.snapshots import iter_file

logger = logging.getLogger("peersync.web")

sync_router = APIRouter(prefix="/sync", tags=["Sync"])

OCTET_STREAM = "application/octet-stream"

_CONFIG: Optional[SyncConfig] = None
_SERVICE: Optional[PeerService] = None
_ORCHESTRATOR: Optional[FullSyncOrchestrator] = None


def _get_config() -> SyncConfig:
    global _CONFIG
    if _CONFIG is None:
        _CONFIG = load_sync_config()
    return _CONFIG


def _get_service() -> PeerService:
    global _SERVICE
    if _SERVICE is None:
        _SERVICE = PeerService(_get_config())
    return _SERVICE


def _get_orchestrator() -> FullSyncOrchestrator:
    global _ORCHESTRATOR
    if _ORCHESTRATOR is None:
        config = _get_config()
        _ORCHESTRATOR = FullSyncOrchestrator(config, build_session_store(config))
    return _ORCHESTRATOR


def configure(
    config: Optional[SyncConfig] = None,
    *,
    service: Optional[PeerService] = None,
    orchestrator: Optional[FullSyncOrchestrator] = None,
) -> None:
    """Swap the node's config and collaborators (tests, embedding). `None` resets to lazy defaults."""
    global _CONFIG, _SERVICE, _ORCHESTRATOR
    _CONFIG = config
    _SERVICE = service
    _ORCHESTRATOR = orchestrator


def _private_response(body: dict, *, status_code: int = 200, headers: Optional[dict] = None) -> JSONResponse:
    merged = {"Cache-Control": "private, no-store"}
    if headers:
        merged.update(headers)
    return JSONResponse(body, status_code=status_code, headers=merged)


def _error_response(exc: Exception, *, failure: str = "sync_failed") -> JSONResponse:
    """Map a sync error to `{"error": <code>, "detail": <message>}`; auth errors carry only the code."""
    if isinstance(exc, PeerAuthError):
        return _private_response({"error": exc.code}, status_code=exc.status_code)
    if isinstance(exc, InvalidRequestError):
        return _private_response({"error": "invalid_request", "detail": str(exc)}, status_code=400)
    if isinstance(exc, SnapshotNotFoundError):
        return _private_response({"error": "snapshot_not_found", "detail": str(exc)}, status_code=404)
    if isinstance(exc, SessionNotFoundError):
        return _private_response({"error": "session_not_found", "detail": str(exc)}, status_code=404)
    if isinstance(exc, TransportError):
        return _private_response({"error": "transport_failed", "detail": str(exc)}, status_code=502)
    if isinstance(exc, ConfigurationError):
        logger.error("sync endpoint misconfigured: %s", exc)
        return _private_response({"error": "sync_not_configured"}, status_code=500)
    if isinstance(exc, ExternalToolError):
        logger.error("%s failed: %s", exc.tool, exc)
    else:
        logger.error("sync operation failed (%s): %s", failure, exc)
    return _private_response({"error": failure, "detail": str(exc)}, status_code=500)


def _authenticate(request: Request) -> Optional[JSONResponse]:
    try:
        verify_peer_headers(
            request.headers.get(NODE_ID_HEADER),
            request.headers.get(REGISTRATION_HASH_HEADER),
            _get_config(),
        )
    except SyncError as exc:
        return _error_response(exc)
    return None


async def _json_body(request: Request) -> dict:
    try:
        body: Any = await request.json()
    except ValueError as exc:
        raise InvalidRequestError("Invalid JSON body") from exc
    if not isinstance(body, dict):
        raise InvalidRequestError("Invalid JSON body")
    return body


@sync_router.post("/receive-backup")
async def receive_backup(request: Request):
    """Store a snapshot sent by a pushing peer (JSON/base64 or raw stream)."""
    error = _authenticate(request)
    if error:
        return error
    service = _get_service()
    try:
        content_type = (request.headers.get("content-type") or "").split(";")[0].strip().lower()
        if content_type == OCTET_STREAM:
            sink = await run_in_threadpool(
                service.begin_upload,
                request.query_params.get("sessionId"),
                request.query_params.get("filename"),
            )
            try:
                async for chunk in request.stream():
                    await run_in_threadpool(sink.write, chunk)
            except BaseException:
                sink.abort()
                raise
            stored = await run_in_threadpool(sink.commit)
        else:
            payload = await _json_body(request)
            stored = await run_in_threadpool(service.accept_json, payload)
    except SyncError as exc:
        return _error_response(exc, failure="receive_failed")
    return _private_response({"success": True, **stored.to_dict()})


@sync_router.post("/restore-backup")
async def restore_backup(request: Request):
    """Rewrite a received snapshot to upserts and restore it; files are removed afterwards."""
    error = _authenticate(request)
    if error:
        return error
    try:
        payload = await _json_body(request)
        session_id = payload.get("sessionId")
        result = await run_in_threadpool(_get_service().restore_received, session_id, payload.get("filename"))
    except (SyncError, OSError) as exc:
        return _error_response(exc, failure="restore_failed")
    return _private_response(
        {
            "success": True,
            "message": "Backup restored successfully",
            "sessionId": session_id,
            "statementsFailed": result.statements_failed,
        }
    )


@sync_router.post("/initiate-backup")
async def initiate_backup(request: Request):
    """Produce a snapshot for a pulling peer."""
    error = _authenticate(request)
    if error:
        return error
    try:
        payload = await _json_body(request)
        stored = await run_in_threadpool(_get_service().produce_backup, payload.get("sessionId"))
    except (SyncError, OSError) as exc:
        return _error_response(exc, failure="backup_failed")
    return _private_response({"success": True, **stored.to_dict()})


@sync_router.get("/download-backup")
async def download_backup(request: Request):
    """Serve a prepared snapshot; the session's files are deleted once sent."""
    error = _authenticate(request)
    if error:
        return error
    service = _get_service()
    try:
        stored = await run_in_threadpool(service.open_download, request.query_params.get("sessionId"))
    except SyncError as exc:
        return _error_response(exc)

    accept = (request.headers.get("accept") or "").lower()
    if OCTET_STREAM in accept:
        return StreamingResponse(
            iter_file(stored.path),
            media_type=OCTET_STREAM,
            headers={
                "Cache-Control": "private, no-store",
                "Content-Length": str(stored.size),
                "Content-Disposition": f'attachment; filename="{stored.filename}"',
                "X-Backup-Size": str(stored.size),
                "X-Backup-SHA256": stored.sha256,
            },
            background=BackgroundTask(service.release, stored.session_id),
        )

    try:
        data = await run_in_threadpool(stored.path.read_bytes)
    finally:
        await run_in_threadpool(service.release, stored.session_id)
    return _private_response(
        {"success": True, "backupContent": base64.b64encode(data).decode("ascii"), **stored.to_dict()}
    )


@sync_router.post("/release-backup")
async def release_backup(request: Request):
    """Drop a prepared snapshot that a pulling peer will not download."""
    error = _authenticate(request)
    if error:
        return error
    try:
        payload = await _json_body(request)
        session_id = await run_in_threadpool(_get_service().release, payload.get("sessionId"))
    except SyncError as exc:
        return _error_response(exc)
    return _private_response({"success": True, "sessionId": session_id})


def _run_session(orchestrator: FullSyncOrchestrator, session: SyncSession) -> None:
    try:
        orchestrator.run(session)
    except Exception as exc:
        # Outcome is persisted on the session (FAILED + errorMessage).
        logger.warning("sync session %s failed: %s", session.session_id, exc)


@sync_router.post("/sessions")
async def start_session(request: Request, background_tasks: BackgroundTasks):
    """Start a PUSH or PULL against `peerUrl`; progress is polled via GET /sync/sessions/{id}."""
    error = _authenticate(request)
    if error:
        return error
    orchestrator = _get_orchestrator()
    try:
        payload = await _json_body(request)
        direction = payload.get("direction")
        if not isinstance(direction, str):
            raise InvalidRequestError("Missing direction")
        session = await run_in_threadpool(
            orchestrator.start_session, direction, payload.get("peerUrl") or "", payload.get("sessionId")
        )
    except SyncError as exc:
        return _error_response(exc)
    background_tasks.add_task(_run_session, orchestrator, session)
    return _private_response(session.to_dict(), status_code=202)


@sync_router.get("/sessions/{session_id}")
async def get_session(request: Request, session_id: str):
    error = _authenticate(request)
    if error:
        return error
    try:
        session = await run_in_threadpool(_get_orchestrator().store.get, session_id)
    except SyncError as exc:
        return _error_response(exc)
    if session is None:
        return _error_response(SessionNotFoundError(f"Unknown session {session_id}"))
    return _private_response(session.to_dict())


__all__ = ["configure", "sync_router"]
