from __future__ import annotations

from typing import Any, Dict, List, Optional

from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from ..domain.errors import (
    AlreadyAnalyzed,
    BatchAlreadyRunning,
    CardDigitizerError,
    ExtractionFailed,
    InvalidImage,
    NotAnalyzed,
    RecordNotFound,
    RemoteReadFailed,
    RemoteWriteFailed,
    StorageCorrupt,
)
from ..domain.models import Record
from ..logging import get_logger
from ..orchestrator.batch import BatchReconciler
from ..orchestrator.views import pending_analysis, pending_save, saved

LOG = get_logger("review-app")

_VIEWS = {
    "pending_analysis": pending_analysis,
    "pending_save": pending_save,
    "saved": saved,
    "all": list,
}

_STATUS_BY_ERROR = (
    (RecordNotFound, 404),
    (NotAnalyzed, 409),
    (AlreadyAnalyzed, 409),
    (InvalidImage, 422),
    (BatchAlreadyRunning, 409),
    (RemoteWriteFailed, 502),
    (RemoteReadFailed, 502),
    (ExtractionFailed, 502),
    (StorageCorrupt, 500),
)


def _http_error(exc: CardDigitizerError) -> HTTPException:
    for cls, status in _STATUS_BY_ERROR:
        if isinstance(exc, cls):
            return HTTPException(status_code=status, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


def record_json(record: Record, *, include_image: bool = False) -> Dict[str, Any]:
    """JSON shape for the review UI; data URLs are only sent on the detail route."""
    is_data_url = record.image_ref.startswith("data:")
    out: Dict[str, Any] = {
        "id": record.id,
        "lifecycle": record.lifecycle.value,
        "fields": dict(record.fields),
        "createdAt": record.created_at,
        "updatedAt": record.updated_at,
        "remoteId": record.remote_id,
        "imageRef": record.image_ref if include_image or not is_data_url else None,
    }
    return out


async def _json_body(request: Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Body must be JSON") from exc
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Body must be a JSON object")
    return body


def create_app(reconciler: BatchReconciler, *, allow_origins: Optional[List[str]] = None) -> Starlette:
    """Create a Starlette app exposing the review and batch operations of one reconciler."""

    async def health(_: Request) -> JSONResponse:
        return JSONResponse({"status": "ok", "store": reconciler.store.location})

    async def list_records(request: Request) -> JSONResponse:
        view = request.query_params.get("view", "pending_save")
        selector = _VIEWS.get(view)
        if selector is None:
            raise HTTPException(status_code=400, detail=f"Unknown view: {view}")
        def _load():
            return reconciler.store.load_all(), reconciler.views.counts()

        try:
            records, counts = await run_in_threadpool(_load)
        except CardDigitizerError as exc:
            raise _http_error(exc) from exc
        items = [record_json(r) for r in selector(records)]
        return JSONResponse({"view": view, "items": items, "counts": counts})

    async def record_detail(request: Request) -> JSONResponse:
        try:
            record = await run_in_threadpool(reconciler.store.get, request.path_params["record_id"])
        except CardDigitizerError as exc:
            raise _http_error(exc) from exc
        return JSONResponse(record_json(record, include_image=True))

    async def edit_record(request: Request) -> JSONResponse:
        changes = await _json_body(request)
        if isinstance(changes.get("fields"), dict):
            changes = changes["fields"]
        try:
            updated = await run_in_threadpool(reconciler.edit_record, request.path_params["record_id"], changes)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except CardDigitizerError as exc:
            raise _http_error(exc) from exc
        return JSONResponse(record_json(updated))

    async def save_record(request: Request) -> JSONResponse:
        try:
            result = await run_in_threadpool(reconciler.save_record_to_remote, request.path_params["record_id"])
        except CardDigitizerError as exc:
            raise _http_error(exc) from exc
        return JSONResponse(
            {
                "id": result.record_id,
                "saved": result.saved,
                "already_saved": result.already_saved,
                "remoteId": result.remote_id,
            }
        )

    async def delete_record(request: Request) -> JSONResponse:
        record_id = request.path_params["record_id"]
        remote = request.query_params.get("remote", "").lower() in {"1", "true", "yes"}
        try:
            await run_in_threadpool(reconciler.store.get, record_id)
            removed = await run_in_threadpool(reconciler.delete_records, [record_id], remote=remote)
        except CardDigitizerError as exc:
            raise _http_error(exc) from exc
        return JSONResponse({"removed": removed})

    async def batch_run(_: Request) -> JSONResponse:
        if reconciler.is_running:
            raise HTTPException(status_code=409, detail="A batch run is already in progress")
        try:
            result = await run_in_threadpool(reconciler.run_batch_extraction)
        except CardDigitizerError as exc:
            raise _http_error(exc) from exc
        return JSONResponse(result.summary(), status_code=200 if result.ok else 502)

    async def analyze_record(request: Request) -> JSONResponse:
        if reconciler.is_running:
            raise HTTPException(status_code=409, detail="A batch run is already in progress")
        try:
            updated = await run_in_threadpool(reconciler.analyze_record, request.path_params["record_id"])
        except CardDigitizerError as exc:
            raise _http_error(exc) from exc
        return JSONResponse(record_json(updated))

    async def remote_list(request: Request) -> JSONResponse:
        try:
            rows = await run_in_threadpool(
                reconciler.list_remote_rows,
                date_from=request.query_params.get("from") or None,
                date_to=request.query_params.get("to") or None,
            )
        except CardDigitizerError as exc:
            raise _http_error(exc) from exc
        return JSONResponse({"items": rows})

    async def remote_edit(request: Request) -> JSONResponse:
        changes = await _json_body(request)
        if isinstance(changes.get("fields"), dict):
            changes = changes["fields"]
        try:
            out = await run_in_threadpool(reconciler.update_remote_row, request.path_params["remote_id"], changes)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except CardDigitizerError as exc:
            raise _http_error(exc) from exc
        return JSONResponse(out)

    async def remote_delete(request: Request) -> JSONResponse:
        try:
            deleted = await run_in_threadpool(reconciler.delete_remote_rows, [request.path_params["remote_id"]])
        except CardDigitizerError as exc:
            raise _http_error(exc) from exc
        return JSONResponse({"deleted": deleted})

    async def remote_bulk_delete(request: Request) -> JSONResponse:
        body = await _json_body(request)
        ids = body.get("ids")
        if ids is not None and not isinstance(ids, list):
            raise HTTPException(status_code=400, detail="ids must be a list")
        try:
            deleted = await run_in_threadpool(
                reconciler.delete_remote_rows,
                ids,
                date_from=body.get("from"),
                date_to=body.get("to"),
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except CardDigitizerError as exc:
            raise _http_error(exc) from exc
        return JSONResponse({"deleted": deleted})

    async def batch_cancel(_: Request) -> JSONResponse:
        reconciler.cancel()
        return JSONResponse({"cancel_requested": True, "running": reconciler.is_running})

    async def batch_status(_: Request) -> JSONResponse:
        return JSONResponse(reconciler.status())

    async def schema(_: Request) -> JSONResponse:
        return JSONResponse(
            {"timestamp_key": reconciler.schema.timestamp_key, "fields": reconciler.schema.as_list()}
        )

    async def http_exception(_: Request, exc: HTTPException) -> JSONResponse:
        return JSONResponse({"detail": exc.detail}, status_code=exc.status_code)

    routes = [
        Route("/api/health", health, methods=["GET"]),
        Route("/api/records", list_records, methods=["GET"]),
        Route("/api/records/{record_id}", record_detail, methods=["GET"]),
        Route("/api/records/{record_id}", edit_record, methods=["PATCH"]),
        Route("/api/records/{record_id}", delete_record, methods=["DELETE"]),
        Route("/api/records/{record_id}/save", save_record, methods=["POST"]),
        Route("/api/records/{record_id}/analyze", analyze_record, methods=["POST"]),
        Route("/api/batch/run", batch_run, methods=["POST"]),
        Route("/api/batch/cancel", batch_cancel, methods=["POST"]),
        Route("/api/batch/status", batch_status, methods=["GET"]),
        Route("/api/remote", remote_list, methods=["GET"]),
        Route("/api/remote/delete", remote_bulk_delete, methods=["POST"]),
        Route("/api/remote/{remote_id}", remote_edit, methods=["PATCH"]),
        Route("/api/remote/{remote_id}", remote_delete, methods=["DELETE"]),
        Route("/api/schema", schema, methods=["GET"]),
    ]

    app = Starlette(debug=False, routes=routes, exception_handlers={HTTPException: http_exception})

    origins = allow_origins or ["http://localhost:5173", "http://127.0.0.1:5173"]
    if "*" in origins:
        cors_allow_origins = ["*"]
    else:
        cors_allow_origins = origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    LOG.info(f"Review API ready for store {reconciler.store.location}")
    return app


__all__ = ["create_app", "record_json"]
