"""Starlette HTTP surface for jobs, selections, backups and the rollback ledger."""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse, Response, StreamingResponse
from starlette.routing import Route

from logsource_retire import __version__
from logsource_retire.app import AppContext, get_app_context
from logsource_retire.broadcast.broadcaster import format_sse
from logsource_retire.domain.errors import (
    BackupNotAcknowledged,
    InvalidParameters,
    LedgerIntegrityError,
    NotFound,
    PartialRevertFailure,
    RetirementError,
)
from logsource_retire.domain.models import JobMode, Selection
from logsource_retire.ledger.models import PreviewPage
from logsource_retire.reports import export_csv, render_text_report
from logsource_retire.utils.masking import redact_sensitive_fields

logger = logging.getLogger(__name__)

_KEEPALIVE_SECONDS = 15.0


def _status_for(exc: RetirementError) -> int:
    if isinstance(exc, NotFound):
        return 404
    if isinstance(exc, (BackupNotAcknowledged, LedgerIntegrityError)):
        return 409
    if isinstance(exc, InvalidParameters):
        return 400
    if exc.code == "empty_change_set":
        return 400
    return 502


async def _retirement_error_handler(request: Request, exc: Exception) -> Response:
    assert isinstance(exc, RetirementError)
    status = _status_for(exc)
    content: dict[str, Any] = {"error": exc.code, "message": str(exc)}
    if isinstance(exc, PartialRevertFailure):
        content["report"] = exc.report.to_dict()
    if status >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status, content=content)


async def _json_body(request: Request, required: bool = True) -> dict[str, Any]:
    raw = await request.body()
    if not raw.strip():
        if required:
            raise InvalidParameters("Request body must be a JSON object")
        return {}
    try:
        body = json.loads(raw)
    except ValueError as exc:
        raise InvalidParameters("Request body is not valid JSON") from exc
    if not isinstance(body, dict):
        raise InvalidParameters("Request body must be a JSON object")
    return body


def _int_param(value: Any, name: str, default: int) -> int:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        raise InvalidParameters(f"{name} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise InvalidParameters(f"{name} must be an integer") from exc


def create_http_app(context: AppContext | None = None) -> Starlette:
    """Create the HTTP application around an application context."""
    ctx = context or get_app_context()
    settings = ctx.settings
    orchestrator = ctx.orchestrator
    ledger = ctx.ledger

    async def health_handler(request: Request) -> Response:
        return JSONResponse({"status": "healthy", "version": __version__})

    async def analyze_handler(request: Request) -> Response:
        body = await _json_body(request)
        job_id = orchestrator.create_job(JobMode.ANALYZE, body)
        return JSONResponse({"jobId": job_id, "status": "pending"}, status_code=202)

    async def apply_handler(request: Request) -> Response:
        body = await _json_body(request)
        job_id = orchestrator.create_job(JobMode.APPLY, body)
        return JSONResponse({"jobId": job_id, "status": "pending"}, status_code=202)

    async def list_jobs_handler(request: Request) -> Response:
        return JSONResponse([job.snapshot() for job in orchestrator.list_jobs()])

    async def job_handler(request: Request) -> Response:
        job = orchestrator.get_job(request.path_params["job_id"])
        return JSONResponse(job.snapshot())

    async def export_csv_handler(request: Request) -> Response:
        job = orchestrator.get_job(request.path_params["job_id"])
        return Response(
            export_csv(job),
            media_type="text/csv",
            headers={
                "Content-Disposition": f'attachment; filename="retirement_results_{job.job_id}.csv"'
            },
        )

    async def report_handler(request: Request) -> Response:
        job = orchestrator.get_job(request.path_params["job_id"])
        return PlainTextResponse(
            render_text_report(job),
            headers={
                "Content-Disposition": f'attachment; filename="retirement_report_{job.job_id}.txt"'
            },
        )

    async def session_job_handler(request: Request) -> Response:
        job = orchestrator.current_job(request.path_params["session_id"])
        return JSONResponse(job.snapshot())

    async def selection_preview_handler(request: Request) -> Response:
        body = await _json_body(request)
        host_ids = body.get("hostIds") or []
        item_ids = body.get("itemIds") or []
        if not isinstance(host_ids, list) or not isinstance(item_ids, list):
            raise InvalidParameters("hostIds and itemIds must be lists")
        analysis_job_id = body.get("analysisJobId")
        if analysis_job_id is not None and not isinstance(analysis_job_id, str):
            raise InvalidParameters("analysisJobId must be a string")
        summary = orchestrator.preview_selection(
            Selection.of(host_ids, item_ids), analysis_job_id
        )
        return JSONResponse(summary)

    async def backup_handler(request: Request) -> Response:
        body = await _json_body(request)
        logger.info("Backup requested: %s", redact_sensitive_fields(body))
        password = body.get("password")
        location = body.get("location")
        if not isinstance(password, str) or not isinstance(location, str):
            raise InvalidParameters("password and location are required")
        backup_file = await ctx.backup.perform_backup(password, location)
        return JSONResponse({"status": "completed", "backupFile": backup_file})

    async def rollback_list_handler(request: Request) -> Response:
        summaries = await asyncio.to_thread(ledger.list)
        return JSONResponse([summary.to_dict() for summary in summaries])

    async def rollback_get_handler(request: Request) -> Response:
        rollback_id = request.path_params["rollback_id"]
        point = await asyncio.to_thread(ledger.get, rollback_id)
        executions = await asyncio.to_thread(ledger.executions, rollback_id)
        data = point.to_dict()
        data["executions"] = [record.to_dict() for record in executions]
        return JSONResponse(data)

    async def rollback_preview_handler(request: Request) -> Response:
        limit = _int_param(request.query_params.get("limit"), "limit", 5)
        if limit < 0:
            raise InvalidParameters("limit must be >= 0")
        point = await asyncio.to_thread(ledger.preview, request.path_params["rollback_id"])
        return JSONResponse(PreviewPage.cap(point, limit).to_dict())

    async def rollback_execute_handler(request: Request) -> Response:
        body = await _json_body(request, required=False)
        actor = body.get("user") or settings.jobs.default_actor
        if not isinstance(actor, str):
            raise InvalidParameters("user must be a string")
        report = await ledger.execute(
            request.path_params["rollback_id"], ctx.collaborator, actor=actor
        )
        return JSONResponse(report.to_dict())

    async def rollback_delete_handler(request: Request) -> Response:
        rollback_id = request.path_params["rollback_id"]
        await asyncio.to_thread(ledger.delete, rollback_id)
        return JSONResponse({"id": rollback_id, "deleted": True})

    async def rollback_cleanup_handler(request: Request) -> Response:
        body = await _json_body(request, required=False)
        retention_days = _int_param(
            body.get("retentionDays"), "retentionDays", settings.rollback.retention_days
        )
        max_points = _int_param(body.get("maxPoints"), "maxPoints", settings.rollback.max_points)
        deleted = await asyncio.to_thread(ledger.cleanup, retention_days, max_points)
        return JSONResponse({"deleted": deleted, "count": len(deleted)})

    async def events_handler(request: Request) -> Response:
        subscription = ctx.broadcaster.subscribe()

        async def stream() -> AsyncIterator[str]:
            try:
                yield ": connected\n\n"
                while not await request.is_disconnected():
                    try:
                        snapshot = await subscription.get(timeout=_KEEPALIVE_SECONDS)
                    except asyncio.TimeoutError:
                        yield ": keepalive\n\n"
                        continue
                    yield format_sse(snapshot)
            finally:
                subscription.close()

        return StreamingResponse(
            stream(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    routes = [
        Route("/health", endpoint=health_handler, methods=["GET"]),
        Route("/api/jobs", endpoint=list_jobs_handler, methods=["GET"]),
        Route("/api/jobs/analyze", endpoint=analyze_handler, methods=["POST"]),
        Route("/api/jobs/apply", endpoint=apply_handler, methods=["POST"]),
        Route("/api/jobs/{job_id}", endpoint=job_handler, methods=["GET"]),
        Route("/api/jobs/{job_id}/export.csv", endpoint=export_csv_handler, methods=["GET"]),
        Route("/api/jobs/{job_id}/report.txt", endpoint=report_handler, methods=["GET"]),
        Route(
            "/api/sessions/{session_id}/job", endpoint=session_job_handler, methods=["GET"]
        ),
        Route("/api/selection/preview", endpoint=selection_preview_handler, methods=["POST"]),
        Route("/api/backup", endpoint=backup_handler, methods=["POST"]),
        Route("/api/rollback", endpoint=rollback_list_handler, methods=["GET"]),
        Route("/api/rollback/cleanup", endpoint=rollback_cleanup_handler, methods=["POST"]),
        Route("/api/rollback/{rollback_id}", endpoint=rollback_get_handler, methods=["GET"]),
        Route(
            "/api/rollback/{rollback_id}", endpoint=rollback_delete_handler, methods=["DELETE"]
        ),
        Route(
            "/api/rollback/{rollback_id}/preview",
            endpoint=rollback_preview_handler,
            methods=["GET"],
        ),
        Route(
            "/api/rollback/{rollback_id}/execute",
            endpoint=rollback_execute_handler,
            methods=["POST"],
        ),
        Route("/api/events", endpoint=events_handler, methods=["GET"]),
    ]

    middleware: list[Middleware] = []
    if settings.server.enable_cors and settings.server.allowed_origins:
        from starlette.middleware.cors import CORSMiddleware

        middleware.append(
            Middleware(
                CORSMiddleware,
                allow_origins=list(settings.server.allowed_origins),
                allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
                allow_headers=["Content-Type", "Accept"],
            )
        )

    @asynccontextmanager
    async def lifespan(app: Starlette):
        logger.info("Starting retirement service v%s", __version__)
        try:
            yield
        finally:
            logger.info("Stopping retirement service; waiting for running jobs...")
            await orchestrator.drain()

    return Starlette(
        routes=routes,
        middleware=middleware,
        lifespan=lifespan,
        exception_handlers={RetirementError: _retirement_error_handler},
    )
