"""Flask application exposing the image generation jobs over HTTP."""
from __future__ import annotations

import uuid
from typing import Any, Dict, Optional

from flask import Flask, g, jsonify, request
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from config import (
    CORS_ORIGINS,
    GENERATION_TIMEOUT_S,
    JOB_STORE_BACKEND,
    JOB_STORE_PATH,
)
from jobs import (
    InvalidArgument,
    JobListing,
    JobManager,
    NotFound,
    StoreUnavailable,
    build_store,
)
from observability.logger import bind_trace_id, clear_trace_id, get_logger
from observability.metrics import get_registry
from services.image_backend import build_backend

LOGGER = get_logger("imagejobs.api")

MAX_LIST_LIMIT = 500


class ApiError(Exception):
    """Exception translated into an HTTP error response."""

    def __init__(self, message: str, status_code: int = 400) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message


def build_manager() -> JobManager:
    store = build_store(JOB_STORE_BACKEND, path=JOB_STORE_PATH)
    return JobManager(store, build_backend())


def create_app(manager: Optional[JobManager] = None) -> Flask:
    app = Flask(__name__)
    if hasattr(app, "json"):
        app.json.ensure_ascii = False
    CORS(app, resources={r"/api/*": {"origins": CORS_ORIGINS}})

    job_manager = manager or build_manager()
    listing = JobListing(job_manager.store)
    app.extensions["job_manager"] = job_manager

    @app.before_request
    def _bind_request_trace() -> None:
        trace_id = request.headers.get("X-Trace-Id") or uuid.uuid4().hex
        g.trace_id = trace_id
        bind_trace_id(trace_id)

    @app.after_request
    def _append_trace(response):  # type: ignore[override]
        trace_id = getattr(g, "trace_id", None)
        if trace_id:
            response.headers.setdefault("X-Trace-Id", trace_id)
        return response

    @app.teardown_request
    def _teardown_trace(_exc):  # type: ignore[override]
        clear_trace_id()

    @app.errorhandler(ApiError)
    def _handle_api_error(exc: ApiError):  # type: ignore[override]
        LOGGER.warning("api_error", extra={"error": exc.message, "code": exc.status_code})
        return _error_response(exc.message, exc.status_code)

    @app.errorhandler(InvalidArgument)
    def _handle_invalid_argument(exc: InvalidArgument):  # type: ignore[override]
        return _error_response(str(exc), 400)

    @app.errorhandler(NotFound)
    def _handle_not_found(exc: NotFound):  # type: ignore[override]
        return _error_response("Image not found", 404)

    @app.errorhandler(StoreUnavailable)
    def _handle_store_unavailable(exc: StoreUnavailable):  # type: ignore[override]
        LOGGER.error("job_store_unavailable", extra={"error": str(exc)})
        return _error_response("Job store unavailable", 503)

    @app.errorhandler(404)
    def _handle_unknown_route(_exc):  # type: ignore[override]
        return _error_response("Endpoint not found", 404)

    @app.errorhandler(405)
    def _handle_bad_method(_exc):  # type: ignore[override]
        return _error_response("Method not allowed", 405)

    @app.errorhandler(Exception)
    def _handle_generic_error(exc: Exception):  # type: ignore[override]
        if isinstance(exc, HTTPException):
            return _error_response(exc.description or exc.name, exc.code or 500)
        LOGGER.exception("unhandled_error")
        return _error_response("Internal server error", 500)

    @app.get("/health")
    def health():
        return jsonify({"status": "healthy"})

    @app.get("/api/health")
    def api_health():
        counts = listing.counts()
        metrics_snapshot = get_registry().snapshot()
        return jsonify(
            {
                "ok": True,
                "jobs": counts,
                "in_flight": job_manager.in_flight(),
                "metrics": metrics_snapshot,
            }
        )

    @app.get("/api/images")
    def list_images():
        limit_raw = request.args.get("limit")
        limit = None
        if limit_raw not in (None, ""):
            limit = _safe_int(limit_raw, default=-1)
            if limit < 0:
                raise ApiError("limit must be a non-negative integer")
            limit = min(limit, MAX_LIST_LIMIT)
        jobs = listing.list(status=request.args.get("status"), limit=limit)
        return jsonify([job.to_dict() for job in jobs])

    @app.post("/api/images/generate")
    def generate_image():
        payload = _require_json(request)
        if "prompt" not in payload:
            raise ApiError("Invalid request: prompt is required")

        job = job_manager.submit(payload.get("prompt"), trace_id=getattr(g, "trace_id", None))

        sync_raw = payload.get("sync", request.args.get("sync"))
        if str(sync_raw).lower() in {"1", "true", "yes"}:
            finished = job_manager.wait(job.id, timeout=GENERATION_TIMEOUT_S)
            try:
                job = job_manager.get(job.id)
            except NotFound:
                raise ApiError("Image was deleted before generation finished", status_code=410) from None
            if finished and job.status.is_terminal:
                return jsonify(job.to_dict()), 200
        return jsonify(job.to_dict()), 202

    @app.get("/api/images/<job_id>")
    def get_image(job_id: str):
        return jsonify(job_manager.get(job_id).to_dict())

    @app.delete("/api/images/<job_id>")
    def delete_image(job_id: str):
        job_manager.delete(job_id)
        return jsonify({"message": "Image deleted successfully", "id": job_id})

    return app


def _error_response(message: str, status_code: int):
    trace_id = getattr(g, "trace_id", None)
    return (
        jsonify(
            {
                "error": {
                    "message": message,
                    "code": status_code,
                    "trace_id": trace_id,
                }
            }
        ),
        status_code,
    )


def _require_json(req) -> Dict[str, Any]:
    data = req.get_json(force=True, silent=True)
    if data is None:
        raise ApiError("Invalid JSON body")
    if not isinstance(data, dict):
        raise ApiError("Expected a JSON object")
    return data


def _safe_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default
