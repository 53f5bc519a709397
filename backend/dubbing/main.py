from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

from fastapi import FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from dubbing import metrics
from dubbing.config import Settings, configure_logging, get_settings
from dubbing.errors import CapacityExceededError, InvalidRequestError, JobNotFoundError
from dubbing.job_store import JobStore
from dubbing.notifier import WebhookNotifier
from dubbing.pipeline_runner import DubbingCoordinator, PipelineCollaborators
from dubbing.rate_limiter import RateLimiter
from dubbing.schemas import CancelResponse, HealthResponse, JobCreateResponse, JobStatusResponse, TranslateRequest
from dubbing.validation import validate_translate_request


logger = logging.getLogger(__name__)


def client_identifier(request: Request) -> str:
    forwarded = str(request.headers.get("x-forwarded-for") or "").strip()
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = str(request.headers.get("x-real-ip") or "").strip()
    if real_ip:
        return real_ip
    if request.client is not None and request.client.host:
        return request.client.host
    return "unknown"


def _timestamp() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def create_app(
    settings: Settings | None = None,
    *,
    store: JobStore | None = None,
    rate_limiter: RateLimiter | None = None,
    coordinator: DubbingCoordinator | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)
    if store is None:
        store = coordinator.store if coordinator is not None else JobStore(settings.job_ttl_seconds)
    if rate_limiter is None:
        rate_limiter = RateLimiter(settings.rate_limit_rpm)
    if coordinator is None:
        notifier = WebhookNotifier(deadline_seconds=settings.webhook_timeout_seconds)
        coordinator = DubbingCoordinator(settings, store, PipelineCollaborators.from_settings(settings), notifier)

    app = FastAPI(title="Video Dubbing Backend", version=settings.app_version)
    app.state.settings = settings
    app.state.store = store
    app.state.rate_limiter = rate_limiter
    app.state.coordinator = coordinator
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list,
        allow_credentials="*" not in settings.cors_origin_list,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )
    if settings.enable_metrics:
        app.middleware("http")(metrics.metrics_middleware)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception("[DEBUG] unhandled request error path=%s", request.url.path)
        return JSONResponse(status_code=500, content={"detail": "internal server error"})

    @app.on_event("startup")
    def startup_event() -> None:
        store.start()
        rate_limiter.start()
        logger.info(
            "[DEBUG] service started env=%s languages=%s max_jobs=%s max_translations=%s",
            settings.app_env,
            ",".join(settings.supported_language_list),
            settings.max_concurrent_jobs,
            settings.max_concurrent_translations,
        )

    @app.on_event("shutdown")
    def shutdown_event() -> None:
        coordinator.shutdown()
        rate_limiter.stop()
        store.stop()
        logger.info("[DEBUG] service stopped")

    async def translate(request: Request) -> JSONResponse:
        if not rate_limiter.allow(client_identifier(request)):
            metrics.RATE_LIMITED_TOTAL.inc()
            raise HTTPException(status_code=429, detail="rate limit exceeded")
        body = await request.body()
        if len(body) > settings.max_request_body_size_bytes:
            raise HTTPException(status_code=413, detail="request body too large")
        try:
            parsed = TranslateRequest.model_validate(json.loads(body or b"null"))
        except (ValueError, ValidationError) as exc:
            raise HTTPException(status_code=400, detail=f"invalid request body: {exc}") from exc
        # Webhook DNS checks and thread startup block; keep them off the event loop.
        try:
            payload = await run_in_threadpool(validate_translate_request, parsed, settings)
        except InvalidRequestError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        try:
            job_id = await run_in_threadpool(coordinator.submit, payload)
        except CapacityExceededError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        response = JobCreateResponse(job_id=job_id, status="processing")
        return JSONResponse(status_code=202, content=response.model_dump(by_alias=True))

    app.add_api_route("/v1/translate", translate, methods=["POST"], status_code=202)
    app.add_api_route("/translate", translate, methods=["POST"], status_code=202, include_in_schema=False)

    @app.get("/v1/status/{job_id}")
    def job_status(job_id: str):
        try:
            record = store.get(job_id)
        except JobNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return JobStatusResponse.from_record(record).model_dump(by_alias=True)

    @app.post("/v1/jobs/{job_id}/cancel", status_code=202)
    def cancel_job(job_id: str):
        try:
            record = store.get(job_id)
            if record.terminal:
                raise HTTPException(status_code=409, detail=f"job already {record.status}")
            cancelled = coordinator.cancel(job_id)
        except JobNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return CancelResponse(job_id=job_id, status=record.status, cancelled=cancelled).model_dump(by_alias=True)

    @app.get("/health")
    @app.get("/health/live")
    def health() -> HealthResponse:
        return HealthResponse(status="ok", timestamp=_timestamp(), version=settings.app_version)

    @app.get("/health/ready")
    def ready() -> HealthResponse:
        status = "ready" if coordinator.active_jobs < settings.max_concurrent_jobs else "busy"
        return HealthResponse(status=status, timestamp=_timestamp(), version=settings.app_version)

    if settings.enable_metrics:

        @app.get("/metrics", include_in_schema=False)
        def prometheus_metrics():
            return metrics.metrics_response()

    return app


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port, log_level=settings.log_level)
