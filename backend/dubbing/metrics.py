from __future__ import annotations

import time
from typing import Callable

from fastapi import Request
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.responses import Response

HTTP_REQUESTS_TOTAL = Counter(
    'dubbing_http_requests_total',
    'Total HTTP requests',
    ['method', 'path', 'status_code'],
)
HTTP_REQUEST_DURATION = Histogram(
    'dubbing_http_request_duration_seconds',
    'HTTP request duration seconds',
    ['method', 'path'],
)
RATE_LIMITED_TOTAL = Counter(
    'dubbing_rate_limited_requests_total',
    'Requests rejected by the per-client rate limiter',
)
JOBS_TOTAL = Counter(
    'dubbing_jobs_total',
    'Jobs that reached a terminal status',
    ['status'],
)
LANGUAGE_RESULTS_TOTAL = Counter(
    'dubbing_language_results_total',
    'Per-language results by terminal status',
    ['status'],
)
WEBHOOK_DELIVERIES_TOTAL = Counter(
    'dubbing_webhook_deliveries_total',
    'Webhook delivery outcomes',
    ['outcome'],
)
JOB_DURATION = Histogram(
    'dubbing_job_duration_seconds',
    'Wall time from job acceptance to terminal status',
    buckets=(5, 15, 30, 60, 120, 240, 480, 900),
)


def _normalize_path(path: str) -> str:
    if not path:
        return '/'
    if path.startswith('/v1/status/'):
        return '/v1/status/{job_id}'
    if path.startswith('/v1/jobs/') and path.endswith('/cancel'):
        return '/v1/jobs/{job_id}/cancel'
    return path


async def metrics_middleware(request: Request, call_next: Callable):
    start = time.perf_counter()
    path = _normalize_path(request.url.path)
    response = await call_next(request)
    duration = max(0.0, time.perf_counter() - start)
    HTTP_REQUEST_DURATION.labels(method=request.method, path=path).observe(duration)
    HTTP_REQUESTS_TOTAL.labels(method=request.method, path=path, status_code=str(response.status_code)).inc()
    return response


def metrics_response() -> Response:
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
