from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable

import requests

from dubbing import metrics
from dubbing.errors import NotificationError
from dubbing.job_store import STATUS_COMPLETED, STATUS_FAILED, JobRecord, serialize_result


logger = logging.getLogger(__name__)

_MAX_ATTEMPTS = 2
_BACKOFF_SECONDS = 1.0
_REQUEST_TIMEOUT_SECONDS = 5.0
_USER_AGENT = "dubbing-backend/1.0"


def event_for_status(status: str) -> str:
    if status == STATUS_FAILED:
        return "job.failed"
    if status == STATUS_COMPLETED:
        return "job.completed"
    return "job.processing"


def build_payload(snapshot: JobRecord, *, now: datetime | None = None) -> dict[str, Any]:
    safe_now = now or datetime.now(timezone.utc)
    payload: dict[str, Any] = {
        "event": event_for_status(snapshot.status),
        "jobId": snapshot.job_id,
        "status": snapshot.status,
        "results": {
            language: {_camel(key): value for key, value in serialize_result(result).items() if value is not None}
            for language, result in snapshot.results.items()
        },
        "timestamp": safe_now.replace(microsecond=0).isoformat().replace("+00:00", "Z"),
    }
    if snapshot.status == STATUS_FAILED:
        error = snapshot.first_error()
        if error:
            payload["error"] = error
    return payload


def _camel(key: str) -> str:
    head, *rest = key.split("_")
    return head + "".join(part.title() for part in rest)


class WebhookNotifier:
    """Best-effort POST of job snapshots; failures are logged, never raised into the job."""

    def __init__(
        self,
        *,
        deadline_seconds: float = 10.0,
        max_attempts: int = _MAX_ATTEMPTS,
        backoff_seconds: float = _BACKOFF_SECONDS,
        request_timeout_seconds: float = _REQUEST_TIMEOUT_SECONDS,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.deadline_seconds = float(deadline_seconds)
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_seconds = max(0.0, float(backoff_seconds))
        self.request_timeout_seconds = float(request_timeout_seconds)
        self._session = session or requests.Session()
        self._sleep = sleep
        self._clock = clock

    def notify(self, destination: str, snapshot: JobRecord) -> None:
        if not destination:
            return
        payload = build_payload(snapshot)
        started_at = self._clock()
        last_error = ""
        last_status: int | None = None
        attempts = 0
        for attempt in range(1, self.max_attempts + 1):
            remaining = self.deadline_seconds - (self._clock() - started_at)
            if remaining <= 0:
                last_error = last_error or "webhook deadline exceeded"
                break
            attempts = attempt
            try:
                response = self._session.post(
                    destination,
                    json=payload,
                    headers={"Content-Type": "application/json", "User-Agent": _USER_AGENT},
                    timeout=min(self.request_timeout_seconds, remaining),
                )
            except requests.RequestException as exc:
                last_error = f"request_error={str(exc)[:300]}"
                last_status = None
            else:
                status_code = int(response.status_code)
                response.close()
                if 200 <= status_code < 300:
                    logger.info(
                        "[DEBUG] webhook delivered job_id=%s status_code=%s attempt=%s",
                        snapshot.job_id,
                        status_code,
                        attempt,
                    )
                    metrics.WEBHOOK_DELIVERIES_TOTAL.labels(outcome="delivered").inc()
                    return
                last_error = f"webhook returned status {status_code}"
                last_status = status_code
            logger.debug("[DEBUG] webhook attempt failed job_id=%s attempt=%s detail=%s", snapshot.job_id, attempt, last_error)
            if attempt < self.max_attempts:
                self._sleep(self.backoff_seconds * attempt)
        metrics.WEBHOOK_DELIVERIES_TOTAL.labels(outcome="failed").inc()
        raise NotificationError(
            f"webhook delivery failed after {attempts} attempts: {last_error}",
            attempts=attempts,
            status_code=last_status,
        )

    def dispatch(self, destination: str, snapshot: JobRecord) -> threading.Thread | None:
        """Deliver from a detached thread so webhook latency never touches job state."""
        if not destination:
            return None
        thread = threading.Thread(
            target=self._deliver_quietly,
            args=(destination, snapshot),
            daemon=True,
            name=f"webhook-{snapshot.job_id[:8]}",
        )
        thread.start()
        return thread

    def _deliver_quietly(self, destination: str, snapshot: JobRecord) -> None:
        try:
            self.notify(destination, snapshot)
        except NotificationError as exc:
            logger.warning("[DEBUG] webhook notification failed job_id=%s error=%s", snapshot.job_id, exc)
        except Exception:
            logger.exception("[DEBUG] webhook notification crashed job_id=%s", snapshot.job_id)
