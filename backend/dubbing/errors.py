from __future__ import annotations


CANCEL_REQUESTED = "cancel_requested"


class PipelineError(RuntimeError):
    def __init__(self, stage: str, code: str, message: str, detail: str | None = None):
        super().__init__(message)
        self.stage = stage
        self.code = code
        self.message = message
        self.detail = detail or ""

    @property
    def cancelled(self) -> bool:
        return self.code == CANCEL_REQUESTED

    def to_dict(self) -> dict:
        return {
            "stage": self.stage,
            "code": self.code,
            "message": self.message,
            "detail": self.detail,
        }


class JobNotFoundError(LookupError):
    """Raised by the job store for unknown or expired job ids."""

    def __init__(self, job_id: str):
        super().__init__(f"job not found: {job_id}")
        self.job_id = job_id


class InvalidRequestError(ValueError):
    pass


class NotificationError(RuntimeError):
    def __init__(self, message: str, *, attempts: int = 0, status_code: int | None = None):
        super().__init__(message)
        self.attempts = attempts
        self.status_code = status_code


class CapacityExceededError(RuntimeError):
    def __init__(self, limit: int):
        super().__init__(f"maximum concurrent jobs reached ({limit})")
        self.limit = limit
