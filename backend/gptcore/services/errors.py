from __future__ import annotations


class JobNotFoundError(LookupError):
    """Raised when a job id is unknown to the local registry."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class UpstreamError(RuntimeError):
    """
    The provider call itself failed.

    `status_code` mirrors the provider's HTTP status when it reported one,
    otherwise 502 so callers never mistake the failure for an empty success.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code or 502


class MalformedEventError(ValueError):
    """An event or log entry does not match the known vocabulary."""


class InvalidTransitionError(RuntimeError):
    """A job in a terminal state was asked to move again."""

    def __init__(self, job_id: str, current: str, target: str) -> None:
        super().__init__(
            f"Job {job_id} is {current}; refusing transition to {target}"
        )
        self.job_id = job_id
        self.current = current
        self.target = target
