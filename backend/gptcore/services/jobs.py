from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from typing import Any, Callable, Dict, FrozenSet, List, Optional

from ..core.config import Settings, get_settings
from ..schemas.jobs import Citation, Job, JobResult, JobStatus, ToolCallSummary
from ..schemas.research import ResearchRequest
from .citations import extract_citations, extract_tool_calls, output_text
from .errors import InvalidTransitionError, JobNotFoundError, UpstreamError
from .events import field_of
from .job_store import JobStore
from .progress import (
    ACTIVITY_CANCELLED,
    ACTIVITY_COMPLETED,
    ACTIVITY_FAILED,
    extract_progress,
    initial_progress,
    merge_progress,
    with_activity,
)
from .upstream import ResearchUpstream, build_research_params

logger = logging.getLogger(__name__)

_ALLOWED_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.PENDING: frozenset(
        {JobStatus.IN_PROGRESS, JobStatus.FAILED, JobStatus.CANCELLED}
    ),
    JobStatus.IN_PROGRESS: frozenset(
        {JobStatus.IN_PROGRESS, JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}
    ),
}

# Provider response status -> local job status
_UPSTREAM_STATUS: Dict[str, JobStatus] = {
    "queued": JobStatus.IN_PROGRESS,
    "in_progress": JobStatus.IN_PROGRESS,
    "completed": JobStatus.COMPLETED,
    "failed": JobStatus.FAILED,
    "cancelled": JobStatus.CANCELLED,
    "incomplete": JobStatus.FAILED,
}

_TERMINAL_ACTIVITY = {
    JobStatus.COMPLETED: ACTIVITY_COMPLETED,
    JobStatus.FAILED: ACTIVITY_FAILED,
    JobStatus.CANCELLED: ACTIVITY_CANCELLED,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def transition(
    job: Job,
    target: JobStatus,
    *,
    now: datetime,
    error: str | None = None,
    result: JobResult | None = None,
) -> Job:
    """
    Move `job` to `target`, stamping the matching terminal timestamp.

    Terminal states are final: any transition out of completed, failed or
    cancelled raises InvalidTransitionError.
    """
    allowed = _ALLOWED_TRANSITIONS.get(job.status, frozenset())
    if target not in allowed:
        raise InvalidTransitionError(job.id, job.status.value, target.value)

    update: Dict[str, Any] = {"status": target}
    if target is JobStatus.COMPLETED:
        update["completed_time"] = now
        update["result"] = result or JobResult()
    elif target is JobStatus.FAILED:
        update["failed_time"] = now
        update["error"] = error or "Research failed"
    elif target is JobStatus.CANCELLED:
        update["cancelled_time"] = now

    if target in _TERMINAL_ACTIVITY:
        update["progress"] = with_activity(job.progress, _TERMINAL_ACTIVITY[target])

    return job.model_copy(update=update)


def upstream_status(response: Any) -> JobStatus:
    raw = field_of(response, "status")
    return _UPSTREAM_STATUS.get(raw, JobStatus.IN_PROGRESS) if isinstance(raw, str) else JobStatus.IN_PROGRESS


def upstream_error_message(response: Any) -> str:
    error = field_of(response, "error")
    if isinstance(error, str) and error:
        return error
    message = field_of(error, "message")
    if message:
        code = field_of(error, "code")
        return f"{code}: {message}" if code else str(message)

    incomplete = field_of(response, "incomplete_details")
    reason = field_of(incomplete, "reason")
    if reason:
        return f"Research incomplete: {reason}"
    return "Research failed"


@dataclass
class ImmediateResearchResult:
    content: str
    citations: List[Citation] = field(default_factory=list)
    tool_calls: List[ToolCallSummary] = field(default_factory=list)


class ResearchJobManager:
    """
    Owns the lifecycle of background research jobs.

    The store is the only shared state. Every mutation goes through
    `store.update` so a poll racing a cancel (or the cleanup sweep) resolves
    under one critical section, and a job that reached a terminal state is
    never moved again.
    """

    def __init__(
        self,
        store: JobStore,
        upstream: ResearchUpstream,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._upstream = upstream
        self._settings = settings or get_settings()
        self._clock = clock

    @property
    def store(self) -> JobStore:
        return self._store

    def _require(self, job_id: str) -> Job:
        job = self._store.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def get(self, job_id: str) -> Job:
        return self._require(job_id)

    def list(self) -> List[Job]:
        return self._store.list()

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit(self, request: ResearchRequest, request_id: str | None = None) -> Job:
        """Start a background research response and register it as a job."""
        params = build_research_params(
            request.model_copy(update={"background": True}), self._settings
        )
        response = self._upstream.create(**params)

        job_id = field_of(response, "id")
        if not job_id:
            raise UpstreamError("Upstream did not return a response id")

        now = self._clock()
        job = Job(
            id=str(job_id),
            status=JobStatus.IN_PROGRESS,
            start_time=now,
            last_progress_at=now,
            query=request.query[: self._settings.JOB_QUERY_PREVIEW_CHARS],
            model=params["model"],
            max_tool_calls=params["max_tool_calls"],
            progress=initial_progress(),
        )
        self._store.put(job)

        logger.info(
            "Background research job started",
            extra={
                "job_id": job.id,
                "request_id": request_id,
                "step": "submit",
                "status": job.status.value,
            },
        )
        return job

    def run_immediate(self, request: ResearchRequest, request_id: str | None = None) -> ImmediateResearchResult:
        """Non-background path: wait for the response and return it directly."""
        params = build_research_params(
            request.model_copy(update={"background": False}), self._settings
        )
        response = self._upstream.create(**params)

        logger.info(
            "Immediate research completed",
            extra={"request_id": request_id, "step": "run_immediate"},
        )
        return ImmediateResearchResult(
            content=output_text(response),
            citations=extract_citations(response),
            tool_calls=extract_tool_calls(response),
        )

    # ------------------------------------------------------------------
    # Polling / cancellation
    # ------------------------------------------------------------------

    def _is_stalled(self, job: Job, now: datetime) -> bool:
        limit = self._settings.JOB_STALE_AFTER_SECONDS
        if not limit or job.last_progress_at is None:
            return False
        return (now - job.last_progress_at).total_seconds() > limit

    def poll(self, job_id: str) -> Job:
        """
        Refresh a job from the upstream's current output log.

        Terminal jobs are returned as stored without calling the upstream.
        """
        job = self._require(job_id)
        if job.is_terminal:
            return job

        response = self._upstream.retrieve(job_id)
        now = self._clock()
        snapshot = extract_progress(field_of(response, "output"), observed_at=now)
        target = upstream_status(response)

        result: Optional[JobResult] = None
        error: Optional[str] = None
        if target is JobStatus.COMPLETED:
            result = JobResult(
                output_text=output_text(response),
                citations=extract_citations(response),
                tool_calls=extract_tool_calls(response),
            )
        elif target is JobStatus.FAILED:
            error = upstream_error_message(response)

        def _apply(current: Job) -> Job:
            if current.is_terminal:
                # A concurrent cancel won the race
                return current

            progress = merge_progress(current.progress, snapshot)
            advanced = progress.tool_calls_count > current.progress.tool_calls_count
            current = current.model_copy(
                update={
                    "progress": progress,
                    "last_progress_at": now if advanced else current.last_progress_at,
                }
            )

            if target is JobStatus.IN_PROGRESS and self._is_stalled(current, now):
                return transition(
                    current,
                    JobStatus.FAILED,
                    now=now,
                    error=(
                        "Research stalled: no new tool calls for "
                        f"{self._settings.JOB_STALE_AFTER_SECONDS:.0f}s"
                    ),
                )
            return transition(current, target, now=now, error=error, result=result)

        updated = self._store.update(job_id, _apply)

        log_extra = {"job_id": job_id, "step": "poll", "status": updated.status.value}
        if updated.status is JobStatus.FAILED:
            logger.warning("Research job failed: %s", updated.error, extra=log_extra)
        elif updated.is_terminal:
            logger.info("Research job reached %s", updated.status.value, extra=log_extra)
        else:
            logger.info(
                "Research progress: %s (%d/%d tool calls)",
                updated.progress.current_activity,
                updated.progress.tool_calls_count,
                updated.max_tool_calls,
                extra=log_extra,
            )
        return updated

    def cancel(self, job_id: str) -> Job:
        """
        Best-effort upstream cancel; the local record becomes cancelled
        regardless of what the upstream says.
        """
        job = self._require(job_id)
        if job.is_terminal:
            logger.info(
                "Cancel ignored; job already %s", job.status.value,
                extra={"job_id": job_id, "step": "cancel"},
            )
            return job

        try:
            self._upstream.cancel(job_id)
        except Exception as exc:
            logger.warning(
                "Upstream cancel not applied: %s", exc,
                exc_info=True,
                extra={"job_id": job_id, "step": "cancel"},
            )

        now = self._clock()

        def _apply(current: Job) -> Job:
            if current.is_terminal:
                return current
            return transition(current, JobStatus.CANCELLED, now=now)

        updated = self._store.update(job_id, _apply)
        logger.info(
            "Research job cancelled",
            extra={"job_id": job_id, "step": "cancel", "status": updated.status.value},
        )
        return updated
