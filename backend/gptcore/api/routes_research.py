from uuid import uuid4
import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Request, Security
from fastapi.security.api_key import APIKeyHeader

from ..core.config import get_settings
from ..schemas.jobs import Job, JobStatus
from ..schemas.research import ResearchRequest
from ..services.errors import JobNotFoundError, UpstreamError
from ..services.jobs import ResearchJobManager

router = APIRouter(prefix="/research", tags=["research"])

settings = get_settings()
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)
logger = logging.getLogger(__name__)


def verify_api_key(api_key: str | None = Security(api_key_header)) -> None:
    """
    Simple header-based API key authentication.

    - In dev, if API_AUTH_KEY is not set, auth is skipped.
    - Otherwise, require X-API-Key == API_AUTH_KEY.
    """
    expected = settings.API_AUTH_KEY

    if settings.ENV == "dev" and not expected:
        return

    if not expected:
        raise HTTPException(status_code=401, detail="API key not configured")

    if api_key != expected:
        raise HTTPException(status_code=401, detail="Invalid API key")


def get_job_manager(request: Request) -> ResearchJobManager:
    return request.app.state.job_manager


def upstream_http_error(exc: UpstreamError, action: str) -> HTTPException:
    return HTTPException(
        status_code=exc.status_code,
        detail={"error": f"Error {action}", "message": exc.message},
    )


def not_found(job_id: str) -> HTTPException:
    return HTTPException(status_code=404, detail={"error": "Job not found", "jobId": job_id})


def job_status_payload(job: Job) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "status": job.status.value,
        "progress": job.progress.model_dump(mode="json"),
    }
    if job.status is JobStatus.COMPLETED and job.result is not None:
        payload["response"] = job.result.model_dump(mode="json")
    if job.error:
        payload["error"] = job.error
    return payload


def job_summary(job: Job) -> Dict[str, Any]:
    return {
        "id": job.id,
        "status": job.status.value,
        "startTime": job.start_time.isoformat(),
        "query": job.query,
        "progress": job.progress.model_dump(mode="json"),
    }


@router.post("")
def submit_research(
    payload: ResearchRequest,
    manager: ResearchJobManager = Depends(get_job_manager),
    _: None = Depends(verify_api_key),
):
    request_id = str(uuid4())
    logger.info(
        "Processing research request",
        extra={
            "request_id": request_id,
            "step": "submit_research",
            "status": "background" if payload.background else "immediate",
        },
    )

    try:
        if payload.background:
            job = manager.submit(payload, request_id=request_id)
            return {
                "jobId": job.id,
                "status": "started",
                "message": "Deep research task started in background mode",
            }

        result = manager.run_immediate(payload, request_id=request_id)
    except UpstreamError as exc:
        raise upstream_http_error(exc, "processing deep research request")

    return {
        "role": "assistant",
        "content": result.content,
        "citations": [c.model_dump(mode="json") for c in result.citations],
        "toolCalls": [t.model_dump(mode="json") for t in result.tool_calls],
    }


@router.get("/status/{job_id}")
def get_research_status(
    job_id: str,
    manager: ResearchJobManager = Depends(get_job_manager),
    _: None = Depends(verify_api_key),
):
    try:
        job = manager.poll(job_id)
    except JobNotFoundError:
        raise not_found(job_id)
    except UpstreamError as exc:
        raise upstream_http_error(exc, "checking job status")
    except Exception as exc:
        logger.exception(
            "Unexpected error while checking job status",
            extra={"job_id": job_id, "step": "get_research_status"},
        )
        raise HTTPException(
            status_code=500,
            detail={"error": "Error checking job status", "message": str(exc)},
        )

    return job_status_payload(job)


@router.post("/cancel/{job_id}")
def cancel_research(
    job_id: str,
    manager: ResearchJobManager = Depends(get_job_manager),
    _: None = Depends(verify_api_key),
):
    try:
        job = manager.cancel(job_id)
    except JobNotFoundError:
        raise not_found(job_id)

    return {"status": job.status.value, "jobId": job.id}


@router.get("/jobs")
def list_research_jobs(
    manager: ResearchJobManager = Depends(get_job_manager),
    _: None = Depends(verify_api_key),
):
    return {"jobs": [job_summary(job) for job in manager.list()]}
