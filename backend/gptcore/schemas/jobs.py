# backend/gptcore/schemas/jobs.py
from datetime import datetime
import enum
from typing import Any, Literal

from pydantic import BaseModel, Field


class JobStatus(str, enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}
)

LinkStatus = Literal["discovered", "reading", "found", "completed", "accessed"]


class LinkRef(BaseModel):
    url: str
    title: str
    snippet: str | None = None
    status: LinkStatus
    timestamp: datetime | None = None


class ProgressDetails(BaseModel):
    sources_found: int = 0
    pages_accessed: int = 0
    searches_performed: int = 0


class ProgressSnapshot(BaseModel):
    """Point-in-time summary of a job's event log, recomputed on every poll."""
    current_activity: str
    tool_calls_count: int = 0
    current_links: list[LinkRef] = Field(default_factory=list)
    all_discovered_links: list[LinkRef] = Field(default_factory=list)
    details: ProgressDetails = Field(default_factory=ProgressDetails)


class Citation(BaseModel):
    url: str
    title: str
    start_index: int | None = None
    end_index: int | None = None


class ToolCallSummary(BaseModel):
    type: Literal["web_search", "code_interpreter"]
    id: str | None = None
    status: str | None = None
    action: dict[str, Any] | None = None
    code: str | None = None
    output: str | None = None
    timestamp: datetime | None = None


class JobResult(BaseModel):
    output_text: str = ""
    citations: list[Citation] = Field(default_factory=list)
    tool_calls: list[ToolCallSummary] = Field(default_factory=list)


class Job(BaseModel):
    id: str
    status: JobStatus = JobStatus.PENDING
    start_time: datetime
    completed_time: datetime | None = None
    failed_time: datetime | None = None
    cancelled_time: datetime | None = None
    query: str
    model: str | None = None
    max_tool_calls: int
    progress: ProgressSnapshot
    # Last time the tool-call counter moved; drives the optional stall check
    last_progress_at: datetime | None = None
    error: str | None = None
    result: JobResult | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal
