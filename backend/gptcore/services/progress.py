# backend/gptcore/services/progress.py
from __future__ import annotations

from datetime import datetime
import logging
from typing import Any, List, Optional

from ..schemas.jobs import LinkRef, ProgressDetails, ProgressSnapshot
from .events import (
    CodeInterpreterCall,
    LogEntry,
    MessageItem,
    WebSearchCall,
    iter_tool_calls,
    normalize_log,
)

logger = logging.getLogger(__name__)

ACTIVITY_PROCESSING = "processing"
ACTIVITY_INITIALIZING = "initializing research"
ACTIVITY_ANALYZING = "analyzing search results"
ACTIVITY_RUNNING_CODE = "running code analysis"
ACTIVITY_CODE_RESULTS = "processing code results"
ACTIVITY_FINALIZING = "finalizing report"
ACTIVITY_COMPLETED = "research completed"
ACTIVITY_FAILED = "research failed"
ACTIVITY_CANCELLED = "research cancelled"

# Titles used when the upstream does not report one for an opened page
READING_TITLE = "Loading..."
PAGE_READ_TITLE = "Page Read"
PAGE_CONTENT_TITLE = "Page Content"


def initial_progress() -> ProgressSnapshot:
    return ProgressSnapshot(current_activity=ACTIVITY_INITIALIZING)


def _describe_last(entry: LogEntry, observed_at: Optional[datetime]) -> tuple[str, List[LinkRef]]:
    """Activity label and current links for the most recent log entry."""
    links: List[LinkRef] = []

    if isinstance(entry, WebSearchCall):
        action = entry.action
        stamp = entry.timestamp or observed_at
        if entry.status == "in_progress":
            if action.type == "search":
                return f"searching: {action.query or ''}", links
            if action.type == "open_page":
                if action.url:
                    links.append(
                        LinkRef(
                            url=action.url,
                            title=action.title or READING_TITLE,
                            status="reading",
                            timestamp=stamp,
                        )
                    )
                return f"reading: {action.url or ''}", links
            if action.type == "find_in_page":
                return f"searching in page: {action.query or ''}", links
            return ACTIVITY_PROCESSING, links

        if entry.status == "completed":
            if action.type == "search":
                for result in entry.results:
                    links.append(
                        LinkRef(
                            url=result.url,
                            title=result.title,
                            snippet=result.snippet,
                            status="found",
                            timestamp=stamp,
                        )
                    )
            elif action.type == "open_page" and action.url:
                links.append(
                    LinkRef(
                        url=action.url,
                        title=action.title or PAGE_READ_TITLE,
                        status="completed",
                        timestamp=stamp,
                    )
                )
            return ACTIVITY_ANALYZING, links

        return ACTIVITY_PROCESSING, links

    if isinstance(entry, CodeInterpreterCall):
        if entry.status == "in_progress":
            return ACTIVITY_RUNNING_CODE, links
        if entry.status == "completed":
            return ACTIVITY_CODE_RESULTS, links
        return ACTIVITY_PROCESSING, links

    if isinstance(entry, MessageItem):
        return ACTIVITY_FINALIZING, links

    return ACTIVITY_PROCESSING, links


def _discovered_links(entries: List[LogEntry], observed_at: Optional[datetime]) -> List[LinkRef]:
    links: List[LinkRef] = []
    for entry in entries:
        if not isinstance(entry, WebSearchCall) or not entry.completed:
            continue
        stamp = entry.timestamp or observed_at
        if entry.action.type == "search":
            for result in entry.results:
                links.append(
                    LinkRef(
                        url=result.url,
                        title=result.title,
                        snippet=result.snippet,
                        status="discovered",
                        timestamp=stamp,
                    )
                )
        elif entry.action.type == "open_page" and entry.action.url:
            links.append(
                LinkRef(
                    url=entry.action.url,
                    title=entry.action.title or PAGE_CONTENT_TITLE,
                    status="accessed",
                    timestamp=stamp,
                )
            )
    return links


def _details(entries: List[LogEntry]) -> ProgressDetails:
    completed = [e for e in entries if isinstance(e, WebSearchCall) and e.completed]
    return ProgressDetails(
        sources_found=len(completed),
        pages_accessed=sum(1 for e in completed if e.action.type == "open_page"),
        searches_performed=sum(1 for e in completed if e.action.type == "search"),
    )


def extract_progress(log: Any, observed_at: Optional[datetime] = None) -> ProgressSnapshot:
    """
    Recompute a progress snapshot from a job's full output log.

    Pure: the same log (and `observed_at`) always yields the same snapshot.
    `observed_at` only stamps links whose entry carries no timestamp of its
    own. An empty or malformed log yields zero counts and the generic
    "processing" label.
    """
    entries = normalize_log(log)
    if not entries:
        return ProgressSnapshot(current_activity=ACTIVITY_PROCESSING)

    activity, current_links = _describe_last(entries[-1], observed_at)
    snapshot = ProgressSnapshot(
        current_activity=activity,
        tool_calls_count=sum(1 for _ in iter_tool_calls(entries)),
        current_links=current_links,
        all_discovered_links=_discovered_links(entries, observed_at),
        details=_details(entries),
    )

    logger.debug(
        "Progress extracted",
        extra={
            "step": "extract_progress",
            "event_type": getattr(entries[-1], "type", None),
        },
    )
    return snapshot


def merge_progress(previous: Optional[ProgressSnapshot], fresh: ProgressSnapshot) -> ProgressSnapshot:
    """
    Keep counters non-decreasing across polls.

    The upstream log is append-only, so a smaller count only happens when a
    retrieve returns a truncated log; the cached counters win in that case.
    """
    if previous is None:
        return fresh

    details = ProgressDetails(
        sources_found=max(previous.details.sources_found, fresh.details.sources_found),
        pages_accessed=max(previous.details.pages_accessed, fresh.details.pages_accessed),
        searches_performed=max(
            previous.details.searches_performed, fresh.details.searches_performed
        ),
    )
    return fresh.model_copy(
        update={
            "tool_calls_count": max(previous.tool_calls_count, fresh.tool_calls_count),
            "details": details,
        }
    )


def with_activity(snapshot: ProgressSnapshot, activity: str) -> ProgressSnapshot:
    return snapshot.model_copy(update={"current_activity": activity})
