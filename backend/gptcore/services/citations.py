from __future__ import annotations

import logging
from typing import Any, List

from pydantic import ValidationError

from ..schemas.jobs import Citation, ToolCallSummary
from .events import (
    CodeInterpreterCall,
    MessageItem,
    WebSearchCall,
    field_of,
    normalize_log,
)

logger = logging.getLogger(__name__)


def _index(value: Any) -> int | None:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def extract_citations(response: Any) -> List[Citation]:
    """
    url_citation annotations from the final message(s) of a response.

    Annotations without both a url and a title are skipped. Never raises.
    """
    citations: List[Citation] = []
    try:
        for entry in normalize_log(field_of(response, "output")):
            if not isinstance(entry, MessageItem):
                continue
            for part in entry.content:
                if part.type != "output_text":
                    continue
                for annotation in part.annotations:
                    if not (annotation.url and annotation.title):
                        continue
                    citations.append(
                        Citation(
                            url=annotation.url,
                            title=annotation.title,
                            start_index=_index(annotation.start_index),
                            end_index=_index(annotation.end_index),
                        )
                    )
    except Exception:
        logger.exception("Error extracting citations", extra={"step": "extract_citations"})
        return []
    return citations


def extract_tool_calls(response: Any) -> List[ToolCallSummary]:
    """Summaries of every web search / code interpreter call in the output."""
    tool_calls: List[ToolCallSummary] = []
    for entry in normalize_log(field_of(response, "output")):
        try:
            if isinstance(entry, WebSearchCall):
                tool_calls.append(
                    ToolCallSummary(
                        type="web_search",
                        id=entry.id,
                        status=entry.status,
                        action=entry.action.as_dict() or None,
                        timestamp=entry.timestamp,
                    )
                )
            elif isinstance(entry, CodeInterpreterCall):
                tool_calls.append(
                    ToolCallSummary(
                        type="code_interpreter",
                        id=entry.id,
                        status=entry.status,
                        code=entry.code,
                        output=entry.output,
                        timestamp=entry.timestamp,
                    )
                )
        except ValidationError:
            logger.warning(
                "Skipping malformed tool call entry",
                exc_info=True,
                extra={"step": "extract_tool_calls"},
            )
    return tool_calls


def output_text(response: Any) -> str:
    """The SDK's aggregated `output_text`, or the message text parts joined."""
    text = field_of(response, "output_text")
    if isinstance(text, str) and text:
        return text
    parts: List[str] = []
    for entry in normalize_log(field_of(response, "output")):
        if isinstance(entry, MessageItem):
            parts.extend(p.text for p in entry.content if p.type == "output_text" and p.text)
    return "".join(parts)
