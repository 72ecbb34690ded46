# backend/gptcore/services/events.py
"""
Closed vocabulary of upstream events understood by the relay and the
progress extractor.

Two alphabets arrive from the provider:

- live stream events (``response.output_text.delta`` and friends) consumed by
  the relay while a synchronous call is in flight;
- output log entries (``web_search_call``, ``code_interpreter_call``,
  ``message``) accumulated on a background response and re-read on every
  poll.

Both may arrive as SDK objects or plain dicts. Everything is normalised here
once, at ingestion, so downstream code only ever sees the dataclasses below.
Anything outside the vocabulary becomes an UNKNOWN event / UnknownEntry and is
ignored by consumers.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import enum
import logging
from typing import Any, Iterable, List, Optional

from .errors import MalformedEventError

logger = logging.getLogger(__name__)


def field_of(source: Any, key: str) -> Any:
    if source is None:
        return None
    if isinstance(source, dict):
        return source.get(key)
    return getattr(source, key, None)


def _as_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return str(value)


def _as_timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    return None


# ---------------------------------------------------------------------------
# Live stream events
# ---------------------------------------------------------------------------

class StreamEventKind(str, enum.Enum):
    CREATED = "created"
    TEXT_DELTA = "output_text.delta"
    TEXT_DONE = "output_text.done"
    OUTPUT_ITEM_ADDED = "output_item.added"
    OUTPUT_ITEM_DONE = "output_item.done"
    CONTENT_PART_ADDED = "content_part.added"
    CONTENT_PART_DONE = "content_part.done"
    COMPLETED = "completed"
    ERROR = "error"
    UNKNOWN = "unknown"


_STREAM_KINDS = {k.value: k for k in StreamEventKind if k is not StreamEventKind.UNKNOWN}
# Older SDK builds emitted a flat {"type": "text_delta", "text": ...}
_STREAM_ALIASES = {"text_delta": StreamEventKind.TEXT_DELTA}


@dataclass(frozen=True)
class StreamEvent:
    kind: StreamEventKind
    raw_type: str
    text: str = ""
    message: Optional[str] = None


def _delta_text(raw: Any) -> str:
    """A delta is either a bare string or an object carrying `.text`."""
    delta = field_of(raw, "delta")
    if delta is None:
        # legacy text_delta shape keeps the text at the top level
        delta = field_of(raw, "text")
    if delta is None:
        return ""
    if isinstance(delta, str):
        return delta
    text = field_of(delta, "text")
    return text if isinstance(text, str) else ""


def _error_message(raw: Any) -> str:
    message = field_of(raw, "message")
    if isinstance(message, str) and message:
        return message
    error = field_of(raw, "error")
    if isinstance(error, str) and error:
        return error
    nested = field_of(error, "message")
    if isinstance(nested, str) and nested:
        return nested
    return "Unknown stream error"


def stream_kind(raw_type: str) -> StreamEventKind:
    if raw_type in _STREAM_ALIASES:
        return _STREAM_ALIASES[raw_type]
    name = raw_type[len("response."):] if raw_type.startswith("response.") else raw_type
    return _STREAM_KINDS.get(name, StreamEventKind.UNKNOWN)


def normalize_stream_event(raw: Any) -> StreamEvent:
    raw_type = field_of(raw, "type")
    if not isinstance(raw_type, str) or not raw_type:
        raise MalformedEventError(f"stream event without a type: {raw!r}")

    kind = stream_kind(raw_type)
    if kind is StreamEventKind.TEXT_DELTA:
        return StreamEvent(kind=kind, raw_type=raw_type, text=_delta_text(raw))
    if kind is StreamEventKind.TEXT_DONE:
        text = field_of(raw, "text")
        return StreamEvent(kind=kind, raw_type=raw_type, text=text if isinstance(text, str) else "")
    if kind is StreamEventKind.ERROR:
        return StreamEvent(kind=kind, raw_type=raw_type, message=_error_message(raw))
    return StreamEvent(kind=kind, raw_type=raw_type)


# ---------------------------------------------------------------------------
# Output log entries
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SearchResult:
    url: str
    title: str
    snippet: Optional[str] = None


@dataclass(frozen=True)
class SearchAction:
    type: Optional[str] = None  # "search" | "open_page" | "find_in_page"
    query: Optional[str] = None
    url: Optional[str] = None
    title: Optional[str] = None

    def as_dict(self) -> dict[str, Any]:
        return {k: v for k, v in (
            ("type", self.type),
            ("query", self.query),
            ("url", self.url),
            ("title", self.title),
        ) if v is not None}


@dataclass(frozen=True)
class WebSearchCall:
    id: Optional[str]
    status: Optional[str]
    action: SearchAction
    results: List[SearchResult] = field(default_factory=list)
    timestamp: Optional[datetime] = None
    type: str = "web_search_call"

    @property
    def completed(self) -> bool:
        return self.status == "completed"


@dataclass(frozen=True)
class CodeInterpreterCall:
    id: Optional[str]
    status: Optional[str]
    code: Optional[str] = None
    output: Optional[str] = None
    timestamp: Optional[datetime] = None
    type: str = "code_interpreter_call"


@dataclass(frozen=True)
class Annotation:
    url: Optional[str]
    title: Optional[str]
    start_index: Optional[int] = None
    end_index: Optional[int] = None


@dataclass(frozen=True)
class ContentPart:
    type: Optional[str]
    text: Optional[str] = None
    annotations: List[Annotation] = field(default_factory=list)


@dataclass(frozen=True)
class MessageItem:
    id: Optional[str]
    content: List[ContentPart] = field(default_factory=list)
    type: str = "message"


@dataclass(frozen=True)
class UnknownEntry:
    type: str


LogEntry = WebSearchCall | CodeInterpreterCall | MessageItem | UnknownEntry

TOOL_CALL_TYPES = (WebSearchCall, CodeInterpreterCall)


def _as_list(value: Any) -> list:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    raise MalformedEventError(f"expected a list, got {type(value).__name__}")


def _parse_results(raw: Any) -> List[SearchResult]:
    # Results may sit on the call itself or, in newer payloads, on the action
    items = field_of(raw, "results")
    if items is None:
        items = field_of(field_of(raw, "action"), "sources")
    results: List[SearchResult] = []
    for item in _as_list(items):
        url = _as_str(field_of(item, "url"))
        if not url:
            continue
        results.append(
            SearchResult(
                url=url,
                title=_as_str(field_of(item, "title")) or url,
                snippet=_as_str(field_of(item, "snippet")),
            )
        )
    return results


def _parse_code_output(raw: Any) -> Optional[str]:
    output = field_of(raw, "output")
    if output is not None:
        return _as_str(output)
    # SDK shape: outputs=[{type: "logs", logs: "..."}, {type: "image", url: ...}]
    logs = [
        _as_str(field_of(o, "logs"))
        for o in _as_list(field_of(raw, "outputs"))
        if field_of(o, "type") == "logs"
    ]
    logs = [entry for entry in logs if entry]
    return "\n".join(logs) if logs else None


def _parse_content(raw: Any) -> List[ContentPart]:
    parts: List[ContentPart] = []
    for part in _as_list(field_of(raw, "content")):
        annotations = [
            Annotation(
                url=_as_str(field_of(a, "url")),
                title=_as_str(field_of(a, "title")),
                start_index=field_of(a, "start_index"),
                end_index=field_of(a, "end_index"),
            )
            for a in _as_list(field_of(part, "annotations"))
        ]
        parts.append(
            ContentPart(
                type=_as_str(field_of(part, "type")),
                text=_as_str(field_of(part, "text")),
                annotations=annotations,
            )
        )
    return parts


def normalize_log_entry(raw: Any) -> LogEntry:
    entry_type = field_of(raw, "type")
    if not isinstance(entry_type, str) or not entry_type:
        raise MalformedEventError(f"log entry without a type: {raw!r}")

    if entry_type == "web_search_call":
        action = field_of(raw, "action")
        return WebSearchCall(
            id=_as_str(field_of(raw, "id")),
            status=_as_str(field_of(raw, "status")),
            action=SearchAction(
                type=_as_str(field_of(action, "type")),
                query=_as_str(field_of(action, "query")),
                url=_as_str(field_of(action, "url")),
                title=_as_str(field_of(action, "title")),
            ),
            results=_parse_results(raw),
            timestamp=_as_timestamp(field_of(raw, "timestamp")),
        )
    if entry_type == "code_interpreter_call":
        return CodeInterpreterCall(
            id=_as_str(field_of(raw, "id")),
            status=_as_str(field_of(raw, "status")),
            code=_as_str(field_of(raw, "code")),
            output=_parse_code_output(raw),
            timestamp=_as_timestamp(field_of(raw, "timestamp")),
        )
    if entry_type == "message":
        return MessageItem(id=_as_str(field_of(raw, "id")), content=_parse_content(raw))
    return UnknownEntry(type=entry_type)


def normalize_log(raw_log: Any) -> List[LogEntry]:
    """
    Normalise a whole output log, dropping entries that cannot be parsed.

    A log that is not a list at all is treated as empty.
    """
    if raw_log is None:
        return []
    if not isinstance(raw_log, (list, tuple)):
        logger.warning("Ignoring malformed output log of type %s", type(raw_log).__name__)
        return []

    entries: List[LogEntry] = []
    for index, raw in enumerate(raw_log):
        try:
            entries.append(normalize_log_entry(raw))
        except MalformedEventError as exc:
            logger.warning("Skipping malformed log entry #%d: %s", index, exc)
    return entries


def iter_tool_calls(entries: Iterable[LogEntry]) -> Iterable[WebSearchCall | CodeInterpreterCall]:
    return (e for e in entries if isinstance(e, TOOL_CALL_TYPES))
