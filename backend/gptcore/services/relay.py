# backend/gptcore/services/relay.py
"""
Single relay for every streaming call site.

The chat, search and code endpoints all consume the same provider event
stream and only differ in how a text chunk is framed on the wire:

- plain chunked text (`PlainTextFraming`): raw text, connection close ends it;
- event-tagged output (`EventStreamFraming`): `data: {"content": ...}` records
  followed by a `data: [DONE]` sentinel.

`iter_relay` yields framed chunks for HTTP streaming responses; `relay`
drives the same generator into a `ChunkSink`.
"""
from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
from typing import Any, Callable, Generator, Iterable, List, Optional, Protocol

from .errors import MalformedEventError
from .events import StreamEventKind, normalize_stream_event

logger = logging.getLogger(__name__)

NO_CONTENT_WARNING = "No content was sent during the stream"


class ChunkFraming:
    """How text chunks, error notices and the end of stream are written."""

    name = "base"

    def chunk(self, text: str) -> str:
        raise NotImplementedError

    def error(self, message: str) -> str:
        raise NotImplementedError

    def end(self) -> Optional[str]:
        return None


class PlainTextFraming(ChunkFraming):
    name = "plain"

    def __init__(self, error_notice: str = "\n[Error during generation]") -> None:
        self.error_notice = error_notice

    def chunk(self, text: str) -> str:
        return text

    def error(self, message: str) -> str:
        return self.error_notice


class EventStreamFraming(ChunkFraming):
    name = "event-stream"
    media_type = "text/event-stream"

    def chunk(self, text: str) -> str:
        return f"data: {json.dumps({'content': text})}\n\n"

    def error(self, message: str) -> str:
        return f"data: {json.dumps({'error': 'Stream error occurred', 'message': message})}\n\n"

    def end(self) -> Optional[str]:
        return "data: [DONE]\n\n"


class ChunkSink(Protocol):
    def write(self, chunk: str) -> None: ...

    def close(self) -> None: ...


class ListSink:
    """Collects chunks in memory; handy for tests and non-HTTP callers."""

    def __init__(self) -> None:
        self.chunks: List[str] = []
        self.close_count = 0

    def write(self, chunk: str) -> None:
        self.chunks.append(chunk)

    def close(self) -> None:
        self.close_count += 1

    @property
    def closed(self) -> bool:
        return self.close_count > 0

    def getvalue(self) -> str:
        return "".join(self.chunks)


class CallbackSink:
    def __init__(self, on_chunk: Callable[[str], Any], on_close: Callable[[], Any] | None = None) -> None:
        self._on_chunk = on_chunk
        self._on_close = on_close

    def write(self, chunk: str) -> None:
        self._on_chunk(chunk)

    def close(self) -> None:
        if self._on_close is not None:
            self._on_close()


@dataclass
class RelayResult:
    content_sent: bool = False
    chunks_written: int = 0
    events_seen: int = 0
    unknown_events: int = 0
    error: Optional[str] = None
    warning: Optional[str] = None
    text_parts: List[str] = field(default_factory=list, repr=False)

    @property
    def text(self) -> str:
        return "".join(self.text_parts)


def iter_relay(
    source: Iterable[Any],
    framing: ChunkFraming | None = None,
    *,
    request_id: str | None = None,
    result: RelayResult | None = None,
) -> Generator[str, None, RelayResult]:
    """
    Translate provider stream events into framed output chunks, in order.

    Never raises for stream-level problems: an `error` event or an exception
    from the source becomes an error chunk and the relay finishes cleanly.
    Pass `result` to observe the outcome when the generator is consumed by a
    framework (the same object is also the generator's return value).
    """
    framing = framing or PlainTextFraming()
    result = result if result is not None else RelayResult()
    log_extra = {"request_id": request_id, "step": "relay"}

    iterator = None
    try:
        iterator = iter(source)
        for raw in iterator:
            result.events_seen += 1
            try:
                event = normalize_stream_event(raw)
            except MalformedEventError as exc:
                result.unknown_events += 1
                logger.warning("Ignoring malformed stream event: %s", exc, extra=log_extra)
                continue

            if event.kind is StreamEventKind.TEXT_DELTA:
                if event.text:
                    result.content_sent = True
                    result.chunks_written += 1
                    result.text_parts.append(event.text)
                    yield framing.chunk(event.text)
            elif event.kind is StreamEventKind.ERROR:
                logger.error(
                    "Stream error: %s", event.message,
                    extra={**log_extra, "event_type": event.raw_type},
                )
                if result.error is None:
                    result.error = event.message
                yield framing.error(event.message or "")
            elif event.kind is StreamEventKind.UNKNOWN:
                result.unknown_events += 1
                logger.info(
                    "Unhandled stream event type: %s", event.raw_type,
                    extra={**log_extra, "event_type": event.raw_type},
                )
            else:
                logger.debug(
                    "Stream event: %s", event.raw_type,
                    extra={**log_extra, "event_type": event.raw_type},
                )
    except Exception as exc:
        logger.exception("Error while reading upstream stream", extra=log_extra)
        result.error = result.error or str(exc)
        yield framing.error(str(exc))
    finally:
        close = getattr(source, "close", None) or getattr(iterator, "close", None)
        if callable(close):
            try:
                close()
            except Exception:
                logger.warning("Failed to close upstream stream", exc_info=True, extra=log_extra)

    if not result.content_sent:
        result.warning = NO_CONTENT_WARNING
        logger.warning(NO_CONTENT_WARNING, extra=log_extra)

    tail = framing.end()
    if tail is not None:
        yield tail

    logger.info(
        "Stream relay finished",
        extra={**log_extra, "status": "error" if result.error else "ok"},
    )
    return result


def relay(
    source: Iterable[Any],
    sink: ChunkSink,
    framing: ChunkFraming | None = None,
    *,
    request_id: str | None = None,
) -> RelayResult:
    """Pump `source` into `sink`; the sink is closed exactly once."""
    result = RelayResult()
    try:
        for chunk in iter_relay(source, framing, request_id=request_id, result=result):
            sink.write(chunk)
    finally:
        sink.close()
    return result
