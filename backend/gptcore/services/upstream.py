from __future__ import annotations

from contextlib import contextmanager
from functools import lru_cache
import logging
from threading import BoundedSemaphore
from typing import Any, Dict, Iterable, List

import openai
from openai import OpenAI
from tenacity import (
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..core.config import Settings, get_settings
from ..schemas.research import ChatStreamRequest, ResearchRequest, SearchStreamRequest
from .errors import UpstreamError

logger = logging.getLogger(__name__)

_llm_semaphore: BoundedSemaphore | None = None

# Reasoning models reject the temperature parameter
NO_TEMPERATURE_PREFIXES = ("o1", "o3", "o4")

TRANSIENT_ERRORS = (
    openai.APIConnectionError,
    openai.APITimeoutError,
    openai.InternalServerError,
)


def _get_semaphore() -> BoundedSemaphore:
    """
    Lazy-initialised global semaphore for limiting concurrent upstream calls.
    """
    global _llm_semaphore
    if _llm_semaphore is None:
        settings = get_settings()
        _llm_semaphore = BoundedSemaphore(settings.LLM_MAX_CONCURRENCY)
    return _llm_semaphore


@contextmanager
def limit_llm_concurrency():
    """
    Bound concurrent calls to the provider.

        with limit_llm_concurrency():
            client.responses.create(...)
    """
    sem = _get_semaphore()
    sem.acquire()
    try:
        yield
    finally:
        sem.release()


@lru_cache(maxsize=1)
def get_openai_client() -> OpenAI:
    """
    Process-wide OpenAI client, created on first use.
    """
    settings = get_settings()
    if not settings.OPENAI_API_KEY:
        raise RuntimeError("No upstream API key configured. Set OPENAI_API_KEY.")

    kwargs: Dict[str, Any] = {"api_key": settings.OPENAI_API_KEY.strip()}
    if settings.OPENAI_BASE_URL:
        kwargs["base_url"] = settings.OPENAI_BASE_URL
    return OpenAI(**kwargs)


def _bounded(func, *args: Any, **kwargs: Any) -> Any:
    # One semaphore slot per attempt, released before any backoff sleep
    with limit_llm_concurrency():
        return func(*args, **kwargs)


def supports_temperature(model: str) -> bool:
    return not model.startswith(NO_TEMPERATURE_PREFIXES)


def _wrap_error(exc: Exception, action: str) -> UpstreamError:
    if isinstance(exc, openai.APIStatusError):
        return UpstreamError(f"{action} failed: {exc.message}", status_code=exc.status_code)
    return UpstreamError(f"{action} failed: {exc}")


# ---------------------------------------------------------------------------
# Request builders
# ---------------------------------------------------------------------------

def build_research_instructions(request: ResearchRequest, settings: Settings) -> str:
    instructions = request.instructions or settings.RESEARCH_INSTRUCTIONS

    clarification_lines: List[str] = []
    for key, value in request.clarifications.items():
        if isinstance(value, list):
            processed = ", ".join(str(v).strip() for v in value if str(v).strip())
        else:
            processed = str(value).strip()
        if processed:
            clarification_lines.append(f"- {key}: {processed}")
    if clarification_lines:
        instructions += "\n\nAdditional context from user clarifications:\n"
        instructions += "\n".join(clarification_lines) + "\n"

    if request.custom_sources:
        instructions += "\n\nPriority sources to focus on:\n"
        instructions += "".join(f"- {s.name}: {s.url}\n" for s in request.custom_sources)
        instructions += (
            "Try to access and reference these sources when relevant to the research query.\n"
        )

    return instructions


def build_research_params(request: ResearchRequest, settings: Settings) -> Dict[str, Any]:
    tools: List[Dict[str, Any]] = []
    if "web_search" in request.tools:
        tools.append({"type": "web_search_preview"})
    if "code_interpreter" in request.tools:
        tools.append({"type": "code_interpreter", "container": {"type": "auto"}})

    params: Dict[str, Any] = {
        "model": request.model or settings.RESEARCH_MODEL,
        "input": request.query,
        "instructions": build_research_instructions(request, settings),
        "tools": tools,
        "max_tool_calls": request.max_tool_calls or settings.DEFAULT_MAX_TOOL_CALLS,
    }
    if request.background:
        params["background"] = True
    return params


def build_chat_params(
    request: ChatStreamRequest,
    *,
    default_model: str,
    default_instructions: str,
    extra_instructions: str | None = None,
    tools: List[Dict[str, Any]] | None = None,
) -> Dict[str, Any]:
    model = request.model or default_model
    instructions = request.instructions or default_instructions
    if extra_instructions:
        instructions = f"{instructions}\n\n{extra_instructions}" if request.instructions else extra_instructions

    params: Dict[str, Any] = {
        "model": model,
        "instructions": instructions,
        "input": [*request.messages, {"role": "user", "content": request.user_input}],
    }
    if tools:
        params["tools"] = tools
    if request.temperature is not None:
        if supports_temperature(model):
            params["temperature"] = request.temperature
        else:
            logger.info("Model %s doesn't support temperature; omitting it", model)
    return params


def build_search_tools(request: SearchStreamRequest) -> List[Dict[str, Any]]:
    return [{"type": "web_search_preview", "search_context_size": request.search_context_size}]


# ---------------------------------------------------------------------------
# Upstream adapter
# ---------------------------------------------------------------------------

class ResearchUpstream:
    """
    Thin adapter over the Responses API.

    Every provider failure leaves this class as `UpstreamError`. Reads
    (`retrieve`, `cancel`) are retried on transient errors; `create` is not,
    since a retried create can start a second billable job.
    """

    def __init__(
        self,
        client: OpenAI | None = None,
        settings: Settings | None = None,
        retry_wait: Any = None,
    ) -> None:
        self._client = client
        self._settings = settings or get_settings()
        self._retry_wait = retry_wait or wait_exponential(multiplier=1, min=1, max=10)

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            self._client = get_openai_client()
        return self._client

    def _retrying(self) -> Retrying:
        return Retrying(
            wait=self._retry_wait,
            stop=stop_after_attempt(max(1, self._settings.UPSTREAM_RETRY_ATTEMPTS)),
            retry=retry_if_exception_type(TRANSIENT_ERRORS),
            reraise=True,
        )

    def create(self, **params: Any) -> Any:
        try:
            with limit_llm_concurrency():
                return self.client.responses.create(**params)
        except openai.OpenAIError as exc:
            logger.exception("Upstream create failed", extra={"step": "upstream_create"})
            raise _wrap_error(exc, "create") from exc

    def retrieve(self, response_id: str) -> Any:
        try:
            return self._retrying()(_bounded, self.client.responses.retrieve, response_id)
        except openai.OpenAIError as exc:
            logger.exception(
                "Upstream retrieve failed",
                extra={"job_id": response_id, "step": "upstream_retrieve"},
            )
            raise _wrap_error(exc, "retrieve") from exc

    def cancel(self, response_id: str) -> Any:
        try:
            return self._retrying()(_bounded, self.client.responses.cancel, response_id)
        except openai.OpenAIError as exc:
            raise _wrap_error(exc, "cancel") from exc

    def stream(self, **params: Any) -> Iterable[Any]:
        """Open a streaming response; the semaphore only covers the handshake."""
        try:
            with limit_llm_concurrency():
                return self.client.responses.create(stream=True, **params)
        except openai.OpenAIError as exc:
            logger.exception("Upstream stream failed to start", extra={"step": "upstream_stream"})
            raise _wrap_error(exc, "stream") from exc
