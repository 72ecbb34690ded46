from uuid import uuid4
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from ..core.config import get_settings
from ..schemas.research import ChatStreamRequest, SearchStreamRequest
from ..services.errors import UpstreamError
from ..services.relay import EventStreamFraming, PlainTextFraming, iter_relay
from ..services.upstream import ResearchUpstream, build_chat_params, build_search_tools
from .routes_research import upstream_http_error, verify_api_key

router = APIRouter(tags=["stream"])

settings = get_settings()
logger = logging.getLogger(__name__)

STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

CHAT_INSTRUCTIONS = "You are a helpful assistant."
SEARCH_INSTRUCTIONS = (
    "You are a helpful assistant with access to web search. Provide accurate and "
    "up-to-date information based on search results."
)
CODE_ARTIFACT_INSTRUCTIONS = """You are a helpful AI assistant capable of generating detailed responses including code snippets and other artifacts.
IMPORTANT INSTRUCTION ABOUT CODE FORMATTING:
Whenever you need to write code:
1. First, send the marker "[CODE_START:language]"
2. Write your code without markdown backticks
3. End with "[CODE_END]"
Always use these markers and provide detailed explanations."""


def get_upstream(request: Request) -> ResearchUpstream:
    return request.app.state.upstream


def _open_stream(upstream: ResearchUpstream, params: dict, request_id: str):
    logger.info(
        "Starting stream request",
        extra={"request_id": request_id, "step": "stream_start"},
    )
    try:
        return upstream.stream(**params)
    except UpstreamError as exc:
        raise upstream_http_error(exc, "processing stream request")


@router.post("/chat/stream")
def chat_stream(
    payload: ChatStreamRequest,
    upstream: ResearchUpstream = Depends(get_upstream),
    _: None = Depends(verify_api_key),
):
    request_id = str(uuid4())
    params = build_chat_params(
        payload,
        default_model=settings.CHAT_MODEL,
        default_instructions=CHAT_INSTRUCTIONS,
    )
    source = _open_stream(upstream, params, request_id)
    return StreamingResponse(
        iter_relay(source, PlainTextFraming(), request_id=request_id),
        media_type="text/plain",
        headers=STREAM_HEADERS,
    )


@router.post("/search/stream")
def search_stream(
    payload: SearchStreamRequest,
    upstream: ResearchUpstream = Depends(get_upstream),
    _: None = Depends(verify_api_key),
):
    request_id = str(uuid4())
    params = build_chat_params(
        payload,
        default_model=settings.SEARCH_MODEL,
        default_instructions=SEARCH_INSTRUCTIONS,
        tools=build_search_tools(payload),
    )
    source = _open_stream(upstream, params, request_id)
    return StreamingResponse(
        iter_relay(
            source,
            PlainTextFraming(error_notice="\n[Error during search]"),
            request_id=request_id,
        ),
        media_type="text/plain",
        headers=STREAM_HEADERS,
    )


@router.post("/code/stream")
def code_stream(
    payload: ChatStreamRequest,
    upstream: ResearchUpstream = Depends(get_upstream),
    _: None = Depends(verify_api_key),
):
    request_id = str(uuid4())
    params = build_chat_params(
        payload,
        default_model=settings.CODE_MODEL,
        default_instructions=CODE_ARTIFACT_INSTRUCTIONS,
        extra_instructions=CODE_ARTIFACT_INSTRUCTIONS,
    )
    source = _open_stream(upstream, params, request_id)
    return StreamingResponse(
        iter_relay(source, EventStreamFraming(), request_id=request_id),
        media_type=EventStreamFraming.media_type,
        headers=STREAM_HEADERS,
    )
