# backend/gptcore/schemas/research.py
from typing import Any

from pydantic import BaseModel, Field, field_validator

MAX_QUERY_LEN = 20000
MAX_INSTRUCTIONS_LEN = 8000
MAX_TOOL_CALLS_CEILING = 500


class CustomSource(BaseModel):
    name: str
    url: str


class ResearchRequest(BaseModel):
    query: str
    model: str | None = None
    max_tool_calls: int | None = Field(default=None, ge=1, le=MAX_TOOL_CALLS_CEILING)
    tools: list[str] = Field(default_factory=lambda: ["web_search", "code_interpreter"])
    background: bool = False
    instructions: str | None = None
    clarifications: dict[str, str | list[str]] = Field(default_factory=dict)
    custom_sources: list[CustomSource] = Field(default_factory=list)

    @field_validator("query")
    @classmethod
    def validate_query(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("query must not be empty")
        if len(v) > MAX_QUERY_LEN:
            raise ValueError(
                f"query is too long; maximum length is {MAX_QUERY_LEN} characters"
            )
        return v

    @field_validator("instructions", mode="before")
    @classmethod
    def _blank_to_none(cls, v):
        if isinstance(v, str):
            stripped = v.strip()
            return stripped or None
        return v

    @field_validator("instructions")
    @classmethod
    def validate_instructions(cls, v: str | None) -> str | None:
        if v is not None and len(v) > MAX_INSTRUCTIONS_LEN:
            raise ValueError(
                f"instructions must be at most {MAX_INSTRUCTIONS_LEN} characters"
            )
        return v

    @field_validator("tools")
    @classmethod
    def validate_tools(cls, v: list[str]) -> list[str]:
        allowed = {"web_search", "code_interpreter"}
        unknown = [t for t in v if t not in allowed]
        if unknown:
            raise ValueError(f"unsupported tools: {', '.join(unknown)}")
        return v


class ChatStreamRequest(BaseModel):
    """Body shared by the streaming relay endpoints."""
    user_input: str
    messages: list[dict[str, Any]] = Field(default_factory=list)
    instructions: str | None = None
    model: str | None = None
    temperature: float | None = Field(default=None, ge=0, le=2)

    @field_validator("user_input")
    @classmethod
    def validate_user_input(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("user_input must not be empty")
        return v


class SearchStreamRequest(ChatStreamRequest):
    search_context_size: str = "medium"

    @field_validator("search_context_size")
    @classmethod
    def validate_search_size(cls, v: str) -> str:
        if v not in {"low", "medium", "high"}:
            raise ValueError("search_context_size must be one of low, medium, high")
        return v
