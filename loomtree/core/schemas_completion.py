"""Pydantic schemas for user settings and the streaming completion protocol."""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from loomtree.core.config import DEFAULT_API_BASE_URL


# ============================================================================
# Settings blob
# ============================================================================


class LoomSettings(BaseModel):
    """User-editable settings, persisted as a flat camelCase object.

    Unknown keys (display, layout, embedding options owned by other tools)
    are kept so a round trip through this model never drops them.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    api_key: str = Field(default="", alias="apiKey")
    api_base_url: str = Field(default=DEFAULT_API_BASE_URL, alias="apiBaseUrl")
    model: str = "gpt-3.5-turbo-instruct"
    provider: str = ""
    temperature: float = 0.7
    top_p: float = Field(default=1.0, alias="topP")
    max_tokens: int = Field(default=256, alias="maxTokens")
    frequency_penalty: float = Field(default=0.0, alias="frequencyPenalty")
    presence_penalty: float = Field(default=0.0, alias="presencePenalty")
    num_generations: int = Field(default=3, ge=1, alias="numGenerations")
    max_parallel_requests: int = Field(default=5, ge=1, alias="maxParallelRequests")
    max_leaf_generations: int = Field(default=10, ge=1, alias="maxLeafGenerations")

    def completion_body(self) -> dict[str, Any]:
        """Sampling parameters shared by every request of a batch."""
        return {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "top_p": self.top_p,
            "frequency_penalty": self.frequency_penalty,
            "presence_penalty": self.presence_penalty,
        }

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


# ============================================================================
# Streaming protocol
# ============================================================================


class BatchStreamRequest(BaseModel):
    """One prompt of a batch, tagged with the node id it streams into."""

    id: str
    prompt: str


class StreamEventType(str, Enum):
    """Kinds of events carried by the multiplexed batch stream."""
    TOKEN = "token"
    DONE = "done"
    ERROR = "error"


class StreamEvent(BaseModel):
    """A single demultiplexed event: ``{id, type, text?}`` on the wire."""

    id: str
    type: StreamEventType
    text: str | None = None

    @classmethod
    def token(cls, request_id: str, text: str) -> "StreamEvent":
        return cls(id=request_id, type=StreamEventType.TOKEN, text=text)

    @classmethod
    def done(cls, request_id: str) -> "StreamEvent":
        return cls(id=request_id, type=StreamEventType.DONE)

    @classmethod
    def error(cls, request_id: str, message: str) -> "StreamEvent":
        return cls(id=request_id, type=StreamEventType.ERROR, text=message)
