"""
Protocol envelopes for the Swarm Gateway HTTP surface.

Request bodies are validated at the boundary; responses are one of a small
set of envelopes tagged by ``object``:

    list | text_completion | chat.completion | swarm.status | error
"""

from __future__ import annotations

from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


# ============================================================================
# Requests
# ============================================================================

class CompletionRequest(BaseModel):
    """Text completion request. Unknown sampling parameters pass through."""
    model_config = ConfigDict(extra="allow")

    model: str = Field(min_length=1)
    prompt: Union[str, List[str]] = ""
    max_tokens: Optional[int] = Field(default=None, ge=1)
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)
    top_p: Optional[float] = Field(default=None, gt=0.0, le=1.0)
    n: Optional[int] = Field(default=None, ge=1)
    stop: Optional[Union[str, List[str]]] = None
    stream: bool = False

    def params(self) -> Dict[str, Any]:
        """Backend payload: the request as received, unset options dropped."""
        return self.model_dump(exclude_none=True)


class ChatMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    role: Literal["system", "user", "assistant", "tool"]
    content: Optional[str] = None


class ChatCompletionRequest(BaseModel):
    """Chat completion request."""
    model_config = ConfigDict(extra="allow")

    model: str = Field(min_length=1)
    messages: List[ChatMessage] = Field(min_length=1)
    max_tokens: Optional[int] = Field(default=None, ge=1)
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)
    top_p: Optional[float] = Field(default=None, gt=0.0, le=1.0)
    n: Optional[int] = Field(default=None, ge=1)
    stop: Optional[Union[str, List[str]]] = None
    stream: bool = False

    def params(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class ServiceCreateRequest(BaseModel):
    """Provision the backend service of a registered model."""
    model: str = Field(min_length=1)
    replicas: Optional[int] = Field(default=None, ge=1)
    image: Optional[str] = None


# ============================================================================
# Envelopes
# ============================================================================

class ObjectList(BaseModel):
    """OpenAI list envelope, used for models and services."""
    object: Literal["list"] = "list"
    data: List[Dict[str, Any]] = Field(default_factory=list)


class Usage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class CompletionChoice(BaseModel):
    index: int = 0
    text: str = ""
    logprobs: Optional[Any] = None
    finish_reason: Optional[str] = "stop"


class CompletionResponse(BaseModel):
    id: str
    object: Literal["text_completion"] = "text_completion"
    created: int
    model: str
    choices: List[CompletionChoice]
    usage: Usage = Field(default_factory=Usage)


class ChatChoice(BaseModel):
    index: int = 0
    message: ChatMessage
    finish_reason: Optional[str] = "stop"


class ChatCompletionResponse(BaseModel):
    id: str
    object: Literal["chat.completion"] = "chat.completion"
    created: int
    model: str
    choices: List[ChatChoice]
    usage: Usage = Field(default_factory=Usage)


class SwarmStatus(BaseModel):
    object: Literal["swarm.status"] = "swarm.status"
    active: bool
    id: Optional[str] = None
    node_id: Optional[str] = None
    managers: Optional[int] = None
    nodes: Optional[int] = None


class ErrorEnvelope(BaseModel):
    object: Literal["error"] = "error"
    error: str
    type: str = "internal_error"
    details: Optional[Dict[str, Any]] = None


Envelope = Annotated[
    Union[ObjectList, CompletionResponse, ChatCompletionResponse, SwarmStatus, ErrorEnvelope],
    Field(discriminator="object"),
]

envelope_adapter: TypeAdapter = TypeAdapter(Envelope)


# ============================================================================
# Plain responses
# ============================================================================

class HealthResponse(BaseModel):
    status: str = "healthy"
    timestamp: str


class SwarmInitResponse(BaseModel):
    success: bool


class ShutdownResponse(BaseModel):
    success: bool
    message: str
    timestamp: str
