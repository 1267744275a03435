from pydantic import BaseModel
from typing import Any, Optional, List, Literal


class ChatData(BaseModel, extra="allow"):
    model: Optional[str] = None
    messages: Any = None
    stream: Optional[bool] = False
    size: Any = None
    user: Optional[str] = None


class ImagesGenData(BaseModel, extra="allow"):
    prompt: Any = None
    model: Optional[str] = None
    n: Any = 1
    size: Any = "1024x1024"
    response_format: Optional[str] = "url"


# OpenAI typing
class ImageData(BaseModel):
    url: Optional[str] = None
    b64_json: Optional[str] = None


class ImagesResponse(BaseModel):
    created: int
    data: List[ImageData]
    model: str


class ModelCard(BaseModel):
    id: str
    object: Literal["model"] = "model"
    created: int
    owned_by: str
    permission: List[Any] = []
    root: str
    parent: Optional[str] = None


class MessageResponse(BaseModel):
    role: Optional[Literal["user", "system", "assistant", "tool"]] = None
    content: Optional[str] = None


class ChatCompletionUsage(BaseModel):
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


# Non-Streaming
class ChatCompletionResponseChoice(BaseModel):
    index: int
    message: MessageResponse
    finish_reason: Optional[Literal["stop", "length", "content_filter"]] = None


class ChatCompletionResponse(BaseModel):
    id: str
    choices: List[ChatCompletionResponseChoice]
    created: int  # Unix timestamp (in seconds)
    model: str
    object: Literal["chat.completion"] = "chat.completion"
    usage: ChatCompletionUsage


# Streaming
class ChatCompletionChunkChoice(BaseModel):
    index: int
    delta: MessageResponse
    finish_reason: Optional[Literal["stop", "length", "content_filter"]] = None


class ChatCompletionChunk(BaseModel):
    id: str
    choices: List[ChatCompletionChunkChoice]
    object: Literal["chat.completion.chunk"] = "chat.completion.chunk"
    created: int
    model: str
