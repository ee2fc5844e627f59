from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


Role = Literal["system", "user", "assistant"]


class TextPart(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ImageUrl(BaseModel):
    url: str


class ImagePart(BaseModel):
    """Image content part; ``url`` is a data URI or a caller-supplied http(s) URL."""

    type: Literal["image_url"] = "image_url"
    image_url: ImageUrl

    @classmethod
    def from_url(cls, url: str) -> "ImagePart":
        return cls(image_url=ImageUrl(url=url))

    @property
    def source_url(self) -> str:
        return self.image_url.url


ContentPart = Annotated[Union[TextPart, ImagePart], Field(discriminator="type")]


class ChatTurn(BaseModel):
    role: Role
    content: Union[str, List[ContentPart]] = ""

    def text(self) -> str:
        """Plain-text view of the content; image parts are skipped."""
        if isinstance(self.content, str):
            return self.content
        return "".join(part.text for part in self.content if isinstance(part, TextPart))


class ChatRequest(BaseModel):
    """Upstream chat completion request as built by the request transformer."""

    turns: List[ChatTurn]
    model: str
    stream: bool = True
    temperature: float = 0.7
    max_tokens: int = 2000

    @property
    def image_count(self) -> int:
        return sum(
            1
            for turn in self.turns
            if not isinstance(turn.content, str)
            for part in turn.content
            if isinstance(part, ImagePart)
        )

    def to_upstream_payload(self) -> Dict[str, Any]:
        """Translate into the OpenAI chat-completions wire schema."""
        return {
            "model": self.model,
            "messages": [turn.model_dump() for turn in self.turns],
            "stream": self.stream,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }


# =============================================================================
# API BODIES
# =============================================================================


class ChatPayload(BaseModel):
    """Body of ``POST /chat``."""

    model_config = ConfigDict(populate_by_name=True)

    messages: List[ChatTurn] = Field(min_length=1)
    conversation_id: Optional[str] = Field(None, alias="conversationId")
    images: List[str] = Field(default_factory=list)


class StopRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    stream_id: str = Field(alias="streamId", min_length=1)


class StopResponse(BaseModel):
    success: bool = True
    message: str = "Stream stopped"


class UploadResponse(BaseModel):
    urls: List[str]


class HealthResponse(BaseModel):
    status: str = "ok"
    timestamp: str
    service: str
    version: str
    model: str


class ErrorResponse(BaseModel):
    error: str
