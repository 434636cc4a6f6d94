from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from token_gateway.errors import MalformedRequestError


class ContentPart(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str | None = None
    text: str | None = None


class ChatMessage(BaseModel):
    """One inbound message; ``content`` is either plain text or a part list."""

    model_config = ConfigDict(extra="ignore")

    role: str = "user"
    content: str | list[ContentPart] | None = None

    def text(self) -> str:
        if self.content is None:
            return ""
        if isinstance(self.content, str):
            return self.content
        return "".join(part.text for part in self.content if part.text is not None)


class ChatCompletionRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    model: str = ""
    messages: list[ChatMessage] = Field(default_factory=list)
    stream: bool = False
    temperature: float | None = None
    max_tokens: int | None = None


def parse_chat_request(payload: Any) -> ChatCompletionRequest:
    if not isinstance(payload, dict):
        raise MalformedRequestError("invalid request body: expected a JSON object")
    try:
        return ChatCompletionRequest.model_validate(payload)
    except ValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()))
        detail = first.get("msg", "validation failed")
        message = f"invalid request body: {location} {detail}".replace("  ", " ")
        raise MalformedRequestError(message.strip()) from exc
