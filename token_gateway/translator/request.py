from __future__ import annotations

import hashlib
import time
import uuid
from typing import Any

from pydantic import BaseModel, Field

from token_gateway.pool.models import ConversationMode, resolve_mode
from token_gateway.translator.messages import ChatCompletionRequest, ChatMessage
from token_gateway.translator.tools import agent_tool_definitions

DEFAULT_PREFIX = "You are AI assistant,help me to solve problems!"
DEFAULT_LANGUAGE = "HTML"
AGENT_MESSAGE_PREFIX = (
    "You are claude3.7. No reply may create, modify or delete files; "
    "provide all content directly in the reply!"
)
AGENT_GUIDELINES = (
    "# Response rules\n"
    "- Always answer in Chinese\n"
    "- Do not call any tools\n"
    "- For questions that would need a web search, answer from existing knowledge"
)
CHAT_GUIDELINES = "Always answer in Chinese"
PROBE_MESSAGE = "hello, what is your name"
PROBE_GUIDELINES = (
    "You are a helpful assistant, you can help me to solve problems "
    "and always answer in Chinese."
)

# Substring checks in priority order; the first hit wins, so "c" goes last.
_LANGUAGE_MARKERS: tuple[tuple[str, str], ...] = (
    ("html", "HTML"),
    ("python", "Python"),
    ("javascript", "JavaScript"),
    ("go", "Go"),
    ("rust", "Rust"),
    ("java", "Java"),
    ("c++", "C++"),
    ("c#", "C#"),
    ("php", "PHP"),
    ("ruby", "Ruby"),
    ("swift", "Swift"),
    ("kotlin", "Kotlin"),
    ("typescript", "TypeScript"),
    ("c", "C"),
)


class ChatHistoryEntry(BaseModel):
    request_message: str
    response_text: str
    request_id: str
    request_nodes: list[dict[str, Any]] = Field(default_factory=list)
    response_nodes: list[dict[str, Any]] = Field(default_factory=list)


class Blobs(BaseModel):
    checkpoint_id: str | None = None
    added_blobs: list[str] = Field(default_factory=list)
    deleted_blobs: list[str] = Field(default_factory=list)


class UpstreamChatRequest(BaseModel):
    chat_history: list[ChatHistoryEntry] = Field(default_factory=list)
    message: str = ""
    agent_memories: str = ""
    mode: ConversationMode = ConversationMode.AGENT
    prefix: str = DEFAULT_PREFIX
    suffix: str = " "
    lang: str = DEFAULT_LANGUAGE
    path: str = ""
    user_guidelines: str = ""
    blobs: Blobs = Field(default_factory=Blobs)
    user_guided_blobs: list[str] = Field(default_factory=list)
    external_source_ids: list[str] = Field(default_factory=list)
    feature_detection_flags: dict[str, bool] = Field(
        default_factory=lambda: {"support_raw_output": True}
    )
    tool_definitions: list[dict[str, Any]] = Field(default_factory=list)
    nodes: list[dict[str, Any]] = Field(default_factory=list)

    def history_pairs(self) -> list[tuple[str, str]]:
        return [(entry.request_message, entry.response_text) for entry in self.chat_history]

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


def detect_language(text: str) -> str:
    lowered = text.lower()
    for marker, name in _LANGUAGE_MARKERS:
        if marker in lowered:
            return name
    return DEFAULT_LANGUAGE


def generate_checkpoint_id() -> str:
    return hashlib.sha256(str(time.time_ns()).encode("utf-8")).hexdigest()


def _response_node(text: str) -> dict[str, Any]:
    return {
        "id": 0,
        "type": 0,
        "content": text,
        "tool_use": {"tool_use_id": "", "tool_name": "", "input_json": ""},
        "agent_memory": {"content": ""},
    }


def split_conversation(
    messages: list[ChatMessage],
) -> tuple[list[ChatHistoryEntry], str]:
    """Pair earlier turns as (request, response) oldest first.

    Everything before the final message is consumed two at a time; a dangling
    odd message is dropped. The final message is returned as the live query.
    """
    if not messages:
        return [], ""
    earlier = messages[:-1]
    history: list[ChatHistoryEntry] = []
    for index in range(0, len(earlier) - 1, 2):
        response_text = earlier[index + 1].text()
        history.append(
            ChatHistoryEntry(
                request_message=earlier[index].text(),
                response_text=response_text,
                request_id=str(uuid.uuid4()),
                response_nodes=[_response_node(response_text)],
            )
        )
    return history, messages[-1].text()


def to_upstream(request: ChatCompletionRequest) -> UpstreamChatRequest:
    mode = resolve_mode(request.model)
    history, live_message = split_conversation(request.messages)
    upstream = UpstreamChatRequest(
        chat_history=history,
        mode=mode,
        lang=detect_language(live_message),
        blobs=Blobs(checkpoint_id=generate_checkpoint_id()),
    )
    if mode is ConversationMode.AGENT:
        upstream.message = f"{AGENT_MESSAGE_PREFIX}\n{live_message}"
        upstream.user_guidelines = AGENT_GUIDELINES
        upstream.tool_definitions = agent_tool_definitions()
    else:
        upstream.message = live_message
        upstream.user_guidelines = CHAT_GUIDELINES
    return upstream


def probe_request() -> UpstreamChatRequest:
    return UpstreamChatRequest(
        message=PROBE_MESSAGE,
        mode=ConversationMode.CHAT,
        user_guidelines=PROBE_GUIDELINES,
    )
