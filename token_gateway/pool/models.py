from __future__ import annotations

import json
import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any

CREDENTIAL_KEY_PREFIX = "token:"
USAGE_KEY_PREFIX = "token_usage:"
CHAT_USAGE_KEY_PREFIX = "token_usage_chat:"
AGENT_USAGE_KEY_PREFIX = "token_usage_agent:"
REQUEST_STATUS_KEY_PREFIX = "token_status:"
COOL_STATUS_KEY_PREFIX = "token_cool_status:"


class CredentialStatus(str, Enum):
    ACTIVE = "active"
    DISABLED = "disabled"


class ConversationMode(str, Enum):
    CHAT = "CHAT"
    AGENT = "AGENT"


def resolve_mode(model: str | None) -> ConversationMode:
    normalized = (model or "").strip().lower()
    if normalized.endswith("-chat"):
        return ConversationMode.CHAT
    return ConversationMode.AGENT


def credential_key(token: str) -> str:
    return f"{CREDENTIAL_KEY_PREFIX}{token}"


def token_from_credential_key(key: str) -> str:
    return key[len(CREDENTIAL_KEY_PREFIX) :]


def usage_key(token: str, mode: ConversationMode | None = None) -> str:
    if mode is ConversationMode.CHAT:
        return f"{CHAT_USAGE_KEY_PREFIX}{token}"
    if mode is ConversationMode.AGENT:
        return f"{AGENT_USAGE_KEY_PREFIX}{token}"
    return f"{USAGE_KEY_PREFIX}{token}"


def mask_token(token: str) -> str:
    if len(token) <= 8:
        return "***"
    return f"{token[:4]}...{token[-4:]}"


@dataclass(slots=True)
class Credential:
    token: str
    tenant_url: str
    status: CredentialStatus = CredentialStatus.ACTIVE
    remark: str = ""

    @property
    def label(self) -> str:
        return mask_token(self.token)


@dataclass(slots=True)
class RequestState:
    in_progress: bool = False
    last_request_at: float = 0.0

    def to_json(self) -> str:
        return json.dumps(asdict(self), separators=(",", ":"))

    @classmethod
    def from_json(cls, raw: str | None) -> RequestState:
        payload = _load_json_object(raw)
        return cls(
            in_progress=bool(payload.get("in_progress", False)),
            last_request_at=_to_float(payload.get("last_request_at")),
        )

    def seconds_since_last_request(self, now: float | None = None) -> float:
        return (time.time() if now is None else now) - self.last_request_at


@dataclass(slots=True)
class CoolState:
    in_cool: bool = False
    cool_end: float = 0.0

    def to_json(self) -> str:
        return json.dumps(asdict(self), separators=(",", ":"))

    @classmethod
    def from_json(cls, raw: str | None, now: float | None = None) -> CoolState:
        payload = _load_json_object(raw)
        state = cls(
            in_cool=bool(payload.get("in_cool", False)),
            cool_end=_to_float(payload.get("cool_end")),
        )
        if (time.time() if now is None else now) > state.cool_end:
            state.in_cool = False
        return state


@dataclass(slots=True)
class CredentialUsage:
    total: int = 0
    chat: int = 0
    agent: int = 0

    def for_mode(self, mode: ConversationMode) -> int:
        if mode is ConversationMode.CHAT:
            return self.chat
        return self.agent


@dataclass(slots=True)
class CredentialView:
    """Listing row: the record joined with usage and cooldown data."""

    token: str
    tenant_url: str
    remark: str
    usage_count: int
    chat_usage_count: int
    agent_usage_count: int
    in_cool: bool
    cool_end: float | None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _load_json_object(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    payload = json.loads(raw)
    if not isinstance(payload, dict):
        raise ValueError(f"expected a JSON object, got {type(payload).__name__}")
    return payload


def _to_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0
