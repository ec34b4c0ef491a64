"""Core types shared by the streaming gateway and the speech path."""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ProviderFamily(str, Enum):
    """Upstream completion providers, one per streaming wire format."""

    OPENAI = "openai"  # choices[0].delta frames terminated by [DONE]
    ANTHROPIC = "anthropic"  # typed content_block_* events, no terminator


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


# ---------------------------------------------------------------------------
# Request side
# ---------------------------------------------------------------------------


@dataclass
class ChatMessage:
    role: Role
    content: str


@dataclass
class ToolSpec:
    """Caller-neutral tool declaration; adapters translate it per provider."""

    name: str
    description: str = ""
    parameters: dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})


@dataclass
class StreamRequest:
    """Everything the normalizer needs to open one upstream stream.

    ``messages`` is the prior conversation (it may start with a system
    message); ``message`` is the new user turn and may be empty for
    regenerate-style requests.
    """

    provider: ProviderFamily
    model: str
    api_key: str
    message: str = ""
    messages: list[ChatMessage] = field(default_factory=list)
    tools: list[ToolSpec] = field(default_factory=list)
    request_id: str = field(default_factory=lambda: f"req_{uuid.uuid4().hex[:16]}")


# ---------------------------------------------------------------------------
# Unified stream events
# ---------------------------------------------------------------------------


@dataclass
class TextDelta:
    text: str


@dataclass
class ToolInvocation:
    """A fully reassembled tool call with parsed arguments."""

    tool_name: str
    arguments: dict[str, Any]
    id: str = field(default_factory=lambda: f"tool_{uuid.uuid4().hex[:20]}")
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "toolName": self.tool_name,
            "arguments": self.arguments,
            "timestamp": self.timestamp.isoformat(),
        }


StreamEvent = TextDelta | ToolInvocation


@dataclass
class StreamResult:
    total_chars: int = 0
    aborted: bool = False
    tool_calls: int = 0
    input_tokens: int | None = None
    output_tokens: int | None = None
    elapsed_ms: int = 0

    @property
    def tokens_used(self) -> int | None:
        if self.input_tokens is None and self.output_tokens is None:
            return None
        return (self.input_tokens or 0) + (self.output_tokens or 0)


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class CancellationToken:
    """Caller-disconnect signal polled by the decode loop."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()
