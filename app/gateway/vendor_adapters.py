"""Vendor-Specific Adapters: request-side protocol for each completion provider.

Each adapter turns a StreamRequest into the provider's HTTP request (URL,
headers, JSON body). Decoding the streamed response is the normalizer's job.

Provider-specific behaviors:
  - OpenAI: system prompt stays in the message list, tools wrapped as
    {"type": "function", "function": {...}}
  - Anthropic: system prompt moved to the top-level "system" field,
    tools declared as {name, description, input_schema}, max_tokens required
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any

from app.gateway.types import ChatMessage, ProviderFamily, Role, StreamRequest, ToolSpec

logger = logging.getLogger(__name__)


class UpstreamRejected(Exception):
    """Non-2xx from a provider, or an error event inside its stream."""

    def __init__(self, provider: str, status_code: int, provider_message: str):
        super().__init__(f"{provider} API error: {provider_message}")
        self.provider = provider
        self.status_code = status_code
        self.provider_message = provider_message

    @property
    def error_code(self) -> str:
        if self.status_code == 429:
            return "UPSTREAM_RATE_LIMITED"
        if self.status_code >= 500:
            return "UPSTREAM_UNAVAILABLE"
        return "UPSTREAM_REJECTED"


def extract_error_message(body: bytes, fallback: str) -> str:
    """Pull ``error.message`` out of a provider error body."""
    try:
        data = json.loads(body)
    except ValueError:
        return fallback
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str) and error:
            return error
    return fallback


def conversation_turns(request: StreamRequest) -> list[ChatMessage]:
    """Prior messages plus the new user turn, skipping an empty new turn."""
    turns = list(request.messages)
    if request.message.strip():
        turns.append(ChatMessage(role=Role.USER, content=request.message))
    return turns


class BaseVendorAdapter(ABC):
    """Base class for all vendor adapters."""

    family: ProviderFamily
    default_model: str = ""
    api_url: str = ""

    def __init__(self, api_key: str, api_url: str | None = None, **kwargs):
        self.api_key = api_key
        if api_url:
            self.api_url = api_url

    @abstractmethod
    def headers(self) -> dict[str, str]: ...

    @abstractmethod
    def build_payload(self, request: StreamRequest) -> dict[str, Any]: ...

    @abstractmethod
    def tool_declaration(self, tool: ToolSpec) -> dict[str, Any]: ...

    def model_for(self, request: StreamRequest) -> str:
        return request.model or self.default_model


# ---------------------------------------------------------------------------
# OpenAI (provider family A)
# ---------------------------------------------------------------------------


class OpenAIAdapter(BaseVendorAdapter):
    family = ProviderFamily.OPENAI
    default_model = "gpt-4o"
    api_url = "https://api.openai.com/v1/chat/completions"

    def headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }

    def tool_declaration(self, tool: ToolSpec) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": tool.name,
                "description": tool.description,
                "parameters": tool.parameters,
            },
        }

    def build_payload(self, request: StreamRequest) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.model_for(request),
            "messages": [{"role": m.role.value, "content": m.content} for m in conversation_turns(request)],
            "stream": True,
        }
        if request.tools:
            payload["tools"] = [self.tool_declaration(t) for t in request.tools]
        return payload


# ---------------------------------------------------------------------------
# Anthropic (provider family B)
# ---------------------------------------------------------------------------


class AnthropicAdapter(BaseVendorAdapter):
    family = ProviderFamily.ANTHROPIC
    default_model = "claude-sonnet-4-5-20250929"
    api_url = "https://api.anthropic.com/v1/messages"

    def __init__(
        self,
        api_key: str,
        api_url: str | None = None,
        api_version: str = "2023-06-01",
        max_tokens: int = 4096,
        **kwargs,
    ):
        super().__init__(api_key, api_url=api_url, **kwargs)
        self.api_version = api_version
        self.max_tokens = max_tokens

    def headers(self) -> dict[str, str]:
        return {
            "x-api-key": self.api_key,
            "anthropic-version": self.api_version,
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }

    def tool_declaration(self, tool: ToolSpec) -> dict[str, Any]:
        return {
            "name": tool.name,
            "description": tool.description,
            "input_schema": tool.parameters,
        }

    def build_payload(self, request: StreamRequest) -> dict[str, Any]:
        turns = conversation_turns(request)
        system_parts = [m.content for m in turns if m.role == Role.SYSTEM]
        payload: dict[str, Any] = {
            "model": self.model_for(request),
            "max_tokens": self.max_tokens,
            "messages": [{"role": m.role.value, "content": m.content} for m in turns if m.role != Role.SYSTEM],
            "stream": True,
        }
        if system_parts:
            payload["system"] = "\n\n".join(system_parts)
        if request.tools:
            payload["tools"] = [self.tool_declaration(t) for t in request.tools]
        return payload


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

ADAPTER_REGISTRY: dict[ProviderFamily, type[BaseVendorAdapter]] = {
    ProviderFamily.OPENAI: OpenAIAdapter,
    ProviderFamily.ANTHROPIC: AnthropicAdapter,
}


def get_adapter(family: ProviderFamily, api_key: str, **kwargs) -> BaseVendorAdapter:
    """Factory: get the appropriate adapter for a provider family."""
    cls = ADAPTER_REGISTRY.get(family)
    if cls is None:
        raise ValueError(f"No adapter registered for provider: {family}")
    return cls(api_key=api_key, **kwargs)
