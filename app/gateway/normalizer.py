"""Stream Normalizer: turns a provider's SSE byte stream into unified events.

Pipeline per session:
  bytes ──► SSEDecoder (incremental UTF-8, newline framing, ``data:`` payloads)
        ──► family parser (OpenAI choices/delta, Anthropic typed events)
        ──► TextDelta / ToolInvocation, in upstream order

The whole session is bounded by a wall-clock budget (StreamTimeout) and
polls a CancellationToken before every read and after every emitted event;
cancellation closes the upstream response and ends the session cleanly.
"""

from __future__ import annotations

import asyncio
import codecs
import inspect
import json
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any

import httpx

from app.gateway.types import (
    CancellationToken,
    ProviderFamily,
    StreamEvent,
    StreamRequest,
    StreamResult,
    TextDelta,
    ToolInvocation,
)
from app.gateway.vendor_adapters import BaseVendorAdapter, UpstreamRejected, extract_error_message

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"
MAX_SSE_LINE_CHARS = 1 << 20


class StreamTimeout(Exception):
    """The session exceeded its wall-clock budget."""

    error_code = "STREAM_TIMEOUT"

    def __init__(self, budget_seconds: float):
        super().__init__(f"Stream timeout: no completion within {budget_seconds:g}s")
        self.budget_seconds = budget_seconds


# ---------------------------------------------------------------------------
# SSE framing
# ---------------------------------------------------------------------------


class SSEDecoder:
    """Incremental ``data:`` line extractor.

    Bytes may split anywhere, including inside a multi-byte character or a
    line; incomplete tails are kept until more bytes arrive. A line longer
    than ``max_line_chars`` is dropped as malformed, up to its newline.
    """

    def __init__(self, max_line_chars: int = MAX_SSE_LINE_CHARS) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._discarding = False
        self.max_line_chars = max_line_chars

    def feed(self, chunk: bytes) -> list[str]:
        text = self._decoder.decode(chunk)
        if self._discarding:
            newline = text.find("\n")
            if newline < 0:
                return []
            text = text[newline + 1 :]
            self._discarding = False
        self._buffer += text
        *lines, self._buffer = self._buffer.split("\n")
        if len(self._buffer) > self.max_line_chars:
            self._drop(len(self._buffer))
            self._buffer = ""
            self._discarding = True
        payloads = []
        for line in lines:
            if len(line) > self.max_line_chars:
                self._drop(len(line))
                continue
            payload = self._payload(line)
            if payload is not None:
                payloads.append(payload)
        return payloads

    def flush(self) -> list[str]:
        self._buffer += self._decoder.decode(b"", final=True)
        tail, self._buffer = self._buffer, ""
        if self._discarding:
            self._discarding = False
            return []
        payload = self._payload(tail)
        return [payload] if payload is not None else []

    @staticmethod
    def _payload(line: str) -> str | None:
        line = line.rstrip("\r")
        if not line.startswith("data:"):
            return None  # blank separators, event:/id:/retry: fields, comments
        return line[5:].strip()

    def _drop(self, size: int) -> None:
        logger.warning("Dropping oversized SSE line (%d chars, limit %d)", size, self.max_line_chars)


# ---------------------------------------------------------------------------
# Tool-call reassembly
# ---------------------------------------------------------------------------


@dataclass
class ToolCallAccumulator:
    key: int | str | None = None  # provider index (OpenAI) or block id (Anthropic)
    name: str = ""
    arguments: str = ""

    def finalize(self) -> ToolInvocation | None:
        if not self.name:
            logger.warning("Discarding tool call without a name (key=%s)", self.key)
            return None
        try:
            args = json.loads(self.arguments) if self.arguments.strip() else {}
        except ValueError as e:
            logger.warning("Discarding tool call %s: arguments are not valid JSON (%s)", self.name, e)
            return None
        if not isinstance(args, dict):
            logger.warning("Discarding tool call %s: arguments are %s, expected object", self.name, type(args).__name__)
            return None
        return ToolInvocation(tool_name=self.name, arguments=args)


class StreamParser(ABC):
    """Per-session state machine for one provider family."""

    provider: ProviderFamily

    def __init__(self) -> None:
        self.pending: ToolCallAccumulator | None = None
        self.input_tokens: int | None = None
        self.output_tokens: int | None = None

    @abstractmethod
    def feed(self, event: dict[str, Any]) -> list[StreamEvent]:
        """Consume one decoded JSON event and return the unified events it completes."""

    def finish(self) -> list[StreamEvent]:
        """End of stream: a call still open is complete."""
        return self._close_pending()

    def _close_pending(self) -> list[StreamEvent]:
        pending, self.pending = self.pending, None
        if pending is None:
            return []
        invocation = pending.finalize()
        return [invocation] if invocation else []


class OpenAIStreamParser(StreamParser):
    provider = ProviderFamily.OPENAI

    def feed(self, event: dict[str, Any]) -> list[StreamEvent]:
        if event.get("error"):
            error = event["error"]
            message = error.get("message", "stream error") if isinstance(error, dict) else str(error)
            raise UpstreamRejected(self.provider.value, 502, message)

        usage = event.get("usage")
        if isinstance(usage, dict):
            self.input_tokens = usage.get("prompt_tokens", self.input_tokens)
            self.output_tokens = usage.get("completion_tokens", self.output_tokens)

        choices = event.get("choices") or []
        if not choices:
            return []
        choice = choices[0]
        delta = choice.get("delta") or {}
        out: list[StreamEvent] = []

        if delta.get("content"):
            out.append(TextDelta(delta["content"]))

        for fragment in delta.get("tool_calls") or []:
            index = fragment.get("index", 0)
            if self.pending is not None and self.pending.key != index:
                out.extend(self._close_pending())
            if self.pending is None:
                self.pending = ToolCallAccumulator(key=index)
            function = fragment.get("function") or {}
            if function.get("name"):
                self.pending.name = function["name"]
            if function.get("arguments"):
                self.pending.arguments += function["arguments"]

        if choice.get("finish_reason") == "tool_calls" and self.pending is not None and self.pending.name:
            out.extend(self._close_pending())
        return out


# Anthropic error types that map onto an HTTP-ish status for classification
_ANTHROPIC_ERROR_STATUS = {
    "rate_limit_error": 429,
    "overloaded_error": 529,
    "api_error": 500,
    "invalid_request_error": 400,
    "authentication_error": 401,
    "permission_error": 403,
}


class AnthropicStreamParser(StreamParser):
    provider = ProviderFamily.ANTHROPIC

    def feed(self, event: dict[str, Any]) -> list[StreamEvent]:
        kind = event.get("type")

        if kind == "content_block_delta":
            delta = event.get("delta") or {}
            if delta.get("type") == "text_delta" and delta.get("text"):
                return [TextDelta(delta["text"])]
            if delta.get("type") == "input_json_delta" and self.pending is not None:
                self.pending.arguments += delta.get("partial_json", "")
            return []

        if kind == "content_block_start":
            block = event.get("content_block") or {}
            if block.get("type") != "tool_use":
                return []
            out = self._close_pending()
            self.pending = ToolCallAccumulator(key=block.get("id"), name=block.get("name", ""))
            return out

        if kind == "content_block_stop":
            return self._close_pending()

        if kind == "message_start":
            usage = (event.get("message") or {}).get("usage") or {}
            self.input_tokens = usage.get("input_tokens", self.input_tokens)
            self.output_tokens = usage.get("output_tokens", self.output_tokens)
        elif kind == "message_delta":
            usage = event.get("usage") or {}
            self.output_tokens = usage.get("output_tokens", self.output_tokens)
        elif kind == "error":
            error = event.get("error") or {}
            status = _ANTHROPIC_ERROR_STATUS.get(error.get("type", ""), 502)
            raise UpstreamRejected(self.provider.value, status, error.get("message", "stream error"))
        return []


PARSER_REGISTRY: dict[ProviderFamily, type[StreamParser]] = {
    ProviderFamily.OPENAI: OpenAIStreamParser,
    ProviderFamily.ANTHROPIC: AnthropicStreamParser,
}


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


class StreamSession:
    """One upstream stream; iterate ``events()`` once, then read ``result``."""

    def __init__(
        self,
        adapter: BaseVendorAdapter,
        request: StreamRequest,
        client: httpx.AsyncClient | None,
        cancel: CancellationToken,
        budget_seconds: float,
        connect_timeout: float,
    ):
        self.adapter = adapter
        self.request = request
        self.cancel = cancel
        self.budget_seconds = budget_seconds
        self.result = StreamResult()
        self._client = client
        self._connect_timeout = connect_timeout
        self._parser = PARSER_REGISTRY[adapter.family]()
        self._decoder = SSEDecoder()

    def _remaining(self, deadline: float) -> float:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise StreamTimeout(self.budget_seconds)
        return remaining

    async def events(self) -> AsyncIterator[StreamEvent]:
        start = time.monotonic()
        deadline = start + self.budget_seconds
        owns_client = self._client is None
        client = self._client or httpx.AsyncClient(
            timeout=httpx.Timeout(self.budget_seconds, connect=self._connect_timeout)
        )
        provider = self.adapter.family.value
        response: httpx.Response | None = None
        try:
            http_request = client.build_request(
                "POST",
                self.adapter.api_url,
                json=self.adapter.build_payload(self.request),
                headers=self.adapter.headers(),
            )
            try:
                response = await asyncio.wait_for(client.send(http_request, stream=True), self._remaining(deadline))
            except asyncio.TimeoutError:
                raise StreamTimeout(self.budget_seconds)
            except httpx.ConnectTimeout as e:
                raise UpstreamRejected(provider, 504, f"connect timeout: {e}")
            except httpx.TransportError as e:
                raise UpstreamRejected(provider, 502, f"connection failed: {e}")

            if not response.is_success:
                body = await response.aread()
                message = extract_error_message(body, response.reason_phrase or f"HTTP {response.status_code}")
                raise UpstreamRejected(provider, response.status_code, message)

            chunks = response.aiter_bytes()
            while True:
                if self.cancel.cancelled:
                    self.result.aborted = True
                    return
                try:
                    chunk = await asyncio.wait_for(anext(chunks), self._remaining(deadline))
                except StopAsyncIteration:
                    break
                except asyncio.TimeoutError:
                    raise StreamTimeout(self.budget_seconds)
                except httpx.TimeoutException:
                    raise StreamTimeout(self.budget_seconds)
                except httpx.TransportError as e:
                    raise UpstreamRejected(provider, 502, f"stream interrupted: {e}")

                for event in self._decode(self._decoder.feed(chunk)):
                    yield event
                    if self.cancel.cancelled:
                        self.result.aborted = True
                        return

            for event in [*self._decode(self._decoder.flush()), *self._track(self._parser.finish())]:
                yield event
                if self.cancel.cancelled:
                    self.result.aborted = True
                    return
        finally:
            self.result.elapsed_ms = int((time.monotonic() - start) * 1000)
            self.result.input_tokens = self._parser.input_tokens
            self.result.output_tokens = self._parser.output_tokens
            if response is not None:
                await response.aclose()
            if owns_client:
                await client.aclose()

    def _decode(self, payloads: list[str]) -> list[StreamEvent]:
        out: list[StreamEvent] = []
        for data in payloads:
            if not data or data == DONE_SENTINEL:
                continue
            try:
                obj = json.loads(data)
            except ValueError:
                logger.warning("Skipping malformed %s frame: %.200s", self.adapter.family.value, data)
                continue
            if isinstance(obj, dict):
                out.extend(self._track(self._parser.feed(obj)))
        return out

    def _track(self, events: list[StreamEvent]) -> list[StreamEvent]:
        for event in events:
            if isinstance(event, TextDelta):
                self.result.total_chars += len(event.text)
            else:
                self.result.tool_calls += 1
        return events


# ---------------------------------------------------------------------------
# Normalizer
# ---------------------------------------------------------------------------

TextCallback = Callable[[str], "bool | None | Awaitable[bool | None]"]
ToolCallback = Callable[[ToolInvocation], "None | Awaitable[None]"]


async def _call(callback, arg):
    value = callback(arg)
    if inspect.isawaitable(value):
        value = await value
    return value


class StreamNormalizer:
    """Opens provider streams and exposes them as unified event sequences."""

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        budget_seconds: float = 280.0,
        connect_timeout: float = 10.0,
    ):
        self.client = client
        self.budget_seconds = budget_seconds
        self.connect_timeout = connect_timeout

    def open(
        self,
        adapter: BaseVendorAdapter,
        request: StreamRequest,
        cancel: CancellationToken | None = None,
    ) -> StreamSession:
        return StreamSession(
            adapter,
            request,
            self.client,
            cancel or CancellationToken(),
            self.budget_seconds,
            self.connect_timeout,
        )

    async def stream(
        self,
        adapter: BaseVendorAdapter,
        request: StreamRequest,
        on_text_delta: TextCallback,
        on_tool_call: ToolCallback | None = None,
        cancel: CancellationToken | None = None,
    ) -> StreamResult:
        """Callback form: ``on_text_delta`` returning False cancels the stream.

        Raises UpstreamRejected or StreamTimeout; cancellation is not an error
        and returns ``aborted=True``.
        """
        session = self.open(adapter, request, cancel)
        async with aclosing(session.events()) as events:
            async for event in events:
                if isinstance(event, TextDelta):
                    if await _call(on_text_delta, event.text) is False:
                        session.cancel.cancel()
                        session.result.aborted = True
                        break
                elif on_tool_call is not None:
                    await _call(on_tool_call, event)
        return session.result
