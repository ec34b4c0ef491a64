"""Tests for the chat gateway orchestration.

Covers:
  - Admission before any upstream call (denials raise, no telemetry)
  - Provider resolution (caller key, configured key, missing key)
  - Model selection (explicit, configured default, adapter default)
  - SSE relay: chunk / toolInvocation frames, [DONE], error envelopes
  - Client disconnect mid-stream (clean abort, no error frame)
  - Request / response / error telemetry
"""

from __future__ import annotations

import json
from unittest.mock import AsyncMock

import httpx
import pytest

from app.gateway.admission import (
    AdmissionDenied,
    AdmissionGate,
    BanType,
    CallerIdentity,
    Decision,
    DecisionReason,
    QuotaCategory,
)
from app.gateway.gateway import DONE_FRAME, ChatCall, ChatContext, ChatGateway, ProviderNotConfigured, sse_frame
from app.gateway.normalizer import StreamNormalizer
from app.gateway.types import ChatMessage, ProviderFamily, Role, ToolSpec

OPENAI_PATH = "/v1/chat/completions"
ANTHROPIC_PATH = "/v1/messages"


def allowed() -> Decision:
    return Decision(True, DecisionReason.ALLOWED, QuotaCategory.TEXT, 1, 100)


def text_frame(text: str) -> dict:
    return {"choices": [{"delta": {"content": text}}]}


def frames_of(body: list[str]) -> list[dict | str]:
    out: list[dict | str] = []
    for frame in body:
        assert frame.startswith("data: ") and frame.endswith("\n\n")
        data = frame[6:-2]
        out.append(data if data == "[DONE]" else json.loads(data))
    return out


async def never_disconnected() -> bool:
    return False


@pytest.fixture
def gate() -> AsyncMock:
    mock = AsyncMock(spec=AdmissionGate)
    mock.admit.return_value = allowed()
    return mock


@pytest.fixture
def chat(gate, http_client, recorder) -> ChatGateway:
    return ChatGateway(
        admission=gate,
        normalizer=StreamNormalizer(client=http_client, budget_seconds=5),
        provider_keys={ProviderFamily.OPENAI: "sk-configured", ProviderFamily.ANTHROPIC: ""},
        default_models={ProviderFamily.OPENAI: "gpt-4o-mini"},
        recorder=recorder,
    )


def make_call(**kwargs) -> ChatCall:
    defaults = dict(
        provider=ProviderFamily.OPENAI,
        identity=CallerIdentity(device_id="dev-1", user_id="u-1", ip_address="10.0.0.1"),
        message="How do I stay motivated?",
        prompt_type="coach_chat",
        context=ChatContext(user_id="u-1", session_id="s-1", coach_id="c-1", feature_name="chat"),
    )
    defaults.update(kwargs)
    return ChatCall(**defaults)


async def collect(chat: ChatGateway, call: ChatCall, is_disconnected=never_disconnected) -> list[str]:
    return [frame async for frame in await chat.open_stream(call, is_disconnected)]


# ==========================================================================
# Admission and resolution
# ==========================================================================


class TestAdmissionAndResolution:
    async def test_denied_raises_before_upstream(self, chat, gate, upstream, recorder):
        gate.admit.return_value = Decision(
            False, DecisionReason.BANNED, QuotaCategory.TEXT, ban_type=BanType.DEVICE, ban_reason="abuse"
        )
        with pytest.raises(AdmissionDenied) as exc_info:
            await chat.open_stream(make_call(), never_disconnected)
        assert exc_info.value.status_code == 403
        assert upstream.calls == []
        assert recorder.events == []

    async def test_admission_inputs(self, chat, gate, upstream, sse):
        upstream.add("POST", OPENAI_PATH, lambda r: sse("[DONE]"))
        call = make_call(
            caller_api_key="sk-caller",
            context=ChatContext(user_id="u-1", is_voice_mode=True),
        )
        await collect(chat, call)
        _, kwargs = gate.admit.call_args
        assert kwargs == {
            "is_voice": True,
            "prompt_category": "coach_chat",
            "caller_credential": True,
        }

    async def test_caller_key_preferred(self, chat, upstream, sse):
        upstream.add("POST", OPENAI_PATH, lambda r: sse("[DONE]"))
        await collect(chat, make_call(caller_api_key="sk-caller"))
        assert upstream.calls_to(OPENAI_PATH)[0].headers["authorization"] == "Bearer sk-caller"

    async def test_configured_key_used(self, chat, upstream, sse):
        upstream.add("POST", OPENAI_PATH, lambda r: sse("[DONE]"))
        await collect(chat, make_call())
        assert upstream.calls_to(OPENAI_PATH)[0].headers["authorization"] == "Bearer sk-configured"

    async def test_missing_key_raises(self, chat, upstream):
        with pytest.raises(ProviderNotConfigured) as exc_info:
            await chat.open_stream(make_call(provider=ProviderFamily.ANTHROPIC), never_disconnected)
        assert exc_info.value.status_code == 500
        assert upstream.calls == []

    async def test_model_selection(self, chat, upstream, sse):
        upstream.add("POST", OPENAI_PATH, lambda r: sse("[DONE]"))
        upstream.add("POST", ANTHROPIC_PATH, lambda r: sse({"type": "message_stop"}))
        await collect(chat, make_call(model="gpt-4.1"))
        await collect(chat, make_call())
        await collect(chat, make_call(provider=ProviderFamily.ANTHROPIC, caller_api_key="sk-ant"))
        models = [json.loads(r.content)["model"] for r in upstream.calls]
        assert models == ["gpt-4.1", "gpt-4o-mini", "claude-sonnet-4-5-20250929"]


# ==========================================================================
# Relay
# ==========================================================================


class TestRelay:
    async def test_chunks_then_done(self, chat, upstream, sse):
        upstream.add("POST", OPENAI_PATH, lambda r: sse(text_frame("Start "), text_frame("small."), "[DONE]"))
        body = await collect(chat, make_call())
        assert frames_of(body) == [{"chunk": "Start "}, {"chunk": "small."}, "[DONE]"]
        assert body[-1] == DONE_FRAME

    async def test_tool_invocation_frame(self, chat, upstream, sse):
        frames = [
            text_frame("Checking."),
            {"choices": [{"delta": {"tool_calls": [{"index": 0, "function": {"name": "log_habit", "arguments": '{"habit": "run"}'}}]}}]},
            {"choices": [{"delta": {}, "finish_reason": "tool_calls"}]},
            "[DONE]",
        ]
        upstream.add("POST", OPENAI_PATH, lambda r: sse(*frames))
        call = make_call(tools=[ToolSpec(name="log_habit")])
        parsed = frames_of(await collect(chat, call))

        assert parsed[0] == {"chunk": "Checking."}
        invocation = parsed[1]["toolInvocation"]
        assert invocation["toolName"] == "log_habit"
        assert invocation["arguments"] == {"habit": "run"}
        assert invocation["id"].startswith("tool_")
        assert parsed[2] == "[DONE]"

    async def test_previous_messages_forwarded(self, chat, upstream, sse):
        upstream.add("POST", OPENAI_PATH, lambda r: sse("[DONE]"))
        call = make_call(message="", previous=[ChatMessage(Role.SYSTEM, "Be kind."), ChatMessage(Role.USER, "Hi")])
        await collect(chat, call)
        sent = json.loads(upstream.calls_to(OPENAI_PATH)[0].content)
        assert sent["messages"] == [{"role": "system", "content": "Be kind."}, {"role": "user", "content": "Hi"}]

    async def test_upstream_error_becomes_envelope(self, chat, upstream, recorder):
        upstream.add(
            "POST", OPENAI_PATH, lambda r: httpx.Response(429, json={"error": {"message": "Rate limit reached"}})
        )
        parsed = frames_of(await collect(chat, make_call()))

        assert len(parsed) == 1
        envelope = parsed[0]
        assert envelope["errorCode"] == "UPSTREAM_RATE_LIMITED"
        assert envelope["error"] == "openai API error: Rate limit reached"
        assert envelope["errorType"] == "UpstreamRejected"
        assert envelope["provider"] == "openai"
        assert envelope["model"] == "gpt-4o-mini"
        assert envelope["promptType"] == "coach_chat"
        assert envelope["requestId"].startswith("req_")
        assert envelope["context"]["userId"] == "u-1"
        assert envelope["context"]["messageLength"] == len("How do I stay motivated?")

        kinds = [e.interaction_type for e in recorder.of_kind("interaction")]
        assert kinds == ["request", "error"]
        error = recorder.of_kind("interaction")[1]
        assert error.error_code == "UPSTREAM_RATE_LIMITED"
        assert error.details["upstreamStatus"] == 429
        assert error.stack_trace

    async def test_mid_stream_error_after_chunks(self, chat, upstream, sse):
        upstream.add(
            "POST",
            OPENAI_PATH,
            lambda r: sse(text_frame("partial"), {"error": {"message": "server_error"}}),
        )
        parsed = frames_of(await collect(chat, make_call()))
        assert parsed[0] == {"chunk": "partial"}
        assert parsed[1]["errorCode"] == "UPSTREAM_UNAVAILABLE"
        assert "[DONE]" not in parsed

    async def test_timeout_envelope(self, gate, http_client, upstream, sse, recorder):
        upstream.add("POST", OPENAI_PATH, lambda r: sse(text_frame("a"), text_frame("b"), delay=0.2))
        chat = ChatGateway(
            admission=gate,
            normalizer=StreamNormalizer(client=http_client, budget_seconds=0.3),
            provider_keys={ProviderFamily.OPENAI: "sk-configured"},
            recorder=recorder,
        )
        parsed = frames_of(await collect(chat, make_call()))
        assert parsed[-1]["errorCode"] == "STREAM_TIMEOUT"
        assert recorder.of_kind("interaction")[-1].interaction_type == "error"

    async def test_client_disconnect_aborts_cleanly(self, chat, upstream, sse, recorder):
        upstream.add("POST", OPENAI_PATH, lambda r: sse(*[text_frame(str(i)) for i in range(5)], "[DONE]"))
        checks = 0

        async def disconnect_on_third_check() -> bool:
            nonlocal checks
            checks += 1
            return checks >= 3

        parsed = frames_of(await collect(chat, make_call(), disconnect_on_third_check))

        assert parsed == [{"chunk": "0"}, {"chunk": "1"}]
        response = recorder.of_kind("interaction")[-1]
        assert response.interaction_type == "response"
        assert response.stream_aborted is True
        assert response.error_code is None


# ==========================================================================
# Telemetry
# ==========================================================================


class TestTelemetry:
    async def test_request_and_response_records(self, chat, upstream, sse, recorder):
        upstream.add("POST", OPENAI_PATH, lambda r: sse(text_frame("Hello"), text_frame("!"), "[DONE]"))
        await collect(chat, make_call())

        request, response = recorder.of_kind("interaction")
        assert request.interaction_type == "request"
        assert request.status == "pending"
        assert request.request_id == response.request_id
        assert request.coach_id == "c-1"
        assert response.interaction_type == "response"
        assert response.response_length == len("Hello!")
        assert response.stream_aborted is False
        assert response.response_time_ms is not None

    async def test_device_sighting_for_known_user(self, chat, upstream, sse, recorder):
        upstream.add("POST", OPENAI_PATH, lambda r: sse("[DONE]"))
        await collect(chat, make_call())
        (sighting,) = recorder.of_kind("device_sighting")
        assert (sighting.user_id, sighting.device_id, sighting.ip_address) == ("u-1", "dev-1", "10.0.0.1")

    async def test_no_device_sighting_for_unverified_user(self, chat, upstream, sse, recorder):
        upstream.add("POST", OPENAI_PATH, lambda r: sse("[DONE]"))
        call = make_call(
            identity=CallerIdentity(device_id="dev-1", ip_address="10.0.0.1"),
            context=ChatContext(user_id="claimed-user"),
        )
        await collect(chat, call)
        assert recorder.of_kind("device_sighting") == []
        assert recorder.of_kind("interaction")[0].user_id == "claimed-user"


class TestSseFrame:
    def test_non_ascii_kept(self):
        assert sse_frame({"chunk": "Grüße"}) == 'data: {"chunk": "Grüße"}\n\n'
