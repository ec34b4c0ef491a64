"""Speech Gateway: voice admission plus pooled-credential synthesis with failover."""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

import httpx

from app.core.logging import shorten_secret
from app.gateway.admission import AdmissionDenied, AdmissionGate, CallerIdentity
from app.gateway.credential_pool import CredentialPool, PoolExhausted
from app.gateway.telemetry import InteractionEvent, NullRecorder, TelemetryRecorder
from app.gateway.vendor_adapters import UpstreamRejected, extract_error_message

logger = logging.getLogger(__name__)

DEFAULT_VOICE_SETTINGS = {"stability": 0.5, "similarity_boost": 0.75}

# Rejections that say something about the credential rather than the request
CREDENTIAL_FAILURES = (401, 402, 403, 429)


@dataclass
class SpeechRequest:
    voice_id: str
    text: str
    identity: CallerIdentity
    voice_settings: dict[str, Any] | None = None
    request_id: str = field(default_factory=lambda: f"tts_{uuid.uuid4().hex[:16]}")


class SpeechGateway:
    def __init__(
        self,
        pool: CredentialPool,
        admission: AdmissionGate,
        client: httpx.AsyncClient | None = None,
        api_url: str = "https://api.elevenlabs.io",
        model_id: str = "eleven_monolingual_v1",
        recorder: TelemetryRecorder | None = None,
        timeout: float = 60.0,
    ):
        self.pool = pool
        self.admission = admission
        self.client = client
        self.api_url = api_url.rstrip("/")
        self.model_id = model_id
        self.recorder = recorder or NullRecorder()
        self.timeout = timeout

    async def synthesize(self, request: SpeechRequest) -> bytes:
        decision = await self.admission.admit(request.identity, is_voice=True)
        if not decision.allowed:
            raise AdmissionDenied(decision)

        start = time.monotonic()
        tried: set[str] = set()
        while True:
            key = await self.pool.acquire()
            if key in tried:
                # The scan came back to a credential that already failed this request
                raise PoolExhausted()
            tried.add(key)

            resp = await self._post(key, request)
            if resp.is_success:
                self.pool.record_usage(key, len(request.text))
                self._record(request, key, start)
                return resp.content

            if resp.status_code in CREDENTIAL_FAILURES:
                logger.warning(
                    "Speech request %s: credential %s got HTTP %d, failing over",
                    request.request_id,
                    shorten_secret(key),
                    resp.status_code,
                )
                await self.pool.report_failure(key, resp.status_code)
                continue

            message = extract_error_message(resp.content, resp.reason_phrase or f"HTTP {resp.status_code}")
            raise UpstreamRejected("elevenlabs", resp.status_code, message)

    async def _post(self, key: str, request: SpeechRequest) -> httpx.Response:
        url = f"{self.api_url}/v1/text-to-speech/{request.voice_id}"
        payload = {
            "text": request.text,
            "model_id": self.model_id,
            "voice_settings": request.voice_settings or DEFAULT_VOICE_SETTINGS,
        }
        headers = {"xi-api-key": key, "Content-Type": "application/json", "Accept": "audio/mpeg"}
        try:
            if self.client is not None:
                return await self.client.post(url, json=payload, headers=headers)
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                return await client.post(url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise UpstreamRejected("elevenlabs", 502, f"speech request failed: {e}") from e

    def _record(self, request: SpeechRequest, key: str, start: float) -> None:
        self.recorder.record(
            InteractionEvent(
                request_id=request.request_id,
                interaction_type="tts",
                status="success",
                provider="elevenlabs",
                model=self.model_id,
                user_id=request.identity.user_id,
                message_length=len(request.text),
                response_time_ms=int((time.monotonic() - start) * 1000),
                details={"voiceId": request.voice_id, "credential": shorten_secret(key)},
            )
        )
