"""AI relay gateway core.

  - Vendor adapters (per-provider payloads and headers)
  - Stream normalizer (SSE decoding, tool-call reassembly, timeout, cancellation)
  - Admission gate (bans, daily quotas)
  - Credential pool (health-aware sticky rotation for the speech provider)
  - Telemetry recorder (fire-and-forget persistence)
  - Chat and speech orchestrators
"""
