from prometheus_client import Counter, Histogram

AUTH_BEGINS = Counter(
    "keyway_auth_begin_total",
    "Authentication attempts started",
    ["provider"],
)

AUTH_COMPLETIONS = Counter(
    "keyway_auth_complete_total",
    "Authentication attempts finished",
    ["provider", "outcome"],  # outcome: success, resumed, exchange_failed, profile_failed, state_mismatch
)

SESSION_DECODE_FAILURES = Counter(
    "keyway_session_decode_failures_total",
    "Stored sessions that failed to decode (possible tampering)",
    ["provider"],
)

PROVIDER_CALL_SECONDS = Histogram(
    "keyway_provider_call_seconds",
    "Latency of provider network calls",
    ["provider", "operation"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)
