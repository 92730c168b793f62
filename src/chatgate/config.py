from __future__ import annotations

import os
from dataclasses import dataclass, replace
from typing import Any


@dataclass(frozen=True)
class GatewayConfig:
    host: str = "127.0.0.1"
    port: int = 8080
    ping_interval_s: int = 30
    ping_miss_limit: int = 2
    max_msg_size: int = 1_048_576
    session_ttl_s: int = 24 * 60 * 60
    call_ring_timeout_s: int = 45
    call_sweep_interval_s: int = 1
    password_iterations: int = 200_000
    upload_dir: str = "uploads"
    max_upload_bytes: int = 50 * 1024 * 1024
    outbound_queue_size: int = 1000
    log_level: str = "INFO"

    def with_overrides(self, **overrides: Any) -> "GatewayConfig":
        """Return a copy with every non-``None`` override applied."""

        return replace(self, **{key: value for key, value in overrides.items() if value is not None})


def _parse_non_negative_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if parsed < 0:
        raise ValueError(f"{name} must be non-negative")
    return parsed


def _parse_str(name: str, default: str) -> str:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip()


def load_config_from_env() -> GatewayConfig:
    defaults = GatewayConfig()
    return GatewayConfig(
        host=_parse_str("CHATGATE_HOST", defaults.host),
        port=_parse_non_negative_int("CHATGATE_PORT", defaults.port),
        ping_interval_s=max(1, _parse_non_negative_int("CHATGATE_PING_INTERVAL_S", defaults.ping_interval_s)),
        ping_miss_limit=_parse_non_negative_int("CHATGATE_PING_MISS_LIMIT", defaults.ping_miss_limit),
        max_msg_size=_parse_non_negative_int("CHATGATE_MAX_MSG_SIZE", defaults.max_msg_size),
        session_ttl_s=_parse_non_negative_int("CHATGATE_SESSION_TTL_S", defaults.session_ttl_s),
        call_ring_timeout_s=_parse_non_negative_int("CHATGATE_CALL_RING_TIMEOUT_S", defaults.call_ring_timeout_s),
        call_sweep_interval_s=max(
            1, _parse_non_negative_int("CHATGATE_CALL_SWEEP_INTERVAL_S", defaults.call_sweep_interval_s)
        ),
        password_iterations=max(
            1, _parse_non_negative_int("CHATGATE_PASSWORD_ITERATIONS", defaults.password_iterations)
        ),
        upload_dir=_parse_str("CHATGATE_UPLOAD_DIR", defaults.upload_dir),
        max_upload_bytes=_parse_non_negative_int("CHATGATE_MAX_UPLOAD_BYTES", defaults.max_upload_bytes),
        outbound_queue_size=max(
            1, _parse_non_negative_int("CHATGATE_OUTBOUND_QUEUE_SIZE", defaults.outbound_queue_size)
        ),
        log_level=_parse_str("CHATGATE_LOG_LEVEL", defaults.log_level).upper(),
    )
