from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping

from .notifications import DEFAULT_PUSH_URL


@dataclass(frozen=True)
class ServiceConfig:
    db_path: str = ":memory:"
    blob_dir: str = "./blobs"
    public_url: str = "http://127.0.0.1:8080"
    push_url: str = DEFAULT_PUSH_URL
    push_server_key: str = ""
    push_timeout_s: int = 10
    presence_ttl_s: int = 60
    presence_sweep_s: int = 1
    session_ttl_s: int = 3600
    require_verified_email: bool = True

    @property
    def session_ttl_ms(self) -> int:
        return self.session_ttl_s * 1000


def _parse_non_negative_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if parsed < 0:
        raise ValueError(f"{name} must be non-negative")
    return parsed


def _parse_bool01(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    if raw not in {"0", "1"}:
        raise ValueError(f"{name} must be 0 or 1")
    return raw == "1"


def _parse_str(env: Mapping[str, str], name: str, default: str) -> str:
    raw = env.get(name)
    if raw is None:
        return default
    return raw.strip()


def load_config_from_env(env: Mapping[str, str] | None = None) -> ServiceConfig:
    if env is None:
        env = os.environ
    return ServiceConfig(
        db_path=_parse_str(env, "CHATSYNC_DB_PATH", ":memory:") or ":memory:",
        blob_dir=_parse_str(env, "CHATSYNC_BLOB_DIR", "./blobs") or "./blobs",
        public_url=_parse_str(env, "CHATSYNC_PUBLIC_URL", "http://127.0.0.1:8080"),
        push_url=_parse_str(env, "CHATSYNC_PUSH_URL", DEFAULT_PUSH_URL),
        push_server_key=_parse_str(env, "CHATSYNC_PUSH_SERVER_KEY", ""),
        push_timeout_s=max(1, _parse_non_negative_int(env, "CHATSYNC_PUSH_TIMEOUT_S", 10)),
        presence_ttl_s=max(1, _parse_non_negative_int(env, "CHATSYNC_PRESENCE_TTL_S", 60)),
        presence_sweep_s=max(1, _parse_non_negative_int(env, "CHATSYNC_PRESENCE_SWEEP_S", 1)),
        session_ttl_s=max(1, _parse_non_negative_int(env, "CHATSYNC_SESSION_TTL_S", 3600)),
        require_verified_email=_parse_bool01(env, "CHATSYNC_REQUIRE_VERIFIED_EMAIL", True),
    )
