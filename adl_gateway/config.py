"""Process configuration from environment variables.

Garbage values fall back to defaults and numbers are clamped.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional


def _env_str(name: str, default: str) -> str:
    v = (os.getenv(name) or "").strip()
    return v or default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)).strip())
    except ValueError:
        return default


def _env_int(name: str, default: Optional[int]) -> Optional[int]:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    v = (os.getenv(name) or "").strip().lower()
    if not v:
        return default
    return v in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    db_path: str = "adl_ledger.db"
    request_timeout_seconds: float = 5.0
    policy_name_suffix: str = "-constitution"
    bandit_enabled: bool = True
    bandit_seed: Optional[int] = None
    env: str = "dev"
    max_request_bytes: int = 1048576

    @property
    def is_prod(self) -> bool:
        return self.env in ("prod", "production")

    def policy_name_for(self, node: str) -> str:
        return f"{node}{self.policy_name_suffix}"

    @classmethod
    def from_env(cls) -> "Settings":
        timeout = _env_float("ADL_REQUEST_TIMEOUT_SECONDS", cls.request_timeout_seconds)
        # Clamp; 0 disables the deadline.
        timeout = max(0.0, min(timeout, 300.0))
        max_bytes = _env_int("ADL_MAX_REQUEST_BYTES", cls.max_request_bytes) or cls.max_request_bytes
        if max_bytes < 1024:
            max_bytes = 1024
        return cls(
            db_path=_env_str("ADL_DB_PATH", cls.db_path),
            request_timeout_seconds=timeout,
            policy_name_suffix=_env_str("ADL_POLICY_NAME_SUFFIX", cls.policy_name_suffix),
            bandit_enabled=_env_bool("ADL_BANDIT_ENABLED", cls.bandit_enabled),
            bandit_seed=_env_int("ADL_BANDIT_SEED", None),
            env=_env_str("ADL_ENV", cls.env).lower(),
            max_request_bytes=max_bytes,
        )
