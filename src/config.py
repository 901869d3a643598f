"""Runtime settings, read from the environment (and a local .env file)."""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping

from dotenv import load_dotenv

load_dotenv()


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name, "")
    if not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name, "")
    if not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


@dataclass
class Settings:
    output_dir: str = "out"
    max_workers: int = 4
    timeout: float = 60.0
    tenant_id: str | None = None
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if env is None else env
        return cls(
            output_dir=env.get("RBAC_MIGRATE_OUTPUT_DIR") or "out",
            max_workers=max(1, _int(env, "RBAC_MIGRATE_MAX_WORKERS", 4)),
            timeout=_float(env, "RBAC_MIGRATE_TIMEOUT", 60.0),
            tenant_id=env.get("AZURE_TENANT_ID") or None,
            log_level=(env.get("RBAC_MIGRATE_LOG_LEVEL") or "INFO").upper(),
        )
