# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

import os

from pydantic import BaseModel, Field


def _env_flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes"}


class ProxyRuntimeConfig(BaseModel):
    facilitator_url: str = Field(
        default_factory=lambda: os.getenv("PAYGATE_FACILITATOR_URL", "http://localhost:8001")
    )
    facilitator_timeout_s: float = Field(
        default_factory=lambda: float(os.getenv("PAYGATE_FACILITATOR_TIMEOUT_S", "15"))
    )
    # Backend forwarding bound; expiry surfaces as a synthetic 502.
    forward_timeout_s: float = Field(
        default_factory=lambda: float(os.getenv("PAYGATE_FORWARD_TIMEOUT_S", "30"))
    )
    settlement_enabled: bool = Field(default_factory=lambda: _env_flag("ENABLE_SETTLEMENT"))
    database_url: str = Field(
        default_factory=lambda: os.getenv("PAYGATE_DATABASE_URL", "sqlite+aiosqlite:///./paygate.db")
    )
    public_base_url: str = Field(
        default_factory=lambda: os.getenv("PAYGATE_PUBLIC_URL", "http://localhost:8000")
    )
    environment: str = Field(default_factory=lambda: os.getenv("PAYGATE_ENV", "development"))
    max_timeout_seconds: int = Field(
        default_factory=lambda: int(os.getenv("PAYGATE_MAX_TIMEOUT_S", "60"))
    )
    audit_body_limit: int = Field(
        default_factory=lambda: int(os.getenv("PAYGATE_AUDIT_BODY_LIMIT", "10000"))
    )
    nonce_ttl_s: int = Field(default_factory=lambda: int(os.getenv("PAYGATE_NONCE_TTL_S", "86400")))
    name_cache_ttl_s: int = Field(
        default_factory=lambda: int(os.getenv("PAYGATE_NAME_CACHE_TTL_S", "300"))
    )
    debug_enabled: bool = Field(default_factory=lambda: _env_flag("PAYGATE_DEBUG_ENABLED"))

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"


def get_proxy_cfg() -> ProxyRuntimeConfig:
    return ProxyRuntimeConfig()
