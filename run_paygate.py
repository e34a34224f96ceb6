#!/usr/bin/env python3
# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
"""
Standalone runner for the x402 pay-per-request gateway.

Env:
  - PAYGATE_PORT (default: 8000)
  - PAYGATE_HOST (default: 0.0.0.0)
  - PAYGATE_FACILITATOR_URL (default: http://localhost:8001)
  - PAYGATE_DATABASE_URL (default: sqlite+aiosqlite:///./paygate.db)
  - ENABLE_SETTLEMENT (default: 0)
  - LOG_LEVEL (default: INFO)
"""

import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Optional

# Load .env before the config models read their env defaults
from dotenv import load_dotenv  # type: ignore
load_dotenv()

from fastapi import Depends, FastAPI

from x402_paygate import (
    Database,
    FacilitatorClient,
    HttpForwarder,
    ProxyRuntimeConfig,
    build_proxy_handler,
    get_proxy_cfg,
    router,
)


logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger("paygate")


def build_app(cfg: Optional[ProxyRuntimeConfig] = None) -> FastAPI:
    cfg = cfg or ProxyRuntimeConfig()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        db = Database(cfg.database_url)
        await db.create_all()
        facilitator = FacilitatorClient(cfg.facilitator_url, timeout_s=cfg.facilitator_timeout_s)
        forwarder = HttpForwarder()
        app.state.facilitator = facilitator
        app.state.proxy_handler = build_proxy_handler(
            cfg,
            session_factory=db.session_factory,
            facilitator=facilitator,
            forwarder=forwarder,
        )
        logger.info(
            f"Paygate ready (facilitator={cfg.facilitator_url}, "
            f"settlement={'on' if cfg.settlement_enabled else 'off'}, env={cfg.environment})"
        )
        try:
            yield
        finally:
            await forwarder.aclose()
            await facilitator.aclose()
            await db.dispose()

    app = FastAPI(
        title="x402 Paygate",
        description="Pay-per-request reverse proxy with x402 payments and prepaid credits",
        version="0.1.0",
        lifespan=lifespan,
    )

    # Wire runtime config via dependency
    app.dependency_overrides[get_proxy_cfg] = lambda: cfg

    # Health
    @app.get("/health")
    async def health(cfg: ProxyRuntimeConfig = Depends(get_proxy_cfg)) -> dict:
        return {
            "status": "ok",
            "time": datetime.now(timezone.utc).isoformat(),
            "facilitator": cfg.facilitator_url,
            "settlement_enabled": cfg.settlement_enabled,
        }

    # Mount /proxy/* and /x402/debug
    app.include_router(router)

    logger.info("Paygate app initialized")
    return app


app = build_app()


if __name__ == "__main__":
    import uvicorn

    host = os.getenv("PAYGATE_HOST", "0.0.0.0")
    port = int(os.getenv("PAYGATE_PORT", "8000"))
    uvicorn.run("run_paygate:app", host=host, port=port, log_level="info")
