# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from .config import ProxyRuntimeConfig, get_proxy_cfg
from .handler import ProxyRequest, ProxyRequestHandler

logger = logging.getLogger(__name__)

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]

router = APIRouter(tags=["x402-paygate"])


def get_proxy_handler(request: Request) -> ProxyRequestHandler:
    handler = getattr(request.app.state, "proxy_handler", None)
    if handler is None:
        raise HTTPException(status_code=503, detail="Proxy not initialized")
    return handler


@router.api_route("/proxy/{slug}", methods=PROXY_METHODS)
@router.api_route("/proxy/{slug}/{path:path}", methods=PROXY_METHODS)
async def proxy_request(
    slug: str,
    request: Request,
    path: str = "",
    handler: ProxyRequestHandler = Depends(get_proxy_handler),
) -> Response:
    proxied = ProxyRequest(
        slug=slug,
        path="/" + path,
        method=request.method,
        headers=dict(request.headers),
        query=request.url.query,
        body=await request.body(),
        client_ip=request.client.host if request.client else None,
    )
    return await handler.handle(proxied)


@router.get("/x402/debug")
async def paygate_debug(
    request: Request, cfg: ProxyRuntimeConfig = Depends(get_proxy_cfg)
) -> Dict[str, Any]:
    if not cfg.debug_enabled:
        raise HTTPException(status_code=404, detail="Not Found")
    facilitator = getattr(request.app.state, "facilitator", None)
    return {
        "upstream": {
            "verify_url": getattr(facilitator, "verify_url", None),
            "settle_url": getattr(facilitator, "settle_url", None),
        },
        "settlement_enabled": cfg.settlement_enabled,
        "last_verify": getattr(facilitator, "last_verify", None),
        "last_settle": getattr(facilitator, "last_settle", None),
    }
