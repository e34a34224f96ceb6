# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

import ipaddress
import json
import logging
import time
from typing import Dict, List, Mapping, Optional, Protocol, Tuple
from urllib.parse import urlparse

import httpx
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

# Never forwarded upstream: payment material, hop-by-hop and client-forwarding headers
EXCLUDED_REQUEST_HEADERS = frozenset(
    {
        "host",
        "x-payment",
        "x-payment-signature",
        "x-payment-challenge",
        "x-payment-required",
        "x-payment-response",
        "connection",
        "keep-alive",
        "proxy-connection",
        "te",
        "trailer",
        "upgrade",
        "transfer-encoding",
        "content-length",
        "content-encoding",
        "x-forwarded-for",
        "x-forwarded-proto",
        "x-forwarded-host",
    }
)

# httpx has already de-chunked and decompressed the body
EXCLUDED_RESPONSE_HEADERS = frozenset(
    {"content-length", "transfer-encoding", "content-encoding", "connection", "keep-alive"}
)

_BODYLESS_METHODS = frozenset({"GET", "HEAD"})


def clean_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    return {k: v for k, v in headers.items() if k.lower() not in EXCLUDED_REQUEST_HEADERS}


def _is_private_host(hostname: str) -> bool:
    if hostname in ("localhost", "localhost.localdomain"):
        return True
    try:
        ip = ipaddress.ip_address(hostname.strip("[]"))
    except ValueError:
        return False
    return ip.is_loopback or ip.is_private or ip.is_link_local or ip.is_unspecified


def validate_proxy_url(url: str, *, production: bool = False) -> bool:
    """Whether ``url`` may be used as a backend target.

    Only http(s) is allowed; in production loopback and private-network hosts are refused.
    """
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        return False
    if production and _is_private_host(parsed.hostname.lower()):
        return False
    return True


class ForwardOverrides(BaseModel):
    """Per-request values layered over an endpoint's base forwarding config."""

    method: Optional[str] = None
    path: Optional[str] = None
    query: Optional[str] = None
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Optional[bytes] = None
    timeout_s: Optional[float] = None


class ForwardRequest(BaseModel):
    url: str
    path: str = ""
    method: str = "GET"
    query: str = ""
    headers: Dict[str, str] = Field(default_factory=dict)
    body: bytes = b""
    timeout_s: float = 30.0

    def merged(self, overrides: ForwardOverrides) -> "ForwardRequest":
        update = overrides.model_dump(exclude_none=True, exclude={"headers"})
        return self.model_copy(update={**update, "headers": {**self.headers, **overrides.headers}})

    @property
    def target_url(self) -> str:
        target = f"{self.url.rstrip('/')}{self.path}"
        return f"{target}?{self.query}" if self.query else target


class ForwardResponse(BaseModel):
    status: int
    # Ordered (name, value) pairs; repeated headers such as set-cookie stay separate
    headers: List[Tuple[str, str]] = Field(default_factory=list)
    body: bytes = b""
    duration_ms: int = 0
    success: bool = False
    error: Optional[str] = None


class Forwarder(Protocol):
    async def forward(self, request: ForwardRequest) -> ForwardResponse: ...


class HttpForwarder:
    """Sends a request to the backend once; failures become a synthetic 502, never an exception."""

    def __init__(self, *, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.http = httpx.AsyncClient(follow_redirects=False, transport=transport)

    async def aclose(self) -> None:
        await self.http.aclose()

    async def forward(self, request: ForwardRequest) -> ForwardResponse:
        started = time.perf_counter()
        method = request.method.upper()
        target = request.target_url
        logger.info(f"[FORWARD] {method} {target}")
        content = request.body if method not in _BODYLESS_METHODS and request.body else None
        try:
            resp = await self.http.request(
                method,
                target,
                headers=clean_headers(request.headers),
                content=content,
                timeout=request.timeout_s,
            )
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            duration_ms = int((time.perf_counter() - started) * 1000)
            logger.error(f"[FORWARD] {method} {target} failed after {duration_ms}ms: {e!r}")
            detail = str(e) or type(e).__name__
            return ForwardResponse(
                status=502,
                headers=[("content-type", "application/json")],
                body=json.dumps(
                    {
                        "error": "Bad Gateway",
                        "message": "Failed to connect to backend service",
                        "details": detail,
                    }
                ).encode(),
                duration_ms=duration_ms,
                success=False,
                error=detail,
            )

        duration_ms = int((time.perf_counter() - started) * 1000)
        headers = [
            (k, v) for k, v in resp.headers.multi_items() if k.lower() not in EXCLUDED_RESPONSE_HEADERS
        ]
        ok = resp.is_success
        return ForwardResponse(
            status=resp.status_code,
            headers=headers,
            body=resp.content,
            duration_ms=duration_ms,
            success=ok,
            error=None if ok else f"HTTP {resp.status_code}: {resp.reason_phrase}",
        )
