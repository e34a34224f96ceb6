# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
"""
Integration tests running the real facilitator client and backend forwarder over
in-process HTTP transports: the mock facilitator app and a mock backend.
"""

import json
from typing import AsyncGenerator, List

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI

from x402_paygate import (
    FacilitatorClient,
    HttpForwarder,
    ProxyRuntimeConfig,
    build_proxy_handler,
    get_proxy_cfg,
    router,
)

from conftest import PAY_TO, sign_payment, to_header
from mock_facilitator import MOCK_TX_HASH
from mock_facilitator import app as mock_facilitator_app

FORECAST = "/proxy/weather/forecast"


@pytest.fixture
def backend_requests() -> List[httpx.Request]:
    return []


@pytest_asyncio.fixture
async def stack(
    cfg: ProxyRuntimeConfig, database, seeded, backend_requests
) -> AsyncGenerator[httpx.AsyncClient, None]:
    def backend(request: httpx.Request) -> httpx.Response:
        backend_requests.append(request)
        return httpx.Response(200, json={"forecast": "rain", "path": request.url.path})

    facilitator = FacilitatorClient(
        "http://facilitator.test", transport=httpx.ASGITransport(app=mock_facilitator_app)
    )
    forwarder = HttpForwarder(transport=httpx.MockTransport(backend))
    app = FastAPI()
    app.include_router(router)
    app.state.facilitator = facilitator
    app.state.proxy_handler = build_proxy_handler(
        cfg, session_factory=database.session_factory, facilitator=facilitator, forwarder=forwarder
    )
    app.dependency_overrides[get_proxy_cfg] = lambda: cfg
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://paygate.test") as c:
        yield c
    await forwarder.aclose()
    await facilitator.aclose()


@pytest.mark.asyncio
class TestOverHttp:
    async def test_paid_request_settles_and_credits(self, stack: httpx.AsyncClient, buyer, backend_requests):
        payload = sign_payment(buyer, value=30_000)
        resp = await stack.get(FORECAST, headers={"X-PAYMENT": to_header(payload)})

        assert resp.status_code == 200
        assert resp.json() == {"forecast": "rain", "path": "/forecast"}
        assert resp.headers["X-Proxy-Settlement-Status"] == "settled"
        assert json.loads(resp.headers["X-Payment-Response"])["transactionHash"] == MOCK_TX_HASH
        assert resp.headers["X-Credit-Balance"] == "0.02"

        (forwarded,) = backend_requests
        assert "x-payment" not in forwarded.headers
        assert forwarded.url.host == "backend.example.com"

        resp = await stack.get(FORECAST, headers={"X-PAYMENT": to_header(sign_payment(buyer, value=0))})
        assert resp.status_code == 200
        assert resp.headers["X-Credit-Used"] == "true"
        assert resp.headers["X-Credit-Balance"] == "0.01"
        assert len(backend_requests) == 2

    async def test_underpayment_rejected_by_facilitator(self, stack: httpx.AsyncClient, buyer, backend_requests):
        resp = await stack.get(
            FORECAST, headers={"X-PAYMENT": to_header(sign_payment(buyer, value=5_000))}
        )

        assert resp.status_code == 402
        body = resp.json()
        assert body["error"] == "invalid_exact_evm_payload_authorization_value"
        assert body["payer"] == buyer.address
        assert backend_requests == []

    async def test_wrong_recipient_rejected(self, stack: httpx.AsyncClient, buyer):
        payload = sign_payment(buyer, value=10_000, to="0x" + "1" * 40)
        resp = await stack.get(FORECAST, headers={"X-PAYMENT": to_header(payload)})
        assert resp.status_code == 402
        assert resp.json()["error"] == "invalid_exact_evm_payload_recipient_mismatch"

    async def test_debug_reports_last_upstream_calls(self, stack: httpx.AsyncClient, cfg, buyer):
        cfg.debug_enabled = True
        await stack.get(FORECAST, headers={"X-PAYMENT": to_header(sign_payment(buyer, value=10_000))})

        data = (await stack.get("/x402/debug")).json()
        assert data["last_verify"]["status_code"] == 200
        assert data["last_settle"]["payer"] == buyer.address


@pytest.mark.asyncio
async def test_resolve_name_over_http():
    client = FacilitatorClient(
        "http://facilitator.test", transport=httpx.ASGITransport(app=mock_facilitator_app)
    )
    try:
        assert await client.resolve_name("merchant.eth") == PAY_TO
        assert await client.resolve_name("nobody.eth") is None
    finally:
        await client.aclose()
