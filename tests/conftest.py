# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
import base64
import json
import os
import secrets
import sys
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, AsyncGenerator, Dict, List, Optional

import httpx
import pytest
import pytest_asyncio
from eth_account import Account
from eth_account.messages import encode_typed_data


def _add_project_root_to_syspath() -> None:
    root = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
    if root not in sys.path:
        sys.path.insert(0, root)


_add_project_root_to_syspath()


# Import after adding to syspath
from fastapi import FastAPI

from x402_paygate import (
    CreditLedger,
    Database,
    ForwardRequest,
    ForwardResponse,
    PaymentChallengeBuilder,
    PaymentVerifier,
    ProxyRepository,
    ProxyRequestHandler,
    ProxyRuntimeConfig,
    SettlementCoordinator,
    get_proxy_cfg,
    router,
)
from x402_paygate.credits import TRANSFER_WITH_AUTHORIZATION_TYPES
from x402_paygate.db import Project, ProjectEndpoint, ProjectPaymentChain
from x402_paygate.models import PaymentPayload, PaymentRequirements, SettleResponse, VerifyResponse
from x402_paygate.networks import NETWORKS

PAY_TO = "0x209693Bc6afc0C5328bA36FaF03C514EF312287C"
BUYER_KEY = "0x" + "4c" * 32
OTHER_KEY = "0x" + "7e" * 32
TX_HASH = "0x" + "ab" * 32


def sign_payment(
    account,
    *,
    value: int = 0,
    network: str = "base-sepolia",
    to: str = PAY_TO,
    valid_after: int = 0,
    valid_before: Optional[int] = None,
    nonce: Optional[str] = None,
) -> Dict[str, Any]:
    """Build an x402 exact-scheme payload signed as an EIP-3009 TransferWithAuthorization."""
    asset = NETWORKS[network]
    if valid_before is None:
        valid_before = int(time.time()) + 600
    nonce = nonce or "0x" + secrets.token_hex(32)
    typed = {
        "types": TRANSFER_WITH_AUTHORIZATION_TYPES,
        "primaryType": "TransferWithAuthorization",
        "domain": {
            "name": asset.name,
            "version": asset.version,
            "chainId": asset.chain_id,
            "verifyingContract": asset.address,
        },
        "message": {
            "from": account.address,
            "to": to,
            "value": value,
            "validAfter": valid_after,
            "validBefore": valid_before,
            "nonce": nonce,
        },
    }
    signed = account.sign_message(encode_typed_data(full_message=typed))
    return {
        "x402Version": 1,
        "scheme": "exact",
        "network": network,
        "payload": {
            "signature": "0x" + bytes(signed.signature).hex(),
            "authorization": {
                "from": account.address,
                "to": to,
                "value": str(value),
                "validAfter": str(valid_after),
                "validBefore": str(valid_before),
                "nonce": nonce,
            },
        },
    }


def to_header(payload: Dict[str, Any]) -> str:
    return base64.b64encode(json.dumps(payload).encode("utf-8")).decode("ascii")


class FakeFacilitator:
    """In-memory facilitator: accepts every payment unless told otherwise."""

    def __init__(self) -> None:
        self.verify_calls: List[PaymentPayload] = []
        self.settle_calls: List[PaymentPayload] = []
        self.invalid_reason: Optional[str] = None
        self.verify_error: Optional[Exception] = None
        self.settle_error: Optional[Exception] = None
        self.settle_success = True
        self.names: Dict[str, str] = {}

    async def verify(
        self, payment: PaymentPayload, requirement: PaymentRequirements, *, payment_header=None
    ) -> VerifyResponse:
        self.verify_calls.append(payment)
        if self.verify_error is not None:
            raise self.verify_error
        if self.invalid_reason:
            return VerifyResponse(isValid=False, invalidReason=self.invalid_reason, payer=payment.payer)
        return VerifyResponse(isValid=True, payer=payment.payer)

    async def settle(
        self, payment: PaymentPayload, requirement: PaymentRequirements, *, payment_header=None
    ) -> SettleResponse:
        self.settle_calls.append(payment)
        if self.settle_error is not None:
            raise self.settle_error
        if not self.settle_success:
            return SettleResponse(success=False, errorReason="insufficient_funds", payer=payment.payer)
        return SettleResponse(
            success=True, transaction=TX_HASH, network=requirement.network, payer=payment.payer
        )

    async def resolve_name(self, name: str) -> Optional[str]:
        return self.names.get(name.lower())


class FakeForwarder:
    def __init__(self) -> None:
        self.requests: List[ForwardRequest] = []
        self.response = ForwardResponse(
            status=200,
            headers=[("content-type", "application/json")],
            body=b'{"forecast": "sunny"}',
            duration_ms=7,
            success=True,
        )

    async def forward(self, request: ForwardRequest) -> ForwardResponse:
        self.requests.append(request)
        return self.response


@dataclass
class Seeded:
    project: Project
    credits_endpoint: ProjectEndpoint
    plain_endpoint: ProjectEndpoint
    param_endpoint: ProjectEndpoint


@pytest.fixture
def test_env(monkeypatch) -> None:
    """Set up test environment variables."""
    monkeypatch.setenv("PAYGATE_FACILITATOR_URL", "https://facilitator.example.com")
    monkeypatch.setenv("PAYGATE_PUBLIC_URL", "https://paygate.example.com")
    monkeypatch.setenv("ENABLE_SETTLEMENT", "1")
    monkeypatch.setenv("PAYGATE_ENV", "development")


@pytest.fixture
def cfg(test_env, tmp_path) -> ProxyRuntimeConfig:
    return ProxyRuntimeConfig(database_url=f"sqlite+aiosqlite:///{tmp_path / 'paygate.db'}")


@pytest_asyncio.fixture
async def database(cfg: ProxyRuntimeConfig) -> AsyncGenerator[Database, None]:
    db = Database(cfg.database_url)
    await db.create_all()
    yield db
    await db.dispose()


@pytest_asyncio.fixture
async def seeded(database: Database) -> Seeded:
    async with database.session_factory.begin() as session:
        project = Project(
            name="Weather API",
            slug="weather",
            default_price=Decimal("0.01"),
            pay_to=PAY_TO,
        )
        session.add(project)
        await session.flush()
        session.add(ProjectPaymentChain(project_id=project.id, network="base-sepolia"))
        credits_endpoint = ProjectEndpoint(
            project_id=project.id,
            url="https://backend.example.com",
            path="/forecast",
            method="GET",
            price=Decimal("0.01"),
            description="Daily forecast",
            credits_enabled=True,
        )
        plain_endpoint = ProjectEndpoint(
            project_id=project.id,
            url="https://backend.example.com",
            path="/history",
            method="*",
            price=Decimal("0.02"),
        )
        param_endpoint = ProjectEndpoint(
            project_id=project.id,
            url="https://backend.example.com/v2",
            path="/cities/:city",
            method="GET",
        )
        session.add_all([credits_endpoint, plain_endpoint, param_endpoint])
    return Seeded(project, credits_endpoint, plain_endpoint, param_endpoint)


@pytest.fixture
def buyer():
    return Account.from_key(BUYER_KEY)


@pytest.fixture
def facilitator() -> FakeFacilitator:
    return FakeFacilitator()


@pytest.fixture
def forwarder() -> FakeForwarder:
    return FakeForwarder()


@pytest.fixture
def ledger(database: Database) -> CreditLedger:
    return CreditLedger(database.session_factory)


@pytest.fixture
def repository(database: Database) -> ProxyRepository:
    return ProxyRepository(database.session_factory)


@pytest.fixture
def handler(
    cfg: ProxyRuntimeConfig,
    repository: ProxyRepository,
    ledger: CreditLedger,
    facilitator: FakeFacilitator,
    forwarder: FakeForwarder,
) -> ProxyRequestHandler:
    return ProxyRequestHandler(
        repository=repository,
        challenge=PaymentChallengeBuilder(facilitator, max_timeout_seconds=cfg.max_timeout_seconds),
        verifier=PaymentVerifier(facilitator),
        ledger=ledger,
        settlement=SettlementCoordinator(facilitator, enabled=cfg.settlement_enabled),
        forwarder=forwarder,
        cfg=cfg,
    )


@pytest.fixture
def app(cfg: ProxyRuntimeConfig, handler: ProxyRequestHandler, facilitator: FakeFacilitator) -> FastAPI:
    app = FastAPI(title="Test x402 Paygate")
    app.include_router(router)
    app.state.proxy_handler = handler
    app.state.facilitator = facilitator
    app.dependency_overrides[get_proxy_cfg] = lambda: cfg
    return app


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[httpx.AsyncClient, None]:
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://paygate.test") as c:
        yield c
