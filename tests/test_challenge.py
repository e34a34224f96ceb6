# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
import json
from decimal import Decimal

import pytest

from x402_paygate.challenge import PaymentChallengeBuilder, payment_required_body, respond_402
from x402_paygate.errors import InvalidAddressError, ResolutionError, UnsupportedNetworkError
from x402_paygate.networks import NETWORKS

from conftest import PAY_TO, FakeFacilitator

RESOURCE = "https://paygate.example.com/proxy/weather/forecast"


@pytest.mark.asyncio
class TestPaymentChallengeBuilder:
    async def test_build_requirements(self):
        builder = PaymentChallengeBuilder(max_timeout_seconds=60)
        req = await builder.build(Decimal("0.01"), "base-sepolia", PAY_TO.lower(), RESOURCE, "Forecast")

        assert req.scheme == "exact"
        assert req.network == "base-sepolia"
        assert req.maxAmountRequired == "10000"
        assert req.resource == RESOURCE
        assert req.description == "Forecast"
        assert req.payTo == PAY_TO  # checksummed
        assert req.maxTimeoutSeconds == 60
        assert req.asset == NETWORKS["base-sepolia"].address
        assert req.extra == {"name": "USDC", "version": "2"}

    async def test_one_requirement_per_network(self):
        builder = PaymentChallengeBuilder()
        reqs = await builder.build_all(Decimal("1.5"), ["base", "polygon"], PAY_TO, RESOURCE, "")
        assert [r.network for r in reqs] == ["base", "polygon"]
        assert all(r.maxAmountRequired == "1500000" for r in reqs)

    async def test_unsupported_network(self):
        with pytest.raises(UnsupportedNetworkError):
            await PaymentChallengeBuilder().build(Decimal("0.01"), "solana", PAY_TO, RESOURCE, "")

    async def test_name_resolution_is_cached(self):
        facilitator = FakeFacilitator()
        facilitator.names["merchant.eth"] = PAY_TO.lower()
        builder = PaymentChallengeBuilder(facilitator)

        first = await builder.resolve_pay_to("merchant.eth")
        facilitator.names.clear()
        second = await builder.resolve_pay_to("Merchant.ETH")

        assert first == second == PAY_TO

    async def test_unresolvable_name(self):
        builder = PaymentChallengeBuilder(FakeFacilitator())
        with pytest.raises(ResolutionError):
            await builder.resolve_pay_to("nobody.eth")

    async def test_name_without_resolver(self):
        with pytest.raises(ResolutionError):
            await PaymentChallengeBuilder().resolve_pay_to("merchant.eth")

    async def test_invalid_recipient(self):
        with pytest.raises(InvalidAddressError):
            await PaymentChallengeBuilder().resolve_pay_to("0x1234")


@pytest.mark.asyncio
class TestRespond402:
    async def test_body_shape(self):
        reqs = await PaymentChallengeBuilder().build_all(Decimal("0.01"), ["base"], PAY_TO, RESOURCE, "")
        body = payment_required_body("Payment Required", reqs)
        assert body["x402Version"] == 1
        assert body["error"] == "Payment Required"
        assert body["accepts"][0]["payTo"] == PAY_TO
        assert "payer" not in body
        assert "outputSchema" not in body["accepts"][0]

    async def test_response_carries_payer(self):
        reqs = await PaymentChallengeBuilder().build_all(Decimal("0.01"), ["base"], PAY_TO, RESOURCE, "")
        response = respond_402("Insufficient credits", reqs, payer="0xabc")
        assert response.status_code == 402
        data = json.loads(response.body)
        assert data["payer"] == "0xabc"
        assert len(data["accepts"]) == 1
