# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

from .facilitator import Facilitator
from .headers import HeaderError, decode_x_payment
from .models import PaymentPayload, PaymentRequirements

logger = logging.getLogger(__name__)

UNEXPECTED_VERIFY_ERROR = "unexpected_verify_error"


@dataclass
class VerificationResult:
    is_valid: bool
    invalid_reason: Optional[str] = None
    payer: Optional[str] = None
    payment: Optional[PaymentPayload] = None
    requirement: Optional[PaymentRequirements] = None

    @property
    def is_zero_value(self) -> bool:
        return self.payment is not None and self.payment.is_zero_value


def select_requirement(
    payment: PaymentPayload, requirements: Sequence[PaymentRequirements]
) -> PaymentRequirements:
    """Requirement whose network matches the payment's declared network, else the first one."""
    for requirement in requirements:
        if requirement.network == payment.network:
            return requirement
    return requirements[0]


class PaymentVerifier:
    def __init__(self, facilitator: Facilitator) -> None:
        self._facilitator = facilitator

    async def verify(
        self, raw_header: Optional[str], requirements: Sequence[PaymentRequirements]
    ) -> VerificationResult:
        """Decode an X-PAYMENT header and confirm it against the offered requirements.

        Zero-value authorizations carry no funds and are not sent to the facilitator;
        they come back valid-but-unauthenticated and must pass the credit ledger's
        own signature check before they can spend anything. One facilitator call per
        request, no retries.
        """
        if not raw_header or not raw_header.strip():
            return VerificationResult(False, invalid_reason="X-PAYMENT header required")
        try:
            payment = decode_x_payment(raw_header)
        except HeaderError as e:
            return VerificationResult(False, invalid_reason=str(e))
        if not requirements:
            return VerificationResult(False, invalid_reason="No payment requirements available")

        requirement = select_requirement(payment, requirements)
        if payment.is_zero_value:
            return VerificationResult(True, payer=payment.payer, payment=payment, requirement=requirement)

        try:
            result = await self._facilitator.verify(
                payment, requirement, payment_header=raw_header.strip()
            )
        except Exception as e:
            logger.error(f"[VERIFY] Facilitator verification failed: {e!r}")
            return VerificationResult(
                False, invalid_reason=UNEXPECTED_VERIFY_ERROR, payment=payment, requirement=requirement
            )

        if not result.isValid:
            return VerificationResult(
                False,
                invalid_reason=result.invalidReason or "invalid_payment",
                payer=result.payer,
                payment=payment,
                requirement=requirement,
            )
        return VerificationResult(
            True,
            payer=result.payer or payment.payer,
            payment=payment,
            requirement=requirement,
        )
