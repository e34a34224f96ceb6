# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .errors import SettlementError
from .facilitator import Facilitator
from .models import PaymentPayload, PaymentRequirements

logger = logging.getLogger(__name__)

SETTLEMENT_PENDING = "pending"
SETTLEMENT_SETTLED = "settled"
SETTLEMENT_FAILED = "failed"
SETTLEMENT_DISABLED = "disabled"
SETTLEMENT_SKIPPED_CREDITS = "skipped_credits"


@dataclass(frozen=True)
class SettlementResult:
    status: str
    reference: Optional[str] = None
    error_reason: Optional[str] = None
    network: Optional[str] = None
    payer: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status == SETTLEMENT_SETTLED


class SettlementCoordinator:
    """Settles verified non-zero payments through the facilitator.

    ``settle`` never raises: a failed settlement is reported in the result and the
    request carries on, since the payment was already verified.
    """

    def __init__(self, facilitator: Facilitator, *, enabled: bool = False) -> None:
        self._facilitator = facilitator
        self.enabled = enabled

    async def settle(
        self,
        payment: PaymentPayload,
        requirement: PaymentRequirements,
        *,
        payment_header: Optional[str] = None,
    ) -> SettlementResult:
        if not self.enabled:
            return SettlementResult(status=SETTLEMENT_DISABLED)
        if payment.is_zero_value:
            return SettlementResult(status=SETTLEMENT_SKIPPED_CREDITS)

        try:
            result = await self._facilitator.settle(
                payment, requirement, payment_header=payment_header
            )
            if not result.success:
                raise SettlementError(result.errorReason or "Settlement rejected by facilitator")
        except SettlementError as e:
            logger.warning(f"[SETTLEMENT] Settlement failed for {payment.payer}: {e.message}")
            return SettlementResult(
                status=SETTLEMENT_FAILED,
                error_reason=e.message,
                network=requirement.network,
                payer=payment.payer,
            )
        except Exception as e:
            logger.error(f"[SETTLEMENT] Settlement error for {payment.payer}: {e!r}")
            return SettlementResult(
                status=SETTLEMENT_FAILED,
                error_reason=f"Settlement error: {e}",
                network=requirement.network,
                payer=payment.payer,
            )

        logger.info(
            f"[SETTLEMENT] Settled {payment.value_atomic} atomic units from {payment.payer} "
            f"on {result.network or requirement.network}: tx={result.transaction}"
        )
        return SettlementResult(
            status=SETTLEMENT_SETTLED,
            reference=result.transaction,
            network=result.network or requirement.network,
            payer=result.payer or payment.payer,
        )
