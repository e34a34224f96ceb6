# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol

import httpx

from .errors import FacilitatorError
from .headers import encode_x_payment
from .models import PaymentPayload, PaymentRequirements, SettleResponse, VerifyResponse, is_address

logger = logging.getLogger(__name__)


class Facilitator(Protocol):
    async def verify(
        self,
        payment: PaymentPayload,
        requirement: PaymentRequirements,
        *,
        payment_header: Optional[str] = None,
    ) -> VerifyResponse: ...

    async def settle(
        self,
        payment: PaymentPayload,
        requirement: PaymentRequirements,
        *,
        payment_header: Optional[str] = None,
    ) -> SettleResponse: ...

    async def resolve_name(self, name: str) -> Optional[str]: ...


def _clean_requirements(requirement: PaymentRequirements) -> Dict[str, Any]:
    pr = requirement.model_dump(exclude_none=True)
    # Upstream only needs the token metadata used for EIP-3009 signing
    extra = pr.get("extra") or {}
    pr["extra"] = {k: extra[k] for k in ("name", "version") if k in extra}
    return pr


class FacilitatorClient:
    """HTTP client for the external x402 facilitator (verify, settle, name resolution)."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout_s: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not base_url:
            raise ValueError("base_url required")
        base = base_url.rstrip("/")
        self.verify_url = f"{base}/verify"
        self.settle_url = f"{base}/settle"
        self.resolve_url = f"{base}/resolve"
        self.http = httpx.AsyncClient(timeout=timeout_s, follow_redirects=True, transport=transport)
        # Debug: last upstream interactions
        self.last_verify: Optional[Dict[str, Any]] = None
        self.last_settle: Optional[Dict[str, Any]] = None

    async def aclose(self) -> None:
        await self.http.aclose()

    def _request_json(
        self, payment: PaymentPayload, requirement: PaymentRequirements, payment_header: Optional[str]
    ) -> Dict[str, Any]:
        return {
            "x402Version": payment.x402_version,
            "paymentPayload": payment.to_wire(),
            "paymentRequirements": _clean_requirements(requirement),
            # Pass through the exact header form for facilitators expecting paymentHeader
            "paymentHeader": payment_header or encode_x_payment(payment),
        }

    async def _post(self, url: str, req_json: Dict[str, Any]) -> tuple[Dict[str, Any], Dict[str, Any]]:
        resp = await self.http.post(url, json=req_json)
        snapshot: Dict[str, Any] = {
            "at": datetime.now(timezone.utc).isoformat(),
            "upstream_url": url,
            "status_code": resp.status_code,
            "sent_payment_requirements": req_json.get("paymentRequirements"),
        }
        try:
            resp_json = resp.json()
        except ValueError:
            resp_json = None
        snapshot["json"] = resp_json
        snapshot["text"] = resp.text

        if resp.status_code != 200:
            raise FacilitatorError(
                f"Facilitator returned {resp.status_code}: {str(resp.text)[:200]}"
            )
        ctype = (resp.headers.get("content-type") or "").split(";", 1)[0].strip().lower()
        if ctype != "application/json" or not isinstance(resp_json, dict):
            raise FacilitatorError(f"invalid content-type from {url}")
        return resp_json, snapshot

    async def verify(
        self,
        payment: PaymentPayload,
        requirement: PaymentRequirements,
        *,
        payment_header: Optional[str] = None,
    ) -> VerifyResponse:
        logger.info(
            f"[FACILITATOR] verify network={requirement.network} scheme={requirement.scheme} "
            f"-> {self.verify_url}"
        )
        data, snapshot = await self._post(
            self.verify_url, self._request_json(payment, requirement, payment_header)
        )
        snapshot["payer"] = data.get("payer")
        snapshot["invalidReason"] = data.get("invalidReason") or data.get("error")
        self.last_verify = snapshot
        return VerifyResponse(
            isValid=bool(data.get("isValid")),
            payer=data.get("payer") or None,
            invalidReason=data.get("invalidReason") or data.get("error") or None,
        )

    async def settle(
        self,
        payment: PaymentPayload,
        requirement: PaymentRequirements,
        *,
        payment_header: Optional[str] = None,
    ) -> SettleResponse:
        logger.info(f"[FACILITATOR] settle network={requirement.network} -> {self.settle_url}")
        data, snapshot = await self._post(
            self.settle_url, self._request_json(payment, requirement, payment_header)
        )
        snapshot["payer"] = data.get("payer")
        snapshot["errorReason"] = data.get("errorReason") or data.get("error")
        self.last_settle = snapshot
        return SettleResponse(
            success=bool(data.get("success")),
            payer=data.get("payer") or None,
            transaction=data.get("transaction") or data.get("txHash") or None,
            network=data.get("network") or requirement.network,
            errorReason=data.get("errorReason") or data.get("error") or None,
        )

    async def resolve_name(self, name: str) -> Optional[str]:
        resp = await self.http.post(self.resolve_url, json={"name": name})
        if resp.status_code == 404:
            return None
        if resp.status_code != 200:
            raise FacilitatorError(f"Facilitator returned {resp.status_code} resolving {name}")
        data = resp.json()
        address = data.get("address") if isinstance(data, dict) else None
        return address if address and is_address(address) else None
