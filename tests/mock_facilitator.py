# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
"""
Mock upstream facilitator for testing.
"""
import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

logger = logging.getLogger(__name__)

MOCK_TX_HASH = "0x" + "f" * 64
NAMES = {"merchant.eth": "0x209693Bc6afc0C5328bA36FaF03C514EF312287C"}

app = FastAPI(title="Mock Facilitator")


class PaymentRequest(BaseModel):
    x402Version: int
    paymentPayload: Dict[str, Any]
    paymentRequirements: Dict[str, Any]
    paymentHeader: Optional[str] = None


class ResolveRequest(BaseModel):
    name: str


class VerifyResponse(BaseModel):
    isValid: bool
    payer: Optional[str] = None
    invalidReason: Optional[str] = None


class SettleResponse(BaseModel):
    success: bool
    payer: Optional[str] = None
    transaction: Optional[str] = None
    network: Optional[str] = None
    errorReason: Optional[str] = None


def _authorization(request: PaymentRequest) -> Dict[str, Any]:
    return (request.paymentPayload.get("payload") or {}).get("authorization") or {}


def _check(request: PaymentRequest) -> Optional[str]:
    auth = _authorization(request)
    requirements = request.paymentRequirements
    if not request.paymentHeader:
        return "missing_payment_header"
    if (auth.get("to") or "").lower() != (requirements.get("payTo") or "").lower():
        return "invalid_exact_evm_payload_recipient_mismatch"
    if int(auth.get("value", "0")) < int(requirements.get("maxAmountRequired", "0")):
        return "invalid_exact_evm_payload_authorization_value"
    return None


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy", "service": "mock-facilitator"}


@app.post("/verify", response_model=VerifyResponse)
async def verify_payment(request: PaymentRequest):
    """Mock payment verification: recipient and amount only, signatures are trusted."""
    reason = _check(request)
    payer = _authorization(request).get("from")
    logger.info(f"Verify request from {payer}: {reason or 'ok'}")
    return VerifyResponse(isValid=reason is None, payer=payer, invalidReason=reason)


@app.post("/settle", response_model=SettleResponse)
async def settle_payment(request: PaymentRequest):
    """Mock settlement - always successful for a verifiable payment."""
    reason = _check(request)
    payer = _authorization(request).get("from")
    if reason:
        return SettleResponse(success=False, payer=payer, errorReason=reason)
    return SettleResponse(
        success=True,
        payer=payer,
        transaction=MOCK_TX_HASH,
        network=request.paymentRequirements.get("network"),
    )


@app.post("/resolve")
async def resolve_name(request: ResolveRequest):
    address = NAMES.get(request.name.lower())
    if address is None:
        raise HTTPException(status_code=404, detail="Name not found")
    return {"name": request.name, "address": address}
