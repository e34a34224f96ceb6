# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import ValidationError
from x402.encoding import safe_base64_decode, safe_base64_encode

from .models import PaymentPayload

MAX_X_PAYMENT_BYTES = 8192


class HeaderError(ValueError):
    pass


def _require(cond: bool, msg: str) -> None:
    if not cond:
        raise HeaderError(msg)


def _summarize_validation(e: ValidationError) -> str:
    parts = []
    for err in e.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts)


def decode_x_payment(value: Optional[str]) -> PaymentPayload:
    """Decode an X-PAYMENT header into a structurally valid payment payload.

    Format: base64(JSON {x402Version, scheme, network, payload: {signature, authorization}}).
    Fail fast on any deviation; no signature check happens here.
    """
    _require(bool(value and value.strip()), "X-PAYMENT header required")
    value = value.strip()
    if len(value) > MAX_X_PAYMENT_BYTES:
        raise HeaderError("X-PAYMENT too large")
    try:
        raw = safe_base64_decode(value)
    except Exception as e:
        raise HeaderError(f"X-PAYMENT is not valid base64: {e}")
    try:
        data = json.loads(raw)
    except ValueError as e:
        raise HeaderError(f"X-PAYMENT is not valid JSON: {e}")
    _require(isinstance(data, dict), "X-PAYMENT must encode a JSON object")
    try:
        return PaymentPayload.model_validate(data)
    except ValidationError as e:
        raise HeaderError(f"X-PAYMENT payload invalid: {_summarize_validation(e)}")


def encode_x_payment(payment: PaymentPayload) -> str:
    return safe_base64_encode(json.dumps(payment.to_wire(), separators=(",", ":")))


def build_payment_response_header(
    transaction: str, network: Optional[str], payer: Optional[str]
) -> str:
    receipt: Dict[str, Any] = {
        "status": "settled",
        "transactionHash": transaction,
        "network": network,
        "payer": payer,
        "settlementTime": datetime.now(timezone.utc).isoformat(),
    }
    return json.dumps(receipt, separators=(",", ":"))
