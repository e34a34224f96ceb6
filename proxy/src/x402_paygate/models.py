# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
"""x402 v1 wire models shared by the challenge, verification and settlement paths.

Payment payloads extend the ``x402.types`` models with stricter field checks.
Requirements stay local: the SDK pins ``network`` to its own network list,
which does not include every network this proxy accepts.
"""
from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator
from x402.types import EIP3009Authorization as X402Authorization
from x402.types import ExactPaymentPayload
from x402.types import PaymentPayload as X402PaymentPayload

X402_VERSION = 1
SCHEME_EXACT = "exact"

_ADDRESS = re.compile(r"^0x[0-9a-fA-F]{40}$")
_BYTES32 = re.compile(r"^0x[0-9a-fA-F]{64}$")
_HEX = re.compile(r"^(0x)?[0-9a-fA-F]+$")


def is_address(value: str) -> bool:
    return isinstance(value, str) and _ADDRESS.match(value) is not None


class PaymentRequirements(BaseModel):
    scheme: str = SCHEME_EXACT
    network: str
    maxAmountRequired: str
    resource: str
    description: str = ""
    mimeType: str = "application/json"
    payTo: str
    maxTimeoutSeconds: int
    asset: str
    outputSchema: Optional[Dict[str, Any]] = None
    extra: Dict[str, Any] = Field(default_factory=dict)


class EIP3009Authorization(X402Authorization):
    @field_validator("value", "valid_after", "valid_before", mode="before")
    @classmethod
    def coerce_uint(cls, v: Any) -> Any:
        if isinstance(v, bool):
            raise ValueError("must be an unsigned integer string")
        if isinstance(v, int):
            return str(v)
        return v

    @field_validator("value", "valid_after", "valid_before")
    @classmethod
    def validate_uint(cls, v: str) -> str:
        if not v.isdigit():
            raise ValueError("must be an unsigned integer string")
        return v

    @field_validator("from_", "to")
    @classmethod
    def validate_address(cls, v: str) -> str:
        if not is_address(v):
            raise ValueError("must be an EVM address (0x...)")
        return v

    @field_validator("nonce")
    @classmethod
    def validate_nonce(cls, v: str) -> str:
        if _BYTES32.match(v) is None:
            raise ValueError("nonce must be 32 bytes of hex (0x...)")
        return v


class ExactPayload(ExactPaymentPayload):
    authorization: EIP3009Authorization

    @field_validator("signature")
    @classmethod
    def validate_signature(cls, v: str) -> str:
        if _HEX.match(v) is None:
            raise ValueError("signature must be hex encoded")
        return v


class PaymentPayload(X402PaymentPayload):
    x402_version: int = X402_VERSION
    payload: ExactPayload

    @field_validator("scheme")
    @classmethod
    def validate_scheme(cls, v: str) -> str:
        if v != SCHEME_EXACT:
            raise ValueError(f"unsupported scheme '{v}'")
        return v

    @property
    def authorization(self) -> EIP3009Authorization:
        return self.payload.authorization

    @property
    def payer(self) -> str:
        return self.payload.authorization.from_

    @property
    def value_atomic(self) -> int:
        return int(self.payload.authorization.value)

    @property
    def is_zero_value(self) -> bool:
        return self.value_atomic == 0

    @property
    def replay_key(self) -> tuple[str, str]:
        """(payer, nonce), lowercased: identifies one signed authorization."""
        auth = self.payload.authorization
        return auth.from_.lower(), auth.nonce.lower()

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


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


class PaymentRequiredResponse(BaseModel):
    x402Version: int = X402_VERSION
    error: str
    accepts: List[PaymentRequirements]
    payer: Optional[str] = None
