# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

from typing import Optional


class ProxyError(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str = "Internal server error") -> None:
        super().__init__(message)
        self.message = message


class ClientError(ProxyError):
    status_code = 400
    code = "CLIENT_ERROR"


class NotFoundError(ClientError):
    status_code = 404
    code = "NOT_FOUND"


class InvalidProxyTargetError(ClientError):
    code = "INVALID_PROXY_TARGET"


class PaymentRequired(ProxyError):
    """Rejection that a conforming client can retry with a correct payment."""

    status_code = 402
    code = "PAYMENT_REQUIRED"

    def __init__(self, message: str = "Payment Required", payer: Optional[str] = None) -> None:
        super().__init__(message)
        self.payer = payer


class UpstreamError(ProxyError):
    status_code = 502
    code = "UPSTREAM_ERROR"


class FacilitatorError(UpstreamError):
    code = "FACILITATOR_ERROR"


class SettlementError(ProxyError):
    status_code = 502
    code = "SETTLEMENT_ERROR"


class ConfigurationError(ProxyError):
    code = "CONFIGURATION_ERROR"


class UnsupportedNetworkError(ConfigurationError):
    code = "UNSUPPORTED_NETWORK"


class InvalidAddressError(ConfigurationError):
    code = "INVALID_ADDRESS"


class ResolutionError(ProxyError):
    status_code = 502
    code = "NAME_RESOLUTION_FAILED"


class InternalError(ProxyError):
    pass
