# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
"""x402 Pay-per-request Gateway

Puts priced backend endpoints behind an x402 payment challenge, settles payments
through a facilitator and turns overpayments into prepaid endpoint credits.

Usage:
    from x402_paygate import Database, FacilitatorClient, HttpForwarder, ProxyRuntimeConfig
    from x402_paygate import build_proxy_handler, router

    cfg = ProxyRuntimeConfig()
    db = Database(cfg.database_url)
    app = FastAPI()
    app.state.proxy_handler = build_proxy_handler(
        cfg,
        session_factory=db.session_factory,
        facilitator=FacilitatorClient(cfg.facilitator_url),
        forwarder=HttpForwarder(),
    )
    app.include_router(router)
"""

from .challenge import PaymentChallengeBuilder, payment_required_body, respond_402
from .config import ProxyRuntimeConfig, get_proxy_cfg
from .credits import CreditBalance, CreditLedger, calculate_overpayment
from .db import Database
from .errors import (
    ClientError,
    ConfigurationError,
    FacilitatorError,
    InternalError,
    InvalidAddressError,
    InvalidProxyTargetError,
    NotFoundError,
    PaymentRequired,
    ProxyError,
    ResolutionError,
    SettlementError,
    UnsupportedNetworkError,
    UpstreamError,
)
from .facilitator import FacilitatorClient
from .forwarder import ForwardRequest, ForwardResponse, HttpForwarder, validate_proxy_url
from .handler import ProxyRequest, ProxyRequestHandler, build_proxy_handler
from .headers import HeaderError, decode_x_payment, encode_x_payment
from .models import PaymentPayload, PaymentRequirements
from .repository import ProxyRepository
from .routes import router
from .settlement import SettlementCoordinator, SettlementResult
from .verifier import PaymentVerifier, VerificationResult

__version__ = "0.1.0"

__all__ = [
    "router",
    "ProxyRuntimeConfig",
    "get_proxy_cfg",
    "Database",
    "ProxyRepository",
    "FacilitatorClient",
    "HttpForwarder",
    "ForwardRequest",
    "ForwardResponse",
    "validate_proxy_url",
    "PaymentChallengeBuilder",
    "payment_required_body",
    "respond_402",
    "PaymentVerifier",
    "VerificationResult",
    "CreditLedger",
    "CreditBalance",
    "calculate_overpayment",
    "SettlementCoordinator",
    "SettlementResult",
    "ProxyRequest",
    "ProxyRequestHandler",
    "build_proxy_handler",
    "PaymentPayload",
    "PaymentRequirements",
    "HeaderError",
    "decode_x_payment",
    "encode_x_payment",
    "ProxyError",
    "ClientError",
    "NotFoundError",
    "InvalidProxyTargetError",
    "PaymentRequired",
    "UpstreamError",
    "FacilitatorError",
    "SettlementError",
    "ConfigurationError",
    "UnsupportedNetworkError",
    "InvalidAddressError",
    "ResolutionError",
    "InternalError",
]
