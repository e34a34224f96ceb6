# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
"""Per-request payment state machine for the pay-per-request proxy.

A request either stops with a 402 challenge, or is paid for (on-chain payment,
optionally settled, or a draw on prepaid credits) and forwarded to the backend.
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from fastapi import Response
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from starlette.background import BackgroundTask

from .challenge import PaymentChallengeBuilder, respond_402
from .config import ProxyRuntimeConfig
from .credits import CreditBalance, CreditLedger, calculate_overpayment
from .errors import (
    ConfigurationError,
    InternalError,
    InvalidProxyTargetError,
    PaymentRequired,
    ProxyError,
)
from .facilitator import Facilitator
from .forwarder import (
    ForwardOverrides,
    ForwardRequest,
    ForwardResponse,
    Forwarder,
    clean_headers,
    validate_proxy_url,
)
from .headers import build_payment_response_header
from .models import PaymentPayload, PaymentRequirements
from .networks import format_amount, from_atomic_units
from .repository import ProxyRepository, ProxyTarget
from .settlement import (
    SETTLEMENT_PENDING,
    SETTLEMENT_SKIPPED_CREDITS,
    SettlementCoordinator,
    SettlementResult,
)
from .verifier import PaymentVerifier, VerificationResult

logger = logging.getLogger(__name__)

PAYMENT_PENDING = "pending"
PAYMENT_VERIFIED = "verified"
PAYMENT_FAILED = "failed"


@dataclass
class ProxyRequest:
    slug: str
    path: str
    method: str
    headers: Dict[str, str] = field(default_factory=dict)
    query: str = ""
    body: bytes = b""
    client_ip: Optional[str] = None
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self) -> None:
        self.headers = {k.lower(): v for k, v in self.headers.items()}
        if not self.path.startswith("/"):
            self.path = "/" + self.path
        self.method = self.method.upper()


@dataclass
class PaymentOutcome:
    verification: VerificationResult
    settlement: SettlementResult = field(default_factory=lambda: SettlementResult(SETTLEMENT_PENDING))
    credit: Optional[CreditBalance] = None
    credit_used: bool = False


def _error_response(e: ProxyError, req_id: str) -> JSONResponse:
    return JSONResponse(
        status_code=e.status_code,
        content={"error": {"code": e.code, "message": e.message}, "request_id": req_id},
    )


def _truncate(data: bytes, limit: int) -> str:
    return data.decode("utf-8", errors="replace")[:limit]


def _payment_fields(
    verification: VerificationResult, payment_status: str, settlement: SettlementResult
) -> Dict[str, Any]:
    payment = verification.payment
    return {
        "payment_status": payment_status,
        "payment_amount": from_atomic_units(payment.value_atomic) if payment else None,
        "payer_address": verification.payer or (payment.payer if payment else None),
        "settlement_status": settlement.status,
        "settlement_tx_hash": settlement.reference,
        "settlement_error": settlement.error_reason,
    }


class ProxyRequestHandler:
    def __init__(
        self,
        *,
        repository: ProxyRepository,
        challenge: PaymentChallengeBuilder,
        verifier: PaymentVerifier,
        ledger: CreditLedger,
        settlement: SettlementCoordinator,
        forwarder: Forwarder,
        cfg: ProxyRuntimeConfig,
    ) -> None:
        self.repository = repository
        self.challenge = challenge
        self.verifier = verifier
        self.ledger = ledger
        self.settlement = settlement
        self.forwarder = forwarder
        self.cfg = cfg

    async def handle(self, req: ProxyRequest) -> Response:
        req_id = req.request_id
        started = time.perf_counter()
        try:
            response = await self._handle(req, started)
        except ProxyError as e:
            response = self._render_error(req, e)
        except Exception:
            logger.exception(f"[{req_id}] [PROXY] Unexpected error handling {req.method} /{req.slug}{req.path}")
            response = _error_response(InternalError("Internal server error"), req_id)
        response.headers["X-Request-ID"] = req_id
        return response

    def _render_error(self, req: ProxyRequest, e: ProxyError) -> Response:
        logger.warning(
            f"[{req.request_id}] [PROXY] {req.method} /{req.slug}{req.path} -> {e.status_code}: {e.message}"
        )
        return _error_response(e, req.request_id)

    async def _handle(self, req: ProxyRequest, started: float) -> Response:
        target = await self.repository.find_target(req.slug, req.path, req.method)
        audit_id = await self._create_audit(req, target)
        try:
            response, audit = await self._process(req, target)
        except ProxyError as e:
            response = self._render_error(req, e)
            audit = {
                "response_status": e.status_code,
                "response_body": _truncate(response.body, self.cfg.audit_body_limit),
            }
        if audit_id:
            response.background = BackgroundTask(
                self._finalize_audit,
                req.request_id,
                audit_id,
                processing_time_ms=int((time.perf_counter() - started) * 1000),
                **audit,
            )
        return response

    async def _process(self, req: ProxyRequest, target: ProxyTarget) -> Tuple[Response, Dict[str, Any]]:
        req_id = req.request_id
        endpoint = target.endpoint
        if not validate_proxy_url(endpoint.url, production=self.cfg.is_production):
            raise InvalidProxyTargetError("Invalid backend URL")
        if not target.networks:
            raise ConfigurationError("No payment networks configured for this project")

        requirements = await self.challenge.build_all(
            target.price,
            target.networks,
            target.project.pay_to,
            self._resource_url(req),
            f"Payment for {target.project.name} - {endpoint.description or req.path}",
        )

        raw_header = req.headers.get("x-payment")
        if not raw_header:
            logger.info(f"[{req_id}] [PROXY] No X-PAYMENT header, returning 402 for /{req.slug}{req.path}")
            response = respond_402("Payment Required", requirements)
            return response, {
                "response_status": 402,
                "response_body": _truncate(response.body, self.cfg.audit_body_limit),
            }

        verification = await self.verifier.verify(raw_header, requirements)
        payment, requirement = verification.payment, verification.requirement
        if not verification.is_valid or payment is None or requirement is None:
            reason = verification.invalid_reason or "Invalid payment"
            logger.info(f"[{req_id}] [PROXY] Payment verification failed: {reason}")
            return self._reject(verification, reason, requirements)

        try:
            if payment.is_zero_value:
                outcome = await self._spend_credits(req, target, verification, payment)
            else:
                self._claim_authorization(req, payment)
                outcome = PaymentOutcome(verification=verification)
        except PaymentRequired as e:
            logger.info(f"[{req_id}] [PROXY] {e.message} for {verification.payer}")
            return self._reject(verification, e.message, requirements)

        if payment.is_zero_value:
            forwarded = await self.forwarder.forward(self._forward_request(req, target))
        else:
            forwarded = await self._pay_and_forward(req, target, outcome, payment, requirement, raw_header)

        response = self._compose(target, outcome, forwarded)
        logger.info(
            f"[{req_id}] [PROXY] {req.method} /{req.slug}{req.path} -> {forwarded.status} "
            f"({forwarded.duration_ms}ms backend) "
            f"payment={PAYMENT_VERIFIED} settlement={outcome.settlement.status}"
        )
        return response, {
            **_payment_fields(verification, PAYMENT_VERIFIED, outcome.settlement),
            "response_status": forwarded.status,
            "response_headers": json.dumps(forwarded.headers),
            "response_body": _truncate(forwarded.body, self.cfg.audit_body_limit),
        }

    def _resource_url(self, req: ProxyRequest) -> str:
        return f"{self.cfg.public_base_url.rstrip('/')}/proxy/{req.slug}{req.path}"

    def _claim_authorization(self, req: ProxyRequest, payment: PaymentPayload) -> None:
        # A signed transfer pays for one request, settled or not
        reason = self.ledger.nonces.check(payment)
        if reason:
            logger.warning(f"[{req.request_id}] [PROXY] Payment authorization rejected: {reason}")
            raise PaymentRequired(f"Payment authorization rejected: {reason}", payer=payment.payer)
        self.ledger.nonces.consume(payment)

    async def _spend_credits(
        self,
        req: ProxyRequest,
        target: ProxyTarget,
        verification: VerificationResult,
        payment: PaymentPayload,
    ) -> PaymentOutcome:
        endpoint = target.endpoint
        if not endpoint.credits_enabled:
            raise PaymentRequired("Credits not enabled for this endpoint", payer=payment.payer)
        if not self.ledger.verify_zero_value_auth_signature(payment):
            raise PaymentRequired(
                "Insufficient credits: zero-value authorization could not be authenticated",
                payer=payment.payer,
            )
        balance = await self.ledger.withdraw(endpoint.id, payment.payer, target.price)
        if balance is None:
            raise PaymentRequired("Insufficient credits", payer=payment.payer)

        logger.info(
            f"[{req.request_id}] [PROXY] Spent {format_amount(target.price)} credits for {payment.payer}, "
            f"remaining {format_amount(balance.balance)}"
        )
        return PaymentOutcome(
            verification=verification,
            settlement=SettlementResult(SETTLEMENT_SKIPPED_CREDITS, payer=payment.payer),
            credit=balance,
            credit_used=True,
        )

    async def _pay_and_forward(
        self,
        req: ProxyRequest,
        target: ProxyTarget,
        outcome: PaymentOutcome,
        payment: PaymentPayload,
        requirement: PaymentRequirements,
        raw_header: str,
    ) -> ForwardResponse:
        # Settlement outcome never gates forwarding
        forwarded, outcome.settlement = await asyncio.gather(
            self.forwarder.forward(self._forward_request(req, target)),
            self.settlement.settle(payment, requirement, payment_header=raw_header.strip()),
        )
        if target.endpoint.credits_enabled:
            payer = outcome.verification.payer or payment.payer
            outcome.credit = await self._credit_overpayment(req, target, payment, payer, outcome.settlement)
        return forwarded

    async def _credit_overpayment(
        self,
        req: ProxyRequest,
        target: ProxyTarget,
        payment: PaymentPayload,
        payer: str,
        settlement: SettlementResult,
    ) -> Optional[CreditBalance]:
        endpoint = target.endpoint
        paid = from_atomic_units(payment.value_atomic)
        overpayment = calculate_overpayment(paid, target.price)
        min_topup = Decimal(endpoint.min_topup_amount or 0)
        try:
            if overpayment > 0 and overpayment >= min_topup:
                return await self.ledger.deposit(
                    target.project.id, endpoint.id, payer, overpayment, tx_ref=settlement.reference
                )
            if overpayment > 0:
                logger.info(
                    f"[{req.request_id}] [PROXY] Overpayment {format_amount(overpayment)} below minimum "
                    f"top-up {format_amount(min_topup)}, not credited"
                )
            return await self.ledger.get_balance(endpoint.id, payer)
        except Exception:
            # The payment is verified and the backend already answered; keep the response
            logger.exception(
                f"[{req.request_id}] [PROXY] Failed to credit overpayment {format_amount(overpayment)} to {payer}"
            )
            return None

    def _forward_request(self, req: ProxyRequest, target: ProxyTarget) -> ForwardRequest:
        base = ForwardRequest(url=target.endpoint.url, timeout_s=self.cfg.forward_timeout_s)
        return base.merged(
            ForwardOverrides(
                method=req.method,
                path=req.path,
                query=req.query,
                headers=req.headers,
                body=req.body,
            )
        )

    def _compose(
        self, target: ProxyTarget, outcome: PaymentOutcome, forwarded: ForwardResponse
    ) -> Response:
        response = Response(content=forwarded.body, status_code=forwarded.status)
        for name, value in forwarded.headers:
            response.headers.append(name, value)
        settlement = outcome.settlement
        if settlement.success and settlement.reference:
            response.headers["X-Payment-Response"] = build_payment_response_header(
                settlement.reference, settlement.network, settlement.payer
            )
        response.headers["X-Proxy-Service"] = target.project.name
        response.headers["X-Proxy-Payment-Status"] = PAYMENT_VERIFIED
        response.headers["X-Proxy-Settlement-Status"] = settlement.status
        if target.endpoint.credits_enabled:
            credit = outcome.credit
            response.headers["X-Credit-Balance"] = format_amount(credit.balance if credit else Decimal(0))
            response.headers["X-Credit-Used"] = "true" if outcome.credit_used else "false"
            response.headers["X-Credit-Total-Deposited"] = format_amount(
                credit.total_deposited if credit else Decimal(0)
            )
        response.headers["X-Proxy-Duration"] = str(forwarded.duration_ms)
        response.headers["X-Proxy-Status"] = "success" if forwarded.success else "error"
        return response

    def _reject(
        self,
        verification: VerificationResult,
        reason: str,
        requirements: List[PaymentRequirements],
    ) -> Tuple[Response, Dict[str, Any]]:
        payer = verification.payer or (verification.payment.payer if verification.payment else None)
        response = respond_402(
            reason,
            requirements,
            payer=payer,
            headers={"X-Proxy-Payment-Status": PAYMENT_FAILED},
        )
        return response, {
            **_payment_fields(verification, PAYMENT_FAILED, SettlementResult(SETTLEMENT_PENDING)),
            "response_status": 402,
            "response_body": _truncate(response.body, self.cfg.audit_body_limit),
        }

    async def _create_audit(self, req: ProxyRequest, target: ProxyTarget) -> Optional[str]:
        fields: Dict[str, Any] = {
            "project_id": target.project.id,
            "endpoint_id": target.endpoint.id,
            "request_method": req.method,
            "request_path": req.path,
            "request_headers": json.dumps(clean_headers(req.headers)),
            "request_body": _truncate(req.body, self.cfg.audit_body_limit) if req.body else None,
            "client_ip": (req.headers.get("x-forwarded-for") or req.client_ip or "unknown").split(",")[0].strip(),
            "user_agent": req.headers.get("user-agent", "unknown"),
            "payment_status": PAYMENT_PENDING,
            "settlement_status": SETTLEMENT_PENDING,
        }
        try:
            return await self.repository.create_audit_record(**fields)
        except Exception as e:
            logger.error(f"[{req.request_id}] [PROXY] Failed to write audit record: {e!r}")
            return None

    async def _finalize_audit(self, req_id: str, audit_id: str, **fields: Any) -> None:
        try:
            await self.repository.update_audit_record(audit_id, **fields)
        except Exception as e:
            logger.error(f"[{req_id}] [PROXY] Failed to update audit record {audit_id}: {e!r}")


def build_proxy_handler(
    cfg: ProxyRuntimeConfig,
    *,
    session_factory: async_sessionmaker[AsyncSession],
    facilitator: Facilitator,
    forwarder: Forwarder,
) -> ProxyRequestHandler:
    """Wire the payment components for one process from runtime config."""
    return ProxyRequestHandler(
        repository=ProxyRepository(session_factory),
        challenge=PaymentChallengeBuilder(
            facilitator,
            max_timeout_seconds=cfg.max_timeout_seconds,
            name_cache_ttl_s=cfg.name_cache_ttl_s,
        ),
        verifier=PaymentVerifier(facilitator),
        ledger=CreditLedger(session_factory, nonce_ttl_s=cfg.nonce_ttl_s),
        settlement=SettlementCoordinator(facilitator, enabled=cfg.settlement_enabled),
        forwarder=forwarder,
        cfg=cfg,
    )
