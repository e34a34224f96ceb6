# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
"""Prepaid credit balances per (endpoint, payer).

Balances live in the database as integer atomic units, so every deposit and
withdrawal is exact integer arithmetic performed by a single SQL statement.
Decimal amounts only appear at the edges.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

from cachetools import TTLCache
from eth_account import Account
from eth_account.messages import encode_typed_data
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .db import EndpointCredit, utcnow
from .models import PaymentPayload
from .networks import USDC_DECIMALS, find_network, from_atomic_units, to_atomic_units

logger = logging.getLogger(__name__)

TRANSFER_WITH_AUTHORIZATION_TYPES = {
    "EIP712Domain": [
        {"name": "name", "type": "string"},
        {"name": "version", "type": "string"},
        {"name": "chainId", "type": "uint256"},
        {"name": "verifyingContract", "type": "address"},
    ],
    "TransferWithAuthorization": [
        {"name": "from", "type": "address"},
        {"name": "to", "type": "address"},
        {"name": "value", "type": "uint256"},
        {"name": "validAfter", "type": "uint256"},
        {"name": "validBefore", "type": "uint256"},
        {"name": "nonce", "type": "bytes32"},
    ],
}

_RETURNING = (
    EndpointCredit.project_id,
    EndpointCredit.endpoint_id,
    EndpointCredit.user_address,
    EndpointCredit.balance_atomic,
    EndpointCredit.total_deposited_atomic,
    EndpointCredit.total_spent_atomic,
    EndpointCredit.last_topup_atomic,
    EndpointCredit.last_topup_tx_hash,
)


@dataclass(frozen=True)
class CreditBalance:
    project_id: str
    endpoint_id: str
    user_address: str
    balance_atomic: int
    total_deposited_atomic: int
    total_spent_atomic: int
    last_topup_atomic: Optional[int] = None
    last_topup_tx_hash: Optional[str] = None

    @property
    def balance(self) -> Decimal:
        return from_atomic_units(self.balance_atomic)

    @property
    def total_deposited(self) -> Decimal:
        return from_atomic_units(self.total_deposited_atomic)

    @property
    def total_spent(self) -> Decimal:
        return from_atomic_units(self.total_spent_atomic)

    @property
    def last_topup_amount(self) -> Optional[Decimal]:
        if self.last_topup_atomic is None:
            return None
        return from_atomic_units(self.last_topup_atomic)

    @classmethod
    def from_row(cls, row: Any) -> "CreditBalance":
        return cls(
            project_id=row.project_id,
            endpoint_id=row.endpoint_id,
            user_address=row.user_address,
            balance_atomic=int(row.balance_atomic),
            total_deposited_atomic=int(row.total_deposited_atomic),
            total_spent_atomic=int(row.total_spent_atomic),
            last_topup_atomic=row.last_topup_atomic,
            last_topup_tx_hash=row.last_topup_tx_hash,
        )


def calculate_overpayment(paid_amount: Decimal, endpoint_price: Decimal) -> Decimal:
    """Only the excess over the exact price becomes credit."""
    return max(Decimal(0), paid_amount - endpoint_price)


def _normalize(address: str) -> str:
    return (address or "").strip().lower()


def _atomic(amount: Decimal) -> int:
    if amount < 0:
        raise ValueError(f"amount must be non-negative, got {amount}")
    return to_atomic_units(amount, USDC_DECIMALS)


class NonceRegistry:
    """Signed authorizations accepted once per (payer, nonce), remembered for ``ttl_s``.

    An authorization that stays valid longer than the registry remembers it is
    refused, and so is any new one while the registry is full.
    """

    def __init__(self, *, ttl_s: int = 86400, maxsize: int = 100_000) -> None:
        self.ttl_s = ttl_s
        self._used: TTLCache[Tuple[str, str], bool] = TTLCache(maxsize=maxsize, ttl=ttl_s)

    def check(self, payment: PaymentPayload, now: Optional[int] = None) -> Optional[str]:
        """Reason the authorization cannot be accepted, or None."""
        auth = payment.authorization
        now = int(time.time()) if now is None else int(now)
        remaining = int(auth.valid_before) - now
        if remaining > self.ttl_s:
            return f"authorization valid for {remaining}s, longer than the {self.ttl_s}s replay window"
        if payment.replay_key in self._used:
            return f"nonce {auth.nonce} already used by {auth.from_}"
        self._used.expire()
        if len(self._used) >= self._used.maxsize:
            return "replay cache full"
        return None

    def consume(self, payment: PaymentPayload) -> None:
        self._used[payment.replay_key] = True


class CreditLedger:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        nonce_ttl_s: int = 86400,
        nonce_cache_size: int = 100_000,
    ) -> None:
        self._session_factory = session_factory
        self.nonces = NonceRegistry(ttl_s=nonce_ttl_s, maxsize=nonce_cache_size)

    async def get_balance(self, endpoint_id: str, address: str) -> Optional[CreditBalance]:
        async with self._session_factory() as session:
            row = (
                await session.execute(
                    select(*_RETURNING).where(
                        EndpointCredit.endpoint_id == endpoint_id,
                        EndpointCredit.user_address == _normalize(address),
                    )
                )
            ).one_or_none()
        return CreditBalance.from_row(row) if row is not None else None

    async def deposit(
        self,
        project_id: str,
        endpoint_id: str,
        address: str,
        amount: Decimal,
        tx_ref: Optional[str] = None,
    ) -> CreditBalance:
        atomic = _atomic(amount)
        user = _normalize(address)
        try:
            balance = await self._deposit_once(project_id, endpoint_id, user, atomic, tx_ref)
        except IntegrityError:
            # Lost the race to create the row; it exists now, so the increment applies
            balance = await self._deposit_once(project_id, endpoint_id, user, atomic, tx_ref)
        logger.info(
            f"[CREDITS] Deposited {from_atomic_units(atomic)} for {user} on endpoint {endpoint_id} "
            f"(balance={balance.balance}, tx={tx_ref})"
        )
        return balance

    async def _deposit_once(
        self, project_id: str, endpoint_id: str, user: str, atomic: int, tx_ref: Optional[str]
    ) -> CreditBalance:
        async with self._session_factory.begin() as session:
            row = (
                await session.execute(
                    update(EndpointCredit)
                    .where(
                        EndpointCredit.endpoint_id == endpoint_id,
                        EndpointCredit.user_address == user,
                    )
                    .values(
                        balance_atomic=EndpointCredit.balance_atomic + atomic,
                        total_deposited_atomic=EndpointCredit.total_deposited_atomic + atomic,
                        last_topup_atomic=atomic,
                        last_topup_tx_hash=tx_ref,
                        updated_at=utcnow(),
                    )
                    .returning(*_RETURNING)
                    .execution_options(synchronize_session=False)
                )
            ).one_or_none()
            if row is not None:
                return CreditBalance.from_row(row)

            credit = EndpointCredit(
                project_id=project_id,
                endpoint_id=endpoint_id,
                user_address=user,
                balance_atomic=atomic,
                total_deposited_atomic=atomic,
                total_spent_atomic=0,
                last_topup_atomic=atomic,
                last_topup_tx_hash=tx_ref,
            )
            session.add(credit)
            await session.flush()
            return CreditBalance.from_row(credit)

    async def withdraw(
        self, endpoint_id: str, address: str, amount: Decimal
    ) -> Optional[CreditBalance]:
        """Spend ``amount`` from the payer's balance; None means insufficient credits.

        The balance check and the decrement are one conditional UPDATE, so
        concurrent withdrawals against the same row cannot overdraw it.
        """
        atomic = _atomic(amount)
        user = _normalize(address)
        async with self._session_factory.begin() as session:
            row = (
                await session.execute(
                    update(EndpointCredit)
                    .where(
                        EndpointCredit.endpoint_id == endpoint_id,
                        EndpointCredit.user_address == user,
                        EndpointCredit.balance_atomic >= atomic,
                    )
                    .values(
                        balance_atomic=EndpointCredit.balance_atomic - atomic,
                        total_spent_atomic=EndpointCredit.total_spent_atomic + atomic,
                        updated_at=utcnow(),
                    )
                    .returning(*_RETURNING)
                    .execution_options(synchronize_session=False)
                )
            ).one_or_none()
        if row is None:
            logger.info(
                f"[CREDITS] Insufficient credits for {user} on endpoint {endpoint_id} "
                f"(requested {from_atomic_units(atomic)})"
            )
            return None
        balance = CreditBalance.from_row(row)
        logger.info(
            f"[CREDITS] Withdrew {from_atomic_units(atomic)} for {user} on endpoint {endpoint_id} "
            f"(balance={balance.balance})"
        )
        return balance

    def verify_zero_value_auth_signature(
        self, payment: PaymentPayload, now: Optional[int] = None
    ) -> bool:
        """Authenticate a zero-value authorization locally.

        These never reach the facilitator, so the EIP-712 TransferWithAuthorization
        signature is recovered here against the token domain of the declared
        network and must match ``authorization.from``. A nonce is accepted once.
        """
        auth = payment.authorization
        if auth.value != "0":
            return self._reject(f"value must be exactly '0', got {auth.value!r}")

        now = int(time.time()) if now is None else int(now)
        if now < int(auth.valid_after):
            return self._reject(f"authorization not yet valid (validAfter={auth.valid_after}, now={now})")
        if now > int(auth.valid_before):
            return self._reject(f"authorization expired (validBefore={auth.valid_before}, now={now})")

        asset = find_network(payment.network)
        if asset is None:
            return self._reject(f"unsupported network {payment.network!r}")

        reason = self.nonces.check(payment, now)
        if reason:
            return self._reject(reason)

        typed: Dict[str, Any] = {
            "types": TRANSFER_WITH_AUTHORIZATION_TYPES,
            "primaryType": "TransferWithAuthorization",
            "domain": {
                "name": asset.name,
                "version": asset.version,
                "chainId": asset.chain_id,
                "verifyingContract": asset.address,
            },
            "message": {
                "from": auth.from_,
                "to": auth.to,
                "value": int(auth.value),
                "validAfter": int(auth.valid_after),
                "validBefore": int(auth.valid_before),
                "nonce": auth.nonce,
            },
        }
        try:
            signable = encode_typed_data(full_message=typed)
            sig = payment.payload.signature
            sig_bytes = bytes.fromhex(sig[2:] if sig.startswith("0x") else sig)
            recovered = Account.recover_message(signable, signature=sig_bytes)
        except Exception as e:
            return self._reject(f"signature could not be recovered: {e}")

        if recovered.lower() != auth.from_.lower():
            return self._reject(f"signer {recovered} does not match authorization.from {auth.from_}")

        self.nonces.consume(payment)
        return True

    @staticmethod
    def _reject(reason: str) -> bool:
        logger.warning(f"[CREDITS] Zero-value authorization rejected: {reason}")
        return False
