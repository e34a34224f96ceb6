# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

PRICE = Numeric(18, 6, asdecimal=True)


def _new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class Project(Base):
    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String, nullable=False)
    slug: Mapped[str] = mapped_column(String, nullable=False, unique=True, index=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    default_price: Mapped[Decimal] = mapped_column(PRICE, nullable=False)
    currency: Mapped[str] = mapped_column(String, nullable=False, default="USD")
    # Plain address or a name-service name resolved when a challenge is built
    pay_to: Mapped[str] = mapped_column(String, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class ProjectPaymentChain(Base):
    __tablename__ = "project_payment_chains"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    project_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True
    )
    network: Mapped[str] = mapped_column(String, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class ProjectEndpoint(Base):
    __tablename__ = "project_endpoints"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    project_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True
    )
    url: Mapped[str] = mapped_column(String, nullable=False)
    path: Mapped[str] = mapped_column(String, nullable=False)
    method: Mapped[str] = mapped_column(String, nullable=False, default="*")
    price: Mapped[Optional[Decimal]] = mapped_column(PRICE, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    credits_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    min_topup_amount: Mapped[Decimal] = mapped_column(PRICE, nullable=False, default=Decimal("0"))
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class EndpointCredit(Base):
    """Prepaid balance per (endpoint, payer). Amounts are USDC atomic units."""

    __tablename__ = "endpoint_credits"
    __table_args__ = (UniqueConstraint("endpoint_id", "user_address", name="uq_endpoint_credit_user"),)

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    project_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False
    )
    endpoint_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("project_endpoints.id", ondelete="CASCADE"), nullable=False
    )
    user_address: Mapped[str] = mapped_column(String(42), nullable=False)
    balance_atomic: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_deposited_atomic: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_spent_atomic: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    last_topup_atomic: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    last_topup_tx_hash: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class ApiLog(Base):
    __tablename__ = "api_logs"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    project_id: Mapped[str] = mapped_column(String(32), ForeignKey("projects.id"), nullable=False)
    endpoint_id: Mapped[Optional[str]] = mapped_column(
        String(32), ForeignKey("project_endpoints.id"), nullable=True
    )
    request_method: Mapped[str] = mapped_column(String, nullable=False)
    request_path: Mapped[str] = mapped_column(String, nullable=False)
    request_headers: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    request_body: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    response_status: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    response_headers: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    response_body: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    payment_status: Mapped[str] = mapped_column(String, nullable=False, default="pending")
    payment_amount: Mapped[Optional[Decimal]] = mapped_column(PRICE, nullable=True)
    payer_address: Mapped[Optional[str]] = mapped_column(String(42), nullable=True)
    settlement_status: Mapped[Optional[str]] = mapped_column(String, nullable=True, default="pending")
    settlement_tx_hash: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    settlement_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    client_ip: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    processing_time_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class Database:
    def __init__(self, url: str, *, echo: bool = False) -> None:
        # Concurrent SQLite writers wait on the file lock instead of failing
        connect_args = {"timeout": 30} if url.startswith("sqlite") else {}
        self.url = url
        self.engine: AsyncEngine = create_async_engine(url, echo=echo, connect_args=connect_args)
        self.session_factory = async_sessionmaker(self.engine, expire_on_commit=False)

    async def create_all(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()
