# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

import logging
import re
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol, Sequence

from cachetools import TTLCache
from eth_utils import to_checksum_address
from fastapi.responses import JSONResponse

from .errors import InvalidAddressError, ResolutionError
from .models import PaymentRequiredResponse, PaymentRequirements, SCHEME_EXACT, is_address
from .networks import get_network, to_atomic_units

logger = logging.getLogger(__name__)

_NAME = re.compile(r"^[a-z0-9-]+(\.[a-z0-9-]+)+$", re.IGNORECASE)


class NameResolver(Protocol):
    async def resolve_name(self, name: str) -> Optional[str]: ...


class PaymentChallengeBuilder:
    """Builds the `accepts` entries of a 402 challenge for a priced endpoint."""

    def __init__(
        self,
        resolver: Optional[NameResolver] = None,
        *,
        max_timeout_seconds: int = 60,
        name_cache_ttl_s: int = 300,
    ) -> None:
        self._resolver = resolver
        self.max_timeout_seconds = max_timeout_seconds
        self._names: TTLCache[str, str] = TTLCache(maxsize=1024, ttl=name_cache_ttl_s)

    async def resolve_pay_to(self, pay_to: str) -> str:
        value = (pay_to or "").strip()
        if is_address(value):
            return to_checksum_address(value)
        if not _NAME.match(value):
            raise InvalidAddressError(f"Invalid payTo: {pay_to!r} is neither an address nor a name")

        key = value.lower()
        cached = self._names.get(key)
        if cached:
            return cached
        if self._resolver is None:
            raise ResolutionError(f"Cannot resolve {value}: no name resolver configured")
        try:
            address = await self._resolver.resolve_name(value)
        except Exception as e:
            raise ResolutionError(f"Failed to resolve {value}: {e}")
        if not address:
            raise ResolutionError(f"Could not resolve name {value}")
        address = to_checksum_address(address)
        self._names[key] = address
        logger.info(f"[CHALLENGE] Resolved {value} -> {address}")
        return address

    async def build(
        self,
        price: Decimal,
        network: str,
        pay_to: str,
        resource: str,
        description: str,
    ) -> PaymentRequirements:
        asset = get_network(network)
        address = await self.resolve_pay_to(pay_to)
        return PaymentRequirements(
            scheme=SCHEME_EXACT,
            network=asset.network,
            maxAmountRequired=str(to_atomic_units(price, asset.decimals)),
            resource=resource,
            description=description,
            mimeType="application/json",
            payTo=address,
            maxTimeoutSeconds=self.max_timeout_seconds,
            asset=asset.address,
            extra={"name": asset.name, "version": asset.version},
        )

    async def build_all(
        self,
        price: Decimal,
        networks: Sequence[str],
        pay_to: str,
        resource: str,
        description: str,
    ) -> List[PaymentRequirements]:
        return [await self.build(price, n, pay_to, resource, description) for n in networks]


def payment_required_body(
    error: str, requirements: Sequence[PaymentRequirements], payer: Optional[str] = None
) -> Dict[str, Any]:
    body = PaymentRequiredResponse(error=error, accepts=list(requirements), payer=payer)
    return body.model_dump(exclude_none=True)


def respond_402(
    error: str,
    requirements: Sequence[PaymentRequirements],
    payer: Optional[str] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=402,
        content=payment_required_body(error, requirements, payer),
        headers=headers,
    )
