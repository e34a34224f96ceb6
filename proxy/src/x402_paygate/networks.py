# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
"""Supported payment networks and atomic-unit conversion.

Every network settles in a 6-decimal USDC deployment, so one canonical
conversion is used for prices, payment values and credit balances.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Optional, Union

from .errors import UnsupportedNetworkError

USDC_DECIMALS = 6


@dataclass(frozen=True)
class NetworkAsset:
    network: str
    chain_id: int
    address: str
    name: str
    version: str
    decimals: int = USDC_DECIMALS


NETWORKS: Dict[str, NetworkAsset] = {
    "base": NetworkAsset("base", 8453, "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913", "USD Coin", "2"),
    "base-sepolia": NetworkAsset(
        "base-sepolia", 84532, "0x036CbD53842c5426634e7929541eC2318f3dCF7e", "USDC", "2"
    ),
    "optimism": NetworkAsset("optimism", 10, "0x0b2C639c533813f4Aa9D7837CAf62653d097Ff85", "USD Coin", "2"),
    "arbitrum": NetworkAsset("arbitrum", 42161, "0xaf88d065e77c8cC2239327C5EDb3A432268e5831", "USD Coin", "2"),
    "polygon": NetworkAsset("polygon", 137, "0x3c499c542cEF5E3811e1192ce70d8cC03d5c3359", "USD Coin", "2"),
}


def find_network(network: Optional[str]) -> Optional[NetworkAsset]:
    if not network:
        return None
    return NETWORKS.get(network.lower())


def get_network(network: str) -> NetworkAsset:
    asset = find_network(network)
    if asset is None:
        raise UnsupportedNetworkError(f"Unsupported network: {network}")
    return asset


def to_atomic_units(amount: Union[Decimal, str, int], decimals: int = USDC_DECIMALS) -> int:
    """Convert a decimal currency amount to integer atomic units.

    Amounts finer than one atomic unit are rounded half-up.
    """
    value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    if value.is_nan() or value < 0:
        raise ValueError(f"amount must be a non-negative decimal, got {amount!r}")
    return int(value.scaleb(decimals).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def from_atomic_units(value: Union[int, str], decimals: int = USDC_DECIMALS) -> Decimal:
    return Decimal(int(value)).scaleb(-decimals)


def format_amount(amount: Decimal) -> str:
    return format(amount.normalize(), "f")
