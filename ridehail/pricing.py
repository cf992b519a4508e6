"""Cancellation fee tiers consulted by the fee calculator.

The tier table comes from ``CANCELLATION_FEE_TIERS``: comma-separated
``after_minutes=amount`` pairs, where an amount ending in ``%`` is a share of
the estimated fare. The last tier reached by the elapsed time applies.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from .config import settings


@dataclass(frozen=True)
class FeeTier:
    after_minutes: int
    amount: float
    kind: str = "fixed"  # fixed|percentage


DEFAULT_FEE_TIERS: tuple[FeeTier, ...] = (
    FeeTier(0, 0.0),
    FeeTier(2, 5.0),
    FeeTier(5, 10.0),
)


def parse_fee_tiers(raw: str | None) -> tuple[FeeTier, ...]:
    tiers: list[FeeTier] = []
    for part in (raw or "").split(','):
        part = part.strip()
        if not part or '=' not in part:
            continue
        k, v = part.split('=', 1)
        v = v.strip()
        kind = "fixed"
        if v.endswith('%'):
            kind = "percentage"
            v = v[:-1].strip()
        try:
            after = int(k.strip())
            amount = float(v)
        except ValueError:
            continue
        if after < 0 or amount < 0:
            continue
        tiers.append(FeeTier(after, amount, kind))
    if not tiers:
        return DEFAULT_FEE_TIERS
    return tuple(sorted(tiers, key=lambda t: t.after_minutes))


def base_fee(
    minutes_since_request: float,
    estimated_fare: float,
    tiers: Sequence[FeeTier] | None = None,
) -> float:
    """Fee owed for cancelling after ``minutes_since_request``; never negative."""
    if tiers is None:
        tiers = parse_fee_tiers(settings.CANCELLATION_FEE_TIERS_RAW)
    fee = 0.0
    for tier in tiers:
        if minutes_since_request >= tier.after_minutes:
            if tier.kind == "percentage":
                fee = (estimated_fare or 0.0) * tier.amount / 100.0
            else:
                fee = tier.amount
    return max(0.0, fee)
