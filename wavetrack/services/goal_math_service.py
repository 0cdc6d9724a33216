from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_CEILING, ROUND_HALF_UP, Decimal
from enum import Enum

CENT = Decimal('0.01')


class GoalKind(str, Enum):
    COUNT = 'count'
    VALUE = 'value'


@dataclass(frozen=True)
class MarketShare:
    assigned_markets: int
    owned_markets: int

    @property
    def owned_clamped(self) -> int:
        return min(max(self.owned_markets, 0), max(self.assigned_markets, 0))

    @property
    def ratio(self) -> Decimal:
        if self.assigned_markets <= 0:
            return Decimal('0')
        return Decimal(self.owned_clamped) / Decimal(self.assigned_markets)

    def scale(self, value: Decimal | int) -> Decimal:
        if self.assigned_markets <= 0:
            return Decimal('0')
        return Decimal(str(value)) * Decimal(self.owned_clamped) / Decimal(self.assigned_markets)


NO_SHARE = MarketShare(assigned_markets=0, owned_markets=0)
FULL_SHARE = MarketShare(assigned_markets=1, owned_markets=1)


def round_money(value: Decimal | int | float) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def ceil_count(value: Decimal) -> int:
    if value <= 0:
        return 0
    return int(value.to_integral_value(rounding=ROUND_CEILING))


def proportional_goal(total_target: Decimal | int, share: MarketShare, kind: GoalKind) -> Decimal | int:
    """
    Scale a wave-level target down to the share of markets owned by a filter.

    Count targets are rounded up to whole units;
    value targets are rounded to cents. A wave without assigned markets yields 0.
    """
    scaled = share.scale(total_target)
    if kind == GoalKind.COUNT:
        return ceil_count(scaled)
    return round_money(scaled)


def percentage(current: Decimal | int, target: Decimal | int) -> Decimal:
    target_dec = Decimal(str(target))
    if target_dec <= 0:
        return Decimal('0.00')
    return round_money(Decimal(str(current)) / target_dec * Decimal('100'))
