from __future__ import annotations

from decimal import Decimal

from sqlalchemy.orm import Session

from wavetrack.models import Wave
from wavetrack.services.assignment_service import MarketFilter, market_share
from wavetrack.services.errors import ReferenceNotFoundError
from wavetrack.services.goal_math_service import GoalKind, MarketShare, proportional_goal


def market_ratio(db: Session, *, wave_id: int, market_filter: MarketFilter) -> MarketShare:
    if db.get(Wave, wave_id) is None:
        raise ReferenceNotFoundError(f'Wave {wave_id} not found')
    return market_share(db, wave_id=wave_id, market_filter=market_filter)


def proportional_wave_goal(
    db: Session,
    *,
    wave_id: int,
    total_target: Decimal | int,
    market_filter: MarketFilter,
    kind: GoalKind,
) -> dict:
    share = market_ratio(db, wave_id=wave_id, market_filter=market_filter)
    return {
        'wave_id': wave_id,
        'kind': kind.value,
        'total_target': total_target,
        'assigned_markets': share.assigned_markets,
        'owned_markets': share.owned_clamped,
        'ratio': share.ratio,
        'goal': proportional_goal(total_target, share, kind),
    }
