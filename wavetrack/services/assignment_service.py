from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from sqlalchemy import Select, and_, delete, func, select
from sqlalchemy.orm import Session

from wavetrack.config import settings
from wavetrack.models import Market, RepMarketAssignment, WaveMarketAssignment
from wavetrack.services.errors import ReferenceNotFoundError
from wavetrack.services.goal_math_service import MarketShare


@dataclass(frozen=True)
class MarketFilter:
    """
    Predicate over markets used to carve a share out of a wave's assignment.

    ``rep_ids``/``chain_labels`` set to ``None`` leave that dimension open.
    ``none_selected`` is the explicit "no reps selected" state: it matches nothing.
    """

    rep_ids: frozenset[int] | None = None
    chain_labels: frozenset[str] | None = None
    none_selected: bool = False

    @classmethod
    def everything(cls) -> MarketFilter:
        return cls()

    @classmethod
    def nothing(cls) -> MarketFilter:
        return cls(none_selected=True)

    @classmethod
    def for_reps(cls, rep_ids: Iterable[int]) -> MarketFilter:
        return cls(rep_ids=frozenset(int(rep_id) for rep_id in rep_ids))

    @classmethod
    def for_chain(cls, chain_labels: Iterable[str]) -> MarketFilter:
        return cls(chain_labels=frozenset(chain_labels))

    @property
    def is_open(self) -> bool:
        return not self.none_selected and self.rep_ids is None and self.chain_labels is None

    def narrowed(self, other: MarketFilter) -> MarketFilter:
        if self.none_selected or other.none_selected:
            return MarketFilter.nothing()
        return MarketFilter(
            rep_ids=_intersect(self.rep_ids, other.rep_ids),
            chain_labels=_intersect(self.chain_labels, other.chain_labels),
        )


def _intersect(left: frozenset | None, right: frozenset | None) -> frozenset | None:
    if left is None:
        return right
    if right is None:
        return left
    return left & right


def chain_groups() -> dict[str, list[str]]:
    return settings.chain_groups


def chain_labels_for_group(chain_group: str) -> list[str]:
    labels = chain_groups().get(chain_group.strip().lower())
    if labels is None:
        raise ReferenceNotFoundError(f'Unknown chain grouping: {chain_group}')
    return labels


def chain_group_for_label(chain_label: str | None) -> str | None:
    if not chain_label:
        return None
    for group, labels in chain_groups().items():
        if chain_label in labels:
            return group
    return None


def _market_predicates(market_filter: MarketFilter) -> list:
    predicates = []
    if market_filter.chain_labels is not None:
        predicates.append(Market.chain.in_(sorted(market_filter.chain_labels)))
    if market_filter.rep_ids is not None:
        owned = select(RepMarketAssignment.market_id).where(
            RepMarketAssignment.rep_id.in_(sorted(market_filter.rep_ids))
        )
        predicates.append(Market.id.in_(owned))
    return predicates


def filtered_market_ids_query(market_filter: MarketFilter) -> Select:
    query = select(Market.id)
    predicates = _market_predicates(market_filter)
    if predicates:
        query = query.where(and_(*predicates))
    return query


def list_market_ids(db: Session, *, market_filter: MarketFilter) -> list[str]:
    if market_filter.none_selected:
        return []
    return [row[0] for row in db.execute(filtered_market_ids_query(market_filter).order_by(Market.id.asc())).all()]


def wave_market_ids(db: Session, *, wave_id: int) -> list[str]:
    return [
        row[0]
        for row in db.execute(
            select(WaveMarketAssignment.market_id)
            .where(WaveMarketAssignment.wave_id == wave_id)
            .order_by(WaveMarketAssignment.market_id.asc())
        ).all()
    ]


def wave_market_ids_by_wave(db: Session, *, wave_ids: list[int]) -> dict[int, list[str]]:
    if not wave_ids:
        return {}
    rows = db.execute(
        select(WaveMarketAssignment.wave_id, WaveMarketAssignment.market_id).where(
            WaveMarketAssignment.wave_id.in_(wave_ids)
        )
    ).all()
    by_wave: dict[int, list[str]] = {}
    for row in rows:
        by_wave.setdefault(int(row.wave_id), []).append(row.market_id)
    return by_wave


def wave_ids_for_markets(db: Session, *, market_ids: list[str]) -> list[int]:
    if not market_ids:
        return []
    return [
        int(row[0])
        for row in db.execute(
            select(WaveMarketAssignment.wave_id)
            .where(WaveMarketAssignment.market_id.in_(market_ids))
            .distinct()
            .order_by(WaveMarketAssignment.wave_id.asc())
        ).all()
    ]


def rep_market_ids(db: Session, *, rep_id: int) -> list[str]:
    return [
        row[0]
        for row in db.execute(
            select(RepMarketAssignment.market_id)
            .where(RepMarketAssignment.rep_id == rep_id)
            .order_by(RepMarketAssignment.market_id.asc())
        ).all()
    ]


def market_shares_by_wave(
    db: Session,
    *,
    wave_ids: list[int],
    market_filter: MarketFilter,
) -> dict[int, MarketShare]:
    if not wave_ids:
        return {}
    assigned_rows = db.execute(
        select(WaveMarketAssignment.wave_id, func.count(WaveMarketAssignment.market_id).label('assigned'))
        .where(WaveMarketAssignment.wave_id.in_(wave_ids))
        .group_by(WaveMarketAssignment.wave_id)
    ).all()
    assigned = {int(row.wave_id): int(row.assigned) for row in assigned_rows}

    if market_filter.none_selected:
        owned: dict[int, int] = {}
    elif market_filter.is_open:
        owned = dict(assigned)
    else:
        owned_query = (
            select(WaveMarketAssignment.wave_id, func.count(WaveMarketAssignment.market_id).label('owned'))
            .join(Market, Market.id == WaveMarketAssignment.market_id)
            .where(WaveMarketAssignment.wave_id.in_(wave_ids), *_market_predicates(market_filter))
            .group_by(WaveMarketAssignment.wave_id)
        )
        owned = {int(row.wave_id): int(row.owned) for row in db.execute(owned_query).all()}

    return {
        wave_id: MarketShare(assigned_markets=assigned.get(wave_id, 0), owned_markets=owned.get(wave_id, 0))
        for wave_id in wave_ids
    }


def market_share(db: Session, *, wave_id: int, market_filter: MarketFilter) -> MarketShare:
    return market_shares_by_wave(db, wave_ids=[wave_id], market_filter=market_filter)[wave_id]


def replace_wave_markets(db: Session, *, wave_id: int, market_ids: Iterable[str]) -> list[str]:
    wanted = sorted({str(market_id) for market_id in market_ids if str(market_id).strip()})
    if wanted:
        known = {
            row[0] for row in db.execute(select(Market.id).where(Market.id.in_(wanted))).all()
        }
        missing = [market_id for market_id in wanted if market_id not in known]
        if missing:
            raise ReferenceNotFoundError(f'Unknown markets: {", ".join(missing)}')

    db.execute(delete(WaveMarketAssignment).where(WaveMarketAssignment.wave_id == wave_id))
    db.add_all([WaveMarketAssignment(wave_id=wave_id, market_id=market_id) for market_id in wanted])
    db.flush()
    return wanted
