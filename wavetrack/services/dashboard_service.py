from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from wavetrack.config import settings
from wavetrack.models import (
    FLAT_ITEM_TYPES,
    GoalType,
    ItemType,
    Market,
    ProgressEntry,
    Submission,
    Wave,
    WaveItem,
    WaveStatus,
)
from wavetrack.services.assignment_service import (
    MarketFilter,
    chain_group_for_label,
    chain_groups,
    chain_labels_for_group,
    list_market_ids,
    market_shares_by_wave,
    rep_market_ids,
    wave_ids_for_markets,
    wave_market_ids_by_wave,
)
from wavetrack.services.catalog_service import flat_items_for_waves
from wavetrack.services.goal_math_service import (
    FULL_SHARE,
    GoalKind,
    MarketShare,
    percentage,
    proportional_goal,
    round_money,
)
from wavetrack.services.time_utils import as_utc, local_today
from wavetrack.services.wave_status_service import wave_statuses


FLAT_TYPE_ORDER = (ItemType.DISPLAY, ItemType.KARTONWARE, ItemType.EINZELPRODUKT)


@dataclass(frozen=True)
class DashboardFilters:
    rep_ids: frozenset[int] | None = None
    none_selected: bool = False
    start_date: date | None = None
    end_date: date | None = None
    item_types: tuple[ItemType, ...] | None = None

    @property
    def market_filter(self) -> MarketFilter:
        if self.none_selected:
            return MarketFilter.nothing()
        if self.rep_ids is None:
            return MarketFilter.everything()
        return MarketFilter.for_reps(self.rep_ids)

    @property
    def flat_types(self) -> list[ItemType]:
        if self.item_types is None:
            return list(FLAT_TYPE_ORDER)
        return [item_type for item_type in FLAT_TYPE_ORDER if item_type in self.item_types]

    @property
    def rep_filtered(self) -> bool:
        return self.none_selected or self.rep_ids is not None


def _overlapping_wave_ids(db: Session, *, wave_ids: list[int], filters: DashboardFilters) -> list[int]:
    if not wave_ids:
        return []
    query = select(Wave.id).where(Wave.id.in_(wave_ids))
    if filters.start_date is not None:
        query = query.where(Wave.end_date >= filters.start_date)
    if filters.end_date is not None:
        query = query.where(Wave.start_date <= filters.end_date)
    return [int(row[0]) for row in db.execute(query.order_by(Wave.id.asc())).all()]


def _ledger_by_item(
    db: Session,
    *,
    wave_ids: list[int],
    item_types: list[ItemType],
    filters: DashboardFilters,
) -> dict[tuple[ItemType, int], int]:
    if not wave_ids or not item_types or filters.none_selected:
        return {}
    query = (
        select(
            ProgressEntry.item_type,
            ProgressEntry.item_id,
            func.coalesce(func.sum(ProgressEntry.current_number), 0).label('current'),
        )
        .where(ProgressEntry.wave_id.in_(wave_ids), ProgressEntry.item_type.in_(item_types))
        .group_by(ProgressEntry.item_type, ProgressEntry.item_id)
    )
    if filters.rep_ids is not None:
        query = query.where(ProgressEntry.rep_id.in_(sorted(filters.rep_ids)))
    return {(row.item_type, int(row.item_id)): int(row.current) for row in db.execute(query).all()}


def _shares(db: Session, *, wave_ids: list[int], filters: DashboardFilters) -> dict[int, MarketShare]:
    if not filters.rep_filtered:
        return {wave_id: FULL_SHARE for wave_id in wave_ids}
    return market_shares_by_wave(db, wave_ids=wave_ids, market_filter=filters.market_filter)


def _goal_settings(chain_group: str) -> tuple[GoalType, int | None]:
    goal_percentage = settings.chain_goal_percentages.get(chain_group)
    if goal_percentage is None:
        return GoalType.VALUE, None
    return GoalType.PERCENTAGE, goal_percentage


def _empty_chain_summary(chain_group: str, total_markets: int) -> dict:
    goal_type, goal_percentage = _goal_settings(chain_group)
    return {
        'chain': chain_group,
        'goal_type': goal_type.value,
        'goal_percentage': goal_percentage,
        'total_markets': total_markets,
        'markets_with_progress': 0,
        'current': 0,
        'goal': 0,
        'current_value': Decimal('0.00'),
        'goal_value': Decimal('0.00'),
        'total_value': Decimal('0.00'),
        'current_percentage': Decimal('0.00'),
    }


def chain_summary(db: Session, *, chain_group: str, filters: DashboardFilters | None = None) -> dict:
    """
    Progress of every wave touching a chain grouping's markets.

    Targets are whole-wave targets, scaled per wave by the filtered reps'
    share of assigned markets when a rep filter is active.
    """
    filters = filters or DashboardFilters()
    group = chain_group.strip().lower()
    labels = chain_labels_for_group(group)
    chain_market_ids = list_market_ids(db, market_filter=MarketFilter.for_chain(labels))
    summary = _empty_chain_summary(group, len(chain_market_ids))
    if not chain_market_ids or filters.none_selected:
        return summary

    wave_ids = _overlapping_wave_ids(
        db,
        wave_ids=wave_ids_for_markets(db, market_ids=chain_market_ids),
        filters=filters,
    )
    if not wave_ids:
        return summary

    item_types = filters.flat_types
    items = flat_items_for_waves(db, wave_ids=wave_ids, item_types=item_types)
    ledger = _ledger_by_item(db, wave_ids=wave_ids, item_types=item_types, filters=filters)
    shares = _shares(db, wave_ids=wave_ids, filters=filters)

    targets_by_wave: dict[int, int] = {}
    target_values_by_wave: dict[int, Decimal] = {}
    current = 0
    current_value = Decimal('0')
    waves_with_progress: set[int] = set()
    for item in items:
        unit_value = Decimal(item.item_value or 0)
        targets_by_wave[item.wave_id] = targets_by_wave.get(item.wave_id, 0) + item.target_number
        target_values_by_wave[item.wave_id] = target_values_by_wave.get(item.wave_id, Decimal('0')) + (
            item.target_number * unit_value
        )
        reached = ledger.get((item.item_type, item.id), 0)
        current += reached
        current_value += reached * unit_value
        if reached > 0:
            waves_with_progress.add(item.wave_id)

    goal = sum(
        proportional_goal(target, shares.get(wave_id, FULL_SHARE), GoalKind.COUNT)
        for wave_id, target in targets_by_wave.items()
    )
    total_value = sum(
        (
            proportional_goal(value, shares.get(wave_id, FULL_SHARE), GoalKind.VALUE)
            for wave_id, value in target_values_by_wave.items()
        ),
        Decimal('0'),
    )

    value_waves = db.execute(
        select(Wave.id, Wave.goal_value).where(Wave.id.in_(wave_ids), Wave.goal_type == GoalType.VALUE)
    ).all()
    goal_value = sum(
        (
            proportional_goal(Decimal(row.goal_value or 0), shares.get(int(row.id), FULL_SHARE), GoalKind.VALUE)
            for row in value_waves
        ),
        Decimal('0'),
    )

    chain_market_set = set(chain_market_ids)
    reached_markets: set[str] = set()
    for market_ids in wave_market_ids_by_wave(db, wave_ids=sorted(waves_with_progress)).values():
        reached_markets.update(market_id for market_id in market_ids if market_id in chain_market_set)

    summary.update(
        {
            'markets_with_progress': len(reached_markets),
            'current': current,
            'goal': goal,
            'current_value': round_money(current_value),
            'goal_value': round_money(goal_value),
            'total_value': round_money(total_value),
            'current_percentage': percentage(current, goal),
        }
    )
    return summary


def chain_summaries(db: Session, *, filters: DashboardFilters | None = None) -> list[dict]:
    return [chain_summary(db, chain_group=group, filters=filters) for group in chain_groups()]


def _is_dashboard_wave(wave: Wave, status: WaveStatus, today: date) -> bool:
    if status == WaveStatus.ACTIVE:
        return True
    if status == WaveStatus.FINISHED:
        return wave.end_date >= today - timedelta(days=settings.dashboard_recent_days)
    return False


def wave_summary(db: Session, *, filters: DashboardFilters | None = None, today: date | None = None) -> list[dict]:
    """Cards for active and recently finished waves."""
    filters = filters or DashboardFilters()
    today = today or local_today()
    waves = db.execute(select(Wave).order_by(Wave.start_date.desc(), Wave.id.desc())).scalars().all()
    statuses = wave_statuses(db, waves=waves, today=today)
    waves = [wave for wave in waves if _is_dashboard_wave(wave, statuses[wave.id], today)]
    if filters.start_date is not None:
        waves = [wave for wave in waves if wave.end_date >= filters.start_date]
    if filters.end_date is not None:
        waves = [wave for wave in waves if wave.start_date <= filters.end_date]
    if not waves:
        return []

    wave_ids = [wave.id for wave in waves]
    item_types = filters.flat_types
    items = flat_items_for_waves(db, wave_ids=wave_ids, item_types=item_types)
    ledger = _ledger_by_item(db, wave_ids=wave_ids, item_types=item_types, filters=filters)
    shares = market_shares_by_wave(db, wave_ids=wave_ids, market_filter=filters.market_filter)
    participants = _participating_reps(db, wave_ids=wave_ids, filters=filters)

    items_by_wave: dict[int, list[WaveItem]] = {}
    for item in items:
        items_by_wave.setdefault(item.wave_id, []).append(item)

    cards = []
    for wave in waves:
        share = shares[wave.id]
        scale = share if filters.rep_filtered else FULL_SHARE
        per_type = []
        current_value = Decimal('0')
        target_value = Decimal('0')
        for item_type in item_types:
            typed = [item for item in items_by_wave.get(wave.id, []) if item.item_type == item_type]
            count = sum(ledger.get((item_type, item.id), 0) for item in typed)
            target = sum(item.target_number for item in typed)
            per_type.append(
                {
                    'item_type': item_type.value,
                    'current': count,
                    'target': proportional_goal(target, scale, GoalKind.COUNT),
                }
            )
            for item in typed:
                unit_value = Decimal(item.item_value or 0)
                current_value += ledger.get((item_type, item.id), 0) * unit_value
                target_value += item.target_number * unit_value

        goal_value = None
        if wave.goal_type == GoalType.VALUE and wave.goal_value is not None:
            goal_value = proportional_goal(Decimal(wave.goal_value), scale, GoalKind.VALUE)

        cards.append(
            {
                'id': wave.id,
                'name': wave.name,
                'start_date': wave.start_date,
                'end_date': wave.end_date,
                'status': statuses[wave.id].value,
                'goal_type': wave.goal_type.value,
                'goal_percentage': wave.goal_percentage,
                'goal_value': goal_value,
                'types': per_type,
                'current_value': round_money(current_value),
                'target_value': proportional_goal(target_value, scale, GoalKind.VALUE),
                'assigned_markets': share.owned_clamped if filters.rep_filtered else share.assigned_markets,
                'participating_reps': participants.get(wave.id, 0),
            }
        )
    return cards


def _participating_reps(db: Session, *, wave_ids: list[int], filters: DashboardFilters) -> dict[int, int]:
    if filters.none_selected:
        return {}
    query = (
        select(ProgressEntry.wave_id, func.count(func.distinct(ProgressEntry.rep_id)).label('reps'))
        .where(ProgressEntry.wave_id.in_(wave_ids), ProgressEntry.current_number > 0)
        .group_by(ProgressEntry.wave_id)
    )
    if filters.rep_ids is not None:
        query = query.where(ProgressEntry.rep_id.in_(sorted(filters.rep_ids)))
    return {int(row.wave_id): int(row.reps) for row in db.execute(query).all()}


def _week_key(created_at) -> tuple[int, int]:
    iso = local_today(as_utc(created_at)).isocalendar()
    return iso.year, iso.week


def rep_chain_performance(db: Session, *, rep_id: int, today: date | None = None) -> dict[str, dict]:
    """
    Weekly cumulative contribution of one rep per chain grouping.

    A submission's chain comes from its market, or from the first chain-mapped
    market assigned to its wave when the submission carries none. Goals are the
    rep's proportional share of every started wave on the rep's markets.
    """
    today = today or local_today()
    type_keys = [item_type.value for item_type in FLAT_TYPE_ORDER]
    result = {
        group: {
            'weeks': [],
            'current': {key: 0 for key in type_keys},
            'goal': {key: 0 for key in type_keys},
        }
        for group in chain_groups()
    }

    submissions = db.execute(
        select(Submission.wave_id, Submission.market_id, Submission.item_type, Submission.quantity, Submission.created_at)
        .where(Submission.rep_id == rep_id, Submission.item_type.in_(sorted(FLAT_ITEM_TYPES, key=lambda t: t.value)))
        .order_by(Submission.created_at.asc(), Submission.id.asc())
    ).all()

    wave_ids = sorted({int(row.wave_id) for row in submissions})
    markets_by_wave = wave_market_ids_by_wave(db, wave_ids=wave_ids)
    referenced_markets = {row.market_id for row in submissions if row.market_id}
    for market_ids in markets_by_wave.values():
        referenced_markets.update(market_ids)
    chain_by_market = {}
    if referenced_markets:
        chain_by_market = {
            row.id: chain_group_for_label(row.chain)
            for row in db.execute(select(Market.id, Market.chain).where(Market.id.in_(sorted(referenced_markets)))).all()
        }

    def wave_chain(wave_id: int) -> str | None:
        for market_id in sorted(markets_by_wave.get(wave_id, [])):
            group = chain_by_market.get(market_id)
            if group:
                return group
        return None

    weekly: dict[str, dict[tuple[int, int], dict[str, int]]] = {group: {} for group in result}
    for row in submissions:
        group = chain_by_market.get(row.market_id) if row.market_id else None
        group = group or wave_chain(int(row.wave_id))
        if group not in result:
            continue
        week = weekly[group].setdefault(_week_key(row.created_at), {key: 0 for key in type_keys})
        week[row.item_type.value] += int(row.quantity)
        result[group]['current'][row.item_type.value] += int(row.quantity)

    for group, weeks in weekly.items():
        running = {key: 0 for key in type_keys}
        for (year, week_number), totals in sorted(weeks.items()):
            for key in type_keys:
                running[key] += totals[key]
            result[group]['weeks'].append(
                {'year': year, 'calendar_week': week_number, 'label': f'KW {week_number}', **dict(running)}
            )

    owned_wave_ids = wave_ids_for_markets(db, market_ids=rep_market_ids(db, rep_id=rep_id))
    if not owned_wave_ids:
        return result
    waves = db.execute(select(Wave).where(Wave.id.in_(owned_wave_ids))).scalars().all()
    statuses = wave_statuses(db, waves=waves, today=today)
    started = [wave.id for wave in waves if statuses[wave.id] != WaveStatus.UPCOMING]
    items = flat_items_for_waves(db, wave_ids=started)

    for group in result:
        rep_in_chain = MarketFilter.for_reps([rep_id]).narrowed(MarketFilter.for_chain(chain_labels_for_group(group)))
        shares = market_shares_by_wave(db, wave_ids=started, market_filter=rep_in_chain)
        for item_type in FLAT_TYPE_ORDER:
            targets: dict[int, int] = {}
            for item in items:
                if item.item_type == item_type:
                    targets[item.wave_id] = targets.get(item.wave_id, 0) + item.target_number
            result[group]['goal'][item_type.value] = sum(
                proportional_goal(target, shares[wave_id], GoalKind.COUNT) for wave_id, target in targets.items()
            )
    return result
