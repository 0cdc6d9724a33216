from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum

from sqlalchemy import select
from sqlalchemy.orm import Session

from wavetrack.config import settings
from wavetrack.models import ItemType, Market, Rep, Submission, Wave, WaveItem
from wavetrack.services.catalog_service import (
    ProductLineRecord,
    composite_names_by_id,
    flat_items_by_id,
    product_lines_by_id,
    product_lines_for_waves,
)
from wavetrack.services.goal_math_service import round_money
from wavetrack.services.time_utils import as_utc, truncate_to_bucket

UNKNOWN = 'Unknown'
PLACEHOLDER_NAMES = {
    ItemType.DISPLAY: 'Unknown display',
    ItemType.KARTONWARE: 'Unknown kartonware',
    ItemType.EINZELPRODUKT: 'Unknown product',
    ItemType.PALETTE: 'Unknown palette product',
    ItemType.SCHUETTE: 'Unknown schuette product',
}
PLACEHOLDER_PARENT_NAMES = {
    ItemType.PALETTE: 'Unknown palette',
    ItemType.SCHUETTE: 'Unknown schuette',
}


class ResolutionStatus(str, Enum):
    RESOLVED = 'resolved'
    FALLBACK_RESOLVED = 'fallback_resolved'
    UNRESOLVED = 'unresolved'


_SEVERITY = {
    ResolutionStatus.RESOLVED: 0,
    ResolutionStatus.FALLBACK_RESOLVED: 1,
    ResolutionStatus.UNRESOLVED: 2,
}


@dataclass(frozen=True)
class ItemResolution:
    status: ResolutionStatus
    name: str
    parent_id: int | None = None
    parent_name: str | None = None
    live_value: Decimal | None = None


@dataclass
class _Lookups:
    flat_items: dict[int, WaveItem]
    product_lines: dict[int, ProductLineRecord]
    lines_by_wave: dict[int, list[ProductLineRecord]]
    composite_names: dict[int, str]


def worst_status(statuses: Sequence[ResolutionStatus]) -> ResolutionStatus:
    if not statuses:
        return ResolutionStatus.RESOLVED
    return max(statuses, key=lambda status: _SEVERITY[status])


def _load_lookups(db: Session, submissions: Sequence[Submission]) -> _Lookups:
    flat_ids = sorted({s.item_id for s in submissions if not s.item_type.is_composite})
    line_ids = sorted({s.item_id for s in submissions if s.item_type.is_composite})
    composite_waves = sorted({s.wave_id for s in submissions if s.item_type.is_composite})
    parent_ids = sorted({s.parent_item_id for s in submissions if s.parent_item_id is not None})

    lines_by_wave: dict[int, list[ProductLineRecord]] = {}
    for line in product_lines_for_waves(db, wave_ids=composite_waves):
        lines_by_wave.setdefault(line.wave_id, []).append(line)

    return _Lookups(
        flat_items=flat_items_by_id(db, item_ids=flat_ids),
        product_lines=product_lines_by_id(db, product_ids=line_ids),
        lines_by_wave=lines_by_wave,
        composite_names=composite_names_by_id(db, composite_ids=parent_ids),
    )


def _resolve_flat(submission: Submission, lookups: _Lookups) -> ItemResolution:
    item = lookups.flat_items.get(submission.item_id)
    if item is not None and item.wave_id == submission.wave_id:
        return ItemResolution(
            status=ResolutionStatus.RESOLVED,
            name=item.name,
            live_value=item.item_value,
        )
    return ItemResolution(status=ResolutionStatus.UNRESOLVED, name=PLACEHOLDER_NAMES[submission.item_type])


def _resolve_product_line(submission: Submission, lookups: _Lookups) -> ItemResolution:
    line = lookups.product_lines.get(submission.item_id)
    if line is not None and line.wave_id == submission.wave_id:
        return ItemResolution(
            status=ResolutionStatus.RESOLVED,
            name=line.name,
            parent_id=line.composite_id,
            parent_name=line.composite_name,
            live_value=line.value_per_unit,
        )

    parent_id = submission.parent_item_id
    parent_alive = parent_id is not None and parent_id in lookups.composite_names
    if submission.value_per_unit is not None:
        candidates = [
            candidate
            for candidate in lookups.lines_by_wave.get(submission.wave_id, [])
            if candidate.composite_type == submission.item_type
            and (not parent_alive or candidate.composite_id == parent_id)
            and candidate.value_per_unit == Decimal(submission.value_per_unit)
        ]
        if len(candidates) == 1:
            match = candidates[0]
            return ItemResolution(
                status=ResolutionStatus.FALLBACK_RESOLVED,
                name=match.name,
                parent_id=match.composite_id,
                parent_name=match.composite_name,
                live_value=match.value_per_unit,
            )

    return ItemResolution(
        status=ResolutionStatus.UNRESOLVED,
        name=PLACEHOLDER_NAMES[submission.item_type],
        parent_id=parent_id,
        parent_name=lookups.composite_names.get(parent_id) if parent_alive else PLACEHOLDER_PARENT_NAMES[submission.item_type],
    )


def resolve_item(submission: Submission, lookups: _Lookups) -> ItemResolution:
    if submission.item_type.is_composite:
        return _resolve_product_line(submission, lookups)
    return _resolve_flat(submission, lookups)


def _flat_value(submission: Submission, resolution: ItemResolution) -> Decimal:
    unit_value = resolution.live_value if resolution.live_value is not None else submission.value_per_unit
    if unit_value is None:
        return Decimal('0.00')
    return round_money(Decimal(submission.quantity) * Decimal(unit_value))


def _line_value(submission: Submission, resolution: ItemResolution) -> Decimal:
    unit_value = submission.value_per_unit if submission.value_per_unit is not None else resolution.live_value
    if unit_value is None:
        return Decimal('0.00')
    return round_money(Decimal(submission.quantity) * Decimal(unit_value))


def _group_key(submission: Submission, bucket_seconds: int) -> tuple:
    if submission.batch_id:
        return ('batch', submission.batch_id, submission.item_type, submission.parent_item_id)
    return (
        'bucket',
        submission.rep_id,
        submission.market_id,
        submission.item_type,
        submission.parent_item_id,
        truncate_to_bucket(submission.created_at, bucket_seconds),
    )


def _names(db: Session, submissions: Sequence[Submission]) -> tuple[dict, dict, dict]:
    wave_ids = sorted({s.wave_id for s in submissions})
    rep_ids = sorted({s.rep_id for s in submissions})
    market_ids = sorted({s.market_id for s in submissions if s.market_id})
    waves = {row.id: row.name for row in db.execute(select(Wave.id, Wave.name).where(Wave.id.in_(wave_ids))).all()}
    reps = {row.id: row.name for row in db.execute(select(Rep.id, Rep.name).where(Rep.id.in_(rep_ids))).all()}
    markets = {}
    if market_ids:
        markets = {
            row.id: row
            for row in db.execute(select(Market.id, Market.name, Market.chain).where(Market.id.in_(market_ids))).all()
        }
    return waves, reps, markets


def _activity(rows: list[tuple[Submission, ItemResolution, Decimal]], names: tuple[dict, dict, dict]) -> dict:
    waves, reps, markets = names
    rows = sorted(rows, key=lambda row: row[0].id)
    first, first_resolution, _ = rows[0]
    market = markets.get(first.market_id)
    statuses = [resolution.status for _, resolution, _ in rows]

    if first.item_type.is_composite:
        parent_name = next(
            (
                resolution.parent_name
                for _, resolution, _ in rows
                if resolution.status != ResolutionStatus.UNRESOLVED and resolution.parent_name
            ),
            first_resolution.parent_name,
        )
        item_name = parent_name
    else:
        item_name = first_resolution.name
        parent_name = None

    return {
        'id': '-'.join(str(submission.id) for submission, _, _ in rows),
        'wave_id': first.wave_id,
        'wave_name': waves.get(first.wave_id, UNKNOWN),
        'rep_id': first.rep_id,
        'rep_name': reps.get(first.rep_id, UNKNOWN),
        'market_id': first.market_id,
        'market_name': market.name if market else None,
        'market_chain': (market.chain or UNKNOWN) if market else None,
        'item_type': first.item_type.value,
        'item_name': item_name,
        'parent_name': parent_name,
        'lines': [
            {
                'submission_id': submission.id,
                'name': resolution.name,
                'quantity': submission.quantity,
                'value': value,
                'resolution': resolution.status.value,
            }
            for submission, resolution, value in rows
        ],
        'quantity': sum(submission.quantity for submission, _, _ in rows),
        'value': round_money(sum((value for _, _, value in rows), Decimal('0'))),
        'resolution': worst_status(statuses).value,
        'timestamp': max(as_utc(submission.created_at) for submission, _, _ in rows),
        'is_retraction': all(submission.quantity < 0 for submission, _, _ in rows),
    }


def resolve_activities(
    db: Session,
    submissions: Sequence[Submission],
    *,
    bucket_seconds: int | None = None,
) -> list[dict]:
    """
    Turn raw submissions into display activities, newest first.

    Flat submissions become one activity each. Product-line submissions are
    grouped by contribution batch and parent composite; rows without a batch
    fall back to (rep, market, parent, time bucket). Values for product lines
    always come from the snapshot taken at write time, so totals hold even when
    the catalog rows behind them are gone.
    """
    if not submissions:
        return []
    bucket = settings.activity_bucket_seconds if bucket_seconds is None else bucket_seconds
    lookups = _load_lookups(db, submissions)
    names = _names(db, submissions)

    singles: list[list[tuple[Submission, ItemResolution, Decimal]]] = []
    groups: dict[tuple, list[tuple[Submission, ItemResolution, Decimal]]] = {}
    for submission in submissions:
        resolution = resolve_item(submission, lookups)
        if submission.item_type.is_composite:
            value = _line_value(submission, resolution)
            groups.setdefault(_group_key(submission, bucket), []).append((submission, resolution, value))
        else:
            singles.append([(submission, resolution, _flat_value(submission, resolution))])

    activities = [_activity(rows, names) for rows in singles + list(groups.values())]
    activities.sort(key=lambda activity: (activity['timestamp'], activity['lines'][-1]['submission_id']), reverse=True)
    return activities


def list_wave_activity(db: Session, *, wave_id: int, limit: int | None = None) -> list[dict]:
    submissions = db.execute(
        select(Submission).where(Submission.wave_id == wave_id).order_by(Submission.id.asc())
    ).scalars().all()
    activities = resolve_activities(db, submissions)
    effective_limit = settings.activity_default_limit if limit is None else limit
    if effective_limit <= 0:
        return activities
    return activities[:effective_limit]
