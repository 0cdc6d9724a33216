from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from wavetrack.models import (
    COMPOSITE_ITEM_TYPES,
    FLAT_ITEM_TYPES,
    ContributionBatch,
    GoalType,
    ItemType,
    ProgressEntry,
    Submission,
    Wave,
    WaveComposite,
    WaveCompositeProduct,
    WaveItem,
    WaveMarketAssignment,
    WaveSellWindow,
)
from wavetrack.services.assignment_service import replace_wave_markets, wave_market_ids
from wavetrack.services.audit_service import log_audit
from wavetrack.services.errors import ReferenceNotFoundError
from wavetrack.services.time_utils import now_utc
from wavetrack.services.wave_status_service import (
    normalize_weekdays,
    parse_calendar_week,
    wave_statuses,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FlatItemInput:
    item_type: ItemType
    name: str
    target_number: int
    item_value: Decimal | None = None
    picture_url: str | None = None


@dataclass(frozen=True)
class ProductLineInput:
    name: str
    value_per_unit: Decimal
    unit_count: int = 1
    external_code: str | None = None


@dataclass(frozen=True)
class CompositeInput:
    item_type: ItemType
    name: str
    products: list[ProductLineInput]
    size: str | None = None
    picture_url: str | None = None


@dataclass(frozen=True)
class SellWindowInput:
    calendar_week: str | int
    weekdays: list[str]


@dataclass(frozen=True)
class WaveInput:
    name: str
    start_date: date
    end_date: date
    goal_type: GoalType
    goal_percentage: Decimal | None = None
    goal_value: Decimal | None = None
    image_url: str | None = None
    items: list[FlatItemInput] = field(default_factory=list)
    composites: list[CompositeInput] = field(default_factory=list)
    sell_windows: list[SellWindowInput] = field(default_factory=list)
    market_ids: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ProductLineRecord:
    id: int
    name: str
    value_per_unit: Decimal
    composite_id: int
    composite_name: str
    composite_type: ItemType
    wave_id: int


def _validate_wave_input(data: WaveInput) -> None:
    if not data.name.strip():
        raise ValueError('Wave name is required')
    if data.end_date < data.start_date:
        raise ValueError('End date must not be before start date')
    if data.goal_type == GoalType.PERCENTAGE:
        if data.goal_percentage is None or not Decimal('0') <= data.goal_percentage <= Decimal('100'):
            raise ValueError('Percentage goals need a goal percentage between 0 and 100')
    elif data.goal_value is None or data.goal_value < 0:
        raise ValueError('Value goals need a non-negative goal value')

    for item in data.items:
        if item.item_type not in FLAT_ITEM_TYPES:
            raise ValueError(f'{item.item_type.value} is not a flat item type')
        if not item.name.strip():
            raise ValueError('Item name is required')
        if item.target_number <= 0:
            raise ValueError(f'Target number must be positive for {item.name}')
        if item.item_value is not None and item.item_value < 0:
            raise ValueError(f'Item value cannot be negative for {item.name}')

    for composite in data.composites:
        if composite.item_type not in COMPOSITE_ITEM_TYPES:
            raise ValueError(f'{composite.item_type.value} is not a composite item type')
        if not composite.name.strip():
            raise ValueError('Composite name is required')
        if not composite.products:
            raise ValueError(f'{composite.name} needs at least one product')
        for product in composite.products:
            if not product.name.strip():
                raise ValueError(f'Product name is required in {composite.name}')
            if product.value_per_unit < 0:
                raise ValueError(f'Product value cannot be negative for {product.name}')
            if product.unit_count < 1:
                raise ValueError(f'Unit count must be at least 1 for {product.name}')

    for window in data.sell_windows:
        parse_calendar_week(window.calendar_week)
        normalize_weekdays(window.weekdays)


def get_wave(db: Session, *, wave_id: int) -> Wave:
    wave = db.execute(select(Wave).where(Wave.id == wave_id)).scalar_one_or_none()
    if not wave:
        raise ReferenceNotFoundError('Wave not found')
    return wave


def _apply_wave_fields(wave: Wave, data: WaveInput) -> None:
    wave.name = data.name.strip()
    wave.image_url = data.image_url
    wave.start_date = data.start_date
    wave.end_date = data.end_date
    wave.goal_type = data.goal_type
    wave.goal_percentage = data.goal_percentage if data.goal_type == GoalType.PERCENTAGE else None
    wave.goal_value = data.goal_value if data.goal_type == GoalType.VALUE else None


def _replace_sell_windows(db: Session, *, wave_id: int, windows: list[SellWindowInput]) -> None:
    db.execute(delete(WaveSellWindow).where(WaveSellWindow.wave_id == wave_id))
    db.add_all(
        [
            WaveSellWindow(
                wave_id=wave_id,
                calendar_week=parse_calendar_week(window.calendar_week),
                weekdays=normalize_weekdays(window.weekdays),
                position=index,
            )
            for index, window in enumerate(windows)
        ]
    )


def _sync_flat_items(db: Session, *, wave_id: int, items: list[FlatItemInput]) -> None:
    existing = db.execute(select(WaveItem).where(WaveItem.wave_id == wave_id)).scalars().all()
    by_key = {(row.item_type, row.name.strip().lower()): row for row in existing}
    kept: set[int] = set()

    for index, item in enumerate(items):
        row = by_key.get((item.item_type, item.name.strip().lower()))
        if row is None or row.id in kept:
            row = WaveItem(wave_id=wave_id, item_type=item.item_type)
            db.add(row)
        row.name = item.name.strip()
        row.target_number = item.target_number
        row.item_value = item.item_value
        row.picture_url = item.picture_url
        row.position = index
        db.flush()
        kept.add(row.id)

    stale = [row.id for row in existing if row.id not in kept]
    if stale:
        db.execute(delete(WaveItem).where(WaveItem.id.in_(stale)))


def _sync_products(db: Session, *, composite_id: int, products: list[ProductLineInput]) -> None:
    existing = db.execute(
        select(WaveCompositeProduct).where(WaveCompositeProduct.composite_id == composite_id)
    ).scalars().all()
    by_name = {row.name.strip().lower(): row for row in existing}
    kept: set[int] = set()

    for index, product in enumerate(products):
        row = by_name.get(product.name.strip().lower())
        if row is None or row.id in kept:
            row = WaveCompositeProduct(composite_id=composite_id)
            db.add(row)
        row.name = product.name.strip()
        row.value_per_unit = product.value_per_unit
        row.unit_count = product.unit_count
        row.external_code = product.external_code
        row.position = index
        db.flush()
        kept.add(row.id)

    stale = [row.id for row in existing if row.id not in kept]
    if stale:
        db.execute(delete(WaveCompositeProduct).where(WaveCompositeProduct.id.in_(stale)))


def _sync_composites(db: Session, *, wave_id: int, composites: list[CompositeInput]) -> None:
    existing = db.execute(select(WaveComposite).where(WaveComposite.wave_id == wave_id)).scalars().all()
    by_key = {(row.item_type, row.name.strip().lower()): row for row in existing}
    kept: set[int] = set()

    for index, composite in enumerate(composites):
        row = by_key.get((composite.item_type, composite.name.strip().lower()))
        if row is None or row.id in kept:
            row = WaveComposite(wave_id=wave_id, item_type=composite.item_type)
            db.add(row)
        row.name = composite.name.strip()
        row.size = composite.size
        row.picture_url = composite.picture_url
        row.position = index
        db.flush()
        kept.add(row.id)
        _sync_products(db, composite_id=row.id, products=composite.products)

    stale = [row.id for row in existing if row.id not in kept]
    if stale:
        db.execute(delete(WaveCompositeProduct).where(WaveCompositeProduct.composite_id.in_(stale)))
        db.execute(delete(WaveComposite).where(WaveComposite.id.in_(stale)))


def create_wave(db: Session, *, data: WaveInput) -> Wave:
    _validate_wave_input(data)
    wave = Wave()
    _apply_wave_fields(wave, data)
    db.add(wave)
    db.flush()

    _sync_flat_items(db, wave_id=wave.id, items=data.items)
    _sync_composites(db, wave_id=wave.id, composites=data.composites)
    _replace_sell_windows(db, wave_id=wave.id, windows=data.sell_windows)
    replace_wave_markets(db, wave_id=wave.id, market_ids=data.market_ids)
    db.flush()
    logger.info('Created wave %s (%s) with %d items', wave.id, wave.name, len(data.items) + len(data.composites))
    return wave


def update_wave(db: Session, *, wave_id: int, data: WaveInput) -> Wave:
    """
    Replace a wave definition in place.

    Items are matched to existing rows by (type, name) so their ids survive the
    edit; unmatched rows are deleted. Submissions are never touched, so logged
    contributions against deleted rows become orphans for the activity resolver.
    """
    _validate_wave_input(data)
    wave = get_wave(db, wave_id=wave_id)
    _apply_wave_fields(wave, data)
    wave.updated_at = now_utc()

    _sync_flat_items(db, wave_id=wave.id, items=data.items)
    _sync_composites(db, wave_id=wave.id, composites=data.composites)
    _replace_sell_windows(db, wave_id=wave.id, windows=data.sell_windows)
    replace_wave_markets(db, wave_id=wave.id, market_ids=data.market_ids)
    db.flush()
    logger.info('Updated wave %s', wave.id)
    return wave


def delete_wave(db: Session, *, wave_id: int, actor: str | None = None, ip: str | None = None) -> None:
    wave = get_wave(db, wave_id=wave_id)
    submission_count = db.execute(
        select(func.count(Submission.id)).where(Submission.wave_id == wave_id)
    ).scalar_one()
    log_audit(
        db,
        action='WAVE_DELETED',
        actor=actor,
        wave_id=wave_id,
        ip=ip,
        metadata={'name': wave.name, 'submissions_removed': int(submission_count)},
    )
    composite_ids = select(WaveComposite.id).where(WaveComposite.wave_id == wave_id)
    db.execute(delete(ProgressEntry).where(ProgressEntry.wave_id == wave_id))
    db.execute(delete(Submission).where(Submission.wave_id == wave_id))
    db.execute(delete(ContributionBatch).where(ContributionBatch.wave_id == wave_id))
    db.execute(delete(WaveCompositeProduct).where(WaveCompositeProduct.composite_id.in_(composite_ids)))
    db.execute(delete(WaveComposite).where(WaveComposite.wave_id == wave_id))
    db.execute(delete(WaveItem).where(WaveItem.wave_id == wave_id))
    db.execute(delete(WaveSellWindow).where(WaveSellWindow.wave_id == wave_id))
    db.execute(delete(WaveMarketAssignment).where(WaveMarketAssignment.wave_id == wave_id))
    db.delete(wave)
    db.flush()
    logger.warning('Deleted wave %s together with %d logged submissions', wave_id, submission_count)


def flat_items_by_id(db: Session, *, item_ids: list[int]) -> dict[int, WaveItem]:
    if not item_ids:
        return {}
    rows = db.execute(select(WaveItem).where(WaveItem.id.in_(item_ids))).scalars().all()
    return {row.id: row for row in rows}


def flat_items_for_waves(
    db: Session,
    *,
    wave_ids: list[int],
    item_types: list[ItemType] | None = None,
) -> list[WaveItem]:
    if not wave_ids:
        return []
    query = select(WaveItem).where(WaveItem.wave_id.in_(wave_ids))
    if item_types is not None:
        query = query.where(WaveItem.item_type.in_(item_types))
    return db.execute(query.order_by(WaveItem.wave_id.asc(), WaveItem.position.asc())).scalars().all()


def _product_line_query():
    return select(
        WaveCompositeProduct.id,
        WaveCompositeProduct.name,
        WaveCompositeProduct.value_per_unit,
        WaveComposite.id.label('composite_id'),
        WaveComposite.name.label('composite_name'),
        WaveComposite.item_type.label('composite_type'),
        WaveComposite.wave_id,
    ).join(WaveComposite, WaveComposite.id == WaveCompositeProduct.composite_id)


def _to_product_line(row) -> ProductLineRecord:
    return ProductLineRecord(
        id=int(row.id),
        name=row.name,
        value_per_unit=Decimal(row.value_per_unit),
        composite_id=int(row.composite_id),
        composite_name=row.composite_name,
        composite_type=row.composite_type,
        wave_id=int(row.wave_id),
    )


def product_lines_by_id(db: Session, *, product_ids: list[int]) -> dict[int, ProductLineRecord]:
    if not product_ids:
        return {}
    rows = db.execute(_product_line_query().where(WaveCompositeProduct.id.in_(product_ids))).all()
    return {int(row.id): _to_product_line(row) for row in rows}


def product_lines_for_waves(db: Session, *, wave_ids: list[int]) -> list[ProductLineRecord]:
    if not wave_ids:
        return []
    rows = db.execute(
        _product_line_query()
        .where(WaveComposite.wave_id.in_(wave_ids))
        .order_by(WaveComposite.position.asc(), WaveCompositeProduct.position.asc())
    ).all()
    return [_to_product_line(row) for row in rows]


def composite_names_by_id(db: Session, *, composite_ids: list[int]) -> dict[int, str]:
    if not composite_ids:
        return {}
    rows = db.execute(select(WaveComposite.id, WaveComposite.name).where(WaveComposite.id.in_(composite_ids))).all()
    return {int(row.id): row.name for row in rows}


def _ledger_totals(db: Session, *, wave_id: int) -> tuple[dict[tuple[ItemType, int], int], int]:
    rows = db.execute(
        select(
            ProgressEntry.item_type,
            ProgressEntry.item_id,
            func.coalesce(func.sum(ProgressEntry.current_number), 0).label('current'),
        )
        .where(ProgressEntry.wave_id == wave_id)
        .group_by(ProgressEntry.item_type, ProgressEntry.item_id)
    ).all()
    participating = db.execute(
        select(func.count(func.distinct(ProgressEntry.rep_id))).where(
            ProgressEntry.wave_id == wave_id, ProgressEntry.current_number > 0
        )
    ).scalar_one()
    return {(row.item_type, int(row.item_id)): int(row.current) for row in rows}, int(participating or 0)


def _wave_header(wave: Wave, status) -> dict:
    return {
        'id': wave.id,
        'name': wave.name,
        'image_url': wave.image_url,
        'start_date': wave.start_date,
        'end_date': wave.end_date,
        'status': status.value,
        'goal_type': wave.goal_type.value,
        'goal_percentage': wave.goal_percentage,
        'goal_value': wave.goal_value,
    }


def get_wave_detail(db: Session, *, wave_id: int, today: date) -> dict:
    wave = get_wave(db, wave_id=wave_id)
    status = wave_statuses(db, waves=[wave], today=today)[wave.id]
    totals, participating = _ledger_totals(db, wave_id=wave.id)

    items = flat_items_for_waves(db, wave_ids=[wave.id])
    product_lines = product_lines_for_waves(db, wave_ids=[wave.id])
    composites = db.execute(
        select(WaveComposite).where(WaveComposite.wave_id == wave.id).order_by(WaveComposite.position.asc())
    ).scalars().all()
    lines_by_composite: dict[int, list[ProductLineRecord]] = {}
    for line in product_lines:
        lines_by_composite.setdefault(line.composite_id, []).append(line)
    windows = db.execute(
        select(WaveSellWindow).where(WaveSellWindow.wave_id == wave.id).order_by(WaveSellWindow.position.asc())
    ).scalars().all()

    detail = _wave_header(wave, status)
    detail.update(
        {
            'types': sorted({item.item_type.value for item in items} | {c.item_type.value for c in composites}),
            'items': [
                {
                    'id': item.id,
                    'item_type': item.item_type.value,
                    'name': item.name,
                    'target_number': item.target_number,
                    'current_number': totals.get((item.item_type, item.id), 0),
                    'item_value': item.item_value,
                    'picture_url': item.picture_url,
                }
                for item in items
            ],
            'composites': [
                {
                    'id': composite.id,
                    'item_type': composite.item_type.value,
                    'name': composite.name,
                    'size': composite.size,
                    'picture_url': composite.picture_url,
                    'products': [
                        {
                            'id': line.id,
                            'name': line.name,
                            'value_per_unit': line.value_per_unit,
                            'current_number': totals.get((composite.item_type, line.id), 0),
                        }
                        for line in lines_by_composite.get(composite.id, [])
                    ],
                }
                for composite in composites
            ],
            'sell_windows': [
                {'calendar_week': window.calendar_week, 'weekdays': list(window.weekdays or [])}
                for window in windows
            ],
            'assigned_market_ids': wave_market_ids(db, wave_id=wave.id),
            'participating_reps': participating,
        }
    )
    return detail


def list_waves(db: Session, *, today: date) -> list[dict]:
    waves = db.execute(select(Wave).order_by(Wave.start_date.desc(), Wave.id.desc())).scalars().all()
    statuses = wave_statuses(db, waves=waves, today=today)
    return [_wave_header(wave, statuses[wave.id]) for wave in waves]
