from __future__ import annotations

import logging
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from wavetrack.models import ContributionBatch, ItemType, Market, ProgressEntry, Rep, Submission, Wave
from wavetrack.services.audit_service import log_audit
from wavetrack.services.catalog_service import flat_items_by_id, product_lines_by_id
from wavetrack.services.errors import ContributionValidationError, PartialWriteFailure, ReferenceNotFoundError
from wavetrack.services.time_utils import local_today, now_utc
from wavetrack.services.visit_service import try_credit_market_visit

logger = logging.getLogger(__name__)

LedgerKey = tuple[int, int, ItemType, int]


@dataclass(frozen=True)
class ContributionItem:
    item_type: ItemType | str
    item_id: int
    quantity: int
    value_per_unit: Decimal | None = None


@dataclass(frozen=True)
class LedgerValue:
    item_type: ItemType
    item_id: int
    new_cumulative: int


@dataclass(frozen=True)
class ContributionResult:
    batch_id: str
    items: list[LedgerValue] = field(default_factory=list)
    visit_credited: bool = False
    replayed: bool = False


@dataclass(frozen=True)
class LedgerDrift:
    wave_id: int
    rep_id: int
    item_type: ItemType
    item_id: int
    ledger_number: int | None
    logged_number: int


@dataclass(frozen=True)
class _PreparedItem:
    item_type: ItemType
    item_id: int
    quantity: int
    value_per_unit: Decimal | None
    parent_item_id: int | None


def _coerce_item_type(value: ItemType | str) -> ItemType:
    if isinstance(value, ItemType):
        return value
    try:
        return ItemType((value or '').strip().lower())
    except ValueError as exc:
        raise ContributionValidationError(f'Unknown item type: {value!r}') from exc


def _coerce_positive_int(value, label: str) -> int:
    if isinstance(value, bool) or value is None:
        raise ContributionValidationError(f'{label} is required')
    if isinstance(value, int):
        number = value
    else:
        try:
            parsed = Decimal(str(value).strip())
        except InvalidOperation as exc:
            raise ContributionValidationError(f'{label} must be an integer') from exc
        if parsed != parsed.to_integral_value():
            raise ContributionValidationError(f'{label} must be an integer')
        number = int(parsed)
    if number < 1:
        raise ContributionValidationError(f'{label} must be at least 1')
    return number


def _coerce_value(value) -> Decimal | None:
    if value is None:
        return None
    try:
        parsed = Decimal(str(value))
    except InvalidOperation as exc:
        raise ContributionValidationError(f'Invalid value per unit: {value!r}') from exc
    if not parsed.is_finite() or parsed < 0:
        raise ContributionValidationError(f'Invalid value per unit: {value!r}')
    return parsed


def _validate_items(items: Sequence[ContributionItem]) -> list[tuple[ItemType, int, int, Decimal | None]]:
    if not items:
        raise ContributionValidationError('At least one item is required')
    validated = []
    for item in items:
        validated.append(
            (
                _coerce_item_type(item.item_type),
                _coerce_positive_int(item.item_id, 'Item id'),
                _coerce_positive_int(item.quantity, 'Quantity'),
                _coerce_value(item.value_per_unit),
            )
        )
    return validated


def _ensure_references(db: Session, *, wave_id: int, rep_id: int, market_id: str | None) -> None:
    if db.get(Wave, wave_id) is None:
        raise ReferenceNotFoundError(f'Wave {wave_id} not found')
    if db.get(Rep, rep_id) is None:
        raise ReferenceNotFoundError(f'Rep {rep_id} not found')
    if market_id is not None and db.get(Market, market_id) is None:
        raise ReferenceNotFoundError(f'Market {market_id} not found')


def _prepare_items(
    db: Session,
    *,
    wave_id: int,
    validated: list[tuple[ItemType, int, int, Decimal | None]],
) -> list[_PreparedItem]:
    flat_ids = [item_id for item_type, item_id, _, _ in validated if not item_type.is_composite]
    line_ids = [item_id for item_type, item_id, _, _ in validated if item_type.is_composite]
    flat_items = flat_items_by_id(db, item_ids=flat_ids)
    product_lines = product_lines_by_id(db, product_ids=line_ids)

    prepared = []
    for item_type, item_id, quantity, caller_value in validated:
        if item_type.is_composite:
            line = product_lines.get(item_id)
            if line is None or line.wave_id != wave_id or line.composite_type != item_type:
                raise ReferenceNotFoundError(f'{item_type.value} product {item_id} not found in wave {wave_id}')
            snapshot = caller_value if caller_value is not None else line.value_per_unit
            parent_id = line.composite_id
        else:
            flat = flat_items.get(item_id)
            if flat is None or flat.wave_id != wave_id or flat.item_type != item_type:
                raise ReferenceNotFoundError(f'{item_type.value} item {item_id} not found in wave {wave_id}')
            snapshot = caller_value if caller_value is not None else flat.item_value
            parent_id = None
        prepared.append(
            _PreparedItem(
                item_type=item_type,
                item_id=item_id,
                quantity=quantity,
                value_per_unit=snapshot,
                parent_item_id=parent_id,
            )
        )
    return prepared


def _dialect_insert(db: Session):
    dialect = db.get_bind().dialect.name
    if dialect == 'postgresql':
        return postgresql_insert
    if dialect == 'sqlite':
        return sqlite_insert
    raise RuntimeError(f'Ledger upsert is not supported on {dialect}')


def _upsert_ledger(
    db: Session,
    *,
    wave_id: int,
    rep_id: int,
    item_type: ItemType,
    item_id: int,
    delta: int,
) -> int:
    table = ProgressEntry.__table__
    insert = _dialect_insert(db)
    stmt = insert(table).values(
        wave_id=wave_id,
        rep_id=rep_id,
        item_type=item_type,
        item_id=item_id,
        current_number=delta,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[table.c.wave_id, table.c.rep_id, table.c.item_type, table.c.item_id],
        set_={
            'current_number': table.c.current_number + stmt.excluded.current_number,
            'updated_at': func.now(),
        },
    ).returning(table.c.current_number)
    return int(db.execute(stmt).scalar_one())


def _ledger_values(db: Session, *, wave_id: int, rep_id: int, keys: list[tuple[ItemType, int]]) -> list[LedgerValue]:
    rows = db.execute(
        select(ProgressEntry.item_type, ProgressEntry.item_id, ProgressEntry.current_number).where(
            ProgressEntry.wave_id == wave_id,
            ProgressEntry.rep_id == rep_id,
        )
    ).all()
    current = {(row.item_type, int(row.item_id)): int(row.current_number) for row in rows}
    return [
        LedgerValue(item_type=item_type, item_id=item_id, new_cumulative=current.get((item_type, item_id), 0))
        for item_type, item_id in keys
    ]


def _replay(db: Session, *, batch: ContributionBatch, wave_id: int) -> ContributionResult:
    if batch.wave_id != wave_id:
        raise ContributionValidationError('Idempotency key was already used for another wave')
    submissions = db.execute(
        select(Submission.item_type, Submission.item_id)
        .where(Submission.batch_id == batch.id)
        .order_by(Submission.id.asc())
    ).all()
    keys = [(row.item_type, int(row.item_id)) for row in submissions]
    logger.info('Replayed contribution batch %s for rep %s', batch.id, batch.rep_id)
    return ContributionResult(
        batch_id=batch.id,
        items=_ledger_values(db, wave_id=batch.wave_id, rep_id=batch.rep_id, keys=keys),
        replayed=True,
    )


def _find_batch(db: Session, *, rep_id: int, idempotency_key: str | None) -> ContributionBatch | None:
    if not idempotency_key:
        return None
    return db.execute(
        select(ContributionBatch).where(
            ContributionBatch.rep_id == rep_id,
            ContributionBatch.idempotency_key == idempotency_key,
        )
    ).scalar_one_or_none()


def _claim_batch(db: Session, *, batch: ContributionBatch) -> bool:
    savepoint = db.begin_nested()
    try:
        db.add(batch)
        db.flush()
    except IntegrityError:
        savepoint.rollback()
        if batch.idempotency_key is None:
            raise
        return False
    savepoint.commit()
    return True


def record_contribution_batch(
    db: Session,
    *,
    wave_id: int,
    rep_id: int,
    items: Sequence[ContributionItem],
    market_id: str | None = None,
    idempotency_key: str | None = None,
    today: date | None = None,
) -> ContributionResult:
    """
    Credit one logical field action to the progress ledger and append it to the log.

    Nothing is committed here. Validation and reference errors are raised before
    any write; a database error during the write raises PartialWriteFailure and
    the caller must roll back so no item of the batch is credited.
    """
    wave_id = _coerce_positive_int(wave_id, 'Wave id')
    rep_id = _coerce_positive_int(rep_id, 'Rep id')
    validated = _validate_items(items)
    market_id = (market_id or '').strip() or None
    idempotency_key = (idempotency_key or '').strip() or None
    if idempotency_key and len(idempotency_key) > 128:
        raise ContributionValidationError('Idempotency key is too long')

    _ensure_references(db, wave_id=wave_id, rep_id=rep_id, market_id=market_id)
    prepared = _prepare_items(db, wave_id=wave_id, validated=validated)

    existing = _find_batch(db, rep_id=rep_id, idempotency_key=idempotency_key)
    if existing is not None:
        return _replay(db, batch=existing, wave_id=wave_id)

    batch_id = str(uuid.uuid4())
    created_at = now_utc()
    results: list[LedgerValue] = []
    batch = ContributionBatch(
        id=batch_id,
        wave_id=wave_id,
        rep_id=rep_id,
        market_id=market_id,
        idempotency_key=idempotency_key,
        created_at=created_at,
    )
    try:
        claimed = _claim_batch(db, batch=batch)
    except SQLAlchemyError as exc:
        logger.error('Contribution batch for wave %s rep %s failed', wave_id, rep_id, exc_info=True)
        raise PartialWriteFailure('Contribution could not be recorded') from exc
    if not claimed:
        existing = _find_batch(db, rep_id=rep_id, idempotency_key=idempotency_key)
        if existing is None:
            raise PartialWriteFailure('Contribution could not be recorded')
        return _replay(db, batch=existing, wave_id=wave_id)

    try:
        for item in prepared:
            new_cumulative = _upsert_ledger(
                db,
                wave_id=wave_id,
                rep_id=rep_id,
                item_type=item.item_type,
                item_id=item.item_id,
                delta=item.quantity,
            )
            db.add(
                Submission(
                    batch_id=batch_id,
                    wave_id=wave_id,
                    rep_id=rep_id,
                    market_id=market_id,
                    item_type=item.item_type,
                    item_id=item.item_id,
                    parent_item_id=item.parent_item_id,
                    quantity=item.quantity,
                    value_per_unit=item.value_per_unit,
                    created_at=created_at,
                )
            )
            results.append(LedgerValue(item_type=item.item_type, item_id=item.item_id, new_cumulative=new_cumulative))
        db.flush()
    except SQLAlchemyError as exc:
        logger.error('Contribution batch for wave %s rep %s failed', wave_id, rep_id, exc_info=True)
        raise PartialWriteFailure('Contribution could not be recorded') from exc

    visit_credited = False
    if market_id is not None:
        visit_credited = try_credit_market_visit(db, market_id=market_id, today=today or local_today())

    logger.info('Recorded batch %s: wave %s rep %s items %d', batch_id, wave_id, rep_id, len(results))
    return ContributionResult(batch_id=batch_id, items=results, visit_credited=visit_credited)


def record_contribution(
    db: Session,
    *,
    wave_id: int,
    rep_id: int,
    item_type: ItemType | str,
    item_id: int,
    quantity: int,
    market_id: str | None = None,
    value_per_unit: Decimal | None = None,
    idempotency_key: str | None = None,
    today: date | None = None,
) -> ContributionResult:
    return record_contribution_batch(
        db,
        wave_id=wave_id,
        rep_id=rep_id,
        items=[
            ContributionItem(
                item_type=item_type,
                item_id=item_id,
                quantity=quantity,
                value_per_unit=value_per_unit,
            )
        ],
        market_id=market_id,
        idempotency_key=idempotency_key,
        today=today,
    )


def retract_submission(
    db: Session,
    *,
    submission_id: int,
    actor: str | None = None,
    ip: str | None = None,
) -> ContributionResult:
    original = db.get(Submission, submission_id)
    if original is None:
        raise ReferenceNotFoundError(f'Submission {submission_id} not found')
    if original.retracts_submission_id is not None or original.quantity < 0:
        raise ContributionValidationError('A retraction cannot be retracted')
    already = db.execute(
        select(Submission.id).where(Submission.retracts_submission_id == original.id)
    ).scalar_one_or_none()
    if already is not None:
        raise ContributionValidationError(f'Submission {submission_id} was already retracted')

    batch_id = str(uuid.uuid4())
    created_at = now_utc()
    try:
        db.add(
            ContributionBatch(
                id=batch_id,
                wave_id=original.wave_id,
                rep_id=original.rep_id,
                market_id=None,
                created_at=created_at,
            )
        )
        db.flush()
        new_cumulative = _upsert_ledger(
            db,
            wave_id=original.wave_id,
            rep_id=original.rep_id,
            item_type=original.item_type,
            item_id=original.item_id,
            delta=-original.quantity,
        )
        db.add(
            Submission(
                batch_id=batch_id,
                wave_id=original.wave_id,
                rep_id=original.rep_id,
                market_id=original.market_id,
                item_type=original.item_type,
                item_id=original.item_id,
                parent_item_id=original.parent_item_id,
                quantity=-original.quantity,
                value_per_unit=original.value_per_unit,
                retracts_submission_id=original.id,
                created_at=created_at,
            )
        )
        log_audit(
            db,
            action='SUBMISSION_RETRACTED',
            actor=actor,
            wave_id=original.wave_id,
            ip=ip,
            metadata={
                'submission_id': original.id,
                'rep_id': original.rep_id,
                'item_type': original.item_type.value,
                'item_id': original.item_id,
                'quantity': original.quantity,
            },
        )
        db.flush()
    except SQLAlchemyError as exc:
        logger.error('Retraction of submission %s failed', submission_id, exc_info=True)
        raise PartialWriteFailure('Submission could not be retracted') from exc

    logger.info('Retracted submission %s (batch %s)', submission_id, batch_id)
    return ContributionResult(
        batch_id=batch_id,
        items=[LedgerValue(item_type=original.item_type, item_id=original.item_id, new_cumulative=new_cumulative)],
    )


def list_ledger(db: Session, *, wave_id: int, rep_id: int) -> list[dict]:
    rows = db.execute(
        select(
            ProgressEntry.wave_id,
            ProgressEntry.rep_id,
            ProgressEntry.item_type,
            ProgressEntry.item_id,
            ProgressEntry.current_number,
            ProgressEntry.updated_at,
        )
        .where(ProgressEntry.wave_id == wave_id, ProgressEntry.rep_id == rep_id)
        .order_by(ProgressEntry.item_type.asc(), ProgressEntry.item_id.asc())
    ).all()
    return [
        {
            'wave_id': int(row.wave_id),
            'rep_id': int(row.rep_id),
            'item_type': row.item_type.value,
            'item_id': int(row.item_id),
            'current_number': int(row.current_number),
            'updated_at': row.updated_at,
        }
        for row in rows
    ]


def _ledger_numbers(db: Session, *, wave_id: int | None) -> dict[LedgerKey, int]:
    query = select(
        ProgressEntry.wave_id,
        ProgressEntry.rep_id,
        ProgressEntry.item_type,
        ProgressEntry.item_id,
        ProgressEntry.current_number,
    )
    if wave_id is not None:
        query = query.where(ProgressEntry.wave_id == wave_id)
    return {
        (int(row.wave_id), int(row.rep_id), row.item_type, int(row.item_id)): int(row.current_number)
        for row in db.execute(query).all()
    }


def _logged_numbers(db: Session, *, wave_id: int | None) -> dict[LedgerKey, int]:
    query = select(
        Submission.wave_id,
        Submission.rep_id,
        Submission.item_type,
        Submission.item_id,
        func.sum(Submission.quantity).label('logged'),
    ).group_by(Submission.wave_id, Submission.rep_id, Submission.item_type, Submission.item_id)
    if wave_id is not None:
        query = query.where(Submission.wave_id == wave_id)
    return {
        (int(row.wave_id), int(row.rep_id), row.item_type, int(row.item_id)): int(row.logged or 0)
        for row in db.execute(query).all()
    }


def find_ledger_drift(db: Session, *, wave_id: int | None = None) -> list[LedgerDrift]:
    ledger = _ledger_numbers(db, wave_id=wave_id)
    logged = _logged_numbers(db, wave_id=wave_id)
    drift = []
    for key in sorted(set(ledger) | set(logged), key=lambda k: (k[0], k[1], k[2].value, k[3])):
        ledger_number = ledger.get(key)
        logged_number = logged.get(key, 0)
        if ledger_number == logged_number:
            continue
        if ledger_number is None and logged_number == 0:
            continue
        drift.append(
            LedgerDrift(
                wave_id=key[0],
                rep_id=key[1],
                item_type=key[2],
                item_id=key[3],
                ledger_number=ledger_number,
                logged_number=logged_number,
            )
        )
    return drift


def rebuild_ledger(db: Session, *, wave_id: int | None = None, actor: str | None = None) -> list[LedgerDrift]:
    """Re-derive drifted ledger rows from the submission log. Returns the repaired keys."""
    drift = find_ledger_drift(db, wave_id=wave_id)
    if not drift:
        return []

    for entry in drift:
        repaired = max(entry.logged_number, 0)
        logger.warning(
            'Ledger drift wave=%s rep=%s %s:%s ledger=%s log=%s',
            entry.wave_id,
            entry.rep_id,
            entry.item_type.value,
            entry.item_id,
            entry.ledger_number,
            entry.logged_number,
        )
        if entry.ledger_number is None:
            db.add(
                ProgressEntry(
                    wave_id=entry.wave_id,
                    rep_id=entry.rep_id,
                    item_type=entry.item_type,
                    item_id=entry.item_id,
                    current_number=repaired,
                )
            )
        else:
            db.execute(
                update(ProgressEntry)
                .where(
                    ProgressEntry.wave_id == entry.wave_id,
                    ProgressEntry.rep_id == entry.rep_id,
                    ProgressEntry.item_type == entry.item_type,
                    ProgressEntry.item_id == entry.item_id,
                )
                .values(current_number=repaired, updated_at=now_utc())
                .execution_options(synchronize_session=False)
            )

    log_audit(
        db,
        action='LEDGER_REBUILT',
        actor=actor,
        wave_id=wave_id,
        metadata={'repaired_keys': len(drift)},
    )
    db.flush()
    return drift
