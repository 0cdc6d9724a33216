from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from wavetrack.db import get_db
from wavetrack.dependencies import get_client_ip
from wavetrack.schemas import (
    ActivityOut,
    ContributionBatchIn,
    ContributionIn,
    ContributionResultOut,
    LedgerEntryOut,
    RetractionIn,
)
from wavetrack.services.activity_service import list_wave_activity
from wavetrack.services.errors import ContributionValidationError, PartialWriteFailure, ReferenceNotFoundError
from wavetrack.services.progress_service import (
    ContributionItem,
    list_ledger,
    record_contribution,
    record_contribution_batch,
    retract_submission,
)

router = APIRouter(tags=['progress'])


def _write_or_raise(db: Session, write):
    try:
        result = write()
    except ContributionValidationError as exc:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ReferenceNotFoundError as exc:
        db.rollback()
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except PartialWriteFailure as exc:
        db.rollback()
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    db.commit()
    return asdict(result)


@router.post('/waves/{wave_id}/contributions', response_model=ContributionResultOut)
def post_contribution(wave_id: int, payload: ContributionIn, db: Session = Depends(get_db)):
    return _write_or_raise(
        db,
        lambda: record_contribution(
            db,
            wave_id=wave_id,
            rep_id=payload.rep_id,
            market_id=payload.market_id,
            item_type=payload.item_type,
            item_id=payload.item_id,
            quantity=payload.quantity,
            value_per_unit=payload.value_per_unit,
            idempotency_key=payload.idempotency_key,
        ),
    )


@router.post('/waves/{wave_id}/contributions/batch', response_model=ContributionResultOut)
def post_contribution_batch(wave_id: int, payload: ContributionBatchIn, db: Session = Depends(get_db)):
    items = [
        ContributionItem(
            item_type=line.item_type,
            item_id=line.item_id,
            quantity=line.quantity,
            value_per_unit=line.value_per_unit,
        )
        for line in payload.items
    ]
    return _write_or_raise(
        db,
        lambda: record_contribution_batch(
            db,
            wave_id=wave_id,
            rep_id=payload.rep_id,
            market_id=payload.market_id,
            items=items,
            idempotency_key=payload.idempotency_key,
        ),
    )


@router.post('/submissions/{submission_id}/retract', response_model=ContributionResultOut)
def post_retraction(
    submission_id: int,
    request: Request,
    payload: RetractionIn | None = None,
    db: Session = Depends(get_db),
):
    return _write_or_raise(
        db,
        lambda: retract_submission(
            db,
            submission_id=submission_id,
            actor=payload.actor if payload else None,
            ip=get_client_ip(request),
        ),
    )


@router.get('/waves/{wave_id}/ledger/{rep_id}', response_model=list[LedgerEntryOut])
def get_ledger(wave_id: int, rep_id: int, db: Session = Depends(get_db)):
    return list_ledger(db, wave_id=wave_id, rep_id=rep_id)


@router.get('/waves/{wave_id}/activity', response_model=list[ActivityOut])
def get_activity(wave_id: int, request: Request, db: Session = Depends(get_db)):
    limit_raw = request.query_params.get('limit', '').strip()
    if limit_raw and not limit_raw.isdigit():
        raise HTTPException(status_code=400, detail='Invalid limit')
    limit = int(limit_raw) if limit_raw else None
    return list_wave_activity(db, wave_id=wave_id, limit=limit)
