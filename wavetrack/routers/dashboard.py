from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from wavetrack.db import get_db
from wavetrack.dependencies import dashboard_filters
from wavetrack.schemas import ChainSummaryOut, WaveCardOut
from wavetrack.services.dashboard_service import (
    DashboardFilters,
    chain_summaries,
    chain_summary,
    rep_chain_performance,
    wave_summary,
)
from wavetrack.services.errors import ReferenceNotFoundError
from wavetrack.services.time_utils import local_today

router = APIRouter(prefix='/dashboard', tags=['dashboard'])


@router.get('/chain-summary', response_model=list[ChainSummaryOut])
def get_chain_summary(
    request: Request,
    filters: DashboardFilters = Depends(dashboard_filters),
    db: Session = Depends(get_db),
):
    chain = request.query_params.get('chain', '').strip()
    if not chain:
        return chain_summaries(db, filters=filters)
    try:
        return [chain_summary(db, chain_group=chain, filters=filters)]
    except ReferenceNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.get('/wave-summary', response_model=list[WaveCardOut])
def get_wave_summary(
    filters: DashboardFilters = Depends(dashboard_filters),
    db: Session = Depends(get_db),
):
    return wave_summary(db, filters=filters, today=local_today())


@router.get('/reps/{rep_id}/chain-performance')
def get_rep_chain_performance(rep_id: int, db: Session = Depends(get_db)):
    return rep_chain_performance(db, rep_id=rep_id, today=local_today())
