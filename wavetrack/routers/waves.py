from __future__ import annotations

from decimal import Decimal, InvalidOperation

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from sqlalchemy.orm import Session

from wavetrack.db import get_db
from wavetrack.dependencies import get_client_ip, parse_rep_ids
from wavetrack.schemas import GoalOut, WaveDetailOut, WaveIn, WaveOut
from wavetrack.services.assignment_service import MarketFilter, chain_labels_for_group
from wavetrack.services.catalog_service import (
    CompositeInput,
    FlatItemInput,
    ProductLineInput,
    SellWindowInput,
    WaveInput,
    create_wave,
    delete_wave,
    get_wave_detail,
    list_waves,
    update_wave,
)
from wavetrack.services.dashboard_service import DashboardFilters
from wavetrack.services.errors import ReferenceNotFoundError
from wavetrack.services.goal_math_service import GoalKind
from wavetrack.services.goal_service import proportional_wave_goal
from wavetrack.services.time_utils import local_today

router = APIRouter(prefix='/waves', tags=['waves'])


def _wave_input(payload: WaveIn) -> WaveInput:
    return WaveInput(
        name=payload.name,
        image_url=payload.image_url,
        start_date=payload.start_date,
        end_date=payload.end_date,
        goal_type=payload.goal_type,
        goal_percentage=payload.goal_percentage,
        goal_value=payload.goal_value,
        items=[
            FlatItemInput(
                item_type=item.item_type,
                name=item.name,
                target_number=item.target_number,
                item_value=item.item_value,
                picture_url=item.picture_url,
            )
            for item in payload.items
        ],
        composites=[
            CompositeInput(
                item_type=composite.item_type,
                name=composite.name,
                size=composite.size,
                picture_url=composite.picture_url,
                products=[
                    ProductLineInput(
                        name=product.name,
                        value_per_unit=product.value_per_unit,
                        unit_count=product.unit_count,
                        external_code=product.external_code,
                    )
                    for product in composite.products
                ],
            )
            for composite in payload.composites
        ],
        sell_windows=[
            SellWindowInput(calendar_week=window.calendar_week, weekdays=window.weekdays)
            for window in payload.sell_windows
        ],
        market_ids=payload.market_ids,
    )


@router.get('', response_model=list[WaveOut])
def get_waves(db: Session = Depends(get_db)):
    return list_waves(db, today=local_today())


@router.get('/{wave_id}', response_model=WaveDetailOut)
def get_wave(wave_id: int, db: Session = Depends(get_db)):
    try:
        return get_wave_detail(db, wave_id=wave_id, today=local_today())
    except ReferenceNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.post('', response_model=WaveDetailOut, status_code=201)
def post_wave(payload: WaveIn, db: Session = Depends(get_db)):
    try:
        wave = create_wave(db, data=_wave_input(payload))
    except ValueError as exc:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ReferenceNotFoundError as exc:
        db.rollback()
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    db.commit()
    return get_wave_detail(db, wave_id=wave.id, today=local_today())


@router.put('/{wave_id}', response_model=WaveDetailOut)
def put_wave(wave_id: int, payload: WaveIn, db: Session = Depends(get_db)):
    try:
        update_wave(db, wave_id=wave_id, data=_wave_input(payload))
    except ValueError as exc:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ReferenceNotFoundError as exc:
        db.rollback()
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    db.commit()
    return get_wave_detail(db, wave_id=wave_id, today=local_today())


@router.delete('/{wave_id}', status_code=204)
def remove_wave(wave_id: int, request: Request, db: Session = Depends(get_db)):
    try:
        delete_wave(db, wave_id=wave_id, actor=request.headers.get('x-actor'), ip=get_client_ip(request))
    except ReferenceNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    db.commit()
    return Response(status_code=204)


@router.get('/{wave_id}/goal', response_model=GoalOut)
def get_goal(wave_id: int, request: Request, db: Session = Depends(get_db)):
    target_raw = request.query_params.get('target', '').strip()
    kind_raw = request.query_params.get('kind', GoalKind.COUNT.value).strip().lower()
    chain = request.query_params.get('chain', '').strip()
    try:
        total_target = Decimal(target_raw)
        kind = GoalKind(kind_raw)
    except (InvalidOperation, ValueError) as exc:
        raise HTTPException(status_code=400, detail='Invalid goal target or kind') from exc
    if not total_target.is_finite() or total_target < 0:
        raise HTTPException(status_code=400, detail='Invalid goal target or kind')

    rep_ids, none_selected = parse_rep_ids(request.query_params.get('rep_ids'))
    market_filter = DashboardFilters(rep_ids=rep_ids, none_selected=none_selected).market_filter
    try:
        if chain:
            market_filter = market_filter.narrowed(MarketFilter.for_chain(chain_labels_for_group(chain)))
        return proportional_wave_goal(
            db,
            wave_id=wave_id,
            total_target=total_target,
            market_filter=market_filter,
            kind=kind,
        )
    except ReferenceNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
