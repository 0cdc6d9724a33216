from __future__ import annotations

from datetime import date

from fastapi import HTTPException, Request

from wavetrack.models import ItemType
from wavetrack.services.dashboard_service import DashboardFilters

NO_REPS_SELECTED = 'none'


def get_client_ip(request: Request) -> str | None:
    forwarded_for = request.headers.get('x-forwarded-for')
    if forwarded_for:
        return forwarded_for.split(',')[0].strip()
    if request.client:
        return request.client.host
    return None


def parse_rep_ids(raw: str | None) -> tuple[frozenset[int] | None, bool]:
    """Returns (rep_ids, none_selected). An empty value means no rep filter."""
    value = (raw or '').strip()
    if not value:
        return None, False
    if value.lower() == NO_REPS_SELECTED:
        return None, True
    rep_ids = set()
    for part in value.split(','):
        part = part.strip()
        if not part:
            continue
        if not part.isdigit():
            raise HTTPException(status_code=400, detail=f'Invalid rep id: {part}')
        rep_ids.add(int(part))
    if not rep_ids:
        return None, False
    return frozenset(rep_ids), False


def parse_item_types(raw: str | None) -> tuple[ItemType, ...] | None:
    value = (raw or '').strip()
    if not value:
        return None
    item_types = []
    for part in value.split(','):
        part = part.strip().lower()
        if not part:
            continue
        try:
            item_types.append(ItemType(part))
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=f'Invalid item type: {part}') from exc
    return tuple(item_types)


def parse_date(raw: str | None) -> date | None:
    value = (raw or '').strip()
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail='Invalid date filter') from exc


def dashboard_filters(request: Request) -> DashboardFilters:
    rep_ids, none_selected = parse_rep_ids(request.query_params.get('rep_ids'))
    start_date = parse_date(request.query_params.get('start_date'))
    end_date = parse_date(request.query_params.get('end_date'))
    if start_date and end_date and end_date < start_date:
        raise HTTPException(status_code=400, detail='Invalid date filter')
    return DashboardFilters(
        rep_ids=rep_ids,
        none_selected=none_selected,
        start_date=start_date,
        end_date=end_date,
        item_types=parse_item_types(request.query_params.get('item_types')),
    )
