from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date

from sqlalchemy import select
from sqlalchemy.orm import Session

from wavetrack.models import Wave, WaveSellWindow, WaveStatus

WEEKDAY_ORDER: dict[str, int] = {
    'MO': 1,
    'DI': 2,
    'MI': 3,
    'DO': 4,
    'FR': 5,
    'SA': 6,
    'SO': 7,
    'MON': 1,
    'TUE': 2,
    'WED': 3,
    'THU': 4,
    'FRI': 5,
    'SAT': 6,
    'SUN': 7,
}
WEEKDAY_LABELS = ('MO', 'DI', 'MI', 'DO', 'FR', 'SA', 'SO')

_WEEK_PATTERN = re.compile(r'^\s*(?:KW)?\s*(\d{1,2})\s*$', re.IGNORECASE)


@dataclass(frozen=True)
class SellWindow:
    calendar_week: int
    weekdays: tuple[str, ...]


def parse_calendar_week(value: str | int) -> int:
    if isinstance(value, int):
        week = value
    else:
        match = _WEEK_PATTERN.match(value or '')
        if not match:
            raise ValueError(f'Invalid calendar week: {value!r}')
        week = int(match.group(1))
    if week < 1 or week > 53:
        raise ValueError(f'Calendar week out of range: {value!r}')
    return week


def parse_weekday(value: str) -> int:
    key = (value or '').strip().upper()
    if key not in WEEKDAY_ORDER:
        raise ValueError(f'Invalid weekday: {value!r}')
    return WEEKDAY_ORDER[key]


def normalize_weekdays(values: Iterable[str]) -> list[str]:
    days = sorted({parse_weekday(value) for value in values})
    return [WEEKDAY_LABELS[day - 1] for day in days]


def sell_window_points(windows: Iterable[SellWindow]) -> list[tuple[int, int]]:
    points: set[tuple[int, int]] = set()
    for window in windows:
        for day in window.weekdays:
            points.add((window.calendar_week, parse_weekday(day)))
    return sorted(points)


def _status_from_sell_windows(points: list[tuple[int, int]], today: date) -> WaveStatus:
    iso = today.isocalendar()
    current = (iso.week, iso.weekday)
    if current < points[0]:
        return WaveStatus.UPCOMING
    if current > points[-1]:
        return WaveStatus.FINISHED
    return WaveStatus.ACTIVE


def derive_wave_status(
    start_date: date,
    end_date: date,
    sell_windows: Iterable[SellWindow] = (),
    *,
    today: date,
) -> WaveStatus:
    """
    Derive the lifecycle state of a wave for ``today``.

    Sell windows, when configured, replace the plain date-window rule: the
    current (ISO week, weekday) is compared against the earliest and latest
    configured points. Windows without any weekday are ignored.
    """
    points = sell_window_points(sell_windows)
    if points:
        return _status_from_sell_windows(points, today)
    if today < start_date:
        return WaveStatus.UPCOMING
    if today > end_date:
        return WaveStatus.FINISHED
    return WaveStatus.ACTIVE


def sell_windows_by_wave(db: Session, *, wave_ids: list[int]) -> dict[int, list[SellWindow]]:
    if not wave_ids:
        return {}
    rows = db.execute(
        select(WaveSellWindow)
        .where(WaveSellWindow.wave_id.in_(wave_ids))
        .order_by(WaveSellWindow.wave_id.asc(), WaveSellWindow.position.asc())
    ).scalars().all()
    by_wave: dict[int, list[SellWindow]] = {}
    for row in rows:
        by_wave.setdefault(row.wave_id, []).append(
            SellWindow(calendar_week=row.calendar_week, weekdays=tuple(row.weekdays or ()))
        )
    return by_wave


def wave_statuses(db: Session, *, waves: list[Wave], today: date) -> dict[int, WaveStatus]:
    windows = sell_windows_by_wave(db, wave_ids=[wave.id for wave in waves])
    return {
        wave.id: derive_wave_status(wave.start_date, wave.end_date, windows.get(wave.id, ()), today=today)
        for wave in waves
    }
