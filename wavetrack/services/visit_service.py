from __future__ import annotations

import logging
from datetime import date

from sqlalchemy import or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from wavetrack.models import Market

logger = logging.getLogger(__name__)


def credit_market_visit(db: Session, *, market_id: str, today: date) -> bool:
    """Count at most one visit per market and calendar day. Returns whether a row changed."""
    result = db.execute(
        update(Market)
        .where(
            Market.id == market_id,
            or_(Market.last_visit_date.is_(None), Market.last_visit_date != today),
        )
        .values(current_visits=Market.current_visits + 1, last_visit_date=today)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def try_credit_market_visit(db: Session, *, market_id: str, today: date) -> bool:
    savepoint = db.begin_nested()
    try:
        credited = credit_market_visit(db, market_id=market_id, today=today)
        savepoint.commit()
        return credited
    except SQLAlchemyError:
        savepoint.rollback()
        logger.warning('Visit credit failed for market %s on %s', market_id, today, exc_info=True)
        return False
