from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
    true,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# SQLite only auto-assigns rowids for INTEGER PRIMARY KEY.
BigIntPK = BigInteger().with_variant(Integer, 'sqlite')


class Base(DeclarativeBase):
    pass


class GoalType(str, Enum):
    PERCENTAGE = 'percentage'
    VALUE = 'value'


class WaveStatus(str, Enum):
    UPCOMING = 'upcoming'
    ACTIVE = 'active'
    FINISHED = 'finished'


class ItemType(str, Enum):
    DISPLAY = 'display'
    KARTONWARE = 'kartonware'
    EINZELPRODUKT = 'einzelprodukt'
    PALETTE = 'palette'
    SCHUETTE = 'schuette'

    @property
    def is_composite(self) -> bool:
        return self in COMPOSITE_ITEM_TYPES


FLAT_ITEM_TYPES = frozenset({ItemType.DISPLAY, ItemType.KARTONWARE, ItemType.EINZELPRODUKT})
COMPOSITE_ITEM_TYPES = frozenset({ItemType.PALETTE, ItemType.SCHUETTE})


class Rep(Base):
    __tablename__ = 'reps'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    email: Mapped[str | None] = mapped_column(Text)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=true())
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Market(Base):
    __tablename__ = 'markets'
    __table_args__ = (
        CheckConstraint('current_visits >= 0', name='markets_visits_non_negative_ck'),
        Index('ix_markets_chain', 'chain'),
    )

    id: Mapped[str] = mapped_column(String(50), primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    chain: Mapped[str | None] = mapped_column(Text)
    city: Mapped[str | None] = mapped_column(Text)
    current_visits: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    last_visit_date: Mapped[date | None] = mapped_column(Date)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class RepMarketAssignment(Base):
    __tablename__ = 'rep_markets'

    rep_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('reps.id', ondelete='CASCADE'), primary_key=True)
    market_id: Mapped[str] = mapped_column(String(50), ForeignKey('markets.id', ondelete='CASCADE'), primary_key=True)


class Wave(Base):
    __tablename__ = 'waves'
    __table_args__ = (
        CheckConstraint(
            "(goal_type = 'PERCENTAGE' AND goal_percentage IS NOT NULL "
            'AND goal_percentage >= 0 AND goal_percentage <= 100) '
            "OR (goal_type = 'VALUE' AND goal_value IS NOT NULL AND goal_value >= 0)",
            name='waves_goal_ck',
        ),
        CheckConstraint('end_date >= start_date', name='waves_date_range_ck'),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    image_url: Mapped[str | None] = mapped_column(Text)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    goal_type: Mapped[GoalType] = mapped_column(SQLEnum(GoalType, name='goal_type'), nullable=False)
    goal_percentage: Mapped[Decimal | None] = mapped_column(Numeric(5, 2))
    goal_value: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class WaveSellWindow(Base):
    __tablename__ = 'wave_sell_windows'
    __table_args__ = (
        CheckConstraint('calendar_week >= 1 AND calendar_week <= 53', name='wave_sell_windows_week_ck'),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    wave_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('waves.id', ondelete='CASCADE'), nullable=False, index=True)
    calendar_week: Mapped[int] = mapped_column(Integer, nullable=False)
    weekdays: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')


class WaveMarketAssignment(Base):
    __tablename__ = 'wave_markets'
    __table_args__ = (
        UniqueConstraint('wave_id', 'market_id', name='wave_markets_wave_market_key'),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    wave_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('waves.id', ondelete='CASCADE'), nullable=False, index=True)
    market_id: Mapped[str] = mapped_column(
        String(50), ForeignKey('markets.id', ondelete='CASCADE'), nullable=False, index=True
    )
    assigned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class WaveItem(Base):
    """Flat catalog item (display, kartonware, einzelprodukt)."""

    __tablename__ = 'wave_items'
    __table_args__ = (
        CheckConstraint('target_number > 0', name='wave_items_target_positive_ck'),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    wave_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('waves.id', ondelete='CASCADE'), nullable=False, index=True)
    item_type: Mapped[ItemType] = mapped_column(SQLEnum(ItemType, name='item_type'), nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    target_number: Mapped[int] = mapped_column(Integer, nullable=False)
    item_value: Mapped[Decimal | None] = mapped_column(Numeric(10, 2))
    picture_url: Mapped[str | None] = mapped_column(Text)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class WaveComposite(Base):
    """Composite catalog item (palette, schuette) holding product lines."""

    __tablename__ = 'wave_composites'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    wave_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('waves.id', ondelete='CASCADE'), nullable=False, index=True)
    item_type: Mapped[ItemType] = mapped_column(SQLEnum(ItemType, name='item_type'), nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    size: Mapped[str | None] = mapped_column(Text)
    picture_url: Mapped[str | None] = mapped_column(Text)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class WaveCompositeProduct(Base):
    __tablename__ = 'wave_composite_products'
    __table_args__ = (
        CheckConstraint('value_per_unit >= 0', name='wave_composite_products_value_ck'),
        CheckConstraint('unit_count >= 1', name='wave_composite_products_units_ck'),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    composite_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey('wave_composites.id', ondelete='CASCADE'), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    value_per_unit: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    unit_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default='1')
    external_code: Mapped[str | None] = mapped_column(Text)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')


class ContributionBatch(Base):
    __tablename__ = 'contribution_batches'
    __table_args__ = (
        UniqueConstraint('rep_id', 'idempotency_key', name='contribution_batches_rep_idempotency_key'),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    wave_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('waves.id', ondelete='CASCADE'), nullable=False, index=True)
    rep_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('reps.id'), nullable=False)
    market_id: Mapped[str | None] = mapped_column(String(50), ForeignKey('markets.id'))
    idempotency_key: Mapped[str | None] = mapped_column(String(128))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Submission(Base):
    __tablename__ = 'submissions'
    __table_args__ = (
        CheckConstraint('quantity <> 0', name='submissions_quantity_non_zero_ck'),
        UniqueConstraint('retracts_submission_id', name='submissions_retracts_submission_id_key'),
        Index('ix_submissions_ledger_key', 'wave_id', 'rep_id', 'item_type', 'item_id'),
        Index('ix_submissions_created_at', 'created_at'),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    batch_id: Mapped[str | None] = mapped_column(String(36), ForeignKey('contribution_batches.id', ondelete='CASCADE'))
    wave_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('waves.id', ondelete='CASCADE'), nullable=False)
    rep_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('reps.id'), nullable=False)
    market_id: Mapped[str | None] = mapped_column(String(50), ForeignKey('markets.id'), index=True)
    item_type: Mapped[ItemType] = mapped_column(SQLEnum(ItemType, name='item_type'), nullable=False)
    # No foreign key: catalog rows may be edited away while the log keeps them.
    item_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    parent_item_id: Mapped[int | None] = mapped_column(BigInteger)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    value_per_unit: Mapped[Decimal | None] = mapped_column(Numeric(10, 2))
    retracts_submission_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('submissions.id'))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class ProgressEntry(Base):
    __tablename__ = 'progress_entries'
    __table_args__ = (
        UniqueConstraint('wave_id', 'rep_id', 'item_type', 'item_id', name='progress_entries_ledger_key'),
        CheckConstraint('current_number >= 0', name='progress_entries_non_negative_ck'),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    wave_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('waves.id', ondelete='CASCADE'), nullable=False, index=True)
    rep_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('reps.id'), nullable=False, index=True)
    item_type: Mapped[ItemType] = mapped_column(SQLEnum(ItemType, name='item_type'), nullable=False)
    item_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    current_number: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class AuditLog(Base):
    __tablename__ = 'audit_log'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    actor: Mapped[str | None] = mapped_column(Text)
    action: Mapped[str] = mapped_column(Text, nullable=False)
    wave_id: Mapped[int | None] = mapped_column(BigInteger)
    ip: Mapped[str | None] = mapped_column(String(64))
    meta: Mapped[dict] = mapped_column('metadata', JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
