from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from wavetrack.models import GoalType, ItemType


class ContributionLineIn(BaseModel):
    item_type: ItemType
    item_id: int
    quantity: int
    value_per_unit: Decimal | None = None


class ContributionIn(ContributionLineIn):
    rep_id: int
    market_id: str | None = None
    idempotency_key: str | None = Field(default=None, max_length=128)


class ContributionBatchIn(BaseModel):
    rep_id: int
    market_id: str | None = None
    items: list[ContributionLineIn]
    idempotency_key: str | None = Field(default=None, max_length=128)


class RetractionIn(BaseModel):
    actor: str | None = None


class LedgerValueOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    item_type: ItemType
    item_id: int
    new_cumulative: int


class ContributionResultOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    batch_id: str
    items: list[LedgerValueOut]
    visit_credited: bool
    replayed: bool


class LedgerEntryOut(BaseModel):
    wave_id: int
    rep_id: int
    item_type: ItemType
    item_id: int
    current_number: int
    updated_at: datetime | None = None


class ActivityLineOut(BaseModel):
    submission_id: int
    name: str
    quantity: int
    value: Decimal
    resolution: str


class ActivityOut(BaseModel):
    id: str
    wave_id: int
    wave_name: str
    rep_id: int
    rep_name: str
    market_id: str | None
    market_name: str | None
    market_chain: str | None
    item_type: ItemType
    item_name: str | None
    parent_name: str | None
    lines: list[ActivityLineOut]
    quantity: int
    value: Decimal
    resolution: str
    timestamp: datetime
    is_retraction: bool


class GoalOut(BaseModel):
    wave_id: int
    kind: str
    total_target: Decimal
    assigned_markets: int
    owned_markets: int
    ratio: Decimal
    goal: Decimal


class FlatItemIn(BaseModel):
    item_type: ItemType
    name: str
    target_number: int
    item_value: Decimal | None = None
    picture_url: str | None = None


class ProductLineIn(BaseModel):
    name: str
    value_per_unit: Decimal
    unit_count: int = 1
    external_code: str | None = None


class CompositeIn(BaseModel):
    item_type: ItemType
    name: str
    size: str | None = None
    picture_url: str | None = None
    products: list[ProductLineIn]


class SellWindowIn(BaseModel):
    calendar_week: str | int
    weekdays: list[str]


class WaveIn(BaseModel):
    name: str
    image_url: str | None = None
    start_date: date
    end_date: date
    goal_type: GoalType
    goal_percentage: Decimal | None = None
    goal_value: Decimal | None = None
    items: list[FlatItemIn] = Field(default_factory=list)
    composites: list[CompositeIn] = Field(default_factory=list)
    sell_windows: list[SellWindowIn] = Field(default_factory=list)
    market_ids: list[str] = Field(default_factory=list)


class WaveOut(BaseModel):
    id: int
    name: str
    image_url: str | None
    start_date: date
    end_date: date
    status: str
    goal_type: GoalType
    goal_percentage: Decimal | None
    goal_value: Decimal | None


class WaveItemOut(BaseModel):
    id: int
    item_type: ItemType
    name: str
    target_number: int
    current_number: int
    item_value: Decimal | None
    picture_url: str | None


class ProductLineOut(BaseModel):
    id: int
    name: str
    value_per_unit: Decimal
    current_number: int


class CompositeOut(BaseModel):
    id: int
    item_type: ItemType
    name: str
    size: str | None
    picture_url: str | None
    products: list[ProductLineOut]


class SellWindowOut(BaseModel):
    calendar_week: int
    weekdays: list[str]


class WaveDetailOut(WaveOut):
    types: list[str]
    items: list[WaveItemOut]
    composites: list[CompositeOut]
    sell_windows: list[SellWindowOut]
    assigned_market_ids: list[str]
    participating_reps: int


class ChainSummaryOut(BaseModel):
    chain: str
    goal_type: GoalType
    goal_percentage: int | None
    total_markets: int
    markets_with_progress: int
    current: int
    goal: int
    current_value: Decimal
    goal_value: Decimal
    total_value: Decimal
    current_percentage: Decimal


class TypeProgressOut(BaseModel):
    item_type: ItemType
    current: int
    target: int


class WaveCardOut(BaseModel):
    id: int
    name: str
    start_date: date
    end_date: date
    status: str
    goal_type: GoalType
    goal_percentage: Decimal | None
    goal_value: Decimal | None
    types: list[TypeProgressOut]
    current_value: Decimal
    target_value: Decimal
    assigned_markets: int
    participating_reps: int
