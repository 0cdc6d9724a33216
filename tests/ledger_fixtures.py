from __future__ import annotations

import unittest
from datetime import date
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from wavetrack.db import build_engine
from wavetrack.models import (
    Base,
    GoalType,
    ItemType,
    Market,
    Rep,
    RepMarketAssignment,
    WaveComposite,
    WaveCompositeProduct,
    WaveItem,
)
from wavetrack.services.catalog_service import (
    CompositeInput,
    FlatItemInput,
    ProductLineInput,
    WaveInput,
    create_wave,
)


class LedgerTestCase(unittest.TestCase):
    """In-memory SQLite database with small helpers for building waves."""

    def build_test_engine(self):
        return build_engine('sqlite://')

    def setUp(self) -> None:
        self.engine = self.build_test_engine()
        Base.metadata.create_all(self.engine)
        self.db = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)()

    def tearDown(self) -> None:
        self.db.close()
        self.engine.dispose()

    def add_rep(self, name: str = 'Anna Huber') -> Rep:
        rep = Rep(name=name, active=True)
        self.db.add(rep)
        self.db.commit()
        return rep

    def add_market(self, market_id: str, *, chain: str | None = 'Billa+', owner: Rep | None = None) -> Market:
        market = Market(id=market_id, name=f'Market {market_id}', chain=chain)
        self.db.add(market)
        self.db.flush()
        if owner is not None:
            self.db.add(RepMarketAssignment(rep_id=owner.id, market_id=market_id))
        self.db.commit()
        return market

    def add_wave(
        self,
        *,
        name: str = 'Herbstwelle',
        start_date: date = date(2026, 3, 1),
        end_date: date = date(2026, 3, 31),
        goal_type: GoalType = GoalType.PERCENTAGE,
        goal_value: Decimal | None = None,
        items: list[FlatItemInput] | None = None,
        composites: list[CompositeInput] | None = None,
        market_ids: list[str] | None = None,
    ):
        wave = create_wave(
            self.db,
            data=WaveInput(
                name=name,
                start_date=start_date,
                end_date=end_date,
                goal_type=goal_type,
                goal_percentage=Decimal('80') if goal_type == GoalType.PERCENTAGE else None,
                goal_value=goal_value,
                items=items
                if items is not None
                else [
                    FlatItemInput(item_type=ItemType.DISPLAY, name='Thekendisplay', target_number=10, item_value=Decimal('100.00')),
                    FlatItemInput(item_type=ItemType.KARTONWARE, name='Aktionskarton', target_number=20, item_value=Decimal('10.00')),
                ],
                composites=composites
                if composites is not None
                else [
                    CompositeInput(
                        item_type=ItemType.PALETTE,
                        name='Sommerpalette',
                        products=[
                            ProductLineInput(name='Snack Mix', value_per_unit=Decimal('2.50')),
                            ProductLineInput(name='Nussriegel', value_per_unit=Decimal('1.00')),
                            ProductLineInput(name='Chips', value_per_unit=Decimal('3.00')),
                        ],
                    )
                ],
                market_ids=market_ids or [],
            ),
        )
        self.db.commit()
        return wave

    def item_id(self, wave_id: int, name: str) -> int:
        return self.db.execute(
            select(WaveItem.id).where(WaveItem.wave_id == wave_id, WaveItem.name == name)
        ).scalar_one()

    def product_id(self, wave_id: int, name: str) -> int:
        return self.db.execute(
            select(WaveCompositeProduct.id)
            .join(WaveComposite, WaveComposite.id == WaveCompositeProduct.composite_id)
            .where(WaveComposite.wave_id == wave_id, WaveCompositeProduct.name == name)
        ).scalar_one()
