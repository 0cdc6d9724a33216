from datetime import timedelta
from decimal import Decimal

from sqlalchemy import select

from wavetrack.db import SessionLocal, engine
from wavetrack.models import Base, GoalType, ItemType, Market, Rep, RepMarketAssignment, Wave
from wavetrack.services.catalog_service import (
    CompositeInput,
    FlatItemInput,
    ProductLineInput,
    WaveInput,
    create_wave,
)
from wavetrack.services.time_utils import local_today

DEMO_MARKETS = [
    ('M-1001', 'Billa Wien Mitte', 'Billa+', 'Wien'),
    ('M-1002', 'Adeg Purkersdorf', 'Adeg', 'Purkersdorf'),
    ('M-2001', 'Interspar Graz', 'Interspar', 'Graz'),
    ('M-2002', 'Eurospar Linz', 'Eurospar', 'Linz'),
    ('M-3001', 'Fressnapf Salzburg', 'Fressnapf', 'Salzburg'),
    ('M-4001', 'Hagebau Villach', 'Hagebau', 'Villach'),
]

DEMO_REPS = [
    ('Anna Huber', 'anna.huber@example.com', ['M-1001', 'M-2001', 'M-3001']),
    ('Lukas Berger', 'lukas.berger@example.com', ['M-1002', 'M-2002', 'M-4001']),
]


def seed() -> None:
    Base.metadata.create_all(engine)
    with SessionLocal() as db:
        for market_id, name, chain, city in DEMO_MARKETS:
            if db.get(Market, market_id) is None:
                db.add(Market(id=market_id, name=name, chain=chain, city=city))
        db.flush()

        for name, email, market_ids in DEMO_REPS:
            rep = db.execute(select(Rep).where(Rep.email == email)).scalar_one_or_none()
            if not rep:
                rep = Rep(name=name, email=email, active=True)
                db.add(rep)
                db.flush()
            owned = {
                row[0]
                for row in db.execute(
                    select(RepMarketAssignment.market_id).where(RepMarketAssignment.rep_id == rep.id)
                ).all()
            }
            for market_id in market_ids:
                if market_id not in owned:
                    db.add(RepMarketAssignment(rep_id=rep.id, market_id=market_id))
        db.flush()

        demo_wave = db.execute(select(Wave).where(Wave.name == 'Demo Welle')).scalar_one_or_none()
        if not demo_wave:
            today = local_today()
            create_wave(
                db,
                data=WaveInput(
                    name='Demo Welle',
                    start_date=today - timedelta(days=7),
                    end_date=today + timedelta(days=21),
                    goal_type=GoalType.PERCENTAGE,
                    goal_percentage=Decimal('80'),
                    items=[
                        FlatItemInput(item_type=ItemType.DISPLAY, name='Thekendisplay', target_number=40, item_value=Decimal('120.00')),
                        FlatItemInput(item_type=ItemType.KARTONWARE, name='Aktionskarton', target_number=120, item_value=Decimal('35.50')),
                    ],
                    composites=[
                        CompositeInput(
                            item_type=ItemType.PALETTE,
                            name='Sommerpalette',
                            size='1/4',
                            products=[
                                ProductLineInput(name='Snack Mix 200g', value_per_unit=Decimal('2.49'), unit_count=12),
                                ProductLineInput(name='Nussriegel 50g', value_per_unit=Decimal('0.99'), unit_count=24),
                            ],
                        )
                    ],
                    market_ids=[market_id for market_id, _, _, _ in DEMO_MARKETS],
                ),
            )

        db.commit()


if __name__ == '__main__':
    seed()
    print('Seed data inserted/verified.')
