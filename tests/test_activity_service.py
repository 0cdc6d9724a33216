from __future__ import annotations

import unittest
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import select

from ledger_fixtures import LedgerTestCase
from wavetrack.models import GoalType, ItemType, Submission, WaveComposite
from wavetrack.services.activity_service import ResolutionStatus, list_wave_activity
from wavetrack.services.catalog_service import (
    CompositeInput,
    FlatItemInput,
    ProductLineInput,
    WaveInput,
    update_wave,
)
from wavetrack.services.progress_service import ContributionItem, record_contribution, record_contribution_batch

TODAY = date(2026, 3, 3)


class ActivityServiceTests(LedgerTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.rep = self.add_rep('Lukas Berger')
        self.add_market('M-1', owner=self.rep)
        self.wave = self.add_wave(market_ids=['M-1'])
        self.composite_id = self.db.execute(
            select(WaveComposite.id).where(WaveComposite.wave_id == self.wave.id)
        ).scalar_one()

    def _palette_batch(self, quantities: dict[str, int]):
        result = record_contribution_batch(
            self.db,
            wave_id=self.wave.id,
            rep_id=self.rep.id,
            market_id='M-1',
            items=[
                ContributionItem(item_type=ItemType.PALETTE, item_id=self.product_id(self.wave.id, name), quantity=quantity)
                for name, quantity in quantities.items()
            ],
            today=TODAY,
        )
        self.db.commit()
        return result

    def _replace_products(self, products: list[ProductLineInput]) -> None:
        update_wave(
            self.db,
            wave_id=self.wave.id,
            data=WaveInput(
                name=self.wave.name,
                start_date=self.wave.start_date,
                end_date=self.wave.end_date,
                goal_type=GoalType.PERCENTAGE,
                goal_percentage=Decimal('80'),
                items=[
                    FlatItemInput(item_type=ItemType.DISPLAY, name='Thekendisplay', target_number=10, item_value=Decimal('100.00')),
                ],
                composites=[CompositeInput(item_type=ItemType.PALETTE, name='Sommerpalette', products=products)],
                market_ids=['M-1'],
            ),
        )
        self.db.commit()

    def test_batch_of_product_lines_becomes_one_activity(self) -> None:
        self._palette_batch({'Snack Mix': 2, 'Nussriegel': 3, 'Chips': 1})

        activities = list_wave_activity(self.db, wave_id=self.wave.id)

        self.assertEqual(len(activities), 1)
        activity = activities[0]
        self.assertEqual(activity['item_type'], 'palette')
        self.assertEqual(activity['item_name'], 'Sommerpalette')
        self.assertEqual(activity['quantity'], 6)
        self.assertEqual(activity['value'], Decimal('11.00'))
        self.assertEqual(len(activity['lines']), 3)
        self.assertEqual(activity['resolution'], ResolutionStatus.RESOLVED.value)
        self.assertEqual(activity['rep_name'], 'Lukas Berger')
        self.assertEqual(activity['market_chain'], 'Billa+')
        ids = [line['submission_id'] for line in activity['lines']]
        self.assertEqual(activity['id'], '-'.join(str(i) for i in sorted(ids)))

    def test_separate_batches_stay_separate(self) -> None:
        self._palette_batch({'Snack Mix': 1})
        self._palette_batch({'Chips': 1})

        activities = list_wave_activity(self.db, wave_id=self.wave.id)

        self.assertEqual(len(activities), 2)
        self.assertEqual(activities[0]['value'], Decimal('3.00'))

    def test_legacy_rows_group_by_minute_bucket(self) -> None:
        snack_id = self.product_id(self.wave.id, 'Snack Mix')
        chips_id = self.product_id(self.wave.id, 'Chips')
        for item_id, value, created_at in (
            (snack_id, Decimal('2.50'), datetime(2026, 3, 3, 10, 15, 5, tzinfo=timezone.utc)),
            (chips_id, Decimal('3.00'), datetime(2026, 3, 3, 10, 15, 40, tzinfo=timezone.utc)),
            (chips_id, Decimal('3.00'), datetime(2026, 3, 3, 10, 17, 0, tzinfo=timezone.utc)),
        ):
            self.db.add(
                Submission(
                    wave_id=self.wave.id,
                    rep_id=self.rep.id,
                    market_id='M-1',
                    item_type=ItemType.PALETTE,
                    item_id=item_id,
                    parent_item_id=self.composite_id,
                    quantity=1,
                    value_per_unit=value,
                    created_at=created_at,
                )
            )
        self.db.commit()

        activities = list_wave_activity(self.db, wave_id=self.wave.id)

        self.assertEqual([activity['value'] for activity in activities], [Decimal('3.00'), Decimal('5.50')])

    def test_replaced_product_line_is_recovered_by_value(self) -> None:
        self._palette_batch({'Snack Mix': 2})
        self._replace_products(
            [
                ProductLineInput(name='Snack Mix Classic', value_per_unit=Decimal('2.50')),
                ProductLineInput(name='Nussriegel', value_per_unit=Decimal('1.00')),
            ]
        )

        activity = list_wave_activity(self.db, wave_id=self.wave.id)[0]

        self.assertEqual(activity['resolution'], ResolutionStatus.FALLBACK_RESOLVED.value)
        self.assertEqual(activity['lines'][0]['name'], 'Snack Mix Classic')
        self.assertEqual(activity['value'], Decimal('5.00'))

    def test_ambiguous_orphan_keeps_snapshot_value(self) -> None:
        self._palette_batch({'Chips': 2})
        self._replace_products(
            [
                ProductLineInput(name='Chips Paprika', value_per_unit=Decimal('3.00')),
                ProductLineInput(name='Chips Salz', value_per_unit=Decimal('3.00')),
            ]
        )

        activity = list_wave_activity(self.db, wave_id=self.wave.id)[0]

        self.assertEqual(activity['resolution'], ResolutionStatus.UNRESOLVED.value)
        self.assertEqual(activity['lines'][0]['name'], 'Unknown palette product')
        self.assertEqual(activity['item_name'], 'Sommerpalette')
        self.assertEqual(activity['value'], Decimal('6.00'))

    def test_flat_activity_uses_live_value_and_survives_deletion(self) -> None:
        display_id = self.item_id(self.wave.id, 'Thekendisplay')
        carton_id = self.item_id(self.wave.id, 'Aktionskarton')
        for item_type, item_id in ((ItemType.DISPLAY, display_id), (ItemType.KARTONWARE, carton_id)):
            record_contribution(
                self.db,
                wave_id=self.wave.id,
                rep_id=self.rep.id,
                item_type=item_type,
                item_id=item_id,
                quantity=2,
                today=TODAY,
            )
        self.db.commit()
        # Drops the kartonware item from the catalog.
        self._replace_products([ProductLineInput(name='Snack Mix', value_per_unit=Decimal('2.50'))])

        activities = {activity['item_type']: activity for activity in list_wave_activity(self.db, wave_id=self.wave.id)}

        self.assertEqual(activities['display']['value'], Decimal('200.00'))
        self.assertEqual(activities['display']['resolution'], ResolutionStatus.RESOLVED.value)
        self.assertEqual(activities['kartonware']['resolution'], ResolutionStatus.UNRESOLVED.value)
        self.assertEqual(activities['kartonware']['item_name'], 'Unknown kartonware')
        self.assertEqual(activities['kartonware']['value'], Decimal('20.00'))

    def test_limit_and_unknown_wave(self) -> None:
        self._palette_batch({'Snack Mix': 1})
        self._palette_batch({'Chips': 1})

        self.assertEqual(len(list_wave_activity(self.db, wave_id=self.wave.id, limit=1)), 1)
        self.assertEqual(list_wave_activity(self.db, wave_id=9999), [])


if __name__ == '__main__':
    unittest.main()
