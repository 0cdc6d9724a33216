from __future__ import annotations

import unittest
from datetime import date, datetime, timezone
from decimal import Decimal

from ledger_fixtures import LedgerTestCase
from wavetrack.models import ItemType, Submission
from wavetrack.services.dashboard_service import (
    DashboardFilters,
    chain_summaries,
    chain_summary,
    rep_chain_performance,
    wave_summary,
)
from wavetrack.services.errors import ReferenceNotFoundError
from wavetrack.services.progress_service import record_contribution

TODAY = date(2026, 3, 3)


class DashboardServiceTests(LedgerTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.anna = self.add_rep('Anna Huber')
        self.lukas = self.add_rep('Lukas Berger')
        self.add_market('B-1', chain='Billa+', owner=self.anna)
        self.add_market('B-2', chain='Adeg', owner=self.anna)
        self.add_market('S-1', chain='Spar', owner=self.lukas)
        self.add_market('S-2', chain='Eurospar', owner=self.lukas)
        self.wave = self.add_wave(market_ids=['B-1', 'B-2', 'S-1', 'S-2'], composites=[])
        display_id = self.item_id(self.wave.id, 'Thekendisplay')
        carton_id = self.item_id(self.wave.id, 'Aktionskarton')

        record_contribution(
            self.db,
            wave_id=self.wave.id,
            rep_id=self.anna.id,
            market_id='B-1',
            item_type=ItemType.DISPLAY,
            item_id=display_id,
            quantity=3,
            today=TODAY,
        )
        record_contribution(
            self.db,
            wave_id=self.wave.id,
            rep_id=self.lukas.id,
            market_id='S-1',
            item_type=ItemType.KARTONWARE,
            item_id=carton_id,
            quantity=4,
            today=TODAY,
        )
        self.db.commit()

    def test_chain_summary_without_filter(self) -> None:
        summary = chain_summary(self.db, chain_group='billa')

        self.assertEqual(summary['goal_type'], 'percentage')
        self.assertEqual(summary['goal_percentage'], 80)
        self.assertEqual(summary['total_markets'], 2)
        self.assertEqual(summary['markets_with_progress'], 2)
        self.assertEqual(summary['current'], 7)
        self.assertEqual(summary['goal'], 30)
        self.assertEqual(summary['current_value'], Decimal('340.00'))
        self.assertEqual(summary['total_value'], Decimal('1200.00'))
        self.assertEqual(summary['current_percentage'], Decimal('23.33'))

    def test_chain_summary_scales_targets_for_rep_filter(self) -> None:
        filters = DashboardFilters(rep_ids=frozenset({self.anna.id}))
        summary = chain_summary(self.db, chain_group='billa', filters=filters)

        self.assertEqual(summary['current'], 3)
        self.assertEqual(summary['goal'], 15)
        self.assertEqual(summary['current_percentage'], Decimal('20.00'))

    def test_no_reps_selected_zeroes_everything(self) -> None:
        filters = DashboardFilters(none_selected=True)
        summary = chain_summary(self.db, chain_group='spar', filters=filters)

        self.assertEqual(summary['total_markets'], 2)
        self.assertEqual(summary['current'], 0)
        self.assertEqual(summary['goal'], 0)
        self.assertEqual(summary['current_percentage'], Decimal('0.00'))

        card = wave_summary(self.db, filters=filters, today=TODAY)[0]
        self.assertEqual(card['assigned_markets'], 0)
        self.assertEqual(card['participating_reps'], 0)
        self.assertTrue(all(entry['current'] == 0 and entry['target'] == 0 for entry in card['types']))

    def test_chain_without_markets_is_all_zero(self) -> None:
        summary = chain_summary(self.db, chain_group='hagebau')

        self.assertEqual(summary['goal_type'], 'value')
        self.assertEqual(summary['total_markets'], 0)
        self.assertEqual(summary['goal_value'], Decimal('0.00'))

    def test_unknown_chain_grouping(self) -> None:
        with self.assertRaises(ReferenceNotFoundError):
            chain_summary(self.db, chain_group='hofer')

    def test_chain_summaries_cover_every_grouping(self) -> None:
        chains = [summary['chain'] for summary in chain_summaries(self.db)]
        self.assertEqual(chains, ['billa', 'spar', 'zoofachhandel', 'hagebau'])

    def test_wave_summary_counts_and_proportional_targets(self) -> None:
        cards = wave_summary(self.db, today=TODAY)
        self.assertEqual(len(cards), 1)
        types = {entry['item_type']: entry for entry in cards[0]['types']}
        self.assertEqual((types['display']['current'], types['display']['target']), (3, 10))
        self.assertEqual((types['kartonware']['current'], types['kartonware']['target']), (4, 20))
        self.assertEqual(cards[0]['assigned_markets'], 4)
        self.assertEqual(cards[0]['participating_reps'], 2)
        self.assertEqual(cards[0]['status'], 'active')

        filtered = wave_summary(self.db, filters=DashboardFilters(rep_ids=frozenset({self.anna.id})), today=TODAY)[0]
        types = {entry['item_type']: entry for entry in filtered['types']}
        self.assertEqual((types['display']['current'], types['display']['target']), (3, 5))
        self.assertEqual((types['kartonware']['current'], types['kartonware']['target']), (0, 10))
        self.assertEqual(filtered['assigned_markets'], 2)
        self.assertEqual(filtered['participating_reps'], 1)

    def test_wave_summary_handles_wave_without_markets(self) -> None:
        self.add_wave(name='Leere Welle', composites=[])
        filters = DashboardFilters(rep_ids=frozenset({self.anna.id}))

        cards = {card['name']: card for card in wave_summary(self.db, filters=filters, today=TODAY)}

        empty = cards['Leere Welle']
        self.assertEqual(empty['assigned_markets'], 0)
        self.assertTrue(all(entry['target'] == 0 for entry in empty['types']))

    def test_wave_summary_selects_active_and_recently_finished(self) -> None:
        self.add_wave(name='Vorschau', start_date=date(2026, 4, 1), end_date=date(2026, 4, 30), composites=[])
        self.add_wave(name='Gerade vorbei', start_date=date(2026, 2, 1), end_date=date(2026, 3, 1), composites=[])
        self.add_wave(name='Lange vorbei', start_date=date(2026, 1, 1), end_date=date(2026, 2, 10), composites=[])

        names = {card['name'] for card in wave_summary(self.db, today=TODAY)}

        self.assertEqual(names, {'Herbstwelle', 'Gerade vorbei'})

    def test_item_type_filter(self) -> None:
        filters = DashboardFilters(item_types=(ItemType.KARTONWARE,))
        summary = chain_summary(self.db, chain_group='billa', filters=filters)

        self.assertEqual(summary['current'], 4)
        self.assertEqual(summary['goal'], 20)

    def test_rep_chain_performance(self) -> None:
        performance = rep_chain_performance(self.db, rep_id=self.anna.id, today=TODAY)

        billa = performance['billa']
        self.assertEqual(billa['current']['display'], 3)
        self.assertEqual(billa['goal']['display'], 5)
        self.assertEqual(billa['goal']['kartonware'], 10)
        self.assertEqual(len(billa['weeks']), 1)
        self.assertEqual(billa['weeks'][0]['display'], 3)
        self.assertEqual(performance['spar']['current']['kartonware'], 0)
        self.assertEqual(performance['spar']['goal']['display'], 0)

    def test_rep_chain_weeks_follow_local_calendar_day(self) -> None:
        # 23:30 UTC on Sunday is 00:30 on Monday of ISO week 11 in Vienna.
        self.db.add(
            Submission(
                wave_id=self.wave.id,
                rep_id=self.anna.id,
                market_id='B-1',
                item_type=ItemType.DISPLAY,
                item_id=self.item_id(self.wave.id, 'Thekendisplay'),
                quantity=1,
                value_per_unit=Decimal('100.00'),
                created_at=datetime(2026, 3, 8, 23, 30, tzinfo=timezone.utc),
            )
        )
        self.db.commit()

        weeks = {
            (week['year'], week['calendar_week']): week
            for week in rep_chain_performance(self.db, rep_id=self.anna.id, today=TODAY)['billa']['weeks']
        }

        self.assertIn((2026, 11), weeks)
        self.assertNotIn((2026, 10), weeks)
        self.assertEqual(weeks[(2026, 11)]['label'], 'KW 11')

    def test_rep_without_activity_gets_empty_series(self) -> None:
        newcomer = self.add_rep('Neu')
        performance = rep_chain_performance(self.db, rep_id=newcomer.id, today=TODAY)

        self.assertEqual(performance['hagebau']['weeks'], [])
        self.assertEqual(performance['billa']['goal']['display'], 0)


if __name__ == '__main__':
    unittest.main()
