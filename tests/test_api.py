from __future__ import annotations

import unittest
from datetime import date
from unittest.mock import patch

from fastapi.testclient import TestClient

from ledger_fixtures import LedgerTestCase
from wavetrack.db import get_db
from wavetrack.main import app

TODAY = date(2026, 3, 3)


class ApiTests(LedgerTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.rep = self.add_rep()
        self.other_rep = self.add_rep('Lukas Berger')
        self.add_market('B-1', chain='Billa+', owner=self.rep)
        self.add_market('S-1', chain='Spar', owner=self.other_rep)
        self.wave = self.add_wave(market_ids=['B-1', 'S-1'])
        self.display_id = self.item_id(self.wave.id, 'Thekendisplay')

        def override_get_db():
            yield self.db

        app.dependency_overrides[get_db] = override_get_db
        self.client = TestClient(app)
        self.today_patch = patch('wavetrack.services.progress_service.local_today', return_value=TODAY)
        self.today_patch.start()

    def tearDown(self) -> None:
        self.today_patch.stop()
        app.dependency_overrides.clear()
        super().tearDown()

    def _post_contribution(self, **overrides):
        body = {
            'rep_id': self.rep.id,
            'market_id': 'B-1',
            'item_type': 'display',
            'item_id': self.display_id,
            'quantity': 2,
        }
        body.update(overrides)
        return self.client.post(f'/waves/{self.wave.id}/contributions', json=body)

    def test_healthz(self) -> None:
        response = self.client.get('/healthz')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {'status': 'ok'})

    def test_contribution_round_trip(self) -> None:
        first = self._post_contribution()
        second = self._post_contribution(quantity=3)

        self.assertEqual(first.status_code, 200)
        self.assertTrue(first.json()['visit_credited'])
        self.assertFalse(second.json()['visit_credited'])
        self.assertEqual(second.json()['items'][0]['new_cumulative'], 5)

        ledger = self.client.get(f'/waves/{self.wave.id}/ledger/{self.rep.id}').json()
        self.assertEqual(ledger[0]['current_number'], 5)
        self.assertEqual(ledger[0]['item_type'], 'display')

    def test_validation_and_reference_errors(self) -> None:
        self.assertEqual(self._post_contribution(quantity=0).status_code, 400)
        self.assertEqual(self._post_contribution(item_id=99999).status_code, 404)
        self.assertEqual(self._post_contribution(rep_id=99999).status_code, 404)
        missing_wave = self.client.post(
            '/waves/99999/contributions',
            json={'rep_id': self.rep.id, 'item_type': 'display', 'item_id': self.display_id, 'quantity': 1},
        )
        self.assertEqual(missing_wave.status_code, 404)

    def test_batch_with_idempotency_key(self) -> None:
        body = {
            'rep_id': self.rep.id,
            'items': [
                {'item_type': 'display', 'item_id': self.display_id, 'quantity': 1},
                {'item_type': 'palette', 'item_id': self.product_id(self.wave.id, 'Snack Mix'), 'quantity': 4},
            ],
            'idempotency_key': 'visit-7',
        }
        first = self.client.post(f'/waves/{self.wave.id}/contributions/batch', json=body)
        replay = self.client.post(f'/waves/{self.wave.id}/contributions/batch', json=body)

        self.assertEqual(first.status_code, 200)
        self.assertFalse(first.json()['replayed'])
        self.assertTrue(replay.json()['replayed'])
        self.assertEqual(replay.json()['batch_id'], first.json()['batch_id'])

        activity = self.client.get(f'/waves/{self.wave.id}/activity').json()
        self.assertEqual(len(activity), 2)

    def test_retraction_endpoint(self) -> None:
        self._post_contribution(quantity=2)
        submission_id = self.client.get(f'/waves/{self.wave.id}/activity').json()[0]['lines'][0]['submission_id']

        retracted = self.client.post(f'/submissions/{submission_id}/retract', json={'actor': 'admin'})
        repeated = self.client.post(f'/submissions/{submission_id}/retract')

        self.assertEqual(retracted.status_code, 200)
        self.assertEqual(retracted.json()['items'][0]['new_cumulative'], 0)
        self.assertEqual(repeated.status_code, 400)

    def test_goal_endpoint(self) -> None:
        url = f'/waves/{self.wave.id}/goal'

        whole = self.client.get(url, params={'target': '101', 'kind': 'count'}).json()
        own = self.client.get(url, params={'target': '101', 'rep_ids': str(self.rep.id)}).json()
        nobody = self.client.get(url, params={'target': '101', 'rep_ids': 'none'}).json()
        spar = self.client.get(url, params={'target': '100.00', 'kind': 'value', 'chain': 'spar'}).json()

        self.assertEqual(whole['goal'], '101')
        self.assertEqual(own['goal'], '51')
        self.assertEqual(nobody['goal'], '0')
        self.assertEqual(spar['goal'], '50.00')
        self.assertEqual(self.client.get(url, params={'target': 'abc'}).status_code, 400)
        self.assertEqual(self.client.get(url, params={'target': '5', 'chain': 'hofer'}).status_code, 404)

    def test_wave_crud(self) -> None:
        payload = {
            'name': 'Frühjahrswelle',
            'start_date': '2026-03-01',
            'end_date': '2026-03-31',
            'goal_type': 'value',
            'goal_value': '5000.00',
            'items': [{'item_type': 'einzelprodukt', 'name': 'Aktionsflasche', 'target_number': 50, 'item_value': '4.20'}],
            'sell_windows': [{'calendar_week': 'KW 10', 'weekdays': ['MO', 'DI']}],
            'market_ids': ['B-1'],
        }
        created = self.client.post('/waves', json=payload)
        self.assertEqual(created.status_code, 201)
        wave_id = created.json()['id']
        self.assertEqual(created.json()['sell_windows'], [{'calendar_week': 10, 'weekdays': ['MO', 'DI']}])
        self.assertEqual(created.json()['assigned_market_ids'], ['B-1'])

        payload['name'] = 'Frühjahrswelle 2'
        updated = self.client.put(f'/waves/{wave_id}', json=payload)
        self.assertEqual(updated.status_code, 200)
        self.assertEqual(updated.json()['items'][0]['id'], created.json()['items'][0]['id'])

        bad = dict(payload, end_date='2026-02-01')
        self.assertEqual(self.client.put(f'/waves/{wave_id}', json=bad).status_code, 400)
        self.assertEqual(self.client.post('/waves', json=dict(payload, market_ids=['X-1'])).status_code, 404)

        self.assertEqual(self.client.delete(f'/waves/{wave_id}').status_code, 204)
        self.assertEqual(self.client.get(f'/waves/{wave_id}').status_code, 404)

    def test_dashboard_endpoints(self) -> None:
        self._post_contribution(quantity=2)

        chains = self.client.get('/dashboard/chain-summary').json()
        billa = self.client.get('/dashboard/chain-summary', params={'chain': 'billa', 'rep_ids': 'none'}).json()
        cards = self.client.get('/dashboard/wave-summary', params={'rep_ids': str(self.rep.id)})
        performance = self.client.get(f'/dashboard/reps/{self.rep.id}/chain-performance')

        self.assertEqual(len(chains), 4)
        self.assertEqual(billa[0]['current'], 0)
        self.assertEqual(cards.status_code, 200)
        self.assertEqual(performance.status_code, 200)
        self.assertIn('billa', performance.json())
        self.assertEqual(self.client.get('/dashboard/chain-summary', params={'chain': 'hofer'}).status_code, 404)
        self.assertEqual(self.client.get('/dashboard/wave-summary', params={'rep_ids': 'x'}).status_code, 400)
        self.assertEqual(self.client.get('/dashboard/wave-summary', params={'start_date': 'gestern'}).status_code, 400)


if __name__ == '__main__':
    unittest.main()
