from __future__ import annotations

import argparse

from wavetrack.db import SessionLocal
from wavetrack.services.progress_service import LedgerDrift, find_ledger_drift, rebuild_ledger


def reconcile(wave_id: int | None = None, repair: bool = False, actor: str | None = None) -> list[LedgerDrift]:
    with SessionLocal() as db:
        if not repair:
            return find_ledger_drift(db, wave_id=wave_id)
        repaired = rebuild_ledger(db, wave_id=wave_id, actor=actor)
        db.commit()
        return repaired


def main() -> None:
    parser = argparse.ArgumentParser(description='Compare the progress ledger against the submission log.')
    parser.add_argument('--wave-id', type=int, default=None, help='Only check one wave.')
    parser.add_argument('--repair', action='store_true', help='Rewrite drifted ledger rows from the submission log.')
    parser.add_argument('--actor', default='reconcile_ledger', help='Actor recorded in the audit log when repairing.')
    args = parser.parse_args()

    drift = reconcile(wave_id=args.wave_id, repair=args.repair, actor=args.actor)
    for entry in drift:
        print(
            f'wave={entry.wave_id} rep={entry.rep_id} {entry.item_type.value}:{entry.item_id} '
            f'ledger={entry.ledger_number} log={entry.logged_number}'
        )
    action = 'repaired' if args.repair else 'found'
    print(f'Ledger reconciliation complete: {action} {len(drift)} drifted keys')
    if drift and not args.repair:
        raise SystemExit(1)


if __name__ == '__main__':
    main()
