from __future__ import annotations

import unittest
from decimal import Decimal

from wavetrack.services.goal_math_service import (
    GoalKind,
    MarketShare,
    NO_SHARE,
    percentage,
    proportional_goal,
    round_money,
)


class GoalMathServiceTests(unittest.TestCase):
    def test_count_goal_scales_by_owned_share(self) -> None:
        share = MarketShare(assigned_markets=10, owned_markets=3)
        self.assertEqual(proportional_goal(100, share, GoalKind.COUNT), 30)

    def test_count_goal_rounds_up(self) -> None:
        share = MarketShare(assigned_markets=10, owned_markets=3)
        self.assertEqual(proportional_goal(101, share, GoalKind.COUNT), 31)

    def test_exact_thirds_do_not_round_up(self) -> None:
        share = MarketShare(assigned_markets=3, owned_markets=2)
        self.assertEqual(proportional_goal(3, share, GoalKind.COUNT), 2)

    def test_value_goal_rounds_half_up_to_cents(self) -> None:
        share = MarketShare(assigned_markets=8, owned_markets=1)
        self.assertEqual(proportional_goal(Decimal('100.04'), share, GoalKind.VALUE), Decimal('12.51'))

    def test_zero_assigned_markets_yields_zero(self) -> None:
        self.assertEqual(proportional_goal(100, NO_SHARE, GoalKind.COUNT), 0)
        self.assertEqual(proportional_goal(Decimal('250.00'), NO_SHARE, GoalKind.VALUE), Decimal('0.00'))
        self.assertEqual(NO_SHARE.ratio, Decimal('0'))

    def test_owned_markets_are_clamped_to_assigned(self) -> None:
        share = MarketShare(assigned_markets=4, owned_markets=9)
        self.assertEqual(share.owned_clamped, 4)
        self.assertEqual(proportional_goal(10, share, GoalKind.COUNT), 10)

    def test_percentage_handles_zero_target(self) -> None:
        self.assertEqual(percentage(5, 0), Decimal('0.00'))
        self.assertEqual(percentage(1, 3), Decimal('33.33'))

    def test_round_money_accepts_floats(self) -> None:
        self.assertEqual(round_money(2.675), Decimal('2.68'))


if __name__ == '__main__':
    unittest.main()
