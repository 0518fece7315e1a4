from __future__ import annotations

from pathlib import Path
import sys
import unittest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from rho_bot.risk import MarginGuard
from tests.helpers import build_market, build_portfolio


class MarginGuardTests(unittest.TestCase):
    def test_margin_above_ceiling_blocks(self) -> None:
        market = build_market(decimals=6)
        guard = MarginGuard(100)
        decision = guard.check(market, build_portfolio(market, collateral=120))
        self.assertFalse(decision.allowed)
        self.assertIn("exceeds", decision.reason)

    def test_margin_counts_profit_and_loss(self) -> None:
        market = build_market(decimals=6)
        guard = MarginGuard(100)
        self.assertTrue(guard.check(market, build_portfolio(market, collateral=90)).allowed)
        self.assertFalse(guard.check(market, build_portfolio(market, collateral=90, net_future_value=15)).allowed)

    def test_margin_equal_to_ceiling_is_allowed(self) -> None:
        market = build_market(decimals=18)
        guard = MarginGuard(100)
        self.assertEqual(guard.ceiling(market), 100 * 10**18)
        self.assertTrue(guard.check(market, build_portfolio(market, collateral=100)).allowed)

    def test_zero_ceiling_disables_check(self) -> None:
        market = build_market()
        guard = MarginGuard(0)
        self.assertFalse(guard.enabled)
        self.assertTrue(guard.check(market, build_portfolio(market, collateral=10**9)).allowed)


if __name__ == "__main__":
    unittest.main()
