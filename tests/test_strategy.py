from __future__ import annotations

from pathlib import Path
import sys
from dataclasses import replace
import unittest
from unittest.mock import patch

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from rho_bot.metrics import TradeMetrics
from rho_bot.models import RiskDirection, to_fixed
from rho_bot.risk import PolicyAbort
from rho_bot.strategy import (
    STATUS_EXECUTED,
    STATUS_MARGIN_BLOCKED,
    STATUS_NO_DIRECTION,
    STATUS_RETRIES_EXHAUSTED,
    InstrumentInactive,
    TradingStrategy,
)
from tests.helpers import (
    NOW,
    FakeOracle,
    FakeVenue,
    StubRandom,
    build_market,
    build_portfolio,
    build_quote,
    test_config,
)


class TradingStrategyTests(unittest.TestCase):
    def setUp(self) -> None:
        self.market = build_market(decimals=6, rate=0.05)
        self.future = self.market.futures[0]
        self.metrics = TradeMetrics()

    def _strategy(self, venue: FakeVenue, draw: float = 0.2, avg_rate: float = 0.05, **cfg) -> TradingStrategy:
        defaults = {
            "max_trade_size": 1000.0,
            "max_margin_in_use": 0.0,
            "risk_level": 1000.0,
            "max_risk": 10000.0,
            "rate_limit_slippage": 0.001,
            "deadline_seconds": 180,
            "trade_retry_attempts": 2,
            "trade_retry_delay_seconds": 0.0,
            "sizing_max_iterations": 10,
            "sizing_exhausted_policy": "proceed",
            "max_gas_limit": 0,
            "max_gas_price_gwei": 0.0,
        }
        defaults.update(cfg)
        return TradingStrategy(
            test_config(**defaults),
            venue,
            FakeOracle(avg_rate=avg_rate),
            self.metrics,
            rng=StubRandom(draws=[draw]),
            clock=lambda: NOW,
            sleep=lambda seconds: None,
        )

    def test_receiver_trade_executes_with_lowered_rate_limit(self) -> None:
        venue = FakeVenue(balance=10**12)
        outcome = self._strategy(venue, draw=0.2).initiate_trade(self.market, self.future)
        self.assertEqual(outcome.status, STATUS_EXECUTED)
        self.assertEqual(outcome.direction, RiskDirection.RECEIVER)
        params = outcome.params
        self.assertEqual(params.notional, 1000 * 10**6)
        self.assertEqual(params.future_rate_limit, to_fixed(0.05, 18) - 10**15)
        self.assertEqual(params.deadline, NOW + 180)
        self.assertEqual(params.deposit_amount, 0)
        self.assertEqual(self.metrics.trades_total(), 1.0)

    def test_payer_trade_raises_rate_limit(self) -> None:
        venue = FakeVenue(balance=10**12)
        outcome = self._strategy(venue, draw=0.9).initiate_trade(self.market, self.future)
        self.assertEqual(outcome.direction, RiskDirection.PAYER)
        self.assertEqual(outcome.params.future_rate_limit, to_fixed(0.05, 18) + 10**15)

    def test_portfolio_is_read_before_quotes_each_cycle(self) -> None:
        venue = FakeVenue(balance=10**12)
        strategy = self._strategy(venue)
        strategy.initiate_trade(self.market, self.future)
        strategy.initiate_trade(self.market, self.future)
        names = venue.call_names()
        self.assertEqual(names.count("get_portfolio"), 2)
        self.assertLess(names.index("get_portfolio"), names.index("get_quote"))

    def test_trade_uses_fitted_notional_and_its_deposit(self) -> None:
        venue = FakeVenue(balance=10**12)
        venue.quote_for = lambda n: build_quote(
            n, deposit=n // 100, exceeded_trade_rate_impact_limit_for_payer=n > 8 * 10**8
        )
        outcome = self._strategy(venue).initiate_trade(self.market, self.future)
        self.assertEqual(outcome.params.notional, 7 * 10**8)
        self.assertEqual(outcome.params.deposit_amount, 7 * 10**6)

    def test_fresh_future_rate_from_portfolio_drives_decision(self) -> None:
        fresh_future = replace(self.future, current_future_rate=to_fixed(0.2, 18))
        portfolio = replace(build_portfolio(self.market), futures=(fresh_future,))
        venue = FakeVenue(portfolio=portfolio, balance=10**12)
        outcome = self._strategy(venue, draw=0.55, avg_rate=0.05).initiate_trade(self.market, self.future)
        self.assertEqual(outcome.direction, RiskDirection.RECEIVER)

    def test_future_missing_from_portfolio_is_reread_from_venue(self) -> None:
        portfolio = replace(build_portfolio(self.market), futures=())
        venue = FakeVenue(portfolio=portfolio, balance=10**12)
        venue.markets = [build_market(rate=0.2)]
        strategy = self._strategy(venue, draw=0.55, avg_rate=0.05)
        current = strategy.current_future(self.market, self.future.id, portfolio)
        self.assertEqual(current.current_future_rate, to_fixed(0.2, 18))

        outcome = strategy.initiate_trade(self.market, self.future)
        self.assertEqual(outcome.direction, RiskDirection.RECEIVER)
        self.assertIn("list_active_markets", venue.call_names())

    def test_future_no_longer_listed_aborts_cycle(self) -> None:
        portfolio = replace(build_portfolio(self.market), futures=())
        venue = FakeVenue(portfolio=portfolio, balance=10**12)
        with self.assertRaises(InstrumentInactive) as ctx:
            self._strategy(venue).initiate_trade(self.market, self.future)
        self.assertIsInstance(ctx.exception, PolicyAbort)
        self.assertNotIn("get_quote", venue.call_names())

    def test_margin_ceiling_blocks_before_execution(self) -> None:
        venue = FakeVenue(portfolio=build_portfolio(self.market, collateral=120), balance=10**12)
        with self.assertLogs("rho_bot", level="WARNING"):
            outcome = self._strategy(venue, max_margin_in_use=100.0).initiate_trade(self.market, self.future)
        self.assertEqual(outcome.status, STATUS_MARGIN_BLOCKED)
        names = venue.call_names()
        for step in ("get_allowance", "estimate_trade_gas", "submit_trade"):
            self.assertNotIn(step, names)
        self.assertEqual(self.metrics.trades_total(), 0.0)

    def test_no_direction_skips_trade(self) -> None:
        venue = FakeVenue(balance=10**12)
        strategy = self._strategy(venue)
        with patch.object(strategy.model, "decide", return_value=None):
            outcome = strategy.initiate_trade(self.market, self.future)
        self.assertEqual(outcome.status, STATUS_NO_DIRECTION)
        self.assertNotIn("submit_trade", venue.call_names())

    def test_exhausted_retries_end_cycle_without_raising(self) -> None:
        venue = FakeVenue(balance=10**12)
        venue.submit_errors = [RuntimeError("nonce too low")] * 4
        outcome = self._strategy(venue, trade_retry_attempts=2).initiate_trade(self.market, self.future)
        self.assertEqual(outcome.status, STATUS_RETRIES_EXHAUSTED)
        self.assertEqual(len(venue.submitted), 2)
        self.assertEqual(self.metrics.trades_total(), 0.0)

    def test_unavailable_balance_still_trades(self) -> None:
        venue = FakeVenue(balance=None)
        with self.assertLogs("rho_bot", level="WARNING") as logs:
            outcome = self._strategy(venue).initiate_trade(self.market, self.future)
        self.assertEqual(outcome.status, STATUS_EXECUTED)
        self.assertTrue(any("balance_unavailable" in line for line in logs.output))


if __name__ == "__main__":
    unittest.main()
