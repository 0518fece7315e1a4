from __future__ import annotations

from dataclasses import dataclass
import logging
import random
import time
from typing import Callable

from rho_bot.config import BotConfig
from rho_bot.decision import DirectionModel, build_risk_state
from rho_bot.execution import ExecutionPipeline
from rho_bot.metrics import TradeMetrics
from rho_bot.models import (
    RATE_DECIMALS,
    FutureInfo,
    MarketInfo,
    MarketPortfolio,
    RiskDirection,
    TradeParams,
    TradeReceipt,
    from_fixed,
    to_fixed,
)
from rho_bot.oracle import OracleClient
from rho_bot.risk import MarginGuard, PolicyAbort
from rho_bot.sizing import QuoteFitter, SizingResult, initial_trade_size
from rho_bot.venue import VenueClient

LOGGER = logging.getLogger("rho_bot")

STATUS_EXECUTED = "executed"
STATUS_NO_DIRECTION = "no_direction"
STATUS_MARGIN_BLOCKED = "margin_blocked"
STATUS_RETRIES_EXHAUSTED = "retries_exhausted"


class InstrumentInactive(PolicyAbort):
    pass


@dataclass
class CycleOutcome:
    status: str
    future_id: str
    direction: RiskDirection | None = None
    params: TradeParams | None = None
    receipt: TradeReceipt | None = None
    reason: str = ""

    @property
    def executed(self) -> bool:
        return self.status == STATUS_EXECUTED


class TradingStrategy:
    def __init__(
        self,
        config: BotConfig,
        venue: VenueClient,
        oracle: OracleClient,
        metrics: TradeMetrics,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.venue = venue
        self.oracle = oracle
        self.rng = rng or random.Random()
        self.clock = clock
        self.fitter = QuoteFitter(
            venue,
            max_iterations=config.sizing_max_iterations,
            exhausted_policy=config.sizing_exhausted_policy,
        )
        self.model = DirectionModel(config, self.rng)
        self.margin_guard = MarginGuard(config.max_margin_in_use)
        self.pipeline = ExecutionPipeline(venue, config, metrics, sleep=sleep)

    def _spendable_balance(self, market: MarketInfo) -> int | None:
        try:
            return int(self.venue.get_balance(market.descriptor.underlying))
        except Exception as exc:
            LOGGER.warning("balance_unavailable market=%s error=%s", market.id, exc)
            return None

    def build_trade_params(
        self,
        market: MarketInfo,
        future: FutureInfo,
        direction: RiskDirection,
        sizing: SizingResult,
        now: float,
    ) -> TradeParams:
        side = sizing.quote.side(direction)
        slippage = to_fixed(self.config.rate_limit_slippage, RATE_DECIMALS)
        sign = -1 if direction == RiskDirection.RECEIVER else 1
        return TradeParams(
            market_id=market.id,
            future_id=future.id,
            direction=direction,
            notional=sizing.notional,
            future_rate_limit=side.trade_info.trade_rate + sign * slippage,
            deposit_amount=side.required_deposit(),
            deadline=int(now) + int(self.config.deadline_seconds),
        )

    def current_future(self, market: MarketInfo, future_id: str, portfolio: MarketPortfolio) -> FutureInfo:
        """Venue's current view of the future; the scheduled snapshot is never reused."""
        fresh = portfolio.future(future_id)
        if fresh is not None:
            return fresh
        LOGGER.info("future_missing_from_portfolio future=%s; re-reading active markets", future_id)
        wanted = future_id.lower()
        for active in self.venue.list_active_markets():
            if active.id.lower() != market.id.lower():
                continue
            for item in active.futures:
                if item.id.lower() == wanted:
                    return item
        raise InstrumentInactive(f"future {future_id} is no longer active on market {market.id}")

    def initiate_trade(self, market: MarketInfo, future: FutureInfo) -> CycleOutcome:
        portfolio = self.venue.get_portfolio(market)
        future = self.current_future(market, future.id, portfolio)
        balance = self._spendable_balance(market)

        size = initial_trade_size(self.config.max_trade_size, self.rng)
        sizing = self.fitter.fit(market, future, to_fixed(size, market.decimals), balance)

        avg_rate = self.oracle.get_average_rate(market.id, future.id)
        state = build_risk_state(market, future, portfolio, avg_rate)
        now = self.clock()
        direction = self.model.decide(future, state, now)
        if direction is None:
            LOGGER.warning("trade_skipped future=%s reason=no direction", future.id)
            return CycleOutcome(status=STATUS_NO_DIRECTION, future_id=future.id, reason="no direction")

        margin_decision = self.margin_guard.check(market, portfolio)
        if not margin_decision.allowed:
            LOGGER.warning("trade_skipped future=%s reason=%s", future.id, margin_decision.reason)
            return CycleOutcome(
                status=STATUS_MARGIN_BLOCKED,
                future_id=future.id,
                direction=direction,
                reason=margin_decision.reason,
            )

        params = self.build_trade_params(market, future, direction, sizing, now)
        LOGGER.info(
            "trade_attempt market=%s future=%s direction=%s notional=%s rate_limit=%s deposit=%s deadline=%s",
            market.descriptor.display_name or market.id,
            params.future_id,
            params.direction.label,
            from_fixed(params.notional, market.decimals),
            from_fixed(params.future_rate_limit, RATE_DECIMALS),
            from_fixed(params.deposit_amount, market.decimals),
            params.deadline,
        )
        receipt = self.pipeline.execute(market, params)
        if receipt is None:
            return CycleOutcome(
                status=STATUS_RETRIES_EXHAUSTED,
                future_id=future.id,
                direction=direction,
                params=params,
                reason="retries exhausted",
            )
        LOGGER.info("trade_ok future=%s hash=%s", future.id, receipt.tx_hash)
        return CycleOutcome(
            status=STATUS_EXECUTED,
            future_id=future.id,
            direction=direction,
            params=params,
            receipt=receipt,
        )
