from __future__ import annotations

from dataclasses import replace
from pathlib import Path
import sys
from typing import Any

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from rho_bot.config import load_config  # noqa: E402
from rho_bot.models import (  # noqa: E402
    FutureInfo,
    FutureOpenPosition,
    Margin,
    MarginState,
    MarketDescriptor,
    MarketInfo,
    MarketPortfolio,
    OneSideQuote,
    ProfitAndLoss,
    RiskDirection,
    TradeInfo,
    TradeParams,
    TradeQuote,
    TradeReceipt,
    to_fixed,
)

MARKET_ID = "0x" + ("11" * 32)
FUTURE_ID = "0x" + ("22" * 32)
TOKEN = "0x" + ("33" * 20)
ROUTER = "0x" + ("44" * 20)
NOW = 1_700_000_000
YEAR = 365 * 24 * 60 * 60


def test_config(**kwargs):
    cfg = load_config()
    return replace(cfg, **kwargs)


def build_market(
    decimals: int = 6,
    rate: float = 0.05,
    future_id: str = FUTURE_ID,
    seconds_to_expiry: int = YEAR,
) -> MarketInfo:
    future = FutureInfo(
        id=future_id,
        market_id=MARKET_ID,
        term_start=NOW - 100,
        term_length=100 + seconds_to_expiry,
        current_future_rate=to_fixed(rate, 18),
    )
    descriptor = MarketDescriptor(
        id=MARKET_ID,
        source_name="Binance",
        instrument_name="BTCUSDT Funding",
        underlying=TOKEN,
        underlying_name="USDT",
        underlying_decimals=decimals,
    )
    return MarketInfo(descriptor=descriptor, futures=(future,))


def build_side_quote(
    direction: RiskDirection,
    trade_rate: int,
    notional: int = 0,
    margin: int = 0,
    threshold: int = 0,
) -> OneSideQuote:
    return OneSideQuote(
        trade_info=TradeInfo(
            notional=notional,
            direction=direction,
            market_rate=trade_rate,
            trade_rate=trade_rate,
        ),
        new_margin=Margin(collateral=margin),
        new_margin_threshold=threshold,
    )


def build_quote(
    notional: int,
    trade_rate: int = to_fixed(0.05, 18),
    deposit: int = 0,
    **flags: bool,
) -> TradeQuote:
    return TradeQuote(
        notional=notional,
        payer_quote=build_side_quote(RiskDirection.PAYER, trade_rate, notional, threshold=deposit),
        receiver_quote=build_side_quote(RiskDirection.RECEIVER, trade_rate, notional, threshold=deposit),
        **flags,
    )


def build_portfolio(
    market: MarketInfo,
    dv01: float = 0.0,
    float_amount: int = 0,
    collateral: float = 0.0,
    net_future_value: float = 0.0,
) -> MarketPortfolio:
    future = market.futures[0]
    positions: tuple[FutureOpenPosition, ...] = ()
    if dv01 or float_amount:
        positions = (
            FutureOpenPosition(
                future_id=future.id,
                fixed_token_amount=-float_amount,
                float_token_amount=float_amount,
                notional=abs(float_amount),
                dv01=to_fixed(dv01, market.decimals),
            ),
        )
    margin = Margin(
        collateral=to_fixed(collateral, market.decimals),
        profit_and_loss=ProfitAndLoss(net_future_value=to_fixed(net_future_value, market.decimals)),
    )
    return MarketPortfolio(
        market_id=market.id,
        margin_state=MarginState(margin=margin),
        open_positions=positions,
        futures=market.futures,
    )


def build_params(
    direction: RiskDirection = RiskDirection.PAYER,
    notional: int = 1_000_000,
    deposit: int = 0,
) -> TradeParams:
    return TradeParams(
        market_id=MARKET_ID,
        future_id=FUTURE_ID,
        direction=direction,
        notional=notional,
        future_rate_limit=to_fixed(0.051, 18),
        deposit_amount=deposit,
        deadline=NOW + 180,
    )


class FakeTimer:
    def __init__(self, interval: float, function: Any, args: tuple[Any, ...] = ()) -> None:
        self.interval = interval
        self.function = function
        self.args = args
        self.daemon = False
        self.started = False
        self.cancelled = False

    def start(self) -> None:
        self.started = True

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        self.function(*self.args)


class FakeTimerFactory:
    def __init__(self) -> None:
        self.timers: list[FakeTimer] = []

    def __call__(self, interval: float, function: Any, args: tuple[Any, ...] = ()) -> FakeTimer:
        timer = FakeTimer(interval, function, args)
        self.timers.append(timer)
        return timer

    def live(self) -> list[FakeTimer]:
        return [timer for timer in self.timers if timer.started and not timer.cancelled]


class FakeVenue:
    """In-memory venue: records every call, scripted quotes and receipts."""

    router_address = ROUTER
    address = "0x" + ("aa" * 20)

    def __init__(
        self,
        portfolio: MarketPortfolio | None = None,
        balance: int | None = None,
        allowance: int = 10**30,
        gas_estimate: int = 200_000,
        gas_price_wei: int = 10**9,
    ) -> None:
        self.portfolio = portfolio
        self.balance = balance
        self.allowance = allowance
        self.gas_estimate = gas_estimate
        self.gas_price_wei = gas_price_wei
        self.quote_for: Any = lambda notional: build_quote(notional)
        self.submit_errors: list[Exception | None] = []
        self.receipt_status: dict[str, int] = {}
        self.approve_error: Exception | None = None
        self.calls: list[tuple[str, Any]] = []
        self.quoted: list[int] = []
        self.submitted: list[TradeParams] = []
        self._tx_count = 0
        self.markets: list[MarketInfo] = []

    def list_active_markets(self) -> list[MarketInfo]:
        self.calls.append(("list_active_markets", None))
        return list(self.markets)

    def get_portfolio(self, market: MarketInfo) -> MarketPortfolio:
        self.calls.append(("get_portfolio", market.id))
        if self.portfolio is None:
            return build_portfolio(market)
        return self.portfolio

    def get_balance(self, token: str) -> int:
        self.calls.append(("get_balance", token))
        if self.balance is None:
            raise RuntimeError("balance unavailable")
        return self.balance

    def get_quote(self, market: MarketInfo, future: FutureInfo, notional: int) -> TradeQuote:
        self.calls.append(("get_quote", notional))
        self.quoted.append(notional)
        return self.quote_for(notional)

    def get_allowance(self, token: str, spender: str) -> int:
        self.calls.append(("get_allowance", spender))
        return self.allowance

    def _next_hash(self) -> str:
        self._tx_count += 1
        return "0x" + f"{self._tx_count:064x}"

    def approve(self, token: str, spender: str, amount: int) -> str:
        self.calls.append(("approve", amount))
        if self.approve_error is not None:
            raise self.approve_error
        return self._next_hash()

    def wait_for_receipt(self, tx_hash: str) -> TradeReceipt:
        self.calls.append(("wait_for_receipt", tx_hash))
        return TradeReceipt(tx_hash=tx_hash, status=self.receipt_status.get(tx_hash, 1), block_number=1)

    def estimate_trade_gas(self, params: TradeParams) -> int:
        self.calls.append(("estimate_trade_gas", params.future_id))
        return self.gas_estimate

    def gas_price(self) -> int:
        return self.gas_price_wei

    def submit_trade(self, params: TradeParams, *, gas_limit: int | None, gas_price: int | None) -> str:
        self.calls.append(("submit_trade", gas_limit))
        self.submitted.append(params)
        if self.submit_errors:
            error = self.submit_errors.pop(0)
            if error is not None:
                raise error
        return self._next_hash()

    def call_names(self) -> list[str]:
        return [name for name, _ in self.calls]


class FakeOracle:
    def __init__(self, avg_rate: float = 0.05) -> None:
        self.avg_rate = avg_rate
        self.requests: list[tuple[str, str]] = []

    def get_average_rate(self, market_id: str, future_id: str) -> int:
        self.requests.append((market_id, future_id))
        return to_fixed(self.avg_rate, 18)


class StubRandom:
    """Deterministic stand-in for random.Random with scripted draws."""

    def __init__(self, draws: list[float] | None = None, uniform_value: float | None = None) -> None:
        self.draws = list(draws or [0.5])
        self.uniform_value = uniform_value
        self.randint_calls: list[tuple[int, int]] = []

    def random(self) -> float:
        return self.draws.pop(0) if len(self.draws) > 1 else self.draws[0]

    def uniform(self, low: float, high: float) -> float:
        return low if self.uniform_value is None else self.uniform_value

    def randint(self, low: int, high: int) -> int:
        self.randint_calls.append((low, high))
        return high
