from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
import logging
import random
from typing import Protocol

from rho_bot.models import FutureInfo, MarketInfo, TradeQuote, from_fixed
from rho_bot.risk import PolicyAbort

LOGGER = logging.getLogger("rho_bot")

SHRINK_PCT = 30


class SizingExhausted(PolicyAbort):
    pass


class QuoteSource(Protocol):
    def get_quote(self, market: MarketInfo, future: FutureInfo, notional: int) -> TradeQuote: ...


def initial_trade_size(max_trade_size: float, rng: random.Random) -> Decimal:
    """Random size on the grid [max/10, max] with step min(100, max/100)."""
    end = Decimal(str(max_trade_size))
    start = end / 10
    step = min(Decimal(100), end / 100)
    if step <= 0:
        return end
    steps = int((end - start) / step)
    return start + step * rng.randint(0, steps)


def shrink(notional: int) -> int:
    return notional - (notional * SHRINK_PCT) // 100


@dataclass
class SizingResult:
    notional: int
    quote: TradeQuote
    iterations: int
    fitted: bool


class QuoteFitter:
    def __init__(
        self,
        venue: QuoteSource,
        max_iterations: int = 10,
        exhausted_policy: str = "proceed",
    ) -> None:
        self.venue = venue
        self.max_iterations = max(1, int(max_iterations))
        self.exhausted_policy = exhausted_policy

    def _rejection_reasons(self, quote: TradeQuote, balance: int | None) -> list[str]:
        reasons = quote.exceeded_limits()
        if balance is not None:
            deposit = quote.max_required_deposit()
            if deposit > balance:
                reasons.append(f"deposit {deposit} exceeds balance {balance}")
        return reasons

    def fit(
        self,
        market: MarketInfo,
        future: FutureInfo,
        notional: int,
        balance: int | None = None,
    ) -> SizingResult:
        candidate = int(notional)
        quote: TradeQuote | None = None
        quoted_notional = candidate
        for attempt in range(1, self.max_iterations + 1):
            quote = self.venue.get_quote(market, future, candidate)
            quoted_notional = candidate
            reasons = self._rejection_reasons(quote, balance)
            if not reasons:
                LOGGER.info(
                    "quote_fit_ok future=%s notional=%s attempts=%s",
                    future.id,
                    from_fixed(candidate, market.decimals),
                    attempt,
                )
                return SizingResult(notional=candidate, quote=quote, iterations=attempt, fitted=True)
            LOGGER.info(
                "quote_fit_rejected future=%s notional=%s reasons=%s; reducing by %s%%",
                future.id,
                from_fixed(candidate, market.decimals),
                ",".join(reasons),
                SHRINK_PCT,
            )
            candidate = shrink(candidate)

        if quote is None:
            raise RuntimeError(f"no quote requested for future {future.id}")
        if self.exhausted_policy == "abort":
            raise SizingExhausted(
                f"no notional cleared venue limits after {self.max_iterations} quotes for future {future.id}"
            )
        LOGGER.warning(
            "quote_fit_exhausted future=%s attempts=%s proceeding with notional=%s",
            future.id,
            self.max_iterations,
            from_fixed(quoted_notional, market.decimals),
        )
        return SizingResult(notional=quoted_notional, quote=quote, iterations=self.max_iterations, fitted=False)
