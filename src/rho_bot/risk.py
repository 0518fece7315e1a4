from __future__ import annotations

from dataclasses import dataclass

from rho_bot.models import MarketInfo, MarketPortfolio, from_fixed, to_fixed


class PolicyAbort(RuntimeError):
    """A deliberate refusal to trade this cycle; the next firing tries again."""


@dataclass
class RiskDecision:
    allowed: bool
    reason: str = ""


class MarginGuard:
    def __init__(self, max_margin_in_use: float) -> None:
        self.max_margin_in_use = max(0.0, float(max_margin_in_use))

    @property
    def enabled(self) -> bool:
        return self.max_margin_in_use > 0

    def ceiling(self, market: MarketInfo) -> int:
        return to_fixed(self.max_margin_in_use, market.decimals)

    def check(self, market: MarketInfo, portfolio: MarketPortfolio) -> RiskDecision:
        if not self.enabled:
            return RiskDecision(True, "")
        current = portfolio.margin_total()
        if current > self.ceiling(market):
            return RiskDecision(
                False,
                f"current margin {from_fixed(current, market.decimals)} exceeds "
                f"max margin in use {self.max_margin_in_use}",
            )
        return RiskDecision(True, "")
