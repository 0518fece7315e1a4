from __future__ import annotations

from dataclasses import dataclass
import logging
import random
import time
from typing import Callable

from rho_bot.config import BotConfig
from rho_bot.models import (
    RATE_DECIMALS,
    FutureInfo,
    MarketInfo,
    MarketPortfolio,
    RiskDirection,
    RiskState,
    from_fixed,
)

LOGGER = logging.getLogger("rho_bot")

SECONDS_PER_YEAR = 365 * 24 * 60 * 60
BASIS_POINT = 0.0001
DEFAULT_PROBABILITY = 0.5


def dv01_from_notional(notional: float, seconds_to_expiry: float) -> float:
    """DV01 of `notional` held until expiry: notional * years * 1bp."""
    years = max(0.0, float(seconds_to_expiry)) / SECONDS_PER_YEAR
    return float(notional) * years * BASIS_POINT


@dataclass(frozen=True)
class DecisionThresholds:
    risk_level: float
    max_risk: float
    x_factor: float
    y_factor: float
    z_factor: float
    p1: float
    p2: float

    @classmethod
    def for_expiry(cls, config: BotConfig, seconds_to_expiry: float) -> "DecisionThresholds":
        return cls(
            risk_level=dv01_from_notional(config.risk_level, seconds_to_expiry),
            max_risk=dv01_from_notional(config.max_risk, seconds_to_expiry),
            x_factor=config.x_factor,
            y_factor=config.y_factor,
            z_factor=config.z_factor,
            p1=config.p1,
            p2=config.p2,
        )


Predicate = Callable[[RiskState, DecisionThresholds], bool]


@dataclass(frozen=True)
class ProbabilityRule:
    name: str
    predicate: Predicate
    probability: Callable[[DecisionThresholds], float]


def _within_risk_level(s: RiskState, t: DecisionThresholds) -> bool:
    return s.dv01 <= t.risk_level


def _between_levels(s: RiskState, t: DecisionThresholds) -> bool:
    return t.risk_level < s.dv01 < t.max_risk


def _at_max_risk(s: RiskState, t: DecisionThresholds) -> bool:
    return s.dv01 >= t.max_risk


# Order matters: every matching rule overwrites the probability set by the ones before it.
RULES: tuple[ProbabilityRule, ...] = (
    ProbabilityRule(
        "low_risk_rate_above_avg",
        lambda s, t: _within_risk_level(s, t) and s.market_rate > (1 + t.x_factor) * s.avg_rate,
        lambda t: t.p1,
    ),
    ProbabilityRule(
        "low_risk_rate_below_avg",
        lambda s, t: _within_risk_level(s, t) and s.market_rate < (1 - t.x_factor) * s.avg_rate,
        lambda t: 1 - t.p1,
    ),
    ProbabilityRule(
        "receiver_rate_below_avg",
        lambda s, t: _between_levels(s, t)
        and s.direction == RiskDirection.RECEIVER
        and s.market_rate < (1 - t.y_factor) * s.avg_rate,
        lambda t: 1 - t.p2,
    ),
    ProbabilityRule(
        "receiver_rate_above_avg",
        lambda s, t: _between_levels(s, t)
        and s.direction == RiskDirection.RECEIVER
        and s.market_rate > (1 + t.z_factor) * s.avg_rate,
        lambda t: t.p1,
    ),
    ProbabilityRule(
        "payer_rate_above_avg",
        lambda s, t: _between_levels(s, t)
        and s.direction == RiskDirection.PAYER
        and s.market_rate > (1 + t.y_factor) * s.avg_rate,
        lambda t: t.p2,
    ),
    ProbabilityRule(
        "payer_rate_below_avg",
        lambda s, t: _between_levels(s, t)
        and s.direction == RiskDirection.PAYER
        and s.market_rate < (1 - t.z_factor) * s.avg_rate,
        lambda t: 1 - t.p1,
    ),
    ProbabilityRule(
        "receiver_max_risk",
        lambda s, t: _at_max_risk(s, t) and s.direction == RiskDirection.RECEIVER,
        lambda t: 0.0,
    ),
    ProbabilityRule(
        "payer_max_risk",
        lambda s, t: _at_max_risk(s, t) and s.direction == RiskDirection.PAYER,
        lambda t: 1.0,
    ),
    ProbabilityRule(
        "fresh_market",
        lambda s, t: s.fresh_market,
        lambda t: DEFAULT_PROBABILITY,
    ),
)


def receive_probability(
    state: RiskState,
    thresholds: DecisionThresholds,
    rules: tuple[ProbabilityRule, ...] = RULES,
) -> tuple[float, list[str]]:
    p_receive = DEFAULT_PROBABILITY
    fired: list[str] = []
    for rule in rules:
        if rule.predicate(state, thresholds):
            p_receive = rule.probability(thresholds)
            fired.append(rule.name)
    return p_receive, fired


def pay_probability(p_receive: float) -> float:
    if p_receive > 0:
        return 1 - p_receive
    return DEFAULT_PROBABILITY


def pick_direction(p_receive: float, p_pay: float, draw: float) -> RiskDirection | None:
    if p_receive == 0 and p_pay == 0:
        return None
    return RiskDirection.RECEIVER if draw < p_receive else RiskDirection.PAYER


def build_risk_state(
    market: MarketInfo,
    future: FutureInfo,
    portfolio: MarketPortfolio,
    avg_rate_raw: int,
) -> RiskState:
    positions = portfolio.positions_for(future.id)
    net_dv01 = abs(sum(pos.dv01 for pos in positions))
    net_float = sum(pos.float_token_amount for pos in positions)
    if net_float < 0:
        direction: RiskDirection | None = RiskDirection.RECEIVER
    elif net_float > 0:
        direction = RiskDirection.PAYER
    else:
        direction = None
    return RiskState(
        dv01=from_fixed(net_dv01, market.decimals),
        market_rate=from_fixed(future.current_future_rate, RATE_DECIMALS),
        avg_rate=from_fixed(avg_rate_raw, RATE_DECIMALS),
        direction=direction,
    )


class DirectionModel:
    def __init__(self, config: BotConfig, rng: random.Random | None = None) -> None:
        self.config = config
        self.rng = rng or random.Random()

    def thresholds(self, future: FutureInfo, now: float | None = None) -> DecisionThresholds:
        return DecisionThresholds.for_expiry(self.config, future.seconds_to_expiry(now))

    def decide(
        self,
        future: FutureInfo,
        state: RiskState,
        now: float | None = None,
    ) -> RiskDirection | None:
        current = time.time() if now is None else now
        thresholds = self.thresholds(future, current)
        LOGGER.info(
            "market_state future=%s dv01=%s risk_level=%s max_risk=%s avg_rate=%s market_rate=%s direction=%s",
            future.id,
            state.dv01,
            thresholds.risk_level,
            thresholds.max_risk,
            state.avg_rate,
            state.market_rate,
            state.direction.label if state.direction is not None else "none",
        )
        p_receive, fired = receive_probability(state, thresholds)
        p_pay = pay_probability(p_receive)
        LOGGER.info(
            "direction_probabilities future=%s p_receive=%s p_pay=%s rules=%s",
            future.id,
            p_receive,
            p_pay,
            ",".join(fired) or "none",
        )
        return pick_direction(p_receive, p_pay, self.rng.random())
