from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
import time
from typing import Any


RATE_DECIMALS = 18


class RiskDirection(int, Enum):
    RECEIVER = 0
    PAYER = 1

    @property
    def label(self) -> str:
        return "Receiver" if self == RiskDirection.RECEIVER else "Payer"


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def to_fixed(value: float | int | str | Decimal, decimals: int) -> int:
    return int(Decimal(str(value)) * (Decimal(10) ** int(decimals)))


def from_fixed(raw: int, decimals: int) -> float:
    return float(Decimal(int(raw)) / (Decimal(10) ** int(decimals)))


def parse_int(raw: Any, default: int = 0) -> int:
    if raw is None:
        return default
    if isinstance(raw, bool):
        return int(raw)
    if isinstance(raw, int):
        return raw
    if isinstance(raw, str):
        stripped = raw.strip()
        if not stripped:
            return default
        try:
            return int(stripped, 16) if stripped.startswith("0x") else int(stripped)
        except ValueError:
            return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        return default


def to_hex_id(raw: Any) -> str:
    if isinstance(raw, (bytes, bytearray)):
        return "0x" + bytes(raw).hex()
    if hasattr(raw, "hex") and not isinstance(raw, str):
        text = str(raw.hex())
        return text if text.startswith("0x") else "0x" + text
    text = str(raw).strip().lower()
    return text if text.startswith("0x") else "0x" + text


@dataclass(frozen=True)
class MarketDescriptor:
    id: str
    source_name: str
    instrument_name: str
    underlying: str
    underlying_name: str
    underlying_decimals: int

    @property
    def display_name(self) -> str:
        return f"{self.source_name} {self.instrument_name}".strip()


@dataclass(frozen=True)
class FutureInfo:
    id: str
    market_id: str
    term_start: int
    term_length: int
    current_future_rate: int = 0

    @property
    def term_end(self) -> int:
        return self.term_start + self.term_length

    def seconds_to_expiry(self, now: float | None = None) -> int:
        current = time.time() if now is None else now
        return self.term_end - int(round(current))


@dataclass(frozen=True)
class MarketInfo:
    descriptor: MarketDescriptor
    futures: tuple[FutureInfo, ...] = ()

    @property
    def id(self) -> str:
        return self.descriptor.id

    @property
    def decimals(self) -> int:
        return self.descriptor.underlying_decimals


@dataclass(frozen=True)
class ProfitAndLoss:
    net_future_value: int = 0
    accrued_lp_fee: int = 0
    incurred_fee: int = 0

    @property
    def net(self) -> int:
        return self.net_future_value + self.accrued_lp_fee - self.incurred_fee


@dataclass(frozen=True)
class Margin:
    collateral: int = 0
    profit_and_loss: ProfitAndLoss = field(default_factory=ProfitAndLoss)


def margin_total(margin: Margin) -> int:
    return margin.collateral + margin.profit_and_loss.net


@dataclass(frozen=True)
class MarginState:
    margin: Margin = field(default_factory=Margin)
    initial_margin_threshold: int = 0
    liquidation_margin_threshold: int = 0
    dv01: int = 0
    risk_direction: RiskDirection | None = None


@dataclass(frozen=True)
class FutureOpenPosition:
    future_id: str
    fixed_token_amount: int
    float_token_amount: int
    notional: int
    dv01: int

    @property
    def direction(self) -> RiskDirection | None:
        # Receivers pay float, so they carry a short float-token balance.
        if self.float_token_amount < 0:
            return RiskDirection.RECEIVER
        if self.float_token_amount > 0:
            return RiskDirection.PAYER
        return None


@dataclass(frozen=True)
class MarketPortfolio:
    market_id: str
    margin_state: MarginState
    open_positions: tuple[FutureOpenPosition, ...] = ()
    futures: tuple[FutureInfo, ...] = ()

    def positions_for(self, future_id: str) -> list[FutureOpenPosition]:
        wanted = future_id.lower()
        return [pos for pos in self.open_positions if pos.future_id.lower() == wanted]

    def future(self, future_id: str) -> FutureInfo | None:
        wanted = future_id.lower()
        for item in self.futures:
            if item.id.lower() == wanted:
                return item
        return None

    def margin_total(self) -> int:
        return margin_total(self.margin_state.margin)


@dataclass(frozen=True)
class TradeInfo:
    notional: int
    direction: RiskDirection
    market_rate: int
    trade_rate: int
    lp_fee: int = 0
    protocol_fee: int = 0


@dataclass(frozen=True)
class OneSideQuote:
    trade_info: TradeInfo
    new_margin: Margin
    new_margin_threshold: int

    def required_deposit(self) -> int:
        return max(self.new_margin_threshold - margin_total(self.new_margin), 0)


@dataclass(frozen=True)
class TradeQuote:
    notional: int
    payer_quote: OneSideQuote
    receiver_quote: OneSideQuote
    exceeded_trade_rate_impact_limit_for_payer: bool = False
    exceeded_trade_rate_impact_limit_for_receiver: bool = False
    exceeded_trade_notional_limit_for_payer: bool = False
    exceeded_trade_notional_limit_for_receiver: bool = False
    exceeded_market_rate_impact_limit_for_payer: bool = False
    exceeded_market_rate_impact_limit_for_receiver: bool = False

    def exceeded_limits(self) -> list[str]:
        flags = (
            "exceeded_trade_rate_impact_limit_for_payer",
            "exceeded_trade_rate_impact_limit_for_receiver",
            "exceeded_trade_notional_limit_for_payer",
            "exceeded_trade_notional_limit_for_receiver",
            "exceeded_market_rate_impact_limit_for_payer",
            "exceeded_market_rate_impact_limit_for_receiver",
        )
        return [name for name in flags if getattr(self, name)]

    def side(self, direction: RiskDirection) -> OneSideQuote:
        if direction == RiskDirection.RECEIVER:
            return self.receiver_quote
        return self.payer_quote

    def max_required_deposit(self) -> int:
        return max(self.payer_quote.required_deposit(), self.receiver_quote.required_deposit())


@dataclass(frozen=True)
class RiskState:
    dv01: float
    market_rate: float
    avg_rate: float
    direction: RiskDirection | None

    @property
    def fresh_market(self) -> bool:
        return self.market_rate == 0 and self.dv01 == 0 and self.avg_rate == 0


@dataclass(frozen=True)
class TradeParams:
    market_id: str
    future_id: str
    direction: RiskDirection
    notional: int
    future_rate_limit: int
    deposit_amount: int
    deadline: int


@dataclass
class TradeReceipt:
    tx_hash: str
    status: int
    block_number: int = 0
    gas_used: int = 0
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.status == 1
