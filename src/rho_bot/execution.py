from __future__ import annotations

from dataclasses import dataclass
import logging
import time
from typing import Callable, Protocol

from rho_bot.config import BotConfig
from rho_bot.metrics import TradeMetrics
from rho_bot.models import MarketInfo, TradeParams, TradeReceipt
from rho_bot.risk import PolicyAbort

LOGGER = logging.getLogger("rho_bot")

GWEI = 10**9


class ApprovalFailed(RuntimeError):
    pass


class GasLimitExceeded(PolicyAbort):
    pass


class GasPriceTooHigh(PolicyAbort):
    pass


class TradeVenue(Protocol):
    @property
    def router_address(self) -> str: ...

    def get_allowance(self, token: str, spender: str) -> int: ...

    def approve(self, token: str, spender: str, amount: int) -> str: ...

    def wait_for_receipt(self, tx_hash: str) -> TradeReceipt: ...

    def estimate_trade_gas(self, params: TradeParams) -> int: ...

    def gas_price(self) -> int: ...

    def submit_trade(self, params: TradeParams, *, gas_limit: int | None, gas_price: int | None) -> str: ...


@dataclass(frozen=True)
class TxOptions:
    gas_limit: int
    gas_price: int


class ExecutionPipeline:
    def __init__(
        self,
        venue: TradeVenue,
        config: BotConfig,
        metrics: TradeMetrics,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.venue = venue
        self.config = config
        self.metrics = metrics
        self.sleep = sleep

    def approval_amount(self, market: MarketInfo) -> int:
        return int(self.config.approval_amount) * 10**market.decimals

    def ensure_allowance(self, market: MarketInfo, params: TradeParams) -> TradeReceipt | None:
        if params.deposit_amount <= 0:
            return None
        token = market.descriptor.underlying
        spender = self.venue.router_address
        allowance = self.venue.get_allowance(token, spender)
        if allowance >= params.deposit_amount:
            return None

        amount = max(self.approval_amount(market), params.deposit_amount)
        LOGGER.info(
            "allowance_increase token=%s allowance=%s deposit=%s approve=%s",
            market.descriptor.underlying_name or token,
            allowance,
            params.deposit_amount,
            amount,
        )
        try:
            tx_hash = self.venue.approve(token, spender, amount)
            receipt = self.venue.wait_for_receipt(tx_hash)
        except Exception as exc:
            raise ApprovalFailed(f"approval of {token} failed: {exc}") from exc
        if not receipt.success:
            raise ApprovalFailed(f"approval transaction {receipt.tx_hash} reverted")
        LOGGER.info("allowance_approved hash=%s", receipt.tx_hash)
        return receipt

    def gas_options(self, params: TradeParams) -> TxOptions:
        gas_price = self.venue.gas_price()
        max_price_gwei = self.config.max_gas_price_gwei
        if max_price_gwei > 0 and gas_price > int(max_price_gwei * GWEI):
            raise GasPriceTooHigh(
                f"gas price {gas_price / GWEI:.3f} gwei above max {max_price_gwei} gwei"
            )

        estimate = int(self.venue.estimate_trade_gas(params))
        padded = estimate + (estimate * int(round(self.config.gas_margin_pct * 100))) // 10_000
        if self.config.max_gas_limit > 0 and padded > self.config.max_gas_limit:
            raise GasLimitExceeded(f"gas limit {padded} above max {self.config.max_gas_limit}")
        return TxOptions(gas_limit=padded, gas_price=gas_price)

    def submit(self, params: TradeParams, options: TxOptions) -> TradeReceipt | None:
        attempts = max(1, int(self.config.trade_retry_attempts))
        for attempt in range(1, attempts + 1):
            try:
                tx_hash = self.venue.submit_trade(
                    params, gas_limit=options.gas_limit, gas_price=options.gas_price
                )
                receipt = self.venue.wait_for_receipt(tx_hash)
                if receipt.success:
                    return receipt
                LOGGER.warning(
                    "trade_reverted future=%s attempt=%s/%s hash=%s",
                    params.future_id,
                    attempt,
                    attempts,
                    receipt.tx_hash,
                )
            except Exception as exc:
                LOGGER.warning(
                    "trade_submit_failed future=%s attempt=%s/%s error=%s",
                    params.future_id,
                    attempt,
                    attempts,
                    exc,
                )
            if attempt < attempts:
                self.sleep(self.config.trade_retry_delay_seconds)
        LOGGER.error(
            "trade_retries_exhausted future=%s attempts=%s deadline=%s",
            params.future_id,
            attempts,
            params.deadline,
        )
        return None

    def execute(self, market: MarketInfo, params: TradeParams) -> TradeReceipt | None:
        self.ensure_allowance(market, params)
        options = self.gas_options(params)
        receipt = self.submit(params, options)
        if receipt is not None:
            self.metrics.increase_trades_counter()
        return receipt
