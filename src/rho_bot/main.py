from __future__ import annotations

import argparse
from dataclasses import dataclass
import json
import logging
import signal
import threading
from typing import Iterable

from web3 import Web3

from rho_bot.config import STRATEGY_TYPES, BotConfig, ConfigError, load_config, validate_config
from rho_bot.metrics import StatusServer, TradeMetrics
from rho_bot.models import RATE_DECIMALS, FutureInfo, MarketInfo, from_fixed
from rho_bot.oracle import OracleClient
from rho_bot.scheduler import InstrumentScheduler
from rho_bot.strategy import CycleOutcome, TradingStrategy
from rho_bot.venue import VenueClient, build_web3

LOGGER = logging.getLogger("rho_bot")

Instrument = tuple[MarketInfo, FutureInfo]


@dataclass
class AccountTrader:
    venue: VenueClient
    strategy: TradingStrategy
    scheduler: InstrumentScheduler

    @property
    def address(self) -> str:
        return self.venue.address


def select_instruments(
    markets: Iterable[MarketInfo],
    market_ids: tuple[str, ...],
    future_ids: tuple[str, ...],
) -> list[Instrument]:
    wanted_markets = {item.lower() for item in market_ids}
    wanted_futures = {item.lower() for item in future_ids}
    selected: list[Instrument] = []
    for market in markets:
        if wanted_markets and market.id.lower() not in wanted_markets:
            continue
        for future in market.futures:
            if wanted_futures and future.id.lower() not in wanted_futures:
                continue
            selected.append((market, future))
    return selected


class BotRuntime:
    def __init__(
        self,
        config: BotConfig,
        *,
        traders: list[AccountTrader] | None = None,
        metrics: TradeMetrics | None = None,
        oracle: OracleClient | None = None,
        w3: Web3 | None = None,
    ) -> None:
        self.config = config
        self.metrics = metrics or TradeMetrics()
        self.oracle = oracle or OracleClient(config.oracle_url, timeout_seconds=config.rpc_timeout_seconds)
        if traders is None:
            web3_client = w3 or build_web3(config)
            traders = [self._build_trader(key, web3_client) for key in config.private_keys]
        self.traders = traders
        self.status_server: StatusServer | None = None
        if config.port > 0:
            self.status_server = StatusServer(self.metrics, port=config.port)
        self._stop_event = threading.Event()

    def _build_trader(self, private_key: str, w3: Web3) -> AccountTrader:
        venue = VenueClient(self.config, w3, private_key, self.oracle)
        strategy = TradingStrategy(self.config, venue, self.oracle, self.metrics)
        scheduler = InstrumentScheduler(
            strategy.initiate_trade,
            self.config.effective_interval_seconds,
            name=venue.address,
        )
        LOGGER.info("Bot account address: %s", venue.address)
        return AccountTrader(venue=venue, strategy=strategy, scheduler=scheduler)

    def stop(self) -> None:
        self._stop_event.set()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def resolve_instruments(self) -> list[Instrument]:
        if not self.traders:
            return []
        markets = self.traders[0].venue.list_active_markets()
        return select_instruments(markets, self.config.market_ids, self.config.future_ids)

    def refresh(self) -> int:
        instruments = self.resolve_instruments()
        if not instruments:
            LOGGER.warning("instrument_refresh_empty; keeping %s tracked tasks", self._tracked_count())
            return 0
        active = {future.id for _, future in instruments}
        added = 0
        removed = 0
        for trader in self.traders:
            for future_id in trader.scheduler.tasks():
                if future_id not in active and trader.scheduler.cancel(future_id):
                    removed += 1
            for market, future in instruments:
                if trader.scheduler.is_tracked(future.id):
                    continue
                trader.scheduler.schedule(market, future)
                added += 1
        if added or removed:
            LOGGER.info("instruments_refreshed added=%s removed=%s", added, removed)
        return added

    def _tracked_count(self) -> int:
        return sum(len(trader.scheduler.tasks()) for trader in self.traders)

    def start(self) -> None:
        if not self.traders:
            raise ConfigError("No trading accounts configured")
        instruments = self.resolve_instruments()
        if not instruments:
            raise ConfigError("No tradable futures resolved from MARKET_IDS/FUTURE_IDS")
        LOGGER.info(
            "Init new trading tasks. accounts=%s futures=%s",
            len(self.traders),
            len(instruments),
        )
        for trader in self.traders:
            for market, future in instruments:
                trader.scheduler.schedule(market, future)
        if self.status_server is not None:
            self.status_server.start()

    def run(self) -> None:
        self.start()
        while not self._stop_event.wait(self.config.markets_refresh_interval_seconds):
            try:
                self.refresh()
            except Exception as exc:
                LOGGER.warning("instrument_refresh_failed error=%s", exc)

    def run_once(self) -> list[CycleOutcome]:
        instruments = self.resolve_instruments()
        if not instruments:
            raise ConfigError("No tradable futures resolved from MARKET_IDS/FUTURE_IDS")
        outcomes: list[CycleOutcome] = []
        for trader in self.traders:
            for market, future in instruments:
                try:
                    outcomes.append(trader.strategy.initiate_trade(market, future))
                except Exception as exc:
                    LOGGER.error("Trade failed! account=%s future=%s error=%s", trader.address, future.id, exc)
        return outcomes

    def close(self) -> None:
        for trader in self.traders:
            trader.scheduler.shutdown()
        if self.status_server is not None:
            self.status_server.stop()


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    for noisy in ("urllib3", "web3", "websockets"):
        logging.getLogger(noisy).setLevel(logging.ERROR)


def _load_checked_config() -> BotConfig:
    config = load_config()
    validate_config(config)
    if config.strategy not in STRATEGY_TYPES:
        LOGGER.warning(
            'Strategy from bot config not found: "%s". Using "default" strategy.',
            config.strategy,
        )
    return config


def _run_command(args: argparse.Namespace) -> int:
    try:
        config = _load_checked_config()
    except ConfigError as exc:
        _setup_logging("INFO")
        LOGGER.error("Invalid configuration: %s", exc)
        return 2
    _setup_logging(config.log_level)

    runtime = BotRuntime(config)
    if args.once:
        try:
            outcomes = runtime.run_once()
        except Exception as exc:
            LOGGER.error("Fatal runtime error: %s", exc)
            return 2
        finally:
            runtime.close()
        for outcome in outcomes:
            LOGGER.info("cycle_outcome future=%s status=%s", outcome.future_id, outcome.status)
        return 0

    signal_count = {"count": 0}

    def _handle_signal(signum: int, _frame: object) -> None:
        signal_count["count"] += 1
        if signal_count["count"] >= 2:
            LOGGER.error("Received signal %s again, forcing exit now", signum)
            raise SystemExit(130)
        LOGGER.warning(
            "Received signal %s, stopping scheduler (press Ctrl+C again to force-exit)",
            signum,
        )
        runtime.stop()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)
    try:
        runtime.run()
        return 0
    except Exception as exc:
        LOGGER.error("Fatal runtime error: %s", exc)
        return 2
    finally:
        runtime.close()


def _markets_command(args: argparse.Namespace) -> int:
    try:
        config = _load_checked_config()
    except ConfigError as exc:
        _setup_logging("INFO")
        LOGGER.error("Invalid configuration: %s", exc)
        return 2
    _setup_logging(config.log_level)
    runtime = BotRuntime(config)
    try:
        markets = runtime.traders[0].venue.list_active_markets()
    except Exception as exc:
        LOGGER.error("markets failed: %s", exc)
        return 2
    finally:
        runtime.close()

    selected = {future.id for _, future in select_instruments(markets, config.market_ids, config.future_ids)}
    report = [
        {
            "market_id": market.id,
            "name": market.descriptor.display_name,
            "underlying": market.descriptor.underlying_name,
            "futures": [
                {
                    "future_id": future.id,
                    "term_end": future.term_end,
                    "seconds_to_expiry": future.seconds_to_expiry(),
                    "rate": from_fixed(future.current_future_rate, RATE_DECIMALS),
                    "selected": future.id in selected,
                }
                for future in market.futures
                if args.all or future.id in selected
            ],
        }
        for market in markets
    ]
    print(json.dumps(report, indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="rho_bot", description="Interest-rate futures trading bot")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run the per-future trading scheduler")
    run.add_argument(
        "--once",
        action="store_true",
        help="Run a single trade cycle per configured future and exit",
    )
    run.set_defaults(func=_run_command)

    markets = sub.add_parser("markets", help="Print active markets and futures as JSON")
    markets.add_argument("--all", action="store_true", help="Include futures not selected by config")
    markets.set_defaults(func=_markets_command)
    return parser


def cli(argv: Iterable[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    return int(args.func(args))


def main() -> None:
    raise SystemExit(cli())


if __name__ == "__main__":
    main()
