from __future__ import annotations

from dataclasses import dataclass
import os


NETWORK_TYPES = ("testnet", "mainnet")
STRATEGY_TYPES = ("default", "base")
SIZING_EXHAUSTED_POLICIES = ("proceed", "abort")


class ConfigError(ValueError):
    pass


def _parse_list(raw: str) -> tuple[str, ...]:
    out: list[str] = []
    for item in raw.split(","):
        value = item.strip().lower()
        if value and value not in out:
            out.append(value)
    return tuple(out)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from exc


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from exc


@dataclass(frozen=True)
class BotConfig:
    strategy: str
    network_type: str
    rpc_url: str
    oracle_url: str
    chain_id: int
    view_contract_address: str
    router_contract_address: str
    quoter_contract_address: str
    private_keys: tuple[str, ...]

    market_ids: tuple[str, ...]
    future_ids: tuple[str, ...]

    avg_interval_seconds: float
    min_interval_seconds: float
    markets_refresh_interval_seconds: float

    max_risk: float
    risk_level: float
    max_trade_size: float
    max_margin_in_use: float
    x_factor: float
    y_factor: float
    z_factor: float
    p1: float
    p2: float

    sizing_max_iterations: int
    sizing_exhausted_policy: str

    approval_amount: int
    deadline_seconds: int
    rate_limit_slippage: float
    gas_margin_pct: float
    max_gas_limit: int
    max_gas_price_gwei: float
    trade_retry_attempts: int
    trade_retry_delay_seconds: float

    rpc_timeout_seconds: float
    tx_receipt_timeout_seconds: float

    port: int
    log_level: str

    @property
    def testnet(self) -> bool:
        return self.network_type == "testnet"

    @property
    def effective_interval_seconds(self) -> float:
        return max(self.min_interval_seconds, self.avg_interval_seconds)


def load_config() -> BotConfig:
    network_type = os.getenv("NETWORK_TYPE", "testnet").strip().lower()
    # Testnet estimates are looser, so they get a smaller pad on top.
    default_gas_margin = 5.0 if network_type == "testnet" else 10.0
    raw_keys = os.getenv("PRIVATE_KEY", "")
    private_keys: list[str] = []
    for item in raw_keys.split(","):
        key = item.strip()
        if key and key not in private_keys:
            private_keys.append(key)

    return BotConfig(
        strategy=os.getenv("STRATEGY_TYPE", "default").strip().lower(),
        network_type=network_type,
        rpc_url=os.getenv("RPC_URL", "").strip(),
        oracle_url=os.getenv("ORACLE_URL", "").strip().rstrip("/"),
        chain_id=_env_int("CHAIN_ID", 0),
        view_contract_address=os.getenv("VIEW_CONTRACT_ADDRESS", "").strip(),
        router_contract_address=os.getenv("ROUTER_CONTRACT_ADDRESS", "").strip(),
        quoter_contract_address=os.getenv("QUOTER_CONTRACT_ADDRESS", "").strip(),
        private_keys=tuple(private_keys),
        market_ids=_parse_list(os.getenv("MARKET_IDS", "")),
        future_ids=_parse_list(os.getenv("FUTURE_IDS", "")),
        avg_interval_seconds=_env_float("TRADE_AVERAGE_INTERVAL", 3000.0),
        min_interval_seconds=_env_float("TRADE_MIN_INTERVAL", 60.0),
        markets_refresh_interval_seconds=_env_float("MARKETS_REFRESH_INTERVAL", 1800.0),
        max_risk=_env_float("TRADE_MAX_RISK", 10000.0),
        risk_level=_env_float("TRADE_RISK_LEVEL", 1000.0),
        max_trade_size=_env_float("TRADE_MAX_SIZE", 1000.0),
        max_margin_in_use=_env_float("TRADE_MAX_MARGIN_IN_USE", 0.0),
        # Factors are configured in basis points.
        x_factor=_env_float("TRADE_X_FACTOR", 5.0) / 10_000,
        y_factor=_env_float("TRADE_Y_FACTOR", 15.0) / 10_000,
        z_factor=_env_float("TRADE_Z_FACTOR", 10.0) / 10_000,
        p1=_env_float("TRADE_PX_1", 0.6),
        p2=_env_float("TRADE_PX_2", 0.75),
        sizing_max_iterations=max(1, _env_int("SIZING_MAX_ITERATIONS", 10)),
        sizing_exhausted_policy=os.getenv("SIZING_EXHAUSTED_POLICY", "proceed").strip().lower(),
        approval_amount=_env_int("APPROVAL_AMOUNT", 1_000_000),
        deadline_seconds=_env_int("TRADE_DEADLINE_SECONDS", 180),
        rate_limit_slippage=_env_float("TRADE_RATE_LIMIT_SLIPPAGE", 0.001),
        gas_margin_pct=_env_float("GAS_MARGIN_PCT", default_gas_margin),
        max_gas_limit=_env_int("MAX_GAS_LIMIT", 0),
        max_gas_price_gwei=_env_float("MAX_GAS_PRICE_GWEI", 0.0),
        trade_retry_attempts=max(1, _env_int("TRADE_RETRY_ATTEMPTS", 3)),
        trade_retry_delay_seconds=_env_float("TRADE_RETRY_DELAY_SECONDS", 5.0),
        rpc_timeout_seconds=_env_float("RPC_TIMEOUT_SECONDS", 30.0),
        tx_receipt_timeout_seconds=_env_float("TX_RECEIPT_TIMEOUT_SECONDS", 180.0),
        port=_env_int("PORT", 3000),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper(),
    )


def validate_config(config: BotConfig) -> None:
    if not config.private_keys:
        raise ConfigError("No private key provided, set PRIVATE_KEY")
    if not config.rpc_url:
        raise ConfigError("RPC_URL is required")
    if not config.oracle_url:
        raise ConfigError("ORACLE_URL is required")
    for name, value in (
        ("VIEW_CONTRACT_ADDRESS", config.view_contract_address),
        ("ROUTER_CONTRACT_ADDRESS", config.router_contract_address),
        ("QUOTER_CONTRACT_ADDRESS", config.quoter_contract_address),
    ):
        if not value:
            raise ConfigError(f"{name} is required")
    if config.network_type not in NETWORK_TYPES:
        raise ConfigError(f"unsupported NETWORK_TYPE={config.network_type!r}")
    if config.sizing_exhausted_policy not in SIZING_EXHAUSTED_POLICIES:
        raise ConfigError(f"unsupported SIZING_EXHAUSTED_POLICY={config.sizing_exhausted_policy!r}")
    for name, value in (("TRADE_PX_1", config.p1), ("TRADE_PX_2", config.p2)):
        if not 0.0 <= value <= 1.0:
            raise ConfigError(f"{name} must be within [0, 1], got {value}")
    if config.max_trade_size <= 0:
        raise ConfigError("TRADE_MAX_SIZE must be > 0")
    if config.risk_level > config.max_risk:
        raise ConfigError("TRADE_RISK_LEVEL must not exceed TRADE_MAX_RISK")
