from __future__ import annotations

from contextlib import contextmanager
import logging
import threading
from typing import Any, Iterator

from eth_account import Account
from web3 import Web3

from rho_bot.config import BotConfig
from rho_bot.models import (
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
    to_hex_id,
)
from rho_bot.oracle import OracleClient, OraclePackage

LOGGER = logging.getLogger("rho_bot")


def _arg(name: str, abi_type: str) -> dict[str, Any]:
    return {"internalType": abi_type, "name": name, "type": abi_type}


def _struct(name: str, components: list[dict[str, Any]], array: bool = False) -> dict[str, Any]:
    abi_type = "tuple[]" if array else "tuple"
    return {"components": components, "internalType": f"struct {name}", "name": name, "type": abi_type}


_ORACLE_PACKAGE = [
    _arg("marketId", "bytes32"),
    _arg("timestamp", "uint64"),
    _arg("signature", "bytes"),
    _arg("indexValue", "uint256"),
]
_PROFIT_AND_LOSS = [
    _arg("netFutureValue", "int256"),
    _arg("accruedLPFee", "uint256"),
    _arg("incurredFee", "uint256"),
]
_MARGIN = [_arg("collateral", "int256"), _struct("profitAndLoss", _PROFIT_AND_LOSS)]
_TOKENS_PAIR = [_arg("fixedTokenAmount", "int256"), _arg("floatTokenAmount", "int256")]
_MARKET_DESCRIPTOR = [
    _arg("id", "bytes32"),
    _arg("sourceName", "string"),
    _arg("instrumentName", "string"),
    _arg("tag", "string"),
    _arg("version", "uint8"),
    _arg("underlying", "address"),
    _arg("underlyingName", "string"),
    _arg("underlyingDecimals", "uint8"),
    _arg("underlyingIsWrappedNativeToken", "bool"),
    _arg("rateMathType", "uint8"),
]
_VAMM_PARAMS = [
    _arg("lowerBoundRate", "int256"),
    _arg("currentFutureRate", "int256"),
    _arg("upperBoundRate", "int256"),
    _arg("intervalLength", "int256"),
    _arg("intervalsCount", "uint256"),
]
_FUTURE_INFO = [
    _arg("id", "bytes32"),
    _arg("marketId", "bytes32"),
    _arg("termStart", "uint64"),
    _arg("termLength", "uint64"),
    _struct("vAMMParams", _VAMM_PARAMS),
    _arg("totalLiquidityNotional", "uint256"),
    _arg("openInterest", "uint256"),
]
_MARKET_INFO = [
    _struct("descriptor", _MARKET_DESCRIPTOR),
    _struct("futures", _FUTURE_INFO, array=True),
    _arg("openInterest", "uint256"),
    _arg("totalLiquidityNotional", "uint256"),
]
_MARGIN_STATE = [
    _struct("margin", _MARGIN),
    _arg("initialMarginThreshold", "uint256"),
    _arg("liquidationMarginThreshold", "uint256"),
    _arg("lpMarginThreshold", "uint256"),
    _arg("dv01", "uint256"),
    _arg("riskDirection", "uint8"),
]
_FUTURE_OPEN_POSITION = [
    _arg("futureId", "bytes32"),
    _struct("tokensPair", _TOKENS_PAIR),
    _arg("notional", "uint256"),
    _struct("profitAndLoss", _PROFIT_AND_LOSS),
    _arg("requiredMargin", "uint256"),
    _arg("dv01", "uint256"),
    _arg("riskDirection", "uint8"),
]
_PROVISION_DISTRIBUTION = [_arg("total", "uint256"), _arg("payer", "uint256"), _arg("receiver", "uint256")]
_PROVISION_INFO = [
    _struct("bounds", [_arg("lower", "int256"), _arg("upper", "int256")]),
    _struct("notional", _PROVISION_DISTRIBUTION),
    _arg("requiredMargin", "uint256"),
    _arg("payerDv01", "uint256"),
    _arg("receiverDv01", "uint256"),
]
_MAKER_FUTURE_PROVISIONS = [_arg("futureId", "bytes32"), _struct("provisions", _PROVISION_INFO, array=True)]
_MARKET_PORTFOLIO = [
    _struct("descriptor", _MARKET_DESCRIPTOR),
    _struct("marginState", _MARGIN_STATE),
    _struct("futures", _FUTURE_INFO, array=True),
    _struct("futureOpenPositions", _FUTURE_OPEN_POSITION, array=True),
    _struct("futureMakerProvisions", _MAKER_FUTURE_PROVISIONS, array=True),
]
_TRADE_INFO = [
    _arg("notional", "uint256"),
    _arg("direction", "uint8"),
    _struct("tokensPair", _TOKENS_PAIR),
    _arg("marketRate", "int256"),
    _arg("tradeRate", "int256"),
    _arg("lpFee", "uint256"),
    _arg("protocolFee", "uint256"),
    _arg("floatIndex", "uint256"),
]
_ONE_SIDE_QUOTE = [
    _struct("tradeInfo", _TRADE_INFO),
    _arg("totalFutureOpenPositionNotional", "uint256"),
    _arg("totalFutureOpenPositionDv01", "uint256"),
    _struct("newMargin", _MARGIN),
    _arg("newMarginThreshold", "uint256"),
    _arg("tradeNotionalDv01", "uint256"),
]
_TRADE_QUOTE = [
    _struct("payerQuote", _ONE_SIDE_QUOTE),
    _struct("receiverQuote", _ONE_SIDE_QUOTE),
    _arg("exceededTradeRateImpactLimitForPayer", "bool"),
    _arg("exceededTradeRateImpactLimitForReceiver", "bool"),
    _arg("exceededTradeNotionalLimitForPayer", "bool"),
    _arg("exceededTradeNotionalLimitForReceiver", "bool"),
    _arg("exceededMarketRateImpactLimitForPayer", "bool"),
    _arg("exceededMarketRateImpactLimitForReceiver", "bool"),
]
_MARKET_ORACLE_PACKAGES = [_arg("marketId", "bytes32"), _struct("packages", _ORACLE_PACKAGE, array=True)]


def _view_fn(name: str, inputs: list[dict[str, Any]], outputs: list[dict[str, Any]]) -> dict[str, Any]:
    return {"inputs": inputs, "name": name, "outputs": outputs, "stateMutability": "view", "type": "function"}


VIEW_DATA_PROVIDER_ABI: list[dict[str, Any]] = [
    _view_fn(
        "allActiveMarketsIds",
        [_arg("offset", "uint256"), _arg("limit", "uint256")],
        [_arg("", "bytes32[]")],
    ),
    _view_fn(
        "activeMarketsInfo",
        [
            _arg("offset", "uint256"),
            _arg("limit", "uint256"),
            _struct("oraclePackages", _MARKET_ORACLE_PACKAGES, array=True),
        ],
        [_struct("", _MARKET_INFO, array=True)],
    ),
    _view_fn(
        "marketPortfolio",
        [
            _arg("marketId", "bytes32"),
            _arg("user", "address"),
            _struct("oraclePackages", _ORACLE_PACKAGE, array=True),
        ],
        [_struct("", _MARKET_PORTFOLIO)],
    ),
]

QUOTER_ABI: list[dict[str, Any]] = [
    _view_fn(
        "quoteTrade",
        [
            _arg("marketId", "bytes32"),
            _arg("futureId", "bytes32"),
            _arg("notional", "uint256"),
            _arg("user", "address"),
            _struct("oraclePackages", _ORACLE_PACKAGE, array=True),
        ],
        [_struct("", _TRADE_QUOTE)],
    ),
]

ROUTER_ABI: list[dict[str, Any]] = [
    {
        "inputs": [
            _arg("marketId", "bytes32"),
            _arg("futureId", "bytes32"),
            _arg("direction", "uint8"),
            _arg("notional", "uint256"),
            _arg("futureRateLimit", "int256"),
            _arg("depositAmount", "uint256"),
            _arg("deadline", "uint256"),
            _struct("oraclePackages", _ORACLE_PACKAGE, array=True),
        ],
        "name": "executeTrade",
        "outputs": [_struct("tradeInfo", _TRADE_INFO)],
        "stateMutability": "nonpayable",
        "type": "function",
    }
]

ERC20_ABI: list[dict[str, Any]] = [
    _view_fn("balanceOf", [_arg("owner", "address")], [_arg("", "uint256")]),
    _view_fn("allowance", [_arg("owner", "address"), _arg("spender", "address")], [_arg("", "uint256")]),
    {
        "inputs": [_arg("spender", "address"), _arg("amount", "uint256")],
        "name": "approve",
        "outputs": [_arg("", "bool")],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]


def _bytes32(value: str) -> bytes:
    return bytes.fromhex(to_hex_id(value)[2:].rjust(64, "0"))


def _direction(raw: Any) -> RiskDirection:
    return RiskDirection(int(raw))


def parse_pnl(raw: Any) -> ProfitAndLoss:
    return ProfitAndLoss(net_future_value=int(raw[0]), accrued_lp_fee=int(raw[1]), incurred_fee=int(raw[2]))


def parse_margin(raw: Any) -> Margin:
    return Margin(collateral=int(raw[0]), profit_and_loss=parse_pnl(raw[1]))


def parse_descriptor(raw: Any) -> MarketDescriptor:
    return MarketDescriptor(
        id=to_hex_id(raw[0]),
        source_name=str(raw[1]),
        instrument_name=str(raw[2]),
        underlying=str(raw[5]),
        underlying_name=str(raw[6]),
        underlying_decimals=int(raw[7]),
    )


def parse_future(raw: Any) -> FutureInfo:
    return FutureInfo(
        id=to_hex_id(raw[0]),
        market_id=to_hex_id(raw[1]),
        term_start=int(raw[2]),
        term_length=int(raw[3]),
        current_future_rate=int(raw[4][1]),
    )


def parse_market(raw: Any) -> MarketInfo:
    return MarketInfo(
        descriptor=parse_descriptor(raw[0]),
        futures=tuple(parse_future(item) for item in raw[1]),
    )


def parse_portfolio(raw: Any) -> MarketPortfolio:
    descriptor = parse_descriptor(raw[0])
    state = raw[1]
    margin_state = MarginState(
        margin=parse_margin(state[0]),
        initial_margin_threshold=int(state[1]),
        liquidation_margin_threshold=int(state[2]),
        dv01=int(state[4]),
        risk_direction=_direction(state[5]) if int(state[4]) > 0 else None,
    )
    positions = tuple(
        FutureOpenPosition(
            future_id=to_hex_id(item[0]),
            fixed_token_amount=int(item[1][0]),
            float_token_amount=int(item[1][1]),
            notional=int(item[2]),
            dv01=int(item[5]),
        )
        for item in raw[3]
    )
    return MarketPortfolio(
        market_id=descriptor.id,
        margin_state=margin_state,
        open_positions=positions,
        futures=tuple(parse_future(item) for item in raw[2]),
    )


def parse_side_quote(raw: Any) -> OneSideQuote:
    info = raw[0]
    return OneSideQuote(
        trade_info=TradeInfo(
            notional=int(info[0]),
            direction=_direction(info[1]),
            market_rate=int(info[3]),
            trade_rate=int(info[4]),
            lp_fee=int(info[5]),
            protocol_fee=int(info[6]),
        ),
        new_margin=parse_margin(raw[3]),
        new_margin_threshold=int(raw[4]),
    )


def parse_quote(raw: Any, notional: int) -> TradeQuote:
    return TradeQuote(
        notional=notional,
        payer_quote=parse_side_quote(raw[0]),
        receiver_quote=parse_side_quote(raw[1]),
        exceeded_trade_rate_impact_limit_for_payer=bool(raw[2]),
        exceeded_trade_rate_impact_limit_for_receiver=bool(raw[3]),
        exceeded_trade_notional_limit_for_payer=bool(raw[4]),
        exceeded_trade_notional_limit_for_receiver=bool(raw[5]),
        exceeded_market_rate_impact_limit_for_payer=bool(raw[6]),
        exceeded_market_rate_impact_limit_for_receiver=bool(raw[7]),
    )


def _receipt_status(receipt: Any) -> int:
    raw = receipt.get("status") if isinstance(receipt, dict) else getattr(receipt, "status", None)
    if raw is None:
        return 0
    if isinstance(raw, str):
        return int(raw, 16) if raw.startswith("0x") else int(raw)
    return int(raw)


def _receipt_summary(receipt: Any) -> dict[str, Any]:
    out: dict[str, Any] = {"status": _receipt_status(receipt)}
    for key in ("transactionHash", "blockHash"):
        value = receipt.get(key) if isinstance(receipt, dict) else getattr(receipt, key, None)
        if value is not None:
            out[key] = to_hex_id(value)
    for key in ("blockNumber", "gasUsed", "effectiveGasPrice"):
        value = receipt.get(key) if isinstance(receipt, dict) else getattr(receipt, key, None)
        if value is not None:
            try:
                out[key] = int(value)
            except (TypeError, ValueError):
                out[key] = str(value)
    return out


def to_trade_receipt(tx_hash: str, receipt: Any) -> TradeReceipt:
    summary = _receipt_summary(receipt)
    return TradeReceipt(
        tx_hash=tx_hash,
        status=int(summary.get("status", 0)),
        block_number=int(summary.get("blockNumber", 0) or 0),
        gas_used=int(summary.get("gasUsed", 0) or 0),
        raw=summary,
    )


def build_web3(config: BotConfig) -> Web3:
    provider = Web3.HTTPProvider(
        config.rpc_url,
        request_kwargs={"timeout": max(1.0, config.rpc_timeout_seconds)},
    )
    return Web3(provider)


class NonceManager:
    """Serializes nonce issuance for one account.

    The pending nonce is read and the transaction handed to the node while the
    lock is held, so two submissions from the same account never share a nonce.
    """

    def __init__(self, w3: Web3, address: str) -> None:
        self._w3 = w3
        self._address = address
        self._lock = threading.Lock()

    def current(self) -> int:
        return int(self._w3.eth.get_transaction_count(self._address, "pending"))

    @contextmanager
    def reserve(self) -> Iterator[int]:
        with self._lock:
            yield self.current()


class VenueClient:
    def __init__(self, config: BotConfig, w3: Web3, private_key: str, oracle: OracleClient) -> None:
        self.config = config
        self.w3 = w3
        self.oracle = oracle
        self._private_key = private_key
        self.address = Account.from_key(private_key).address
        self.nonces = NonceManager(w3, self.address)
        self.view = w3.eth.contract(
            address=Web3.to_checksum_address(config.view_contract_address), abi=VIEW_DATA_PROVIDER_ABI
        )
        self.quoter = w3.eth.contract(
            address=Web3.to_checksum_address(config.quoter_contract_address), abi=QUOTER_ABI
        )
        self.router = w3.eth.contract(
            address=Web3.to_checksum_address(config.router_contract_address), abi=ROUTER_ABI
        )
        self._chain_id = int(config.chain_id)

    @property
    def router_address(self) -> str:
        return self.router.address

    @property
    def chain_id(self) -> int:
        if self._chain_id <= 0:
            self._chain_id = int(self.w3.eth.chain_id)
        return self._chain_id

    def _packages(self, market_id: str) -> list[tuple[bytes, int, bytes, int]]:
        package: OraclePackage = self.oracle.get_oracle_package(market_id)
        return [package.as_abi_tuple()]

    def list_active_markets(self, offset: int = 0, limit: int = 100) -> list[MarketInfo]:
        market_ids = [to_hex_id(raw) for raw in self.view.functions.allActiveMarketsIds(offset, limit).call()]
        packages = [(_bytes32(market_id), self._packages(market_id)) for market_id in market_ids]
        raw_markets = self.view.functions.activeMarketsInfo(offset, limit, packages).call()
        return [parse_market(item) for item in raw_markets]

    def get_portfolio(self, market: MarketInfo) -> MarketPortfolio:
        raw = self.view.functions.marketPortfolio(
            _bytes32(market.id), self.address, self._packages(market.id)
        ).call()
        return parse_portfolio(raw)

    def get_quote(self, market: MarketInfo, future: FutureInfo, notional: int) -> TradeQuote:
        raw = self.quoter.functions.quoteTrade(
            _bytes32(market.id),
            _bytes32(future.id),
            int(notional),
            self.address,
            self._packages(market.id),
        ).call()
        return parse_quote(raw, int(notional))

    def _erc20(self, token: str):
        return self.w3.eth.contract(address=Web3.to_checksum_address(token), abi=ERC20_ABI)

    def get_balance(self, token: str) -> int:
        return int(self._erc20(token).functions.balanceOf(self.address).call())

    def get_allowance(self, token: str, spender: str) -> int:
        return int(self._erc20(token).functions.allowance(self.address, Web3.to_checksum_address(spender)).call())

    def get_nonce(self) -> int:
        return self.nonces.current()

    def gas_price(self) -> int:
        return max(1, int(self.w3.eth.gas_price))

    def _trade_fn(self, params: TradeParams):
        return self.router.functions.executeTrade(
            _bytes32(params.market_id),
            _bytes32(params.future_id),
            int(params.direction),
            int(params.notional),
            int(params.future_rate_limit),
            int(params.deposit_amount),
            int(params.deadline),
            self._packages(params.market_id),
        )

    def estimate_trade_gas(self, params: TradeParams) -> int:
        return int(self._trade_fn(params).estimate_gas({"from": self.address}))

    def _send_function_tx(self, fn, *, gas_limit: int | None = None, gas_price: int | None = None) -> str:
        with self.nonces.reserve() as nonce:
            tx_fields: dict[str, Any] = {
                "from": self.address,
                "nonce": nonce,
                "chainId": self.chain_id,
                "gasPrice": gas_price if gas_price is not None else self.gas_price(),
            }
            if gas_limit is not None:
                tx_fields["gas"] = int(gas_limit)
            tx = fn.build_transaction(tx_fields)
            signed = Account.sign_transaction(tx, self._private_key)
            tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
        LOGGER.info("tx_sent from=%s nonce=%s hash=%s", self.address, nonce, Web3.to_hex(tx_hash))
        return Web3.to_hex(tx_hash)

    def approve(self, token: str, spender: str, amount: int) -> str:
        fn = self._erc20(token).functions.approve(Web3.to_checksum_address(spender), int(amount))
        return self._send_function_tx(fn)

    def submit_trade(self, params: TradeParams, *, gas_limit: int | None, gas_price: int | None) -> str:
        return self._send_function_tx(self._trade_fn(params), gas_limit=gas_limit, gas_price=gas_price)

    def wait_for_receipt(self, tx_hash: str) -> TradeReceipt:
        receipt = self.w3.eth.wait_for_transaction_receipt(
            tx_hash, timeout=self.config.tx_receipt_timeout_seconds
        )
        return to_trade_receipt(tx_hash, receipt)
