from __future__ import annotations

from dataclasses import dataclass
from typing import Any, TypedDict, cast

from rho_bot.http_utils import get_json
from rho_bot.models import parse_int, to_hex_id


class OraclePackagePayload(TypedDict, total=False):
    marketId: str
    timestamp: int | str
    signature: str
    indexValue: int | str


class OracleRecordPayload(TypedDict, total=False):
    oraclePackage: OraclePackagePayload
    latestRate: str
    rateDelta: str
    indexValueRay: str
    rateTimestamp: int


@dataclass(frozen=True)
class OraclePackage:
    market_id: str
    timestamp: int
    signature: str
    index_value: int

    def as_abi_tuple(self) -> tuple[bytes, int, bytes, int]:
        return (
            bytes.fromhex(self.market_id[2:]),
            self.timestamp,
            bytes.fromhex(self.signature[2:] if self.signature.startswith("0x") else self.signature),
            self.index_value,
        )


@dataclass
class OracleClient:
    base_url: str
    timeout_seconds: float = 10.0

    def fetch_records(self) -> list[OracleRecordPayload]:
        payload = get_json(f"{self.base_url}/records", timeout=self.timeout_seconds)
        if not isinstance(payload, list):
            raise RuntimeError("Oracle /records response must be a JSON array")
        return [cast(OracleRecordPayload, item) for item in payload if isinstance(item, dict)]

    def get_oracle_package(self, market_id: str) -> OraclePackage:
        wanted = to_hex_id(market_id)
        for record in self.fetch_records():
            package = record.get("oraclePackage")
            if not isinstance(package, dict):
                continue
            raw_market = package.get("marketId")
            if raw_market is None or to_hex_id(raw_market) != wanted:
                continue
            return OraclePackage(
                market_id=wanted,
                timestamp=parse_int(package.get("timestamp")),
                signature=str(package.get("signature") or "0x"),
                index_value=parse_int(package.get("indexValue")),
            )
        raise RuntimeError(f"Cannot find oracle rate for market {market_id}")

    def fetch_average_rate(self, market_id: str, future_id: str) -> dict[str, Any]:
        payload = get_json(
            f"{self.base_url}/futures/{to_hex_id(future_id)}/average-rate",
            params={"marketId": to_hex_id(market_id)},
            timeout=self.timeout_seconds,
        )
        if not isinstance(payload, dict):
            raise RuntimeError("Average rate response must be a JSON object")
        return payload

    def get_average_rate(self, market_id: str, future_id: str) -> int:
        """Trailing average trade rate of the future, 18-decimal fixed point."""
        payload = self.fetch_average_rate(market_id, future_id)
        for key in ("avgRate", "averageRate", "rate"):
            if key in payload:
                return parse_int(payload.get(key))
        raise RuntimeError(f"Average rate missing for future {future_id}")
