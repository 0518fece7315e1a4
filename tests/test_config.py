from __future__ import annotations

from pathlib import Path
import sys
import unittest
from unittest.mock import patch

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from rho_bot.config import ConfigError, load_config, validate_config

KEY_A = "0x" + ("01" * 32)
KEY_B = "0x" + ("02" * 32)

VALID_ENV = {
    "PRIVATE_KEY": f"{KEY_A}, {KEY_B},{KEY_A}",
    "RPC_URL": "https://rpc.example",
    "ORACLE_URL": "https://oracle.example/",
    "VIEW_CONTRACT_ADDRESS": "0x" + ("aa" * 20),
    "ROUTER_CONTRACT_ADDRESS": "0x" + ("bb" * 20),
    "QUOTER_CONTRACT_ADDRESS": "0x" + ("cc" * 20),
}


class ConfigTests(unittest.TestCase):
    def test_defaults(self) -> None:
        with patch.dict("os.environ", VALID_ENV, clear=True):
            cfg = load_config()
        validate_config(cfg)
        self.assertEqual(cfg.private_keys, (KEY_A, KEY_B))
        self.assertEqual(cfg.oracle_url, "https://oracle.example")
        self.assertEqual(cfg.avg_interval_seconds, 3000.0)
        self.assertEqual(cfg.max_risk, 10000.0)
        self.assertEqual(cfg.risk_level, 1000.0)
        self.assertEqual(cfg.max_trade_size, 1000.0)
        self.assertEqual(cfg.max_margin_in_use, 0.0)
        self.assertAlmostEqual(cfg.x_factor, 0.0005)
        self.assertAlmostEqual(cfg.y_factor, 0.0015)
        self.assertAlmostEqual(cfg.z_factor, 0.0010)
        self.assertEqual((cfg.p1, cfg.p2), (0.6, 0.75))
        self.assertEqual(cfg.sizing_exhausted_policy, "proceed")
        self.assertEqual(cfg.trade_retry_attempts, 3)
        self.assertEqual(cfg.port, 3000)
        self.assertTrue(cfg.testnet)
        self.assertEqual(cfg.gas_margin_pct, 5.0)

    def test_mainnet_pads_gas_more(self) -> None:
        with patch.dict("os.environ", {**VALID_ENV, "NETWORK_TYPE": "mainnet"}, clear=True):
            cfg = load_config()
        self.assertFalse(cfg.testnet)
        self.assertEqual(cfg.gas_margin_pct, 10.0)

    def test_lists_are_normalized(self) -> None:
        env = {**VALID_ENV, "MARKET_IDS": " 0xAB ,0xab,, 0xCD", "FUTURE_IDS": "0xEF"}
        with patch.dict("os.environ", env, clear=True):
            cfg = load_config()
        self.assertEqual(cfg.market_ids, ("0xab", "0xcd"))
        self.assertEqual(cfg.future_ids, ("0xef",))

    def test_interval_floor(self) -> None:
        env = {**VALID_ENV, "TRADE_AVERAGE_INTERVAL": "5", "TRADE_MIN_INTERVAL": "60"}
        with patch.dict("os.environ", env, clear=True):
            cfg = load_config()
        self.assertEqual(cfg.effective_interval_seconds, 60.0)

    def test_bad_number_raises_config_error(self) -> None:
        with patch.dict("os.environ", {**VALID_ENV, "TRADE_MAX_SIZE": "lots"}, clear=True):
            with self.assertRaises(ConfigError):
                load_config()

    def test_missing_key_is_fatal(self) -> None:
        env = {k: v for k, v in VALID_ENV.items() if k != "PRIVATE_KEY"}
        with patch.dict("os.environ", env, clear=True):
            cfg = load_config()
        with self.assertRaises(ConfigError):
            validate_config(cfg)

    def test_invalid_values_are_rejected(self) -> None:
        for override in (
            {"TRADE_PX_1": "1.5"},
            {"NETWORK_TYPE": "devnet"},
            {"SIZING_EXHAUSTED_POLICY": "retry"},
            {"TRADE_MAX_SIZE": "0"},
            {"TRADE_RISK_LEVEL": "20000"},
            {"ROUTER_CONTRACT_ADDRESS": ""},
        ):
            with self.subTest(override=override):
                with patch.dict("os.environ", {**VALID_ENV, **override}, clear=True):
                    cfg = load_config()
                with self.assertRaises(ConfigError):
                    validate_config(cfg)


if __name__ == "__main__":
    unittest.main()
