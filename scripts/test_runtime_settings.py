from __future__ import annotations

import json
import logging
import os
import unittest
from unittest.mock import patch

from flashorder.common import log_event
from flashorder.errors import ConfigError
from flashorder.runtime import AppSettings
from flashorder.runtime.logging import JsonFormatter

SAFE = "0x1000000000000000000000000000000000000001"
POOL = "0x2000000000000000000000000000000000000002"
COLLATERAL = "0x3000000000000000000000000000000000000003"
BORROWED = "0x4000000000000000000000000000000000000004"
SIGNER_KEY_A = "0x" + "11" * 32
SIGNER_KEY_B = "0x" + "22" * 32


def _base_env(**overrides: str) -> dict[str, str]:
    env = {
        "SAFE_ADDRESS": SAFE,
        "SIGNER_ADDRESS_PRIVATE_KEY": f"{SIGNER_KEY_A}, {SIGNER_KEY_B}",
        "AAVE_POOL_ADDRESS": POOL,
        "COLLATERAL_TOKEN": COLLATERAL,
        "COLLATERAL_AMOUNT": "10000000000",
        "BORROWED_TOKEN": BORROWED,
        "BORROWED_TOKEN_DECIMALS": "6",
        "BORROWED_AMOUNT": "2500000",
        "BUY_AMOUNT": "2500000",
    }
    env.update(overrides)
    return env


class AppSettingsTests(unittest.TestCase):
    def test_defaults_target_sepolia_staging(self) -> None:
        with patch.dict(os.environ, _base_env(), clear=True):
            settings = AppSettings.from_env()

        self.assertEqual(settings.chain_id, 11155111)
        self.assertEqual(settings.cow_env, "staging")
        self.assertEqual(settings.cow_api_url, "https://barn.api.cow.fi/sepolia")
        self.assertEqual(settings.safe_tx_service_url, "https://safe-transaction-sepolia.safe.global")
        self.assertEqual(settings.settlement_contract, "0x9008D19f58AAbD9eD0D60971565AA8510560ab41")
        self.assertEqual(settings.authorization_mode, "manual")
        self.assertEqual(settings.slippage_bps, 50)
        self.assertEqual(settings.hook_gas_limit, 1_000_000)
        self.assertEqual(settings.max_replans, 2)

    def test_signer_keys_are_split_and_executor_falls_back(self) -> None:
        with patch.dict(os.environ, _base_env(), clear=True):
            settings = AppSettings.from_env()

        self.assertEqual(settings.signer_private_keys, [SIGNER_KEY_A, SIGNER_KEY_B])
        self.assertEqual(settings.executor_private_key, SIGNER_KEY_A)

    def test_large_amounts_are_parsed_exactly(self) -> None:
        with patch.dict(os.environ, _base_env(COLLATERAL_AMOUNT="123456789012345678901234567"), clear=True):
            settings = AppSettings.from_env()

        self.assertEqual(settings.collateral_amount, 123456789012345678901234567)

    def test_prod_env_switches_the_api_host(self) -> None:
        with patch.dict(os.environ, _base_env(COW_ENV="prod", CHAIN_ID="1"), clear=True):
            settings = AppSettings.from_env()

        self.assertEqual(settings.cow_api_url, "https://api.cow.fi/mainnet")
        self.assertEqual(settings.safe_tx_service_url, "https://safe-transaction-mainnet.safe.global")

    def test_out_of_range_numbers_are_clamped(self) -> None:
        with patch.dict(
            os.environ,
            _base_env(WALLET_RETRY_MAX_ATTEMPTS="0", SLIPPAGE_BPS="-5", HTTP_TIMEOUT_SECONDS="abc"),
            clear=True,
        ):
            settings = AppSettings.from_env()

        self.assertEqual(settings.wallet_retry_max_attempts, 1)
        self.assertEqual(settings.slippage_bps, 0)
        self.assertEqual(settings.http_timeout_seconds, 15.0)

    def test_valid_settings_build_a_workflow_config(self) -> None:
        with patch.dict(os.environ, _base_env(AUTHORIZATION_MODE="automated", RPC_URL="https://rpc.example"), clear=True):
            settings = AppSettings.from_env()
        settings.validate()

        config = settings.workflow_config()

        self.assertEqual(config.spending_ceiling, 10_000_000_000)
        self.assertTrue(config.automated_authorization)
        self.assertEqual(config.venue_retry.max_attempts, 4)
        self.assertEqual(config.wallet_retry.max_attempts, 3)
        self.assertEqual(config.trade_intent().receiver, settings.settlement_contract)

    def test_trade_intent_is_always_a_buy_of_the_borrowed_amount(self) -> None:
        with patch.dict(os.environ, _base_env(ORDER_KIND="sell", BUY_AMOUNT="2600000"), clear=True):
            settings = AppSettings.from_env()
        settings.validate()

        intent = settings.workflow_config().trade_intent()

        self.assertEqual(intent.kind, "buy")
        self.assertEqual(intent.amount, 2_600_000)
        self.assertEqual(intent.sell_token, COLLATERAL)
        self.assertEqual(intent.buy_token, BORROWED)

    def test_validate_reports_every_problem(self) -> None:
        with patch.dict(
            os.environ,
            _base_env(SAFE_ADDRESS="", BORROWED_TOKEN="0x1234", BUY_AMOUNT="1.5", SIGNER_ADDRESS_PRIVATE_KEY=""),
            clear=True,
        ):
            settings = AppSettings.from_env()

        with self.assertRaises(ConfigError) as caught:
            settings.validate()

        problems = "\n".join(caught.exception.problems)
        self.assertIn("SAFE_ADDRESS is required", problems)
        self.assertIn("BORROWED_TOKEN is not a valid address", problems)
        self.assertIn("BUY_AMOUNT", problems)
        self.assertIn("SIGNER_ADDRESS_PRIVATE_KEY", problems)

    def test_automated_mode_needs_an_rpc_url(self) -> None:
        with patch.dict(os.environ, _base_env(AUTHORIZATION_MODE="automated"), clear=True):
            settings = AppSettings.from_env()

        with self.assertRaisesRegex(ConfigError, "RPC_URL"):
            settings.validate()

    def test_unknown_chain_needs_explicit_urls(self) -> None:
        with patch.dict(os.environ, _base_env(CHAIN_ID="999"), clear=True):
            settings = AppSettings.from_env()

        with self.assertRaises(ConfigError) as caught:
            settings.validate()
        self.assertTrue(any("COW_API_URL" in problem for problem in caught.exception.problems))
        self.assertTrue(any("SAFE_TX_SERVICE_URL" in problem for problem in caught.exception.problems))


class JsonFormatterTests(unittest.TestCase):
    def _format(self, message: str, **extra: object) -> dict[str, object]:
        record = logging.LogRecord("flashloan_order", logging.INFO, __file__, 1, message, None, None)
        for key, value in extra.items():
            setattr(record, key, value)
        return json.loads(JsonFormatter().format(record))

    def test_key_fields_are_masked(self) -> None:
        payload = self._format("started", event="boot", executor_private_key=SIGNER_KEY_A)

        self.assertEqual(payload["executor_private_key"], "***")
        self.assertEqual(payload["event"], "boot")
        self.assertNotIn(SIGNER_KEY_A[2:], json.dumps(payload))

    def test_key_assignments_in_messages_are_masked(self) -> None:
        payload = self._format(f"loaded private_key={SIGNER_KEY_A}")
        self.assertNotIn(SIGNER_KEY_A[2:], payload["message"])

    def test_url_query_strings_are_dropped(self) -> None:
        payload = self._format("rpc", rpc_url="https://rpc.example/v2?api-key=secret")
        self.assertEqual(payload["rpc_url"], "https://rpc.example/v2")

    def test_rpc_keys_in_url_paths_are_masked(self) -> None:
        payload = self._format("rpc", rpc_url="https://eth-sepolia.g.alchemy.com/v2/AbCdEfGhIjKlMnOpQrStUvWx1234")
        self.assertEqual(payload["rpc_url"], "https://eth-sepolia.g.alchemy.com/v2/***")

    def test_order_paths_with_hex_segments_are_kept(self) -> None:
        url = f"https://barn.api.cow.fi/sepolia/api/v1/account/{SAFE}/orders"
        payload = self._format("lookup", url=url)
        self.assertEqual(payload["url"], url)

    def test_transaction_hashes_are_kept(self) -> None:
        tx_hash = "0x" + "cd" * 32
        payload = self._format("sent", tx_hash=tx_hash)
        self.assertEqual(payload["tx_hash"], tx_hash)


class LogEventTests(unittest.TestCase):
    def test_level_and_masked_fields_reach_the_record(self) -> None:
        logger = logging.getLogger("test.log_event")

        with self.assertLogs(logger, level="WARNING") as captured:
            log_event(
                logger,
                level="warning",
                event="manual_authorization_required",
                message="presign pending",
                executor_private_key=SIGNER_KEY_A,
                reserved_nonce=5,
            )

        record = captured.records[0]
        self.assertEqual(record.levelno, logging.WARNING)
        self.assertEqual(record.event, "manual_authorization_required")
        self.assertEqual(record.executor_private_key, "***")
        self.assertEqual(record.reserved_nonce, 5)

    def test_exception_level_attaches_the_traceback(self) -> None:
        logger = logging.getLogger("test.log_event")

        with self.assertLogs(logger, level="ERROR") as captured:
            try:
                raise RuntimeError("rpc down")
            except RuntimeError:
                log_event(logger, level="exception", event="rpc_failed", message="RPC failed")

        self.assertEqual(captured.records[0].levelno, logging.ERROR)
        self.assertIsNotNone(captured.records[0].exc_info)


if __name__ == "__main__":
    unittest.main()
