from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any

from eth_utils import is_address, to_checksum_address

from ..common import RetryPolicy
from ..errors import ConfigError
from ..trading.types import WorkflowConfig
from ..trading.venue import COW_API_BASE_URLS, COW_NETWORK_SLUGS, network_api_url
from ..wallet import SAFE_TX_SERVICE_URLS

DEFAULT_SETTLEMENT_CONTRACT = "0x9008D19f58AAbD9eD0D60971565AA8510560ab41"


def to_int(value: Any, default: int) -> int:
    try:
        if value is None or str(value).strip() == "":
            return default
        return int(float(str(value).strip()))
    except (TypeError, ValueError):
        return default


def to_float(value: Any, default: float) -> float:
    try:
        if value is None or str(value).strip() == "":
            return default
        return float(str(value).strip())
    except (TypeError, ValueError):
        return default


def to_amount(value: Any) -> int:
    """Parse a base-unit token amount exactly; -1 marks a missing or bad value."""
    text = str(value if value is not None else "").strip().replace("_", "")
    if not text.isdigit():
        return -1
    return int(text)


def split_keys(value: str | None) -> list[str]:
    return [item.strip() for item in (value or "").split(",") if item.strip()]


def normalize_choice(value: str | None, choices: set[str], default: str) -> str:
    candidate = (value or "").strip().lower()
    if candidate in choices:
        return candidate
    return default


@dataclass(slots=True)
class AppSettings:
    rpc_url: str
    chain_id: int
    safe_address: str
    signer_private_keys: list[str]
    executor_private_key: str
    safe_tx_service_url: str
    cow_env: str
    cow_api_url: str
    app_code: str
    settlement_contract: str
    lending_pool: str
    collateral_token: str
    collateral_token_decimals: int
    collateral_amount: int
    borrowed_token: str
    borrowed_token_decimals: int
    borrowed_amount: int
    buy_amount: int
    interest_rate_mode: int
    hook_gas_limit: int
    slippage_bps: int
    quote_valid_for_seconds: int
    authorization_mode: str
    presign_gas_limit: int
    max_fee_per_gas: int
    max_priority_fee_per_gas: int
    wallet_retry_max_attempts: int
    wallet_retry_backoff_seconds: float
    venue_retry_max_attempts: int
    venue_retry_backoff_seconds: float
    retry_max_backoff_seconds: float
    max_replans: int
    http_timeout_seconds: float
    receipt_timeout_seconds: float
    receipt_poll_interval_seconds: float

    @classmethod
    def from_env(cls) -> "AppSettings":
        chain_id = to_int(os.getenv("CHAIN_ID"), 11155111)
        cow_env = normalize_choice(os.getenv("COW_ENV"), set(COW_API_BASE_URLS), "staging")
        signer_private_keys = split_keys(os.getenv("SIGNER_ADDRESS_PRIVATE_KEY"))

        cow_api_url = os.getenv("COW_API_URL", "").strip()
        if not cow_api_url and chain_id in COW_NETWORK_SLUGS:
            cow_api_url = network_api_url(chain_id, cow_env)

        return cls(
            rpc_url=os.getenv("RPC_URL", "").strip(),
            chain_id=chain_id,
            safe_address=os.getenv("SAFE_ADDRESS", "").strip(),
            signer_private_keys=signer_private_keys,
            executor_private_key=os.getenv("EXECUTOR_PRIVATE_KEY", "").strip()
            or (signer_private_keys[0] if signer_private_keys else ""),
            safe_tx_service_url=os.getenv("SAFE_TX_SERVICE_URL", "").strip()
            or SAFE_TX_SERVICE_URLS.get(chain_id, ""),
            cow_env=cow_env,
            cow_api_url=cow_api_url,
            app_code=os.getenv("APP_CODE", "flashloan-presign").strip() or "flashloan-presign",
            settlement_contract=os.getenv("COW_SETTLEMENT_CONTRACT", DEFAULT_SETTLEMENT_CONTRACT).strip(),
            lending_pool=os.getenv("AAVE_POOL_ADDRESS", "").strip(),
            collateral_token=os.getenv("COLLATERAL_TOKEN", "").strip(),
            collateral_token_decimals=max(0, to_int(os.getenv("COLLATERAL_TOKEN_DECIMALS"), 18)),
            collateral_amount=to_amount(os.getenv("COLLATERAL_AMOUNT")),
            borrowed_token=os.getenv("BORROWED_TOKEN", "").strip(),
            borrowed_token_decimals=max(0, to_int(os.getenv("BORROWED_TOKEN_DECIMALS"), 18)),
            borrowed_amount=to_amount(os.getenv("BORROWED_AMOUNT")),
            buy_amount=to_amount(os.getenv("BUY_AMOUNT")),
            interest_rate_mode=to_int(os.getenv("INTEREST_RATE_MODE"), 2),
            hook_gas_limit=max(21_000, to_int(os.getenv("HOOK_GAS_LIMIT"), 1_000_000)),
            slippage_bps=max(0, to_int(os.getenv("SLIPPAGE_BPS"), 50)),
            quote_valid_for_seconds=max(60, to_int(os.getenv("QUOTE_VALID_FOR_SECONDS"), 1800)),
            authorization_mode=normalize_choice(
                os.getenv("AUTHORIZATION_MODE"),
                {"manual", "automated"},
                "manual",
            ),
            presign_gas_limit=max(21_000, to_int(os.getenv("PRESIGN_GAS_LIMIT"), 200_000)),
            max_fee_per_gas=max(0, to_int(os.getenv("MAX_FEE_PER_GAS"), 0)),
            max_priority_fee_per_gas=max(0, to_int(os.getenv("MAX_PRIORITY_FEE_PER_GAS"), 0)),
            wallet_retry_max_attempts=max(1, to_int(os.getenv("WALLET_RETRY_MAX_ATTEMPTS"), 3)),
            wallet_retry_backoff_seconds=max(
                0.1,
                to_float(os.getenv("WALLET_RETRY_BACKOFF_SECONDS"), 0.8),
            ),
            venue_retry_max_attempts=max(1, to_int(os.getenv("VENUE_RETRY_MAX_ATTEMPTS"), 4)),
            venue_retry_backoff_seconds=max(
                0.1,
                to_float(os.getenv("VENUE_RETRY_BACKOFF_SECONDS"), 1.0),
            ),
            retry_max_backoff_seconds=max(1.0, to_float(os.getenv("RETRY_MAX_BACKOFF_SECONDS"), 15.0)),
            max_replans=max(0, to_int(os.getenv("MAX_REPLANS"), 2)),
            http_timeout_seconds=max(1.0, to_float(os.getenv("HTTP_TIMEOUT_SECONDS"), 15.0)),
            receipt_timeout_seconds=max(5.0, to_float(os.getenv("RECEIPT_TIMEOUT_SECONDS"), 120.0)),
            receipt_poll_interval_seconds=max(
                0.25,
                to_float(os.getenv("RECEIPT_POLL_INTERVAL_SECONDS"), 2.0),
            ),
        )

    def validate(self) -> None:
        problems: list[str] = []

        for label, value in (
            ("SAFE_ADDRESS", self.safe_address),
            ("COW_SETTLEMENT_CONTRACT", self.settlement_contract),
            ("AAVE_POOL_ADDRESS", self.lending_pool),
            ("COLLATERAL_TOKEN", self.collateral_token),
            ("BORROWED_TOKEN", self.borrowed_token),
        ):
            if not value:
                problems.append(f"{label} is required")
            elif not is_address(value):
                problems.append(f"{label} is not a valid address")

        for label, amount in (
            ("COLLATERAL_AMOUNT", self.collateral_amount),
            ("BORROWED_AMOUNT", self.borrowed_amount),
            ("BUY_AMOUNT", self.buy_amount),
        ):
            if amount <= 0:
                problems.append(f"{label} must be a positive integer amount in base units")

        if not self.rpc_url and self.authorization_mode == "automated":
            problems.append("RPC_URL is required for automated authorization")
        if not self.signer_private_keys:
            problems.append("SIGNER_ADDRESS_PRIVATE_KEY is required")
        if not self.safe_tx_service_url:
            problems.append(f"SAFE_TX_SERVICE_URL is required for chain {self.chain_id}")
        if not self.cow_api_url:
            problems.append(f"COW_API_URL is required for chain {self.chain_id}")
        if self.interest_rate_mode not in {1, 2}:
            problems.append("INTEREST_RATE_MODE must be 1 (stable) or 2 (variable)")
        if self.slippage_bps >= 10_000:
            problems.append("SLIPPAGE_BPS must be below 10000")

        if problems:
            raise ConfigError(problems)

    def workflow_config(self) -> WorkflowConfig:
        return WorkflowConfig(
            chain_id=self.chain_id,
            safe_address=to_checksum_address(self.safe_address),
            app_code=self.app_code,
            settlement_contract=to_checksum_address(self.settlement_contract),
            lending_pool=to_checksum_address(self.lending_pool),
            collateral_token=to_checksum_address(self.collateral_token),
            collateral_token_decimals=self.collateral_token_decimals,
            collateral_amount=self.collateral_amount,
            borrowed_token=to_checksum_address(self.borrowed_token),
            borrowed_token_decimals=self.borrowed_token_decimals,
            borrowed_amount=self.borrowed_amount,
            buy_amount=self.buy_amount,
            venue_env="prod" if self.cow_env == "prod" else "staging",
            interest_rate_mode=self.interest_rate_mode,
            hook_gas_limit=self.hook_gas_limit,
            slippage_bps=self.slippage_bps,
            quote_valid_for_seconds=self.quote_valid_for_seconds,
            authorization_mode="automated" if self.authorization_mode == "automated" else "manual",
            presign_gas_limit=self.presign_gas_limit,
            max_replans=self.max_replans,
            wallet_retry=self.wallet_retry_policy(),
            venue_retry=self.venue_retry_policy(),
        )

    def wallet_retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.wallet_retry_max_attempts,
            backoff_seconds=self.wallet_retry_backoff_seconds,
            max_backoff_seconds=self.retry_max_backoff_seconds,
        )

    def venue_retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.venue_retry_max_attempts,
            backoff_seconds=self.venue_retry_backoff_seconds,
            max_backoff_seconds=self.retry_max_backoff_seconds,
        )
