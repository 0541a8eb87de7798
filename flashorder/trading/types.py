from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

from ..common import RetryPolicy
from ..errors import WorkflowStage
from ..wallet import NonceReservation

OrderKind = Literal["buy", "sell"]
VenueEnv = Literal["prod", "staging"]
AuthorizationMode = Literal["manual", "automated"]

SIGNING_SCHEME_PRESIGN = "presign"


def to_int(value: Any, default: int) -> int:
    try:
        if value is None or value == "":
            return default
        return int(str(value).strip())
    except (TypeError, ValueError):
        return default


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(slots=True, frozen=True)
class TradeIntent:
    kind: OrderKind
    sell_token: str
    sell_token_decimals: int
    buy_token: str
    buy_token_decimals: int
    amount: int
    receiver: str
    env: VenueEnv = "staging"
    valid_for_seconds: int = 1800

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True, frozen=True)
class Amounts:
    sell_amount: int
    buy_amount: int

    def to_dict(self) -> dict[str, str]:
        return {"sellAmount": str(self.sell_amount), "buyAmount": str(self.buy_amount)}


@dataclass(slots=True, frozen=True)
class AmountsAndCosts:
    is_sell: bool
    before_network_costs: Amounts
    after_network_costs: Amounts
    after_slippage: Amounts
    network_fee_in_sell_currency: int
    network_fee_in_buy_currency: int
    slippage_bps: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "isSell": self.is_sell,
            "beforeNetworkCosts": self.before_network_costs.to_dict(),
            "afterNetworkCosts": self.after_network_costs.to_dict(),
            "afterSlippage": self.after_slippage.to_dict(),
            "costs": {
                "networkFee": {
                    "amountInSellCurrency": str(self.network_fee_in_sell_currency),
                    "amountInBuyCurrency": str(self.network_fee_in_buy_currency),
                },
            },
            "slippageBps": self.slippage_bps,
        }


@dataclass(slots=True, frozen=True)
class Quote:
    quote_id: int | None
    sell_amount: int
    buy_amount: int
    fee_amount: int
    valid_to: int
    amounts_and_costs: AmountsAndCosts
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def after_slippage(self) -> Amounts:
        return self.amounts_and_costs.after_slippage

    def compact(self) -> dict[str, Any]:
        return {
            "id": self.quote_id,
            "sellAmount": str(self.sell_amount),
            "buyAmount": str(self.buy_amount),
            "feeAmount": str(self.fee_amount),
            "validTo": self.valid_to,
            "amountsAndCosts": self.amounts_and_costs.to_dict(),
        }


@dataclass(slots=True, frozen=True)
class AuthorizationCall:
    to: str
    value: int
    data: bytes


@dataclass(slots=True, frozen=True)
class WorkflowConfig:
    chain_id: int
    safe_address: str
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
    venue_env: VenueEnv = "staging"
    interest_rate_mode: int = 2
    hook_gas_limit: int = 1_000_000
    slippage_bps: int = 50
    quote_valid_for_seconds: int = 1800
    authorization_mode: AuthorizationMode = "manual"
    presign_gas_limit: int = 200_000
    max_replans: int = 2
    wallet_retry: RetryPolicy = field(default_factory=RetryPolicy)
    venue_retry: RetryPolicy = field(default_factory=lambda: RetryPolicy(max_attempts=4, backoff_seconds=1.0))

    @property
    def spending_ceiling(self) -> int:
        return self.collateral_amount

    @property
    def automated_authorization(self) -> bool:
        return self.authorization_mode == "automated"

    def trade_intent(self) -> TradeIntent:
        # Always a buy order: the repay hook needs exactly buy_amount, and the
        # sell side is the cost the budget guard bounds. The settlement
        # contract receives the proceeds because the repay hook pulls the
        # borrowed token from there, not from the Safe.
        return TradeIntent(
            kind="buy",
            sell_token=self.collateral_token,
            sell_token_decimals=self.collateral_token_decimals,
            buy_token=self.borrowed_token,
            buy_token_decimals=self.borrowed_token_decimals,
            amount=self.buy_amount,
            receiver=self.settlement_contract,
            env=self.venue_env,
            valid_for_seconds=self.quote_valid_for_seconds,
        )


@dataclass(slots=True, frozen=True)
class ManualAuthorizationInstructions:
    safe_address: str
    settlement_contract: str
    method: str
    order_id: str
    reserved_nonce: int
    gas_limit: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True, frozen=True)
class WorkflowResult:
    state: WorkflowStage
    order_id: str
    app_data_hash: str
    nonces: NonceReservation
    amounts: AmountsAndCosts
    authorization_pending: bool
    authorization_tx_hash: str | None = None
    authorization_error: str | None = None
    manual_instructions: ManualAuthorizationInstructions | None = None
    replans: int = 0
    finished_at: str = field(default_factory=now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "order_id": self.order_id,
            "app_data_hash": self.app_data_hash,
            "nonces": self.nonces.to_dict(),
            "amounts": self.amounts.to_dict(),
            "authorization_pending": self.authorization_pending,
            "authorization_tx_hash": self.authorization_tx_hash,
            "authorization_error": self.authorization_error,
            "manual_instructions": self.manual_instructions.to_dict() if self.manual_instructions else None,
            "replans": self.replans,
            "finished_at": self.finished_at,
        }
