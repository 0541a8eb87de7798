from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from eth_utils import is_address, keccak, to_checksum_address

from ..errors import HookOrderError, MetadataError
from ..wallet import ReservedTransaction

APP_DATA_VERSION = "1.3.0"
REPAY_ACTION = "repay"
WITHDRAW_ACTION = "withdraw"

# Pre-hooks must unwind the loan before releasing collateral.
_ACTION_RANK = {REPAY_ACTION: 0, WITHDRAW_ACTION: 1}


def canonical_json(document: dict[str, Any]) -> str:
    return json.dumps(document, ensure_ascii=False, sort_keys=True, separators=(",", ":"))


@dataclass(slots=True, frozen=True)
class FlashLoanPlan:
    lender: str
    token: str
    amount: int
    pre_hooks: tuple[ReservedTransaction, ...]
    post_hooks: tuple[ReservedTransaction, ...] = ()


@dataclass(slots=True, frozen=True)
class OrderMetadata:
    document: dict[str, Any] = field(compare=False)
    content: str
    app_data_hash: str


def _require_address(label: str, value: str) -> str:
    if not value or not is_address(value):
        raise MetadataError(f"{label} must be an address, got {value!r}")
    return to_checksum_address(value)


def validate_hook_order(hooks: tuple[ReservedTransaction, ...]) -> None:
    """Reject hook lists that would withdraw before repaying or skip nonces backwards."""
    previous_rank = -1
    previous_nonce: int | None = None
    for hook in hooks:
        rank = _ACTION_RANK.get(hook.action)
        if rank is None:
            raise HookOrderError(f"Unknown pre-hook action {hook.action!r}")
        if rank < previous_rank:
            raise HookOrderError(
                f"Pre-hook {hook.action!r} at nonce {hook.nonce} comes after a withdraw; "
                "repay hooks must precede withdraw hooks"
            )
        if previous_nonce is not None and hook.nonce <= previous_nonce:
            raise HookOrderError(
                f"Pre-hook nonces must strictly increase, got {hook.nonce} after {previous_nonce}"
            )
        previous_rank = rank
        previous_nonce = hook.nonce


def _hook_entry(hook: ReservedTransaction, *, target: str, gas_limit: int) -> dict[str, str]:
    return {
        "target": target,
        "value": str(hook.value),
        "callData": hook.encoded_payload,
        "gasLimit": str(gas_limit),
    }


def assemble_order_metadata(
    plan: FlashLoanPlan,
    *,
    signer: str,
    app_code: str,
    hook_target: str,
    hook_gas_limit: int,
) -> OrderMetadata:
    """Build the app-data document committing the order to its unwind hooks.

    Each hook calls ``execTransaction`` on ``hook_target`` (the Safe) with a
    pre-signed payload. The document is serialised with sorted keys and no
    whitespace so identical inputs always hash identically.
    """
    lender = _require_address("Flash-loan lender", plan.lender)
    token = _require_address("Flash-loan token", plan.token)
    signer_address = _require_address("Order signer", signer)
    target = _require_address("Hook target", hook_target)
    if isinstance(plan.amount, bool) or not isinstance(plan.amount, int) or plan.amount <= 0:
        raise MetadataError(f"Flash-loan amount must be a positive integer, got {plan.amount!r}")
    if not plan.pre_hooks:
        raise MetadataError("At least one pre-hook is required to repay the flash loan")
    if plan.post_hooks:
        raise MetadataError("Post-hooks are not supported for flash-loan orders")
    if hook_gas_limit <= 0:
        raise MetadataError(f"Hook gas limit must be positive, got {hook_gas_limit}")
    validate_hook_order(plan.pre_hooks)

    document: dict[str, Any] = {
        "appCode": app_code,
        "metadata": {
            "flashloan": {
                "lender": lender,
                "token": token,
                "amount": str(plan.amount),
            },
            "hooks": {
                "pre": [_hook_entry(hook, target=target, gas_limit=hook_gas_limit) for hook in plan.pre_hooks],
                "post": [],
            },
            "signer": signer_address,
        },
        "version": APP_DATA_VERSION,
    }
    content = canonical_json(document)
    return OrderMetadata(
        document=document,
        content=content,
        app_data_hash="0x" + keccak(text=content).hex(),
    )
