from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import asdict, dataclass
from typing import Any

from ..errors import NonceConflict

AUTHORIZATION_SLOT = "authorization"
REPAY_HOOK_SLOT = "repay_hook"
WITHDRAW_HOOK_SLOT = "withdraw_hook"

# Authorization executes first, directly; hooks only run later inside the
# settlement callback, after the authorization has consumed its nonce.
SLOT_ORDER = (AUTHORIZATION_SLOT, REPAY_HOOK_SLOT, WITHDRAW_HOOK_SLOT)


@dataclass(slots=True, frozen=True)
class NonceReservation:
    base_nonce: int
    authorization: int
    repay_hook: int
    withdraw_hook: int
    authorization_external: bool

    @property
    def hook_nonces(self) -> tuple[int, int]:
        return (self.repay_hook, self.withdraw_hook)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def allocate_slots(
    current_nonce: int,
    labels: Sequence[str],
    *,
    taken: Iterable[int] = (),
) -> dict[str, int]:
    if isinstance(current_nonce, bool) or not isinstance(current_nonce, int) or current_nonce < 0:
        raise ValueError(f"Wallet nonce must be a non-negative integer, got {current_nonce!r}")
    if len(set(labels)) != len(labels):
        raise NonceConflict(f"Duplicate nonce slot labels requested: {list(labels)}")

    assigned = {label: current_nonce + offset for offset, label in enumerate(labels)}

    values = [assigned[label] for label in labels]
    if any(later <= earlier for earlier, later in zip(values, values[1:])):
        raise NonceConflict(f"Nonce assignment is not strictly increasing: {assigned}")

    reused = sorted(set(values) & set(taken))
    if reused:
        raise NonceConflict(
            f"Nonce(s) {reused} are already assigned elsewhere",
            expected_nonce=current_nonce,
        )
    return assigned


def reserve_nonces(
    current_nonce: int,
    *,
    automated_authorization: bool,
    taken: Iterable[int] = (),
) -> NonceReservation:
    """Reserve the authorization nonce and both hook nonces.

    ``current_nonce`` is ``n``: the authorization takes ``n`` and the repay
    and withdraw hooks take ``n + 1`` and ``n + 2``. With manual
    authorization ``n`` is still held back for the operator's own
    transaction and ``authorization_external`` marks that nothing here may
    broadcast with it.
    """
    assigned = allocate_slots(current_nonce, SLOT_ORDER, taken=taken)
    return NonceReservation(
        base_nonce=current_nonce,
        authorization=assigned[AUTHORIZATION_SLOT],
        repay_hook=assigned[REPAY_HOOK_SLOT],
        withdraw_hook=assigned[WITHDRAW_HOOK_SLOT],
        authorization_external=not automated_authorization,
    )
