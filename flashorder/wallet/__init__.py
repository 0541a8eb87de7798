from .nonces import NonceReservation, allocate_slots, reserve_nonces
from .reserved import ReservationRequest, ReservedTransaction, ReservedTransactionBuilder
from .safe_service import (
    SAFE_TX_SERVICE_URLS,
    ExecutionReceipt,
    SafeWalletService,
    TransactionPendingConfirmationError,
    TransactionRevertedError,
    WalletAccount,
    WalletService,
    WalletTransportError,
)
from .safe_tx import SafeTransaction, SignedSafeTransaction

__all__ = [
    "ExecutionReceipt",
    "NonceReservation",
    "ReservationRequest",
    "ReservedTransaction",
    "ReservedTransactionBuilder",
    "SAFE_TX_SERVICE_URLS",
    "SafeTransaction",
    "SafeWalletService",
    "SignedSafeTransaction",
    "TransactionPendingConfirmationError",
    "TransactionRevertedError",
    "WalletAccount",
    "WalletService",
    "WalletTransportError",
    "allocate_slots",
    "reserve_nonces",
]
