from .calls import (
    POOL_REPAY,
    POOL_WITHDRAW,
    SAFE_EXEC_TRANSACTION,
    SAFE_NONCE,
    SETTLEMENT_SET_PRESIGNATURE,
    FunctionSpec,
    encode_arguments,
    encode_call,
)

__all__ = [
    "FunctionSpec",
    "POOL_REPAY",
    "POOL_WITHDRAW",
    "SAFE_EXEC_TRANSACTION",
    "SAFE_NONCE",
    "SETTLEMENT_SET_PRESIGNATURE",
    "encode_arguments",
    "encode_call",
]
