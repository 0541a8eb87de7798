from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from eth_abi import encode as abi_encode
from eth_abi.exceptions import EncodingError as AbiEncodingError
from eth_utils import function_signature_to_4byte_selector, is_address, is_hex, to_bytes, to_checksum_address

from ..errors import EncodingError

_UINT_RE = re.compile(r"^uint(\d{0,3})$")
_FIXED_BYTES_RE = re.compile(r"^bytes(\d{1,2})$")


@dataclass(slots=True, frozen=True)
class FunctionSpec:
    name: str
    inputs: tuple[tuple[str, str], ...]

    @property
    def types(self) -> list[str]:
        return [abi_type for _, abi_type in self.inputs]

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(self.types)})"

    @property
    def selector(self) -> bytes:
        return function_signature_to_4byte_selector(self.signature)


POOL_REPAY = FunctionSpec(
    "repay",
    (
        ("asset", "address"),
        ("amount", "uint256"),
        ("interestRateMode", "uint256"),
        ("onBehalfOf", "address"),
    ),
)

POOL_WITHDRAW = FunctionSpec(
    "withdraw",
    (
        ("asset", "address"),
        ("amount", "uint256"),
        ("to", "address"),
    ),
)

SETTLEMENT_SET_PRESIGNATURE = FunctionSpec(
    "setPreSignature",
    (
        ("orderUid", "bytes"),
        ("signed", "bool"),
    ),
)

SAFE_EXEC_TRANSACTION = FunctionSpec(
    "execTransaction",
    (
        ("to", "address"),
        ("value", "uint256"),
        ("data", "bytes"),
        ("operation", "uint8"),
        ("safeTxGas", "uint256"),
        ("baseGas", "uint256"),
        ("gasPrice", "uint256"),
        ("gasToken", "address"),
        ("refundReceiver", "address"),
        ("signatures", "bytes"),
    ),
)

SAFE_NONCE = FunctionSpec("nonce", ())


def _coerce_address(field: str, value: Any) -> str:
    if isinstance(value, (bytes, bytearray)) and len(value) == 20:
        return to_checksum_address(bytes(value))
    if not isinstance(value, str) or not is_address(value):
        raise EncodingError(f"Argument {field!r} is not a valid address: {value!r}")
    return to_checksum_address(value)


def _coerce_uint(field: str, value: Any, bits: int) -> int:
    if isinstance(value, bool):
        raise EncodingError(f"Argument {field!r} expects uint{bits}, got a bool")
    if isinstance(value, int):
        number = value
    elif isinstance(value, str) and value.strip().isdigit():
        number = int(value.strip())
    else:
        raise EncodingError(f"Argument {field!r} expects uint{bits}, got {value!r}")
    if number < 0 or number >= 2**bits:
        raise EncodingError(f"Argument {field!r} is out of range for uint{bits}: {number}")
    return number


def _coerce_bytes(field: str, value: Any, size: int | None) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        raw = bytes(value)
    elif isinstance(value, str) and (value == "0x" or is_hex(value)):
        raw = to_bytes(hexstr=value)
    else:
        raise EncodingError(f"Argument {field!r} expects hex bytes, got {value!r}")
    if size is not None and len(raw) != size:
        raise EncodingError(f"Argument {field!r} expects {size} bytes, got {len(raw)}")
    return raw


def coerce_argument(field: str, abi_type: str, value: Any) -> Any:
    if abi_type == "address":
        return _coerce_address(field, value)
    if abi_type == "bool":
        if not isinstance(value, bool):
            raise EncodingError(f"Argument {field!r} expects a bool, got {value!r}")
        return value
    if abi_type == "bytes":
        return _coerce_bytes(field, value, None)
    uint_match = _UINT_RE.match(abi_type)
    if uint_match:
        bits = int(uint_match.group(1) or 256)
        return _coerce_uint(field, value, bits)
    fixed_match = _FIXED_BYTES_RE.match(abi_type)
    if fixed_match:
        return _coerce_bytes(field, value, int(fixed_match.group(1)))
    raise EncodingError(f"Unsupported ABI type {abi_type!r} for argument {field!r}")


def _ordered_values(function: FunctionSpec, args: Mapping[str, Any] | Sequence[Any]) -> list[Any]:
    if isinstance(args, Mapping):
        expected = [name for name, _ in function.inputs]
        missing = [name for name in expected if name not in args]
        if missing:
            raise EncodingError(f"{function.name}: missing argument(s) {', '.join(missing)}")
        unexpected = sorted(set(args) - set(expected))
        if unexpected:
            raise EncodingError(f"{function.name}: unexpected argument(s) {', '.join(unexpected)}")
        return [args[name] for name in expected]

    values = list(args)
    if len(values) != len(function.inputs):
        raise EncodingError(
            f"{function.name}: expected {len(function.inputs)} argument(s), got {len(values)}"
        )
    return values


def encode_arguments(function: FunctionSpec, args: Mapping[str, Any] | Sequence[Any]) -> bytes:
    values = _ordered_values(function, args)
    coerced = [
        coerce_argument(name, abi_type, value)
        for (name, abi_type), value in zip(function.inputs, values)
    ]
    try:
        return abi_encode(function.types, coerced)
    except (AbiEncodingError, OverflowError, TypeError, ValueError) as error:
        raise EncodingError(f"{function.name}: ABI encoding failed: {error}") from error


def encode_call(function: FunctionSpec, args: Mapping[str, Any] | Sequence[Any] = ()) -> bytes:
    """Return ``selector + abi.encode(args)`` for ``function``.

    Arguments are validated against the schema before they reach the ABI
    encoder so that a malformed address or a missing amount surfaces as an
    ``EncodingError`` naming the offending field.
    """
    return function.selector + encode_arguments(function, args)
