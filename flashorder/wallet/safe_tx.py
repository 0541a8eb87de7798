from __future__ import annotations

from dataclasses import dataclass, field

from eth_abi import encode as abi_encode
from eth_account import Account
from eth_account.messages import encode_defunct
from eth_utils import keccak, to_checksum_address

from ..contracts import SAFE_EXEC_TRANSACTION, encode_call

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
OPERATION_CALL = 0

DOMAIN_SEPARATOR_TYPEHASH = keccak(text="EIP712Domain(uint256 chainId,address verifyingContract)")
SAFE_TX_TYPEHASH = keccak(
    text=(
        "SafeTx(address to,uint256 value,bytes data,uint8 operation,uint256 safeTxGas,"
        "uint256 baseGas,uint256 gasPrice,address gasToken,address refundReceiver,uint256 nonce)"
    )
)

# Safe treats v > 30 as an eth_sign signature over the prefixed message hash.
ETH_SIGN_V_OFFSET = 4


def safe_domain_separator(*, chain_id: int, safe_address: str) -> bytes:
    return keccak(
        abi_encode(
            ["bytes32", "uint256", "address"],
            [DOMAIN_SEPARATOR_TYPEHASH, chain_id, to_checksum_address(safe_address)],
        )
    )


@dataclass(slots=True, frozen=True)
class SafeTransaction:
    safe_address: str
    chain_id: int
    to: str
    value: int
    data: bytes
    nonce: int
    operation: int = OPERATION_CALL
    safe_tx_gas: int = 0
    base_gas: int = 0
    gas_price: int = 0
    gas_token: str = ZERO_ADDRESS
    refund_receiver: str = ZERO_ADDRESS

    def struct_hash(self) -> bytes:
        return keccak(
            abi_encode(
                [
                    "bytes32",
                    "address",
                    "uint256",
                    "bytes32",
                    "uint8",
                    "uint256",
                    "uint256",
                    "uint256",
                    "address",
                    "address",
                    "uint256",
                ],
                [
                    SAFE_TX_TYPEHASH,
                    to_checksum_address(self.to),
                    self.value,
                    keccak(self.data),
                    self.operation,
                    self.safe_tx_gas,
                    self.base_gas,
                    self.gas_price,
                    to_checksum_address(self.gas_token),
                    to_checksum_address(self.refund_receiver),
                    self.nonce,
                ],
            )
        )

    def safe_tx_hash(self) -> bytes:
        domain = safe_domain_separator(chain_id=self.chain_id, safe_address=self.safe_address)
        return keccak(b"\x19\x01" + domain + self.struct_hash())


@dataclass(slots=True, frozen=True)
class SignedSafeTransaction:
    transaction: SafeTransaction
    signatures: dict[str, bytes] = field(default_factory=dict)

    @property
    def nonce(self) -> int:
        return self.transaction.nonce

    def encoded_signatures(self) -> bytes:
        # Safe.checkSignatures requires owners in strictly ascending order.
        owners = sorted(self.signatures, key=lambda owner: int(owner, 16))
        return b"".join(self.signatures[owner] for owner in owners)


def sign_safe_tx_hash(safe_tx_hash: bytes, private_key: str) -> tuple[str, bytes]:
    """Sign ``safe_tx_hash`` the way ``SigningMethod.ETH_SIGN`` does.

    Returns the owner address and the 65-byte ``r || s || v`` signature with
    ``v`` shifted into the eth_sign range.
    """
    account = Account.from_key(private_key)
    signed = Account.sign_message(encode_defunct(primitive=safe_tx_hash), private_key=private_key)
    signature = (
        signed.r.to_bytes(32, "big")
        + signed.s.to_bytes(32, "big")
        + bytes([signed.v + ETH_SIGN_V_OFFSET])
    )
    return account.address, signature


def recover_eth_sign_owner(safe_tx_hash: bytes, signature: bytes) -> str:
    r = int.from_bytes(signature[:32], "big")
    s = int.from_bytes(signature[32:64], "big")
    v = signature[64] - ETH_SIGN_V_OFFSET
    return Account.recover_message(encode_defunct(primitive=safe_tx_hash), vrs=(v, r, s))


def encode_exec_transaction(signed: SignedSafeTransaction) -> bytes:
    tx = signed.transaction
    return encode_call(
        SAFE_EXEC_TRANSACTION,
        {
            "to": tx.to,
            "value": tx.value,
            "data": tx.data,
            "operation": tx.operation,
            "safeTxGas": tx.safe_tx_gas,
            "baseGas": tx.base_gas,
            "gasPrice": tx.gas_price,
            "gasToken": tx.gas_token,
            "refundReceiver": tx.refund_receiver,
            "signatures": signed.encoded_signatures(),
        },
    )
