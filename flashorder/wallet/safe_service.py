from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Protocol, TypeVar

import aiohttp
from eth_account import Account
from eth_utils import to_checksum_address

from ..common import RetryExhaustedError, RetryPolicy, log_event, retry_async
from ..contracts import SAFE_NONCE, encode_call
from ..errors import EncodingError, SignatureFailure
from .safe_tx import SafeTransaction, SignedSafeTransaction, encode_exec_transaction, sign_safe_tx_hash

T = TypeVar("T")

SAFE_TX_SERVICE_URLS = {
    1: "https://safe-transaction-mainnet.safe.global",
    100: "https://safe-transaction-gnosis-chain.safe.global",
    8453: "https://safe-transaction-base.safe.global",
    42161: "https://safe-transaction-arbitrum.safe.global",
    11155111: "https://safe-transaction-sepolia.safe.global",
}

RETRYABLE_HTTP_STATUSES = {429, 500, 502, 503, 504}


class WalletTransportError(RuntimeError):
    def __init__(self, message: str, *, retry_after_seconds: float | None = None) -> None:
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


class TransactionRevertedError(RuntimeError):
    def __init__(self, message: str, *, tx_hash: str) -> None:
        super().__init__(message)
        self.tx_hash = tx_hash


class TransactionPendingConfirmationError(RuntimeError):
    def __init__(self, message: str, *, tx_hash: str) -> None:
        super().__init__(message)
        self.tx_hash = tx_hash


def _to_int(value: Any) -> int:
    if isinstance(value, str) and value.startswith("0x"):
        return int(value, 16)
    return int(value)


def _parse_retry_after_seconds(raw: str | None) -> float | None:
    if raw is None:
        return None
    value = raw.strip()
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return seconds if seconds > 0 else None


def _is_rate_limit_message(message: str) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in ("rate limit", "too many requests", "-32005"))


@dataclass(slots=True, frozen=True)
class WalletAccount:
    address: str
    chain_id: int
    nonce: int
    threshold: int
    owners: tuple[str, ...]

    def is_owner(self, address: str) -> bool:
        candidate = address.lower()
        return any(owner.lower() == candidate for owner in self.owners)


@dataclass(slots=True, frozen=True)
class ExecutionReceipt:
    tx_hash: str
    block_number: int | None
    gas_used: int | None
    status: int


class WalletService(Protocol):
    async def current_nonce(self) -> int:
        ...

    async def build_transaction(self, target: str, value: int, calldata: bytes, nonce: int) -> SafeTransaction:
        ...

    async def sign(self, transaction: SafeTransaction) -> SignedSafeTransaction:
        ...

    async def encode(self, signed: SignedSafeTransaction) -> bytes:
        ...

    async def execute(self, signed: SignedSafeTransaction) -> ExecutionReceipt:
        ...


class SafeWalletService:
    """Safe multisig access through the Transaction Service and JSON-RPC.

    Transactions are built and signed locally; only ``execute`` broadcasts.
    """

    def __init__(
        self,
        *,
        logger: logging.Logger,
        safe_address: str,
        chain_id: int,
        rpc_url: str,
        tx_service_url: str,
        signer_private_keys: list[str],
        executor_private_key: str = "",
        retry_policy: RetryPolicy | None = None,
        timeout_seconds: float = 15.0,
        gas_limit: int = 200_000,
        max_fee_per_gas: int = 0,
        max_priority_fee_per_gas: int = 0,
        receipt_timeout_seconds: float = 120.0,
        receipt_poll_interval_seconds: float = 2.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._logger = logger
        self._safe_address = to_checksum_address(safe_address)
        self._chain_id = chain_id
        self._rpc_url = rpc_url.strip()
        self._tx_service_url = tx_service_url.rstrip("/")
        self._signer_private_keys = [key.strip() for key in signer_private_keys if key.strip()]
        self._executor_private_key = executor_private_key.strip() or (
            self._signer_private_keys[0] if self._signer_private_keys else ""
        )
        self._retry_policy = retry_policy or RetryPolicy()
        self._timeout_seconds = timeout_seconds
        self._gas_limit = gas_limit
        self._max_fee_per_gas = max_fee_per_gas
        self._max_priority_fee_per_gas = max_priority_fee_per_gas
        self._receipt_timeout_seconds = receipt_timeout_seconds
        self._receipt_poll_interval_seconds = receipt_poll_interval_seconds
        self._sleep = sleep
        self._session: aiohttp.ClientSession | None = None
        self._account: WalletAccount | None = None

    @property
    def safe_address(self) -> str:
        return self._safe_address

    async def connect(self) -> None:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self._timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def _with_retry(self, action: Callable[[], Awaitable[T]], *, event: str) -> T:
        try:
            return await retry_async(
                action,
                policy=self._retry_policy,
                logger=self._logger,
                event=event,
                retry_on=(WalletTransportError,),
                sleep=self._sleep,
                safe=self._safe_address,
            )
        except RetryExhaustedError as error:
            raise WalletTransportError(str(error)) from error.last_error

    async def _get_json(self, path: str, params: dict[str, Any] | None = None) -> Any:
        if self._session is None:
            await self.connect()
        if self._session is None:
            raise RuntimeError("Safe service HTTP session is not initialized.")

        url = f"{self._tx_service_url}{path}"
        try:
            async with self._session.get(url, params=params) as response:
                status = response.status
                retry_after_seconds = _parse_retry_after_seconds(response.headers.get("Retry-After"))
                body = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as error:
            raise WalletTransportError(f"Safe service request failed: {error}") from error

        if status in RETRYABLE_HTTP_STATUSES:
            raise WalletTransportError(
                f"Safe service returned status={status} for {path}",
                retry_after_seconds=retry_after_seconds,
            )
        if status >= 400:
            raise RuntimeError(f"Safe service request failed: path={path} status={status} body={body}")
        return body

    async def _rpc_call(self, method: str, params: list[Any] | None = None) -> Any:
        if self._session is None:
            await self.connect()
        if self._session is None:
            raise RuntimeError("RPC HTTP session is not initialized.")

        payload: dict[str, Any] = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": method,
            "params": params or [],
        }

        try:
            async with self._session.post(self._rpc_url, json=payload) as response:
                status = response.status
                retry_after_seconds = _parse_retry_after_seconds(response.headers.get("Retry-After"))
                body = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as error:
            raise WalletTransportError(f"RPC call failed: method={method} error={error}") from error

        if status in RETRYABLE_HTTP_STATUSES:
            raise WalletTransportError(
                f"RPC call failed: method={method} status={status}",
                retry_after_seconds=retry_after_seconds,
            )
        if status >= 400:
            raise RuntimeError(f"RPC call failed: method={method} status={status} body={body}")
        if not isinstance(body, dict):
            raise RuntimeError(f"Invalid RPC response for {method}: {body}")

        error_payload = body.get("error")
        if error_payload:
            message = str(error_payload.get("message") if isinstance(error_payload, dict) else error_payload)
            code = error_payload.get("code") if isinstance(error_payload, dict) else None
            if code == -32005 or _is_rate_limit_message(message):
                raise WalletTransportError(f"RPC rate limited for {method}: {message}")
            raise RuntimeError(f"RPC error for {method}: {message}")

        return body.get("result")

    async def load_account(self) -> WalletAccount:
        async def fetch() -> Any:
            return await self._get_json(f"/api/v1/safes/{self._safe_address}/")

        info = await self._with_retry(fetch, event="safe_info_fetch")
        if not isinstance(info, dict):
            raise RuntimeError(f"Unexpected Safe info payload: {info}")

        account = WalletAccount(
            address=self._safe_address,
            chain_id=self._chain_id,
            nonce=_to_int(info.get("nonce", 0)),
            threshold=_to_int(info.get("threshold", 1)),
            owners=tuple(to_checksum_address(owner) for owner in info.get("owners") or []),
        )
        self._account = account
        return account

    async def current_nonce(self) -> int:
        """Next usable Safe nonce, counting transactions already queued."""
        account = await self.load_account()

        async def fetch_queued() -> Any:
            return await self._get_json(
                f"/api/v1/safes/{self._safe_address}/multisig-transactions/",
                params={
                    "executed": "false",
                    "nonce__gte": str(account.nonce),
                    "ordering": "-nonce",
                    "limit": "1",
                },
            )

        queued = await self._with_retry(fetch_queued, event="safe_queue_fetch")
        results = queued.get("results") if isinstance(queued, dict) else None
        next_nonce = account.nonce
        if isinstance(results, list) and results:
            next_nonce = max(next_nonce, _to_int(results[0].get("nonce", 0)) + 1)

        log_event(
            self._logger,
            level="info",
            event="safe_nonce_read",
            message="Read Safe nonce",
            safe=self._safe_address,
            onchain_nonce=account.nonce,
            next_nonce=next_nonce,
            threshold=account.threshold,
        )
        return next_nonce

    async def onchain_nonce(self) -> int:
        async def call() -> Any:
            return await self._rpc_call(
                "eth_call",
                [{"to": self._safe_address, "data": "0x" + encode_call(SAFE_NONCE).hex()}, "latest"],
            )

        result = await self._with_retry(call, event="safe_onchain_nonce")
        return _to_int(result)

    async def build_transaction(self, target: str, value: int, calldata: bytes, nonce: int) -> SafeTransaction:
        return SafeTransaction(
            safe_address=self._safe_address,
            chain_id=self._chain_id,
            to=to_checksum_address(target),
            value=value,
            data=bytes(calldata),
            nonce=nonce,
        )

    async def sign(self, transaction: SafeTransaction) -> SignedSafeTransaction:
        account = self._account or await self.load_account()
        if not self._signer_private_keys:
            raise SignatureFailure("No Safe owner key is configured for signing.")

        safe_tx_hash = transaction.safe_tx_hash()
        signatures: dict[str, bytes] = {}
        for private_key in self._signer_private_keys:
            try:
                owner, signature = sign_safe_tx_hash(safe_tx_hash, private_key)
            except (ValueError, TypeError) as error:
                raise SignatureFailure(f"Signer key could not be used: {type(error).__name__}") from error
            if account.owners and not account.is_owner(owner):
                log_event(
                    self._logger,
                    level="warning",
                    event="safe_signer_not_owner",
                    message="Configured signer is not a Safe owner; ignoring its signature",
                    safe=self._safe_address,
                    signer=owner,
                )
                continue
            signatures[owner] = signature

        if len(signatures) < account.threshold:
            raise SignatureFailure(
                f"Collected {len(signatures)} owner signature(s) but the Safe threshold is {account.threshold}"
            )
        return SignedSafeTransaction(transaction=transaction, signatures=signatures)

    async def encode(self, signed: SignedSafeTransaction) -> bytes:
        try:
            return encode_exec_transaction(signed)
        except EncodingError:
            raise
        except (ValueError, TypeError) as error:
            raise EncodingError(f"Signed Safe transaction could not be encoded: {error}") from error

    async def _resolve_fees(self) -> tuple[int, int]:
        if self._max_fee_per_gas > 0 and self._max_priority_fee_per_gas > 0:
            return self._max_fee_per_gas, self._max_priority_fee_per_gas

        priority = self._max_priority_fee_per_gas
        if priority <= 0:
            priority = _to_int(
                await self._with_retry(
                    lambda: self._rpc_call("eth_maxPriorityFeePerGas"),
                    event="rpc_priority_fee",
                )
            )
        if self._max_fee_per_gas > 0:
            return self._max_fee_per_gas, priority

        block = await self._with_retry(
            lambda: self._rpc_call("eth_getBlockByNumber", ["latest", False]),
            event="rpc_latest_block",
        )
        base_fee = _to_int((block or {}).get("baseFeePerGas", "0x0"))
        return base_fee * 2 + priority, priority

    async def _send_raw_transaction(self, raw_transaction: bytes, *, tx_hash: str) -> str:
        async def send() -> str:
            try:
                result = await self._rpc_call("eth_sendRawTransaction", ["0x" + bytes(raw_transaction).hex()])
            except RuntimeError as error:
                if isinstance(error, WalletTransportError):
                    raise
                # A resend of bytes the node already holds.
                if "already known" in str(error).lower():
                    return tx_hash
                raise
            return str(result or tx_hash)

        return await self._with_retry(send, event="rpc_send_raw_transaction")

    async def _wait_for_receipt(self, tx_hash: str) -> ExecutionReceipt:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._receipt_timeout_seconds
        while True:
            receipt = await self._with_retry(
                lambda: self._rpc_call("eth_getTransactionReceipt", [tx_hash]),
                event="rpc_receipt_fetch",
            )
            if isinstance(receipt, dict):
                status = _to_int(receipt.get("status", "0x0"))
                result = ExecutionReceipt(
                    tx_hash=tx_hash,
                    block_number=_to_int(receipt["blockNumber"]) if receipt.get("blockNumber") else None,
                    gas_used=_to_int(receipt["gasUsed"]) if receipt.get("gasUsed") else None,
                    status=status,
                )
                if status != 1:
                    raise TransactionRevertedError(f"Transaction {tx_hash} reverted", tx_hash=tx_hash)
                return result
            if loop.time() >= deadline:
                raise TransactionPendingConfirmationError(
                    f"Transaction {tx_hash} was not confirmed within {self._receipt_timeout_seconds}s",
                    tx_hash=tx_hash,
                )
            await self._sleep(self._receipt_poll_interval_seconds)

    async def execute(self, signed: SignedSafeTransaction) -> ExecutionReceipt:
        if not self._executor_private_key:
            raise SignatureFailure("No executor key is configured for broadcasting Safe transactions.")

        sender = Account.from_key(self._executor_private_key)
        calldata = await self.encode(signed)
        sender_nonce = _to_int(
            await self._with_retry(
                lambda: self._rpc_call("eth_getTransactionCount", [sender.address, "pending"]),
                event="rpc_sender_nonce",
            )
        )
        max_fee_per_gas, max_priority_fee_per_gas = await self._resolve_fees()

        transaction = {
            "type": 2,
            "chainId": self._chain_id,
            "nonce": sender_nonce,
            "to": self._safe_address,
            "value": 0,
            "data": "0x" + calldata.hex(),
            "gas": self._gas_limit,
            "maxFeePerGas": max_fee_per_gas,
            "maxPriorityFeePerGas": max_priority_fee_per_gas,
        }
        signed_tx = Account.sign_transaction(transaction, self._executor_private_key)
        raw = getattr(signed_tx, "raw_transaction", None) or getattr(signed_tx, "rawTransaction", None)
        tx_hash = "0x" + bytes(signed_tx.hash).hex()

        log_event(
            self._logger,
            level="info",
            event="safe_tx_broadcast",
            message="Broadcasting Safe transaction",
            safe=self._safe_address,
            safe_nonce=signed.nonce,
            tx_hash=tx_hash,
            sender=sender.address,
            gas_limit=self._gas_limit,
            max_fee_per_gas=max_fee_per_gas,
        )
        await self._send_raw_transaction(raw, tx_hash=tx_hash)
        receipt = await self._wait_for_receipt(tx_hash)
        log_event(
            self._logger,
            level="info",
            event="safe_tx_confirmed",
            message="Safe transaction confirmed",
            safe=self._safe_address,
            tx_hash=tx_hash,
            block_number=receipt.block_number,
        )
        return receipt
