from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from ..common import log_event
from ..errors import EncodingError, NonceConflict, SignatureFailure
from .safe_service import WalletService


@dataclass(slots=True, frozen=True)
class ReservationRequest:
    action: str
    target: str
    calldata: bytes
    nonce: int
    value: int = 0


@dataclass(slots=True, frozen=True)
class ReservedTransaction:
    action: str
    target: str
    value: int
    calldata: bytes
    nonce: int
    safe_tx_hash: str
    encoded_payload: str


class ReservedTransactionBuilder:
    def __init__(self, *, logger: logging.Logger, wallet: WalletService) -> None:
        self._logger = logger
        self._wallet = wallet

    async def build(self, request: ReservationRequest) -> ReservedTransaction:
        transaction = await self._wallet.build_transaction(
            request.target,
            request.value,
            request.calldata,
            request.nonce,
        )
        signed = await self._wallet.sign(transaction)
        try:
            encoded = await self._wallet.encode(signed)
        except (EncodingError, SignatureFailure):
            raise
        except (ValueError, TypeError) as error:
            raise EncodingError(f"{request.action}: signed transaction could not be encoded: {error}") from error

        reserved = ReservedTransaction(
            action=request.action,
            target=request.target,
            value=request.value,
            calldata=bytes(request.calldata),
            nonce=request.nonce,
            safe_tx_hash="0x" + transaction.safe_tx_hash().hex(),
            encoded_payload="0x" + bytes(encoded).hex(),
        )
        log_event(
            self._logger,
            level="info",
            event="reserved_tx_built",
            message="Pre-signed transaction reserved",
            action=request.action,
            target=request.target,
            nonce=request.nonce,
            safe_tx_hash=reserved.safe_tx_hash,
        )
        return reserved

    async def build_many(self, requests: list[ReservationRequest]) -> list[ReservedTransaction]:
        # Nonces are fixed on the requests, so build order cannot affect them.
        nonces = [request.nonce for request in requests]
        if len(set(nonces)) != len(nonces):
            raise NonceConflict(f"Reservation requests share a nonce: {nonces}")
        return list(await asyncio.gather(*(self.build(request) for request in requests)))
