from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any, Awaitable, Callable, Protocol, TypeVar

import aiohttp
from eth_utils import to_bytes, to_checksum_address

from ..common import RetryExhaustedError, RetryPolicy, log_event, retry_async
from ..contracts import SETTLEMENT_SET_PRESIGNATURE, encode_call
from .app_data import OrderMetadata
from .types import (
    SIGNING_SCHEME_PRESIGN,
    Amounts,
    AmountsAndCosts,
    AuthorizationCall,
    OrderKind,
    Quote,
    TradeIntent,
    to_int,
)

T = TypeVar("T")

COW_API_BASE_URLS = {
    "prod": "https://api.cow.fi",
    "staging": "https://barn.api.cow.fi",
}

COW_NETWORK_SLUGS = {
    1: "mainnet",
    100: "xdai",
    8453: "base",
    42161: "arbitrum_one",
    11155111: "sepolia",
}

# owner-bound uid: 32-byte order digest, 20-byte owner, 4-byte validTo
ORDER_UID_RE = re.compile(r"^0x[0-9a-fA-F]{112}$")

DUPLICATE_ORDER_ERROR_TYPES = {"DuplicatedOrder", "DuplicateOrder"}
INACTIVE_ORDER_STATUSES = {"cancelled", "expired"}


class VenueRateLimitError(RuntimeError):
    def __init__(self, message: str, *, retry_after_seconds: float | None = None) -> None:
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


class VenueTransientError(RuntimeError):
    pass


class VenueRejectedError(RuntimeError):
    def __init__(self, message: str, *, error_type: str | None = None, status: int | None = None) -> None:
        super().__init__(message)
        self.error_type = error_type
        self.status = status


class VenueDuplicateOrderError(VenueRejectedError):
    pass


RETRYABLE_VENUE_ERRORS: tuple[type[BaseException], ...] = (
    VenueRateLimitError,
    VenueTransientError,
)


def network_api_url(chain_id: int, env: str) -> str:
    base_url = COW_API_BASE_URLS.get(env)
    if base_url is None:
        raise ValueError(f"Unknown venue environment {env!r}")
    slug = COW_NETWORK_SLUGS.get(chain_id)
    if slug is None:
        raise ValueError(f"Chain {chain_id} is not served by the order book API")
    return f"{base_url}/{slug}"


def is_order_uid(value: Any) -> bool:
    return isinstance(value, str) and ORDER_UID_RE.match(value) is not None


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


def _error_fields(payload: Any) -> tuple[str | None, str]:
    if isinstance(payload, dict):
        error_type = payload.get("errorType")
        description = payload.get("description") or payload.get("message") or ""
        return (str(error_type) if error_type else None, str(description))
    return None, str(payload)


def classify_response(*, status: int, payload: Any, retry_after_seconds: float | None, context: str) -> None:
    """Raise the venue error matching a non-2xx response; return for success."""
    if status < 400:
        return
    error_type, description = _error_fields(payload)
    detail = f"{context} failed: status={status} errorType={error_type} description={description!r}"
    if status == 429:
        raise VenueRateLimitError(detail, retry_after_seconds=retry_after_seconds)
    # The order book intermittently answers 404 for resources that exist.
    if status == 404 or status >= 500:
        raise VenueTransientError(detail)
    if error_type in DUPLICATE_ORDER_ERROR_TYPES:
        raise VenueDuplicateOrderError(detail, error_type=error_type, status=status)
    raise VenueRejectedError(detail, error_type=error_type, status=status)


def compute_amounts_and_costs(
    *,
    kind: OrderKind,
    sell_amount: int,
    buy_amount: int,
    fee_amount: int,
    slippage_bps: int,
) -> AmountsAndCosts:
    """Derive the amounts the order is signed with from a raw quote.

    The network fee is charged in the sell token. Slippage widens the side
    the trader does not fix: buy orders may spend more, sell orders may
    receive less.
    """
    is_sell = kind == "sell"
    fee_in_buy = (fee_amount * buy_amount) // sell_amount if sell_amount > 0 else 0

    before = Amounts(
        sell_amount=sell_amount,
        buy_amount=buy_amount + fee_in_buy if is_sell else buy_amount,
    )
    after_network = Amounts(sell_amount=sell_amount + fee_amount, buy_amount=buy_amount)
    if is_sell:
        slippage = (after_network.buy_amount * slippage_bps) // 10_000
        after_slippage = Amounts(
            sell_amount=after_network.sell_amount,
            buy_amount=after_network.buy_amount - slippage,
        )
    else:
        slippage = (after_network.sell_amount * slippage_bps) // 10_000
        after_slippage = Amounts(
            sell_amount=after_network.sell_amount + slippage,
            buy_amount=after_network.buy_amount,
        )

    return AmountsAndCosts(
        is_sell=is_sell,
        before_network_costs=before,
        after_network_costs=after_network,
        after_slippage=after_slippage,
        network_fee_in_sell_currency=fee_amount,
        network_fee_in_buy_currency=fee_in_buy,
        slippage_bps=slippage_bps,
    )


def build_quote_request(
    intent: TradeIntent,
    *,
    from_address: str,
    signing_scheme: str,
    metadata: OrderMetadata,
) -> dict[str, Any]:
    body: dict[str, Any] = {
        "sellToken": to_checksum_address(intent.sell_token),
        "buyToken": to_checksum_address(intent.buy_token),
        "receiver": to_checksum_address(intent.receiver),
        "from": to_checksum_address(from_address),
        "kind": intent.kind,
        "validFor": intent.valid_for_seconds,
        "appData": metadata.content,
        "appDataHash": metadata.app_data_hash,
        "partiallyFillable": False,
        "sellTokenBalance": "erc20",
        "buyTokenBalance": "erc20",
        "signingScheme": signing_scheme,
        "priceQuality": "optimal",
    }
    if intent.kind == "buy":
        body["buyAmountAfterFee"] = str(intent.amount)
    else:
        body["sellAmountBeforeFee"] = str(intent.amount)
    return body


def build_order_body(
    intent: TradeIntent,
    quote: Quote,
    *,
    owner: str,
    signing_scheme: str,
    metadata: OrderMetadata,
) -> dict[str, Any]:
    owner_address = to_checksum_address(owner)
    if signing_scheme != SIGNING_SCHEME_PRESIGN:
        raise ValueError(f"Only the {SIGNING_SCHEME_PRESIGN!r} signing scheme is supported")
    limits = quote.after_slippage
    return {
        "sellToken": to_checksum_address(intent.sell_token),
        "buyToken": to_checksum_address(intent.buy_token),
        "receiver": to_checksum_address(intent.receiver),
        "sellAmount": str(limits.sell_amount),
        "buyAmount": str(limits.buy_amount),
        "validTo": quote.valid_to,
        "appData": metadata.content,
        "appDataHash": metadata.app_data_hash,
        "feeAmount": "0",
        "kind": intent.kind,
        "partiallyFillable": False,
        "sellTokenBalance": "erc20",
        "buyTokenBalance": "erc20",
        "signingScheme": signing_scheme,
        # Presigned orders carry the owner address in place of a signature.
        "signature": owner_address.lower(),
        "from": owner_address,
        "quoteId": quote.quote_id,
    }


def parse_quote(payload: Any, *, kind: OrderKind, slippage_bps: int) -> Quote:
    quote_body = payload.get("quote") if isinstance(payload, dict) else None
    if not isinstance(quote_body, dict):
        raise VenueRejectedError(f"Quote response is missing the quote body: {payload!r}")
    sell_amount = to_int(quote_body.get("sellAmount"), -1)
    buy_amount = to_int(quote_body.get("buyAmount"), -1)
    fee_amount = to_int(quote_body.get("feeAmount"), 0)
    if sell_amount <= 0 or buy_amount <= 0:
        raise VenueRejectedError(f"Quote response carries no usable amounts: {quote_body!r}")

    return Quote(
        quote_id=payload.get("id"),
        sell_amount=sell_amount,
        buy_amount=buy_amount,
        fee_amount=fee_amount,
        valid_to=to_int(quote_body.get("validTo"), 0),
        amounts_and_costs=compute_amounts_and_costs(
            kind=kind,
            sell_amount=sell_amount,
            buy_amount=buy_amount,
            fee_amount=fee_amount,
            slippage_bps=slippage_bps,
        ),
        raw=payload,
    )


def build_authorization_call(*, settlement_contract: str, order_id: str) -> AuthorizationCall:
    return AuthorizationCall(
        to=to_checksum_address(settlement_contract),
        value=0,
        data=encode_call(
            SETTLEMENT_SET_PRESIGNATURE,
            {"orderUid": to_bytes(hexstr=order_id), "signed": True},
        ),
    )


class TradeVenue(Protocol):
    async def quote(
        self,
        intent: TradeIntent,
        *,
        from_address: str,
        signing_scheme: str,
        metadata: OrderMetadata,
    ) -> Quote:
        ...

    async def submit_order(
        self,
        intent: TradeIntent,
        quote: Quote,
        *,
        owner: str,
        signing_scheme: str,
        metadata: OrderMetadata,
    ) -> str:
        ...

    async def find_order(self, *, owner: str, app_data_hash: str, intent: TradeIntent) -> str | None:
        ...

    def build_authorization_transaction(self, order_id: str, account: str) -> AuthorizationCall:
        ...


class CowOrderbookClient:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        api_url: str,
        settlement_contract: str,
        slippage_bps: int = 50,
        retry_policy: RetryPolicy | None = None,
        timeout_seconds: float = 15.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._logger = logger
        self._api_url = api_url.rstrip("/")
        self._settlement_contract = to_checksum_address(settlement_contract)
        self._slippage_bps = max(0, int(slippage_bps))
        self._retry_policy = retry_policy or RetryPolicy(max_attempts=4, backoff_seconds=1.0)
        self._timeout_seconds = timeout_seconds
        self._sleep = sleep
        self._session: aiohttp.ClientSession | None = None

    async def connect(self) -> None:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self._timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def _request(
        self,
        method: str,
        path: str,
        *,
        context: str,
        json_body: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        if self._session is None:
            await self.connect()
        if self._session is None:
            raise RuntimeError("Order book HTTP session is not initialized.")

        url = f"{self._api_url}{path}"
        try:
            async with self._session.request(method, url, json=json_body, params=params) as response:
                status = response.status
                retry_after_seconds = _parse_retry_after_seconds(response.headers.get("Retry-After"))
                body = await response.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as error:
            raise VenueTransientError(f"{context} failed: {error}") from error

        try:
            payload: Any = json.loads(body) if body else None
        except json.JSONDecodeError:
            payload = body

        classify_response(
            status=status,
            payload=payload,
            retry_after_seconds=retry_after_seconds,
            context=context,
        )
        return payload

    async def _with_retry(self, action: Callable[[], Awaitable[T]], *, event: str) -> T:
        return await retry_async(
            action,
            policy=self._retry_policy,
            logger=self._logger,
            event=event,
            retry_on=RETRYABLE_VENUE_ERRORS,
            sleep=self._sleep,
        )

    async def quote(
        self,
        intent: TradeIntent,
        *,
        from_address: str,
        signing_scheme: str,
        metadata: OrderMetadata,
    ) -> Quote:
        body = build_quote_request(
            intent,
            from_address=from_address,
            signing_scheme=signing_scheme,
            metadata=metadata,
        )
        payload = await self._with_retry(
            lambda: self._request("POST", "/api/v1/quote", context="Quote request", json_body=body),
            event="venue_quote",
        )
        quote = parse_quote(payload, kind=intent.kind, slippage_bps=self._slippage_bps)
        log_event(
            self._logger,
            level="info",
            event="venue_quote_received",
            message="Received quote",
            quote=quote.compact(),
        )
        return quote

    async def submit_order(
        self,
        intent: TradeIntent,
        quote: Quote,
        *,
        owner: str,
        signing_scheme: str,
        metadata: OrderMetadata,
    ) -> str:
        body = build_order_body(
            intent,
            quote,
            owner=owner,
            signing_scheme=signing_scheme,
            metadata=metadata,
        )
        payload = await self._request("POST", "/api/v1/orders", context="Order submission", json_body=body)
        if not is_order_uid(payload):
            raise VenueRejectedError(f"Order submission returned an unexpected payload: {payload!r}")
        return payload

    async def find_order(self, *, owner: str, app_data_hash: str, intent: TradeIntent) -> str | None:
        owner_address = to_checksum_address(owner)
        payload = await self._with_retry(
            lambda: self._request(
                "GET",
                f"/api/v1/account/{owner_address}/orders",
                context="Order lookup",
                params={"offset": "0", "limit": "50"},
            ),
            event="venue_order_lookup",
        )
        if not isinstance(payload, list):
            return None

        wanted_hash = app_data_hash.lower()
        for order in payload:
            if not isinstance(order, dict):
                continue
            if str(order.get("appData") or "").lower() != wanted_hash:
                continue
            if str(order.get("sellToken") or "").lower() != intent.sell_token.lower():
                continue
            if str(order.get("buyToken") or "").lower() != intent.buy_token.lower():
                continue
            if str(order.get("status") or "") in INACTIVE_ORDER_STATUSES:
                continue
            uid = order.get("uid")
            if is_order_uid(uid):
                return uid
        return None

    def build_authorization_transaction(self, order_id: str, account: str) -> AuthorizationCall:
        call = build_authorization_call(settlement_contract=self._settlement_contract, order_id=order_id)
        log_event(
            self._logger,
            level="debug",
            event="venue_presign_call_built",
            message="Built presign call",
            order_id=order_id,
            account=account,
            settlement_contract=call.to,
        )
        return call
