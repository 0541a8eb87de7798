from __future__ import annotations

import logging

from ..common import RetryExhaustedError, log_event
from ..errors import BudgetExceeded, QuoteUnavailable
from .app_data import OrderMetadata
from .types import Quote, TradeIntent
from .venue import RETRYABLE_VENUE_ERRORS, TradeVenue, VenueRejectedError


class BudgetGuard:
    """Last check on the trade's cost before anything irreversible happens."""

    def __init__(self, *, logger: logging.Logger, ceiling: int) -> None:
        if ceiling < 0:
            raise ValueError(f"Spending ceiling must be non-negative, got {ceiling}")
        self._logger = logger
        self.ceiling = ceiling

    async def fetch_quote(
        self,
        venue: TradeVenue,
        intent: TradeIntent,
        *,
        from_address: str,
        signing_scheme: str,
        metadata: OrderMetadata,
    ) -> Quote:
        try:
            return await venue.quote(
                intent,
                from_address=from_address,
                signing_scheme=signing_scheme,
                metadata=metadata,
            )
        except VenueRejectedError as error:
            raise QuoteUnavailable(f"Venue declined to quote: {error}") from error
        except RetryExhaustedError as error:
            raise QuoteUnavailable(f"Quote retries exhausted: {error.last_error}") from error
        except RETRYABLE_VENUE_ERRORS as error:
            raise QuoteUnavailable(f"Quote request failed: {error}") from error

    def check(self, quote: Quote) -> None:
        sell_amount = quote.after_slippage.sell_amount
        if sell_amount > self.ceiling:
            log_event(
                self._logger,
                level="error",
                event="budget_exceeded",
                message="Cost exceeds the collateral",
                sell_amount=str(sell_amount),
                ceiling=str(self.ceiling),
            )
            raise BudgetExceeded(sell_amount=sell_amount, ceiling=self.ceiling)

        log_event(
            self._logger,
            level="info",
            event="budget_check_passed",
            message="Quoted cost is within the collateral ceiling",
            sell_amount=str(sell_amount),
            ceiling=str(self.ceiling),
            headroom=str(self.ceiling - sell_amount),
        )
