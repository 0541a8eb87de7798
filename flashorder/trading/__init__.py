from .app_data import FlashLoanPlan, OrderMetadata, assemble_order_metadata
from .controller import OrderLifecycleController, PlannedOrder
from .guard import BudgetGuard
from .types import (
    Amounts,
    AmountsAndCosts,
    AuthorizationCall,
    ManualAuthorizationInstructions,
    Quote,
    TradeIntent,
    WorkflowConfig,
    WorkflowResult,
)
from .venue import (
    CowOrderbookClient,
    TradeVenue,
    VenueDuplicateOrderError,
    VenueRateLimitError,
    VenueRejectedError,
    VenueTransientError,
    compute_amounts_and_costs,
    network_api_url,
)

__all__ = [
    "Amounts",
    "AmountsAndCosts",
    "AuthorizationCall",
    "BudgetGuard",
    "CowOrderbookClient",
    "FlashLoanPlan",
    "ManualAuthorizationInstructions",
    "OrderLifecycleController",
    "OrderMetadata",
    "PlannedOrder",
    "Quote",
    "TradeIntent",
    "TradeVenue",
    "VenueDuplicateOrderError",
    "VenueRateLimitError",
    "VenueRejectedError",
    "VenueTransientError",
    "WorkflowConfig",
    "WorkflowResult",
    "assemble_order_metadata",
    "compute_amounts_and_costs",
    "network_api_url",
]
