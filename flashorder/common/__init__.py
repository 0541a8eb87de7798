from .async_utils import RetryExhaustedError, RetryPolicy, guarded_call, retry_async
from .logging import log_event

__all__ = [
    "RetryExhaustedError",
    "RetryPolicy",
    "guarded_call",
    "log_event",
    "retry_async",
]
