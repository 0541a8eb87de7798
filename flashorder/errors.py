from __future__ import annotations

from enum import Enum


class WorkflowStage(str, Enum):
    PLANNING = "planning"
    QUOTED = "quoted"
    VALIDATED = "validated"
    SUBMITTED = "submitted"
    AUTHORIZED = "authorized"
    ABORTED = "aborted"


class FlashOrderError(RuntimeError):
    """Base class for workflow failures.

    ``stage`` records how far the workflow got before the failure, which
    tells an operator what on-chain state (an unauthorized order, nothing at
    all) may already exist.
    """

    retryable = False

    def __init__(self, message: str, *, stage: WorkflowStage | None = None) -> None:
        super().__init__(message)
        self.stage = stage

    def __str__(self) -> str:
        message = super().__str__()
        if self.stage is None:
            return message
        return f"[{self.stage.value}] {message}"


class ConfigError(FlashOrderError):
    def __init__(self, problems: list[str]) -> None:
        super().__init__("Invalid configuration: " + "; ".join(problems))
        self.problems = list(problems)


class EncodingError(FlashOrderError):
    pass


class NonceConflict(FlashOrderError):
    retryable = True

    def __init__(
        self,
        message: str,
        *,
        expected_nonce: int | None = None,
        observed_nonce: int | None = None,
        stage: WorkflowStage | None = None,
    ) -> None:
        super().__init__(message, stage=stage)
        self.expected_nonce = expected_nonce
        self.observed_nonce = observed_nonce


class SignatureFailure(FlashOrderError):
    pass


class MetadataError(FlashOrderError):
    pass


class HookOrderError(MetadataError):
    pass


class QuoteUnavailable(FlashOrderError):
    retryable = True


class BudgetExceeded(FlashOrderError):
    retryable = True

    def __init__(self, *, sell_amount: int, ceiling: int, stage: WorkflowStage | None = None) -> None:
        super().__init__(
            f"Quoted sell amount {sell_amount} exceeds the collateral ceiling {ceiling}",
            stage=stage,
        )
        self.sell_amount = sell_amount
        self.ceiling = ceiling


class SubmissionFailure(FlashOrderError):
    pass


class PresignExecutionFailure(FlashOrderError):
    def __init__(
        self,
        message: str,
        *,
        order_id: str,
        tx_hash: str | None = None,
        stage: WorkflowStage | None = None,
    ) -> None:
        super().__init__(message, stage=stage)
        self.order_id = order_id
        self.tx_hash = tx_hash


class WorkflowInterrupted(FlashOrderError):
    """Failure from outside the workflow, such as a Safe service outage or an RPC error."""

    def __init__(self, message: str, *, cause_type: str, stage: WorkflowStage | None = None) -> None:
        super().__init__(message, stage=stage)
        self.cause_type = cause_type
