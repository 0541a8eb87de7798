from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from ..common import RetryExhaustedError, guarded_call, log_event, retry_async
from ..contracts import POOL_REPAY, POOL_WITHDRAW, encode_call
from ..errors import (
    FlashOrderError,
    NonceConflict,
    PresignExecutionFailure,
    SubmissionFailure,
    WorkflowInterrupted,
    WorkflowStage,
)
from ..wallet import (
    NonceReservation,
    ReservationRequest,
    ReservedTransaction,
    ReservedTransactionBuilder,
    WalletService,
    reserve_nonces,
)
from .app_data import REPAY_ACTION, WITHDRAW_ACTION, FlashLoanPlan, OrderMetadata, assemble_order_metadata
from .guard import BudgetGuard
from .types import (
    SIGNING_SCHEME_PRESIGN,
    ManualAuthorizationInstructions,
    Quote,
    TradeIntent,
    WorkflowConfig,
    WorkflowResult,
)
from .venue import RETRYABLE_VENUE_ERRORS, TradeVenue, VenueDuplicateOrderError, VenueRejectedError


@dataclass(slots=True, frozen=True)
class PlannedOrder:
    nonces: NonceReservation
    hooks: tuple[ReservedTransaction, ...]
    metadata: OrderMetadata
    intent: TradeIntent


class OrderLifecycleController:
    """Drives one flash-loan order from nonce planning to presignature.

    ``run`` walks planning -> quoted -> validated -> submitted -> authorized.
    A nonce that moves underneath the plan restarts from planning; any other
    workflow error aborts and is re-raised with the stage it happened in.
    Failures from outside the workflow (Safe service, RPC, signing library)
    are wrapped in ``WorkflowInterrupted`` so they carry a stage too.
    """

    def __init__(
        self,
        *,
        logger: logging.Logger,
        config: WorkflowConfig,
        wallet: WalletService,
        venue: TradeVenue,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._logger = logger
        self._config = config
        self._wallet = wallet
        self._venue = venue
        self._sleep = sleep
        self._builder = ReservedTransactionBuilder(logger=logger, wallet=wallet)
        self._guard = BudgetGuard(logger=logger, ceiling=config.spending_ceiling)
        self.stage = WorkflowStage.PLANNING
        self.failed_stage: WorkflowStage | None = None
        self.history: list[WorkflowStage] = []

    def _transition(self, stage: WorkflowStage, **fields: Any) -> None:
        previous = self.stage
        self.stage = stage
        self.history.append(stage)
        log_event(
            self._logger,
            level="info",
            event="workflow_stage",
            message=f"Workflow entered {stage.value}",
            previous_stage=previous.value,
            stage=stage.value,
            **fields,
        )

    def _abort(self, error: FlashOrderError) -> None:
        failed_stage = self.stage
        self.failed_stage = failed_stage
        if error.stage is None:
            error.stage = failed_stage
        self._transition(
            WorkflowStage.ABORTED,
            failed_stage=failed_stage.value,
            error_type=type(error).__name__,
            error=str(error),
        )

    async def run(self) -> WorkflowResult:
        replans = 0
        while True:
            self._transition(WorkflowStage.PLANNING, replan=replans)
            try:
                return await self._run_once(replans=replans)
            except NonceConflict as error:
                if replans >= self._config.max_replans:
                    self._abort(error)
                    raise
                replans += 1
                log_event(
                    self._logger,
                    level="warning",
                    event="workflow_replan",
                    message="Safe nonce moved underneath the plan; re-planning from scratch",
                    stage=self.stage.value,
                    replan=replans,
                    max_replans=self._config.max_replans,
                    expected_nonce=error.expected_nonce,
                    observed_nonce=error.observed_nonce,
                )
            except FlashOrderError as error:
                self._abort(error)
                raise
            except Exception as error:
                interrupted = WorkflowInterrupted(
                    f"{type(error).__name__}: {error}",
                    cause_type=type(error).__name__,
                )
                self._abort(interrupted)
                raise interrupted from error

    async def _run_once(self, *, replans: int) -> WorkflowResult:
        planned = await self.plan()

        quote = await self._guard.fetch_quote(
            self._venue,
            planned.intent,
            from_address=self._config.safe_address,
            signing_scheme=SIGNING_SCHEME_PRESIGN,
            metadata=planned.metadata,
        )
        self._transition(WorkflowStage.QUOTED, sell_amount_after_slippage=str(quote.after_slippage.sell_amount))

        self._guard.check(quote)
        self._transition(WorkflowStage.VALIDATED)

        await self._ensure_nonce(planned.nonces.base_nonce, purpose="submission")
        order_id = await self._submit(planned, quote)
        self._transition(WorkflowStage.SUBMITTED, order_id=order_id)

        return await self._authorize(planned, quote, order_id, replans=replans)

    async def plan(self) -> PlannedOrder:
        config = self._config
        current_nonce = await self._wallet.current_nonce()
        nonces = reserve_nonces(current_nonce, automated_authorization=config.automated_authorization)
        log_event(
            self._logger,
            level="info",
            event="nonces_reserved",
            message="Reserved Safe nonces for the presign transaction and pre-hooks",
            current_nonce=current_nonce,
            authorization_nonce=nonces.authorization,
            authorization_external=nonces.authorization_external,
            repay_hook_nonce=nonces.repay_hook,
            withdraw_hook_nonce=nonces.withdraw_hook,
        )

        repay_calldata = encode_call(
            POOL_REPAY,
            {
                "asset": config.borrowed_token,
                "amount": config.borrowed_amount,
                "interestRateMode": config.interest_rate_mode,
                "onBehalfOf": config.safe_address,
            },
        )
        withdraw_calldata = encode_call(
            POOL_WITHDRAW,
            {
                "asset": config.collateral_token,
                "amount": config.collateral_amount,
                "to": config.safe_address,
            },
        )
        hooks = await self._builder.build_many(
            [
                ReservationRequest(
                    action=REPAY_ACTION,
                    target=config.lending_pool,
                    calldata=repay_calldata,
                    nonce=nonces.repay_hook,
                ),
                ReservationRequest(
                    action=WITHDRAW_ACTION,
                    target=config.lending_pool,
                    calldata=withdraw_calldata,
                    nonce=nonces.withdraw_hook,
                ),
            ]
        )

        metadata = assemble_order_metadata(
            FlashLoanPlan(
                lender=config.lending_pool,
                token=config.borrowed_token,
                amount=config.borrowed_amount,
                pre_hooks=tuple(hooks),
            ),
            signer=config.safe_address,
            app_code=config.app_code,
            hook_target=config.safe_address,
            hook_gas_limit=config.hook_gas_limit,
        )
        log_event(
            self._logger,
            level="info",
            event="order_metadata_assembled",
            message="Built order app data",
            app_data_hash=metadata.app_data_hash,
            hook_count=len(hooks),
        )
        return PlannedOrder(
            nonces=nonces,
            hooks=tuple(hooks),
            metadata=metadata,
            intent=config.trade_intent(),
        )

    async def _ensure_nonce(self, expected: int, *, purpose: str) -> None:
        observed = await self._wallet.current_nonce()
        if observed != expected:
            raise NonceConflict(
                f"Safe nonce is {observed} before {purpose} but the plan was built on {expected}",
                expected_nonce=expected,
                observed_nonce=observed,
            )

    async def _submit(self, planned: PlannedOrder, quote: Quote) -> str:
        owner = self._config.safe_address

        async def submit() -> str:
            return await self._venue.submit_order(
                planned.intent,
                quote,
                owner=owner,
                signing_scheme=SIGNING_SCHEME_PRESIGN,
                metadata=planned.metadata,
            )

        async def find_existing(attempt: int) -> str | None:
            return await guarded_call(
                lambda: self._venue.find_order(
                    owner=owner,
                    app_data_hash=planned.metadata.app_data_hash,
                    intent=planned.intent,
                ),
                logger=self._logger,
                event="order_lookup_failed",
                message="Could not check for an existing order before retrying submission",
                attempt=attempt,
            )

        try:
            return await retry_async(
                submit,
                policy=self._config.venue_retry,
                logger=self._logger,
                event="order_submission",
                retry_on=RETRYABLE_VENUE_ERRORS,
                before_retry=find_existing,
                sleep=self._sleep,
                app_data_hash=planned.metadata.app_data_hash,
            )
        except VenueDuplicateOrderError as error:
            existing = await find_existing(0)
            if existing is not None:
                log_event(
                    self._logger,
                    level="info",
                    event="order_submission_duplicate_adopted",
                    message="Venue already holds this order; adopting it",
                    order_id=existing,
                )
                return existing
            raise SubmissionFailure(f"Venue reports a duplicate order that cannot be found: {error}") from error
        except VenueRejectedError as error:
            raise SubmissionFailure(f"Venue rejected the order: {error}") from error
        except RetryExhaustedError as error:
            # The last attempt may have landed even though its response was lost.
            existing = await find_existing(error.attempts + 1)
            if existing is not None:
                log_event(
                    self._logger,
                    level="info",
                    event="order_submission_late_adopted",
                    message="Order submission retries ran out but the venue holds the order; adopting it",
                    order_id=existing,
                    attempts=error.attempts,
                )
                return existing
            raise SubmissionFailure(
                f"Order submission failed after {error.attempts} attempts: {error.last_error}"
            ) from error

    def _manual_instructions(self, planned: PlannedOrder, order_id: str) -> ManualAuthorizationInstructions:
        return ManualAuthorizationInstructions(
            safe_address=self._config.safe_address,
            settlement_contract=self._config.settlement_contract,
            method="setPreSignature",
            order_id=order_id,
            reserved_nonce=planned.nonces.authorization,
            gas_limit=self._config.presign_gas_limit,
        )

    async def _authorize(
        self,
        planned: PlannedOrder,
        quote: Quote,
        order_id: str,
        *,
        replans: int,
    ) -> WorkflowResult:
        if planned.nonces.authorization_external:
            log_event(
                self._logger,
                level="info",
                event="authorization_pending_manual",
                message="Order submitted; presignature is left to the Safe owners",
                order_id=order_id,
                reserved_nonce=planned.nonces.authorization,
            )
            return WorkflowResult(
                state=WorkflowStage.SUBMITTED,
                order_id=order_id,
                app_data_hash=planned.metadata.app_data_hash,
                nonces=planned.nonces,
                amounts=quote.amounts_and_costs,
                authorization_pending=True,
                manual_instructions=self._manual_instructions(planned, order_id),
                replans=replans,
            )

        await self._ensure_nonce(planned.nonces.authorization, purpose="presignature")
        try:
            call = self._venue.build_authorization_transaction(order_id, self._config.safe_address)
            transaction = await self._wallet.build_transaction(
                call.to,
                call.value,
                call.data,
                planned.nonces.authorization,
            )
            signed = await self._wallet.sign(transaction)
            receipt = await self._wallet.execute(signed)
        except NonceConflict:
            raise
        except (RuntimeError, ValueError) as error:
            failure = PresignExecutionFailure(
                f"Automated presignature failed: {error}",
                order_id=order_id,
                tx_hash=getattr(error, "tx_hash", None),
                stage=WorkflowStage.SUBMITTED,
            )
            log_event(
                self._logger,
                level="error",
                event="authorization_degraded_to_manual",
                message="Automated presignature failed; the order stays valid for manual presigning",
                order_id=order_id,
                tx_hash=failure.tx_hash,
                error_type=type(error).__name__,
                error=str(error),
            )
            return WorkflowResult(
                state=WorkflowStage.SUBMITTED,
                order_id=order_id,
                app_data_hash=planned.metadata.app_data_hash,
                nonces=planned.nonces,
                amounts=quote.amounts_and_costs,
                authorization_pending=True,
                authorization_tx_hash=failure.tx_hash,
                authorization_error=str(failure),
                manual_instructions=self._manual_instructions(planned, order_id),
                replans=replans,
            )

        self._transition(WorkflowStage.AUTHORIZED, order_id=order_id, tx_hash=receipt.tx_hash)
        return WorkflowResult(
            state=WorkflowStage.AUTHORIZED,
            order_id=order_id,
            app_data_hash=planned.metadata.app_data_hash,
            nonces=planned.nonces,
            amounts=quote.amounts_and_costs,
            authorization_pending=False,
            authorization_tx_hash=receipt.tx_hash,
            replans=replans,
        )
