from __future__ import annotations

import itertools
import logging
import unittest
from dataclasses import replace
from unittest.mock import AsyncMock, MagicMock

from flashorder.common import RetryPolicy
from flashorder.errors import (
    BudgetExceeded,
    NonceConflict,
    QuoteUnavailable,
    SubmissionFailure,
    WorkflowInterrupted,
    WorkflowStage,
)
from flashorder.trading import (
    OrderLifecycleController,
    Quote,
    VenueDuplicateOrderError,
    VenueRateLimitError,
    VenueRejectedError,
    VenueTransientError,
    WorkflowConfig,
    compute_amounts_and_costs,
)
from flashorder.trading.venue import build_authorization_call
from flashorder.wallet import (
    ExecutionReceipt,
    SafeTransaction,
    SignedSafeTransaction,
    TransactionRevertedError,
    WalletTransportError,
)
from flashorder.wallet.safe_tx import encode_exec_transaction, sign_safe_tx_hash

SAFE = "0x1000000000000000000000000000000000000001"
POOL = "0x2000000000000000000000000000000000000002"
COLLATERAL = "0x3000000000000000000000000000000000000003"
BORROWED = "0x4000000000000000000000000000000000000004"
SETTLEMENT = "0x9008D19f58AAbD9eD0D60971565AA8510560ab41"
OWNER_KEY = "0x" + "11" * 32
ORDER_UID = "0x" + "ab" * 56
PRESIGN_TX_HASH = "0x" + "cd" * 32
CEILING = 10_000_000_000


def _make_config(**overrides: object) -> WorkflowConfig:
    config = WorkflowConfig(
        chain_id=11155111,
        safe_address=SAFE,
        app_code="flashloan-presign",
        settlement_contract=SETTLEMENT,
        lending_pool=POOL,
        collateral_token=COLLATERAL,
        collateral_token_decimals=18,
        collateral_amount=CEILING,
        borrowed_token=BORROWED,
        borrowed_token_decimals=6,
        borrowed_amount=2_500_000,
        buy_amount=2_500_000,
        wallet_retry=RetryPolicy(max_attempts=2, backoff_seconds=0.01),
        venue_retry=RetryPolicy(max_attempts=3, backoff_seconds=0.01),
    )
    return replace(config, **overrides)


def _make_quote(sell_amount: int) -> Quote:
    return Quote(
        quote_id=1,
        sell_amount=sell_amount,
        buy_amount=2_500_000,
        fee_amount=0,
        valid_to=1_900_000_000,
        amounts_and_costs=compute_amounts_and_costs(
            kind="buy",
            sell_amount=sell_amount,
            buy_amount=2_500_000,
            fee_amount=0,
            slippage_bps=0,
        ),
    )


class FakeWallet:
    def __init__(self, nonces: object = None) -> None:
        self.current_nonce = AsyncMock(side_effect=nonces) if nonces is not None else AsyncMock(return_value=5)
        self.execute = AsyncMock(
            return_value=ExecutionReceipt(tx_hash=PRESIGN_TX_HASH, block_number=10, gas_used=60_000, status=1)
        )
        self.built: list[SafeTransaction] = []

    async def build_transaction(self, target: str, value: int, calldata: bytes, nonce: int) -> SafeTransaction:
        transaction = SafeTransaction(
            safe_address=SAFE,
            chain_id=11155111,
            to=target,
            value=value,
            data=bytes(calldata),
            nonce=nonce,
        )
        self.built.append(transaction)
        return transaction

    async def sign(self, transaction: SafeTransaction) -> SignedSafeTransaction:
        owner, signature = sign_safe_tx_hash(transaction.safe_tx_hash(), OWNER_KEY)
        return SignedSafeTransaction(transaction=transaction, signatures={owner: signature})

    async def encode(self, signed: SignedSafeTransaction) -> bytes:
        return encode_exec_transaction(signed)


def _make_venue(*, quote_sell_amount: int = 9_000_000_000) -> MagicMock:
    venue = MagicMock()
    venue.quote = AsyncMock(return_value=_make_quote(quote_sell_amount))
    venue.submit_order = AsyncMock(return_value=ORDER_UID)
    venue.find_order = AsyncMock(return_value=None)
    venue.build_authorization_transaction = MagicMock(
        side_effect=lambda order_id, account: build_authorization_call(
            settlement_contract=SETTLEMENT,
            order_id=order_id,
        )
    )
    return venue


class OrderLifecycleTests(unittest.IsolatedAsyncioTestCase):
    def _controller(self, *, wallet: FakeWallet, venue: MagicMock, **overrides: object) -> OrderLifecycleController:
        return OrderLifecycleController(
            logger=logging.getLogger("test.lifecycle"),
            config=_make_config(**overrides),
            wallet=wallet,
            venue=venue,
            sleep=AsyncMock(),
        )

    async def test_plan_reserves_hooks_after_the_current_nonce(self) -> None:
        wallet = FakeWallet()
        controller = self._controller(wallet=wallet, venue=_make_venue())

        planned = await controller.plan()

        self.assertEqual(planned.nonces.authorization, 5)
        self.assertEqual([hook.action for hook in planned.hooks], ["repay", "withdraw"])
        self.assertEqual([hook.nonce for hook in planned.hooks], [6, 7])
        self.assertTrue(all(tx.to == POOL for tx in wallet.built))
        self.assertEqual(planned.hooks[0].calldata[:4].hex(), "573ade81")
        self.assertEqual(planned.hooks[1].calldata[:4].hex(), "69328dec")
        self.assertEqual(planned.intent.receiver, SETTLEMENT)
        self.assertEqual(planned.intent.sell_token, COLLATERAL)

    async def test_plan_is_deterministic(self) -> None:
        first = await self._controller(wallet=FakeWallet(), venue=_make_venue()).plan()
        second = await self._controller(wallet=FakeWallet(), venue=_make_venue()).plan()

        self.assertEqual(first.metadata.content, second.metadata.content)
        self.assertEqual(first.metadata.app_data_hash, second.metadata.app_data_hash)

    async def test_cost_above_collateral_aborts_before_submission(self) -> None:
        venue = _make_venue(quote_sell_amount=CEILING + 1)
        controller = self._controller(wallet=FakeWallet(), venue=venue)

        with self.assertRaises(BudgetExceeded) as caught:
            await controller.run()

        self.assertEqual(caught.exception.stage, WorkflowStage.QUOTED)
        self.assertEqual(controller.stage, WorkflowStage.ABORTED)
        venue.submit_order.assert_not_awaited()
        venue.build_authorization_transaction.assert_not_called()

    async def test_cost_equal_to_collateral_proceeds_in_manual_mode(self) -> None:
        wallet = FakeWallet()
        venue = _make_venue(quote_sell_amount=CEILING)
        controller = self._controller(wallet=wallet, venue=venue)

        result = await controller.run()

        self.assertEqual(result.state, WorkflowStage.SUBMITTED)
        self.assertEqual(result.order_id, ORDER_UID)
        self.assertTrue(result.authorization_pending)
        self.assertIsNotNone(result.manual_instructions)
        self.assertEqual(result.manual_instructions.reserved_nonce, 5)
        self.assertEqual(result.manual_instructions.method, "setPreSignature")
        self.assertEqual(result.nonces.hook_nonces, (6, 7))
        self.assertEqual(
            controller.history,
            [WorkflowStage.PLANNING, WorkflowStage.QUOTED, WorkflowStage.VALIDATED, WorkflowStage.SUBMITTED],
        )
        venue.submit_order.assert_awaited_once()
        wallet.execute.assert_not_awaited()
        self.assertEqual([tx.nonce for tx in wallet.built], [6, 7])

    async def test_submission_carries_app_data_of_the_plan(self) -> None:
        venue = _make_venue()
        controller = self._controller(wallet=FakeWallet(), venue=venue)

        result = await controller.run()

        submitted_metadata = venue.submit_order.await_args.kwargs["metadata"]
        self.assertEqual(submitted_metadata.app_data_hash, result.app_data_hash)
        self.assertEqual(venue.submit_order.await_args.kwargs["owner"], SAFE)
        self.assertEqual(venue.submit_order.await_args.kwargs["signing_scheme"], "presign")

    async def test_quote_failure_aborts_during_planning(self) -> None:
        venue = _make_venue()
        venue.quote = AsyncMock(side_effect=VenueRejectedError("no liquidity"))
        controller = self._controller(wallet=FakeWallet(), venue=venue)

        with self.assertRaises(QuoteUnavailable) as caught:
            await controller.run()

        self.assertEqual(caught.exception.stage, WorkflowStage.PLANNING)
        venue.submit_order.assert_not_awaited()

    async def test_rate_limited_submission_exhausts_retries(self) -> None:
        venue = _make_venue()
        venue.submit_order = AsyncMock(side_effect=VenueRateLimitError("slow down", retry_after_seconds=0.0))
        controller = self._controller(wallet=FakeWallet(), venue=venue)

        with self.assertRaises(SubmissionFailure) as caught:
            await controller.run()

        self.assertEqual(venue.submit_order.await_count, 3)
        self.assertEqual(venue.find_order.await_count, 3)
        self.assertEqual(caught.exception.stage, WorkflowStage.VALIDATED)
        self.assertEqual(controller.stage, WorkflowStage.ABORTED)

    async def test_order_found_after_the_last_attempt_is_adopted(self) -> None:
        venue = _make_venue()
        venue.submit_order = AsyncMock(side_effect=VenueTransientError("timeout"))
        venue.find_order = AsyncMock(side_effect=[None, None, ORDER_UID])
        controller = self._controller(wallet=FakeWallet(), venue=venue)

        result = await controller.run()

        self.assertEqual(result.order_id, ORDER_UID)
        self.assertEqual(result.state, WorkflowStage.SUBMITTED)
        self.assertEqual(venue.submit_order.await_count, 3)
        self.assertEqual(venue.find_order.await_count, 3)
        self.assertIn(WorkflowStage.SUBMITTED, controller.history)

    async def test_retry_adopts_order_that_already_landed(self) -> None:
        venue = _make_venue()
        venue.submit_order = AsyncMock(side_effect=VenueTransientError("timeout"))
        venue.find_order = AsyncMock(return_value=ORDER_UID)
        controller = self._controller(wallet=FakeWallet(), venue=venue)

        result = await controller.run()

        self.assertEqual(result.order_id, ORDER_UID)
        venue.submit_order.assert_awaited_once()
        venue.find_order.assert_awaited_once()

    async def test_failed_lookup_does_not_block_the_retry(self) -> None:
        venue = _make_venue()
        venue.submit_order = AsyncMock(side_effect=[VenueTransientError("timeout"), ORDER_UID])
        venue.find_order = AsyncMock(side_effect=VenueTransientError("lookup timeout"))
        controller = self._controller(wallet=FakeWallet(), venue=venue)

        result = await controller.run()

        self.assertEqual(result.order_id, ORDER_UID)
        self.assertEqual(venue.submit_order.await_count, 2)

    async def test_duplicate_order_is_adopted(self) -> None:
        venue = _make_venue()
        venue.submit_order = AsyncMock(side_effect=VenueDuplicateOrderError("exists", error_type="DuplicatedOrder"))
        venue.find_order = AsyncMock(return_value=ORDER_UID)
        controller = self._controller(wallet=FakeWallet(), venue=venue)

        result = await controller.run()

        self.assertEqual(result.order_id, ORDER_UID)

    async def test_unfindable_duplicate_fails_submission(self) -> None:
        venue = _make_venue()
        venue.submit_order = AsyncMock(side_effect=VenueDuplicateOrderError("exists", error_type="DuplicatedOrder"))
        controller = self._controller(wallet=FakeWallet(), venue=venue)

        with self.assertRaises(SubmissionFailure):
            await controller.run()

    async def test_rejected_order_fails_without_retry(self) -> None:
        venue = _make_venue()
        venue.submit_order = AsyncMock(side_effect=VenueRejectedError("bad order", status=400))
        controller = self._controller(wallet=FakeWallet(), venue=venue)

        with self.assertRaises(SubmissionFailure):
            await controller.run()
        venue.submit_order.assert_awaited_once()

    async def test_automated_authorization_presigns_at_the_base_nonce(self) -> None:
        wallet = FakeWallet()
        venue = _make_venue()
        controller = self._controller(wallet=wallet, venue=venue, authorization_mode="automated")

        result = await controller.run()

        self.assertEqual(result.state, WorkflowStage.AUTHORIZED)
        self.assertFalse(result.authorization_pending)
        self.assertEqual(result.authorization_tx_hash, PRESIGN_TX_HASH)
        wallet.execute.assert_awaited_once()
        executed = wallet.execute.await_args.args[0]
        self.assertEqual(executed.nonce, 5)
        self.assertEqual(executed.transaction.to, SETTLEMENT)
        self.assertEqual(executed.transaction.data[:4].hex(), "ec6cb13f")
        self.assertEqual(controller.history[-1], WorkflowStage.AUTHORIZED)

    async def test_failed_presign_degrades_to_manual(self) -> None:
        wallet = FakeWallet()
        wallet.execute = AsyncMock(side_effect=TransactionRevertedError("reverted", tx_hash="0xdead"))
        controller = self._controller(wallet=wallet, venue=_make_venue(), authorization_mode="automated")

        result = await controller.run()

        self.assertEqual(result.state, WorkflowStage.SUBMITTED)
        self.assertTrue(result.authorization_pending)
        self.assertEqual(result.authorization_tx_hash, "0xdead")
        self.assertIn("reverted", result.authorization_error or "")
        self.assertEqual(result.manual_instructions.reserved_nonce, 5)
        self.assertNotEqual(controller.stage, WorkflowStage.ABORTED)

    async def test_undecodable_order_uid_degrades_to_manual(self) -> None:
        wallet = FakeWallet()
        venue = _make_venue()
        venue.build_authorization_transaction = MagicMock(side_effect=ValueError("Non-hexadecimal digit found"))
        controller = self._controller(wallet=wallet, venue=venue, authorization_mode="automated")

        result = await controller.run()

        self.assertEqual(result.state, WorkflowStage.SUBMITTED)
        self.assertTrue(result.authorization_pending)
        self.assertIn("Non-hexadecimal", result.authorization_error or "")
        self.assertEqual(result.manual_instructions.reserved_nonce, 5)
        wallet.execute.assert_not_awaited()

    async def test_wallet_outage_aborts_with_the_stage_it_hit(self) -> None:
        wallet = FakeWallet(nonces=[5, RuntimeError("Safe service request failed: status=404")])
        venue = _make_venue()
        controller = self._controller(wallet=wallet, venue=venue)

        with self.assertRaises(WorkflowInterrupted) as caught:
            await controller.run()

        self.assertEqual(caught.exception.stage, WorkflowStage.VALIDATED)
        self.assertEqual(caught.exception.cause_type, "RuntimeError")
        self.assertIsInstance(caught.exception.__cause__, RuntimeError)
        self.assertEqual(controller.failed_stage, WorkflowStage.VALIDATED)
        self.assertEqual(controller.stage, WorkflowStage.ABORTED)
        venue.submit_order.assert_not_awaited()

    async def test_wallet_outage_during_planning_reports_planning(self) -> None:
        wallet = FakeWallet(nonces=[WalletTransportError("status=503")])
        controller = self._controller(wallet=wallet, venue=_make_venue())

        with self.assertRaises(WorkflowInterrupted) as caught:
            await controller.run()

        self.assertEqual(caught.exception.stage, WorkflowStage.PLANNING)
        self.assertEqual(caught.exception.cause_type, "WalletTransportError")
        self.assertEqual(controller.failed_stage, WorkflowStage.PLANNING)

    async def test_moved_nonce_triggers_a_fresh_plan(self) -> None:
        # plan reads 5, the pre-submission check sees 6, then the second plan
        # and its pre-submission check both read 6.
        wallet = FakeWallet(nonces=[5, 6, 6, 6])
        venue = _make_venue()
        controller = self._controller(wallet=wallet, venue=venue)

        result = await controller.run()

        self.assertEqual(result.replans, 1)
        self.assertEqual(result.nonces.authorization, 6)
        self.assertEqual(result.nonces.hook_nonces, (7, 8))
        venue.submit_order.assert_awaited_once()
        self.assertEqual(venue.quote.await_count, 2)

        replanned = sorted(wallet.built[2:], key=lambda transaction: transaction.nonce)
        self.assertEqual([transaction.nonce for transaction in replanned], [7, 8])
        expected_payloads = []
        for transaction in replanned:
            signed = await wallet.sign(transaction)
            expected_payloads.append("0x" + (await wallet.encode(signed)).hex())

        submitted_metadata = venue.submit_order.await_args.kwargs["metadata"]
        pre_hooks = submitted_metadata.document["metadata"]["hooks"]["pre"]
        self.assertEqual([hook["callData"] for hook in pre_hooks], expected_payloads)
        self.assertEqual(submitted_metadata.app_data_hash, result.app_data_hash)

    async def test_nonce_that_keeps_moving_aborts(self) -> None:
        wallet = FakeWallet(nonces=itertools.count(5))
        venue = _make_venue()
        controller = self._controller(wallet=wallet, venue=venue, max_replans=1)

        with self.assertRaises(NonceConflict):
            await controller.run()

        self.assertEqual(controller.stage, WorkflowStage.ABORTED)
        venue.submit_order.assert_not_awaited()

    async def test_nonce_moved_before_presign_replans(self) -> None:
        wallet = FakeWallet(nonces=[5, 5, 6, 6, 6, 6])
        venue = _make_venue()
        controller = self._controller(wallet=wallet, venue=venue, authorization_mode="automated")

        result = await controller.run()

        self.assertEqual(result.replans, 1)
        self.assertEqual(result.state, WorkflowStage.AUTHORIZED)
        self.assertEqual(wallet.execute.await_args.args[0].nonce, 6)


if __name__ == "__main__":
    unittest.main()
