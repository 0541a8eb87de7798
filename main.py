from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from dataclasses import replace

from dotenv import load_dotenv

from flashorder.common import guarded_call, log_event
from flashorder.errors import ConfigError, FlashOrderError
from flashorder.runtime import AppSettings, setup_logger
from flashorder.trading import (
    CowOrderbookClient,
    ManualAuthorizationInstructions,
    OrderLifecycleController,
    WorkflowResult,
)
from flashorder.wallet import SafeWalletService


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Create a flash-loan backed CoW Protocol order for a Safe, pre-signing the "
            "repay and withdraw hooks at the next reserved nonces."
        )
    )
    parser.add_argument(
        "--authorization-mode",
        choices=("manual", "automated"),
        default=None,
        help="Override AUTHORIZATION_MODE. Manual leaves setPreSignature to the Safe owners.",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging level (default: INFO).",
    )
    return parser.parse_args(argv)


def log_manual_instructions(logger: logging.Logger, instructions: ManualAuthorizationInstructions) -> None:
    log_event(
        logger,
        level="warning",
        event="manual_authorization_required",
        message=(
            "Open the Safe UI, go to Transaction Builder, target the settlement contract, "
            f"call {instructions.method}(orderUid, true) with the order uid, and execute it at "
            f"nonce {instructions.reserved_nonce} before any other Safe transaction"
        ),
        **instructions.to_dict(),
    )


def report_result(logger: logging.Logger, result: WorkflowResult) -> None:
    log_event(
        logger,
        level="info",
        event="workflow_finished",
        message=f"Workflow finished in state {result.state.value}",
        result=result.to_dict(),
    )
    if result.authorization_pending and result.manual_instructions is not None:
        log_manual_instructions(logger, result.manual_instructions)


async def run(settings: AppSettings, logger: logging.Logger) -> int:
    config = settings.workflow_config()

    wallet = SafeWalletService(
        logger=logger,
        safe_address=config.safe_address,
        chain_id=config.chain_id,
        rpc_url=settings.rpc_url,
        tx_service_url=settings.safe_tx_service_url,
        signer_private_keys=settings.signer_private_keys,
        executor_private_key=settings.executor_private_key,
        retry_policy=config.wallet_retry,
        timeout_seconds=settings.http_timeout_seconds,
        gas_limit=config.presign_gas_limit,
        max_fee_per_gas=settings.max_fee_per_gas,
        max_priority_fee_per_gas=settings.max_priority_fee_per_gas,
        receipt_timeout_seconds=settings.receipt_timeout_seconds,
        receipt_poll_interval_seconds=settings.receipt_poll_interval_seconds,
    )
    venue = CowOrderbookClient(
        logger=logger,
        api_url=settings.cow_api_url,
        settlement_contract=config.settlement_contract,
        slippage_bps=config.slippage_bps,
        retry_policy=config.venue_retry,
        timeout_seconds=settings.http_timeout_seconds,
    )

    log_event(
        logger,
        level="info",
        event="workflow_started",
        message="Flash-loan order workflow started",
        chain_id=config.chain_id,
        safe_address=config.safe_address,
        venue_env=config.venue_env,
        authorization_mode=config.authorization_mode,
        spending_ceiling=str(config.spending_ceiling),
    )

    controller = OrderLifecycleController(logger=logger, config=config, wallet=wallet, venue=venue)

    try:
        await wallet.connect()
        await venue.connect()
        try:
            result = await controller.run()
        except FlashOrderError as error:
            log_event(
                logger,
                level="error",
                event="workflow_aborted",
                message="Workflow aborted",
                stage=error.stage.value if error.stage else None,
                error_type=getattr(error, "cause_type", type(error).__name__),
                error=str(error),
            )
            return 1
        except Exception as error:
            log_event(
                logger,
                level="exception",
                event="workflow_aborted",
                message="Workflow aborted on an unexpected error",
                stage=controller.failed_stage.value if controller.failed_stage else None,
                error_type=type(error).__name__,
                error=str(error),
            )
            return 1
        report_result(logger, result)
        return 0
    finally:
        await guarded_call(
            wallet.close,
            logger=logger,
            event="wallet_close_failed",
            message="Failed to close the Safe wallet client",
        )
        await guarded_call(
            venue.close,
            logger=logger,
            event="venue_close_failed",
            message="Failed to close the orderbook client",
        )


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    args = parse_args(argv)
    logger = setup_logger(getattr(logging, str(args.log_level).upper(), logging.INFO))

    settings = AppSettings.from_env()
    if args.authorization_mode:
        settings = replace(settings, authorization_mode=args.authorization_mode)

    try:
        settings.validate()
    except ConfigError as error:
        log_event(
            logger,
            level="error",
            event="config_invalid",
            message="Configuration is invalid",
            problems=error.problems,
        )
        return 2

    return asyncio.run(run(settings, logger))


if __name__ == "__main__":
    sys.exit(main())
