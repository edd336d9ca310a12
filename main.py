from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import signal
import sys
from decimal import Decimal, InvalidOperation
from typing import Sequence

from dotenv import load_dotenv

from token_seller.common import RetryPolicy
from token_seller.runtime import AppSettings, SaleRequest, TokenSeller, setup_logger
from token_seller.runtime.session import STRATEGIES
from token_seller.trading import (
    FeeCollector,
    QuoteOptimizer,
    RetryableHttpClient,
    SolanaRpcGateway,
    SwapExecutor,
    TokenSellerError,
    TradingBackend,
    TransactionSubmitter,
    TransactionUnconfirmed,
    WalletService,
)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_UNKNOWN = 2
EXIT_INTERRUPTED = 130


def _decimal_arg(value: str) -> Decimal:
    try:
        amount = Decimal(value)
    except InvalidOperation:
        raise argparse.ArgumentTypeError(f"not a number: {value!r}") from None
    if not amount.is_finite() or amount <= 0:
        raise argparse.ArgumentTypeError("amount must be a positive number")
    return amount


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Sell a Solana SPL token through Jupiter.")
    parser.add_argument("--amount", type=_decimal_arg, required=True, help="token amount to sell (UI units)")
    parser.add_argument("--output-token", default="SOL", help="SOL, USDC or USDT")
    parser.add_argument("--strategy", default="immediate", choices=STRATEGIES)
    parser.add_argument("--no-fee", action="store_true", help="skip service fee collection")
    parser.add_argument("--dry-run", action="store_true", help="fetch a quote without sending transactions")
    return parser.parse_args(argv)


async def run_sale(*, logger: logging.Logger, app_settings: AppSettings, request: SaleRequest) -> int:
    signer = app_settings.signer()

    backend_http = RetryableHttpClient(
        logger=logger,
        base_url=app_settings.api_base_url,
        timeout_seconds=app_settings.api_timeout_seconds,
        max_retries=app_settings.max_retries,
        retry_base_delay_ms=app_settings.retry_base_delay_ms,
    )
    swap_http = RetryableHttpClient(
        logger=logger,
        base_url=app_settings.jupiter_swap_api,
        timeout_seconds=app_settings.api_timeout_seconds,
        max_retries=app_settings.max_retries,
        retry_base_delay_ms=app_settings.retry_base_delay_ms,
    )
    rpc = SolanaRpcGateway(
        logger=logger,
        rpc_url=app_settings.solana_rpc_url,
        priority_fee=app_settings.priority_fee_settings(),
    )

    backend = TradingBackend(logger=logger, http=backend_http)
    wallet = WalletService(logger=logger, backend=backend, public_key=app_settings.resolved_public_key())
    optimizer = QuoteOptimizer(
        logger=logger,
        backend=backend,
        slippage_tiers=app_settings.slippage_tiers,
        max_price_impact_pct=app_settings.max_price_impact_pct,
    )

    executor: SwapExecutor | None = None
    if app_settings.swap_mode == "local":
        submitter = TransactionSubmitter(logger=logger, rpc=rpc)
        executor = SwapExecutor(
            logger=logger,
            swap_http=swap_http,
            rpc=rpc,
            submitter=submitter,
            fee_collector=FeeCollector(
                logger=logger,
                rpc=rpc,
                submitter=submitter,
                settings=app_settings.fee_settings(),
            ),
            confirm_policy=RetryPolicy.for_total_tries(
                app_settings.confirm_max_attempts,
                base_delay_ms=app_settings.confirm_base_delay_ms,
            ),
        )

    seller = TokenSeller(
        logger=logger,
        settings=app_settings,
        backend=backend,
        wallet=wallet,
        optimizer=optimizer,
        signer=signer,
        executor=executor,
    )

    try:
        await backend_http.connect()
        if executor is not None:
            await swap_http.connect()
            await rpc.connect()

        await seller.validate_environment()
        summary = await seller.sell(request)
        logger.info(
            "Execution summary",
            extra={"event": "execution_summary", **summary.to_dict()},
        )
        return EXIT_OK if summary.success else EXIT_FAILED
    except TransactionUnconfirmed as error:
        logger.error(
            "Sale outcome unknown",
            extra={"event": "sale_unknown", "error": error.to_dict()},
        )
        return EXIT_UNKNOWN
    except TokenSellerError as error:
        logger.error(
            "Sale failed",
            extra={"event": "sale_error", "error": error.to_dict()},
        )
        return EXIT_FAILED
    except asyncio.TimeoutError:
        return EXIT_FAILED
    finally:
        with contextlib.suppress(Exception):
            await backend_http.close()
        with contextlib.suppress(Exception):
            await swap_http.close()
        with contextlib.suppress(Exception):
            await rpc.close()


async def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    load_dotenv()

    app_settings = AppSettings.from_env()
    logger = setup_logger(app_settings.log_level)

    request = SaleRequest(
        amount=args.amount,
        output_token=args.output_token,
        strategy=args.strategy,
        collect_fee=not args.no_fee,
        dry_run=args.dry_run,
    )

    try:
        app_settings.validate_for_sale()
    except ValueError as error:
        logger.error(
            "Configuration is incomplete",
            extra={"event": "config_invalid", "error": str(error)},
        )
        return EXIT_FAILED

    sale_task = asyncio.create_task(run_sale(logger=logger, app_settings=app_settings, request=request))
    loop = asyncio.get_running_loop()

    def request_shutdown(sig: signal.Signals) -> None:
        logger.info(
            "Shutdown signal received",
            extra={"event": "shutdown_signal_received", "signal": sig.name},
        )
        sale_task.cancel()

    for sig in (signal.SIGTERM, signal.SIGINT):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, request_shutdown, sig)

    try:
        return await sale_task
    except asyncio.CancelledError:
        logger.warning(
            "Sale interrupted; a submitted transaction may still confirm",
            extra={"event": "sale_interrupted"},
        )
        return EXIT_INTERRUPTED
    finally:
        logger.info("Shutdown completed", extra={"event": "shutdown_completed"})


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
