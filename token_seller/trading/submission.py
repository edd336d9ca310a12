from __future__ import annotations

import asyncio
import logging

from solders.errors import BincodeError
from solders.transaction import Transaction, VersionedTransaction

from token_seller.common import RetryPolicy, log_event, retry_with_backoff
from token_seller.common.retry import SleepFunc

from .errors import ConfirmationPending, NetworkError, TransactionFailure, TransactionUnconfirmed
from .rpc import SolanaRpcGateway
from .types import ConfirmationAttempt


def transaction_signature(raw_transaction: bytes) -> str | None:
    try:
        signatures = VersionedTransaction.from_bytes(raw_transaction).signatures
    except (BincodeError, ValueError):
        try:
            signatures = Transaction.from_bytes(raw_transaction).signatures
        except (BincodeError, ValueError):
            return None
    return str(signatures[0]) if signatures else None


class TransactionSubmitter:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        rpc: SolanaRpcGateway,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        self._logger = logger
        self._rpc = rpc
        self._sleep = sleep

    async def submit(self, raw_transaction: bytes, *, label: str) -> str:
        expected_signature = transaction_signature(raw_transaction)
        try:
            signature = await self._rpc.send_raw_transaction(raw_transaction)
        except NetworkError as error:
            log_event(
                self._logger,
                level="error",
                event=f"{label}_broadcast_unknown",
                message="Broadcast failed at the transport level; the transaction may still land",
                tx_signature=expected_signature,
                error=str(error),
            )
            raise TransactionUnconfirmed(
                f"Broadcast of {expected_signature} failed ({error}); it may still land on-chain",
                signature=expected_signature,
            ) from error
        log_event(
            self._logger,
            level="info",
            event=f"{label}_submitted",
            message="Transaction submitted",
            tx_signature=signature,
            tx_size_bytes=len(raw_transaction),
        )
        return signature

    async def confirm(
        self,
        signature: str,
        *,
        policy: RetryPolicy,
        label: str,
    ) -> list[ConfirmationAttempt]:
        attempts: list[ConfirmationAttempt] = []

        async def poll(attempt: int) -> None:
            try:
                status = await self._rpc.get_signature_status(signature)
                if status is not None and status.err is not None:
                    raise TransactionFailure(
                        f"Transaction failed on-chain: {status.err}",
                        signature=signature,
                        on_chain_error=status.err,
                    )
                if status is None or not status.confirmed:
                    seen = status.confirmation_status if status is not None else "not_found"
                    raise ConfirmationPending(f"Transaction not confirmed yet (status={seen})")
            except Exception as error:
                attempts.append(ConfirmationAttempt(attempt_number=attempt, error=str(error)))
                raise
            attempts.append(ConfirmationAttempt(attempt_number=attempt, error=None))

        try:
            await retry_with_backoff(
                poll,
                policy=policy,
                logger=self._logger,
                event=f"{label}_confirmation",
                sleep=self._sleep,
                tx_signature=signature,
            )
        except TransactionFailure as error:
            error.attempts = list(attempts)
            raise
        except Exception as error:
            raise TransactionUnconfirmed(
                f"Transaction {signature} was submitted but not confirmed after "
                f"{len(attempts)} attempts; it may still land on-chain",
                signature=signature,
                attempts=attempts,
            ) from error

        log_event(
            self._logger,
            level="info",
            event=f"{label}_confirmed",
            message="Transaction confirmed",
            tx_signature=signature,
            attempts=len(attempts),
        )
        return attempts
