from __future__ import annotations

import base64
import logging
import unittest
from decimal import Decimal
from types import SimpleNamespace
from typing import Any
from unittest.mock import AsyncMock

from solana.exceptions import SolanaRpcException
from solana.rpc.core import RPCException
from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import Message, MessageV0, to_bytes_versioned
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction, VersionedTransaction

from token_seller.common import RetryPolicy
from token_seller.trading.errors import (
    ErrorKind,
    HttpStatusError,
    NetworkError,
    TransactionFailure,
    TransactionUnconfirmed,
    ValidationError,
)
from token_seller.trading.executor import SwapExecutor
from token_seller.trading.rpc import SignatureStatus, SolanaRpcGateway
from token_seller.trading.submission import TransactionSubmitter
from token_seller.trading.types import SOL_MINT, FeeOutcome, PriorityFeePlan, Quote, SwapRequest, SwapState

TOKEN_MINT = "7GCihgDB8fe6KNjn2MYtkzZcRjQy3t9GHdC8uHYmW2hr"
SIGNATURE = "5" * 64


class _SleepRecorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def _unsigned_swap_transaction(payer: Keypair) -> tuple[str, MessageV0]:
    instruction = transfer(TransferParams(from_pubkey=payer.pubkey(), to_pubkey=Pubkey.default(), lamports=1))
    message = MessageV0.try_compile(payer.pubkey(), [instruction], [], Hash.default())
    unsigned = VersionedTransaction.populate(message, [Signature.default()])
    return base64.b64encode(bytes(unsigned)).decode("ascii"), message


def _quote(*, output_mint: str = SOL_MINT) -> Quote:
    return Quote(
        input_mint=TOKEN_MINT,
        output_mint=output_mint,
        in_amount=1_000_000,
        out_amount=2_000_000_000,
        slippage_bps=50,
        price_impact_pct=Decimal("0.1"),
        route_length=1,
        raw={"inputMint": TOKEN_MINT, "outputMint": output_mint, "inAmount": "1000000", "outAmount": "2000000000"},
    )


def _priority_plan() -> PriorityFeePlan:
    return PriorityFeePlan(
        selected_micro_lamports=20_000,
        recommended_micro_lamports=20_000,
        max_fee_micro_lamports=80_000,
        sample_size=10,
        source="recent_prioritization_fees",
        exceeds_max=False,
    )


def _status(*, confirmed: bool, err: Any = None) -> SignatureStatus:
    return SignatureStatus(confirmed=confirmed, err=err, confirmation_status="confirmed" if confirmed else "processed")


class TransactionSubmitterTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.rpc = AsyncMock()
        self.sleep = _SleepRecorder()
        self.submitter = TransactionSubmitter(logger=logging.getLogger("test.submit"), rpc=self.rpc, sleep=self.sleep)
        self.policy = RetryPolicy.for_total_tries(5, base_delay_ms=1000)

    async def test_confirms_after_pending_polls(self) -> None:
        self.rpc.get_signature_status.side_effect = [None, _status(confirmed=False), _status(confirmed=True)]

        attempts = await self.submitter.confirm(SIGNATURE, policy=self.policy, label="swap")

        self.assertEqual(len(attempts), 3)
        self.assertIsNone(attempts[-1].error)
        self.assertEqual(self.sleep.delays, [1.0, 2.0])

    async def test_on_chain_error_is_fatal_immediately(self) -> None:
        self.rpc.get_signature_status.return_value = _status(confirmed=True, err={"InstructionError": [0, "Custom"]})

        with self.assertRaises(TransactionFailure) as ctx:
            await self.submitter.confirm(SIGNATURE, policy=self.policy, label="swap")

        self.assertNotIsInstance(ctx.exception, TransactionUnconfirmed)
        self.assertEqual(ctx.exception.signature, SIGNATURE)
        self.assertEqual(self.rpc.get_signature_status.await_count, 1)
        self.assertEqual(self.sleep.delays, [])

    async def test_exhaustion_reports_unknown_after_five_polls(self) -> None:
        self.rpc.get_signature_status.return_value = None

        with self.assertRaises(TransactionUnconfirmed) as ctx:
            await self.submitter.confirm(SIGNATURE, policy=self.policy, label="swap")

        self.assertEqual(self.rpc.get_signature_status.await_count, 5)
        self.assertEqual(len(ctx.exception.attempts), 5)
        self.assertEqual(ctx.exception.kind, ErrorKind.TRANSACTION_UNKNOWN)
        self.assertEqual(self.sleep.delays, [1.0, 2.0, 4.0, 8.0])

    async def test_status_lookup_errors_are_retried(self) -> None:
        self.rpc.get_signature_status.side_effect = [NetworkError("rpc down"), _status(confirmed=True)]

        attempts = await self.submitter.confirm(SIGNATURE, policy=self.policy, label="swap")

        self.assertEqual([attempt.attempt_number for attempt in attempts], [1, 2])
        self.assertEqual(attempts[0].error, "rpc down")


class SwapExecutorTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.signer = Keypair()
        self.encoded, self.message = _unsigned_swap_transaction(self.signer)

        self.swap_http = AsyncMock()
        self.swap_http.post.return_value = {"swapTransaction": self.encoded, "lastValidBlockHeight": 1}
        self.rpc = AsyncMock()
        self.rpc.resolve_priority_fee.return_value = _priority_plan()
        self.rpc.send_raw_transaction.return_value = SIGNATURE
        self.rpc.get_signature_status.return_value = _status(confirmed=True)
        self.rpc.get_balance_lamports.return_value = 3_500_000_000
        self.sleep = _SleepRecorder()
        self.logger = logging.getLogger("test.executor")
        self.submitter = TransactionSubmitter(logger=self.logger, rpc=self.rpc, sleep=self.sleep)
        self.fee_collector = AsyncMock()
        self.fee_collector.collect_fee.return_value = FeeOutcome(
            status="success",
            transaction_id="fee-signature",
            fee_amount=Decimal("0.002"),
            fee_asset=SOL_MINT,
        )
        self.executor = SwapExecutor(
            logger=self.logger,
            swap_http=self.swap_http,
            rpc=self.rpc,
            submitter=self.submitter,
            fee_collector=self.fee_collector,
        )

    async def test_happy_path_confirms_and_collects_fee(self) -> None:
        result = await self.executor.execute_swap(_quote(), self.signer, collect_fee=True)

        self.assertEqual(result.transaction_id, SIGNATURE)
        self.assertEqual(result.state, SwapState.CONFIRMED)
        self.assertEqual(result.confirmed_balance, Decimal("3.5"))
        self.assertEqual(result.fee_collection.status, "success")  # type: ignore[union-attr]
        self.assertEqual(self.executor.state, SwapState.CONFIRMED)
        self.fee_collector.collect_fee.assert_awaited_once_with(self.signer, 2_000_000_000, SOL_MINT)

        payload = self.swap_http.post.await_args.args[1]
        self.assertEqual(payload["userPublicKey"], str(self.signer.pubkey()))
        self.assertEqual(payload["computeUnitPriceMicroLamports"], 20_000)
        self.assertFalse(payload["asLegacyTransaction"])

    async def test_signed_transaction_carries_signer_signature(self) -> None:
        await self.executor.execute_swap(_quote(), self.signer, collect_fee=False)

        raw = self.rpc.send_raw_transaction.await_args.args[0]
        signed = VersionedTransaction.from_bytes(raw)
        expected = self.signer.sign_message(to_bytes_versioned(self.message))
        self.assertEqual(signed.signatures[0], expected)
        self.fee_collector.collect_fee.assert_not_awaited()

    async def test_fee_basis_uses_input_when_output_is_not_native(self) -> None:
        usdc = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"

        self.assertEqual(self.executor.fee_basis(_quote(output_mint=usdc)), (1_000_000, TOKEN_MINT))

    async def test_missing_swap_transaction_fails_before_submit(self) -> None:
        self.swap_http.post.return_value = {"error": "no route"}

        with self.assertRaises(ValidationError):
            await self.executor.execute_swap(_quote(), self.signer, collect_fee=True)

        self.assertEqual(self.executor.state, SwapState.FAILED)
        self.rpc.send_raw_transaction.assert_not_awaited()

    async def test_swap_api_errors_propagate_unchanged(self) -> None:
        error = HttpStatusError("HTTP 400: bad quote", status=400)
        self.swap_http.post.side_effect = error

        with self.assertRaises(HttpStatusError) as ctx:
            await self.executor.execute_swap(_quote(), self.signer, collect_fee=True)

        self.assertIs(ctx.exception, error)

    async def test_invalid_base64_is_a_validation_error(self) -> None:
        self.swap_http.post.return_value = {"swapTransaction": "not base64!!"}

        with self.assertRaises(ValidationError):
            await self.executor.execute_swap(_quote(), self.signer, collect_fee=True)

    async def test_unconfirmed_swap_ends_in_unknown_state(self) -> None:
        self.rpc.get_signature_status.return_value = None

        with self.assertRaises(TransactionUnconfirmed) as ctx:
            await self.executor.execute_swap(_quote(), self.signer, collect_fee=True)

        self.assertEqual(ctx.exception.signature, SIGNATURE)
        self.assertEqual(self.executor.state, SwapState.UNKNOWN)
        self.assertEqual(self.rpc.get_signature_status.await_count, 5)
        self.fee_collector.collect_fee.assert_not_awaited()

    async def test_on_chain_failure_ends_in_failed_state(self) -> None:
        self.rpc.get_signature_status.return_value = _status(confirmed=False, err={"InstructionError": [2, "Custom"]})

        with self.assertRaises(TransactionFailure):
            await self.executor.execute_swap(_quote(), self.signer, collect_fee=True)

        self.assertEqual(self.executor.state, SwapState.FAILED)
        self.assertEqual(self.rpc.get_signature_status.await_count, 1)

    async def test_broadcast_transport_error_ends_in_unknown_state(self) -> None:
        self.rpc.send_raw_transaction.side_effect = NetworkError("Transaction broadcast failed: ReadTimeout")

        with self.assertRaises(TransactionUnconfirmed) as ctx:
            await self.executor.execute_swap(_quote(), self.signer, collect_fee=True)

        expected = str(self.signer.sign_message(to_bytes_versioned(self.message)))
        self.assertEqual(ctx.exception.signature, expected)
        self.assertEqual(self.executor.state, SwapState.UNKNOWN)
        self.assertEqual(self.executor.broadcast_signature, expected)
        self.rpc.get_signature_status.assert_not_awaited()
        self.fee_collector.collect_fee.assert_not_awaited()

    async def test_rejected_broadcast_ends_in_failed_state(self) -> None:
        self.rpc.send_raw_transaction.side_effect = TransactionFailure("Transaction rejected by the cluster")

        with self.assertRaises(TransactionFailure) as ctx:
            await self.executor.execute_swap(_quote(), self.signer, collect_fee=True)

        self.assertNotIsInstance(ctx.exception, TransactionUnconfirmed)
        self.assertEqual(self.executor.state, SwapState.FAILED)

    async def test_legacy_transaction_is_signed(self) -> None:
        instruction = transfer(TransferParams(from_pubkey=self.signer.pubkey(), to_pubkey=Pubkey.default(), lamports=1))
        message = Message.new_with_blockhash([instruction], self.signer.pubkey(), Hash.default())
        encoded = base64.b64encode(bytes(Transaction.new_unsigned(message))).decode("ascii")

        signed = self.executor.sign_transaction(encoded, self.signer)

        legacy = Transaction.from_bytes(signed)
        self.assertEqual(legacy.signatures[0], self.signer.sign_message(bytes(message)))
        self.assertEqual(legacy.message, message)

    async def test_balance_refresh_failure_does_not_fail_the_swap(self) -> None:
        self.rpc.get_balance_lamports.side_effect = NetworkError("rpc down")

        result = await self.executor.execute_swap(_quote(), self.signer, collect_fee=False)

        self.assertEqual(result.state, SwapState.CONFIRMED)
        self.assertIsNone(result.confirmed_balance)

    async def test_execute_request_forwards_options(self) -> None:
        request = SwapRequest(quote=_quote(), signer=self.signer, wrap_native_asset=False, collect_fee=False)

        result = await self.executor.execute_request(request)

        self.assertEqual(result.transaction_id, SIGNATURE)
        self.assertFalse(self.swap_http.post.await_args.args[1]["wrapAndUnwrapSol"])
        self.fee_collector.collect_fee.assert_not_awaited()

class SolanaRpcGatewayTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.client = AsyncMock()
        self.gateway = SolanaRpcGateway(
            logger=logging.getLogger("test.rpc"),
            rpc_url="https://rpc.example",
            client=self.client,
        )

    async def test_transport_failure_on_broadcast_is_a_network_error(self) -> None:
        self.client.send_raw_transaction.side_effect = SolanaRpcException(
            TimeoutError("ReadTimeout"), self.client.send_raw_transaction, None, "sendTransaction"
        )

        with self.assertRaises(NetworkError) as ctx:
            await self.gateway.send_raw_transaction(b"raw")

        self.assertEqual(ctx.exception.endpoint, "sendTransaction")
        self.assertTrue(ctx.exception.retryable)

    async def test_cluster_rejection_is_a_transaction_failure(self) -> None:
        self.client.send_raw_transaction.side_effect = RPCException("Transaction simulation failed")

        with self.assertRaises(TransactionFailure) as ctx:
            await self.gateway.send_raw_transaction(b"raw")

        self.assertNotIsInstance(ctx.exception, TransactionUnconfirmed)

    async def test_broadcast_sends_once_without_node_retries(self) -> None:
        self.client.send_raw_transaction.return_value = SimpleNamespace(value=SIGNATURE)

        signature = await self.gateway.send_raw_transaction(b"raw")

        self.assertEqual(signature, SIGNATURE)
        self.assertEqual(self.client.send_raw_transaction.await_args.kwargs["opts"].max_retries, 0)



if __name__ == "__main__":
    unittest.main()
