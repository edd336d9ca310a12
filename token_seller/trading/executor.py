from __future__ import annotations

import asyncio
import base64
import binascii
import logging
from typing import Any

from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.transaction import Transaction, VersionedTransaction

from token_seller.common import RetryPolicy, log_event

from .errors import TransactionFailure, TransactionUnconfirmed, ValidationError
from .fees import FeeCollector
from .http_client import RetryableHttpClient
from .rpc import SolanaRpcGateway
from .submission import TransactionSubmitter, transaction_signature
from .types import (
    SOL_MINT,
    FeeOutcome,
    PriorityFeePlan,
    Quote,
    SwapRequest,
    SwapResult,
    SwapState,
    lamports_to_sol,
)

DEFAULT_CONFIRM_POLICY = RetryPolicy.for_total_tries(5, base_delay_ms=1000, backoff_factor=2)


class SwapExecutor:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        swap_http: RetryableHttpClient,
        rpc: SolanaRpcGateway,
        submitter: TransactionSubmitter,
        fee_collector: FeeCollector | None = None,
        confirm_policy: RetryPolicy = DEFAULT_CONFIRM_POLICY,
        fee_asset_mint: str = SOL_MINT,
    ) -> None:
        self._logger = logger
        self._swap_http = swap_http
        self._rpc = rpc
        self._submitter = submitter
        self._fee_collector = fee_collector
        self._confirm_policy = confirm_policy
        self._fee_asset_mint = fee_asset_mint
        self.state = SwapState.REQUESTED
        self.broadcast_signature: str | None = None

    def _transition(self, state: SwapState, **fields: Any) -> None:
        previous = self.state
        self.state = state
        log_event(
            self._logger,
            level="error" if state in {SwapState.FAILED, SwapState.UNKNOWN} else "info",
            event="swap_state_changed",
            message=f"Swap state {previous.value} -> {state.value}",
            previous_state=previous.value,
            state=state.value,
            **fields,
        )

    async def execute_request(self, request: SwapRequest) -> SwapResult:
        return await self.execute_swap(
            request.quote,
            request.signer,
            collect_fee=request.collect_fee,
            wrap_native_asset=request.wrap_native_asset,
        )

    async def execute_swap(
        self,
        quote: Quote,
        signer: Keypair,
        collect_fee: bool,
        *,
        wrap_native_asset: bool = True,
    ) -> SwapResult:
        self.state = SwapState.REQUESTED
        self.broadcast_signature = None
        self._transition(
            SwapState.REQUESTED,
            input_mint=quote.input_mint,
            output_mint=quote.output_mint,
            in_amount=quote.in_amount,
            slippage_bps=quote.slippage_bps,
        )

        try:
            priority_fee_plan = await self._rpc.resolve_priority_fee()
            encoded = await self.fetch_swap_transaction(
                quote=quote,
                user_public_key=signer.pubkey(),
                priority_fee_plan=priority_fee_plan,
                wrap_native_asset=wrap_native_asset,
            )
            self._transition(SwapState.TX_OBTAINED, priority_fee_micro_lamports=priority_fee_plan.selected_micro_lamports)

            signed_transaction = self.sign_transaction(encoded, signer)
            self._transition(SwapState.SIGNED, tx_size_bytes=len(signed_transaction))
        except Exception as error:
            self._transition(SwapState.FAILED, stage="pre_submit", error=str(error))
            raise

        self.broadcast_signature = transaction_signature(signed_transaction)
        try:
            signature = await self._submitter.submit(signed_transaction, label="swap")
        except TransactionUnconfirmed as error:
            self._transition(SwapState.UNKNOWN, stage="submit", tx_signature=error.signature, error=str(error))
            raise
        except Exception as error:
            self.broadcast_signature = None
            self._transition(SwapState.FAILED, stage="submit", error=str(error))
            raise

        self.broadcast_signature = signature
        self._transition(SwapState.SUBMITTED, tx_signature=signature)
        self._transition(SwapState.CONFIRMING, tx_signature=signature)

        try:
            await self._submitter.confirm(signature, policy=self._confirm_policy, label="swap")
        except TransactionUnconfirmed as error:
            self._transition(SwapState.UNKNOWN, tx_signature=signature, error=str(error))
            raise
        except TransactionFailure as error:
            if error.signature is None:
                error.signature = signature
            self._transition(SwapState.FAILED, tx_signature=signature, error=str(error))
            raise

        self._transition(SwapState.CONFIRMED, tx_signature=signature)

        balance_lamports = await self._refresh_balance(signer, signature)
        confirmed_balance = lamports_to_sol(balance_lamports) if balance_lamports is not None else None

        fee_outcome: FeeOutcome | None = None
        if collect_fee and self._fee_collector is not None:
            fee_basis_amount, fee_basis_asset = self.fee_basis(quote)
            fee_outcome = await self._fee_collector.collect_fee(signer, fee_basis_amount, fee_basis_asset)

        result = SwapResult(
            transaction_id=signature,
            fee_collection=fee_outcome,
            confirmed_balance=confirmed_balance,
            state=SwapState.CONFIRMED,
        )
        log_event(
            self._logger,
            level="info",
            event="swap_completed",
            message="Swap executed successfully",
            **result.to_dict(),
        )
        return result

    async def _refresh_balance(self, signer: Keypair, signature: str) -> int | None:
        try:
            return await self._rpc.get_balance_lamports(signer.pubkey())
        except asyncio.CancelledError:
            raise
        except Exception as error:
            log_event(
                self._logger,
                level="warning",
                event="post_swap_balance_failed",
                message="Swap confirmed but the balance refresh failed",
                tx_signature=signature,
                error=str(error),
            )
            return None

    def fee_basis(self, quote: Quote) -> tuple[int, str]:
        if quote.output_mint == self._fee_asset_mint:
            return quote.out_amount, quote.output_mint
        return quote.in_amount, quote.input_mint

    async def fetch_swap_transaction(
        self,
        *,
        quote: Quote,
        user_public_key: Pubkey,
        priority_fee_plan: PriorityFeePlan,
        wrap_native_asset: bool,
    ) -> str:
        if not quote.raw:
            raise ValidationError("Quote has no raw quoteResponse to build a swap from")

        payload = {
            "quoteResponse": quote.raw,
            "userPublicKey": str(user_public_key),
            "wrapAndUnwrapSol": wrap_native_asset,
            "asLegacyTransaction": False,
            "dynamicComputeUnitLimit": True,
            "computeUnitPriceMicroLamports": priority_fee_plan.selected_micro_lamports,
        }
        response = await self._swap_http.post("", payload)
        encoded = response.get("swapTransaction")
        if not isinstance(encoded, str) or not encoded.strip():
            raise ValidationError("Invalid response from swap API: missing swapTransaction")
        return encoded.strip()

    def sign_transaction(self, encoded: str, signer: Keypair) -> bytes:
        try:
            raw = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as error:
            raise ValidationError(f"Swap transaction is not valid base64: {error}") from error

        try:
            unsigned = VersionedTransaction.from_bytes(raw)
            return bytes(VersionedTransaction(unsigned.message, [signer]))
        except Exception as versioned_error:
            log_event(
                self._logger,
                level="warning",
                event="swap_tx_versioned_decode_failed",
                message="Versioned transaction decode failed; trying the legacy format",
                error=str(versioned_error),
            )

        try:
            legacy = Transaction.from_bytes(raw)
            legacy.sign([signer], legacy.message.recent_blockhash)
        except Exception as error:
            raise ValidationError(f"Swap transaction could not be deserialized or signed: {error}") from error
        return bytes(legacy)
