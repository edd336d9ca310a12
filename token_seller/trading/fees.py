from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from decimal import Decimal

from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.keypair import Keypair
from solders.message import MessageV0, to_bytes_versioned
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer
from solders.transaction import VersionedTransaction

from token_seller.common import RetryPolicy, log_event

from .rpc import SolanaRpcGateway
from .submission import TransactionSubmitter
from .types import SOL_MINT, FeeOutcome, lamports_to_sol

FEE_TRANSFER_COMPUTE_UNITS = 1_400


@dataclass(slots=True, frozen=True)
class FeeSettings:
    enabled: bool = True
    collector_address: str = ""
    fee_rate: Decimal = Decimal("0.001")
    min_fee_lamports: int = 100_000
    network_fee_buffer_lamports: int = 10_000
    confirm_max_retries: int = 3
    confirm_base_delay_ms: int = 1000


def compute_fee_lamports(*, amount: int, fee_rate: Decimal, min_fee_lamports: int) -> int:
    proportional = math.floor(Decimal(int(amount)) * Decimal(fee_rate))
    return max(int(min_fee_lamports), int(proportional))


class FeeCollector:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        rpc: SolanaRpcGateway,
        submitter: TransactionSubmitter,
        settings: FeeSettings,
        fee_asset_mint: str = SOL_MINT,
    ) -> None:
        self._logger = logger
        self._rpc = rpc
        self._submitter = submitter
        self._settings = settings
        self._fee_asset_mint = fee_asset_mint
        self._confirm_policy = RetryPolicy(
            max_attempts=max(0, settings.confirm_max_retries),
            base_delay_ms=settings.confirm_base_delay_ms,
        )

    def fee_for(self, swap_input_amount: int, input_asset: str) -> int:
        # Only amounts already in the fee asset can be rated; others pay the floor.
        amount = swap_input_amount if input_asset == self._fee_asset_mint else 0
        return compute_fee_lamports(
            amount=amount,
            fee_rate=self._settings.fee_rate,
            min_fee_lamports=self._settings.min_fee_lamports,
        )

    def _outcome(
        self,
        status: str,
        *,
        fee_lamports: int,
        transaction_id: str | None = None,
        reason: str = "",
    ) -> FeeOutcome:
        outcome = FeeOutcome(
            status=status,  # type: ignore[arg-type]
            transaction_id=transaction_id,
            fee_amount=lamports_to_sol(fee_lamports),
            fee_asset=self._fee_asset_mint,
            reason=reason,
        )
        log_event(
            self._logger,
            level="warning" if status == "failed" else "info",
            event=f"fee_collection_{status}",
            message=f"Fee collection {status}",
            **outcome.to_dict(),
        )
        return outcome

    async def collect_fee(self, signer: Keypair, swap_input_amount: int, input_asset: str) -> FeeOutcome:
        fee_lamports = self.fee_for(swap_input_amount, input_asset)

        if not self._settings.enabled:
            return self._outcome("skipped", fee_lamports=fee_lamports, reason="fee collection is disabled")
        if not self._settings.collector_address:
            return self._outcome("skipped", fee_lamports=fee_lamports, reason="fee collector address is not configured")

        try:
            collector = Pubkey.from_string(self._settings.collector_address)
            balance_lamports = await self._rpc.get_balance_lamports(signer.pubkey())
            required_lamports = fee_lamports + self._settings.network_fee_buffer_lamports
            if balance_lamports < required_lamports:
                return self._outcome(
                    "skipped",
                    fee_lamports=fee_lamports,
                    reason=(
                        "insufficient balance for fee: "
                        f"required={lamports_to_sol(required_lamports)} "
                        f"available={lamports_to_sol(balance_lamports)}"
                    ),
                )

            raw_transaction = await self.build_fee_transaction(
                signer=signer,
                collector=collector,
                fee_lamports=fee_lamports,
            )
            signature = await self._submitter.submit(raw_transaction, label="fee_transfer")
            await self._submitter.confirm(signature, policy=self._confirm_policy, label="fee_transfer")
        except asyncio.CancelledError:
            raise
        except Exception as error:
            return self._outcome(
                "failed",
                fee_lamports=fee_lamports,
                transaction_id=getattr(error, "signature", None),
                reason=f"{type(error).__name__}: {error}",
            )

        return self._outcome("success", fee_lamports=fee_lamports, transaction_id=signature)

    async def build_fee_transaction(self, *, signer: Keypair, collector: Pubkey, fee_lamports: int) -> bytes:
        blockhash, _ = await self._rpc.get_latest_blockhash()
        priority_fee_plan = await self._rpc.resolve_priority_fee()

        instructions = [
            set_compute_unit_limit(FEE_TRANSFER_COMPUTE_UNITS),
            set_compute_unit_price(priority_fee_plan.selected_micro_lamports),
            transfer(
                TransferParams(
                    from_pubkey=signer.pubkey(),
                    to_pubkey=collector,
                    lamports=fee_lamports,
                )
            ),
        ]
        message = MessageV0.try_compile(signer.pubkey(), instructions, [], blockhash)
        signer_signature = signer.sign_message(to_bytes_versioned(message))
        signed_tx = VersionedTransaction.populate(message, [signer_signature])
        return bytes(signed_tx)
