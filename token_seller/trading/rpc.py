from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from typing import Any

import aiohttp
from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed, Processed
from solana.rpc.core import RPCException
from solana.rpc.types import TxOpts
from solders.hash import Hash
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction_status import TransactionConfirmationStatus

from token_seller.common import log_event

from .errors import NetworkError, TransactionFailure
from .types import PriorityFeePlan, to_int

CONFIRMED_STATUSES = (
    TransactionConfirmationStatus.Confirmed,
    TransactionConfirmationStatus.Finalized,
)


def clamp_percentile(value: float) -> float:
    return max(0.0, min(1.0, value))


def percentile_value(values: list[int], percentile: float) -> int:
    if not values:
        return 0

    sorted_values = sorted(values)
    if len(sorted_values) == 1:
        return sorted_values[0]

    p = clamp_percentile(percentile)
    index = max(0, min(len(sorted_values) - 1, math.ceil(len(sorted_values) * p) - 1))
    return sorted_values[index]


@dataclass(slots=True, frozen=True)
class SignatureStatus:
    confirmed: bool
    err: Any
    confirmation_status: str | None


@dataclass(slots=True, frozen=True)
class PriorityFeeSettings:
    default_micro_lamports: int = 10_000
    percentile: float = 0.75
    multiplier: float = 1.15
    max_micro_lamports: int = 80_000


class SolanaRpcGateway:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        rpc_url: str,
        priority_fee: PriorityFeeSettings | None = None,
        timeout_seconds: float = 8.0,
        client: AsyncClient | None = None,
    ) -> None:
        self._logger = logger
        self._rpc_url = rpc_url
        self._priority_fee = priority_fee or PriorityFeeSettings()
        self._timeout_seconds = timeout_seconds
        self._client = client
        self._http_session: aiohttp.ClientSession | None = None

    async def connect(self) -> None:
        if not self._rpc_url:
            raise ValueError("SOLANA_RPC_URL is required for on-chain execution.")
        if self._client is None:
            self._client = AsyncClient(self._rpc_url, commitment=Confirmed)
        if self._http_session is None:
            self._http_session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout_seconds)
            )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None
        if self._http_session is not None:
            await self._http_session.close()
            self._http_session = None

    async def _ensure_client(self) -> AsyncClient:
        if self._client is None:
            await self.connect()
        if self._client is None:
            raise RuntimeError("Solana RPC client is not initialized.")
        return self._client

    async def _rpc_call(self, method: str, params: list[Any] | None = None) -> Any:
        if self._http_session is None:
            await self.connect()
        if self._http_session is None:
            raise RuntimeError("RPC HTTP session is not initialized.")

        payload: dict[str, Any] = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": method,
            "params": params or [],
        }

        try:
            async with self._http_session.post(self._rpc_url, json=payload) as response:
                body = await response.json(content_type=None)
                status = response.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as error:
            raise NetworkError(f"RPC call failed: method={method} error={error}", method="POST", endpoint=method) from error

        if status >= 400:
            raise NetworkError(f"RPC call failed: method={method} status={status}", method="POST", endpoint=method)
        if not isinstance(body, dict):
            raise RuntimeError(f"Invalid RPC response for {method}: {body}")
        if body.get("error"):
            raise RuntimeError(f"RPC error for {method}: {body['error']}")

        return body.get("result")

    async def fetch_recent_prioritization_fees(self) -> list[int]:
        result = await self._rpc_call("getRecentPrioritizationFees", [[]])
        if not isinstance(result, list):
            raise RuntimeError(f"Unexpected getRecentPrioritizationFees response: {result}")

        fees: list[int] = []
        for item in result:
            if not isinstance(item, dict):
                continue
            fee = to_int(item.get("prioritizationFee"), 0)
            if fee >= 0:
                fees.append(fee)
        return fees

    async def resolve_priority_fee(self) -> PriorityFeePlan:
        settings = self._priority_fee
        recommended = max(0, settings.default_micro_lamports)
        source = "static"
        sample_size = 0

        try:
            recent_fees = await self.fetch_recent_prioritization_fees()
            sample_size = len(recent_fees)
            if recent_fees:
                percentile_fee = percentile_value(recent_fees, settings.percentile)
                dynamic_candidate = int(percentile_fee * settings.multiplier)
                recommended = max(recommended, dynamic_candidate)
                source = "recent_prioritization_fees"
        except asyncio.CancelledError:
            raise
        except Exception as error:
            source = "fallback_static"
            log_event(
                self._logger,
                level="warning",
                event="priority_fee_fallback",
                message="Falling back to static priority fee",
                error=str(error),
            )

        max_fee = max(0, settings.max_micro_lamports)
        exceeds_max = recommended > max_fee
        selected = recommended if not exceeds_max else max_fee

        plan = PriorityFeePlan(
            selected_micro_lamports=selected,
            recommended_micro_lamports=recommended,
            max_fee_micro_lamports=max_fee,
            sample_size=sample_size,
            source=source,
            exceeds_max=exceeds_max,
        )
        log_event(
            self._logger,
            level="debug",
            event="priority_fee_resolved",
            message="Priority fee resolved",
            **plan.to_dict(),
        )
        return plan

    async def get_latest_blockhash(self) -> tuple[Hash, int]:
        client = await self._ensure_client()
        response = await client.get_latest_blockhash(commitment=Processed)
        return response.value.blockhash, int(response.value.last_valid_block_height)

    async def get_balance_lamports(self, public_key: Pubkey) -> int:
        client = await self._ensure_client()
        response = await client.get_balance(public_key, commitment=Confirmed)
        return int(response.value)

    async def send_raw_transaction(self, raw_transaction: bytes) -> str:
        client = await self._ensure_client()
        # Node-side rebroadcast is off; callers own the retry policy.
        opts = TxOpts(skip_preflight=False, preflight_commitment=Confirmed, max_retries=0)
        try:
            response = await client.send_raw_transaction(raw_transaction, opts=opts)
        except RPCException as error:
            raise TransactionFailure(f"Transaction rejected by the cluster: {error}", on_chain_error=error) from error
        except (SolanaRpcException, asyncio.TimeoutError, OSError) as error:
            raise NetworkError(
                f"Transaction broadcast failed: {error}",
                method="POST",
                endpoint="sendTransaction",
            ) from error
        return str(response.value)

    async def get_signature_status(self, signature: str) -> SignatureStatus | None:
        client = await self._ensure_client()
        try:
            response = await client.get_signature_statuses(
                [Signature.from_string(signature)],
                search_transaction_history=True,
            )
        except asyncio.CancelledError:
            raise
        except Exception as error:
            raise NetworkError(
                f"Signature status lookup failed: {error}",
                method="POST",
                endpoint="getSignatureStatuses",
            ) from error

        statuses = response.value or []
        status = statuses[0] if statuses else None
        if status is None:
            return None

        confirmation_status = status.confirmation_status
        return SignatureStatus(
            confirmed=confirmation_status in CONFIRMED_STATUSES,
            err=status.err,
            confirmation_status=str(confirmation_status) if confirmation_status is not None else None,
        )
