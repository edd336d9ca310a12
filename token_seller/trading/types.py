from __future__ import annotations

from dataclasses import asdict, dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Literal

from solders.keypair import Keypair

SOL_MINT = "So11111111111111111111111111111111111111112"
USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
USDT_MINT = "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB"

LAMPORTS_PER_SOL = 1_000_000_000
BPS_DENOMINATOR = 10_000

FeeStatus = Literal["success", "failed", "skipped"]


def to_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def to_int(value: Any, default: int) -> int:
    try:
        if value is None or str(value).strip() == "":
            return default
        return int(float(str(value).strip()))
    except (TypeError, ValueError):
        return default


def to_float(value: Any, default: float) -> float:
    try:
        if value is None or str(value).strip() == "":
            return default
        return float(str(value).strip())
    except (TypeError, ValueError):
        return default


def to_decimal(value: Any, default: Decimal) -> Decimal:
    try:
        if value is None or str(value).strip() == "":
            return default
        return Decimal(str(value).strip())
    except (InvalidOperation, TypeError, ValueError):
        return default


def lamports_to_sol(lamports: int) -> Decimal:
    return Decimal(int(lamports)) / Decimal(LAMPORTS_PER_SOL)


def sol_to_lamports(amount_sol: Decimal) -> int:
    return int(Decimal(amount_sol) * LAMPORTS_PER_SOL)


def ui_to_base_units(amount: Decimal, decimals: int) -> int:
    return int(Decimal(amount) * (Decimal(10) ** max(0, int(decimals))))


def minimum_output(out_amount: int, slippage_bps: int) -> int:
    return (int(out_amount) * (BPS_DENOMINATOR - int(slippage_bps))) // BPS_DENOMINATOR


class SwapState(str, Enum):
    REQUESTED = "REQUESTED"
    TX_OBTAINED = "TX_OBTAINED"
    SIGNED = "SIGNED"
    SUBMITTED = "SUBMITTED"
    CONFIRMING = "CONFIRMING"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"
    UNKNOWN = "UNKNOWN"


@dataclass(slots=True, frozen=True)
class Quote:
    input_mint: str
    output_mint: str
    in_amount: int
    out_amount: int
    slippage_bps: int
    price_impact_pct: Decimal
    route_length: int
    raw: dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def minimum_output(self) -> int:
        return minimum_output(self.out_amount, self.slippage_bps)

    @property
    def price(self) -> Decimal:
        if self.in_amount == 0:
            return Decimal(0)
        return Decimal(self.out_amount) / Decimal(self.in_amount)

    def to_dict(self) -> dict[str, Any]:
        return {
            "input_mint": self.input_mint,
            "output_mint": self.output_mint,
            "in_amount": self.in_amount,
            "out_amount": self.out_amount,
            "slippage_bps": self.slippage_bps,
            "price_impact_pct": str(self.price_impact_pct),
            "route_length": self.route_length,
            "price": str(self.price),
            "minimum_output": self.minimum_output,
        }


@dataclass(slots=True, frozen=True)
class FeeOutcome:
    status: FeeStatus
    transaction_id: str | None
    fee_amount: Decimal
    fee_asset: str
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["fee_amount"] = str(self.fee_amount)
        return payload


@dataclass(slots=True, frozen=True)
class SwapRequest:
    quote: Quote
    signer: Keypair
    wrap_native_asset: bool = True
    collect_fee: bool = True


@dataclass(slots=True, frozen=True)
class SwapResult:
    transaction_id: str
    fee_collection: FeeOutcome | None
    confirmed_balance: Decimal | None
    state: SwapState = SwapState.CONFIRMED

    def to_dict(self) -> dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "fee_collection": self.fee_collection.to_dict() if self.fee_collection else None,
            "confirmed_balance": str(self.confirmed_balance) if self.confirmed_balance is not None else None,
            "state": self.state.value,
        }


@dataclass(slots=True, frozen=True)
class ConfirmationAttempt:
    attempt_number: int
    error: str | None


@dataclass(slots=True, frozen=True)
class PriorityFeePlan:
    selected_micro_lamports: int
    recommended_micro_lamports: int
    max_fee_micro_lamports: int
    sample_size: int
    source: str
    exceeds_max: bool

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True, frozen=True)
class WalletInfo:
    public_key: str
    balance_sol: Decimal
    balance_lamports: int


@dataclass(slots=True, frozen=True)
class TokenHolding:
    mint: str
    raw_balance: int
    decimals: int

    @property
    def balance(self) -> Decimal:
        return Decimal(self.raw_balance) / (Decimal(10) ** self.decimals)

    @property
    def has_token(self) -> bool:
        return self.raw_balance > 0
