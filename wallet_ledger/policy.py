"""
Amount bounds, daily caps and the provider fee schedule.

All amounts are GSALT units. Nothing here holds a lock: the daily cap is a
best-effort read, the balance check inside the engine's unit is what
actually protects the account.
"""

from datetime import datetime, timedelta, timezone
from decimal import ROUND_DOWN, Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from wallet_ledger.config import FundingSource, Settings
from wallet_ledger.errors import DailyLimitExceededError, ValidationError
from wallet_ledger.models import TransactionType
from wallet_ledger.store import LedgerStore


class AmountBounds(BaseModel):
    model_config = ConfigDict(frozen=True)

    minimum: int = Field(ge=1)
    maximum: int = Field(ge=1)


class LimitPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    bounds: dict[TransactionType, AmountBounds]
    daily_caps: dict[TransactionType, int]

    @classmethod
    def from_settings(cls, settings: Settings) -> "LimitPolicy":
        transfer = AmountBounds(minimum=settings.min_transfer_amount, maximum=settings.max_transfer_amount)
        return cls(
            bounds={
                TransactionType.TOPUP: AmountBounds(minimum=settings.min_topup_amount, maximum=settings.max_topup_amount),
                TransactionType.TRANSFER_OUT: transfer,
                TransactionType.GIFT_OUT: transfer,
                TransactionType.WITHDRAWAL: transfer,
                TransactionType.PAYMENT: AmountBounds(minimum=settings.min_payment_amount, maximum=settings.max_payment_amount),
            },
            daily_caps={
                TransactionType.TRANSFER_OUT: settings.daily_transfer_limit,
                TransactionType.GIFT_OUT: settings.daily_transfer_limit,
                TransactionType.WITHDRAWAL: settings.daily_transfer_limit,
                TransactionType.PAYMENT: settings.daily_payment_limit,
            },
        )


def validate_amount(policy: LimitPolicy, txn_type: TransactionType, amount: int) -> None:
    if amount <= 0:
        raise ValidationError("amount must be a positive number of GSALT units", code="INVALID_AMOUNT")
    bounds = policy.bounds.get(txn_type)
    if bounds is None:
        return
    label = txn_type.value.lower()
    if amount < bounds.minimum:
        raise ValidationError(
            f"{label} amount must be at least {bounds.minimum} GSALT units",
            code="AMOUNT_BELOW_MINIMUM",
            details={"minimum": bounds.minimum, "amount": amount},
        )
    if amount > bounds.maximum:
        raise ValidationError(
            f"{label} amount cannot exceed {bounds.maximum} GSALT units",
            code="AMOUNT_ABOVE_MAXIMUM",
            details={"maximum": bounds.maximum, "amount": amount},
        )


def utc_day_window(now: Optional[datetime] = None) -> tuple[datetime, datetime]:
    now = now or datetime.now(timezone.utc)
    start = now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + timedelta(days=1)


def check_daily_limit(
    store: LedgerStore,
    policy: LimitPolicy,
    account_id: str,
    txn_type: TransactionType,
    amount: int,
    now: Optional[datetime] = None,
) -> None:
    cap = policy.daily_caps.get(txn_type)
    if cap is None:
        return
    since, until = utc_day_window(now)
    spent_today = store.sum_completed_amount(account_id, txn_type, since, until)
    if spent_today + amount > cap:
        raise DailyLimitExceededError(
            "Daily transaction limit exceeded",
            details={"type": txn_type.value, "cap": cap, "used": spent_today, "requested": amount},
        )


class MethodFamily(str, Enum):
    VIRTUAL_ACCOUNT = "VIRTUAL_ACCOUNT"
    QRIS = "QRIS"
    EWALLET = "EWALLET"
    RETAIL_OUTLET = "RETAIL_OUTLET"
    CARD = "CARD"
    WALLET_BALANCE = "WALLET_BALANCE"


class FeeRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    flat: int = 0
    percent: Decimal = Decimal("0")
    minimum: int = 0


class PaymentMethodInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str
    family: MethodFamily
    funding: FundingSource
    available_for_topup: bool


DEFAULT_FEE_SCHEDULE: dict[MethodFamily, FeeRule] = {
    MethodFamily.VIRTUAL_ACCOUNT: FeeRule(flat=400),
    MethodFamily.QRIS: FeeRule(percent=Decimal("0.007"), minimum=50),
    MethodFamily.EWALLET: FeeRule(percent=Decimal("0.015")),
    MethodFamily.RETAIL_OUTLET: FeeRule(flat=500),
    MethodFamily.CARD: FeeRule(percent=Decimal("0.025"), minimum=250),
    MethodFamily.WALLET_BALANCE: FeeRule(),
}

_PREFIX_FAMILIES = (
    ("VA_", MethodFamily.VIRTUAL_ACCOUNT),
    ("EWALLET_", MethodFamily.EWALLET),
    ("RETAIL_", MethodFamily.RETAIL_OUTLET),
)

_EXACT_FAMILIES = {
    "QRIS": MethodFamily.QRIS,
    "CREDIT_CARD": MethodFamily.CARD,
    "DEBIT_CARD": MethodFamily.CARD,
    "WALLET_BALANCE": MethodFamily.WALLET_BALANCE,
}


def resolve_payment_method(code: str) -> PaymentMethodInfo:
    normalized = (code or "").strip().upper()
    family = _EXACT_FAMILIES.get(normalized)
    if family is None:
        for prefix, candidate in _PREFIX_FAMILIES:
            if normalized.startswith(prefix) and len(normalized) > len(prefix):
                family = candidate
                break
    if family is None:
        raise ValidationError(f"Unsupported payment method: {code}", code="INVALID_PAYMENT_METHOD")
    wallet_funded = family == MethodFamily.WALLET_BALANCE
    return PaymentMethodInfo(
        code=normalized,
        family=family,
        funding=FundingSource.WALLET if wallet_funded else FundingSource.EXTERNAL,
        available_for_topup=not wallet_funded,
    )


def calculate_fee(
    payment_method: str,
    amount: int,
    schedule: Optional[dict[MethodFamily, FeeRule]] = None,
) -> int:
    rule = (schedule or DEFAULT_FEE_SCHEDULE)[resolve_payment_method(payment_method).family]
    percentage_fee = (Decimal(amount) * rule.percent).quantize(Decimal("1"), rounding=ROUND_DOWN)
    return max(rule.flat + int(percentage_fee), rule.minimum)
