from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from wallet_ledger.contracts.settlement import BankDetails, SettlementStatus
from wallet_ledger.models import AccountStatus, TransactionStatus, TransactionType, VoucherKind


class TopupRequest(BaseModel):
    account_id: str = Field(min_length=1)
    amount: int
    payment_method: str = Field(min_length=1, max_length=50)
    # IDR billed to the payer; derived from amount when absent
    payment_amount: Optional[int] = Field(default=None, gt=0)
    external_reference_id: Optional[str] = Field(default=None, max_length=255)
    description: Optional[str] = Field(default=None, max_length=500)


class TransferRequest(BaseModel):
    source_account_id: str = Field(min_length=1)
    destination_account_id: str = Field(min_length=1)
    amount: int
    external_reference_id: Optional[str] = Field(default=None, max_length=255)
    description: Optional[str] = Field(default=None, max_length=500)


class GiftRequest(BaseModel):
    destination_account_id: str = Field(min_length=1)
    amount: int
    # No source account means a promotional credit.
    source_account_id: Optional[str] = None
    gift_source: Optional[str] = Field(default=None, max_length=120)
    external_reference_id: Optional[str] = Field(default=None, max_length=255)
    description: Optional[str] = Field(default=None, max_length=500)


class PaymentRequest(BaseModel):
    account_id: str = Field(min_length=1)
    amount: int
    payment_method: str = Field(min_length=1, max_length=50)
    external_reference_id: Optional[str] = Field(default=None, max_length=255)
    description: Optional[str] = Field(default=None, max_length=500)


class WithdrawalRequest(BaseModel):
    account_id: str = Field(min_length=1)
    amount: int
    bank_details: BankDetails
    external_reference_id: Optional[str] = Field(default=None, max_length=255)
    description: Optional[str] = Field(default=None, max_length=500)


class RedeemVoucherRequest(BaseModel):
    account_id: str = Field(min_length=1)
    value: int = Field(gt=0)
    kind: VoucherKind
    voucher_code: str = Field(min_length=1, max_length=64)
    external_reference_id: Optional[str] = Field(default=None, max_length=255)


class TransactionRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    account_id: str
    type: TransactionType
    amount: int
    fee: int
    total_amount: int
    currency: str
    status: TransactionStatus
    payment_method: Optional[str] = None
    description: Optional[str] = None
    failure_reason: Optional[str] = None
    external_reference_id: Optional[str] = None
    external_payment_id: Optional[str] = None
    payment_instructions: Optional[dict[str, Any]] = None
    payment_expires_at: Optional[datetime] = None
    payment_amount: Optional[int] = None
    payment_currency: Optional[str] = None
    exchange_rate_idr: Optional[int] = None
    voucher_code: Optional[str] = None
    related_transaction_id: Optional[str] = None
    source_account_id: Optional[str] = None
    destination_account_id: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None


class AccountSnapshot(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    balance: int
    points: int
    status: AccountStatus


class StatusHistoryEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    transaction_id: str
    from_status: Optional[TransactionStatus] = None
    to_status: TransactionStatus
    reason: Optional[str] = None
    metadata: Optional[dict[str, Any]] = Field(default=None, validation_alias="details")
    created_at: datetime


class VoucherRedemptionResult(BaseModel):
    transaction: TransactionRecord
    account: AccountSnapshot
    duplicate: bool = False


class TopupResult(BaseModel):
    transaction: TransactionRecord
    payment_instructions: Optional[dict[str, Any]] = None
    payment_url: Optional[str] = None
    expires_at: Optional[datetime] = None
    duplicate: bool = False


class PaymentResult(TopupResult):
    pass


class TransferResult(BaseModel):
    outgoing: TransactionRecord
    incoming: TransactionRecord
    duplicate: bool = False


class GiftResult(BaseModel):
    gift_in: TransactionRecord
    gift_out: Optional[TransactionRecord] = None
    duplicate: bool = False


class WithdrawalResult(BaseModel):
    transaction: TransactionRecord
    disbursement_id: Optional[str] = None
    estimated_time: str = "1-3 business days"
    duplicate: bool = False


class SettlementStatusResult(BaseModel):
    transaction: TransactionRecord
    gateway_status: Optional[SettlementStatus] = None


class TransactionPage(BaseModel):
    page: int
    limit: int
    total_pages: int
    total_items: int
    has_next: bool
    has_prev: bool
    items: list[TransactionRecord]


class SweepResult(BaseModel):
    completed: list[str] = Field(default_factory=list)
    cancelled: list[str] = Field(default_factory=list)
    compensated: list[str] = Field(default_factory=list)
    resubmitted: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)
