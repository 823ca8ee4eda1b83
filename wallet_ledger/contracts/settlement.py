from datetime import datetime
from enum import Enum
from typing import Any, Optional, Protocol

from pydantic import BaseModel, Field

from wallet_ledger.config import IDR_PER_GSALT_UNIT


def gsalt_units_to_idr(units: int) -> int:
    return units * IDR_PER_GSALT_UNIT


def idr_to_gsalt_units(idr: int) -> int:
    return idr // IDR_PER_GSALT_UNIT


class SettlementStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSED = "PROCESSED"
    DONE = "DONE"
    SUCCESSFUL = "SUCCESSFUL"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"

    @property
    def is_settled(self) -> bool:
        return self in (SettlementStatus.DONE, SettlementStatus.SUCCESSFUL)

    @property
    def is_failed(self) -> bool:
        return self in (SettlementStatus.FAILED, SettlementStatus.CANCELLED, SettlementStatus.EXPIRED)


class BankDetails(BaseModel):
    bank_code: str = Field(min_length=1, max_length=20)
    account_number: str = Field(min_length=4, max_length=34)
    recipient_name: str = Field(min_length=1, max_length=120)


class PayableBill(BaseModel):
    gateway_ref: str
    payment_instructions: dict[str, Any] = Field(default_factory=dict)
    expiry: Optional[datetime] = None
    payment_url: Optional[str] = None


class Disbursement(BaseModel):
    gateway_ref: str
    status: SettlementStatus = SettlementStatus.PENDING


class SettlementGateway(Protocol):
    async def create_payable_bill(self, transaction_id: str, amount: int, method: str) -> PayableBill: ...

    async def create_disbursement(
        self, transaction_id: str, amount: int, bank_details: BankDetails, idempotency_key: str
    ) -> Disbursement: ...

    async def query_status(self, gateway_ref: str) -> SettlementStatus: ...


class BillRequest(BaseModel):
    reference: str
    title: str
    amount: int
    method: str

    @classmethod
    def from_ledger(cls, transaction_id: str, amount_units: int, method: str) -> "BillRequest":
        return cls(
            reference=transaction_id,
            title=f"GSALT - {transaction_id}",
            amount=gsalt_units_to_idr(amount_units),  # convert to provider unit
            method=method,
        )


class BillResponse(BaseModel):
    gatewayRef: str
    paymentUrl: Optional[str] = None
    expiresAt: Optional[datetime] = None
    instructions: dict[str, Any] = Field(default_factory=dict)

    def to_bill(self) -> PayableBill:
        return PayableBill(
            gateway_ref=self.gatewayRef,
            payment_instructions=self.instructions,
            expiry=self.expiresAt,
            payment_url=self.paymentUrl,
        )


class DisbursementRequest(BaseModel):
    reference: str
    amount: int
    bankCode: str
    accountNumber: str
    recipientName: str
    remark: str

    @classmethod
    def from_ledger(cls, transaction_id: str, amount_units: int, bank_details: BankDetails) -> "DisbursementRequest":
        return cls(
            reference=transaction_id,
            amount=gsalt_units_to_idr(amount_units),
            bankCode=bank_details.bank_code,
            accountNumber=bank_details.account_number,
            recipientName=bank_details.recipient_name,
            remark=f"GSALT Withdrawal - {transaction_id}",
        )


class DisbursementResponse(BaseModel):
    gatewayRef: str
    status: SettlementStatus = SettlementStatus.PENDING

    def to_disbursement(self) -> Disbursement:
        return Disbursement(gateway_ref=self.gatewayRef, status=self.status)


class StatusResponse(BaseModel):
    gatewayRef: str
    status: SettlementStatus
