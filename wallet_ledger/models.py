import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import JSON, BigInteger, CheckConstraint, Column, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy import Enum as SAEnum

from wallet_ledger.config import LEDGER_CURRENCY
from wallet_ledger.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class TransactionType(str, Enum):
    TOPUP = "TOPUP"
    TRANSFER_IN = "TRANSFER_IN"
    TRANSFER_OUT = "TRANSFER_OUT"
    PAYMENT = "PAYMENT"
    GIFT_IN = "GIFT_IN"
    GIFT_OUT = "GIFT_OUT"
    VOUCHER_REDEMPTION = "VOUCHER_REDEMPTION"
    WITHDRAWAL = "WITHDRAWAL"


class TransactionStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class VoucherKind(str, Enum):
    BALANCE = "BALANCE"
    LOYALTY_POINTS = "LOYALTY_POINTS"


class AccountStatus(str, Enum):
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    BLOCKED = "BLOCKED"


def _enum_column(enum_cls, **kwargs):
    return Column(
        SAEnum(
            enum_cls,
            native_enum=False,
            length=20,
            values_callable=lambda members: [m.value for m in members],
            validate_strings=True,
        ),
        **kwargs,
    )


class Account(Base):
    __tablename__ = "accounts"
    id = Column(String(36), primary_key=True, default=new_id)
    balance = Column(BigInteger, nullable=False, default=0)
    points = Column(BigInteger, nullable=False, default=0)
    status = _enum_column(AccountStatus, nullable=False, default=AccountStatus.ACTIVE)
    last_activity_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)
    deleted_at = Column(DateTime(timezone=True), nullable=True, index=True)
    __table_args__ = (CheckConstraint("balance >= 0", name="ck_accounts_balance_non_negative"),)


class Transaction(Base):
    __tablename__ = "transactions"
    id = Column(String(36), primary_key=True, default=new_id)
    account_id = Column(String(36), ForeignKey("accounts.id"), index=True, nullable=False)
    type = _enum_column(TransactionType, nullable=False)
    amount = Column(BigInteger, nullable=False)
    fee = Column(BigInteger, nullable=False, default=0)
    total_amount = Column(BigInteger, nullable=False)
    currency = Column(String(10), nullable=False, default=LEDGER_CURRENCY)
    status = _enum_column(TransactionStatus, nullable=False, index=True)
    payment_method = Column(String(50), nullable=True)
    description = Column(Text, nullable=True)
    failure_reason = Column(Text, nullable=True)
    external_reference_id = Column(String(255), unique=True, nullable=True)
    external_payment_id = Column(String(255), index=True, nullable=True)
    payment_instructions = Column(JSON, nullable=True)
    payment_expires_at = Column(DateTime(timezone=True), nullable=True)
    # what the payer is billed on the gateway side
    payment_amount = Column(BigInteger, nullable=True)
    payment_currency = Column(String(10), nullable=True)
    exchange_rate_idr = Column(Integer, nullable=True)
    voucher_code = Column(String(64), nullable=True)
    bank_details = Column(JSON, nullable=True)
    compensation_reference = Column(String(80), unique=True, nullable=True)
    related_transaction_id = Column(String(36), nullable=True)
    source_account_id = Column(String(36), nullable=True)
    destination_account_id = Column(String(36), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_transactions_amount_positive"),
        CheckConstraint("total_amount = amount + fee", name="ck_transactions_total_amount"),
        Index("ix_transactions_account_type_status_created", "account_id", "type", "status", "created_at"),
    )


class TransactionStatusHistory(Base):
    __tablename__ = "transaction_status_history"
    id = Column(Integer, primary_key=True)
    transaction_id = Column(String(36), ForeignKey("transactions.id"), index=True, nullable=False)
    from_status = _enum_column(TransactionStatus, nullable=True)
    to_status = _enum_column(TransactionStatus, nullable=False)
    reason = Column(Text, nullable=True)
    details = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
