"""
Transaction processing engine.

Every balance-moving operation follows the same shape: validate the request,
short-circuit on a known external reference, check amount bounds and the
daily cap, then open one atomic unit, lock the affected accounts in
ascending id order, write rows and balances, and commit. Withdrawals are the
one two-unit flow: the debit commits before the disbursement request and a
separate compensating unit credits it back if the gateway refuses.
"""

from datetime import datetime, timedelta
from typing import Any, Iterable, Optional, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as SchemaError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from wallet_ledger.audit import AuditRecorder, SqlAuditRecorder
from wallet_ledger.config import (
    IDR_PER_GSALT,
    LEDGER_CURRENCY,
    MAX_PAGE_SIZE,
    POINTS_CURRENCY,
    SETTLEMENT_CURRENCY,
    FundingSource,
    settings,
)
from wallet_ledger.contracts.settlement import SettlementGateway, SettlementStatus, gsalt_units_to_idr
from wallet_ledger.errors import (
    AccountNotActiveError,
    GatewayError,
    GatewayTimeoutError,
    InsufficientBalanceError,
    InternalError,
    NotFoundError,
    SelfTransferError,
    ValidationError,
)
from wallet_ledger.idempotency import normalize_reference, resolve_existing
from wallet_ledger.logging_config import get_logger
from wallet_ledger.models import (
    Account,
    AccountStatus,
    Transaction,
    TransactionStatus,
    TransactionType,
    VoucherKind,
    new_id,
    utcnow,
)
from wallet_ledger.policy import (
    DEFAULT_FEE_SCHEDULE,
    FeeRule,
    LimitPolicy,
    MethodFamily,
    calculate_fee,
    check_daily_limit,
    resolve_payment_method,
    validate_amount,
)
from wallet_ledger.schemas import (
    AccountSnapshot,
    GiftRequest,
    GiftResult,
    PaymentRequest,
    PaymentResult,
    RedeemVoucherRequest,
    SettlementStatusResult,
    StatusHistoryEntry,
    SweepResult,
    TopupRequest,
    TopupResult,
    TransactionPage,
    TransactionRecord,
    TransferRequest,
    TransferResult,
    VoucherRedemptionResult,
    WithdrawalRequest,
    WithdrawalResult,
)
from wallet_ledger.status import record_creation, transition, validate_transition
from wallet_ledger.store import LedgerStore, atomic_unit, read_only

logger = get_logger(__name__)

RequestT = TypeVar("RequestT", bound=BaseModel)

SETTLEABLE_TYPES = (TransactionType.TOPUP, TransactionType.PAYMENT)


def _coerce(model_cls: type[RequestT], request: Any) -> RequestT:
    if isinstance(request, model_cls):
        return request
    try:
        return model_cls.model_validate(request)
    except SchemaError as exc:
        raise ValidationError(
            f"Invalid {model_cls.__name__}",
            details={"errors": exc.errors(include_url=False, include_context=False)},
        ) from exc


def _ensure_active(account: Account) -> None:
    if account.status != AccountStatus.ACTIVE:
        raise AccountNotActiveError(
            f"Account {account.id} is {account.status.value.lower()}",
            details={"account_id": account.id, "status": account.status.value},
        )


def _ensure_funds(account: Account, required: int) -> None:
    if account.balance < required:
        raise InsufficientBalanceError(
            "Insufficient balance",
            details={"account_id": account.id, "balance": account.balance, "required": required},
        )


def _ensure_replay_type(existing: Transaction, expected: Iterable[TransactionType]) -> None:
    if existing.type not in tuple(expected):
        raise ValidationError(
            "External reference already used by a different operation",
            code="DUPLICATE_TRANSACTION",
            details={"transaction_id": existing.id, "type": existing.type.value},
        )


def _record(transaction: Transaction) -> TransactionRecord:
    return TransactionRecord.model_validate(transaction)


def _touch(account: Account, delta: int, now: datetime) -> None:
    account.balance += delta
    account.last_activity_at = now


class TransactionEngine:
    def __init__(
        self,
        session_factory: sessionmaker,
        gateway: SettlementGateway,
        recorder: Optional[AuditRecorder] = None,
        policy: Optional[LimitPolicy] = None,
        fee_schedule: Optional[dict[MethodFamily, FeeRule]] = None,
        pending_expiry: Optional[timedelta] = None,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.recorder = recorder or SqlAuditRecorder()
        self.policy = policy or LimitPolicy.from_settings(settings)
        self.fee_schedule = fee_schedule or DEFAULT_FEE_SCHEDULE
        self.pending_expiry = pending_expiry or timedelta(hours=settings.pending_expiry_hours)

    # -- shared steps -----------------------------------------------------

    def _check_daily_limit(self, account_id: str, txn_type: TransactionType, amount: int) -> None:
        with read_only(self.session_factory) as store:
            check_daily_limit(store, self.policy, account_id, txn_type, amount)

    def _replay_after_conflict(self, ref: Optional[str], exc: IntegrityError) -> Transaction:
        # A concurrent request with the same reference won the insert.
        existing = resolve_existing(self.session_factory, ref)
        if existing is None:
            logger.error("Integrity error without a matching reference ref=%s error=%s", ref, exc)
            raise InternalError("Ledger store rejected the transaction") from exc
        logger.info("Idempotent replay after insert race ref=%s transaction_id=%s", ref, existing.id)
        return existing

    def _linked(self, transaction: Transaction) -> Optional[Transaction]:
        if transaction.related_transaction_id is None:
            return None
        with read_only(self.session_factory) as store:
            return store.get_transaction(transaction.related_transaction_id)

    @staticmethod
    def _bill_result(result_cls, transaction: Transaction, duplicate: bool = False):
        instructions = transaction.payment_instructions or None
        return result_cls(
            transaction=_record(transaction),
            payment_instructions=instructions,
            payment_url=(instructions or {}).get("payment_url"),
            expires_at=transaction.payment_expires_at,
            duplicate=duplicate,
        )

    async def _create_bill(self, store: LedgerStore, transaction: Transaction) -> None:
        try:
            bill = await self.gateway.create_payable_bill(
                transaction.id, transaction.total_amount, transaction.payment_method
            )
        except GatewayError as exc:
            logger.error(
                "Bill creation failed, aborting unit transaction_id=%s error=%s", transaction.id, exc.message
            )
            raise
        instructions = dict(bill.payment_instructions)
        if bill.payment_url:
            instructions["payment_url"] = bill.payment_url
        transaction.external_payment_id = bill.gateway_ref
        transaction.payment_instructions = instructions
        transaction.payment_expires_at = bill.expiry
        store.update_transaction(transaction)

    # -- topup ------------------------------------------------------------

    async def create_topup(self, request: TopupRequest) -> TopupResult:
        request = _coerce(TopupRequest, request)
        method = resolve_payment_method(request.payment_method)
        if not method.available_for_topup:
            raise ValidationError(
                f"Payment method '{method.code}' is not available for top-up", code="INVALID_PAYMENT_METHOD"
            )
        ref = normalize_reference(request.external_reference_id)
        existing = resolve_existing(self.session_factory, ref)
        if existing is not None:
            _ensure_replay_type(existing, [TransactionType.TOPUP])
            logger.info("Idempotent topup replay ref=%s transaction_id=%s", ref, existing.id)
            return self._bill_result(TopupResult, existing, duplicate=True)
        validate_amount(self.policy, TransactionType.TOPUP, request.amount)
        self._check_daily_limit(request.account_id, TransactionType.TOPUP, request.amount)

        try:
            with atomic_unit(self.session_factory) as store:
                account = store.get_account(request.account_id)
                _ensure_active(account)
                transaction = Transaction(
                    id=new_id(),
                    account_id=account.id,
                    type=TransactionType.TOPUP,
                    amount=request.amount,
                    fee=0,
                    total_amount=request.amount,
                    status=TransactionStatus.PENDING,
                    payment_method=method.code,
                    description=request.description or f"Topup {request.amount // 100} GSALT",
                    external_reference_id=ref,
                    payment_amount=request.payment_amount or gsalt_units_to_idr(request.amount),
                    payment_currency=SETTLEMENT_CURRENCY,
                    exchange_rate_idr=IDR_PER_GSALT,
                )
                store.insert_transaction(transaction)
                record_creation(store, transaction, self.recorder, "topup created", {"payment_method": method.code})
                await self._create_bill(store, transaction)
        except IntegrityError as exc:
            return self._bill_result(TopupResult, self._replay_after_conflict(ref, exc), duplicate=True)

        logger.info(
            "Topup pending transaction_id=%s account_id=%s amount=%s gateway_ref=%s",
            transaction.id,
            transaction.account_id,
            transaction.amount,
            transaction.external_payment_id,
        )
        return self._bill_result(TopupResult, transaction)

    # -- transfer & gifts -------------------------------------------------

    def _move_funds(
        self,
        store: LedgerStore,
        out_type: TransactionType,
        in_type: TransactionType,
        source_id: str,
        destination_id: str,
        amount: int,
        description: Optional[str],
        ref: Optional[str],
    ) -> tuple[Transaction, Transaction]:
        accounts = store.lock_accounts(source_id, destination_id)
        source, destination = accounts[source_id], accounts[destination_id]
        _ensure_active(source)
        _ensure_active(destination)
        _ensure_funds(source, amount)

        now = utcnow()
        outgoing = Transaction(
            id=new_id(),
            account_id=source_id,
            type=out_type,
            amount=amount,
            fee=0,
            total_amount=amount,
            status=TransactionStatus.COMPLETED,
            description=description,
            external_reference_id=ref,
            destination_account_id=destination_id,
            completed_at=now,
        )
        incoming = Transaction(
            id=new_id(),
            account_id=destination_id,
            type=in_type,
            amount=amount,
            fee=0,
            total_amount=amount,
            status=TransactionStatus.COMPLETED,
            description=description,
            source_account_id=source_id,
            completed_at=now,
        )
        outgoing.related_transaction_id = incoming.id
        incoming.related_transaction_id = outgoing.id
        store.insert_transaction(outgoing)
        store.insert_transaction(incoming)

        _touch(source, -amount, now)
        _touch(destination, amount, now)
        store.update_account(source)
        store.update_account(destination)

        record_creation(store, outgoing, self.recorder, f"{out_type.value.lower()} completed")
        record_creation(store, incoming, self.recorder, f"{in_type.value.lower()} completed")
        return outgoing, incoming

    async def create_transfer(self, request: TransferRequest) -> TransferResult:
        request = _coerce(TransferRequest, request)
        if request.source_account_id == request.destination_account_id:
            raise SelfTransferError("Cannot transfer to the same account")
        ref = normalize_reference(request.external_reference_id)
        existing = resolve_existing(self.session_factory, ref)
        if existing is not None:
            _ensure_replay_type(existing, [TransactionType.TRANSFER_OUT])
            logger.info("Idempotent transfer replay ref=%s transaction_id=%s", ref, existing.id)
            return TransferResult(outgoing=_record(existing), incoming=_record(self._linked(existing)), duplicate=True)
        validate_amount(self.policy, TransactionType.TRANSFER_OUT, request.amount)
        self._check_daily_limit(request.source_account_id, TransactionType.TRANSFER_OUT, request.amount)

        try:
            with atomic_unit(self.session_factory) as store:
                outgoing, incoming = self._move_funds(
                    store,
                    TransactionType.TRANSFER_OUT,
                    TransactionType.TRANSFER_IN,
                    request.source_account_id,
                    request.destination_account_id,
                    request.amount,
                    request.description,
                    ref,
                )
        except IntegrityError as exc:
            existing = self._replay_after_conflict(ref, exc)
            return TransferResult(outgoing=_record(existing), incoming=_record(self._linked(existing)), duplicate=True)

        logger.info(
            "Transfer completed out_id=%s in_id=%s source=%s destination=%s amount=%s",
            outgoing.id,
            incoming.id,
            outgoing.account_id,
            incoming.account_id,
            outgoing.amount,
        )
        return TransferResult(outgoing=_record(outgoing), incoming=_record(incoming))

    def _gift_result(self, existing: Transaction) -> GiftResult:
        _ensure_replay_type(existing, [TransactionType.GIFT_IN, TransactionType.GIFT_OUT])
        if existing.type == TransactionType.GIFT_OUT:
            return GiftResult(gift_in=_record(self._linked(existing)), gift_out=_record(existing), duplicate=True)
        return GiftResult(gift_in=_record(existing), duplicate=True)

    async def create_gift(self, request: GiftRequest) -> GiftResult:
        request = _coerce(GiftRequest, request)
        if request.source_account_id:
            return await self.process_gift_out(request)
        return await self.process_gift_in(request)

    async def process_gift_in(self, request: GiftRequest) -> GiftResult:
        """Promotional credit: one-sided, no balance check."""
        request = _coerce(GiftRequest, request)
        ref = normalize_reference(request.external_reference_id)
        existing = resolve_existing(self.session_factory, ref)
        if existing is not None:
            logger.info("Idempotent gift replay ref=%s transaction_id=%s", ref, existing.id)
            return self._gift_result(existing)
        validate_amount(self.policy, TransactionType.GIFT_IN, request.amount)

        description = request.description or "Gift received"
        if request.gift_source:
            description = f"{description} from {request.gift_source}"
        try:
            with atomic_unit(self.session_factory) as store:
                account = store.lock_account_for_update(request.destination_account_id)
                _ensure_active(account)
                now = utcnow()
                gift_in = Transaction(
                    id=new_id(),
                    account_id=account.id,
                    type=TransactionType.GIFT_IN,
                    amount=request.amount,
                    fee=0,
                    total_amount=request.amount,
                    status=TransactionStatus.COMPLETED,
                    description=description,
                    external_reference_id=ref,
                    completed_at=now,
                )
                store.insert_transaction(gift_in)
                _touch(account, request.amount, now)
                store.update_account(account)
                record_creation(store, gift_in, self.recorder, "gift credited", {"gift_source": request.gift_source})
        except IntegrityError as exc:
            return self._gift_result(self._replay_after_conflict(ref, exc))

        logger.info("Gift credited transaction_id=%s account_id=%s amount=%s", gift_in.id, gift_in.account_id, gift_in.amount)
        return GiftResult(gift_in=_record(gift_in))

    async def process_gift_out(self, request: GiftRequest) -> GiftResult:
        request = _coerce(GiftRequest, request)
        if not request.source_account_id:
            raise ValidationError("A gift out needs a source account", code="VALIDATION_ERROR")
        if request.source_account_id == request.destination_account_id:
            raise SelfTransferError("Cannot send a gift to the same account")
        ref = normalize_reference(request.external_reference_id)
        existing = resolve_existing(self.session_factory, ref)
        if existing is not None:
            logger.info("Idempotent gift replay ref=%s transaction_id=%s", ref, existing.id)
            return self._gift_result(existing)
        validate_amount(self.policy, TransactionType.GIFT_OUT, request.amount)
        self._check_daily_limit(request.source_account_id, TransactionType.GIFT_OUT, request.amount)

        try:
            with atomic_unit(self.session_factory) as store:
                gift_out, gift_in = self._move_funds(
                    store,
                    TransactionType.GIFT_OUT,
                    TransactionType.GIFT_IN,
                    request.source_account_id,
                    request.destination_account_id,
                    request.amount,
                    request.description,
                    ref,
                )
        except IntegrityError as exc:
            return self._gift_result(self._replay_after_conflict(ref, exc))

        logger.info(
            "Gift sent out_id=%s in_id=%s source=%s destination=%s amount=%s",
            gift_out.id,
            gift_in.id,
            gift_out.account_id,
            gift_in.account_id,
            gift_out.amount,
        )
        return GiftResult(gift_in=_record(gift_in), gift_out=_record(gift_out))

    # -- payment ----------------------------------------------------------

    async def create_payment(self, request: PaymentRequest) -> PaymentResult:
        request = _coerce(PaymentRequest, request)
        method = resolve_payment_method(request.payment_method)
        ref = normalize_reference(request.external_reference_id)
        existing = resolve_existing(self.session_factory, ref)
        if existing is not None:
            _ensure_replay_type(existing, [TransactionType.PAYMENT])
            logger.info("Idempotent payment replay ref=%s transaction_id=%s", ref, existing.id)
            return self._bill_result(PaymentResult, existing, duplicate=True)
        validate_amount(self.policy, TransactionType.PAYMENT, request.amount)
        self._check_daily_limit(request.account_id, TransactionType.PAYMENT, request.amount)

        fee = calculate_fee(method.code, request.amount, self.fee_schedule)
        total = request.amount + fee
        wallet_funded = method.funding == FundingSource.WALLET
        try:
            with atomic_unit(self.session_factory) as store:
                if wallet_funded:
                    account = store.lock_account_for_update(request.account_id)
                else:
                    account = store.get_account(request.account_id)
                _ensure_active(account)
                now = utcnow()
                transaction = Transaction(
                    id=new_id(),
                    account_id=account.id,
                    type=TransactionType.PAYMENT,
                    amount=request.amount,
                    fee=fee,
                    total_amount=total,
                    status=TransactionStatus.COMPLETED if wallet_funded else TransactionStatus.PENDING,
                    payment_method=method.code,
                    description=request.description or f"Payment via {method.code}",
                    external_reference_id=ref,
                    completed_at=now if wallet_funded else None,
                )
                if wallet_funded:
                    _ensure_funds(account, total)
                    store.insert_transaction(transaction)
                    _touch(account, -total, now)
                    store.update_account(account)
                    record_creation(store, transaction, self.recorder, "paid from wallet balance", {"fee": fee})
                else:
                    transaction.payment_amount = gsalt_units_to_idr(total)
                    transaction.payment_currency = SETTLEMENT_CURRENCY
                    transaction.exchange_rate_idr = IDR_PER_GSALT
                    store.insert_transaction(transaction)
                    record_creation(
                        store, transaction, self.recorder, "payment created", {"payment_method": method.code, "fee": fee}
                    )
                    await self._create_bill(store, transaction)
        except IntegrityError as exc:
            return self._bill_result(PaymentResult, self._replay_after_conflict(ref, exc), duplicate=True)

        logger.info(
            "Payment recorded transaction_id=%s account_id=%s amount=%s fee=%s status=%s",
            transaction.id,
            transaction.account_id,
            transaction.amount,
            transaction.fee,
            transaction.status.value,
        )
        return self._bill_result(PaymentResult, transaction)

    # -- withdrawal -------------------------------------------------------

    async def create_withdrawal(self, request: WithdrawalRequest) -> WithdrawalResult:
        request = _coerce(WithdrawalRequest, request)
        ref = normalize_reference(request.external_reference_id)
        existing = resolve_existing(self.session_factory, ref)
        if existing is not None:
            _ensure_replay_type(existing, [TransactionType.WITHDRAWAL])
            logger.info("Idempotent withdrawal replay ref=%s transaction_id=%s", ref, existing.id)
            return WithdrawalResult(
                transaction=_record(existing), disbursement_id=existing.external_payment_id, duplicate=True
            )
        validate_amount(self.policy, TransactionType.WITHDRAWAL, request.amount)
        self._check_daily_limit(request.account_id, TransactionType.WITHDRAWAL, request.amount)

        bank = request.bank_details
        try:
            with atomic_unit(self.session_factory) as store:
                account = store.lock_account_for_update(request.account_id)
                _ensure_active(account)
                _ensure_funds(account, request.amount)
                now = utcnow()
                transaction = Transaction(
                    id=new_id(),
                    account_id=account.id,
                    type=TransactionType.WITHDRAWAL,
                    amount=request.amount,
                    fee=0,
                    total_amount=request.amount,
                    status=TransactionStatus.PENDING,
                    description=request.description
                    or f"Withdrawal {request.amount // 100} GSALT to {bank.bank_code} ({bank.account_number})",
                    external_reference_id=ref,
                    bank_details=bank.model_dump(),
                )
                store.insert_transaction(transaction)
                _touch(account, -request.amount, now)
                store.update_account(account)
                record_creation(store, transaction, self.recorder, "withdrawal debited", {"bank_code": bank.bank_code})
        except IntegrityError as exc:
            existing = self._replay_after_conflict(ref, exc)
            return WithdrawalResult(
                transaction=_record(existing), disbursement_id=existing.external_payment_id, duplicate=True
            )

        try:
            disbursement = await self.gateway.create_disbursement(
                transaction.id, transaction.amount, bank, idempotency_key=transaction.id
            )
        except GatewayTimeoutError as exc:
            # Left PENDING: reconciliation resubmits under the same idempotency key.
            logger.warning(
                "Disbursement outcome unknown, left for reconciliation transaction_id=%s error=%s",
                transaction.id,
                exc.message,
            )
            return WithdrawalResult(transaction=_record(transaction))
        except GatewayError as exc:
            logger.error("Disbursement failed transaction_id=%s error=%s", transaction.id, exc.message)
            self.compensate_withdrawal(transaction.id, f"Disbursement failed: {exc.message}", {"gateway_code": exc.code})
            raise GatewayError(
                f"Withdrawal disbursement failed: {exc.message}",
                code=exc.code,
                details={**exc.details, "transaction_id": transaction.id, "status": TransactionStatus.FAILED.value},
                retryable=False,
            ) from exc

        record = self.apply_disbursement_outcome(transaction.id, disbursement.gateway_ref, disbursement.status)
        if record.status == TransactionStatus.FAILED:
            raise GatewayError(
                f"Withdrawal disbursement {disbursement.status.value.lower()}",
                code="DISBURSEMENT_REJECTED",
                details={"transaction_id": transaction.id, "gateway_ref": disbursement.gateway_ref},
                retryable=False,
            )
        logger.info(
            "Withdrawal submitted transaction_id=%s account_id=%s amount=%s gateway_ref=%s",
            record.id,
            record.account_id,
            record.amount,
            disbursement.gateway_ref,
        )
        return WithdrawalResult(transaction=record, disbursement_id=disbursement.gateway_ref)

    def compensate_withdrawal(
        self,
        transaction_id: str,
        reason: str,
        metadata: Optional[dict[str, Any]] = None,
        gateway_ref: Optional[str] = None,
    ) -> bool:
        """
        Credit a failed withdrawal back in its own unit. Keyed by
        ``<transaction id>:compensation`` so it applies at most once.
        """
        compensation_key = f"{transaction_id}:compensation"
        with atomic_unit(self.session_factory) as store:
            transaction = store.lock_transaction_for_update(transaction_id)
            if transaction.compensation_reference is not None or transaction.status != TransactionStatus.PENDING:
                logger.info(
                    "Compensation skipped transaction_id=%s status=%s compensation_reference=%s",
                    transaction_id,
                    transaction.status.value,
                    transaction.compensation_reference,
                )
                return False
            account = store.lock_account_for_update(transaction.account_id)
            _touch(account, transaction.amount, utcnow())
            store.update_account(account)
            transaction.compensation_reference = compensation_key
            transaction.failure_reason = reason
            if gateway_ref and transaction.external_payment_id is None:
                transaction.external_payment_id = gateway_ref
            transition(
                store,
                transaction,
                TransactionStatus.FAILED,
                self.recorder,
                reason,
                {**(metadata or {}), "compensation_reference": compensation_key, "credited": transaction.amount},
            )
        logger.warning(
            "Withdrawal compensated transaction_id=%s credited=%s reason=%s", transaction_id, transaction.amount, reason
        )
        return True

    def apply_disbursement_outcome(
        self, transaction_id: str, gateway_ref: str, status: SettlementStatus
    ) -> TransactionRecord:
        if status.is_failed:
            self.compensate_withdrawal(
                transaction_id, f"Disbursement {status.value.lower()}", {"gateway_status": status.value}, gateway_ref
            )
            with read_only(self.session_factory) as store:
                return _record(store.get_transaction(transaction_id))
        with atomic_unit(self.session_factory) as store:
            transaction = store.lock_transaction_for_update(transaction_id)
            if transaction.external_payment_id is None:
                transaction.external_payment_id = gateway_ref
                store.update_transaction(transaction)
            if status.is_settled and transaction.status == TransactionStatus.PENDING:
                transition(
                    store,
                    transaction,
                    TransactionStatus.COMPLETED,
                    self.recorder,
                    "disbursement settled",
                    {"gateway_ref": gateway_ref, "gateway_status": status.value},
                )
            return _record(transaction)

    # -- vouchers ---------------------------------------------------------

    async def redeem_voucher(
        self,
        account_id: str,
        value: int,
        kind: VoucherKind,
        voucher_code: str,
        external_reference_id: Optional[str] = None,
    ) -> VoucherRedemptionResult:
        """
        Ledger leg of a voucher redemption. A balance voucher credits GSALT
        units, a loyalty voucher credits points. Voucher validity is checked
        by the caller; each account redeems a given code once.
        """
        request = _coerce(
            RedeemVoucherRequest,
            {
                "account_id": account_id,
                "value": value,
                "kind": kind,
                "voucher_code": voucher_code,
                "external_reference_id": external_reference_id,
            },
        )
        ref = normalize_reference(request.external_reference_id)
        existing = resolve_existing(self.session_factory, ref)
        if existing is not None:
            _ensure_replay_type(existing, [TransactionType.VOUCHER_REDEMPTION])
            logger.info("Idempotent voucher replay ref=%s transaction_id=%s", ref, existing.id)
            return VoucherRedemptionResult(
                transaction=_record(existing), account=await self.get_account(existing.account_id), duplicate=True
            )

        points = request.kind == VoucherKind.LOYALTY_POINTS
        try:
            with atomic_unit(self.session_factory) as store:
                account = store.lock_account_for_update(request.account_id)
                _ensure_active(account)
                if store.find_voucher_redemption(account.id, request.voucher_code) is not None:
                    raise ValidationError(
                        "Voucher already redeemed by this account",
                        code="VOUCHER_ALREADY_REDEEMED",
                        details={"voucher_code": request.voucher_code},
                    )
                now = utcnow()
                transaction = Transaction(
                    id=new_id(),
                    account_id=account.id,
                    type=TransactionType.VOUCHER_REDEMPTION,
                    amount=request.value,
                    fee=0,
                    total_amount=request.value,
                    currency=POINTS_CURRENCY if points else LEDGER_CURRENCY,
                    status=TransactionStatus.COMPLETED,
                    description=f"{'Loyalty points' if points else 'Balance'} voucher redemption: {request.voucher_code}",
                    external_reference_id=ref,
                    voucher_code=request.voucher_code,
                    completed_at=now,
                )
                store.insert_transaction(transaction)
                if points:
                    account.points += request.value
                    account.last_activity_at = now
                else:
                    _touch(account, request.value, now)
                store.update_account(account)
                record_creation(
                    store, transaction, self.recorder, "voucher redeemed", {"kind": request.kind.value}
                )
                snapshot = AccountSnapshot.model_validate(account)
        except IntegrityError as exc:
            existing = self._replay_after_conflict(ref, exc)
            _ensure_replay_type(existing, [TransactionType.VOUCHER_REDEMPTION])
            return VoucherRedemptionResult(
                transaction=_record(existing), account=await self.get_account(existing.account_id), duplicate=True
            )

        logger.info(
            "Voucher redeemed transaction_id=%s account_id=%s kind=%s value=%s",
            transaction.id,
            transaction.account_id,
            request.kind.value,
            request.value,
        )
        return VoucherRedemptionResult(transaction=_record(transaction), account=snapshot)

    # -- settlement confirmation ------------------------------------------

    async def confirm_payment(self, transaction_id: str, external_payment_id: Optional[str] = None) -> TransactionRecord:
        with atomic_unit(self.session_factory) as store:
            transaction = store.lock_transaction_for_update(transaction_id)
            if transaction.type not in SETTLEABLE_TYPES:
                raise ValidationError(
                    "Only topup and payment transactions can be confirmed", code="INVALID_TRANSACTION_TYPE"
                )
            validate_transition(transaction.status, TransactionStatus.COMPLETED, transaction.id)
            account = store.lock_account_for_update(transaction.account_id)
            if external_payment_id and transaction.external_payment_id is None:
                transaction.external_payment_id = external_payment_id
            if transaction.type == TransactionType.TOPUP:
                _touch(account, transaction.amount, utcnow())
                store.update_account(account)
            transition(
                store,
                transaction,
                TransactionStatus.COMPLETED,
                self.recorder,
                "payment confirmed",
                {"external_payment_id": external_payment_id, "credited": transaction.type == TransactionType.TOPUP},
            )
        logger.info(
            "Payment confirmed transaction_id=%s type=%s amount=%s",
            transaction.id,
            transaction.type.value,
            transaction.amount,
        )
        return _record(transaction)

    async def reject_payment(self, transaction_id: str, reason: Optional[str] = None) -> TransactionRecord:
        with atomic_unit(self.session_factory) as store:
            transaction = store.lock_transaction_for_update(transaction_id)
            if transaction.type not in SETTLEABLE_TYPES:
                raise ValidationError(
                    "Only topup and payment transactions can be rejected", code="INVALID_TRANSACTION_TYPE"
                )
            validate_transition(transaction.status, TransactionStatus.FAILED, transaction.id)
            transaction.failure_reason = f"Payment rejected: {reason}" if reason else "Payment rejected"
            transition(store, transaction, TransactionStatus.FAILED, self.recorder, transaction.failure_reason)
        logger.info("Payment rejected transaction_id=%s reason=%s", transaction.id, reason)
        return _record(transaction)

    async def retry_transaction(self, transaction_id: str, reason: Optional[str] = None) -> TransactionRecord:
        """Manual FAILED -> PENDING for a topup or an externally funded payment."""
        with atomic_unit(self.session_factory) as store:
            transaction = store.lock_transaction_for_update(transaction_id)
            if transaction.type not in SETTLEABLE_TYPES:
                raise ValidationError(
                    "Only topup and payment transactions can be retried", code="INVALID_TRANSACTION_TYPE"
                )
            validate_transition(transaction.status, TransactionStatus.PENDING, transaction.id)
            transaction.failure_reason = None
            transition(store, transaction, TransactionStatus.PENDING, self.recorder, reason or "manual retry")
        logger.info("Transaction re-opened for retry transaction_id=%s", transaction.id)
        return _record(transaction)

    async def expire_pending_transactions(self, now: Optional[datetime] = None) -> SweepResult:
        now = now or utcnow()
        cutoff = now - self.pending_expiry
        with read_only(self.session_factory) as store:
            # A pending withdrawal already holds a committed debit.
            candidates = store.pending_ids_created_before(cutoff, exclude_types=[TransactionType.WITHDRAWAL])

        result = SweepResult()
        for transaction_id in candidates:
            with atomic_unit(self.session_factory) as store:
                transaction = store.lock_transaction_for_update(transaction_id)
                if transaction.status != TransactionStatus.PENDING:
                    result.skipped.append(transaction_id)
                    continue
                transition(
                    store,
                    transaction,
                    TransactionStatus.CANCELLED,
                    self.recorder,
                    "expired",
                    {"expiry_hours": self.pending_expiry.total_seconds() / 3600},
                )
                result.cancelled.append(transaction_id)
        logger.info("Expired pending transactions cancelled=%s skipped=%s", len(result.cancelled), len(result.skipped))
        return result

    # -- reads ------------------------------------------------------------

    async def get_transaction(self, transaction_id: str) -> TransactionRecord:
        with read_only(self.session_factory) as store:
            return _record(store.get_transaction(transaction_id))

    async def get_transaction_by_reference(self, external_reference_id: str) -> TransactionRecord:
        existing = resolve_existing(self.session_factory, external_reference_id)
        if existing is None:
            raise NotFoundError(
                f"No transaction with external reference '{external_reference_id}'", code="TRANSACTION_NOT_FOUND"
            )
        return _record(existing)

    async def get_account(self, account_id: str) -> AccountSnapshot:
        with read_only(self.session_factory) as store:
            return AccountSnapshot.model_validate(store.get_account(account_id))

    async def list_transactions_by_account(self, account_id: str, page: int = 1, limit: int = 10) -> TransactionPage:
        page = page if page > 0 else 1
        limit = min(limit, MAX_PAGE_SIZE) if limit > 0 else 10
        with read_only(self.session_factory) as store:
            store.get_account(account_id)
            total_items = store.count_by_account(account_id)
            items = store.list_by_account(account_id, (page - 1) * limit, limit)
            total_pages = (total_items + limit - 1) // limit
            return TransactionPage(
                page=page,
                limit=limit,
                total_pages=total_pages,
                total_items=total_items,
                has_next=page < total_pages,
                has_prev=page > 1,
                items=[_record(t) for t in items],
            )

    async def get_status_history(self, transaction_id: str) -> list[StatusHistoryEntry]:
        with read_only(self.session_factory) as store:
            store.get_transaction(transaction_id)
            return [StatusHistoryEntry.model_validate(h) for h in self.recorder.history(store, transaction_id)]

    async def query_settlement_status(self, transaction_id: str) -> SettlementStatusResult:
        record = await self.get_transaction(transaction_id)
        if record.external_payment_id is None:
            return SettlementStatusResult(transaction=record)
        # Outside any unit: no lock is held while the gateway answers.
        status = await self.gateway.query_status(record.external_payment_id)
        return SettlementStatusResult(transaction=record, gateway_status=status)
