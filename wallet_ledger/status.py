from datetime import datetime
from typing import Any, Optional

from wallet_ledger.audit import AuditRecorder
from wallet_ledger.errors import InvalidStatusTransitionError
from wallet_ledger.logging_config import get_logger
from wallet_ledger.models import Transaction, TransactionStatus, utcnow
from wallet_ledger.store import LedgerStore

logger = get_logger(__name__)

ALLOWED_TRANSITIONS: dict[TransactionStatus, frozenset[TransactionStatus]] = {
    TransactionStatus.PENDING: frozenset(
        {TransactionStatus.COMPLETED, TransactionStatus.FAILED, TransactionStatus.CANCELLED}
    ),
    # manual retry only
    TransactionStatus.FAILED: frozenset({TransactionStatus.PENDING}),
    TransactionStatus.PROCESSING: frozenset(),
    TransactionStatus.COMPLETED: frozenset(),
    TransactionStatus.CANCELLED: frozenset(),
}

TERMINAL_STATUSES = frozenset({TransactionStatus.COMPLETED, TransactionStatus.CANCELLED})


def can_transition(current: TransactionStatus, new: TransactionStatus) -> bool:
    return new in ALLOWED_TRANSITIONS.get(current, frozenset())


def validate_transition(
    current: TransactionStatus, new: TransactionStatus, transaction_id: Optional[str] = None
) -> None:
    if can_transition(current, new):
        return
    logger.warning(
        "Rejected status transition transaction_id=%s from=%s to=%s",
        transaction_id,
        current.value,
        new.value,
    )
    raise InvalidStatusTransitionError(
        f"Invalid status transition {current.value} -> {new.value}",
        details={"transaction_id": transaction_id, "from": current.value, "to": new.value},
    )


def transition(
    store: LedgerStore,
    transaction: Transaction,
    new_status: TransactionStatus,
    recorder: AuditRecorder,
    reason: Optional[str] = None,
    metadata: Optional[dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> Transaction:
    old_status = transaction.status
    validate_transition(old_status, new_status, transaction.id)
    transaction.status = new_status
    if new_status == TransactionStatus.COMPLETED:
        transaction.completed_at = now or utcnow()
    store.update_transaction(transaction)
    recorder.record_status_change(store, transaction.id, old_status, new_status, reason, metadata)
    return transaction


def record_creation(
    store: LedgerStore,
    transaction: Transaction,
    recorder: AuditRecorder,
    reason: Optional[str] = None,
    metadata: Optional[dict[str, Any]] = None,
) -> None:
    recorder.record_status_change(store, transaction.id, None, transaction.status, reason, metadata)
