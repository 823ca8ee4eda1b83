from typing import Any, Optional, Protocol

from sqlalchemy import select

from wallet_ledger.logging_config import get_logger
from wallet_ledger.models import TransactionStatus, TransactionStatusHistory
from wallet_ledger.store import LedgerStore

logger = get_logger(__name__)


class AuditRecorder(Protocol):
    def record_status_change(
        self,
        store: LedgerStore,
        transaction_id: str,
        from_status: Optional[TransactionStatus],
        to_status: TransactionStatus,
        reason: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None: ...

    def history(self, store: LedgerStore, transaction_id: str) -> list[TransactionStatusHistory]: ...


class SqlAuditRecorder:
    """
    Appends status history rows inside the caller's unit, so a status change
    and its history entry commit or roll back together.
    """

    def record_status_change(
        self,
        store: LedgerStore,
        transaction_id: str,
        from_status: Optional[TransactionStatus],
        to_status: TransactionStatus,
        reason: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        entry = TransactionStatusHistory(
            transaction_id=transaction_id,
            from_status=from_status,
            to_status=to_status,
            reason=reason,
            details=metadata,
        )
        store.db.add(entry)
        store.db.flush()
        logger.info(
            "Status change transaction_id=%s from=%s to=%s reason=%s",
            transaction_id,
            from_status.value if from_status else None,
            to_status.value,
            reason,
        )

    def history(self, store: LedgerStore, transaction_id: str) -> list[TransactionStatusHistory]:
        return list(
            store.db.execute(
                select(TransactionStatusHistory)
                .where(TransactionStatusHistory.transaction_id == transaction_id)
                .order_by(TransactionStatusHistory.id)
            ).scalars()
        )
