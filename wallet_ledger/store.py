"""
Ledger store: one SQLAlchemy session is one atomic unit.

Row locks are taken with ``SELECT ... FOR UPDATE`` and held until the unit
commits or rolls back. When several accounts are involved they are always
locked in ascending id order.
"""

from contextlib import contextmanager
from datetime import datetime
from typing import Iterable, Iterator, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from wallet_ledger.errors import InternalError, LedgerError, NotFoundError
from wallet_ledger.logging_config import get_logger
from wallet_ledger.models import Account, Transaction, TransactionStatus, TransactionType

logger = get_logger(__name__)


class LedgerStore:
    def __init__(self, db: Session):
        self.db = db

    def get_account(self, account_id: str) -> Account:
        account = self.db.execute(
            select(Account).where(Account.id == account_id, Account.deleted_at.is_(None))
        ).scalar_one_or_none()
        if account is None:
            raise NotFoundError(f"Account {account_id} not found", code="ACCOUNT_NOT_FOUND")
        return account

    def lock_account_for_update(self, account_id: str) -> Account:
        account = self.db.execute(
            select(Account)
            .where(Account.id == account_id, Account.deleted_at.is_(None))
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if account is None:
            raise NotFoundError(f"Account {account_id} not found", code="ACCOUNT_NOT_FOUND")
        return account

    def lock_accounts(self, *account_ids: str) -> dict[str, Account]:
        locked: dict[str, Account] = {}
        for account_id in sorted(set(account_ids)):
            locked[account_id] = self.lock_account_for_update(account_id)
        return locked

    def get_transaction(self, transaction_id: str) -> Transaction:
        transaction = self.db.get(Transaction, transaction_id)
        if transaction is None:
            raise NotFoundError(f"Transaction {transaction_id} not found", code="TRANSACTION_NOT_FOUND")
        return transaction

    def lock_transaction_for_update(self, transaction_id: str) -> Transaction:
        transaction = self.db.execute(
            select(Transaction)
            .where(Transaction.id == transaction_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if transaction is None:
            raise NotFoundError(f"Transaction {transaction_id} not found", code="TRANSACTION_NOT_FOUND")
        return transaction

    def insert_transaction(self, transaction: Transaction) -> Transaction:
        self.db.add(transaction)
        self.db.flush()
        return transaction

    def update_transaction(self, transaction: Transaction) -> Transaction:
        self.db.add(transaction)
        self.db.flush()
        return transaction

    def update_account(self, account: Account) -> Account:
        self.db.add(account)
        self.db.flush()
        return account

    def find_transaction_by_external_ref(self, ref: str) -> Optional[Transaction]:
        return self.db.execute(
            select(Transaction).where(Transaction.external_reference_id == ref)
        ).scalar_one_or_none()

    def find_voucher_redemption(self, account_id: str, voucher_code: str) -> Optional[Transaction]:
        return self.db.execute(
            select(Transaction).where(
                Transaction.account_id == account_id,
                Transaction.type == TransactionType.VOUCHER_REDEMPTION,
                Transaction.voucher_code == voucher_code,
            )
        ).scalars().first()

    def sum_completed_amount(
        self, account_id: str, txn_type: TransactionType, since: datetime, until: datetime
    ) -> int:
        total = self.db.execute(
            select(func.coalesce(func.sum(Transaction.amount), 0)).where(
                Transaction.account_id == account_id,
                Transaction.type == txn_type,
                Transaction.status == TransactionStatus.COMPLETED,
                Transaction.created_at >= since,
                Transaction.created_at < until,
            )
        ).scalar_one()
        return int(total)

    def count_by_account(self, account_id: str) -> int:
        return self.db.execute(
            select(func.count(Transaction.id)).where(Transaction.account_id == account_id)
        ).scalar_one()

    def list_by_account(self, account_id: str, offset: int, limit: int) -> list[Transaction]:
        return list(
            self.db.execute(
                select(Transaction)
                .where(Transaction.account_id == account_id)
                .order_by(Transaction.created_at.desc(), Transaction.id)
                .offset(offset)
                .limit(limit)
            ).scalars()
        )

    def pending_ids_created_before(
        self, cutoff: datetime, types: Optional[Iterable[TransactionType]] = None,
        exclude_types: Iterable[TransactionType] = (),
    ) -> list[str]:
        query = select(Transaction.id).where(
            Transaction.status == TransactionStatus.PENDING,
            Transaction.created_at < cutoff,
        )
        if types is not None:
            query = query.where(Transaction.type.in_(list(types)))
        excluded = list(exclude_types)
        if excluded:
            query = query.where(Transaction.type.not_in(excluded))
        return list(self.db.execute(query.order_by(Transaction.created_at)).scalars())

    def gateway_backed_since(self, since: datetime) -> list[Transaction]:
        return list(
            self.db.execute(
                select(Transaction)
                .where(Transaction.external_payment_id.is_not(None), Transaction.created_at >= since)
                .order_by(Transaction.created_at)
            ).scalars()
        )


@contextmanager
def atomic_unit(session_factory: sessionmaker) -> Iterator[LedgerStore]:
    """
    Open one atomic unit. Commits when the block exits cleanly, rolls back on
    any exception. Store failures surface as InternalError; IntegrityError is
    passed through so callers can resolve unique-key races.
    """
    db: Session = session_factory()
    try:
        yield LedgerStore(db)
        db.commit()
    except (LedgerError, IntegrityError):
        db.rollback()
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("Ledger store failure, unit rolled back: %s", exc)
        raise InternalError("Ledger store failure") from exc
    except BaseException:
        db.rollback()
        raise
    finally:
        db.close()


@contextmanager
def read_only(session_factory: sessionmaker) -> Iterator[LedgerStore]:
    db: Session = session_factory()
    try:
        yield LedgerStore(db)
    except SQLAlchemyError as exc:
        logger.error("Ledger store read failure: %s", exc)
        raise InternalError("Ledger store failure") from exc
    finally:
        db.close()
