from typing import Optional

from sqlalchemy.orm import sessionmaker

from wallet_ledger.models import Transaction
from wallet_ledger.store import LedgerStore, read_only


def normalize_reference(external_reference_id: Optional[str]) -> Optional[str]:
    if external_reference_id is None:
        return None
    ref = external_reference_id.strip()
    return ref or None


def resolve(store: LedgerStore, external_reference_id: Optional[str]) -> Optional[Transaction]:
    """
    Return the transaction already recorded under this reference, or None.

    Read-only and lock-free; callers run it before opening their unit so a
    duplicate request never waits on an account lock.
    """
    ref = normalize_reference(external_reference_id)
    if ref is None:
        return None
    return store.find_transaction_by_external_ref(ref)


def resolve_existing(session_factory: sessionmaker, external_reference_id: Optional[str]) -> Optional[Transaction]:
    if normalize_reference(external_reference_id) is None:
        return None
    with read_only(session_factory) as store:
        return resolve(store, external_reference_id)
