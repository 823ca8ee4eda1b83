import csv
from datetime import datetime, timedelta
from io import StringIO
from typing import List, Optional, Tuple

from wallet_ledger.config import settings
from wallet_ledger.contracts.settlement import BankDetails, SettlementStatus
from wallet_ledger.engine import TransactionEngine
from wallet_ledger.errors import GatewayError
from wallet_ledger.logging_config import get_logger
from wallet_ledger.models import Transaction, TransactionStatus, TransactionType, utcnow
from wallet_ledger.schemas import SweepResult
from wallet_ledger.store import read_only

logger = get_logger(__name__)


async def _settle_withdrawal(engine: TransactionEngine, transaction: Transaction, result: SweepResult) -> None:
    if transaction.external_payment_id is None:
        # Debit committed but the disbursement was never acknowledged.
        disbursement = await engine.gateway.create_disbursement(
            transaction.id,
            transaction.amount,
            BankDetails.model_validate(transaction.bank_details),
            idempotency_key=transaction.id,
        )
        result.resubmitted.append(transaction.id)
        gateway_ref, status = disbursement.gateway_ref, disbursement.status
    else:
        gateway_ref = transaction.external_payment_id
        status = await engine.gateway.query_status(gateway_ref)

    record = engine.apply_disbursement_outcome(transaction.id, gateway_ref, status)
    if record.status == TransactionStatus.COMPLETED:
        result.completed.append(transaction.id)
    elif record.status == TransactionStatus.FAILED:
        result.compensated.append(transaction.id)
    elif transaction.id not in result.resubmitted:
        result.skipped.append(transaction.id)


async def reconcile_pending_withdrawals(engine: TransactionEngine, now: Optional[datetime] = None) -> SweepResult:
    """
    Drive stale PENDING withdrawals to a terminal state from the gateway's view.
    Gateway errors leave the row for the next run.
    """
    now = now or utcnow()
    cutoff = now - timedelta(minutes=settings.withdrawal_reconcile_after_minutes)
    with read_only(engine.session_factory) as store:
        candidates = store.pending_ids_created_before(cutoff, types=[TransactionType.WITHDRAWAL])

    result = SweepResult()
    for transaction_id in candidates:
        with read_only(engine.session_factory) as store:
            transaction = store.get_transaction(transaction_id)
        if transaction.status != TransactionStatus.PENDING:
            result.skipped.append(transaction_id)
            continue
        try:
            await _settle_withdrawal(engine, transaction, result)
        except GatewayError as exc:
            logger.warning("Withdrawal reconciliation deferred transaction_id=%s error=%s", transaction_id, exc.message)
            result.skipped.append(transaction_id)

    logger.info(
        "Withdrawal reconciliation complete completed=%s compensated=%s resubmitted=%s skipped=%s",
        len(result.completed),
        len(result.compensated),
        len(result.resubmitted),
        len(result.skipped),
    )
    return result


def _is_mismatch(local: TransactionStatus, remote: Optional[SettlementStatus]) -> bool:
    if remote is None:
        return True
    if local == TransactionStatus.COMPLETED:
        return not remote.is_settled
    if local in (TransactionStatus.FAILED, TransactionStatus.CANCELLED):
        return remote.is_settled
    # still pending locally while the gateway already decided
    return remote.is_settled or remote.is_failed


async def generate_reconciliation_csv(engine: TransactionEngine, since: datetime) -> Tuple[str, int]:
    """
    Compare gateway-backed ledger rows created since ``since`` with the
    gateway's settlement status and return CSV text plus mismatch count.
    """
    with read_only(engine.session_factory) as store:
        transactions = store.gateway_backed_since(since)

    mismatches: List[tuple] = []
    for txn in transactions:
        try:
            remote: Optional[SettlementStatus] = await engine.gateway.query_status(txn.external_payment_id)
        except GatewayError as exc:
            logger.warning("Status lookup failed transaction_id=%s error=%s", txn.id, exc.message)
            remote = None
        if _is_mismatch(txn.status, remote):
            mismatches.append((
                txn.id,
                txn.type.value,
                txn.external_payment_id,
                txn.amount / 100,  # convert to GSALT
                txn.status.value,
                remote.value if remote else "UNREACHABLE",
            ))

    logger.info("Reconciliation complete with %s mismatches", len(mismatches))
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(["transactionId", "type", "gatewayRef", "amount", "localStatus", "gatewayStatus"])
    for row in mismatches:
        writer.writerow(row)

    return output.getvalue(), len(mismatches)
