import asyncio
import csv
from datetime import timedelta
from io import StringIO

from wallet_ledger.contracts.settlement import SettlementStatus
from wallet_ledger.models import Transaction, TransactionStatus, TransactionType, new_id, utcnow
from wallet_ledger.reconciliation import generate_reconciliation_csv, reconcile_pending_withdrawals


def _withdraw(ledger, account_id, bank_details, amount=1_000):
    return asyncio.run(ledger.create_withdrawal({"account_id": account_id, "amount": amount, "bank_details": bank_details}))


def test_expiry_cancels_stale_pending_but_not_withdrawals(ledger, make_account, balance_of, bank_details):
    account_id = make_account(balance=5_000)
    topup = asyncio.run(ledger.create_topup({"account_id": account_id, "amount": 1_000, "payment_method": "VA_BCA"}))
    withdrawal = _withdraw(ledger, account_id, bank_details)

    result = asyncio.run(ledger.expire_pending_transactions(now=utcnow() + timedelta(hours=25)))

    assert result.cancelled == [topup.transaction.id]
    assert asyncio.run(ledger.get_transaction(topup.transaction.id)).status == TransactionStatus.CANCELLED
    assert asyncio.run(ledger.get_transaction(withdrawal.transaction.id)).status == TransactionStatus.PENDING
    assert balance_of(account_id) == 4_000


def test_expiry_rerun_is_a_no_op(ledger, make_account):
    account_id = make_account()
    asyncio.run(ledger.create_topup({"account_id": account_id, "amount": 1_000, "payment_method": "VA_BCA"}))
    later = utcnow() + timedelta(hours=25)

    first = asyncio.run(ledger.expire_pending_transactions(now=later))
    second = asyncio.run(ledger.expire_pending_transactions(now=later))

    assert len(first.cancelled) == 1
    assert second.cancelled == []
    assert second.skipped == []


def test_expiry_leaves_fresh_pending_alone(ledger, make_account):
    account_id = make_account()
    asyncio.run(ledger.create_topup({"account_id": account_id, "amount": 1_000, "payment_method": "VA_BCA"}))

    result = asyncio.run(ledger.expire_pending_transactions())

    assert result.cancelled == []


def test_reconcile_completes_settled_withdrawal(ledger, gateway, make_account, balance_of, bank_details):
    account_id = make_account(balance=5_000)
    withdrawal = _withdraw(ledger, account_id, bank_details)
    gateway.statuses[withdrawal.disbursement_id] = SettlementStatus.DONE

    result = asyncio.run(reconcile_pending_withdrawals(ledger, now=utcnow() + timedelta(hours=1)))

    assert result.completed == [withdrawal.transaction.id]
    assert asyncio.run(ledger.get_transaction(withdrawal.transaction.id)).status == TransactionStatus.COMPLETED
    assert balance_of(account_id) == 4_000


def test_reconcile_compensates_failed_withdrawal(ledger, gateway, make_account, balance_of, bank_details):
    account_id = make_account(balance=5_000)
    withdrawal = _withdraw(ledger, account_id, bank_details)
    gateway.statuses[withdrawal.disbursement_id] = SettlementStatus.FAILED

    result = asyncio.run(reconcile_pending_withdrawals(ledger, now=utcnow() + timedelta(hours=1)))

    assert result.compensated == [withdrawal.transaction.id]
    assert balance_of(account_id) == 5_000
    history = asyncio.run(ledger.get_status_history(withdrawal.transaction.id))
    assert history[-1].metadata["compensation_reference"] == f"{withdrawal.transaction.id}:compensation"


def test_reconcile_resubmits_unacknowledged_withdrawal(ledger, gateway, session_factory, make_account, bank_details):
    # debit committed, process died before the gateway answered
    account_id = make_account(balance=4_000)
    transaction_id = new_id()
    with session_factory() as db:
        db.add(
            Transaction(
                id=transaction_id,
                account_id=account_id,
                type=TransactionType.WITHDRAWAL,
                amount=1_000,
                fee=0,
                total_amount=1_000,
                status=TransactionStatus.PENDING,
                bank_details=bank_details,
            )
        )
        db.commit()

    result = asyncio.run(reconcile_pending_withdrawals(ledger, now=utcnow() + timedelta(hours=1)))

    assert result.resubmitted == [transaction_id]
    assert gateway.disbursements[0]["idempotency_key"] == transaction_id
    record = asyncio.run(ledger.get_transaction(transaction_id))
    assert record.external_payment_id == f"disb-{transaction_id}"
    assert record.status == TransactionStatus.PENDING


def test_reconcile_defers_on_gateway_error(ledger, gateway, make_account, balance_of, bank_details):
    account_id = make_account(balance=5_000)
    withdrawal = _withdraw(ledger, account_id, bank_details)
    gateway.fail_queries = True

    result = asyncio.run(reconcile_pending_withdrawals(ledger, now=utcnow() + timedelta(hours=1)))

    assert result.skipped == [withdrawal.transaction.id]
    assert asyncio.run(ledger.get_transaction(withdrawal.transaction.id)).status == TransactionStatus.PENDING
    assert balance_of(account_id) == 4_000


def test_report_lists_status_drift(ledger, gateway, make_account):
    account_id = make_account()
    settled = asyncio.run(ledger.create_topup({"account_id": account_id, "amount": 1_000, "payment_method": "VA_BCA"}))
    in_sync = asyncio.run(ledger.create_topup({"account_id": account_id, "amount": 2_000, "payment_method": "VA_BCA"}))
    asyncio.run(ledger.confirm_payment(settled.transaction.id))
    gateway.statuses[in_sync.transaction.external_payment_id] = SettlementStatus.PENDING

    csv_text, mismatches = asyncio.run(generate_reconciliation_csv(ledger, since=utcnow() - timedelta(hours=1)))

    rows = list(csv.DictReader(StringIO(csv_text)))
    assert mismatches == 1
    assert rows[0]["transactionId"] == settled.transaction.id
    assert rows[0]["localStatus"] == "COMPLETED"
    assert rows[0]["gatewayStatus"] == "PENDING"


def test_reconcile_resubmits_withdrawal_after_timeout(ledger, gateway, make_account, balance_of, bank_details):
    account_id = make_account(balance=5_000)
    gateway.timeout_disbursements = True
    withdrawal = _withdraw(ledger, account_id, bank_details)
    gateway.timeout_disbursements = False
    gateway.disbursement_status = SettlementStatus.DONE

    result = asyncio.run(reconcile_pending_withdrawals(ledger, now=utcnow() + timedelta(hours=1)))

    assert result.resubmitted == [withdrawal.transaction.id]
    assert result.completed == [withdrawal.transaction.id]
    assert [d["idempotency_key"] for d in gateway.disbursements] == [withdrawal.transaction.id] * 2
    assert balance_of(account_id) == 4_000
