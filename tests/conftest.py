import sys
from pathlib import Path
from typing import Optional

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from wallet_ledger.contracts.settlement import BankDetails, Disbursement, PayableBill, SettlementStatus  # noqa: E402
from wallet_ledger.database import build_engine, build_session_factory, init_db  # noqa: E402
from wallet_ledger.engine import TransactionEngine  # noqa: E402
from wallet_ledger.errors import GatewayError, GatewayTimeoutError  # noqa: E402
from wallet_ledger.models import Account, AccountStatus, new_id  # noqa: E402


class FakeGateway:
    """
    In-memory settlement gateway. Flip the ``fail_*`` flags to make the next
    calls raise, and seed ``statuses`` to answer status queries.
    """

    def __init__(self):
        self.bills: list[dict] = []
        self.disbursements: list[dict] = []
        self.queries: list[str] = []
        self.statuses: dict[str, SettlementStatus] = {}
        self.disbursement_status = SettlementStatus.PENDING
        self.fail_bills = False
        self.fail_disbursements = False
        self.timeout_disbursements = False
        self.fail_queries = False

    async def create_payable_bill(self, transaction_id: str, amount: int, method: str) -> PayableBill:
        if self.fail_bills:
            raise GatewayError("bill rejected", code="GATEWAY_REJECTED")
        self.bills.append({"transaction_id": transaction_id, "amount": amount, "method": method})
        return PayableBill(
            gateway_ref=f"bill-{transaction_id}",
            payment_instructions={"va_number": "8808000123"},
            payment_url=f"https://pay.example.test/{transaction_id}",
        )

    async def create_disbursement(
        self, transaction_id: str, amount: int, bank_details: BankDetails, idempotency_key: str
    ) -> Disbursement:
        if self.fail_disbursements:
            raise GatewayError("disbursement rejected", code="GATEWAY_REJECTED")
        if self.timeout_disbursements:
            self.disbursements.append({"transaction_id": transaction_id, "idempotency_key": idempotency_key, "timed_out": True})
            raise GatewayTimeoutError("settlement gateway timed out")
        self.disbursements.append(
            {
                "transaction_id": transaction_id,
                "amount": amount,
                "bank_code": bank_details.bank_code,
                "idempotency_key": idempotency_key,
            }
        )
        return Disbursement(gateway_ref=f"disb-{transaction_id}", status=self.disbursement_status)

    async def query_status(self, gateway_ref: str) -> SettlementStatus:
        if self.fail_queries:
            raise GatewayError("gateway unreachable", code="GATEWAY_UNREACHABLE")
        self.queries.append(gateway_ref)
        return self.statuses.get(gateway_ref, SettlementStatus.PENDING)


@pytest.fixture
def session_factory(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    init_db(engine)
    yield build_session_factory(engine)
    engine.dispose()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def ledger(session_factory, gateway):
    return TransactionEngine(session_factory, gateway)


@pytest.fixture
def make_account(session_factory):
    def _make(balance: int = 0, status: AccountStatus = AccountStatus.ACTIVE, account_id: Optional[str] = None) -> str:
        with session_factory() as db:
            account = Account(id=account_id or new_id(), balance=balance, status=status)
            db.add(account)
            db.commit()
            return account.id

    return _make


@pytest.fixture
def balance_of(session_factory):
    def _balance(account_id: str) -> int:
        with session_factory() as db:
            return db.get(Account, account_id).balance

    return _balance


@pytest.fixture
def bank_details():
    return {"bank_code": "BCA", "account_number": "1234567890", "recipient_name": "Dewi Lestari"}
