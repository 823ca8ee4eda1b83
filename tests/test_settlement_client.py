import asyncio
import json

import httpx
import pytest

from wallet_ledger.clients.settlement_client import HttpSettlementGateway
from wallet_ledger.contracts.settlement import BankDetails, SettlementStatus
from wallet_ledger.errors import GatewayError, GatewayTimeoutError
from wallet_ledger.security import compute_signature

SECRET = "test-secret"


def _gateway(handler, **kwargs):
    options = {"max_retries": 2, "retry_backoff_seconds": 0, "rate_limit_per_minute": 100}
    options.update(kwargs)
    return HttpSettlementGateway(
        base_url="http://gateway.test",
        hmac_secret=SECRET,
        transport=httpx.MockTransport(handler),
        **options,
    )


def test_bill_request_is_signed_and_converted_to_idr():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            201,
            json={
                "gatewayRef": "bill-1",
                "paymentUrl": "https://pay.test/bill-1",
                "expiresAt": "2030-01-01T00:00:00Z",
                "instructions": {"va_number": "123"},
            },
        )

    bill = asyncio.run(_gateway(handler).create_payable_bill("txn-1", 5_000, "VA_BCA"))

    request = seen[0]
    body = json.loads(request.content)
    assert request.url.path == "/v1/bills"
    assert body["amount"] == 50_000
    assert body["reference"] == "txn-1"
    assert request.headers["Idempotency-Key"] == "txn-1"
    assert request.headers["X-Signature"] == compute_signature(body, request.headers["X-Timestamp"], SECRET)
    assert bill.gateway_ref == "bill-1"
    assert bill.payment_url == "https://pay.test/bill-1"
    assert bill.payment_instructions == {"va_number": "123"}


def test_retries_server_errors_then_succeeds():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        if len(attempts) < 3:
            return httpx.Response(503)
        return httpx.Response(200, json={"gatewayRef": "disb-1", "status": "PROCESSED"})

    disbursement = asyncio.run(
        _gateway(handler).create_disbursement(
            "txn-2",
            1_000,
            BankDetails(bank_code="BCA", account_number="1234567890", recipient_name="Dewi"),
            idempotency_key="txn-2",
        )
    )

    assert len(attempts) == 3
    assert {r.headers["Idempotency-Key"] for r in attempts} == {"txn-2"}
    assert disbursement.status == SettlementStatus.PROCESSED
    body = json.loads(attempts[0].content)
    assert body["bankCode"] == "BCA"
    assert body["amount"] == 10_000


def test_client_errors_are_not_retried():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        return httpx.Response(400, json={"error": "bad account"})

    with pytest.raises(GatewayError) as exc:
        asyncio.run(_gateway(handler).query_status("disb-9"))

    assert len(attempts) == 1
    assert exc.value.code == "GATEWAY_REJECTED"
    assert exc.value.details["status_code"] == 400


def test_exhausted_retries_raise():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500)

    with pytest.raises(GatewayError) as exc:
        asyncio.run(_gateway(handler, max_retries=1).query_status("disb-9"))

    assert exc.value.details["status_code"] == 500
    assert exc.value.retryable is True


def test_transport_errors_become_gateway_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(GatewayError) as exc:
        asyncio.run(_gateway(handler).query_status("disb-9"))

    assert exc.value.code == "GATEWAY_UNREACHABLE"


def test_local_rate_limit():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"gatewayRef": "disb-9", "status": "DONE"})

    gateway = _gateway(handler, rate_limit_per_minute=1, max_retries=0)

    async def scenario():
        first = await gateway.query_status("disb-9")
        with pytest.raises(GatewayError) as exc:
            await gateway.query_status("disb-9")
        return first, exc.value

    status, error = asyncio.run(scenario())
    assert status == SettlementStatus.DONE
    assert error.code == "GATEWAY_RATE_LIMITED"


def test_malformed_response_is_reported():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"unexpected": True})

    with pytest.raises(GatewayError) as exc:
        asyncio.run(_gateway(handler).query_status("disb-9"))

    assert exc.value.code == "GATEWAY_BAD_RESPONSE"


def test_read_timeout_is_an_unknown_outcome():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("no response", request=request)

    with pytest.raises(GatewayTimeoutError) as exc:
        asyncio.run(
            _gateway(handler).create_disbursement(
                "txn-3",
                1_000,
                BankDetails(bank_code="BCA", account_number="1234567890", recipient_name="Dewi"),
                idempotency_key="txn-3",
            )
        )

    assert exc.value.code == "GATEWAY_TIMEOUT"
