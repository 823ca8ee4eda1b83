import asyncio
import time
from typing import List, Optional

import httpx
from pydantic import ValidationError as SchemaError

from wallet_ledger.config import settings
from wallet_ledger.contracts.settlement import (
    BankDetails,
    BillRequest,
    BillResponse,
    Disbursement,
    DisbursementRequest,
    DisbursementResponse,
    PayableBill,
    SettlementStatus,
    StatusResponse,
)
from wallet_ledger.errors import GatewayError, GatewayTimeoutError
from wallet_ledger.logging_config import get_logger
from wallet_ledger.security import signed_headers

logger = get_logger(__name__)


class HttpSettlementGateway:
    """
    Settlement gateway over HTTP. Every call is idempotent on the ledger
    transaction id (bills) or the Idempotency-Key header (disbursements), so
    retries after 429/5xx never create a second bill or payout.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        hmac_secret: Optional[str] = None,
        timeout: Optional[float] = None,
        rate_limit_per_minute: Optional[int] = None,
        max_retries: Optional[int] = None,
        retry_backoff_seconds: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.client = httpx.AsyncClient(
            base_url=str(base_url or settings.gateway_base_url),
            timeout=timeout if timeout is not None else settings.gateway_timeout_seconds,
            transport=transport,
        )
        self.hmac_secret = hmac_secret if hmac_secret is not None else settings.gateway_hmac_secret
        self._tokens: List[float] = []
        self.rate_limit_per_minute = rate_limit_per_minute if rate_limit_per_minute is not None else settings.rate_limit_per_minute
        self.max_retries = max_retries if max_retries is not None else settings.max_retries
        self.retry_backoff_seconds = retry_backoff_seconds if retry_backoff_seconds is not None else settings.retry_backoff_seconds

    async def _respect_rate_limit(self) -> bool:
        now = time.time()
        self._tokens = [t for t in self._tokens if now - t < 60]
        if len(self._tokens) >= self.rate_limit_per_minute:
            return False
        self._tokens.append(time.time())
        return True

    async def _request_with_retry(
        self, method: str, url: str, json: Optional[dict] = None, headers: Optional[dict] = None
    ) -> httpx.Response:
        retries = 0
        backoff = self.retry_backoff_seconds
        while True:
            allowed = await self._respect_rate_limit()
            if not allowed:
                return httpx.Response(
                    status_code=429,
                    headers={"Retry-After": str(backoff)},
                    request=httpx.Request(method, url),
                )
            try:
                response = await self.client.request(method, url, json=json, headers=headers)
            except (httpx.ReadTimeout, httpx.WriteTimeout) as exc:
                # sent, but no answer: the gateway may have acted on it
                raise GatewayTimeoutError(f"settlement gateway timed out: {exc}", details={"url": url}) from exc
            except httpx.RequestError as exc:
                raise GatewayError(f"settlement gateway request error: {exc}", code="GATEWAY_UNREACHABLE") from exc
            retryable = response.status_code == 429 or response.status_code >= 500
            if not retryable or retries >= self.max_retries:
                return response
            if response.status_code == 429:
                retry_after = response.headers.get("Retry-After")
                wait = float(retry_after) if retry_after else backoff
            else:
                wait = backoff
            logger.warning(
                "Settlement gateway retry method=%s url=%s status=%s attempt=%s wait=%s",
                method,
                url,
                response.status_code,
                retries + 1,
                wait,
            )
            await asyncio.sleep(wait)
            retries += 1
            backoff *= 2

    async def _call(self, method: str, url: str, body: Optional[dict] = None, idempotency_key: Optional[str] = None) -> dict:
        headers = signed_headers(body or {}, self.hmac_secret)
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        response = await self._request_with_retry(method, url, json=body, headers=headers)
        if response.status_code in (200, 201):
            return response.json()
        code = "GATEWAY_RATE_LIMITED" if response.status_code == 429 else "GATEWAY_REJECTED"
        raise GatewayError(
            f"settlement gateway returned {response.status_code}",
            code=code,
            details={"status_code": response.status_code, "body": response.text[:500]},
        )

    async def create_payable_bill(self, transaction_id: str, amount: int, method: str) -> PayableBill:
        payload = BillRequest.from_ledger(transaction_id, amount, method).model_dump()
        data = await self._call("POST", "/v1/bills", payload, idempotency_key=transaction_id)
        try:
            bill = BillResponse.model_validate(data).to_bill()
        except SchemaError as exc:
            raise GatewayError("unexpected bill response from settlement gateway", code="GATEWAY_BAD_RESPONSE") from exc
        logger.info("Created payable bill transaction_id=%s gateway_ref=%s", transaction_id, bill.gateway_ref)
        return bill

    async def create_disbursement(
        self, transaction_id: str, amount: int, bank_details: BankDetails, idempotency_key: str
    ) -> Disbursement:
        payload = DisbursementRequest.from_ledger(transaction_id, amount, bank_details).model_dump()
        data = await self._call("POST", "/v1/disbursements", payload, idempotency_key=idempotency_key)
        try:
            disbursement = DisbursementResponse.model_validate(data).to_disbursement()
        except SchemaError as exc:
            raise GatewayError("unexpected disbursement response from settlement gateway", code="GATEWAY_BAD_RESPONSE") from exc
        logger.info(
            "Created disbursement transaction_id=%s gateway_ref=%s status=%s",
            transaction_id,
            disbursement.gateway_ref,
            disbursement.status.value,
        )
        return disbursement

    async def query_status(self, gateway_ref: str) -> SettlementStatus:
        data = await self._call("GET", f"/v1/settlements/{gateway_ref}")
        try:
            return StatusResponse.model_validate(data).status
        except SchemaError as exc:
            raise GatewayError("unexpected status response from settlement gateway", code="GATEWAY_BAD_RESPONSE") from exc

    async def aclose(self) -> None:
        await self.client.aclose()
