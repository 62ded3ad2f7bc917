from __future__ import annotations

from typing import Protocol

import httpx
from loguru import logger
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from dealchain.core.config import settings
from dealchain.services.errors import SettlementDeclined, SettlementUnavailable


class SettlementGateway(Protocol):
    async def charge(
        self,
        *,
        payer_id: str,
        payee_id: str,
        amount_cents: int,
        reference: str,
    ) -> str:
        """Move funds payer -> payee; returns a receipt id. `reference` is an idempotency key."""
        ...

    async def refund(self, *, receipt: str, reference: str) -> None:
        """Reverse a confirmed charge whose ownership change could not be committed."""
        ...


class _ServerError(Exception):
    pass


class SettlementApiClient:
    """HTTP client for the payment / on-chain settlement collaborator."""

    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        timeout: float | None = None,
        max_attempts: int | None = None,
        backoff_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url or settings.SETTLEMENT_API_BASE_URL or "").rstrip("/")
        self.token = token if token is not None else settings.SETTLEMENT_API_TOKEN
        self.timeout = timeout if timeout is not None else settings.SETTLEMENT_TIMEOUT_SECONDS
        self.max_attempts = max_attempts or settings.SETTLEMENT_MAX_ATTEMPTS
        self.backoff_seconds = (
            backoff_seconds if backoff_seconds is not None else settings.SETTLEMENT_BACKOFF_SECONDS
        )
        self._transport = transport

    def _headers(self, reference: str) -> dict[str, str]:
        headers = {"Idempotency-Key": reference}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def _post_once(self, client: httpx.AsyncClient, path: str, payload: dict, reference: str) -> dict:
        r = await client.post(f"{self.base_url}{path}", json=payload, headers=self._headers(reference))

        if r.status_code >= 500:
            raise _ServerError(f"Settlement API {r.status_code}: {r.text}")
        if r.status_code >= 400:
            raise SettlementDeclined(f"Settlement declined: {r.text}")

        return r.json() if r.content else {}

    def _log_retry(self, retry_state) -> None:
        logger.warning(
            f"Settlement call failed (attempt {retry_state.attempt_number}/{self.max_attempts}): "
            f"{retry_state.outcome.exception()!r}"
        )

    async def _post(self, path: str, payload: dict, reference: str) -> dict:
        """POST with bounded exponential retry on transport errors and 5xx."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_seconds, max=10),
            retry=retry_if_exception_type((httpx.TransportError, _ServerError)),
            before_sleep=self._log_retry,
            reraise=True,
        )

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                async for attempt in retrying:
                    with attempt:
                        data = await self._post_once(client, path, payload, reference)
        except (httpx.TransportError, _ServerError) as e:
            logger.error(f"Settlement unavailable for {reference}: {e!r}")
            raise SettlementUnavailable("Settlement service unavailable, try again later") from e

        return data

    async def charge(
        self,
        *,
        payer_id: str,
        payee_id: str,
        amount_cents: int,
        reference: str,
    ) -> str:
        payload = {
            "payer": payer_id,
            "payee": payee_id,
            "amount_cents": int(amount_cents),
            "reference": reference,
        }
        data = await self._post("/charges", payload, reference)

        receipt = data.get("receipt") or data.get("id")
        if not receipt:
            raise SettlementUnavailable("Settlement service returned no receipt")

        logger.info(f"Settlement confirmed {reference} receipt={receipt}")
        return str(receipt)

    async def refund(self, *, receipt: str, reference: str) -> None:
        await self._post(f"/charges/{receipt}/refund", {"reference": reference}, f"refund:{reference}")
        logger.info(f"Settlement refunded {reference} receipt={receipt}")


class LocalSettlementGateway:
    """Used when no settlement service is configured: funds move outside this system."""

    async def charge(
        self,
        *,
        payer_id: str,
        payee_id: str,
        amount_cents: int,
        reference: str,
    ) -> str:
        logger.info(f"Local settlement {reference}: {payer_id} -> {payee_id} {amount_cents}c")
        return f"local:{reference}"

    async def refund(self, *, receipt: str, reference: str) -> None:
        logger.info(f"Local refund {reference} receipt={receipt}")


async def compensate(gateway: SettlementGateway, *, receipt: str | None, reference: str) -> None:
    """
    Best-effort refund after a charge whose DB transaction failed.
    Called from an except block; a refund failure is logged for manual
    reconciliation and the original error keeps propagating.
    """
    if not receipt:
        return
    try:
        await gateway.refund(receipt=receipt, reference=reference)
    except (SettlementUnavailable, SettlementDeclined) as e:
        logger.error(f"Refund failed for {reference} receipt={receipt}, needs reconciliation: {e}")


def build_settlement_gateway() -> SettlementGateway:
    if settings.SETTLEMENT_API_BASE_URL:
        return SettlementApiClient()
    return LocalSettlementGateway()
