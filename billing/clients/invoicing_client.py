"""Client for the primary invoicing service (REST, API-key authenticated)"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import json
import logging

import httpx
from dateutil import parser as date_parser

from billing.config import settings
from billing.errors import (
    ConfigurationError,
    UpstreamBusinessError,
    UpstreamRateLimitError,
    UpstreamTransportError,
)
from billing.utils.retry import async_retry_with_backoff

logger = logging.getLogger(__name__)


def normalize_to_list(payload: Any) -> List[Dict[str, Any]]:
    """Search responses come back as a list, as ``{data: [...]}`` or as a single object"""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        data = payload.get("data")
        if isinstance(data, list):
            return data
        return [payload]
    return []


def _error_message(payload: Any, status_code: int) -> str:
    if isinstance(payload, dict):
        if payload.get("message"):
            return str(payload["message"])
        errors = payload.get("errors")
        if isinstance(errors, list) and errors:
            return ", ".join(str(e) for e in errors)
    return f"HTTP {status_code}"


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """``Retry-After`` as seconds; accepts delta-seconds or an HTTP date"""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = date_parser.parse(value)
    except (ValueError, OverflowError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


class InvoicingClient:
    """
    Async client for the primary invoicing service

    Every call goes through ``_request``, which turns a non-200 status into
    ``UpstreamTransportError`` and an explicit ``success: false`` payload into
    ``UpstreamBusinessError``.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url if base_url is not None else settings.INVOICING_API_BASE_URL
        self.api_key = api_key if api_key is not None else settings.INVOICING_API_KEY
        self._client = httpx.AsyncClient(
            base_url=self.base_url or "",
            timeout=timeout or settings.INVOICING_TIMEOUT_SECONDS,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    def _ensure_configured(self) -> None:
        if not self.base_url or not self.api_key:
            raise ConfigurationError(
                "Invoicing service not configured (set INVOICING_API_BASE_URL and INVOICING_API_KEY)"
            )

    @async_retry_with_backoff(
        max_retries=settings.INVOICING_MAX_RETRIES,
        initial_delay=settings.INVOICING_RETRY_DELAY_SECONDS,
        exceptions=(UpstreamRateLimitError,),
    )
    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
    ) -> Any:
        self._ensure_configured()
        headers = {"X-Api-Key": self.api_key}

        try:
            response = await self._client.request(
                method,
                path,
                params=params,
                json=body,
                headers=headers,
            )
        except httpx.HTTPError as e:
            logger.error(f"Invoicing service {method} {path} failed: {e}")
            raise UpstreamTransportError(f"Invoicing service unreachable: {e}") from e

        text = response.text
        try:
            payload = json.loads(text) if text else {}
        except ValueError:
            payload = {}

        if response.status_code == 429:
            raise UpstreamRateLimitError(
                _error_message(payload, 429),
                status_code=429,
                body=text,
                retry_after=parse_retry_after(response.headers.get("retry-after")),
            )
        if response.status_code != 200:
            message = _error_message(payload, response.status_code)
            logger.warning(f"Invoicing service {method} {path} -> {response.status_code}: {message}")
            raise UpstreamTransportError(message, status_code=response.status_code, body=text)
        if isinstance(payload, dict) and payload.get("success") is False:
            message = payload.get("message") or "BusinessError"
            logger.warning(f"Invoicing service {method} {path} rejected: {message}")
            raise UpstreamBusinessError(str(message), payload=payload)

        return payload

    async def search(self, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """
        Search invoices

        Args:
            filters: Query parameters forwarded as-is (status, number_from, number_to, page...)

        Returns:
            List of raw invoice rows (at most the upstream cap)
        """
        params = {k: v for k, v in (filters or {}).items() if v is not None}
        payload = await self._request("GET", "/invoices/search", params=params)
        rows = normalize_to_list(payload)
        logger.info(f"Invoicing search {params} returned {len(rows)} rows")
        return rows

    async def pay_invoice(self, payload: Dict[str, Any]) -> Any:
        logger.info(f"Paying invoice {payload.get('id')}")
        return await self._request("POST", "/invoices/pay", body=payload)

    async def cancel_invoice(self, invoice_id: Any, reason: str, send_mail: bool = False) -> Any:
        logger.info(f"Canceling invoice {invoice_id} on invoicing service")
        return await self._request(
            "POST",
            "/invoices/cancel",
            body={"id": invoice_id, "reason": reason, "send_mail": send_mail},
        )

    async def send_invoice(self, invoice_id: Any, send_mail: Optional[Any] = None) -> Any:
        body: Dict[str, Any] = {"id": invoice_id}
        if send_mail is not None:
            body["send_mail"] = send_mail
        logger.info(f"Sending invoice {invoice_id}")
        return await self._request("POST", "/invoices/send", body=body)
