"""Client for the legacy billing backend (cookie-session web application)"""

from typing import Any, Dict, Iterable, Optional
import asyncio
import json
import logging
import re

import httpx

from billing.config import settings
from billing.errors import (
    ConfigurationError,
    LegacySessionError,
    UpstreamBusinessError,
    UpstreamTransportError,
)
from billing.models.decimal_wire import only_digits
from billing.models.invoice import LegacyInvoiceDetail, Owner
from billing.clients.upstream_messages import is_already_canceled

logger = logging.getLogger(__name__)

SESSION_COOKIE_NAME = "PHPSESSID"
_SESSION_COOKIE_RE = re.compile(r"PHPSESSID=([^;]+)", re.IGNORECASE)

# Paging parameters the legacy grid endpoints expect
LEGACY_PAGE_PARAMS = {"page": 1, "start": 0, "limit": 40}


def extract_session_cookie(set_cookie_headers: Iterable[str]) -> Optional[str]:
    """Return ``PHPSESSID=<value>`` from a list of ``Set-Cookie`` header values"""
    for header in set_cookie_headers:
        match = _SESSION_COOKIE_RE.search(header or "")
        if match:
            return f"{SESSION_COOKIE_NAME}={match.group(1)}"
    return None


def parse_json_text(text: str) -> Any:
    """The legacy backend mislabels its content type: parse text as JSON only if it parses cleanly"""
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        return None


def _first(*values: Any) -> Any:
    for value in values:
        if value is not None:
            return value
    return None


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def parse_invoice_detail(record: Dict[str, Any]) -> LegacyInvoiceDetail:
    """Extract the owner and linked-document slice from one legacy invoice record"""
    owner = _as_dict(record.get("owner"))
    documents = record.get("documents")
    document = _as_dict(documents[0]) if isinstance(documents, list) and documents else {}

    return LegacyInvoiceDetail(
        owner_id=_first(record.get("owner_id"), owner.get("id")),
        owner_name=_first(record.get("owner_name"), owner.get("name")),
        owner_document=only_digits(_first(
            record.get("owner_cnpj"),
            record.get("owner_document"),
            owner.get("cnpj"),
            owner.get("document"),
        )),
        cte_id=document.get("cte_id"),
        serie=document.get("serie"),
        number=document.get("number"),
    )


def parse_person(record: Dict[str, Any]) -> Owner:
    return Owner(
        id=record.get("id"),
        name=_first(record.get("name"), record.get("nome")),
        document=only_digits(_first(record.get("cnpj"), record.get("cpf_cnpj"), record.get("document"))),
    )


class LegacyBackendClient:
    """
    Async client for the legacy backend

    The session cookie is acquired once per client instance: a configured
    ``LEGACY_SESSION_COOKIE`` wins, otherwise a login exchange is performed.
    Expired sessions are not refreshed; the failing request surfaces as an
    ordinary ``UpstreamTransportError``.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        session_cookie: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url if base_url is not None else settings.LEGACY_BASE_URL or "").rstrip("/")
        self.username = username if username is not None else settings.LEGACY_USERNAME
        self.password = password if password is not None else settings.LEGACY_PASSWORD
        configured = session_cookie if session_cookie is not None else settings.LEGACY_SESSION_COOKIE
        self._configured_cookie = configured.strip() if configured and configured.strip() else None
        self._session_cookie: Optional[str] = None
        self._login_lock: Optional[asyncio.Lock] = None
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout or settings.LEGACY_TIMEOUT_SECONDS,
            transport=transport,
            follow_redirects=False,
            headers={"X-Requested-With": "XMLHttpRequest"},
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    async def get_session_cookie(self) -> str:
        """
        Session credential for authenticated calls

        Raises:
            ConfigurationError: no base URL, or neither a cookie nor credentials configured
            LegacySessionError: the login exchange returned no session cookie
        """
        if not self.base_url:
            raise ConfigurationError("Legacy backend not configured (set LEGACY_BASE_URL)")
        if self._configured_cookie:
            return self._configured_cookie
        if self._session_cookie:
            return self._session_cookie
        if not (self.username and self.password):
            raise ConfigurationError(
                "Legacy session unavailable (set LEGACY_SESSION_COOKIE or LEGACY_USERNAME/LEGACY_PASSWORD)"
            )

        if self._login_lock is None:
            self._login_lock = asyncio.Lock()
        async with self._login_lock:
            if self._session_cookie is None:
                self._session_cookie = await self._login()
        return self._session_cookie

    async def _login(self) -> str:
        login_url = f"{self.base_url}/auth/login"
        logger.info(f"Logging in to legacy backend as {self.username}")
        try:
            response = await self._client.post(
                "/auth/login",
                data={"username": self.username, "password": self.password},
                headers={"Referer": login_url},
            )
        except httpx.HTTPError as e:
            raise LegacySessionError(f"Legacy login failed: {e}") from e

        cookie = extract_session_cookie(response.headers.get_list("set-cookie"))
        if not cookie:
            raise LegacySessionError(
                "Legacy login returned no session cookie",
                status_code=response.status_code,
                body=response.text,
            )
        return cookie

    async def _get(self, path: str, params: Dict[str, Any]) -> Any:
        cookie = await self.get_session_cookie()
        try:
            response = await self._client.get(
                path,
                params=params,
                headers={
                    "Cookie": cookie,
                    "Referer": f"{self.base_url}/",
                    "Accept": "application/json, */*",
                },
            )
        except httpx.HTTPError as e:
            raise UpstreamTransportError(f"Legacy backend unreachable: {e}") from e

        payload = parse_json_text(response.text)
        if not response.is_success:
            message = payload.get("message") if isinstance(payload, dict) else None
            raise UpstreamTransportError(
                message or f"HTTP {response.status_code}",
                status_code=response.status_code,
                body=response.text,
            )
        return payload

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def fetch_invoice_detail(self, invoice_id: Any) -> LegacyInvoiceDetail:
        """
        Owner and linked-document data for one invoice

        Raises:
            UpstreamTransportError: non-2xx response or network failure
            UpstreamBusinessError: payload not successful or without records
        """
        payload = await self._get(
            "/invoice",
            {"id": str(invoice_id), "loadEdit": "true", **LEGACY_PAGE_PARAMS},
        )
        if not isinstance(payload, dict) or not payload.get("success"):
            raise UpstreamBusinessError(f"No legacy data for invoice {invoice_id}", payload=payload)
        records = payload.get("data")
        if not isinstance(records, list) or not records:
            raise UpstreamBusinessError(f"No legacy data for invoice {invoice_id}", payload=payload)

        return parse_invoice_detail(_as_dict(records[0]))

    async def lookup_people(self, owner_ids: Iterable[Any]) -> Dict[str, Owner]:
        """
        Resolve several owners with a single person-directory query

        Returns:
            Owners keyed by ``str(id)``; ids the directory does not know are absent
        """
        ids = list(owner_ids)
        if not ids:
            return {}

        filter_param = json.dumps([{"property": "id", "operator": "in", "value": ids}])
        payload = await self._get(
            "/person",
            {"filter": filter_param, "page": 1, "start": 0, "limit": len(ids)},
        )
        if not isinstance(payload, dict) or not payload.get("success"):
            raise UpstreamBusinessError("Person directory lookup failed", payload=payload)

        people: Dict[str, Owner] = {}
        for record in payload.get("data") or []:
            if not isinstance(record, dict) or record.get("id") is None:
                continue
            person = parse_person(record)
            people[str(person.id)] = person
        logger.info(f"Person directory resolved {len(people)}/{len(ids)} owners")
        return people

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    async def cancel_invoice(self, invoice_id: Any) -> Dict[str, Any]:
        """
        Cancel the legacy side of an invoice

        Returns:
            ``{"ok", "status", "data", "alreadyCanceled"}``; ``ok`` is True for a real
            success and for an "already canceled" answer
        """
        cookie = await self.get_session_cookie()
        logger.info(f"Canceling invoice {invoice_id} on legacy backend")
        try:
            response = await self._client.post(
                "/transaction/cancel",
                data={"id": str(invoice_id)},
                headers={
                    "Cookie": cookie,
                    "Origin": self.base_url,
                    "Referer": f"{self.base_url}/",
                },
            )
        except httpx.HTTPError as e:
            raise UpstreamTransportError(f"Legacy backend unreachable: {e}") from e

        parsed = parse_json_text(response.text)
        data = parsed if parsed is not None else response.text
        # PHP escapes accents in JSON; match against the decoded payload
        searchable = json.dumps(parsed, ensure_ascii=False) if parsed is not None else response.text
        already = is_already_canceled(searchable)
        success_flag = data.get("success") if isinstance(data, dict) else None
        ok = (response.is_success and success_flag in (True, None)) or already

        return {
            "ok": ok,
            "status": response.status_code,
            "data": data,
            "alreadyCanceled": already,
        }
