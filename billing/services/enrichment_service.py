"""Fill owner and linked-document fields on primary-service rows from the legacy backend"""

from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
import asyncio
import logging

from billing.clients.legacy_client import LegacyBackendClient
from billing.config import settings
from billing.models.db_utils import row_id
from billing.models.decimal_wire import only_digits
from billing.models.invoice import ENRICHMENT_KEYS, LegacyInvoiceDetail

logger = logging.getLogger(__name__)


def _present(value: Any) -> bool:
    return value is not None and value != ""


def _first(*values: Any) -> Any:
    for value in values:
        if _present(value):
            return value
    return None


async def run_bounded(
    items: List[Any],
    worker_fn: Callable[[Any], Awaitable[Any]],
    concurrency: int,
) -> List[Any]:
    """
    Apply ``worker_fn`` to every item with at most ``concurrency`` calls in flight

    Workers pull the next index from a shared cursor and write their result
    back by index, so output order matches input order.
    """
    results: List[Any] = [None] * len(items)
    if not items:
        return results

    cursor = iter(range(len(items)))

    async def worker() -> None:
        # next() on a shared iterator is atomic between awaits
        for index in cursor:
            results[index] = await worker_fn(items[index])

    width = max(1, min(concurrency, len(items)))
    await asyncio.gather(*(worker() for _ in range(width)))
    return results


def merge_row(row: Dict[str, Any], legacy: LegacyInvoiceDetail) -> Dict[str, Any]:
    """
    Merge one primary row with its legacy slice

    Per attribute: value on the row → value under the row's ``owner``
    sub-object → legacy value → None. Values already on the row always win.
    """
    owner = row.get("owner") if isinstance(row.get("owner"), dict) else {}

    merged = dict(row)
    merged["owner_id"] = _first(row.get("owner_id"), owner.get("id"), legacy.owner_id)
    merged["owner_name"] = _first(row.get("owner_name"), owner.get("name"), legacy.owner_name)
    merged["owner_document"] = only_digits(_first(
        row.get("owner_document"),
        row.get("owner_cnpj"),
        owner.get("cnpj"),
        owner.get("document"),
        legacy.owner_document,
    ))
    merged["cte_id"] = _first(row.get("cte_id"), legacy.cte_id)
    merged["serie"] = _first(row.get("serie"), legacy.serie)
    merged["number"] = _first(row.get("number"), legacy.number)
    return merged


class EnrichmentService:
    """Enrichment merger over a ``LegacyBackendClient``"""

    def __init__(self, legacy_client: LegacyBackendClient, concurrency: Optional[int] = None):
        self.legacy_client = legacy_client
        self.concurrency = max(1, concurrency or settings.ENRICH_CONCURRENCY)

    async def _lookup(self, invoice_id: Any) -> LegacyInvoiceDetail:
        try:
            return await self.legacy_client.fetch_invoice_detail(invoice_id)
        except Exception as e:
            # Any legacy failure degrades the row to primary-only data
            logger.warning(f"Legacy lookup for invoice {invoice_id} failed, using nulls: {e}")
            return LegacyInvoiceDetail.empty()

    async def _enrich_one(self, row: Dict[str, Any]) -> Dict[str, Any]:
        invoice_id = row_id(row)
        if invoice_id is None:
            return merge_row(row, LegacyInvoiceDetail.empty())
        return merge_row(row, await self._lookup(invoice_id))

    async def _backfill_owners(self, rows: List[Dict[str, Any]]) -> None:
        missing: List[Any] = []
        seen = set()
        for row in rows:
            owner_id = row.get("owner_id")
            if not _present(owner_id) or str(owner_id) in seen:
                continue
            if _present(row.get("owner_name")) and _present(row.get("owner_document")):
                continue
            seen.add(str(owner_id))
            missing.append(owner_id)

        if not missing:
            return

        try:
            people = await self.legacy_client.lookup_people(missing)
        except Exception as e:
            logger.warning(f"Owner backfill for {len(missing)} owners failed: {e}")
            return

        for row in rows:
            person = people.get(str(row.get("owner_id")))
            if person is None:
                continue
            if not _present(row.get("owner_name")) and _present(person.name):
                row["owner_name"] = person.name
            if not _present(row.get("owner_document")) and _present(person.document):
                row["owner_document"] = person.document

    async def enrich(self, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """
        Enrich primary-service rows

        Args:
            rows: Raw rows from the invoicing service

        Returns:
            New rows in input order, each carrying every key of ``ENRICHMENT_KEYS``
        """
        if not rows:
            return []

        enriched = await run_bounded(rows, self._enrich_one, self.concurrency)
        await self._backfill_owners(enriched)

        for row in enriched:
            for key in ENRICHMENT_KEYS:
                row.setdefault(key, None)

        logger.info(f"Enriched {len(enriched)} rows (concurrency={self.concurrency})")
        return enriched

    async def enrich_ids(self, ids: List[Any]) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
        """
        Legacy-only lookup by invoice id, without persistence

        Returns:
            ``(data, errors)``; every id lands in exactly one of the two lists
        """
        async def fetch(invoice_id: Any) -> Dict[str, Any]:
            try:
                detail = await self.legacy_client.fetch_invoice_detail(invoice_id)
            except Exception as e:
                logger.warning(f"Legacy lookup for invoice {invoice_id} failed: {e}")
                return {"ok": False, "id": invoice_id, "error": str(e)}
            return {"ok": True, "data": {"id": invoice_id, **detail.model_dump()}}

        outcomes = await run_bounded(list(ids), fetch, self.concurrency)
        data = [o["data"] for o in outcomes if o["ok"]]
        errors = [{"id": o["id"], "error": o["error"]} for o in outcomes if not o["ok"]]
        return data, errors
