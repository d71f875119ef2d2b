"""Fetch + enrich + persist pipeline"""

from typing import Any, Dict, List, Optional
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from billing.clients.invoicing_client import InvoicingClient
from billing.clients.legacy_client import LegacyBackendClient
from billing.config import settings
from billing.models.db_utils import row_id, to_int
from billing.services.db_service import DatabaseService
from billing.services.enrichment_service import EnrichmentService
from billing.services.invoice_fetcher import FetchContext, PagedFetcher, RangeBisectionFetcher

logger = logging.getLogger(__name__)

STRATEGY_BISECT = "bisect"
STRATEGY_PAGED = "paged"
STRATEGY_SINGLE = "single"

# Filters consumed by the pipeline itself, never forwarded upstream
_CONTROL_KEYS = ("all_pages", "max_pages")

_TRUTHY = {"1", "true", "yes", "sim", "on"}


def is_truthy(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in _TRUTHY


def choose_strategy(filters: Dict[str, Any]) -> str:
    """``bisect`` for an integer number range, ``paged`` for ``all_pages``, else ``single``"""
    if to_int(filters.get("number_from")) is not None and to_int(filters.get("number_to")) is not None:
        return STRATEGY_BISECT
    if is_truthy(filters.get("all_pages")):
        return STRATEGY_PAGED
    return STRATEGY_SINGLE


class InvoiceSyncService:
    """Refreshes the local cache from the invoicing service"""

    def __init__(
        self,
        invoicing_client: InvoicingClient,
        legacy_client: LegacyBackendClient,
        enrichment_service: Optional[EnrichmentService] = None,
    ):
        self.invoicing_client = invoicing_client
        self.enrichment_service = enrichment_service or EnrichmentService(legacy_client)
        self.range_fetcher = RangeBisectionFetcher(invoicing_client)
        self.paged_fetcher = PagedFetcher(invoicing_client)

    async def _fetch(
        self,
        filters: Dict[str, Any],
        strategy: str,
        context: FetchContext,
    ) -> List[Dict[str, Any]]:
        upstream_filters = {
            k: v for k, v in filters.items()
            if k not in _CONTROL_KEYS and v is not None and v != ""
        }

        if strategy == STRATEGY_BISECT:
            return await self.range_fetcher.fetch_range(
                to_int(filters["number_from"]),
                to_int(filters["number_to"]),
                upstream_filters,
                context,
            )

        if strategy == STRATEGY_PAGED:
            rows: List[Dict[str, Any]] = []
            max_pages = to_int(filters.get("max_pages"))
            async for page in self.paged_fetcher.iter_pages(upstream_filters, max_pages, context):
                rows.extend(page)
            return rows

        context.calls += 1
        return await self.invoicing_client.search(upstream_filters)

    async def search_and_sync(
        self,
        filters: Dict[str, Any],
        db: Optional[AsyncSession] = None,
    ) -> Dict[str, Any]:
        """
        Search the invoicing service, enrich the rows and upsert them

        Args:
            filters: Search filters (status, number_from, number_to, all_pages, ...)
            db: Async database session (optional)

        Returns:
            ``{data, wrote, fetched_total, strategy, calls}``

        Raises:
            UpstreamError: the fetch (or any bisected sub-range) failed
            PersistenceError: the upsert was rolled back
        """
        strategy = choose_strategy(filters)
        context = FetchContext()

        rows = await self._fetch(filters, strategy, context)
        logger.info(f"Search ({strategy}) fetched {len(rows)} rows in {context.calls} calls")

        enriched = await self.enrichment_service.enrich(rows)
        wrote = await DatabaseService.upsert_invoices(enriched, db=db)

        return {
            "data": enriched,
            "wrote": wrote,
            "fetched_total": len(rows),
            "strategy": strategy,
            "calls": context.calls,
        }

    async def sync_all(
        self,
        filters: Optional[Dict[str, Any]] = None,
        db: Optional[AsyncSession] = None,
        max_pages: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Paginated full sync; each page is enriched and upserted in its own transaction

        Returns:
            ``{fetched_pages, fetched_total, wrote, sample_ids}`` (first 10 ids)
        """
        filters = {k: v for k, v in (filters or {}).items() if k not in _CONTROL_KEYS}
        max_pages = max_pages or settings.SYNC_MAX_PAGES

        fetched_pages = 0
        fetched_total = 0
        wrote = 0
        sample_ids: List[Any] = []

        async for page in self.paged_fetcher.iter_pages(filters, max_pages):
            fetched_pages += 1
            fetched_total += len(page)

            enriched = await self.enrichment_service.enrich(page)
            wrote += await DatabaseService.upsert_invoices(enriched, db=db)

            for row in page:
                if len(sample_ids) >= 10:
                    break
                sample_ids.append(row_id(row))

            logger.info(f"Sync page {fetched_pages}: {len(page)} rows, {wrote} written so far")

        logger.info(f"Full sync done: {fetched_pages} pages, {fetched_total} rows, {wrote} written")
        return {
            "fetched_pages": fetched_pages,
            "fetched_total": fetched_total,
            "wrote": wrote,
            "sample_ids": sample_ids,
        }
