"""Fetch strategies that work around the invoicing service's per-query row cap"""

from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Set
import logging

from billing.clients.invoicing_client import InvoicingClient
from billing.config import settings
from billing.models.db_utils import row_id

logger = logging.getLogger(__name__)


@dataclass
class FetchContext:
    """Per-request fetch bookkeeping, threaded through every call"""
    calls: int = 0
    truncated_ranges: int = 0


class RangeBisectionFetcher:
    """
    Return every invoice whose number falls in [number_from, number_to]

    The invoicing service answers any query with at most ``page_size`` rows.
    A full answer is taken as possibly truncated: the interval is split at
    ``(from + to) // 2`` into [from, mid] and [mid + 1, to] and both halves are
    fetched (left first). Recursion stops at ``max_depth``, where the capped
    answer is accepted as is. A failed sub-range call aborts the whole fetch.
    """

    def __init__(
        self,
        client: InvoicingClient,
        page_size: Optional[int] = None,
        max_depth: Optional[int] = None,
    ):
        self.client = client
        self.page_size = page_size or settings.UPSTREAM_PAGE_SIZE
        self.max_depth = settings.RANGE_MAX_DEPTH if max_depth is None else max_depth

    async def fetch_range(
        self,
        number_from: int,
        number_to: int,
        filters: Optional[Dict[str, Any]] = None,
        context: Optional[FetchContext] = None,
    ) -> List[Dict[str, Any]]:
        """
        Fetch a numeric invoice-number interval completely

        Args:
            number_from: Lower bound (inclusive)
            number_to: Upper bound (inclusive)
            filters: Additional search filters (status, ...)
            context: Call counter for this request; a fresh one is used if omitted

        Returns:
            Rows of every sub-range, left range first
        """
        context = context if context is not None else FetchContext()
        base = {k: v for k, v in (filters or {}).items() if k not in ("number_from", "number_to")}
        rows = await self._fetch(number_from, number_to, base, 0, context)
        logger.info(
            f"Range [{number_from}, {number_to}] fetched {len(rows)} rows in {context.calls} calls"
        )
        return rows

    async def _fetch(
        self,
        number_from: int,
        number_to: int,
        filters: Dict[str, Any],
        depth: int,
        context: FetchContext,
    ) -> List[Dict[str, Any]]:
        context.calls += 1
        rows = await self.client.search(
            {**filters, "number_from": number_from, "number_to": number_to}
        )

        if len(rows) < self.page_size or number_from >= number_to:
            return rows

        if depth >= self.max_depth:
            context.truncated_ranges += 1
            logger.warning(
                f"Range [{number_from}, {number_to}] still capped at depth {depth}; accepting {len(rows)} rows"
            )
            return rows

        mid = (number_from + number_to) // 2
        left = await self._fetch(number_from, mid, filters, depth + 1, context)
        right = await self._fetch(mid + 1, number_to, filters, depth + 1, context)
        return left + right


class PagedFetcher:
    """Walk the search endpoint page by page (``page``/``start``/``limit``)"""

    def __init__(self, client: InvoicingClient, page_size: Optional[int] = None):
        self.client = client
        self.page_size = page_size or settings.UPSTREAM_PAGE_SIZE

    async def iter_pages(
        self,
        filters: Optional[Dict[str, Any]] = None,
        max_pages: Optional[int] = None,
        context: Optional[FetchContext] = None,
    ) -> AsyncIterator[List[Dict[str, Any]]]:
        """
        Yield one list of rows per page

        Stops on a short page, on a page that brings no unseen ids (the
        upstream ignoring the paging parameters), or after ``max_pages``.
        """
        max_pages = max_pages or settings.SYNC_MAX_PAGES
        context = context if context is not None else FetchContext()
        base = {k: v for k, v in (filters or {}).items() if k not in ("page", "start", "limit")}
        seen: Set[str] = set()

        for page in range(1, max_pages + 1):
            context.calls += 1
            rows = await self.client.search({
                **base,
                "page": page,
                "start": (page - 1) * self.page_size,
                "limit": self.page_size,
            })
            ids = {str(row_id(r)) for r in rows if row_id(r) is not None}
            fresh = ids - seen
            if rows and ids and not fresh:
                logger.warning(f"Page {page} repeated already-seen ids; stopping pagination")
                return
            seen |= ids

            if rows:
                yield rows
            if len(rows) < self.page_size:
                return

        logger.warning(f"Pagination stopped at max_pages={max_pages}")
