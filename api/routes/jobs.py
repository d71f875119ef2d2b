"""Background-style job routes"""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from api.dependencies import error_response, get_invoicing_client, get_legacy_client
from billing.clients.invoicing_client import InvoicingClient
from billing.clients.legacy_client import LegacyBackendClient
from billing.models.database import get_db
from billing.models.db_utils import to_int
from billing.services.sync_service import InvoiceSyncService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/jobs/sync-invoices")
async def sync_invoices(
    request: Request,
    db: AsyncSession = Depends(get_db),
    invoicing_client: InvoicingClient = Depends(get_invoicing_client),
    legacy_client: LegacyBackendClient = Depends(get_legacy_client),
):
    """
    Paginated full sync from the invoicing service into the local cache

    Query parameters other than ``max_pages`` are forwarded as search filters.

    Returns:
        ``{ok, fetched_pages, fetched_total, wrote, sample_ids}``
    """
    filters = dict(request.query_params)
    max_pages = to_int(filters.pop("max_pages", None))

    try:
        service = InvoiceSyncService(invoicing_client, legacy_client)
        result = await service.sync_all(filters, db=db, max_pages=max_pages)
        return JSONResponse(status_code=200, content={"ok": True, **result})

    except Exception as e:
        logger.error(f"Invoice sync failed: {e}", exc_info=True)
        return error_response(str(e) or "Sync failed", 500)
