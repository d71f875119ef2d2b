"""Invoice API routes: search/sync, cached list, single-invoice actions, reconciliation"""

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Any, Dict, List, Optional
import logging

from api.dependencies import (
    error_response,
    get_invoicing_client,
    get_legacy_client,
    is_multipart,
    query_flag,
    read_json_body,
    read_upload,
)
from billing.clients.invoicing_client import InvoicingClient
from billing.clients.legacy_client import LegacyBackendClient
from billing.errors import PersistenceError, RowValidationError
from billing.ingestion.spreadsheet import (
    PAYMENT_EXPECTED_HEADERS,
    parse_payment_file,
    payment_rows_from_records,
)
from billing.models.database import get_db
from billing.services.cancel_service import CancelService
from billing.services.db_service import DatabaseService
from billing.services.enrichment_service import EnrichmentService
from billing.services.payment_reconciliation_service import PaymentReconciliationService
from billing.services.sync_service import InvoiceSyncService

logger = logging.getLogger(__name__)

router = APIRouter()


def _missing_id(body: Dict[str, Any]) -> bool:
    return body.get("id") in (None, "", 0)


@router.api_route("/invoices/search", methods=["GET", "POST"])
async def search_invoices(
    request: Request,
    db: AsyncSession = Depends(get_db),
    invoicing_client: InvoicingClient = Depends(get_invoicing_client),
    legacy_client: LegacyBackendClient = Depends(get_legacy_client),
):
    """
    Fetch, enrich and persist invoices

    Filters come from the query string and, for POST, from the JSON body.
    A numeric ``number_from``/``number_to`` pair triggers the range-bisection
    fetch; ``all_pages=1`` walks every page.

    Returns:
        ``{ok, data, wrote, fetched_total, strategy, calls}``
    """
    filters: Dict[str, Any] = dict(request.query_params)
    if request.method == "POST":
        filters.update(await read_json_body(request))

    try:
        service = InvoiceSyncService(invoicing_client, legacy_client)
        result = await service.search_and_sync(filters, db=db)
        return JSONResponse(status_code=200, content={"ok": True, **result})

    except PersistenceError as e:
        logger.error(f"Search persisted nothing: {e}")
        return error_response(str(e), 400, wrote=e.written)
    except Exception as e:
        logger.error(f"Error searching invoices with {filters}: {e}", exc_info=True)
        return error_response(str(e) or "Search failed", 400)


@router.get("/invoices/list")
async def list_invoices(
    status: Optional[int] = Query(None, description="Invoice status (0-3)"),
    number_from: Optional[int] = Query(None),
    number_to: Optional[int] = Query(None),
    limit: Optional[int] = Query(None, ge=1),
    db: AsyncSession = Depends(get_db),
):
    """Read cached invoices; never calls an upstream"""
    try:
        data = await DatabaseService.list_invoices(
            status=status,
            number_from=number_from,
            number_to=number_to,
            limit=limit,
            db=db,
        )
        return JSONResponse(status_code=200, content={"ok": True, "data": data})

    except Exception as e:
        logger.error(f"Error listing invoices: {e}", exc_info=True)
        return error_response(str(e) or "List failed", 500)


@router.post("/invoices/pay")
@router.post("/pay")
async def pay_invoice(
    request: Request,
    invoicing_client: InvoicingClient = Depends(get_invoicing_client),
):
    """Forward a payment (``id`` plus payment fields) to the invoicing service"""
    body = await read_json_body(request)
    if _missing_id(body):
        return error_response("id is required", 400)

    try:
        data = await invoicing_client.pay_invoice(body)
        return JSONResponse(status_code=200, content={"ok": True, "data": data})
    except Exception as e:
        logger.error(f"Error paying invoice {body.get('id')}: {e}")
        return error_response(str(e), 400)


@router.post("/invoices/cancel")
@router.post("/cancel")
async def cancel_invoice(
    request: Request,
    invoicing_client: InvoicingClient = Depends(get_invoicing_client),
    legacy_client: LegacyBackendClient = Depends(get_legacy_client),
):
    """
    Cancel on the invoicing service and the legacy backend concurrently

    Returns:
        ``{ok, alreadyCanceled, siimp, dac}`` with HTTP 200 when ok, 207 otherwise
    """
    body = await read_json_body(request)
    if _missing_id(body):
        return error_response("id is required", 400)

    service = CancelService(invoicing_client, legacy_client)
    result = await service.cancel(body["id"], body.get("reason"), body.get("send_mail"))
    return JSONResponse(status_code=CancelService.http_status(result), content=result)


@router.post("/invoices/send")
async def send_invoice(
    request: Request,
    invoicing_client: InvoicingClient = Depends(get_invoicing_client),
):
    """Trigger issuance/sending of one invoice"""
    body = await read_json_body(request)
    if _missing_id(body):
        return error_response("id is required", 400)

    try:
        out = await invoicing_client.send_invoice(body["id"], body.get("send_mail"))
        content = {**out, "ok": True} if isinstance(out, dict) else {"ok": True, "data": out}
        return JSONResponse(status_code=200, content=content)
    except Exception as e:
        logger.error(f"Error sending invoice {body.get('id')}: {e}")
        return error_response(str(e), 400)


@router.get("/invoices/pay-from-file")
async def pay_from_file_help():
    return {
        "ok": True,
        "howto": (
            'POST multipart/form-data with "file" (CSV or XLSX) or JSON { rows: [...] }. '
            "Use ?dryRun=1 to simulate."
        ),
        "expectedHeaders": PAYMENT_EXPECTED_HEADERS,
    }


@router.post("/invoices/pay-from-file")
async def pay_from_file(
    request: Request,
    db: AsyncSession = Depends(get_db),
    invoicing_client: InvoicingClient = Depends(get_invoicing_client),
):
    """
    Reconcile a supplier payment file against cached invoices

    Rows are matched by owner document + invoice number (amount within
    tolerance breaks ties) and paid upstream unless ``dryRun=1``.
    """
    dry_run = query_flag(request, "dryRun", "dryrun")

    try:
        if is_multipart(request):
            upload, _ = await read_upload(request)
            if upload is None:
                raise RowValidationError('Send the file in the "file" field')
            rows = parse_payment_file(await upload.read(), upload.filename)
        else:
            body = await read_json_body(request)
            if not isinstance(body.get("rows"), list):
                raise RowValidationError('Send a CSV (multipart/form-data "file") or JSON { rows: [...] }')
            rows = payment_rows_from_records(r for r in body["rows"] if isinstance(r, dict))

        service = PaymentReconciliationService(invoicing_client)
        result = await service.reconcile(rows, dry_run=dry_run, db=db)
        return JSONResponse(status_code=200, content=result)

    except Exception as e:
        logger.error(f"Error in pay-from-file: {e}", exc_info=True)
        return error_response(str(e) or "pay-from-file failed", 400)


@router.post("/invoices/enrinch")
@router.post("/invoices/enrich")
async def enrich_invoices(
    request: Request,
    legacy_client: LegacyBackendClient = Depends(get_legacy_client),
):
    """Legacy-only enrichment by ``id`` or ``ids``; nothing is persisted"""
    body = await read_json_body(request)
    ids: List[Any]
    if isinstance(body.get("ids"), list):
        ids = body["ids"]
    elif body.get("id") is not None:
        ids = [body["id"]]
    else:
        ids = []

    if not ids:
        return error_response("Provide id (number) or ids (number[])", 400)

    data, errors = await EnrichmentService(legacy_client).enrich_ids(ids)
    return JSONResponse(
        status_code=200,
        content={"ok": not errors, "data": data, "errors": errors},
    )
