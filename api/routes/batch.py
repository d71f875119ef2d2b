"""Batch action API routes"""

from fastapi import APIRouter, BackgroundTasks, Depends, Path, Request
from fastapi.responses import JSONResponse
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
from billing.errors import RowValidationError
from billing.ingestion.spreadsheet import normalize_batch_record, parse_batch_file
from billing.services.batch_processing_service import BatchActionRunner
from billing.services.cancel_service import CancelService
from billing.services.progress_tracker import batch_progress_tracker

logger = logging.getLogger(__name__)

router = APIRouter()

# Keep single requests small enough to finish within the upstream quota window
MAX_BATCH_ROWS = 5000


async def _read_batch_request(request: Request):
    """Records and optional action override from a multipart upload or a JSON body"""
    if is_multipart(request):
        upload, fields = await read_upload(request)
        if upload is None:
            raise RowValidationError('Send the spreadsheet in the "file" field')
        records = parse_batch_file(await upload.read(), upload.filename)
        return records, fields.get("action") or request.query_params.get("action")

    body = await read_json_body(request)
    rows = body.get("rows")
    if not isinstance(rows, list):
        raise RowValidationError('Send a spreadsheet (multipart/form-data "file") or JSON { rows: [...] }')
    records = [normalize_batch_record(r) for r in rows if isinstance(r, dict)]
    return records, body.get("action") or request.query_params.get("action")


@router.post("/batch/actions")
async def run_batch_actions(
    request: Request,
    background_tasks: BackgroundTasks,
    invoicing_client: InvoicingClient = Depends(get_invoicing_client),
    legacy_client: LegacyBackendClient = Depends(get_legacy_client),
):
    """
    Apply send/pay/cancel to every row of an uploaded spreadsheet

    With ``?wait=1`` the batch runs inside the request and the full summary
    is returned; otherwise it runs in the background (HTTP 202) and progress
    is available from ``GET /batch/{batch_id}``.
    """
    try:
        records, action = await _read_batch_request(request)
    except Exception as e:
        logger.error(f"Unreadable batch upload: {e}")
        return error_response(str(e) or "Unreadable batch upload", 400)

    if not records:
        return error_response("No rows in batch", 400)
    if len(records) > MAX_BATCH_ROWS:
        return error_response(f"Maximum {MAX_BATCH_ROWS} rows per batch", 400)

    runner = BatchActionRunner(invoicing_client, CancelService(invoicing_client, legacy_client))
    batch_id = await batch_progress_tracker.create(len(records))

    if query_flag(request, "wait"):
        summary = await runner.run(records, action=action, batch_id=batch_id)
        return JSONResponse(status_code=200, content={"ok": True, **summary})

    background_tasks.add_task(runner.run, records, action, batch_id)
    logger.info(f"Queued batch {batch_id} with {len(records)} rows")
    return JSONResponse(
        status_code=202,
        content={"ok": True, "batch_id": batch_id, "rows": len(records)},
    )


@router.get("/batch/{batch_id}")
async def get_batch(batch_id: str = Path(..., description="Batch id returned by POST /batch/actions")):
    """
    Progress of a batch run

    Returns:
        status, counters and the per-row results recorded so far
    """
    progress = await batch_progress_tracker.get(batch_id)
    if not progress:
        return error_response(f"Batch not found: {batch_id}", 404)
    return JSONResponse(status_code=200, content={"ok": True, **progress})
