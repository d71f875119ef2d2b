"""Batch action runner: send/pay/cancel invoices from spreadsheet rows"""

from typing import Any, Dict, List, Optional
from datetime import datetime, timezone
import logging

from pydantic import ValidationError

from billing.clients.invoicing_client import InvoicingClient
from billing.clients.upstream_messages import is_already_paid
from billing.config import settings
from billing.errors import BillingPortalError, RowValidationError, UpstreamError
from billing.models.invoice import BatchAction, BatchRow, BatchRowResult
from billing.services.cancel_service import CancelService
from billing.services.progress_tracker import BatchProgressTracker, batch_progress_tracker
from billing.utils.pacing import UpstreamPacer, upstream_pacer

logger = logging.getLogger(__name__)

PAY_REQUIRED_FIELDS = ("paid_at", "value", "wallet_id", "payment_form")


def validate_row(row: BatchRow) -> None:
    """
    Check a row against the required-field set of its action

    ``send`` and ``cancel`` need only the id (cancel substitutes a default
    reason); ``pay`` also needs payment date, amount, wallet and payment form.

    Raises:
        RowValidationError: with a message naming what is missing
    """
    if row.action is None:
        if row.action_raw:
            raise RowValidationError(f"unknown action '{row.action_raw}'")
        raise RowValidationError("missing action")
    if row.id is None:
        raise RowValidationError("missing id")
    if row.action == BatchAction.PAY:
        missing = [f for f in PAY_REQUIRED_FIELDS if getattr(row, f) is None]
        if missing:
            raise RowValidationError(f"missing fields for pay: {', '.join(missing)}")


def build_pay_payload(row: BatchRow) -> Dict[str, Any]:
    return {
        "id": row.id,
        "paid_at": row.paid_at,
        "value": float(row.value),
        "wallet_id": row.wallet_id,
        "payment_form": row.payment_form,
        "discount": float(row.discount) if row.discount is not None else 0,
    }


class BatchActionRunner:
    """
    Applies batch rows to the invoicing service one at a time

    Rows are processed strictly sequentially. Upstream calls go through the
    shared pacer, which keeps a fixed delay between calls across every
    runner in the process (the invoicing service allows roughly 60 calls
    per minute). Rows that fail validation are recorded without any upstream
    call. Every outcome is recorded in the progress tracker as soon as the
    row finishes.
    """

    def __init__(
        self,
        invoicing_client: InvoicingClient,
        cancel_service: CancelService,
        tracker: Optional[BatchProgressTracker] = None,
        delay_seconds: Optional[float] = None,
        pacer: Optional[UpstreamPacer] = None,
    ):
        self.invoicing_client = invoicing_client
        self.cancel_service = cancel_service
        self.tracker = tracker or batch_progress_tracker
        self.delay_seconds = settings.BATCH_ACTION_DELAY_SECONDS if delay_seconds is None else delay_seconds
        self.pacer = pacer or upstream_pacer

    @staticmethod
    def build_rows(records: List[Dict[str, Any]], action: Optional[str] = None) -> List[Any]:
        """
        Turn header-normalized records into ``BatchRow`` objects

        Args:
            records: Spreadsheet or JSON records
            action: Optional action applied to every row (overrides the row's own)

        Returns:
            One entry per record: a ``BatchRow``, or a ``RowValidationError``
            when the record cannot be read at all
        """
        rows: List[Any] = []
        for record in records:
            record = dict(record)
            if action:
                record["action"] = action
            try:
                rows.append(BatchRow.from_record(record))
            except ValidationError as e:
                rows.append(RowValidationError(f"unreadable row: {e.errors()[0].get('msg', e)}"))
        return rows

    async def _execute(self, row: BatchRow) -> BatchRowResult:
        action = row.action.value

        if row.action == BatchAction.CANCEL:
            result = await self.cancel_service.cancel(row.id, row.reason, row.send_mail)
            if result["alreadyCanceled"]:
                message = "already canceled"
            elif result["ok"]:
                message = "canceled"
            else:
                errors = [
                    f"{side}: {result[side].get('error') or result[side].get('data') or 'failed'}"
                    for side in ("siimp", "dac")
                    if not result[side].get("ok")
                ]
                message = "; ".join(errors) or "cancel failed"
            return BatchRowResult(id=row.id, action=action, ok=result["ok"], message=message)

        try:
            if row.action == BatchAction.SEND:
                await self.invoicing_client.send_invoice(row.id, row.send_mail)
                message = "sent"
            else:
                await self.invoicing_client.pay_invoice(build_pay_payload(row))
                message = "paid"
        except UpstreamError as e:
            if row.action == BatchAction.PAY and is_already_paid(str(e), getattr(e, "body", None)):
                return BatchRowResult(id=row.id, action=action, ok=True, message="already paid")
            return BatchRowResult(id=row.id, action=action, ok=False, message=str(e))
        except BillingPortalError as e:
            return BatchRowResult(id=row.id, action=action, ok=False, message=str(e))

        return BatchRowResult(id=row.id, action=action, ok=True, message=message)

    async def run(
        self,
        records: List[Dict[str, Any]],
        action: Optional[str] = None,
        batch_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Run a batch

        Args:
            records: Header-normalized rows (``id``, ``action`` and action fields)
            action: Optional action applied to every row
            batch_id: Id of a run already registered with the tracker (a new
                one is registered otherwise)

        Returns:
            {
                "batch_id": str,
                "total": int,
                "succeeded": int,
                "failed": int,
                "elapsed_seconds": float,
                "results": [{"id", "action", "ok", "message"}]
            }
        """
        rows = self.build_rows(records, action)
        if batch_id is None:
            batch_id = await self.tracker.create(len(rows))
        await self.tracker.start(batch_id)

        logger.info(f"Starting batch {batch_id} with {len(rows)} rows")
        start_time = datetime.now(timezone.utc)

        results: List[Dict[str, Any]] = []

        try:
            for row in rows:
                if isinstance(row, RowValidationError):
                    outcome = BatchRowResult(ok=False, message=str(row))
                else:
                    try:
                        validate_row(row)
                    except RowValidationError as e:
                        outcome = BatchRowResult(
                            id=row.id,
                            action=row.action.value if row.action else row.action_raw,
                            ok=False,
                            message=str(e),
                        )
                    else:
                        async with self.pacer.slot(self.delay_seconds):
                            outcome = await self._execute(row)

                result = outcome.model_dump()
                results.append(result)
                await self.tracker.record(batch_id, result)

                if not outcome.ok:
                    logger.warning(f"Batch {batch_id} row {outcome.id} ({outcome.action}) failed: {outcome.message}")

        except Exception as e:
            logger.error(f"Batch {batch_id} aborted: {e}", exc_info=True)
            await self.tracker.error(batch_id, str(e))
            raise

        succeeded = sum(1 for r in results if r["ok"])
        failed = len(results) - succeeded
        elapsed = (datetime.now(timezone.utc) - start_time).total_seconds()
        await self.tracker.complete(batch_id, f"{succeeded}/{len(results)} rows succeeded")

        logger.info(f"Batch {batch_id} complete: {succeeded}/{len(results)} succeeded in {elapsed:.2f}s")
        return {
            "batch_id": batch_id,
            "total": len(results),
            "succeeded": succeeded,
            "failed": failed,
            "elapsed_seconds": elapsed,
            "results": results,
        }
