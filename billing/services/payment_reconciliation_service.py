"""Pay-from-file: settle stored invoices listed in a supplier payment file"""

from decimal import Decimal
from typing import Any, Dict, List, Optional
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from billing.clients.invoicing_client import InvoicingClient
from billing.clients.upstream_messages import is_already_paid
from billing.config import settings
from billing.errors import BillingPortalError, UpstreamError
from billing.models.decimal_wire import wire_to_decimal
from billing.models.invoice import PaymentFileRow
from billing.services.db_service import DatabaseService

logger = logging.getLogger(__name__)


def select_candidate(
    candidates: List[Dict[str, Any]],
    amount: Optional[Decimal],
    tolerance: Optional[float] = None,
) -> Optional[Dict[str, Any]]:
    """
    Pick the invoice a payment row refers to

    With an amount, the first candidate whose total is within ``tolerance``
    wins; otherwise (or with no amount) the newest candidate is used.
    """
    if not candidates:
        return None
    if amount is None:
        return candidates[0]

    tol = Decimal(str(settings.PAY_MATCH_TOLERANCE if tolerance is None else tolerance))
    for candidate in candidates:
        total = wire_to_decimal(candidate.get("total"))
        if total is not None and abs(total - amount) <= tol:
            return candidate
    return candidates[0]


class PaymentReconciliationService:
    """Matches payment-file rows against the local cache and pays them upstream"""

    def __init__(self, invoicing_client: InvoicingClient, local_fallback: Optional[bool] = None):
        self.invoicing_client = invoicing_client
        self.local_fallback = settings.PAY_FROM_FILE_LOCAL_FALLBACK if local_fallback is None else local_fallback

    async def _pay(self, invoice_id: int) -> Dict[str, Any]:
        """Pay one invoice upstream; an "already paid" answer counts as success"""
        try:
            response = await self.invoicing_client.pay_invoice({"id": invoice_id})
        except UpstreamError as e:
            if is_already_paid(str(e), getattr(e, "body", None)):
                return {"ok": True, "already": True}
            return {"ok": False, "msg": str(e)}

        if isinstance(response, dict) and response.get("status") not in (None, 1):
            if is_already_paid(response):
                return {"ok": True, "already": True}
            return {"ok": False, "msg": str(response)}
        return {"ok": True, "already": False}

    async def reconcile(
        self,
        rows: List[PaymentFileRow],
        dry_run: bool = False,
        db: Optional[AsyncSession] = None,
    ) -> Dict[str, Any]:
        """
        Reconcile a payment file

        Args:
            rows: Parsed payment-file rows
            dry_run: Report matches without calling the upstream or writing
            db: Async database session (optional)

        Returns:
            ``{ok, dryRun, rows, matched, paid, skipped, errors, results}``
        """
        results: List[Dict[str, Any]] = []
        matched = paid = skipped = errors = 0

        for row in rows:
            if not row.cnpj or not row.nf:
                skipped += 1
                results.append({"ok": False, "reason": "missing CNPJ/NF", "row": row.raw})
                continue

            candidates = await DatabaseService.find_payment_candidates(row.cnpj, row.nf, db=db)
            invoice = select_candidate(candidates, row.valor)
            if invoice is None:
                skipped += 1
                results.append({"ok": False, "reason": "not found", "row": row.raw})
                continue
            matched += 1

            summary = {
                "id": invoice["id"],
                "invoice_number": invoice["invoice_number"],
                "total": invoice["total"],
            }
            if dry_run:
                results.append({"ok": True, "dryRun": True, **summary})
                continue

            try:
                outcome = await self._pay(invoice["id"])
                if outcome["ok"]:
                    paid += 1
                    results.append({"ok": True, **summary, "already": outcome["already"]})
                elif self.local_fallback:
                    await DatabaseService.mark_paid_locally(invoice["id"], db=db)
                    paid += 1
                    results.append({"ok": True, "fallbackLocal": True, **summary, "warn": outcome["msg"]})
                else:
                    errors += 1
                    results.append({"ok": False, **summary, "error": outcome["msg"]})
            except BillingPortalError as e:
                errors += 1
                logger.warning(f"Payment of invoice {invoice['id']} failed: {e}")
                results.append({"ok": False, **summary, "error": str(e)})

        logger.info(
            f"Pay-from-file (dryRun={dry_run}): rows={len(rows)} matched={matched} "
            f"paid={paid} skipped={skipped} errors={errors}"
        )
        return {
            "ok": True,
            "dryRun": dry_run,
            "rows": len(rows),
            "matched": matched,
            "paid": paid,
            "skipped": skipped,
            "errors": errors,
            "results": results,
        }
