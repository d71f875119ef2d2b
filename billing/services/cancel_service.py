"""Dual-system invoice cancellation"""

from typing import Any, Dict, Optional
import asyncio
import logging

from billing.clients.invoicing_client import InvoicingClient
from billing.clients.legacy_client import LegacyBackendClient
from billing.clients.upstream_messages import is_already_canceled
from billing.config import settings
from billing.errors import UpstreamBusinessError, UpstreamTransportError

logger = logging.getLogger(__name__)


class CancelService:
    """
    Cancels an invoice on the invoicing service and on the legacy backend

    Both cancels are issued concurrently and neither failure aborts the
    other. Either side answering "already canceled" makes the whole
    operation a logical success.
    """

    def __init__(self, invoicing_client: InvoicingClient, legacy_client: LegacyBackendClient):
        self.invoicing_client = invoicing_client
        self.legacy_client = legacy_client

    async def _cancel_primary(self, invoice_id: Any, reason: str, send_mail: bool) -> Dict[str, Any]:
        try:
            data = await self.invoicing_client.cancel_invoice(invoice_id, reason, send_mail)
            return {"ok": True, "data": data, "alreadyCanceled": False}
        except (UpstreamBusinessError, UpstreamTransportError) as e:
            body = getattr(e, "body", None)
            result = {
                "ok": False,
                "error": str(e),
                "alreadyCanceled": is_already_canceled(str(e), body),
            }
            status_code = getattr(e, "status_code", None)
            if status_code is not None:
                result["status"] = status_code
            return result

    @staticmethod
    def _settled(outcome: Any, side: str) -> Dict[str, Any]:
        if isinstance(outcome, BaseException):
            logger.error(f"{side} cancel failed unexpectedly: {outcome}")
            return {"ok": False, "error": str(outcome) or outcome.__class__.__name__, "alreadyCanceled": False}
        return outcome

    async def cancel(
        self,
        invoice_id: Any,
        reason: Optional[str] = None,
        send_mail: Optional[bool] = None,
    ) -> Dict[str, Any]:
        """
        Cancel on both systems

        Args:
            invoice_id: Invoice id
            reason: Cancellation reason (``DEFAULT_CANCEL_REASON`` when blank)
            send_mail: Notify the owner by e-mail (False unless a boolean True is given)

        Returns:
            ``{ok, alreadyCanceled, siimp, dac}`` where ``siimp`` is the invoicing
            service outcome and ``dac`` the legacy backend outcome
        """
        reason = reason.strip() if isinstance(reason, str) and reason.strip() else settings.DEFAULT_CANCEL_REASON
        send_mail = send_mail if isinstance(send_mail, bool) else False

        primary, legacy = await asyncio.gather(
            self._cancel_primary(invoice_id, reason, send_mail),
            self.legacy_client.cancel_invoice(invoice_id),
            return_exceptions=True,
        )
        primary = self._settled(primary, "Invoicing service")
        legacy = self._settled(legacy, "Legacy backend")

        already = primary.get("alreadyCanceled") is True or legacy.get("alreadyCanceled") is True
        ok = already or (primary.get("ok") is True and legacy.get("ok") is True)

        logger.info(
            f"Cancel {invoice_id}: ok={ok} alreadyCanceled={already} "
            f"primary={primary.get('ok')} legacy={legacy.get('ok')}"
        )
        return {"ok": ok, "alreadyCanceled": already, "siimp": primary, "dac": legacy}

    @staticmethod
    def http_status(result: Dict[str, Any]) -> int:
        """200 when the cancel is a (logical) success, 207 multi-status otherwise"""
        return 200 if result.get("ok") else 207
