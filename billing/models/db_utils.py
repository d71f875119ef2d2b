"""Conversions between merged invoice rows (dicts) and the SQLAlchemy model"""

from datetime import date, datetime
from typing import Any, Dict, Optional
import json
import logging

from dateutil import parser as date_parser

from .db_models import Invoice as InvoiceDB
from .decimal_wire import decimal_to_wire, only_digits, wire_to_decimal

logger = logging.getLogger(__name__)

# Columns refreshed by every sync; ``id`` is the conflict target and ``synced_at`` is set by the writer
SYNCED_COLUMNS = (
    "owner_id",
    "owner_name",
    "owner_cnpj",
    "invoice_number",
    "invoice_status",
    "total",
    "maturity",
    "payment_form",
    "created_at",
    "invoice_obs",
    "cte_id",
    "serie",
    "number",
    "raw",
)


def row_id(row: Dict[str, Any]) -> Any:
    """Identifier of a primary-service row (``id`` → ``invoice_id`` → ``ID``)"""
    for key in ("id", "invoice_id", "ID"):
        value = row.get(key)
        if value is not None and value != "":
            return value
    return None


def to_int(value: Any) -> Optional[int]:
    """Coerce ints and digit strings; anything else becomes None"""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    text = str(value).strip()
    try:
        return int(text)
    except ValueError:
        return None


def to_date(value: Any) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date_parser.parse(str(value)).date()
    except (ValueError, OverflowError) as e:
        logger.warning(f"Unparseable date {value!r}: {e}")
        return None


def to_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    try:
        return date_parser.parse(str(value))
    except (ValueError, OverflowError) as e:
        logger.warning(f"Unparseable timestamp {value!r}: {e}")
        return None


def _to_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)


def _json_safe(row: Dict[str, Any]) -> Dict[str, Any]:
    return json.loads(json.dumps(row, default=str))


def row_to_db_values(row: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Map a merged invoice row to column values

    Args:
        row: Primary-service row with enrichment keys applied

    Returns:
        Column dict (without ``synced_at``), or None when the row has no integer id
    """
    invoice_id = to_int(row_id(row))
    if invoice_id is None:
        return None

    return {
        "id": invoice_id,
        "owner_id": to_int(row.get("owner_id")),
        "owner_name": _to_text(row.get("owner_name")),
        "owner_cnpj": only_digits(row.get("owner_document")),
        "invoice_number": _to_text(row.get("invoice_number")),
        "invoice_status": to_int(row.get("invoice_status")),
        "total": wire_to_decimal(row.get("total")),
        "maturity": to_date(row.get("maturity")),
        "payment_form": to_int(row.get("payment_form")),
        "created_at": to_datetime(row.get("created_at")),
        "invoice_obs": _to_text(row.get("invoice_obs")),
        "cte_id": to_int(row.get("cte_id")),
        "serie": _to_text(row.get("serie")),
        "number": to_int(row.get("number")),
        "raw": _json_safe(row),
    }


def db_to_dict(invoice: InvoiceDB) -> Dict[str, Any]:
    """JSON-ready view of a stored invoice"""
    return {
        "id": invoice.id,
        "owner_id": invoice.owner_id,
        "owner_name": invoice.owner_name,
        "owner_cnpj": invoice.owner_cnpj,
        "invoice_number": invoice.invoice_number,
        "invoice_status": invoice.invoice_status,
        "total": decimal_to_wire(invoice.total),
        "maturity": invoice.maturity.isoformat() if invoice.maturity else None,
        "payment_form": invoice.payment_form,
        "created_at": invoice.created_at.isoformat() if invoice.created_at else None,
        "invoice_obs": invoice.invoice_obs,
        "cte_id": invoice.cte_id,
        "serie": invoice.serie,
        "number": invoice.number,
        "synced_at": invoice.synced_at.isoformat() if invoice.synced_at else None,
    }
