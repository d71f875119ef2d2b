"""Invoice, owner and batch data models"""

from decimal import Decimal
from enum import Enum, IntEnum
from typing import Any, Dict, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .decimal_wire import only_digits, parse_money


# Keys every merged invoice row carries, even when every lookup failed
ENRICHMENT_KEYS = ("owner_id", "owner_name", "owner_document", "cte_id", "serie", "number")

RowId = Union[int, str]


class InvoiceStatus(IntEnum):
    """Invoice status as reported by the primary invoicing service"""
    REGISTERED = 0
    PAID = 1
    CANCELED = 2
    ISSUED = 3


class Owner(BaseModel):
    """Person/company an invoice belongs to (resolved transiently, never persisted alone)"""
    id: Optional[RowId] = None
    name: Optional[str] = None
    document: Optional[str] = None


class LegacyInvoiceDetail(BaseModel):
    """Slice of one legacy-backend invoice record used for enrichment"""
    owner_id: Optional[RowId] = None
    owner_name: Optional[str] = None
    owner_document: Optional[str] = None
    cte_id: Optional[RowId] = None
    serie: Optional[Union[str, int]] = None
    number: Optional[RowId] = None

    @classmethod
    def empty(cls) -> "LegacyInvoiceDetail":
        return cls()


class BatchAction(str, Enum):
    """Actions the batch runner can apply to an invoice"""
    SEND = "send"
    PAY = "pay"
    CANCEL = "cancel"

    @classmethod
    def parse(cls, value: Any) -> Optional["BatchAction"]:
        """Map spreadsheet spellings (``emitir``, ``liquidar``, ``cancelar``) to an action"""
        if value is None:
            return None
        text = str(value).strip().lower()
        if not text:
            return None
        return _ACTION_ALIASES.get(text)


_ACTION_ALIASES = {
    "send": BatchAction.SEND,
    "emitir": BatchAction.SEND,
    "pay": BatchAction.PAY,
    "liquidar": BatchAction.PAY,
    "cancel": BatchAction.CANCEL,
    "cancelar": BatchAction.CANCEL,
}


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str) and not value.strip():
        return None
    return value


class BatchRow(BaseModel):
    """One spreadsheet row of a batch run; lives only for the duration of the run"""
    model_config = ConfigDict(extra="ignore")

    id: Optional[int] = None
    action: Optional[BatchAction] = None
    action_raw: Optional[str] = None

    # cancel
    reason: Optional[str] = None
    send_mail: Optional[bool] = None

    # pay
    paid_at: Optional[str] = None
    value: Optional[Decimal] = None
    wallet_id: Optional[int] = None
    payment_form: Optional[int] = None
    discount: Optional[Decimal] = None

    @field_validator("id", "wallet_id", "payment_form", mode="before")
    @classmethod
    def _parse_int(cls, v):
        v = _blank_to_none(v)
        if v is None:
            return None
        text = str(v).strip()
        try:
            return int(text)
        except ValueError:
            pass
        try:
            # spreadsheet cells like "12.0"
            return int(float(text))
        except (ValueError, OverflowError):
            return None

    @field_validator("reason", "paid_at", mode="before")
    @classmethod
    def _parse_text(cls, v):
        v = _blank_to_none(v)
        return None if v is None else str(v).strip()

    @field_validator("value", "discount", mode="before")
    @classmethod
    def _parse_amount(cls, v):
        return parse_money(_blank_to_none(v))

    @field_validator("send_mail", mode="before")
    @classmethod
    def _parse_flag(cls, v):
        v = _blank_to_none(v)
        if v is None:
            return None
        if isinstance(v, bool):
            return v
        return str(v).strip().lower() in {"1", "true", "sim", "yes", "s", "y"}

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "BatchRow":
        """Build a row from a header-normalized record, keeping an unknown action visible"""
        action_raw = record.get("action")
        data = {k: v for k, v in record.items() if k not in ("action", "action_raw")}
        return cls(
            **data,
            action=BatchAction.parse(action_raw),
            action_raw=None if _blank_to_none(action_raw) is None else str(action_raw),
        )


class BatchRowResult(BaseModel):
    """Outcome of one batch row"""
    id: Optional[int] = None
    action: Optional[str] = None
    ok: bool
    message: str


class PaymentFileRow(BaseModel):
    """One row of a payment reconciliation file"""
    cnpj: Optional[str] = None
    nf: Optional[str] = None
    valor: Optional[Decimal] = None
    raw: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("cnpj", mode="before")
    @classmethod
    def _digits(cls, v):
        return only_digits(v)

    @field_validator("nf", mode="before")
    @classmethod
    def _text(cls, v):
        v = _blank_to_none(v)
        return None if v is None else str(v).strip()

    @field_validator("valor", mode="before")
    @classmethod
    def _money(cls, v):
        return parse_money(v)
