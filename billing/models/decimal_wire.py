"""Money and document-number conversions between upstream JSON, spreadsheets and the database

Amounts are kept as ``Decimal`` internally. On the wire (API responses,
the ``raw`` JSON column) they travel as plain decimal strings without
trailing zeros, so ``Decimal("75.00")`` is sent as ``"75"``.
"""

from decimal import Decimal, InvalidOperation
from typing import Any, Optional
import logging
import re

logger = logging.getLogger(__name__)

_NON_DIGITS = re.compile(r"\D+")


def decimal_to_wire(d: Optional[Decimal]) -> Optional[str]:
    """``Decimal("123.4500")`` -> ``"123.45"``; ``None`` stays ``None``"""
    if d is None:
        return None
    text = format(d, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"


def wire_to_decimal(x: Any) -> Optional[Decimal]:
    """Decimal from an upstream number or string; unparseable input becomes ``None``"""
    if x is None or x == "":
        return None
    if isinstance(x, Decimal):
        return x
    try:
        # via str so 0.1 stays 0.1
        return Decimal(str(x))
    except (InvalidOperation, ValueError, TypeError):
        logger.warning(f"Ignoring non-numeric amount: {x!r}")
        return None


def parse_money(x: Any) -> Optional[Decimal]:
    """
    Parse a spreadsheet money cell in Brazilian or plain format.

    Examples:
        >>> parse_money("R$ 1.234,56")
        Decimal("1234.56")
        >>> parse_money("123,45")
        Decimal("123.45")
        >>> parse_money("123.45")
        Decimal("123.45")
    """
    if x is None:
        return None
    if isinstance(x, (Decimal, int, float)):
        return wire_to_decimal(x)

    text = str(x).strip()
    if not text:
        return None
    text = re.sub(r"[R$\s]", "", text)

    if "," in text and "." in text:
        if text.rfind(",") > text.rfind("."):
            # 1.234,56
            text = text.replace(".", "").replace(",", ".")
        else:
            # 1,234.56
            text = text.replace(",", "")
    elif "," in text:
        # 123,45
        text = text.replace(",", ".")

    try:
        value = Decimal(text)
    except (InvalidOperation, ValueError):
        return None
    return value if value.is_finite() else None


def only_digits(x: Any) -> Optional[str]:
    """Strip every non-digit (CNPJ/CPF formatting); empty result becomes None"""
    if x is None:
        return None
    digits = _NON_DIGITS.sub("", str(x))
    return digits or None
