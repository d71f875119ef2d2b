"""CSV/XLSX parsing for batch-action and payment uploads"""

from typing import Any, Dict, Iterable, List, Optional
import io
import logging
import re
import unicodedata

import pandas as pd

from billing.errors import RowValidationError
from billing.models.invoice import PaymentFileRow

logger = logging.getLogger(__name__)

EXCEL_EXTENSIONS = (".xlsx", ".xls")

# Normalized payment-file headers, in lookup order
PAYMENT_CNPJ_COLUMNS = ("cnpjfornecedor", "cnpjfornecedo", "cnpj")
PAYMENT_NF_COLUMNS = ("nf", "numeronf", "nºnf", "numero")
PAYMENT_VALUE_COLUMNS = ("valorliquido", "valor")

PAYMENT_EXPECTED_HEADERS = ["CNPJ Fornecedor", "NF", "Valor Líquido"]


def decode_text(content: bytes) -> str:
    try:
        return content.decode("utf-8-sig")
    except UnicodeDecodeError:
        # Spreadsheets exported on Windows
        return content.decode("latin-1")


def detect_separator(first_line: str) -> str:
    """``;`` when the header has more semicolons than commas, else ``,``"""
    return ";" if first_line.count(";") > first_line.count(",") else ","


def read_table(content: bytes, filename: Optional[str] = None) -> pd.DataFrame:
    """
    Load an uploaded CSV or Excel file as a string-typed DataFrame

    Args:
        content: Raw upload bytes
        filename: Original file name (selects the Excel reader for .xlsx/.xls)

    Returns:
        DataFrame with every cell as a string (empty cells as ``""``)
    """
    name = (filename or "").lower()

    if name.endswith(EXCEL_EXTENSIONS):
        try:
            df = pd.read_excel(io.BytesIO(content), dtype=str)
        except ValueError as e:
            raise RowValidationError(f"Unreadable spreadsheet '{filename}': {e}") from e
        return df.fillna("")

    text = decode_text(content)
    header = next((line for line in text.splitlines() if line.strip()), None)
    if header is None:
        return pd.DataFrame()

    df = pd.read_csv(
        io.StringIO(text),
        sep=detect_separator(header),
        dtype=str,
        keep_default_na=False,
        skip_blank_lines=True,
        skipinitialspace=True,
    )
    return df.fillna("")


def _records(df: pd.DataFrame) -> List[Dict[str, Any]]:
    return df.to_dict(orient="records")


# ----------------------------------------------------------------------
# Batch actions
# ----------------------------------------------------------------------

def normalize_batch_header(header: Any) -> str:
    """``"Wallet ID"`` -> ``"wallet_id"``"""
    return re.sub(r"\s+", "_", str(header).strip().lower())


def normalize_batch_record(record: Dict[str, Any]) -> Dict[str, Any]:
    return {normalize_batch_header(k): v for k, v in record.items()}


def parse_batch_file(content: bytes, filename: Optional[str] = None) -> List[Dict[str, Any]]:
    """Header-normalized records of a batch-action upload"""
    df = read_table(content, filename)
    records = [normalize_batch_record(r) for r in _records(df)]
    logger.info(f"Parsed {len(records)} batch rows from {filename or 'upload'}")
    return records


# ----------------------------------------------------------------------
# Payment reconciliation
# ----------------------------------------------------------------------

def strip_accents(text: str) -> str:
    decomposed = unicodedata.normalize("NFD", text)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def normalize_payment_header(header: Any) -> str:
    """``"Valor Líquido"`` -> ``"valorliquido"``"""
    text = strip_accents(str(header)).lower()
    text = re.sub(r"\s+", "", text)
    return re.sub(r"[^\w]", "", text)


def _pick(record: Dict[str, Any], keys: Iterable[str]) -> Any:
    for key in keys:
        value = record.get(key)
        if value is not None and value != "":
            return value
    return None


def payment_row_from_record(record: Dict[str, Any]) -> PaymentFileRow:
    normalized = {normalize_payment_header(k): v for k, v in record.items()}
    return PaymentFileRow(
        cnpj=_pick(normalized, PAYMENT_CNPJ_COLUMNS),
        nf=_pick(normalized, PAYMENT_NF_COLUMNS),
        valor=_pick(normalized, PAYMENT_VALUE_COLUMNS),
        raw=dict(record),
    )


def payment_rows_from_records(records: Iterable[Dict[str, Any]]) -> List[PaymentFileRow]:
    return [payment_row_from_record(dict(r)) for r in records]


def parse_payment_file(content: bytes, filename: Optional[str] = None) -> List[PaymentFileRow]:
    """Rows of a payment reconciliation upload (CSV with ``;`` or ``,``, or Excel)"""
    df = read_table(content, filename)
    rows = payment_rows_from_records(_records(df))
    logger.info(f"Parsed {len(rows)} payment rows from {filename or 'upload'}")
    return rows
