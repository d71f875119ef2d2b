"""Upload parsing"""

from .spreadsheet import parse_batch_file, parse_payment_file, payment_rows_from_records

__all__ = [
    "parse_batch_file",
    "parse_payment_file",
    "payment_rows_from_records",
]
