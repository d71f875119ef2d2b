"""Async database service for the local invoice cache"""

from typing import Any, Dict, List, Optional
from datetime import datetime, timezone
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
import logging

from billing.config import settings
from billing.errors import ConfigurationError, PersistenceError
from billing.models.database import AsyncSessionLocal
from billing.models.db_models import Invoice as InvoiceDB
from billing.models.db_utils import SYNCED_COLUMNS, db_to_dict, row_to_db_values, to_int
from billing.models.invoice import InvoiceStatus

logger = logging.getLogger(__name__)

UPSERT_MODES = ("overwrite", "coalesce")

# Rows per INSERT statement; keeps bound parameters well under SQLite's limit
UPSERT_CHUNK_SIZE = 200


def _numeric_invoice_number(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    text = str(value).strip()
    return int(text) if text.isdigit() else None


def _insert_for(session: AsyncSession):
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert
    if dialect == "sqlite":
        return sqlite_insert
    raise ConfigurationError(f"Upsert not supported for database dialect '{dialect}'")


class DatabaseService:
    """Async service for invoice cache operations"""

    @staticmethod
    async def upsert_invoices(
        rows: List[Dict[str, Any]],
        db: Optional[AsyncSession] = None,
        mode: Optional[str] = None,
    ) -> int:
        """
        Upsert merged invoice rows keyed by id, in one transaction

        Args:
            rows: Merged invoice rows (primary data plus enrichment keys)
            db: Async database session (optional, creates new if not provided)
            mode: ``overwrite`` (every column takes the incoming value, nulls
                included) or ``coalesce`` (a null incoming value keeps the stored
                one); defaults to ``UPSERT_MODE``

        Returns:
            Number of rows written

        Raises:
            PersistenceError: the transaction failed and was rolled back
        """
        mode = (mode or settings.UPSERT_MODE).lower()
        if mode not in UPSERT_MODES:
            raise ConfigurationError(f"Unknown upsert mode '{mode}' (expected one of {UPSERT_MODES})")

        # Last occurrence of an id wins inside one batch
        by_id: Dict[int, Dict[str, Any]] = {}
        skipped = 0
        for row in rows:
            values = row_to_db_values(row)
            if values is None:
                skipped += 1
                continue
            by_id[values["id"]] = values

        if skipped:
            logger.warning(f"Skipped {skipped} rows without a usable integer id")
        if not by_id:
            return 0

        synced_at = datetime.now(timezone.utc)
        values_list = [{**v, "synced_at": synced_at} for v in by_id.values()]

        if db:
            session = db
            should_close = False
        else:
            session = AsyncSessionLocal()
            should_close = True

        try:
            insert = _insert_for(session)
            table = InvoiceDB.__table__

            for start in range(0, len(values_list), UPSERT_CHUNK_SIZE):
                chunk = values_list[start:start + UPSERT_CHUNK_SIZE]
                stmt = insert(table).values(chunk)
                if mode == "coalesce":
                    set_ = {
                        col: func.coalesce(stmt.excluded[col], table.c[col])
                        for col in SYNCED_COLUMNS
                    }
                else:
                    set_ = {col: stmt.excluded[col] for col in SYNCED_COLUMNS}
                set_["synced_at"] = stmt.excluded.synced_at
                stmt = stmt.on_conflict_do_update(index_elements=[table.c.id], set_=set_)
                await session.execute(stmt)

            await session.commit()
            logger.info(f"Upserted {len(values_list)} invoices (mode={mode})")
            return len(values_list)

        except Exception as e:
            await session.rollback()
            logger.error(f"Error upserting {len(values_list)} invoices: {e}", exc_info=True)
            raise PersistenceError(f"Invoice upsert failed: {e}", original=e) from e
        finally:
            if should_close:
                await session.close()

    @staticmethod
    async def list_invoices(
        status: Optional[int] = None,
        number_from: Optional[int] = None,
        number_to: Optional[int] = None,
        limit: Optional[int] = None,
        db: Optional[AsyncSession] = None,
    ) -> List[Dict[str, Any]]:
        """
        List cached invoices without calling any upstream

        The number range applies to numeric invoice numbers only; results are
        sorted by numeric invoice number with non-numeric numbers last.

        Args:
            status: Optional status filter
            number_from: Optional lower bound on the invoice number
            number_to: Optional upper bound on the invoice number
            limit: Maximum number of rows (defaults to ``LIST_LIMIT``)
            db: Async database session (optional)

        Returns:
            JSON-ready invoice dicts
        """
        limit = limit or settings.LIST_LIMIT

        if db:
            session = db
            should_close = False
        else:
            session = AsyncSessionLocal()
            should_close = True

        try:
            query = select(InvoiceDB)
            if status is not None:
                query = query.where(InvoiceDB.invoice_status == status)

            result = await session.execute(query)
            invoices = result.scalars().all()

            ranged = number_from is not None or number_to is not None
            selected = []
            for invoice in invoices:
                number = _numeric_invoice_number(invoice.invoice_number)
                if ranged:
                    if number is None:
                        continue
                    if number_from is not None and number < number_from:
                        continue
                    if number_to is not None and number > number_to:
                        continue
                selected.append((number, invoice))

            selected.sort(key=lambda item: (item[0] is None, item[0] or 0, item[1].id))
            return [db_to_dict(invoice) for _, invoice in selected[:limit]]

        except Exception as e:
            logger.error(f"Error listing invoices: {e}", exc_info=True)
            raise
        finally:
            if should_close:
                await session.close()

    @staticmethod
    async def find_payment_candidates(
        cnpj: str,
        nf: str,
        db: Optional[AsyncSession] = None,
        limit: int = 5,
    ) -> List[Dict[str, Any]]:
        """
        Stored invoices matching an owner document and an invoice number

        The invoice number matches as text or numerically (``"0042"`` matches ``42``).
        Newest id first.
        """
        nf_number = to_int(nf)

        if db:
            session = db
            should_close = False
        else:
            session = AsyncSessionLocal()
            should_close = True

        try:
            result = await session.execute(
                select(InvoiceDB)
                .where(InvoiceDB.owner_cnpj == cnpj)
                .order_by(InvoiceDB.id.desc())
            )
            matches = []
            for invoice in result.scalars().all():
                number = _numeric_invoice_number(invoice.invoice_number)
                if invoice.invoice_number == nf or (nf_number is not None and number == nf_number):
                    matches.append(db_to_dict(invoice))
                if len(matches) >= limit:
                    break
            return matches

        except Exception as e:
            logger.error(f"Error finding payment candidates for {cnpj}/{nf}: {e}", exc_info=True)
            raise
        finally:
            if should_close:
                await session.close()

    @staticmethod
    async def mark_paid_locally(
        invoice_id: int,
        db: Optional[AsyncSession] = None,
    ) -> bool:
        """
        Flag a cached invoice as paid without going through the upstream

        Returns:
            True if a row was updated
        """
        if db:
            session = db
            should_close = False
        else:
            session = AsyncSessionLocal()
            should_close = True

        try:
            result = await session.execute(
                update(InvoiceDB)
                .where(InvoiceDB.id == invoice_id)
                .values(invoice_status=int(InvoiceStatus.PAID), synced_at=datetime.now(timezone.utc))
            )
            await session.commit()
            logger.info(f"Invoice {invoice_id} marked paid locally")
            return result.rowcount > 0

        except Exception as e:
            await session.rollback()
            logger.error(f"Error marking invoice {invoice_id} paid: {e}", exc_info=True)
            raise
        finally:
            if should_close:
                await session.close()

    @staticmethod
    async def get_invoice(
        invoice_id: int,
        db: Optional[AsyncSession] = None,
    ) -> Optional[Dict[str, Any]]:
        if db:
            session = db
            should_close = False
        else:
            session = AsyncSessionLocal()
            should_close = True

        try:
            result = await session.execute(select(InvoiceDB).where(InvoiceDB.id == invoice_id))
            invoice = result.scalar_one_or_none()
            return db_to_dict(invoice) if invoice else None
        finally:
            if should_close:
                await session.close()
