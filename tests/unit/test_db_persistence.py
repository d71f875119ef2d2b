"""Unit tests for invoice cache persistence"""

import pytest
from datetime import date
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock
from sqlalchemy import select

from billing.errors import PersistenceError
from billing.models.db_models import Invoice as InvoiceDB
from billing.models.db_utils import db_to_dict, row_to_db_values
from billing.services.db_service import DatabaseService


async def _load(db, invoice_id):
    db.expire_all()
    result = await db.execute(select(InvoiceDB).where(InvoiceDB.id == invoice_id))
    return result.scalar_one_or_none()


async def _count(db):
    db.expire_all()
    result = await db.execute(select(InvoiceDB))
    return len(result.scalars().all())


@pytest.mark.unit
class TestRowConversion:

    def test_row_to_db_values(self):
        values = row_to_db_values({
            "id": "42",
            "owner_id": "7",
            "owner_name": "Cooperativa Norte",
            "owner_document": "98.765.432/0001-10",
            "invoice_number": 1001,
            "invoice_status": "3",
            "total": "1234.56",
            "maturity": "2024-05-10",
            "created_at": "2024-04-10T09:30:00",
            "cte_id": 9001,
            "serie": 2,
            "number": "4455",
        })

        assert values["id"] == 42
        assert values["owner_id"] == 7
        assert values["owner_cnpj"] == "98765432000110"
        assert values["invoice_number"] == "1001"
        assert values["invoice_status"] == 3
        assert values["total"] == Decimal("1234.56")
        assert values["maturity"] == date(2024, 5, 10)
        assert values["serie"] == "2"
        assert values["number"] == 4455
        assert values["raw"]["owner_name"] == "Cooperativa Norte"

    def test_row_without_integer_id(self):
        assert row_to_db_values({"invoice_number": "1"}) is None
        assert row_to_db_values({"id": "abc"}) is None

    def test_invoice_id_fallback(self):
        assert row_to_db_values({"invoice_id": 9})["id"] == 9


@pytest.mark.unit
class TestUpsert:
    """Upsert semantics"""

    async def test_second_upsert_wins_and_synced_at_increases(self, db_session):
        await DatabaseService.upsert_invoices(
            [{"id": 1, "invoice_number": "10", "owner_name": "First", "total": "10.00"}],
            db=db_session,
        )
        first = await _load(db_session, 1)
        first_synced = first.synced_at

        wrote = await DatabaseService.upsert_invoices(
            [{"id": 1, "invoice_number": "10", "owner_name": "Second", "total": "20.00"}],
            db=db_session,
        )
        second = await _load(db_session, 1)

        assert wrote == 1
        assert await _count(db_session) == 1
        assert second.owner_name == "Second"
        assert second.total == Decimal("20.00")
        assert second.synced_at > first_synced

    async def test_overwrite_mode_blanks_missing_fields(self, db_session):
        await DatabaseService.upsert_invoices([{"id": 1, "owner_name": "Known"}], db=db_session)
        await DatabaseService.upsert_invoices([{"id": 1, "owner_name": None}], db=db_session, mode="overwrite")

        stored = await _load(db_session, 1)
        assert stored.owner_name is None

    async def test_coalesce_mode_keeps_stored_values(self, db_session):
        await DatabaseService.upsert_invoices(
            [{"id": 1, "owner_name": "Known", "invoice_status": 0}],
            db=db_session,
        )
        await DatabaseService.upsert_invoices(
            [{"id": 1, "owner_name": None, "invoice_status": 1}],
            db=db_session,
            mode="coalesce",
        )

        stored = await _load(db_session, 1)
        assert stored.owner_name == "Known"
        assert stored.invoice_status == 1

    async def test_duplicate_ids_in_batch_keep_last(self, db_session):
        wrote = await DatabaseService.upsert_invoices(
            [{"id": 5, "owner_name": "a"}, {"id": 6}, {"id": 5, "owner_name": "b"}],
            db=db_session,
        )

        assert wrote == 2
        assert (await _load(db_session, 5)).owner_name == "b"

    async def test_rows_without_id_are_skipped(self, db_session):
        wrote = await DatabaseService.upsert_invoices(
            [{"invoice_number": "1"}, {"id": "x"}, {"id": 3}],
            db=db_session,
        )

        assert wrote == 1
        assert await _count(db_session) == 1

    async def test_empty_batch(self, db_session):
        assert await DatabaseService.upsert_invoices([], db=db_session) == 0

    async def test_failure_rolls_back_and_reports_zero_written(self):
        session = MagicMock()
        session.get_bind.return_value.dialect.name = "sqlite"
        original = RuntimeError("disk I/O error")
        session.execute = AsyncMock(side_effect=original)
        session.commit = AsyncMock()
        session.rollback = AsyncMock()

        with pytest.raises(PersistenceError) as exc_info:
            await DatabaseService.upsert_invoices([{"id": 1}], db=session)

        assert exc_info.value.written == 0
        assert exc_info.value.__cause__ is original
        session.rollback.assert_awaited_once()
        session.commit.assert_not_awaited()


@pytest.mark.unit
class TestQueries:
    """Reads used by the list and pay-from-file endpoints"""

    async def _seed(self, db):
        await DatabaseService.upsert_invoices(
            [
                {"id": 1, "invoice_number": "100", "invoice_status": 0, "owner_document": "111", "total": "50.00"},
                {"id": 2, "invoice_number": "20", "invoice_status": 0, "owner_document": "111", "total": "75.00"},
                {"id": 3, "invoice_number": "NF-9", "invoice_status": 0},
                {"id": 4, "invoice_number": "0020", "invoice_status": 2, "owner_document": "111", "total": "75.10"},
                {"id": 5, "invoice_number": "5", "invoice_status": 1},
            ],
            db=db,
        )

    async def test_list_sorted_numerically_non_numeric_last(self, db_session):
        await self._seed(db_session)

        rows = await DatabaseService.list_invoices(db=db_session)

        assert [r["invoice_number"] for r in rows] == ["5", "20", "0020", "100", "NF-9"]

    async def test_list_filters(self, db_session):
        await self._seed(db_session)

        rows = await DatabaseService.list_invoices(status=0, number_from=10, number_to=200, db=db_session)

        assert [r["id"] for r in rows] == [2, 1]

    async def test_list_limit(self, db_session):
        await self._seed(db_session)

        rows = await DatabaseService.list_invoices(limit=2, db=db_session)

        assert len(rows) == 2

    async def test_find_payment_candidates_matches_numerically(self, db_session):
        await self._seed(db_session)

        rows = await DatabaseService.find_payment_candidates("111", "20", db=db_session)

        assert [r["id"] for r in rows] == [4, 2]

    async def test_mark_paid_locally(self, db_session):
        await self._seed(db_session)

        assert await DatabaseService.mark_paid_locally(2, db=db_session) is True
        stored = await _load(db_session, 2)
        assert stored.invoice_status == 1
        assert db_to_dict(stored)["total"] == "75"

    async def test_mark_paid_locally_unknown_id(self, db_session):
        assert await DatabaseService.mark_paid_locally(999, db=db_session) is False
