"""Integration tests for API routes"""

import json
import pytest
import httpx
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from api.dependencies import get_invoicing_client, get_legacy_client
from api.main import app
from billing.config import settings
from billing.models.database import Base, get_db
from conftest import make_invoicing_client, make_legacy_client


LEGACY_RECORD = {
    "owner": {"id": 7, "name": "Cooperativa Norte", "cnpj": "98.765.432/0001-10"},
    "documents": [{"cte_id": 9001, "serie": "2", "number": 4455}],
}


def _invoice(n, **extra):
    return {"id": n, "invoice_number": str(n), "invoice_status": 0, "total": "10.00", **extra}


def _html_json(payload, status_code=200):
    return httpx.Response(
        status_code,
        content=json.dumps(payload).encode(),
        headers={"content-type": "text/html; charset=UTF-8"},
    )


def legacy_handler(request):
    """Legacy backend that knows every invoice"""
    if request.url.path == "/invoice":
        invoice_id = int(request.url.params["id"])
        return _html_json({"success": True, "data": [{"id": invoice_id, **LEGACY_RECORD}]})
    if request.url.path == "/person":
        return _html_json({"success": True, "data": []})
    if request.url.path == "/transaction/cancel":
        return _html_json({"success": True})
    return httpx.Response(404)


def unexpected(request):
    raise AssertionError(f"unexpected upstream call: {request.method} {request.url}")


@pytest.fixture
def api(tmp_path, monkeypatch):
    """
    Build a TestClient wired to MockTransport upstreams and a file-backed SQLite database

    Usage: ``client = api(invoicing_handler, legacy_handler)``
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'portal.db'}",
        poolclass=NullPool,
    )
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async def override_get_db():
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        async with session_factory() as session:
            yield session

    monkeypatch.setattr(settings, "BATCH_ACTION_DELAY_SECONDS", 0)
    monkeypatch.setattr(settings, "PAY_FROM_FILE_LOCAL_FALLBACK", False)

    def configure(invoicing_handler=unexpected, legacy=legacy_handler):
        invoicing_client = make_invoicing_client(invoicing_handler)
        legacy_client = make_legacy_client(legacy)
        app.dependency_overrides[get_db] = override_get_db
        app.dependency_overrides[get_invoicing_client] = lambda: invoicing_client
        app.dependency_overrides[get_legacy_client] = lambda: legacy_client
        return TestClient(app)

    yield configure
    app.dependency_overrides.clear()


@pytest.mark.integration
@pytest.mark.api
class TestServiceEndpoints:

    def test_root_endpoint(self, api):
        response = api().get("/")
        assert response.status_code == 200
        data = response.json()
        assert data["ok"] is True
        assert "message" in data
        assert data["status"] == "running"

    def test_health_endpoint(self, api):
        response = api().get("/health")
        assert response.status_code == 200
        assert response.json() == {"ok": True, "status": "healthy"}


@pytest.mark.integration
@pytest.mark.api
class TestSearchAndList:
    """Search -> enrich -> persist, then read back from the cache"""

    def test_range_search_bisects_capped_answers(self, api):
        ranges = []

        def invoicing(request):
            assert request.url.path.endswith("/invoices/search")
            lo = int(request.url.params["number_from"])
            hi = int(request.url.params["number_to"])
            ranges.append((lo, hi))
            if (lo, hi) == (1, 100):
                return httpx.Response(200, json={"data": [_invoice(n) for n in range(1, 41)]})
            if (lo, hi) == (1, 50):
                return httpx.Response(200, json={"data": [_invoice(n) for n in range(1, 31)]})
            return httpx.Response(200, json={"data": [_invoice(n) for n in range(51, 71)]})

        client = api(invoicing)
        response = client.get("/invoices/search", params={"number_from": 1, "number_to": 100, "status": 0})

        assert response.status_code == 200
        data = response.json()
        assert data["ok"] is True
        assert data["strategy"] == "bisect"
        assert data["calls"] == 3
        assert ranges == [(1, 100), (1, 50), (51, 100)]
        assert data["fetched_total"] == 50
        assert data["wrote"] == 50
        assert {row["id"] for row in data["data"]} == set(range(1, 31)) | set(range(51, 71))
        first = data["data"][0]
        assert first["owner_name"] == "Cooperativa Norte"
        assert first["owner_document"] == "98765432000110"
        assert first["number"] == 4455

        listed = client.get("/invoices/list", params={"number_from": 10, "number_to": 20})
        assert listed.status_code == 200
        rows = listed.json()["data"]
        assert [r["id"] for r in rows] == list(range(10, 21))
        assert rows[0]["owner_name"] == "Cooperativa Norte"

    def test_list_rejects_malformed_filter(self, api):
        response = api().get("/invoices/list", params={"status": "paid"})

        assert response.status_code == 400
        data = response.json()
        assert data["ok"] is False
        assert data["error"].startswith("status:")

    def test_post_search_merges_body_filters(self, api):
        seen = []

        def invoicing(request):
            seen.append(dict(request.url.params))
            return httpx.Response(200, json={"data": [_invoice(5)]})

        response = api(invoicing).post("/invoices/search?status=0", json={"invoice_number": "5"})

        assert response.status_code == 200
        assert response.json()["strategy"] == "single"
        assert seen == [{"status": "0", "invoice_number": "5"}]

    def test_search_upstream_failure_is_400(self, api):
        response = api(lambda r: httpx.Response(500, json={"message": "boom"})).get("/invoices/search")

        assert response.status_code == 400
        assert response.json() == {"ok": False, "error": "boom"}

    def test_sync_job_walks_pages(self, api):
        pages = []

        def invoicing(request):
            page = int(request.url.params["page"])
            pages.append((page, request.url.params["start"], request.url.params["limit"]))
            if page == 1:
                return httpx.Response(200, json={"data": [_invoice(n) for n in range(1, 41)]})
            return httpx.Response(200, json={"data": [_invoice(n) for n in range(41, 46)]})

        response = api(invoicing).get("/jobs/sync-invoices", params={"max_pages": 5})

        assert response.status_code == 200
        data = response.json()
        assert pages == [(1, "0", "40"), (2, "40", "40")]
        assert data["fetched_pages"] == 2
        assert data["fetched_total"] == 45
        assert data["wrote"] == 45
        assert data["sample_ids"] == list(range(1, 11))


@pytest.mark.integration
@pytest.mark.api
class TestInvoiceActions:

    def test_cancel_already_canceled_upstream(self, api):
        bodies = []

        def invoicing(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(400, json={"message": "fatura já está cancelada"})

        response = api(invoicing).post("/invoices/cancel", json={"id": 12})

        assert response.status_code == 200
        data = response.json()
        assert data["ok"] is True
        assert data["alreadyCanceled"] is True
        assert data["dac"]["ok"] is True
        assert bodies == [{"id": 12, "reason": settings.DEFAULT_CANCEL_REASON, "send_mail": False}]

    def test_cancel_partial_failure_is_207(self, api):
        def legacy(request):
            return _html_json({"success": False, "message": "Sem permissão"})

        response = api(lambda r: httpx.Response(200, json={"success": True}), legacy).post(
            "/cancel", json={"id": 12, "reason": "Duplicada"}
        )

        assert response.status_code == 207
        assert response.json()["ok"] is False

    @pytest.mark.parametrize("path", ["/invoices/pay", "/pay", "/invoices/cancel", "/invoices/send"])
    def test_missing_id_is_400(self, api, path):
        response = api().post(path, json={"value": 10})

        assert response.status_code == 400
        assert response.json() == {"ok": False, "error": "id is required"}

    def test_pay_forwards_body(self, api):
        bodies = []

        def invoicing(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"success": True, "status": 1})

        payload = {"id": 3, "paid_at": "2024-06-01", "value": 10.5, "wallet_id": 1, "payment_form": 2}
        response = api(invoicing).post("/invoices/pay", json=payload)

        assert response.status_code == 200
        assert response.json()["ok"] is True
        assert bodies == [payload]

    def test_pay_upstream_rejection_is_400(self, api):
        response = api(lambda r: httpx.Response(200, json={"success": False, "message": "Saldo insuficiente"})).post(
            "/invoices/pay", json={"id": 3}
        )

        assert response.status_code == 400
        assert response.json()["error"] == "Saldo insuficiente"

    def test_send(self, api):
        response = api(lambda r: httpx.Response(200, json={"success": True, "message": "Enviada"})).post(
            "/invoices/send", json={"id": 3, "send_mail": True}
        )

        assert response.status_code == 200
        assert response.json() == {"success": True, "message": "Enviada", "ok": True}

    def test_enrich_reports_per_id_errors(self, api):
        def legacy(request):
            if request.url.params.get("id") == "2":
                return httpx.Response(500, text="Fatal error")
            return legacy_handler(request)

        response = api(legacy=legacy).post("/invoices/enrinch", json={"ids": [1, 2]})

        assert response.status_code == 200
        data = response.json()
        assert data["ok"] is False
        assert [d["id"] for d in data["data"]] == [1]
        assert data["data"][0]["owner_name"] == "Cooperativa Norte"
        assert [e["id"] for e in data["errors"]] == [2]

    def test_enrich_without_ids_is_400(self, api):
        response = api().post("/invoices/enrich", json={})
        assert response.status_code == 400


@pytest.mark.integration
@pytest.mark.api
class TestPayFromFile:

    def test_help(self, api):
        response = api().get("/invoices/pay-from-file")

        assert response.status_code == 200
        assert response.json()["expectedHeaders"] == ["CNPJ Fornecedor", "NF", "Valor Líquido"]

    def test_dry_run_with_json_rows(self, api):
        def invoicing(request):
            if request.url.path.endswith("/invoices/search"):
                return httpx.Response(200, json={"data": [_invoice(20, total="75.00")]})
            raise AssertionError("dry run must not pay")

        client = api(invoicing)
        assert client.get("/invoices/search").status_code == 200

        response = client.post(
            "/invoices/pay-from-file?dryRun=1",
            json={"rows": [
                {"CNPJ Fornecedor": "98.765.432/0001-10", "NF": "20", "Valor Líquido": "75,00"},
                {"CNPJ Fornecedor": "98.765.432/0001-10", "NF": "999"},
            ]},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["dryRun"] is True
        assert data["matched"] == 1
        assert data["skipped"] == 1
        assert data["results"][0]["id"] == 20

    def test_upload_pays_matched_rows(self, api):
        paid = []

        def invoicing(request):
            if request.url.path.endswith("/invoices/search"):
                return httpx.Response(200, json={"data": [_invoice(20)]})
            paid.append(json.loads(request.content))
            return httpx.Response(200, json={"success": True})

        client = api(invoicing)
        client.get("/invoices/search")

        content = "CNPJ Fornecedor;NF;Valor Líquido\n98765432000110;20;10,00\n".encode("latin-1")
        response = client.post(
            "/invoices/pay-from-file",
            files={"file": ("pagamentos.csv", content, "text/csv")},
        )

        assert response.status_code == 200
        assert response.json()["paid"] == 1
        assert paid == [{"id": 20}]

    def test_missing_rows_is_400(self, api):
        response = api().post("/invoices/pay-from-file", json={})
        assert response.status_code == 400


@pytest.mark.integration
@pytest.mark.api
class TestBatchActions:

    def test_wait_runs_inline(self, api):
        sent = []

        def invoicing(request):
            sent.append(json.loads(request.content))
            return httpx.Response(200, json={"success": True})

        response = api(invoicing).post(
            "/batch/actions?wait=1",
            json={"rows": [{"ID": 1, "Action": "send"}, {"ID": 2, "Action": "liquidar"}]},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 2
        assert data["succeeded"] == 1
        assert data["failed"] == 1
        assert data["results"][1]["message"].startswith("missing fields for pay")
        assert sent == [{"id": 1}]

    def test_background_run_and_progress(self, api):
        def invoicing(request):
            return httpx.Response(200, json={"success": True})

        client = api(invoicing)
        content = b"id,action\n1,send\n2,send\n3,send\n"
        response = client.post(
            "/batch/actions",
            files={"file": ("lote.csv", content, "text/csv")},
        )

        assert response.status_code == 202
        accepted = response.json()
        assert accepted["rows"] == 3

        progress = client.get(f"/batch/{accepted['batch_id']}")
        assert progress.status_code == 200
        data = progress.json()
        assert data["status"] == "complete"
        assert data["processed"] == 3
        assert [r["id"] for r in data["results"]] == [1, 2, 3]

    def test_action_override_from_form_field(self, api):
        calls = []

        def invoicing(request):
            calls.append(request.url.path)
            return httpx.Response(200, json={"success": True})

        response = api(invoicing).post(
            "/batch/actions?wait=1",
            files={"file": ("lote.csv", b"id\n4\n", "text/csv")},
            data={"action": "emitir"},
        )

        assert response.status_code == 200
        assert response.json()["results"] == [{"id": 4, "action": "send", "ok": True, "message": "sent"}]
        assert calls[0].endswith("/invoices/send")

    def test_empty_batch_is_400(self, api):
        response = api().post("/batch/actions", json={"rows": []})
        assert response.status_code == 400

    def test_unknown_batch_is_404(self, api):
        response = api().get("/batch/does-not-exist")
        assert response.status_code == 404
        assert response.json()["ok"] is False
