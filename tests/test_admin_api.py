import pytest

from commercehub.core.config import settings
from commercehub.models import FactOrder, IngestAudit, KpiDaily

ADMIN = {"x-admin-secret": "admin-secret"}


@pytest.fixture(autouse=True)
def secrets(monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_SECRET", "admin-secret")
    monkeypatch.setattr(settings, "CRON_SECRET", "cron-secret")


@pytest.fixture
def fake_source(fake_source_factory, order_factory):
    return fake_source_factory([order_factory(3), order_factory(2, start_id=4)])


@pytest.fixture
def client(api_client, fake_source):
    return api_client({"shopify": fake_source})


class TestAdminAuth:
    @pytest.mark.parametrize("headers", [{}, {"x-admin-secret": "wrong"}])
    def test_rejects_bad_secret(self, client, headers):
        assert client.get("/api/admin/audit", headers=headers).status_code == 401
        assert client.post("/api/admin/resync", json={"date": "2024-03-01"}, headers=headers).status_code == 401

    def test_empty_configured_secret_rejects_everything(self, client, monkeypatch):
        monkeypatch.setattr(settings, "ADMIN_SECRET", "")
        assert client.get("/api/admin/audit", headers={"x-admin-secret": ""}).status_code == 401


class TestResync:
    def test_resync_day(self, client, db, fake_source):
        response = client.post("/api/admin/resync", json={"source": "shopify", "date": "2024-03-01"}, headers=ADMIN)

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["date"] == "2024-03-01"
        assert body["results"]["shopify"]["status"] == "success"
        assert body["results"]["shopify"]["processed"] == 5
        assert fake_source.calls == [None, "1"]

        assert db.query(FactOrder).count() == 5
        assert db.query(KpiDaily).count() == 1

        history = client.get("/api/admin/resync", headers=ADMIN).json()["audits"]
        assert [a["type"] for a in history] == ["resync_shopify"]
        assert history[0]["status"] == "success"
        assert history[0]["payload"]["processed"] == 5

    def test_resync_is_repeatable(self, client, db):
        for _ in range(2):
            client.post("/api/admin/resync", json={"source": "all", "date": "2024-03-01"}, headers=ADMIN)
        assert db.query(FactOrder).count() == 5

    def test_failed_source_is_reported(self, api_client, fake_source_factory, order_factory):
        client = api_client({"shopify": fake_source_factory([order_factory(1), order_factory(1, start_id=2)], fail_on_token="1")})
        body = client.post("/api/admin/resync", json={"source": "shopify", "date": "2024-03-01"}, headers=ADMIN).json()

        assert body["results"]["shopify"]["status"] == "failed"
        audits = client.get("/api/admin/audit", params={"type": "resync_shopify"}, headers=ADMIN).json()
        assert audits["count"] == 1
        assert audits["audits"][0]["status"] == "failed"

    def test_unexpected_error_fails_only_that_source(self, api_client, db, fake_source, fake_source_factory, order_factory):
        crashing = fake_source_factory([order_factory(1)])

        async def crash(start, end, page_token=None):
            raise RuntimeError("segment missing")

        crashing.fetch_by_date_range = crash
        client = api_client({"shopify": fake_source, "square": crashing})
        body = client.post("/api/admin/resync", json={"source": "all", "date": "2024-03-01"}, headers=ADMIN).json()

        assert body["results"]["shopify"]["status"] == "success"
        assert body["results"]["square"]["status"] == "failed"
        assert "segment missing" in body["results"]["square"]["error"]
        audit = db.query(IngestAudit).filter(IngestAudit.type == "resync_square").one()
        assert audit.status == "failed"
        assert db.query(FactOrder).count() == 5

    @pytest.mark.parametrize("payload", [{"date": "03/01/2024"}, {"source": "etsy", "date": "2024-03-01"}, {}])
    def test_invalid_request_is_422(self, client, payload):
        assert client.post("/api/admin/resync", json=payload, headers=ADMIN).status_code == 422

    def test_unconfigured_source_is_400(self, client):
        response = client.post("/api/admin/resync", json={"source": "square", "date": "2024-03-01"}, headers=ADMIN)
        assert response.status_code == 400


class TestReportingApi:
    def test_refresh_views_requires_bearer(self, client):
        assert client.post("/api/refresh-views").status_code == 401
        assert client.get("/api/refresh-views", headers={"Authorization": "Bearer nope"}).status_code == 401

    def test_refresh_views_and_kpis(self, client):
        client.post("/api/admin/resync", json={"source": "shopify", "date": "2024-03-01"}, headers=ADMIN)

        for method in (client.get, client.post):
            response = method("/api/refresh-views", headers={"Authorization": "Bearer cron-secret"})
            assert response.status_code == 200
            assert response.json()["rows"] == 1

        totals = client.get("/api/kpi/totals", params={"start": "2024-03-01", "end": "2024-03-01"}).json()
        assert totals["sales"] == "500.00"
        assert totals["txns"] == 5
        assert totals["aov"] == "100.00"

        channels = client.get("/api/kpi/channels", params={"start": "2024-03-01", "end": "2024-03-31"}).json()
        assert channels["channels"][0]["channel_id"] == "fake"
        assert channels["channels"][0]["percent_of_total"] == "100.00"

        items = client.get("/api/kpi/top-items", params={"start": "2024-03-01", "end": "2024-03-01"}).json()
        assert items["items"][0]["sku"] == "SKU-1"
        assert items["items"][0]["qty"] == 5


class TestIntegrityAndReconciliation:
    def test_integrity_endpoint(self, client):
        body = client.get("/api/admin/integrity", headers=ADMIN).json()
        assert body == {"ok": True, "orphan_lines": 0, "duplicate_orders": [], "duplicate_events": []}

    def test_reconciliation_run(self, client):
        client.post("/api/admin/resync", json={"source": "shopify", "date": "2024-03-01"}, headers=ADMIN)
        response = client.post("/api/reconciliation/run", json={"start_date": "2024-03-01", "source": "shopify"}, headers=ADMIN)

        assert response.status_code == 200
        body = response.json()
        assert [r["status"] for r in body["results"]] == ["match"]
        assert body["mismatches"] == 0
        assert body["dispatched"] == []

    def test_reconciliation_rejects_reversed_range(self, client):
        response = client.post(
            "/api/reconciliation/run", json={"start_date": "2024-03-02", "end_date": "2024-03-01"}, headers=ADMIN,
        )
        assert response.status_code == 400
