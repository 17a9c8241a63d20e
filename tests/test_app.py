"""
API tests: routes, status codes and error mapping, with Xero replaced by an
in-memory client.
"""
import pytest
from fastapi.testclient import TestClient

from ledgersync.app import (
    app,
    get_config,
    get_oauth_service,
    get_status_cache,
)
from ledgersync.core.db import get_db, get_session_factory
from ledgersync.core.models import Customer, XeroSyncState
from ledgersync.services.xero.client import XeroNotConnectedError
from ledgersync.services.xero.oauth import XeroOAuthService
from ledgersync.services.xero.status import ConnectionStatusCache
from ledgersync.services.xero.contacts import ContactSync
from tests.fakes import FakeHttp, FakeResponse, FakeXeroClient, xero_contact, xero_invoice


class FakeOAuthService(XeroOAuthService):
    """OAuth service whose API client is the in-memory Xero."""

    def __init__(self, session_factory, xero):
        super().__init__(
            session_factory,
            client_id="client-id",
            client_secret="client-secret",
            redirect_uri="http://localhost:8000/api/xero/callback",
            http=FakeHttp(),
        )
        self.xero = xero
        self.connected = True

    def create_client(self):
        if not self.connected:
            raise XeroNotConnectedError("Xero is not connected. Please connect to Xero first.")
        return self.xero


@pytest.fixture
def xero():
    return FakeXeroClient(
        contacts=[xero_contact("c-1", "Acme Construction", email="accounts@acme.sg")],
        invoices=[xero_invoice("i-1", "INV-001", "c-1")],
    )


@pytest.fixture
def oauth(session_factory, xero):
    return FakeOAuthService(session_factory, xero)


@pytest.fixture
def client(session_factory, sync_config, oauth):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    cache = ConnectionStatusCache()
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_oauth_service] = lambda: oauth
    app.dependency_overrides[get_config] = lambda: sync_config
    app.dependency_overrides[get_status_cache] = lambda: cache
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def open_conflict(session, session_factory, xero):
    """Customer email edited on both sides since the last pull."""
    sync = ContactSync(xero, session_factory)
    sync.pull_contacts()
    customer = session.query(Customer).one()
    customer.email = "local@acme.sg"
    session.commit()
    xero.contacts["c-1"]["EmailAddress"] = "remote@acme.sg"
    sync.pull_contacts()
    return session.query(XeroSyncState).filter(XeroSyncState.status == "CONFLICT").one().id


class TestGeneral:

    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["version"] == "1.0.0"


class TestConnection:

    def test_connect_returns_consent_url(self, client):
        response = client.get("/api/xero/connect")
        assert response.status_code == 200
        assert response.json()["auth_url"].startswith("https://login.xero.com/identity/connect/authorize?")

    def test_callback_with_xero_error(self, client):
        response = client.get("/api/xero/callback", params={"error": "access_denied"})
        assert response.status_code == 400
        assert response.json()["detail"] == "Xero authorization failed: access_denied"

    def test_callback_with_expired_code(self, client, oauth):
        oauth.http.queue(FakeResponse(400, {"error": "invalid_grant"}))
        response = client.get("/api/xero/callback", params={"code": "used"})
        assert response.status_code == 400
        assert "expired or already used" in response.json()["detail"]

    def test_callback_stores_connection(self, client, oauth):
        oauth.http.queue(
            FakeResponse(200, {"access_token": "a", "refresh_token": "r", "expires_in": 1800}),
            FakeResponse(200, [{"tenantId": "tenant-1", "tenantName": "Demo Builders", "tenantType": "ORGANISATION"}]),
        )
        response = client.get("/api/xero/callback", params={"code": "fresh"})
        assert response.status_code == 200
        assert response.json()["tenant_name"] == "Demo Builders"
        assert client.get("/api/xero/health").json()["connected"] is True

    def test_connection_status_is_cached(self, client):
        first = client.get("/api/xero/connection-status").json()
        second = client.get("/api/xero/connection-status").json()
        assert first["connected"] is False
        assert first["reason"] == "no_tokens"
        assert first["cached"] is False
        assert second["cached"] is True
        assert client.get("/api/xero/connection-status", params={"force": True}).json()["cached"] is False

    def test_token_refresh_without_connection(self, client):
        response = client.post("/api/xero/token/refresh")
        assert response.status_code == 200
        assert response.json()["error"] == "not_connected"

    def test_disconnect(self, client):
        response = client.post("/api/xero/disconnect")
        assert response.status_code == 200
        assert response.json()["disconnected"] == 0


class TestSyncRoutes:

    def test_full_sync(self, client, session):
        response = client.post("/api/xero/sync", json={"direction": "pull"})
        assert response.status_code == 200
        body = response.json()
        assert body["overall_success"]
        assert [r["source"] for r in body["results"]] == ["contacts", "invoices", "payments"]
        assert session.query(Customer).count() == 1

    def test_sync_requires_connection(self, client, oauth):
        oauth.connected = False
        response = client.post("/api/xero/sync", json={})
        assert response.status_code == 401
        assert "not connected" in response.json()["detail"]

    def test_sync_rejects_unknown_direction(self, client):
        response = client.post("/api/xero/sync", json={"direction": "sideways"})
        assert response.status_code == 422

    def test_contact_sync_dry_run(self, client, session):
        response = client.post("/api/xero/sync/contacts", json={"direction": "pull", "dry_run": True})
        body = response.json()
        assert response.status_code == 200
        assert body["pull"]["stats"]["created"] == 1
        assert "push" not in body
        assert session.query(Customer).count() == 0

    def test_invoice_sync(self, client):
        client.post("/api/xero/sync/contacts", json={"direction": "pull"})
        response = client.post("/api/xero/sync/invoices", json={"direction": "pull"})
        assert response.status_code == 200
        assert response.json()["pull"]["created"] == 1

    def test_payment_push_and_pull(self, client):
        push = client.post("/api/xero/sync/payments/push", json={"dry_run": True})
        pull = client.post("/api/xero/sync/payments/pull", json={"dry_run": True})
        assert push.status_code == 200 and push.json()["validated"] == []
        assert pull.status_code == 200 and pull.json()["stats"]["created"] == 0

    def test_reconcile(self, client, session):
        response = client.get("/api/xero/reconcile", params={"entities": "contacts"})
        assert response.status_code == 200
        body = response.json()
        assert list(body["entities"]) == ["contacts"]
        assert body["entities"]["contacts"]["would_create"] == 1
        assert body["in_sync"] is False
        assert session.query(Customer).count() == 0


class TestConflictRoutes:

    def test_list_conflicts(self, client, open_conflict):
        response = client.get("/api/xero/conflicts")
        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 1
        assert body["conflicts"][0]["id"] == open_conflict
        assert body["conflicts"][0]["fields"] == ["email"]

    def test_resolve_conflict(self, client, xero, open_conflict):
        response = client.post(
            f"/api/xero/conflicts/{open_conflict}/resolve",
            json={"resolution": "use_local", "notes": "Customer confirmed", "resolved_by": "u-1"},
        )
        assert response.status_code == 200
        assert response.json()["resolution"] == "use_local"
        assert xero.contacts["c-1"]["EmailAddress"] == "local@acme.sg"
        assert xero.closed
        assert client.get("/api/xero/conflicts").json()["total"] == 0

    def test_resolve_twice_is_rejected(self, client, open_conflict):
        client.post(f"/api/xero/conflicts/{open_conflict}/resolve", json={"resolution": "use_xero"})
        response = client.post(f"/api/xero/conflicts/{open_conflict}/resolve", json={"resolution": "use_xero"})
        assert response.status_code == 400
        assert "already resolved" in response.json()["detail"]

    def test_resolve_unknown_conflict(self, client):
        response = client.post("/api/xero/conflicts/missing/resolve", json={"resolution": "use_local"})
        assert response.status_code == 404

    def test_resolve_rejects_unknown_resolution(self, client, open_conflict):
        response = client.post(f"/api/xero/conflicts/{open_conflict}/resolve", json={"resolution": "coin_toss"})
        assert response.status_code == 422


class TestAuditRoutes:

    def test_logs(self, client):
        client.post("/api/xero/sync/contacts", json={"direction": "pull"})
        response = client.get("/api/xero/logs", params={"entity_type": "CONTACT"})
        assert response.status_code == 200
        logs = response.json()["logs"]
        assert len(logs) == 1
        assert logs[0]["status"] == "SUCCESS"
        assert logs[0]["records_succeeded"] == 1

    def test_dashboard(self, client, open_conflict):
        response = client.get("/api/xero/sync-dashboard")
        assert response.status_code == 200
        body = response.json()
        assert body["customers"] == {"total": 1, "synced": 1, "unsynced": 0}
        assert body["open_conflicts"] == 1
        assert body["connection"]["connected"] is False
