"""
Tests for FastAPI Endpoints

Integration tests for the trigger API.
"""

from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from conftest import TENANT_ID
from rentalsync.api import server
from rentalsync.api.server import app
from rentalsync.persistence.models import InvoiceRecord, VehicleRecord
from rentalsync.persistence.repository import InvoiceRepository, VehicleRepository


@pytest.fixture
def client(db, settings):
    """Create test client bound to the per-test database."""
    server.app_state = server.AppState(settings=settings, db=db)
    yield TestClient(app)
    server.app_state = None


@pytest.fixture
def auth_headers():
    """Headers with valid API key."""
    return {"X-API-Key": "test-key-12345"}


class TestHealthEndpoint:
    """Test health check endpoint."""

    def test_health_no_auth_required(self, client):
        """Health check should not require authentication."""
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database"] == "ok"
        assert "version" in data
        assert "uptime_seconds" in data


class TestTriggerEndpoint:
    """Test the per-tenant trigger."""

    def test_trigger_requires_auth(self, client):
        response = client.post("/trigger", json={"tenantId": TENANT_ID})

        assert response.status_code == 422  # Missing header

    def test_trigger_invalid_api_key(self, client):
        response = client.post("/trigger", json={"tenantId": TENANT_ID}, headers={"X-API-Key": "wrong-key"})

        assert response.status_code == 401

    def test_missing_tenant_id(self, client, auth_headers):
        response = client.post("/trigger", json={}, headers=auth_headers)

        assert response.status_code == 400
        assert "tenant_id" in response.json()["error"]

    def test_unknown_tenant(self, client, auth_headers):
        response = client.post("/trigger", json={"tenantId": "nobody"}, headers=auth_headers)

        assert response.status_code == 404

    def test_bad_action(self, client, auth_headers, tenant):
        response = client.post("/trigger", json={"tenantId": TENANT_ID, "action": "delete"}, headers=auth_headers)

        assert response.status_code == 400

    def test_summary_shape(self, client, auth_headers, tenant):
        """Unconfigured tenant: both jobs skipped, summary still returned."""
        response = client.post("/trigger", json={"tenant_id": TENANT_ID, "action": "both"}, headers=auth_headers)

        assert response.status_code == 200
        assert response.json() == {"processed": 0, "inserted": 0, "duplicates": 0, "errors": 0, "skipped": 2}

    def test_internal_error_is_generic(self, client, auth_headers, tenant, monkeypatch):
        def boom(*args, **kwargs):
            raise RuntimeError("secret connection string")

        monkeypatch.setattr(server.app_state.trigger.billing, "run_billing_cycle", boom)

        response = client.post("/trigger", json={"tenantId": TENANT_ID, "action": "bill"}, headers=auth_headers)

        assert response.status_code == 500
        assert "secret" not in response.text


class TestTriggerAllEndpoint:

    def test_runs_active_tenants(self, client, auth_headers, tenant):
        response = client.post("/trigger/all", json={"action": "bill"}, headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["tenants"] == 1
        assert data["results"][TENANT_ID]["status_code"] == 200

    def test_bad_action(self, client, auth_headers):
        response = client.post("/trigger/all", json={"action": "nope"}, headers=auth_headers)

        assert response.status_code == 400


class TestIntegrationLogsEndpoint:

    def test_logs_listed_newest_first(self, client, auth_headers, tenant):
        client.post("/trigger", json={"tenantId": TENANT_ID, "action": "reconcile", "force": True},
                    headers=auth_headers)
        client.post("/trigger", json={"tenantId": TENANT_ID, "action": "bill"}, headers=auth_headers)

        response = client.get(f"/tenants/{TENANT_ID}/integration-logs", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 2
        assert [e["operation"] for e in data["entries"]] == ["bill", "reconcile"]

    def test_service_filter(self, client, auth_headers, tenant):
        client.post("/trigger", json={"tenantId": TENANT_ID}, headers=auth_headers)

        response = client.get(f"/tenants/{TENANT_ID}/integration-logs?service=gateway", headers=auth_headers)

        assert response.json()["total"] == 0

    def test_limit_bounds(self, client, auth_headers):
        response = client.get(f"/tenants/{TENANT_ID}/integration-logs?limit=0", headers=auth_headers)

        assert response.status_code == 422


class TestGatewayWebhook:

    def test_paid_event(self, db, client, auth_headers, tenant):
        InvoiceRepository(db).insert(InvoiceRecord(
            tenant_id=TENANT_ID,
            invoice_number="FAT-1",
            amount=Decimal("1500.00"),
            due_date="2999-01-17",
            contract_id="c-1",
            gateway_charge_id="chg_1",
        ))

        response = client.post("/webhooks/gateway", json={
            "tenant_id": TENANT_ID,
            "charge_id": "chg_1",
            "status": "PAID",
            "paid_at": "2025-01-15T12:00:00+00:00",
        }, headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["status"] == "paid"

    def test_unknown_charge(self, client, auth_headers, tenant):
        response = client.post("/webhooks/gateway", json={
            "tenant_id": TENANT_ID,
            "charge_id": "chg_missing",
            "status": "PAID",
        }, headers=auth_headers)

        assert response.status_code == 404


class TestDeleteVehicles:

    def test_delete_all(self, db, client, auth_headers, tenant):
        VehicleRepository(db).insert(VehicleRecord(tenant_id=TENANT_ID, plate="ABC1234", brand="Honda", model="CG"))

        response = client.delete(f"/tenants/{TENANT_ID}/vehicles", headers=auth_headers)

        assert response.json() == {"tenant_id": TENANT_ID, "deleted": 1}
        assert VehicleRepository(db).list_for_tenant(TENANT_ID) == []

    def test_unknown_tenant(self, client, auth_headers):
        response = client.delete("/tenants/nobody/vehicles", headers=auth_headers)

        assert response.status_code == 404


class TestOperatorEndpoints:

    def test_connection_unknown_tenant(self, client, auth_headers):
        response = client.post("/tenants/nobody/test-connection", json={"service": "telemetry"},
                               headers=auth_headers)

        assert response.status_code == 404

    def test_connection_not_configured(self, client, auth_headers, tenant):
        response = client.post(f"/tenants/{TENANT_ID}/test-connection", json={"service": "gateway"},
                               headers=auth_headers)

        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_connection_bad_service(self, client, auth_headers, tenant):
        response = client.post(f"/tenants/{TENANT_ID}/test-connection", json={"service": "fax"},
                               headers=auth_headers)

        assert response.status_code == 400

    def test_command_requires_auth(self, client, tenant):
        response = client.post(f"/tenants/{TENANT_ID}/devices/9001/command", json={"command": "block"})

        assert response.status_code == 422

    def test_bad_command(self, client, auth_headers, tenant):
        response = client.post(f"/tenants/{TENANT_ID}/devices/9001/command", json={"command": "explode"},
                               headers=auth_headers)

        assert response.status_code == 400

    def test_sync_invoices_action(self, client, auth_headers, tenant):
        response = client.post("/trigger", json={"tenantId": TENANT_ID, "action": "sync_invoices"},
                               headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["skipped"] == 1
