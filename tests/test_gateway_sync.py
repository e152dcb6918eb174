"""
Tests for the Gateway Invoice Status Poll
"""

from datetime import date
from decimal import Decimal

import pytest

from conftest import GATEWAY, TENANT_ID, FakeResponse
from rentalsync.billing.gateway_sync import PER_PAGE, GatewayInvoiceSync
from rentalsync.core.errors import AuthError, ConfigMissing
from rentalsync.persistence.models import InvoiceRecord, InvoiceStatus
from rentalsync.persistence.repository import IntegrationLogRepository, InvoiceRepository

TOKEN_URL = f"{GATEWAY}/token"
INVOICES_URL = f"{GATEWAY}/invoices"
TODAY = date(2025, 1, 20)


@pytest.fixture
def poller(db, settings, vault, fake_http, gateway_config):
    return GatewayInvoiceSync(db, settings, vault=vault, http=fake_http)


def token_ok(fake_http, *tokens):
    responses = [FakeResponse(200, {"access_token": t, "expires_in": 3600}) for t in tokens or ("tok-1",)]
    fake_http.set("POST", TOKEN_URL, *responses)


def add_invoice(db, number, due_date, charge_id, status=InvoiceStatus.PENDING):
    InvoiceRepository(db).insert(InvoiceRecord(
        tenant_id=TENANT_ID,
        invoice_number=number,
        amount=Decimal("1500.00"),
        due_date=due_date,
        contract_id=f"contract-{number}",
        gateway_charge_id=charge_id,
        status=status,
    ))


def statuses(db):
    return {i.invoice_number: i.status for i in InvoiceRepository(db).list_for_tenant(TENANT_ID)}


class TestStatusPoll:

    def test_applies_gateway_status(self, db, poller, fake_http):
        token_ok(fake_http)
        add_invoice(db, "FAT-1", "2025-01-25", "chg_1")
        fake_http.set("GET", INVOICES_URL, FakeResponse(200, {"items": [
            {"id": "chg_1", "status": "PAID", "paid_at": "2025-01-19T10:00:00+00:00"},
            {"id": "chg_foreign", "status": "OPEN"},
        ]}))

        summary = poller.sync_tenant(TENANT_ID, today=TODAY)

        assert (summary.fetched, summary.updated, summary.unmatched) == (2, 1, 1)
        assert statuses(db) == {"FAT-1": InvoiceStatus.PAID}

    def test_request_window_and_certificate(self, db, poller, fake_http):
        token_ok(fake_http)
        fake_http.set("GET", INVOICES_URL, FakeResponse(200, {"items": []}))

        poller.sync_tenant(TENANT_ID, days=30, today=TODAY)

        [call] = fake_http.calls_to(INVOICES_URL)
        assert call[2]["params"] == {"page": 1, "perPage": PER_PAGE, "start": "2024-12-21", "end": "2025-01-20"}
        assert call[2]["headers"]["Authorization"] == "Bearer tok-1"
        assert call[2]["cert"] is not None

    def test_missed_payment_push_becomes_overdue(self, db, poller, fake_http):
        token_ok(fake_http)
        add_invoice(db, "FAT-1", "2025-01-15", "chg_1")
        fake_http.set("GET", INVOICES_URL, FakeResponse(200, {"items": [{"id": "chg_1", "status": "OPEN"}]}))

        poller.sync_tenant(TENANT_ID, today=TODAY)

        assert statuses(db) == {"FAT-1": InvoiceStatus.OVERDUE}

    def test_paid_invoice_not_downgraded(self, db, poller, fake_http):
        token_ok(fake_http)
        add_invoice(db, "FAT-1", "2025-01-15", "chg_1", status=InvoiceStatus.PAID)
        fake_http.set("GET", INVOICES_URL, FakeResponse(200, {"items": [{"id": "chg_1", "status": "OPEN"}]}))

        summary = poller.sync_tenant(TENANT_ID, today=TODAY)

        assert summary.unchanged == 1
        assert statuses(db) == {"FAT-1": InvoiceStatus.PAID}

    def test_pages_until_short_page(self, db, poller, fake_http):
        token_ok(fake_http)
        full_page = [{"id": f"g-{n}", "status": "OPEN"} for n in range(PER_PAGE)]
        fake_http.set("GET", INVOICES_URL,
                      FakeResponse(200, {"items": full_page}),
                      FakeResponse(200, {"items": [{"id": "g-last", "status": "OPEN"}]}))

        summary = poller.sync_tenant(TENANT_ID, today=TODAY)

        assert summary.fetched == PER_PAGE + 1
        assert [c[2]["params"]["page"] for c in fake_http.calls_to(INVOICES_URL)] == [1, 2]
        entries = IntegrationLogRepository(db).list_for_tenant(TENANT_ID)
        assert sorted(e.operation for e in entries) == ["list_invoices", "list_invoices", "token"]


class TestPollFailures:

    def test_expired_token_refreshed_once(self, db, poller, fake_http):
        token_ok(fake_http, "tok-1", "tok-2")
        fake_http.set("GET", INVOICES_URL,
                      FakeResponse(401, text="expired"),
                      FakeResponse(200, {"items": []}))

        summary = poller.sync_tenant(TENANT_ID, today=TODAY)

        assert summary.error is None
        assert [c[2]["headers"]["Authorization"] for c in fake_http.calls_to(INVOICES_URL)] == [
            "Bearer tok-1", "Bearer tok-2",
        ]
        listing = [e.status for e in IntegrationLogRepository(db).list_for_tenant(TENANT_ID)
                   if e.operation == "list_invoices"]
        assert sorted(listing) == ["error", "success"]

    def test_listing_failure_reported(self, db, poller, fake_http):
        token_ok(fake_http)
        add_invoice(db, "FAT-1", "2025-01-25", "chg_1")
        fake_http.set("GET", INVOICES_URL, FakeResponse(500, text="boom"))

        summary = poller.sync_tenant(TENANT_ID, today=TODAY)

        assert summary.error is not None
        assert summary.totals()["errors"] == 1
        assert statuses(db) == {"FAT-1": InvoiceStatus.PENDING}

    def test_missing_config(self, db, settings, vault, fake_http, tenant):
        with pytest.raises(ConfigMissing):
            GatewayInvoiceSync(db, settings, vault=vault, http=fake_http).sync_tenant(TENANT_ID)


class TestGatewayConnection:

    def test_token_fetched_and_logged(self, db, poller, fake_http):
        token_ok(fake_http)

        result = poller.test_connection(TENANT_ID)

        assert result["success"] is True
        [entry] = IntegrationLogRepository(db).list_for_tenant(TENANT_ID)
        assert (entry.operation, entry.status) == ("token", "success")

    def test_rejected_credentials(self, db, poller, fake_http):
        fake_http.set("POST", TOKEN_URL, FakeResponse(401, {"error": "invalid_client"}))

        with pytest.raises(AuthError):
            poller.test_connection(TENANT_ID)

        [entry] = IntegrationLogRepository(db).list_for_tenant(TENANT_ID)
        assert (entry.operation, entry.status) == ("token", "error")
