"""
Tests for the Database Layer and Repositories
"""

import threading
from decimal import Decimal

import pytest

from conftest import TENANT_ID, add_contract, add_customer
from rentalsync.core.errors import StoreConflict
from rentalsync.persistence.database import Database
from rentalsync.persistence.models import InvoiceRecord, TenantRecord, VehicleRecord, VehicleStatus
from rentalsync.persistence.repository import (
    ContractRepository,
    InvoiceRepository,
    TenantRepository,
    VehicleRepository,
)


class TestDatabase:
    """Generic store operations."""

    def test_singleton(self, db):
        assert Database.get_instance() is db

    def test_ping(self, db):
        assert db.ping() is True

    def test_insert_generates_id(self, db, tenant):
        row_id = db.insert("customers", {
            "tenant_id": TENANT_ID,
            "external_id": "p-9",
            "name": "Ana",
            "email": "a@example.com",
            "phone": "-",
            "street": "-",
            "number": "-",
            "city": "-",
            "state": "-",
            "zip_code": "-",
            "kind": "individual",
            "source": "telemetry",
            "created_at": "2025-01-01T00:00:00+00:00",
        })

        assert len(row_id) == 36
        assert db.find_one("customers", {"id": row_id})["external_id"] == "p-9"

    def test_unique_violation_is_store_conflict(self, db, tenant):
        add_customer(db, external_id="p-1")

        with pytest.raises(StoreConflict):
            add_customer(db, external_id="p-1")

    def test_conditional_update(self, db, tenant):
        add_contract(db, "c-1", "2025-01-10")

        assert db.update("contracts", "c-1", {"next_billing_date": "2025-02-09"},
                         where={"next_billing_date": "2025-01-10"}) == 1
        assert db.update("contracts", "c-1", {"next_billing_date": "2025-03-11"},
                         where={"next_billing_date": "2025-01-10"}) == 0

    def test_rejects_bad_identifiers(self, db):
        with pytest.raises(ValueError):
            db.find_one("customers; DROP TABLE tenants", {"id": "x"})

    def test_delete_requires_filter(self, db):
        with pytest.raises(ValueError):
            db.delete_where("vehicles", {})

    def test_thread_local_connections(self, db, tenant):
        """Writes from worker threads are visible to the caller."""
        def worker(n):
            add_customer(db, external_id=f"t-{n}")

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(db.find_all("customers", {"tenant_id": TENANT_ID})) == 4


class TestRepositories:

    def test_tenants(self, db):
        repo = TenantRepository(db)
        repo.create(TenantRecord(id="a", name="A"))
        repo.create(TenantRecord(id="b", name="B", active=False))

        assert [t.id for t in repo.list_active()] == ["a"]
        assert repo.get("b").active is False
        assert repo.get("missing") is None

    def test_contract_advance_compare_and_set(self, db, tenant):
        repo = ContractRepository(db)
        add_contract(db, "c-1", "2025-01-10")

        assert repo.advance("c-1", "2025-01-10", "2025-02-09", "2025-01-10T00:00:00+00:00") is True
        assert repo.advance("c-1", "2025-01-10", "2025-02-09", "2025-01-10T00:00:00+00:00") is False
        assert repo.get("c-1").next_billing_date == "2025-02-09"

    def test_due_contracts_join_payer(self, db, tenant):
        customer = add_customer(db)
        add_contract(db, "c-1", "2025-01-10", customer_id=customer.id)
        add_contract(db, "c-2", "2025-01-12")

        due = ContractRepository(db).list_due(TENANT_ID, "2025-01-15")

        assert [c.id for c in due] == ["c-1", "c-2"]
        assert due[0].payer_name == "Maria Silva"
        assert due[0].payer_tax_id == "12345678901"
        assert due[1].payer_name is None
        assert due[0].monthly_amount == Decimal("1500.00")

    def test_one_invoice_per_cycle(self, db, tenant):
        repo = InvoiceRepository(db)
        add_contract(db, "c-1", "2025-01-10")

        def invoice(number):
            return InvoiceRecord(tenant_id=TENANT_ID, invoice_number=number, amount=Decimal("10"),
                                 due_date="2025-01-17", contract_id="c-1")

        repo.insert(invoice("FAT-1"))
        with pytest.raises(StoreConflict):
            repo.insert(invoice("FAT-2"))

    def test_vehicle_update_and_delete(self, db, tenant):
        repo = VehicleRepository(db)
        vehicle_id = repo.insert(VehicleRecord(tenant_id=TENANT_ID, plate="ABC1234", brand="Honda", model="CG"))

        repo.update(vehicle_id, {"status": VehicleStatus.AVAILABLE.value, "odometer": 10})

        assert repo.find_by_plate(TENANT_ID, "ABC1234").odometer == 10
        assert repo.delete_all(TENANT_ID) == 1
        assert repo.list_for_tenant(TENANT_ID) == []
