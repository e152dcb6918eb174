"""
Repository Layer for RentalSync

Tenant-scoped read/insert/update operations for every persisted entity.
"""

from typing import Any, Dict, List, Optional
from datetime import datetime, timezone
import json
import structlog

from .database import Database, get_database
from .models import (
    TenantRecord,
    CustomerRecord,
    VehicleRecord,
    ContractRecord,
    InvoiceRecord,
    InvoiceStatus,
    IntegrationLogRecord,
    utc_now,
)

logger = structlog.get_logger()


class TenantRepository:
    """Repository for tenants."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def create(self, tenant: TenantRecord) -> TenantRecord:
        self.db.insert("tenants", tenant.to_row())
        logger.info("tenant_created", tenant_id=tenant.id)
        return tenant

    def get(self, tenant_id: str) -> Optional[TenantRecord]:
        row = self.db.find_one("tenants", {"id": tenant_id})
        return TenantRecord.from_row(row) if row else None

    def list_active(self) -> List[TenantRecord]:
        rows = self.db.execute("SELECT * FROM tenants WHERE active = ? ORDER BY id", (True,))
        return [TenantRecord.from_row(r) for r in rows]


class TenantConfigRepository:
    """
    Per-tenant JSON settings (`telemetry`, `gateway`).

    Secret fields are sealed with the credential vault before they reach the
    table and unsealed on read.
    """

    def __init__(self, db: Optional[Database] = None, vault: Optional[Any] = None):
        self.db = db or get_database()
        self.vault = vault

    def get(self, tenant_id: str, config_key: str) -> Optional[Dict[str, Any]]:
        row = self.db.find_one("tenant_config", {"tenant_id": tenant_id, "config_key": config_key})
        if not row:
            return None
        value = row["config_value"]
        if isinstance(value, str):
            value = json.loads(value)
        return self.vault.unseal(value) if self.vault else value

    def set(self, tenant_id: str, config_key: str, value: Dict[str, Any]) -> None:
        stored = self.vault.seal(value) if self.vault else value
        self.db.execute(
            """INSERT INTO tenant_config (tenant_id, config_key, config_value, updated_at)
               VALUES (?, ?, ?, ?)
               ON CONFLICT (tenant_id, config_key)
               DO UPDATE SET config_value = excluded.config_value, updated_at = excluded.updated_at""",
            (tenant_id, config_key, json.dumps(stored), utc_now())
        )
        logger.info("tenant_config_saved", tenant_id=tenant_id, config_key=config_key)


class SyncStateRepository:
    """Persisted last-synced-at timestamp per tenant and job."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def last_synced_at(self, tenant_id: str, job: str) -> Optional[datetime]:
        row = self.db.find_one("sync_state", {"tenant_id": tenant_id, "job": job})
        if not row:
            return None
        value = row["last_synced_at"]
        if isinstance(value, datetime):
            return value
        return datetime.fromisoformat(value)

    def mark_synced(self, tenant_id: str, job: str, at: Optional[datetime] = None) -> None:
        at = at or datetime.now(timezone.utc)
        self.db.execute(
            """INSERT INTO sync_state (tenant_id, job, last_synced_at)
               VALUES (?, ?, ?)
               ON CONFLICT (tenant_id, job)
               DO UPDATE SET last_synced_at = excluded.last_synced_at""",
            (tenant_id, job, at.isoformat())
        )


class CustomerRepository:
    """Repository for imported customers. Keyed by (tenant_id, external_id)."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def find_by_external_id(self, tenant_id: str, external_id: str) -> Optional[CustomerRecord]:
        row = self.db.find_one("customers", {"tenant_id": tenant_id, "external_id": external_id})
        return CustomerRecord.from_row(row) if row else None

    def get(self, customer_id: str) -> Optional[CustomerRecord]:
        row = self.db.find_one("customers", {"id": customer_id})
        return CustomerRecord.from_row(row) if row else None

    def insert(self, customer: CustomerRecord) -> str:
        """Insert a customer; raises StoreConflict if the key already exists."""
        customer.id = self.db.insert("customers", customer.to_row())
        return customer.id

    def list_for_tenant(self, tenant_id: str) -> List[CustomerRecord]:
        rows = self.db.find_all("customers", {"tenant_id": tenant_id}, order_by="created_at")
        return [CustomerRecord.from_row(r) for r in rows]

    def count(self, tenant_id: str) -> int:
        results = self.db.execute("SELECT COUNT(*) as cnt FROM customers WHERE tenant_id = ?", (tenant_id,))
        return results[0]["cnt"] if results else 0


class VehicleRepository:
    """Repository for synced vehicles. Keyed by (tenant_id, plate)."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def find_by_plate(self, tenant_id: str, plate: str) -> Optional[VehicleRecord]:
        row = self.db.find_one("vehicles", {"tenant_id": tenant_id, "plate": plate})
        return VehicleRecord.from_row(row) if row else None

    def insert(self, vehicle: VehicleRecord) -> str:
        vehicle.id = self.db.insert("vehicles", vehicle.to_row())
        return vehicle.id

    def update(self, vehicle_id: str, patch: Dict[str, Any]) -> int:
        patch = dict(patch)
        patch["updated_at"] = utc_now()
        return self.db.update("vehicles", vehicle_id, patch)

    def list_for_tenant(self, tenant_id: str) -> List[VehicleRecord]:
        rows = self.db.find_all("vehicles", {"tenant_id": tenant_id}, order_by="plate")
        return [VehicleRecord.from_row(r) for r in rows]

    def delete_all(self, tenant_id: str) -> int:
        """Explicit bulk delete of a tenant's vehicles."""
        count = self.db.delete_where("vehicles", {"tenant_id": tenant_id})
        logger.warning("vehicles_bulk_deleted", tenant_id=tenant_id, count=count)
        return count


class ContractRepository:
    """Repository for recurring contracts."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def create(self, contract: ContractRecord) -> ContractRecord:
        self.db.insert("contracts", contract.to_row())
        return contract

    def get(self, contract_id: str) -> Optional[ContractRecord]:
        row = self.db.find_one("contracts", {"id": contract_id})
        return ContractRecord.from_row(row) if row else None

    def list_due(self, tenant_id: str, cutoff_date: str) -> List[ContractRecord]:
        """Active recurring contracts whose next billing date is on or before cutoff."""
        results = self.db.execute(
            """SELECT c.*, cu.name AS payer_name, cu.email AS payer_email, cu.tax_id AS payer_tax_id
               FROM contracts c
               LEFT JOIN customers cu ON cu.id = c.customer_id AND cu.tenant_id = c.tenant_id
               WHERE c.tenant_id = ? AND c.status = 'active' AND c.recurring = ?
                 AND c.next_billing_date <= ?
               ORDER BY c.next_billing_date ASC, c.id ASC""",
            (tenant_id, True, cutoff_date)
        )
        return [ContractRecord.from_row(r) for r in results]

    def advance(self, contract_id: str, expected_next: str, new_next: str, invoiced_at: str) -> bool:
        """
        Move next_billing_date forward only if it still equals expected_next.

        Returns False when another run already advanced the contract.
        """
        updated = self.db.update(
            "contracts",
            contract_id,
            {"next_billing_date": new_next, "last_invoice_at": invoiced_at},
            where={"next_billing_date": expected_next},
        )
        if updated:
            logger.info("contract_advanced", contract_id=contract_id, next_billing_date=new_next)
        return updated > 0


class InvoiceRepository:
    """Repository for invoices. (contract_id, due_date) is unique."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def insert(self, invoice: InvoiceRecord) -> str:
        """Insert an invoice; raises StoreConflict if the cycle is already invoiced."""
        invoice.id = self.db.insert("invoices", invoice.to_row())
        logger.info(
            "invoice_created",
            invoice_id=invoice.id,
            contract_id=invoice.contract_id,
            due_date=invoice.due_date,
        )
        return invoice.id

    def get(self, invoice_id: str) -> Optional[InvoiceRecord]:
        row = self.db.find_one("invoices", {"id": invoice_id})
        return InvoiceRecord.from_row(row) if row else None

    def find_for_cycle(self, contract_id: str, due_date: str) -> Optional[InvoiceRecord]:
        row = self.db.find_one("invoices", {"contract_id": contract_id, "due_date": due_date})
        return InvoiceRecord.from_row(row) if row else None

    def find_by_charge_id(self, tenant_id: str, charge_id: str) -> Optional[InvoiceRecord]:
        row = self.db.find_one("invoices", {"tenant_id": tenant_id, "gateway_charge_id": charge_id})
        return InvoiceRecord.from_row(row) if row else None

    def attach_charge(
        self,
        invoice_id: str,
        charge_id: Optional[str],
        barcode: Optional[str],
        pix_payload: Optional[str],
        payment_url: Optional[str],
        attempt_count: int,
    ) -> None:
        self.db.update("invoices", invoice_id, {
            "gateway_charge_id": charge_id,
            "barcode": barcode,
            "pix_payload": pix_payload,
            "payment_url": payment_url,
            "attempt_count": attempt_count,
            "last_error": None,
            "updated_at": utc_now(),
        })

    def record_charge_failure(self, invoice_id: str, attempt_count: int, error: str) -> None:
        self.db.update("invoices", invoice_id, {
            "attempt_count": attempt_count,
            "last_error": error[:500],
            "updated_at": utc_now(),
        })

    def update_status(self, invoice_id: str, status: InvoiceStatus, paid_at: Optional[str] = None) -> None:
        patch: Dict[str, Any] = {"status": status.value, "updated_at": utc_now()}
        if paid_at:
            patch["paid_at"] = paid_at
        self.db.update("invoices", invoice_id, patch)
        logger.info("invoice_status_updated", invoice_id=invoice_id, status=status.value)

    def list_for_tenant(self, tenant_id: str, status: Optional[InvoiceStatus] = None) -> List[InvoiceRecord]:
        keys: Dict[str, Any] = {"tenant_id": tenant_id}
        if status:
            keys["status"] = status.value
        rows = self.db.find_all("invoices", keys, order_by="due_date")
        return [InvoiceRecord.from_row(r) for r in rows]

    def list_pending_without_charge(self, tenant_id: str, max_attempts: int) -> List[InvoiceRecord]:
        results = self.db.execute(
            """SELECT * FROM invoices
               WHERE tenant_id = ? AND status = 'pending' AND gateway_charge_id IS NULL
                 AND attempt_count < ?
               ORDER BY due_date ASC""",
            (tenant_id, max_attempts)
        )
        return [InvoiceRecord.from_row(r) for r in results]

    def mark_overdue(self, tenant_id: str, today: str) -> int:
        count = self.db.execute_rowcount(
            """UPDATE invoices SET status = 'overdue', updated_at = ?
               WHERE tenant_id = ? AND status = 'pending' AND due_date < ?""",
            (utc_now(), tenant_id, today)
        )
        if count:
            logger.info("invoices_marked_overdue", tenant_id=tenant_id, count=count)
        return count


class IntegrationLogRepository:
    """Append-only repository for integration log entries."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def append(self, entry: IntegrationLogRecord) -> IntegrationLogRecord:
        entry.id = self.db.insert("integration_logs", entry.to_row())
        return entry

    def list_for_tenant(
        self,
        tenant_id: str,
        service: Optional[str] = None,
        limit: int = 100,
    ) -> List[IntegrationLogRecord]:
        query = "SELECT * FROM integration_logs WHERE tenant_id = ?"
        params: tuple = (tenant_id,)
        if service:
            query += " AND service = ?"
            params += (service,)
        query += " ORDER BY created_at DESC LIMIT ?"
        params += (limit,)
        return [IntegrationLogRecord.from_row(r) for r in self.db.execute(query, params)]
