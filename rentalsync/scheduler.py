"""
Trigger Service

Entry point for timer, HTTP and CLI triggers. Validates the request, runs the
requested jobs for a tenant and folds their outcomes into one summary:

    {"processed": n, "inserted": n, "duplicates": n, "errors": n, "skipped": n}

Partial failures still answer 200; only an unexpected failure of the whole
run answers 500, with a generic message.

Every run gets its own cancel event. `cancel()` stops the runs in flight at
their next record boundary and has no effect on runs started afterwards.
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from threading import Event, Lock
from typing import Any, Dict, Optional
import structlog

from .billing.cycle import BillingCycleEngine
from .billing.gateway_sync import GatewayInvoiceSync
from .billing.status import InvoiceStatusService
from .config import Settings, get_settings
from .core.credentials import CredentialVault
from .core.errors import ConfigMissing, RentalSyncError, UnknownTenant
from .core.http import HTTPClient
from .core.integration_log import IntegrationLogSink
from .persistence.database import Database, get_database
from .persistence.repository import IntegrationLogRepository, SyncStateRepository, TenantRepository
from .sync.reconciliation import PHASES, FleetReconciliationJob, phase_job
from .telemetry.client import DEVICE_COMMANDS

logger = structlog.get_logger()

ACTIONS = ("reconcile", "bill", "both", "sync_invoices")
CONNECTION_SERVICES = ("telemetry", "gateway")
SUMMARY_KEYS = ("processed", "inserted", "duplicates", "errors", "skipped")
GENERIC_ERROR = "Internal error while processing trigger"


def empty_summary() -> Dict[str, int]:
    return {key: 0 for key in SUMMARY_KEYS}


def _merge(summary: Dict[str, int], totals: Dict[str, int]) -> None:
    for key in SUMMARY_KEYS:
        summary[key] += totals.get(key, 0)


@dataclass
class TriggerResult:
    status_code: int
    summary: Dict[str, int] = field(default_factory=empty_summary)
    error: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = dict(self.summary)
        if self.error:
            data["error"] = self.error
        return data


@dataclass
class OperationResult:
    """Outcome of a single operator action against a provider."""
    status_code: int
    body: Dict[str, Any] = field(default_factory=dict)


class TriggerService:
    """
    Runs reconciliation, billing and the gateway status poll for tenants.

    Usage:
        service = TriggerService()
        result = service.run("tenant-1", "both")
        result.status_code, result.summary
    """

    def __init__(
        self,
        db: Optional[Database] = None,
        settings: Optional[Settings] = None,
        http: Optional[HTTPClient] = None,
        vault: Optional[CredentialVault] = None,
    ):
        self.db = db or get_database()
        self.settings = settings or get_settings()
        vault = vault or CredentialVault(self.settings.key_master_secret)
        self.tenants = TenantRepository(self.db)
        self.sync_state = SyncStateRepository(self.db)
        self.sink = IntegrationLogSink(IntegrationLogRepository(self.db))
        self.reconciler = FleetReconciliationJob(self.db, self.settings, vault=vault, http=http)
        self.billing = BillingCycleEngine(self.db, self.settings, vault=vault, http=http)
        self.invoice_sync = GatewayInvoiceSync(self.db, self.settings, engine=self.billing)
        self.status = InvoiceStatusService(self.db)
        self._running: Dict[Event, str] = {}
        self._lock = Lock()

    def cancel(self, tenant_id: Optional[str] = None) -> int:
        """
        Ask runs in flight to stop at the next record boundary.

        Only runs already started are affected, all of them or those of one
        tenant. Returns how many were signalled.
        """
        with self._lock:
            targets = [e for e, t in self._running.items() if tenant_id is None or t == tenant_id]
        for event in targets:
            event.set()
        if targets:
            logger.warning("trigger_cancel_requested", tenant_id=tenant_id, runs=len(targets))
        return len(targets)

    def run(self, tenant_id: Optional[str], action: str = "both", force: bool = False,
            today: Optional[date] = None, cancel: Optional[Event] = None) -> TriggerResult:
        if not tenant_id or not str(tenant_id).strip():
            return TriggerResult(status_code=400, error="tenant_id is required")
        if action not in ACTIONS:
            return TriggerResult(status_code=400, error=f"action must be one of: {', '.join(ACTIONS)}")

        cancel = cancel or Event()
        with self._lock:
            self._running[cancel] = tenant_id
        try:
            self._require_tenant(tenant_id)

            result = TriggerResult(status_code=200)
            if action in ("reconcile", "both"):
                self._reconcile(tenant_id, force, result, cancel)
            if action in ("bill", "both"):
                self._bill(tenant_id, result, today)
            if action == "sync_invoices":
                self._sync_invoices(tenant_id, result, today)
        except UnknownTenant as e:
            logger.warning("trigger_unknown_tenant", tenant_id=tenant_id)
            return TriggerResult(status_code=e.status_code, error="Unknown tenant")
        except Exception as e:
            logger.error("trigger_failed", tenant_id=tenant_id, action=action, error=str(e))
            return TriggerResult(status_code=500, error=GENERIC_ERROR)
        finally:
            with self._lock:
                self._running.pop(cancel, None)

        logger.info("trigger_completed", tenant_id=tenant_id, action=action, **result.summary)
        return result

    def _require_tenant(self, tenant_id: str) -> None:
        if self.tenants.get(tenant_id) is None:
            raise UnknownTenant(f"Unknown tenant: {tenant_id}", status_code=404)

    def _recently_synced(self, tenant_id: str, phase: str) -> bool:
        last = self.sync_state.last_synced_at(tenant_id, phase_job(phase))
        if last is None:
            return False
        if last.tzinfo is None:
            last = last.replace(tzinfo=timezone.utc)
        window = timedelta(minutes=self.settings.sync_min_interval_minutes)
        return datetime.now(timezone.utc) - last < window

    def _reconcile(self, tenant_id: str, force: bool, result: TriggerResult, cancel: Event) -> None:
        due = [p for p in PHASES if force or not self._recently_synced(tenant_id, p)]
        if not due:
            result.summary["skipped"] += 1
            logger.info("reconciliation_skipped_recent", tenant_id=tenant_id)
            return
        scope = "both" if len(due) == len(PHASES) else due[0]
        try:
            summary = self.reconciler.reconcile_tenant(tenant_id, scope=scope, cancel=cancel)
        except ConfigMissing as e:
            result.summary["skipped"] += 1
            logger.warning("reconciliation_config_missing", tenant_id=tenant_id, error=e.message)
            self.sink.error(tenant_id, "system", "reconcile", None, e.message)
            return
        _merge(result.summary, summary.totals())
        result.details["reconcile"] = summary.to_dict()

    def _bill(self, tenant_id: str, result: TriggerResult, today: Optional[date]) -> None:
        try:
            summary = self.billing.run_billing_cycle(tenant_id, today=today)
        except ConfigMissing as e:
            result.summary["skipped"] += 1
            logger.warning("billing_config_missing", tenant_id=tenant_id, error=e.message)
            self.sink.error(tenant_id, "system", "bill", None, e.message)
            return
        _merge(result.summary, summary.totals())
        result.details["bill"] = summary.to_dict()
        result.details["overdue"] = self.status.mark_overdue(tenant_id, today)

    def _sync_invoices(self, tenant_id: str, result: TriggerResult, today: Optional[date]) -> None:
        try:
            summary = self.invoice_sync.sync_tenant(tenant_id, today=today)
        except ConfigMissing as e:
            result.summary["skipped"] += 1
            logger.warning("invoice_sync_config_missing", tenant_id=tenant_id, error=e.message)
            self.sink.error(tenant_id, "system", "sync_invoices", None, e.message)
            return
        _merge(result.summary, summary.totals())
        result.details["sync_invoices"] = summary.to_dict()

    def run_all(self, action: str = "both", force: bool = False) -> Dict[str, TriggerResult]:
        """Run every active tenant through a bounded worker pool."""
        tenants = self.tenants.list_active()
        logger.info("trigger_all_started", tenants=len(tenants), action=action)
        with ThreadPoolExecutor(max_workers=max(1, self.settings.max_workers)) as pool:
            futures = {t.id: pool.submit(self.run, t.id, action, force) for t in tenants}
            return {tenant_id: future.result() for tenant_id, future in futures.items()}

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    def test_connection(self, tenant_id: str, service: str) -> OperationResult:
        """Check a tenant's credentials against the telemetry provider or the gateway."""
        if service not in CONNECTION_SERVICES:
            return OperationResult(400, {"error": f"service must be one of: {', '.join(CONNECTION_SERVICES)}"})
        return self._operate(tenant_id, "test_connection", lambda: self._test_connection(tenant_id, service))

    def _test_connection(self, tenant_id: str, service: str) -> Dict[str, Any]:
        if service == "gateway":
            return self.invoice_sync.test_connection(tenant_id)
        return self.reconciler.client_for(tenant_id).test_connection()

    def send_command(self, tenant_id: str, device_id: str, command: str) -> OperationResult:
        """Block or unblock a tracked vehicle through the telemetry provider."""
        def send() -> Dict[str, Any]:
            if command not in DEVICE_COMMANDS:
                raise ValueError(f"command must be one of: {', '.join(DEVICE_COMMANDS)}")
            client = self.reconciler.client_for(tenant_id)
            return client.send_command(client.login(), device_id, command)

        return self._operate(tenant_id, "send_command", send)

    def _operate(self, tenant_id: str, operation: str, call) -> OperationResult:
        try:
            self._require_tenant(tenant_id)
            body = call()
        except UnknownTenant as e:
            return OperationResult(e.status_code, {"error": "Unknown tenant"})
        except ValueError as e:
            return OperationResult(400, {"error": str(e)})
        except ConfigMissing as e:
            self.sink.error(tenant_id, "system", operation, None, e.message)
            return OperationResult(400, {"success": False, "error": e.message})
        except RentalSyncError as e:
            logger.warning("operator_action_failed", tenant_id=tenant_id, operation=operation, error=e.message)
            return OperationResult(502, {"success": False, "error": e.message})
        except Exception as e:
            logger.error("operator_action_crashed", tenant_id=tenant_id, operation=operation, error=str(e))
            return OperationResult(500, {"error": GENERIC_ERROR})
        return OperationResult(200, body)
