"""
Fleet Reconciliation Job

Brings a tenant's customers and vehicles in line with the telemetry provider.

Customers are insert-if-absent on (tenant_id, external_id): the first import
wins and later syncs never touch the row. Vehicles are upserted on
(tenant_id, plate) so position and status stay current. Both collections are
safe to re-run: the unique constraints in the store are the real guard, the
existence lookups only save a round trip.

Each sub-phase keeps its own last-synced stamp, written only when its listing
was fetched and walked to the end. A failed fetch or a cancelled run leaves
the previous stamp in place so the next trigger retries it.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Event
from typing import Any, Dict, Optional
import structlog

from ..config import Settings, get_settings
from ..core.credentials import CredentialVault
from ..core.errors import RentalSyncError, StoreConflict
from ..core.http import HTTPClient
from ..core.integration_log import IntegrationLogSink
from ..persistence.database import Database, get_database
from ..persistence.models import CustomerRecord, VehicleRecord
from ..persistence.repository import (
    CustomerRepository,
    IntegrationLogRepository,
    SyncStateRepository,
    TenantConfigRepository,
    VehicleRepository,
)
from ..telemetry.client import TelemetryClient, TelemetrySession
from ..telemetry.fields import ProviderVehicle, apply_position, parse_customer, parse_vehicle

logger = structlog.get_logger()

JOB_NAME = "reconcile"
PHASES = ("customers", "vehicles")
SCOPES = PHASES + ("both",)


def phase_job(phase: str) -> str:
    """Sync state key for one sub-phase, e.g. `reconcile:customers`."""
    return f"{JOB_NAME}:{phase}"


def phases_for(scope: str) -> tuple:
    return PHASES if scope == "both" else (scope,)


@dataclass
class CustomerSyncResult:
    seen: int = 0
    inserted: int = 0
    duplicates: int = 0
    skipped: int = 0
    failed: int = 0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "seen": self.seen,
            "inserted": self.inserted,
            "duplicates": self.duplicates,
            "skipped": self.skipped,
            "failed": self.failed,
            "error": self.error,
        }


@dataclass
class VehicleSyncResult:
    seen: int = 0
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "seen": self.seen,
            "inserted": self.inserted,
            "updated": self.updated,
            "skipped": self.skipped,
            "failed": self.failed,
            "error": self.error,
        }


@dataclass
class ReconciliationSummary:
    tenant_id: str
    customers: CustomerSyncResult = field(default_factory=CustomerSyncResult)
    vehicles: VehicleSyncResult = field(default_factory=VehicleSyncResult)
    cancelled: bool = False

    def totals(self) -> Dict[str, int]:
        """Collapse both sub-phases into the trigger summary shape."""
        phase_errors = int(self.customers.error is not None) + int(self.vehicles.error is not None)
        return {
            "processed": self.customers.seen + self.vehicles.seen,
            "inserted": self.customers.inserted + self.vehicles.inserted,
            "duplicates": self.customers.duplicates + self.vehicles.updated,
            "errors": self.customers.failed + self.vehicles.failed + phase_errors,
            "skipped": self.customers.skipped + self.vehicles.skipped,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "customers": self.customers.to_dict(),
            "vehicles": self.vehicles.to_dict(),
            "cancelled": self.cancelled,
        }


def _cancelled(cancel: Optional[Event]) -> bool:
    return cancel is not None and cancel.is_set()


class FleetReconciliationJob:
    """
    Per-tenant reconciliation against the telemetry provider.

    Usage:
        job = FleetReconciliationJob()
        summary = job.reconcile_tenant("tenant-1")
        summary.customers.inserted, summary.vehicles.updated
    """

    def __init__(
        self,
        db: Optional[Database] = None,
        settings: Optional[Settings] = None,
        vault: Optional[CredentialVault] = None,
        http: Optional[HTTPClient] = None,
    ):
        self.db = db or get_database()
        self.settings = settings or get_settings()
        self.http = http or HTTPClient(
            total_retries=self.settings.http_retries,
            default_timeout=self.settings.http_timeout_seconds,
        )
        self.configs = TenantConfigRepository(self.db, vault or CredentialVault(self.settings.key_master_secret))
        self.customers = CustomerRepository(self.db)
        self.vehicles = VehicleRepository(self.db)
        self.sync_state = SyncStateRepository(self.db)
        self.sink = IntegrationLogSink(IntegrationLogRepository(self.db))

    def client_for(self, tenant_id: str) -> TelemetryClient:
        return TelemetryClient.for_tenant(
            tenant_id, self.configs.get(tenant_id, "telemetry"), self.settings, self.sink, http=self.http
        )

    def reconcile_tenant(
        self,
        tenant_id: str,
        scope: str = "both",
        cancel: Optional[Event] = None,
    ) -> ReconciliationSummary:
        """
        Run customer and/or vehicle reconciliation for one tenant.

        Raises:
            ConfigMissing: the tenant has no telemetry credentials
            ValueError: unknown scope
        """
        if scope not in SCOPES:
            raise ValueError(f"Unknown scope: {scope}")

        summary = ReconciliationSummary(tenant_id=tenant_id)
        client = self.client_for(tenant_id)

        try:
            session = client.login()
        except RentalSyncError as e:
            logger.error("telemetry_login_failed", tenant_id=tenant_id, error=e.message)
            if scope in ("customers", "both"):
                summary.customers.error = e.message
            if scope in ("vehicles", "both"):
                summary.vehicles.error = e.message
            return summary

        if scope in ("customers", "both"):
            if self._sync_customers(tenant_id, client, session, summary, cancel):
                self.sync_state.mark_synced(tenant_id, phase_job("customers"))

        if scope in ("vehicles", "both") and not summary.cancelled:
            if self._sync_vehicles(tenant_id, client, session, summary, cancel):
                self.sync_state.mark_synced(tenant_id, phase_job("vehicles"))

        logger.info("reconciliation_completed", tenant_id=tenant_id, cancelled=summary.cancelled,
                    **summary.totals())
        return summary

    def last_synced_at(self, tenant_id: str, phase: str) -> Optional[datetime]:
        return self.sync_state.last_synced_at(tenant_id, phase_job(phase))

    # ------------------------------------------------------------------
    # Customers: insert-if-absent
    # ------------------------------------------------------------------

    def _sync_customers(
        self,
        tenant_id: str,
        client: TelemetryClient,
        session: TelemetrySession,
        summary: ReconciliationSummary,
        cancel: Optional[Event],
    ) -> bool:
        """Returns True when the listing was fetched and fully walked."""
        result = summary.customers
        try:
            records = client.list_customers(session)
        except RentalSyncError as e:
            result.error = e.message
            logger.error("customer_fetch_failed", tenant_id=tenant_id, error=e.message)
            return False

        for raw in records:
            if _cancelled(cancel):
                summary.cancelled = True
                logger.warning("reconciliation_cancelled", tenant_id=tenant_id, phase="customers")
                return False
            result.seen += 1
            try:
                self._import_customer(tenant_id, raw, result)
            except Exception as e:
                result.failed += 1
                logger.error("customer_import_failed", tenant_id=tenant_id, error=str(e))
        return True

    def _import_customer(self, tenant_id: str, raw: Dict[str, Any], result: CustomerSyncResult) -> None:
        parsed = parse_customer(raw)
        if not parsed.external_id:
            result.skipped += 1
            logger.warning("customer_skipped_missing_id", tenant_id=tenant_id, name=parsed.name)
            return

        if self.customers.find_by_external_id(tenant_id, parsed.external_id):
            result.duplicates += 1
            return

        record = CustomerRecord(
            tenant_id=tenant_id,
            external_id=parsed.external_id,
            name=parsed.name,
            tax_id=parsed.tax_id,
            email=parsed.email,
            phone=parsed.phone,
            street=parsed.street,
            number=parsed.number,
            city=parsed.city,
            state=parsed.state,
            zip_code=parsed.zip_code,
            kind=parsed.kind,
        )
        try:
            self.customers.insert(record)
        except StoreConflict:
            # A concurrent run inserted it between lookup and insert
            result.duplicates += 1
            return
        result.inserted += 1
        logger.info("customer_inserted", tenant_id=tenant_id, external_id=parsed.external_id)

    # ------------------------------------------------------------------
    # Vehicles: upsert on plate
    # ------------------------------------------------------------------

    def _sync_vehicles(
        self,
        tenant_id: str,
        client: TelemetryClient,
        session: TelemetrySession,
        summary: ReconciliationSummary,
        cancel: Optional[Event],
    ) -> bool:
        result = summary.vehicles
        try:
            records = client.list_vehicles(session)
        except RentalSyncError as e:
            result.error = e.message
            logger.error("vehicle_fetch_failed", tenant_id=tenant_id, error=e.message)
            return False

        for raw in records:
            if _cancelled(cancel):
                summary.cancelled = True
                logger.warning("reconciliation_cancelled", tenant_id=tenant_id, phase="vehicles")
                return False
            result.seen += 1
            try:
                self._upsert_vehicle(tenant_id, client, session, raw, result)
            except Exception as e:
                result.failed += 1
                logger.error("vehicle_upsert_failed", tenant_id=tenant_id, error=str(e))
        return True

    def _upsert_vehicle(
        self,
        tenant_id: str,
        client: TelemetryClient,
        session: TelemetrySession,
        raw: Dict[str, Any],
        result: VehicleSyncResult,
    ) -> None:
        parsed = parse_vehicle(raw)
        if not parsed.plate:
            result.skipped += 1
            logger.warning("vehicle_skipped_missing_plate", tenant_id=tenant_id,
                           provider_vehicle_id=parsed.provider_vehicle_id)
            return

        if client.config.fetch_positions and not parsed.has_position and parsed.provider_vehicle_id:
            try:
                apply_position(parsed, client.get_vehicle(session, parsed.provider_vehicle_id))
            except RentalSyncError as e:
                logger.warning("vehicle_position_unavailable", tenant_id=tenant_id,
                               plate=parsed.plate, error=e.message)

        existing = self.vehicles.find_by_plate(tenant_id, parsed.plate)
        if existing is None:
            try:
                self.vehicles.insert(self._new_vehicle(tenant_id, parsed))
                result.inserted += 1
                logger.info("vehicle_inserted", tenant_id=tenant_id, plate=parsed.plate)
                return
            except StoreConflict:
                existing = self.vehicles.find_by_plate(tenant_id, parsed.plate)
                if existing is None:
                    raise

        self.vehicles.update(existing.id, self._vehicle_patch(parsed))
        result.updated += 1

    def _new_vehicle(self, tenant_id: str, parsed: ProviderVehicle) -> VehicleRecord:
        return VehicleRecord(
            tenant_id=tenant_id,
            plate=parsed.plate,
            brand=parsed.brand,
            model=parsed.model,
            status=parsed.status,
            odometer=parsed.odometer,
            tracker_imei=parsed.tracker_imei,
            tracker_model=parsed.tracker_model,
            chip_number=parsed.chip_number,
            provider_vehicle_id=parsed.provider_vehicle_id,
            latitude=parsed.latitude,
            longitude=parsed.longitude,
            address=parsed.address,
            speed=parsed.speed,
            online=parsed.online,
            signal_bars=parsed.signal_bars,
            battery=parsed.battery,
            last_seen_at=parsed.last_seen_at or datetime.now(timezone.utc).isoformat(),
        )

    def _vehicle_patch(self, parsed: ProviderVehicle) -> Dict[str, Any]:
        """Mutable fields only; brand, model and plate stay as first imported."""
        patch: Dict[str, Any] = {
            "status": parsed.status.value,
            "odometer": parsed.odometer,
            "online": parsed.online,
            "signal_bars": parsed.signal_bars,
            "last_seen_at": parsed.last_seen_at or datetime.now(timezone.utc).isoformat(),
        }
        if parsed.has_position:
            patch["latitude"] = parsed.latitude
            patch["longitude"] = parsed.longitude
        if parsed.address:
            patch["address"] = parsed.address
        if parsed.speed is not None:
            patch["speed"] = parsed.speed
        if parsed.battery is not None:
            patch["battery"] = parsed.battery
        for name in ("tracker_imei", "tracker_model", "chip_number", "provider_vehicle_id"):
            value = getattr(parsed, name)
            if value:
                patch[name] = value
        return patch
