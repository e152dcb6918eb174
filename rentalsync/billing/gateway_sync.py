"""
Gateway Invoice Status Poll

Pulls the invoices the payment gateway holds for a tenant and applies their
status to the local invoices carrying the same charge id. This is the
scheduled counterpart of the gateway webhook: a missed push is picked up on
the next poll.

Gateway invoices with no local counterpart are counted and left alone;
invoices only ever originate from the billing cycle.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
import structlog

from ..config import Settings, get_settings
from ..core.credentials import CredentialVault
from ..core.errors import AuthError, RentalSyncError
from ..core.http import HTTPClient
from ..persistence.database import Database, get_database
from .cycle import SERVICE, BillingCycleEngine, GatewaySession
from .status import InvoiceStatusService

logger = structlog.get_logger()

DEFAULT_WINDOW_DAYS = 30
PER_PAGE = 100
MAX_PAGES = 20


@dataclass
class InvoiceSyncSummary:
    tenant_id: str
    fetched: int = 0
    updated: int = 0
    unchanged: int = 0
    unmatched: int = 0
    failed: int = 0
    error: Optional[str] = None

    def totals(self) -> Dict[str, int]:
        return {
            "processed": self.fetched,
            "inserted": 0,
            "duplicates": self.updated + self.unchanged,
            "errors": self.failed + int(self.error is not None),
            "skipped": self.unmatched,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "fetched": self.fetched,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "unmatched": self.unmatched,
            "failed": self.failed,
            "error": self.error,
        }


class GatewayInvoiceSync:
    """
    Polls gateway invoice status and checks gateway connectivity.

    Usage:
        poller = GatewayInvoiceSync()
        summary = poller.sync_tenant("tenant-1")
        summary.updated, summary.unmatched
    """

    def __init__(
        self,
        db: Optional[Database] = None,
        settings: Optional[Settings] = None,
        vault: Optional[CredentialVault] = None,
        http: Optional[HTTPClient] = None,
        engine: Optional[BillingCycleEngine] = None,
    ):
        self.db = db or get_database()
        self.settings = settings or get_settings()
        self.engine = engine or BillingCycleEngine(self.db, self.settings, vault=vault, http=http)
        self.status = InvoiceStatusService(self.db)

    def test_connection(self, tenant_id: str) -> Dict[str, Any]:
        """
        Validate the tenant's certificate and fetch a fresh token.

        Raises:
            ConfigMissing: gateway config incomplete
            AuthError, ProviderUnavailable, MalformedResponse: token failure
        """
        session = self.engine.open_session(tenant_id)
        self.engine.access_token(session)
        logger.info("gateway_connection_ok", tenant_id=tenant_id)
        return {"success": True, "base_url": session.config.auth_base_url}

    def sync_tenant(
        self,
        tenant_id: str,
        days: int = DEFAULT_WINDOW_DAYS,
        today: Optional[date] = None,
    ) -> InvoiceSyncSummary:
        """
        Apply gateway status to local invoices due in the last `days` days.

        Raises:
            ConfigMissing: gateway config incomplete
        """
        today = today or datetime.now(timezone.utc).date()
        session = self.engine.open_session(tenant_id)
        summary = InvoiceSyncSummary(tenant_id=tenant_id)
        start = (today - timedelta(days=days)).isoformat()

        try:
            items = self._fetch_all(session, start, today.isoformat())
        except RentalSyncError as e:
            summary.error = e.message
            logger.error("gateway_invoice_fetch_failed", tenant_id=tenant_id, error=e.message)
            return summary

        for item in items:
            summary.fetched += 1
            try:
                self._apply(tenant_id, item, summary, today)
            except Exception as e:
                summary.failed += 1
                logger.error("gateway_invoice_apply_failed", tenant_id=tenant_id, charge_id=item.get("id"),
                             error=str(e))

        logger.info("gateway_invoice_sync_completed", **summary.to_dict())
        return summary

    def _apply(self, tenant_id: str, item: Dict[str, Any], summary: InvoiceSyncSummary, today: date) -> None:
        charge_id = str(item.get("id") or "")
        invoice = self.status.invoices.find_by_charge_id(tenant_id, charge_id) if charge_id else None
        if invoice is None:
            summary.unmatched += 1
            return
        if self.status.apply_status(invoice, item.get("status"), item.get("paid_at"), today):
            summary.updated += 1
        else:
            summary.unchanged += 1

    def _fetch_all(self, session: GatewaySession, start: str, end: str) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        for page in range(1, MAX_PAGES + 1):
            batch = self._fetch_page(session, start, end, page)
            items.extend(batch)
            if len(batch) < PER_PAGE:
                break
        return items

    def _fetch_page(self, session: GatewaySession, start: str, end: str, page: int) -> List[Dict[str, Any]]:
        """One listing call, refreshing the token once on 401/403. Each call is logged."""
        request = {"start": start, "end": end, "page": page, "perPage": PER_PAGE}
        for refreshed in (False, True):
            token = self.engine.access_token(session)
            try:
                batch = session.charges.list_invoices(
                    token, session.config.certificate, start=start, end=end, page=page, per_page=PER_PAGE
                )
            except AuthError as e:
                self.engine.sink.error(session.tenant_id, SERVICE, "list_invoices", request, e.message)
                if refreshed:
                    raise
                session.tokens.invalidate()
                continue
            except RentalSyncError as e:
                self.engine.sink.error(session.tenant_id, SERVICE, "list_invoices", request, e.message)
                raise
            self.engine.sink.success(session.tenant_id, SERVICE, "list_invoices", request, {"count": len(batch)})
            return batch
        return []
