"""
Invoice Status Maintenance

Maps gateway charge states onto invoice states and moves unpaid invoices
past their due date to overdue. Paid and cancelled are final: a late or
out-of-order gateway report never moves an invoice out of them.
"""

from datetime import date, datetime, timezone
from typing import Any, Dict, Optional
import structlog

from ..core.integration_log import IntegrationLogSink
from ..persistence.database import Database, get_database
from ..persistence.models import InvoiceRecord, InvoiceStatus
from ..persistence.repository import IntegrationLogRepository, InvoiceRepository

logger = structlog.get_logger()

GATEWAY_STATUS_MAP = {
    "OPEN": InvoiceStatus.PENDING,
    "PENDING": InvoiceStatus.PENDING,
    "PAID": InvoiceStatus.PAID,
    "OVERDUE": InvoiceStatus.OVERDUE,
    "LATE": InvoiceStatus.OVERDUE,
    "EXPIRED": InvoiceStatus.OVERDUE,
    "CANCELLED": InvoiceStatus.CANCELLED,
    "CANCELED": InvoiceStatus.CANCELLED,
}

TERMINAL_STATUSES = (InvoiceStatus.PAID, InvoiceStatus.CANCELLED)


def map_gateway_status(value: Optional[str]) -> InvoiceStatus:
    """Gateway charge status to invoice status; unknown values read as pending."""
    return GATEWAY_STATUS_MAP.get(str(value or "").strip().upper(), InvoiceStatus.PENDING)


def resolve_status(invoice: InvoiceRecord, reported: Optional[str], today: date) -> InvoiceStatus:
    """
    Status the invoice should move to for a gateway report.

    Final states stay put. A still-unpaid invoice whose due date has passed
    is overdue whatever the gateway says.
    """
    if invoice.status in TERMINAL_STATUSES:
        return invoice.status
    new_status = map_gateway_status(reported)
    if new_status == InvoiceStatus.PENDING and invoice.due_date[:10] < today.isoformat():
        return InvoiceStatus.OVERDUE
    return new_status


class InvoiceStatusService:
    """Applies gateway status reports and overdue sweeps to stored invoices."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()
        self.invoices = InvoiceRepository(self.db)
        self.sink = IntegrationLogSink(IntegrationLogRepository(self.db))

    def apply_status(
        self,
        invoice: InvoiceRecord,
        reported: Optional[str],
        paid_at: Optional[str] = None,
        today: Optional[date] = None,
    ) -> bool:
        """Move one invoice to the status the gateway reports. Returns True if it changed."""
        today = today or datetime.now(timezone.utc).date()
        new_status = resolve_status(invoice, reported, today)
        if new_status == invoice.status:
            if invoice.status in TERMINAL_STATUSES and map_gateway_status(reported) != invoice.status:
                logger.info("invoice_final_status_kept", invoice_id=invoice.id, status=invoice.status.value,
                            reported=reported)
            return False

        if new_status == InvoiceStatus.PAID and not paid_at:
            paid_at = datetime.now(timezone.utc).isoformat()
        self.invoices.update_status(invoice.id, new_status, paid_at if new_status == InvoiceStatus.PAID else None)
        return True

    def apply_gateway_event(
        self,
        tenant_id: str,
        charge_id: str,
        status: str,
        paid_at: Optional[str] = None,
        today: Optional[date] = None,
    ) -> Optional[InvoiceRecord]:
        """
        Update the invoice that carries this gateway charge id.

        Returns the invoice as stored afterwards, or None when no invoice
        matches.
        """
        request = {"charge_id": charge_id, "status": status, "paid_at": paid_at}
        invoice = self.invoices.find_by_charge_id(tenant_id, charge_id)
        if invoice is None:
            logger.warning("gateway_event_unmatched", tenant_id=tenant_id, charge_id=charge_id)
            self.sink.error(tenant_id, "gateway", "webhook", request, "No invoice for charge id")
            return None

        changed = self.apply_status(invoice, status, paid_at, today)
        updated = self.invoices.get(invoice.id)
        response: Dict[str, Any] = {"invoice_id": invoice.id, "status": updated.status.value, "changed": changed}
        self.sink.success(tenant_id, "gateway", "webhook", request, response)
        return updated

    def mark_overdue(self, tenant_id: str, today: Optional[date] = None) -> int:
        """Pending invoices with due_date before today become overdue."""
        today = today or datetime.now(timezone.utc).date()
        return self.invoices.mark_overdue(tenant_id, today.isoformat())
