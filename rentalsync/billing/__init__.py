"""
Recurring billing: the cycle engine and invoice status maintenance.
"""

from .cycle import BillingCycleEngine, BillingSummary, RetrySummary, GatewayConfig, invoice_number_for
from .status import InvoiceStatusService, map_gateway_status
from .gateway_sync import GatewayInvoiceSync, InvoiceSyncSummary

__all__ = [
    "GatewayInvoiceSync",
    "InvoiceSyncSummary",
    "BillingCycleEngine",
    "BillingSummary",
    "RetrySummary",
    "GatewayConfig",
    "invoice_number_for",
    "InvoiceStatusService",
    "map_gateway_status",
]
