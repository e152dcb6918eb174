"""
Reconciliation of customers and vehicles against the telemetry provider.
"""

from .reconciliation import (
    FleetReconciliationJob,
    ReconciliationSummary,
    CustomerSyncResult,
    VehicleSyncResult,
)

__all__ = [
    "FleetReconciliationJob",
    "ReconciliationSummary",
    "CustomerSyncResult",
    "VehicleSyncResult",
]
