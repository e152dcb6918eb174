"""
Persistence Layer for RentalSync

Supports SQLite (dev) and PostgreSQL (production).
"""

from .database import Database, get_database
from .models import (
    TenantRecord,
    CustomerRecord,
    VehicleRecord,
    ContractRecord,
    InvoiceRecord,
    IntegrationLogRecord,
    CustomerKind,
    VehicleStatus,
    ContractStatus,
    InvoiceStatus,
    BillingKind,
)
from .repository import (
    TenantRepository,
    TenantConfigRepository,
    SyncStateRepository,
    CustomerRepository,
    VehicleRepository,
    ContractRepository,
    InvoiceRepository,
    IntegrationLogRepository,
)

__all__ = [
    "Database",
    "get_database",
    "TenantRecord",
    "CustomerRecord",
    "VehicleRecord",
    "ContractRecord",
    "InvoiceRecord",
    "IntegrationLogRecord",
    "CustomerKind",
    "VehicleStatus",
    "ContractStatus",
    "InvoiceStatus",
    "BillingKind",
    "TenantRepository",
    "TenantConfigRepository",
    "SyncStateRepository",
    "CustomerRepository",
    "VehicleRepository",
    "ContractRepository",
    "InvoiceRepository",
    "IntegrationLogRepository",
]
