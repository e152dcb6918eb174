"""
Data Models for Persistence Layer

Typed records for the rows the engine reads and writes. `to_row()` produces
the column mapping handed to Database.insert; `from_row()` accepts rows from
either backend (SQLite returns text and integers, PostgreSQL returns dates,
decimals, booleans and decoded JSONB).
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
import json


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def iso(value: Any) -> Optional[str]:
    """Normalise date/datetime values from either backend to ISO strings."""
    if value is None:
        return None
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def _json_value(value: Any) -> Any:
    if isinstance(value, str) and value:
        return json.loads(value)
    return value


class CustomerKind(Enum):
    INDIVIDUAL = "individual"
    ORGANIZATION = "organization"


class VehicleStatus(Enum):
    AVAILABLE = "available"
    UNAVAILABLE = "unavailable"


class ContractStatus(Enum):
    ACTIVE = "active"
    ENDED = "ended"
    SUSPENDED = "suspended"


class InvoiceStatus(Enum):
    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


class BillingKind(Enum):
    RECURRING = "recurring"
    ONE_OFF = "one_off"


@dataclass
class TenantRecord:
    """Operator account; unit of data isolation."""
    id: str
    name: str
    active: bool = True
    created_at: str = field(default_factory=utc_now)

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "active": self.active,
            "created_at": self.created_at,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "TenantRecord":
        return cls(
            id=row["id"],
            name=row["name"],
            active=bool(row.get("active", True)),
            created_at=iso(row["created_at"]),
        )


@dataclass
class CustomerRecord:
    """Customer imported from the telemetry provider."""
    tenant_id: str
    external_id: str
    name: str
    email: str
    phone: str
    street: str
    number: str
    city: str
    state: str
    zip_code: str
    kind: CustomerKind = CustomerKind.INDIVIDUAL
    tax_id: Optional[str] = None
    status: str = "active"
    source: str = "telemetry"
    created_at: str = field(default_factory=utc_now)
    id: Optional[str] = None

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "external_id": self.external_id,
            "name": self.name,
            "tax_id": self.tax_id,
            "email": self.email,
            "phone": self.phone,
            "street": self.street,
            "number": self.number,
            "city": self.city,
            "state": self.state,
            "zip_code": self.zip_code,
            "kind": self.kind.value,
            "status": self.status,
            "source": self.source,
            "created_at": self.created_at,
        }

    def to_dict(self) -> Dict[str, Any]:
        return self.to_row()

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "CustomerRecord":
        return cls(
            id=row["id"],
            tenant_id=row["tenant_id"],
            external_id=row["external_id"],
            name=row["name"],
            tax_id=row.get("tax_id"),
            email=row["email"],
            phone=row["phone"],
            street=row["street"],
            number=row["number"],
            city=row["city"],
            state=row["state"],
            zip_code=row["zip_code"],
            kind=CustomerKind(row["kind"]),
            status=row.get("status", "active"),
            source=row.get("source", "telemetry"),
            created_at=iso(row["created_at"]),
        )


@dataclass
class VehicleRecord:
    """Vehicle and its tracker as last reported by the telemetry provider."""
    tenant_id: str
    plate: str
    brand: str
    model: str
    status: VehicleStatus = VehicleStatus.UNAVAILABLE
    odometer: int = 0
    tracker_imei: Optional[str] = None
    tracker_model: Optional[str] = None
    chip_number: Optional[str] = None
    provider_vehicle_id: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    address: Optional[str] = None
    speed: Optional[float] = None
    online: bool = False
    signal_bars: int = 0
    battery: Optional[float] = None
    last_seen_at: Optional[str] = None
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)
    id: Optional[str] = None

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "plate": self.plate,
            "brand": self.brand,
            "model": self.model,
            "tracker_imei": self.tracker_imei,
            "tracker_model": self.tracker_model,
            "chip_number": self.chip_number,
            "provider_vehicle_id": self.provider_vehicle_id,
            "status": self.status.value,
            "odometer": self.odometer,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "address": self.address,
            "speed": self.speed,
            "online": self.online,
            "signal_bars": self.signal_bars,
            "battery": self.battery,
            "last_seen_at": self.last_seen_at,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    def to_dict(self) -> Dict[str, Any]:
        return self.to_row()

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "VehicleRecord":
        return cls(
            id=row["id"],
            tenant_id=row["tenant_id"],
            plate=row["plate"],
            brand=row["brand"],
            model=row["model"],
            tracker_imei=row.get("tracker_imei"),
            tracker_model=row.get("tracker_model"),
            chip_number=row.get("chip_number"),
            provider_vehicle_id=row.get("provider_vehicle_id"),
            status=VehicleStatus(row["status"]),
            odometer=int(row.get("odometer") or 0),
            latitude=row.get("latitude"),
            longitude=row.get("longitude"),
            address=row.get("address"),
            speed=row.get("speed"),
            online=bool(row.get("online")),
            signal_bars=int(row.get("signal_bars") or 0),
            battery=row.get("battery"),
            last_seen_at=iso(row.get("last_seen_at")),
            created_at=iso(row["created_at"]),
            updated_at=iso(row["updated_at"]),
        )


@dataclass
class ContractRecord:
    """
    Recurring rental contract.

    The payer_* fields are not columns: they are joined from the customer row
    when contracts are selected for billing.
    """
    id: str
    tenant_id: str
    monthly_amount: Decimal
    next_billing_date: str
    customer_id: Optional[str] = None
    description: Optional[str] = None
    last_invoice_at: Optional[str] = None
    status: ContractStatus = ContractStatus.ACTIVE
    recurring: bool = True
    created_at: str = field(default_factory=utc_now)
    payer_name: Optional[str] = None
    payer_email: Optional[str] = None
    payer_tax_id: Optional[str] = None

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "customer_id": self.customer_id,
            "description": self.description,
            "monthly_amount": float(self.monthly_amount),
            "next_billing_date": self.next_billing_date,
            "last_invoice_at": self.last_invoice_at,
            "status": self.status.value,
            "recurring": self.recurring,
            "created_at": self.created_at,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ContractRecord":
        return cls(
            id=row["id"],
            tenant_id=row["tenant_id"],
            customer_id=row.get("customer_id"),
            description=row.get("description"),
            monthly_amount=Decimal(str(row["monthly_amount"])),
            next_billing_date=iso(row["next_billing_date"]),
            last_invoice_at=iso(row.get("last_invoice_at")),
            status=ContractStatus(row.get("status", "active")),
            recurring=bool(row.get("recurring", True)),
            created_at=iso(row["created_at"]),
            payer_name=row.get("payer_name"),
            payer_email=row.get("payer_email"),
            payer_tax_id=row.get("payer_tax_id"),
        )


@dataclass
class InvoiceRecord:
    """A billing event for one contract cycle (or a one-off charge)."""
    tenant_id: str
    invoice_number: str
    amount: Decimal
    due_date: str
    contract_id: Optional[str] = None
    customer_id: Optional[str] = None
    description: Optional[str] = None
    status: InvoiceStatus = InvoiceStatus.PENDING
    gateway_charge_id: Optional[str] = None
    barcode: Optional[str] = None
    pix_payload: Optional[str] = None
    payment_url: Optional[str] = None
    payment_methods: List[str] = field(default_factory=list)
    billing_kind: BillingKind = BillingKind.RECURRING
    attempt_count: int = 0
    last_error: Optional[str] = None
    paid_at: Optional[str] = None
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)
    id: Optional[str] = None

    @property
    def has_charge(self) -> bool:
        return bool(self.gateway_charge_id)

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "contract_id": self.contract_id,
            "customer_id": self.customer_id,
            "invoice_number": self.invoice_number,
            "description": self.description,
            "amount": float(self.amount),
            "due_date": self.due_date,
            "status": self.status.value,
            "gateway_charge_id": self.gateway_charge_id,
            "barcode": self.barcode,
            "pix_payload": self.pix_payload,
            "payment_url": self.payment_url,
            "payment_methods": ",".join(self.payment_methods),
            "billing_kind": self.billing_kind.value,
            "attempt_count": self.attempt_count,
            "last_error": self.last_error,
            "paid_at": self.paid_at,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    def to_dict(self) -> Dict[str, Any]:
        data = self.to_row()
        data["amount"] = str(self.amount)
        data["payment_methods"] = list(self.payment_methods)
        return data

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "InvoiceRecord":
        methods = row.get("payment_methods") or ""
        return cls(
            id=row["id"],
            tenant_id=row["tenant_id"],
            contract_id=row.get("contract_id"),
            customer_id=row.get("customer_id"),
            invoice_number=row["invoice_number"],
            description=row.get("description"),
            amount=Decimal(str(row["amount"])),
            due_date=iso(row["due_date"]),
            status=InvoiceStatus(row.get("status", "pending")),
            gateway_charge_id=row.get("gateway_charge_id"),
            barcode=row.get("barcode"),
            pix_payload=row.get("pix_payload"),
            payment_url=row.get("payment_url"),
            payment_methods=[m for m in methods.split(",") if m],
            billing_kind=BillingKind(row.get("billing_kind", "recurring")),
            attempt_count=int(row.get("attempt_count") or 0),
            last_error=row.get("last_error"),
            paid_at=iso(row.get("paid_at")),
            created_at=iso(row["created_at"]),
            updated_at=iso(row["updated_at"]),
        )


@dataclass
class IntegrationLogRecord:
    """One external call, as recorded by the integration log sink."""
    tenant_id: str
    service: str
    operation: str
    status: str
    request: Optional[Any] = None
    response: Optional[Any] = None
    error_message: Optional[str] = None
    created_at: str = field(default_factory=utc_now)
    id: Optional[str] = None

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "service": self.service,
            "operation": self.operation,
            "request_data": json.dumps(self.request, default=str) if self.request is not None else None,
            "response_data": json.dumps(self.response, default=str) if self.response is not None else None,
            "status": self.status,
            "error_message": self.error_message,
            "created_at": self.created_at,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "service": self.service,
            "operation": self.operation,
            "request": self.request,
            "response": self.response,
            "status": self.status,
            "error_message": self.error_message,
            "created_at": self.created_at,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "IntegrationLogRecord":
        return cls(
            id=row["id"],
            tenant_id=row["tenant_id"],
            service=row["service"],
            operation=row["operation"],
            request=_json_value(row.get("request_data")),
            response=_json_value(row.get("response_data")),
            status=row["status"],
            error_message=row.get("error_message"),
            created_at=iso(row["created_at"]),
        )
