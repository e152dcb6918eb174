"""
Provider Field Resolution

The telemetry provider is loose about field names: the same value can arrive
under several keys depending on the account and API version. Each record is
resolved once here, against an ordered list of candidate keys, into a typed
ProviderCustomer or ProviderVehicle. Nothing downstream reads raw provider
dicts.
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional

from ..persistence.models import CustomerKind, VehicleStatus

# Placeholders for contact fields the provider leaves empty
NO_EMAIL = "nao-informado@email.com"
NO_PHONE = "(00) 00000-0000"
NOT_INFORMED = "Não informado"
NO_NUMBER = "S/N"
NO_STATE = "XX"
NO_ZIP = "00000-000"
DEFAULT_MODEL = "Veículo"

CUSTOMER_ID_KEYS = ("id", "pessoa_id", "codigo", "uuid")
CUSTOMER_NAME_KEYS = ("nome_razao_social", "nome", "razao_social", "name")
CUSTOMER_TAX_ID_KEYS = ("cpf_cnpj", "cpf", "cnpj", "documento")
CUSTOMER_EMAIL_KEYS = ("email",)
CUSTOMER_PHONE_KEYS = ("telefone", "celular", "phone")
CUSTOMER_STREET_KEYS = ("endereco", "logradouro", "street")
CUSTOMER_NUMBER_KEYS = ("numero", "number")
CUSTOMER_CITY_KEYS = ("cidade", "city")
CUSTOMER_STATE_KEYS = ("estado", "uf", "state")
CUSTOMER_ZIP_KEYS = ("cep", "zip_code")

VEHICLE_PLATE_KEYS = ("placa", "plate")
VEHICLE_BRAND_KEYS = ("marca", "brand")
VEHICLE_MODEL_KEYS = ("name", "nome", "modelo")
VEHICLE_ODOMETER_KEYS = ("odometer", "odometro", "hodometro")
VEHICLE_IMEI_KEYS = ("imei", "unique_id", "device_id")
VEHICLE_TRACKER_MODEL_KEYS = ("modelo_equipamento", "modelo", "protocolo")
VEHICLE_CHIP_KEYS = ("chip",)
VEHICLE_PROVIDER_ID_KEYS = ("veiculo_id", "id", "unique_id")
VEHICLE_LATITUDE_KEYS = ("latitude", "lat")
VEHICLE_LONGITUDE_KEYS = ("longitude", "lng", "lon")
VEHICLE_SPEED_KEYS = ("speed", "velocidade")
VEHICLE_SEEN_KEYS = ("server_time", "time")


def first_present(record: Dict[str, Any], keys: Iterable[str]) -> Any:
    """Value of the first key that holds something other than None or ""."""
    for key in keys:
        value = record.get(key)
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return value
    return None


def first_present_key(record: Dict[str, Any], keys: Iterable[str]) -> Optional[str]:
    for key in keys:
        if first_present(record, (key,)) is not None:
            return key
    return None


def text(value: Any, default: Optional[str] = None) -> Optional[str]:
    if value is None:
        return default
    value = str(value).strip()
    return value or default


def digits_only(value: Any) -> Optional[str]:
    if value is None:
        return None
    digits = re.sub(r"\D", "", str(value))
    return digits or None


def normalize_plate(value: Any) -> Optional[str]:
    """Upper-case plate with spaces and hyphens removed."""
    if value is None:
        return None
    plate = re.sub(r"[\s\-]", "", str(value)).upper()
    return plate or None


def to_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def to_odometer(value: Any) -> int:
    """Rounded kilometres; anything unparsable reads as 0."""
    number = to_float(value)
    if number is None or number != number:
        return 0
    return int(round(number))


def is_flag_on(value: Any) -> bool:
    """True for 1, "1" and True."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value == 1
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true")
    return False


def signal_bars(gsm: Any) -> int:
    """GSM strength percentage mapped onto 0-4 bars."""
    strength = to_float(gsm)
    if strength is None:
        return 0
    return max(0, min(4, int(round(strength / 100 * 4))))


@dataclass
class ProviderCustomer:
    external_id: Optional[str]
    name: str
    tax_id: Optional[str]
    kind: CustomerKind
    email: str
    phone: str
    street: str
    number: str
    city: str
    state: str
    zip_code: str


@dataclass
class ProviderVehicle:
    plate: Optional[str]
    brand: str
    model: str
    status: VehicleStatus
    odometer: int
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

    @property
    def has_position(self) -> bool:
        return self.latitude is not None and self.longitude is not None


def parse_customer(record: Dict[str, Any]) -> ProviderCustomer:
    """Resolve one raw provider person into a ProviderCustomer."""
    tax_key = first_present_key(record, CUSTOMER_TAX_ID_KEYS)
    tax_id = digits_only(record.get(tax_key)) if tax_key else None
    if tax_key == "cnpj" or (tax_id is not None and len(tax_id) == 14):
        kind = CustomerKind.ORGANIZATION
    else:
        kind = CustomerKind.INDIVIDUAL

    return ProviderCustomer(
        external_id=text(first_present(record, CUSTOMER_ID_KEYS)),
        name=text(first_present(record, CUSTOMER_NAME_KEYS), NOT_INFORMED),
        tax_id=tax_id,
        kind=kind,
        email=text(first_present(record, CUSTOMER_EMAIL_KEYS), NO_EMAIL),
        phone=text(first_present(record, CUSTOMER_PHONE_KEYS), NO_PHONE),
        street=text(first_present(record, CUSTOMER_STREET_KEYS), NOT_INFORMED),
        number=text(first_present(record, CUSTOMER_NUMBER_KEYS), NO_NUMBER),
        city=text(first_present(record, CUSTOMER_CITY_KEYS), NOT_INFORMED),
        state=text(first_present(record, CUSTOMER_STATE_KEYS), NO_STATE),
        zip_code=text(first_present(record, CUSTOMER_ZIP_KEYS), NO_ZIP),
    )


def parse_vehicle(record: Dict[str, Any]) -> ProviderVehicle:
    """Resolve one raw provider vehicle/device into a ProviderVehicle."""
    attributes = record.get("attributes") or {}
    if not isinstance(attributes, dict):
        attributes = {}

    plate = normalize_plate(first_present(record, VEHICLE_PLATE_KEYS))
    battery = to_float(attributes.get("battery"))

    return ProviderVehicle(
        plate=plate,
        brand=text(first_present(record, VEHICLE_BRAND_KEYS), NOT_INFORMED),
        model=text(first_present(record, VEHICLE_MODEL_KEYS), DEFAULT_MODEL),
        status=VehicleStatus.AVAILABLE if is_flag_on(record.get("status_veiculo")) else VehicleStatus.UNAVAILABLE,
        odometer=to_odometer(first_present(record, VEHICLE_ODOMETER_KEYS)),
        tracker_imei=text(first_present(record, VEHICLE_IMEI_KEYS)),
        tracker_model=text(first_present(record, VEHICLE_TRACKER_MODEL_KEYS)),
        chip_number=text(first_present(record, VEHICLE_CHIP_KEYS)),
        provider_vehicle_id=text(first_present(record, VEHICLE_PROVIDER_ID_KEYS)),
        latitude=to_float(first_present(record, VEHICLE_LATITUDE_KEYS)),
        longitude=to_float(first_present(record, VEHICLE_LONGITUDE_KEYS)),
        address=text(record.get("address")),
        speed=to_float(first_present(record, VEHICLE_SPEED_KEYS)),
        online=is_flag_on(record.get("status")),
        signal_bars=signal_bars(attributes.get("gsm")),
        battery=battery,
        last_seen_at=text(first_present(record, VEHICLE_SEEN_KEYS)),
    )


def apply_position(vehicle: ProviderVehicle, record: Dict[str, Any]) -> None:
    """Fill position fields from a single-vehicle detail response."""
    vehicle.latitude = to_float(first_present(record, VEHICLE_LATITUDE_KEYS))
    vehicle.longitude = to_float(first_present(record, VEHICLE_LONGITUDE_KEYS))
    vehicle.address = text(record.get("address")) or vehicle.address
    speed = to_float(first_present(record, VEHICLE_SPEED_KEYS))
    if speed is not None:
        vehicle.speed = speed
    seen = text(first_present(record, VEHICLE_SEEN_KEYS))
    if seen:
        vehicle.last_seen_at = seen
