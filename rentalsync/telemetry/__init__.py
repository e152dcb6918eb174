"""
Fleet telemetry provider: HTTP client and field resolution.
"""

from .client import TelemetryClient, TelemetryConfig, TelemetrySession, unwrap_list
from .fields import ProviderCustomer, ProviderVehicle, parse_customer, parse_vehicle, normalize_plate

__all__ = [
    "TelemetryClient",
    "TelemetryConfig",
    "TelemetrySession",
    "unwrap_list",
    "ProviderCustomer",
    "ProviderVehicle",
    "parse_customer",
    "parse_vehicle",
    "normalize_plate",
]
