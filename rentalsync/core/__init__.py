"""
Core building blocks shared by the jobs: error taxonomy, HTTP transport,
credential handling and the integration log sink.
"""

from .errors import (
    RentalSyncError,
    AuthError,
    ProviderUnavailable,
    MalformedResponse,
    StoreConflict,
    ConfigMissing,
    UnknownTenant,
)

__all__ = [
    "RentalSyncError",
    "AuthError",
    "ProviderUnavailable",
    "MalformedResponse",
    "StoreConflict",
    "ConfigMissing",
    "UnknownTenant",
]
