"""
Payment gateway clients: mTLS OAuth2 token acquisition and charge creation.
"""

from .auth import GatewayAuthClient, GatewayCredentials, TokenCache
from .charges import (
    GatewayChargesClient,
    ChargeResult,
    build_charge_payload,
    payment_methods_for,
    to_cents,
)

__all__ = [
    "GatewayAuthClient",
    "GatewayCredentials",
    "TokenCache",
    "GatewayChargesClient",
    "ChargeResult",
    "build_charge_payload",
    "payment_methods_for",
    "to_cents",
]
