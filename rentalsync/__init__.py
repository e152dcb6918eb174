"""
RentalSync

Fleet reconciliation and recurring-billing engine for vehicle-rental back offices.

- Reconciles customers and vehicles against a fleet-telemetry provider
- Advances recurring contracts through billing cycles
- Creates gateway charges over mTLS-authenticated OAuth2 client credentials
"""

__version__ = "1.0.0"
