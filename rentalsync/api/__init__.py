"""
RentalSync - API Module

FastAPI trigger surface:
- Per-tenant and all-tenant job triggers
- Integration log read-back
- Gateway status webhook
- Bulk vehicle delete
"""

from .server import app, create_app

__all__ = ["app", "create_app"]
