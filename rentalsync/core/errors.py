"""
Error Taxonomy

Every failure the engine classifies derives from RentalSyncError so that loop
boundaries can catch engine errors without catching programming mistakes.
"""

from typing import Optional


class RentalSyncError(Exception):
    """Base class for engine errors."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class AuthError(RentalSyncError):
    """Bad credentials, unusable certificate, or 401/403 from a provider."""
    pass


class ProviderUnavailable(RentalSyncError):
    """Network failure, timeout, 5xx or unexpected status from a provider."""
    pass


class MalformedResponse(RentalSyncError):
    """Non-JSON body or a required field missing from a provider response."""
    pass


class StoreConflict(RentalSyncError):
    """Uniqueness violation on insert. Expected under concurrent runs."""
    pass


class ConfigMissing(RentalSyncError):
    """Tenant lacks the settings a job needs. The job is skipped."""
    pass


class UnknownTenant(RentalSyncError):
    """No tenant row exists for the requested id."""
    pass
