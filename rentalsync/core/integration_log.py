"""
Integration Log Sink

Append-only audit of every external call. Writing an entry is a monitoring
concern: a failure here is reported through structlog and never reaches the
caller's workflow.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional
import re
import structlog

from ..persistence.models import IntegrationLogRecord

logger = structlog.get_logger()

SUCCESS = "success"
ERROR = "error"

REDACTED_KEYS = {
    "password",
    "senha",
    "certificate_pem",
    "private_key_pem",
    "access_token",
    "token",
    "client_secret",
    "authorization",
}

_CNPJ_RE = re.compile(r"(?<!\d)(?:\d{14}|\d{2}\.\d{3}\.\d{3}/\d{4}-\d{2})(?!\d)")
_CPF_RE = re.compile(r"(?<!\d)(?:\d{11}|\d{3}\.\d{3}\.\d{3}-\d{2})(?!\d)")


def mask_tax_ids(text: str) -> str:
    """Mask CPF/CNPJ patterns in a string."""
    if not text:
        return text
    text = _CNPJ_RE.sub("***CNPJ***", text)
    return _CPF_RE.sub("***CPF***", text)


def redact(value: Any) -> Any:
    """Recursively hide secrets and tax ids before an entry is persisted."""
    if isinstance(value, dict):
        return {
            k: ("***" if str(k).lower() in REDACTED_KEYS and v is not None else redact(v))
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [redact(v) for v in value]
    if isinstance(value, str):
        return mask_tax_ids(value)
    return value


class IntegrationLogSink:
    """
    Records external calls into integration_logs.

    Usage:
        sink = IntegrationLogSink(IntegrationLogRepository(db))
        sink.log(tenant_id, "telemetry", "login", {"login": "x"}, {"ok": True}, SUCCESS)
    """

    def __init__(self, repository: Any):
        self.repository = repository

    def log(
        self,
        tenant_id: str,
        service: str,
        operation: str,
        request: Optional[Any],
        response: Optional[Any],
        status: str,
        error_message: Optional[str] = None,
    ) -> None:
        """Append one entry. Never raises."""
        try:
            entry = IntegrationLogRecord(
                tenant_id=tenant_id,
                service=service,
                operation=operation,
                request=redact(request),
                response=redact(response),
                status=status,
                error_message=mask_tax_ids(error_message) if error_message else None,
                created_at=datetime.now(timezone.utc).isoformat(),
            )
            self.repository.append(entry)
        except Exception as e:
            logger.error(
                "integration_log_write_failed",
                tenant_id=tenant_id,
                service=service,
                operation=operation,
                error=str(e),
            )

    def success(self, tenant_id: str, service: str, operation: str,
                request: Optional[Any] = None, response: Optional[Any] = None) -> None:
        self.log(tenant_id, service, operation, request, response, SUCCESS)

    def error(self, tenant_id: str, service: str, operation: str,
              request: Optional[Any] = None, error_message: Optional[str] = None,
              response: Optional[Any] = None) -> None:
        self.log(tenant_id, service, operation, request, response, ERROR, error_message)

