"""
Billing Cycle Engine

Advances recurring contracts through their billing cycles. For each due
contract:

    1. due_date = next_billing_date + due offset
    2. an invoice already exists for (contract_id, due_date)?  finish the
       interrupted cycle (retry the charge if needed, advance) and stop
    3. insert a pending invoice; the unique (contract_id, due_date) key makes
       this insert the reservation for the cycle
    4. create the gateway charge (lazy token, one refresh on 401/403)
    5. attach the charge or record the failure; the invoice stays local
    6. advance next_billing_date with compare-and-set

A crash between any two steps leaves a state the next run completes without
creating a second invoice for the same cycle.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
import time
import structlog

from ..config import Settings, get_settings
from ..core.credentials import ClientCertificate, CredentialVault
from ..core.errors import AuthError, ConfigMissing, RentalSyncError, StoreConflict
from ..core.http import HTTPClient
from ..core.integration_log import IntegrationLogSink
from ..gateway.auth import GatewayAuthClient, GatewayCredentials, TokenCache
from ..gateway.charges import GatewayChargesClient, build_charge_payload, payment_methods_for
from ..persistence.database import Database, get_database
from ..persistence.models import BillingKind, ContractRecord, InvoiceRecord, InvoiceStatus, utc_now
from ..persistence.repository import (
    ContractRepository,
    CustomerRepository,
    IntegrationLogRepository,
    InvoiceRepository,
    TenantConfigRepository,
)

logger = structlog.get_logger()

SERVICE = "gateway"

REQUIRED_GATEWAY_FIELDS = ("client_id", "certificate_pem", "private_key_pem", "account_id")


@dataclass
class GatewayConfig:
    client_id: str
    certificate: ClientCertificate
    account_id: str
    payment_methods: List[str]
    auth_base_url: str
    api_base_url: str

    @classmethod
    def resolve(cls, tenant_config: Optional[Dict[str, Any]], settings: Settings) -> "GatewayConfig":
        """
        Raises:
            ConfigMissing: any required gateway field is absent
        """
        tenant_config = tenant_config or {}
        missing = [name for name in REQUIRED_GATEWAY_FIELDS if not tenant_config.get(name)]
        if missing:
            raise ConfigMissing(f"Gateway config incomplete, missing: {', '.join(missing)}")
        return cls(
            client_id=str(tenant_config["client_id"]),
            certificate=ClientCertificate.from_strings(
                tenant_config["certificate_pem"], tenant_config["private_key_pem"]
            ),
            account_id=str(tenant_config["account_id"]),
            payment_methods=payment_methods_for(tenant_config.get("payment_types")),
            auth_base_url=tenant_config.get("auth_base_url") or settings.gateway_auth_base_url,
            api_base_url=tenant_config.get("api_base_url") or settings.gateway_api_base_url,
        )


@dataclass
class BillingSummary:
    tenant_id: str
    selected: int = 0
    created: int = 0
    charged: int = 0
    local_only: int = 0
    already_invoiced: int = 0
    conflicts: int = 0
    advanced: int = 0
    failed: int = 0
    token_error: Optional[str] = None

    def totals(self) -> Dict[str, int]:
        return {
            "processed": self.selected,
            "inserted": self.created,
            "duplicates": self.already_invoiced,
            "errors": self.failed + self.local_only,
            "skipped": self.conflicts,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "selected": self.selected,
            "created": self.created,
            "charged": self.charged,
            "local_only": self.local_only,
            "already_invoiced": self.already_invoiced,
            "conflicts": self.conflicts,
            "advanced": self.advanced,
            "failed": self.failed,
            "token_error": self.token_error,
        }


@dataclass
class RetrySummary:
    tenant_id: str
    attempted: int = 0
    charged: int = 0
    failed: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "attempted": self.attempted,
            "charged": self.charged,
            "failed": self.failed,
        }


@dataclass
class GatewaySession:
    """Gateway state for one tenant run: config, token cache, charge client."""
    tenant_id: str
    config: GatewayConfig
    tokens: TokenCache
    charges: GatewayChargesClient
    token_error: Optional[str] = None


@dataclass
class _Payer:
    name: Optional[str] = None
    email: Optional[str] = None
    tax_id: Optional[str] = None


def invoice_number_for(contract_id: str, now_ms: Optional[int] = None) -> str:
    """FAT-<epoch ms>-<first 8 chars of contract id>"""
    now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"FAT-{now_ms}-{contract_id[:8]}"


class BillingCycleEngine:
    """
    Recurring billing for one tenant at a time.

    Usage:
        engine = BillingCycleEngine()
        summary = engine.run_billing_cycle("tenant-1")
        summary.created, summary.charged, summary.local_only
    """

    def __init__(
        self,
        db: Optional[Database] = None,
        settings: Optional[Settings] = None,
        vault: Optional[CredentialVault] = None,
        http: Optional[HTTPClient] = None,
    ):
        self.db = db or get_database()
        self.settings = settings or get_settings()
        self.http = http or HTTPClient(
            total_retries=self.settings.http_retries,
            default_timeout=self.settings.http_timeout_seconds,
        )
        self.configs = TenantConfigRepository(self.db, vault or CredentialVault(self.settings.key_master_secret))
        self.contracts = ContractRepository(self.db)
        self.customers = CustomerRepository(self.db)
        self.invoices = InvoiceRepository(self.db)
        self.sink = IntegrationLogSink(IntegrationLogRepository(self.db))

    def open_session(self, tenant_id: str) -> GatewaySession:
        config = GatewayConfig.resolve(self.configs.get(tenant_id, "gateway"), self.settings)
        timeout = self.settings.http_timeout_seconds
        credentials = GatewayCredentials(
            client_id=config.client_id,
            certificate=config.certificate,
            base_url=config.auth_base_url,
        )
        return GatewaySession(
            tenant_id=tenant_id,
            config=config,
            tokens=TokenCache(GatewayAuthClient(self.http, timeout=timeout), credentials),
            charges=GatewayChargesClient(config.api_base_url, self.http, timeout=timeout),
        )

    def run_billing_cycle(self, tenant_id: str, today: Optional[date] = None) -> BillingSummary:
        """
        Invoice every contract due within the lookahead window.

        Raises:
            ConfigMissing: the tenant has no usable gateway config
        """
        today = today or datetime.now(timezone.utc).date()
        session = self.open_session(tenant_id)
        cutoff = today + timedelta(days=self.settings.billing_lookahead_days)

        contracts = self.contracts.list_due(tenant_id, cutoff.isoformat())
        summary = BillingSummary(tenant_id=tenant_id, selected=len(contracts))
        logger.info("billing_cycle_started", tenant_id=tenant_id, due_contracts=len(contracts),
                    cutoff=cutoff.isoformat())

        for contract in contracts:
            try:
                self._bill_contract(session, contract, summary)
            except Exception as e:
                summary.failed += 1
                logger.error("contract_billing_failed", tenant_id=tenant_id, contract_id=contract.id, error=str(e))
                self.sink.error(tenant_id, "system", "bill_contract", {"contract_id": contract.id}, str(e))

        summary.token_error = session.token_error
        logger.info("billing_cycle_completed", **summary.to_dict())
        return summary

    def _bill_contract(self, session: GatewaySession, contract: ContractRecord, summary: BillingSummary) -> None:
        billing_date = date.fromisoformat(contract.next_billing_date[:10])
        due_date = (billing_date + timedelta(days=self.settings.billing_due_offset_days)).isoformat()
        payer = _Payer(contract.payer_name, contract.payer_email, contract.payer_tax_id)

        existing = self.invoices.find_for_cycle(contract.id, due_date)
        if existing is not None:
            if self._can_retry(existing):
                if self._charge(session, existing, payer):
                    summary.charged += 1
                else:
                    summary.local_only += 1
            if self._advance(contract):
                summary.advanced += 1
            summary.already_invoiced += 1
            logger.info("cycle_already_invoiced", tenant_id=contract.tenant_id, contract_id=contract.id,
                        due_date=due_date)
            return

        invoice = InvoiceRecord(
            tenant_id=contract.tenant_id,
            contract_id=contract.id,
            customer_id=contract.customer_id,
            invoice_number=invoice_number_for(contract.id),
            description=f"Cobrança recorrente - {contract.description or contract.id}",
            amount=contract.monthly_amount,
            due_date=due_date,
            status=InvoiceStatus.PENDING,
            payment_methods=list(session.config.payment_methods),
            billing_kind=BillingKind.RECURRING,
        )
        try:
            self.invoices.insert(invoice)
        except StoreConflict:
            summary.conflicts += 1
            logger.info("cycle_reserved_elsewhere", tenant_id=contract.tenant_id, contract_id=contract.id,
                        due_date=due_date)
            return
        summary.created += 1

        if self._charge(session, invoice, payer):
            summary.charged += 1
        else:
            summary.local_only += 1

        if self._advance(contract):
            summary.advanced += 1

    def _can_retry(self, invoice: InvoiceRecord) -> bool:
        return (
            invoice.status == InvoiceStatus.PENDING
            and not invoice.has_charge
            and invoice.attempt_count < self.settings.billing_max_charge_attempts
        )

    def _advance(self, contract: ContractRecord) -> bool:
        old = contract.next_billing_date[:10]
        new = (date.fromisoformat(old) + timedelta(days=self.settings.billing_interval_days)).isoformat()
        if self.contracts.advance(contract.id, old, new, utc_now()):
            return True
        logger.info("contract_advanced_elsewhere", tenant_id=contract.tenant_id, contract_id=contract.id)
        return False

    # ------------------------------------------------------------------
    # Gateway
    # ------------------------------------------------------------------

    def access_token(self, session: GatewaySession) -> str:
        """Cached token, fetched and logged as `token` when missing or expiring."""
        if session.tokens.needs_refresh:
            request = {"client_id": session.config.client_id, "base_url": session.config.auth_base_url}
            try:
                token = session.tokens.refresh()
            except RentalSyncError as e:
                self.sink.error(session.tenant_id, SERVICE, "token", request, e.message)
                raise
            self.sink.success(session.tenant_id, SERVICE, "token", request, token)
        return session.tokens.get()

    def _charge(self, session: GatewaySession, invoice: InvoiceRecord, payer: _Payer) -> bool:
        """Create the gateway charge for an invoice. Returns True if attached."""
        if session.token_error:
            self.invoices.record_charge_failure(invoice.id, invoice.attempt_count,
                                                f"gateway token unavailable: {session.token_error}")
            return False

        payload = build_charge_payload(
            amount=invoice.amount,
            description=invoice.description or invoice.invoice_number,
            due_date=invoice.due_date,
            payer_name=payer.name,
            payer_email=payer.email,
            payer_document=payer.tax_id,
            payment_methods=invoice.payment_methods or session.config.payment_methods,
            account_id=session.config.account_id,
        )
        attempt = invoice.attempt_count + 1
        error = None

        for refreshed in (False, True):
            try:
                token = self.access_token(session)
            except RentalSyncError as e:
                session.token_error = e.message
                logger.error("gateway_token_failed", tenant_id=session.tenant_id, error=e.message)
                self.invoices.record_charge_failure(invoice.id, invoice.attempt_count,
                                                    f"gateway token unavailable: {e.message}")
                return False

            try:
                result = session.charges.create_charge(
                    token, payload, session.config.certificate, idempotency_key=invoice.invoice_number
                )
            except AuthError as e:
                self.sink.error(session.tenant_id, SERVICE, "create_charge", payload, e.message)
                error = e.message
                if not refreshed:
                    session.tokens.invalidate()
                    continue
                break
            except RentalSyncError as e:
                self.sink.error(session.tenant_id, SERVICE, "create_charge", payload, e.message)
                error = e.message
                break

            self.sink.success(session.tenant_id, SERVICE, "create_charge", payload, result.raw)
            self.invoices.attach_charge(
                invoice.id,
                charge_id=result.charge_id,
                barcode=result.barcode,
                pix_payload=result.pix_payload,
                payment_url=result.payment_url,
                attempt_count=attempt,
            )
            logger.info("gateway_charge_created", tenant_id=session.tenant_id, invoice_id=invoice.id,
                        charge_id=result.charge_id)
            return True

        self.invoices.record_charge_failure(invoice.id, attempt, error or "charge failed")
        logger.warning("gateway_charge_failed", tenant_id=session.tenant_id, invoice_id=invoice.id,
                       attempt=attempt, error=error)
        return False

    def retry_pending_charges(self, tenant_id: str) -> RetrySummary:
        """
        Retry the gateway charge for pending invoices that never got one.

        Raises:
            ConfigMissing: the tenant has no usable gateway config
        """
        session = self.open_session(tenant_id)
        summary = RetrySummary(tenant_id=tenant_id)
        pending = self.invoices.list_pending_without_charge(tenant_id, self.settings.billing_max_charge_attempts)

        for invoice in pending:
            if session.token_error:
                break
            summary.attempted += 1
            try:
                customer = self.customers.get(invoice.customer_id) if invoice.customer_id else None
                payer = _Payer(customer.name, customer.email, customer.tax_id) if customer else _Payer()
                if self._charge(session, invoice, payer):
                    summary.charged += 1
                else:
                    summary.failed += 1
            except Exception as e:
                summary.failed += 1
                logger.error("charge_retry_failed", tenant_id=tenant_id, invoice_id=invoice.id, error=str(e))

        logger.info("charge_retry_completed", **summary.to_dict())
        return summary
