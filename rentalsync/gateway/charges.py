"""
Payment Gateway Charges

Creates a charge (boleto or PIX) for one invoice and lists the invoices the
gateway holds. Amounts travel in cents.
"""

import re
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

from ..core.credentials import ClientCertificate
from ..core.errors import AuthError, MalformedResponse, ProviderUnavailable
from ..core.http import HTTPClient, is_success, json_body


def to_cents(amount: Decimal) -> int:
    """Convert a currency amount to integer cents, rounding half up."""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def payment_methods_for(payment_types: Optional[List[str]]) -> List[str]:
    """PIX when the tenant accepts it, boleto otherwise."""
    if payment_types and "pix" in [str(t).lower() for t in payment_types]:
        return ["pix"]
    return ["boleto"]


def build_charge_payload(
    amount: Decimal,
    description: str,
    due_date: str,
    payer_name: Optional[str],
    payer_email: Optional[str],
    payer_document: Optional[str],
    payment_methods: List[str],
    account_id: str,
) -> Dict[str, Any]:
    return {
        "amount": to_cents(amount),
        "description": description,
        "due_date": due_date,
        "payer": {
            "name": payer_name,
            "email": payer_email,
            "document": re.sub(r"\D", "", payer_document or "") or None,
        },
        "payment_methods": list(payment_methods),
        "account_id": account_id,
    }


@dataclass
class ChargeResult:
    """Fields the gateway returns for a created charge."""
    charge_id: str
    barcode: Optional[str] = None
    pix_payload: Optional[str] = None
    payment_url: Optional[str] = None
    payment_method: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_response(cls, body: Dict[str, Any]) -> "ChargeResult":
        charge_id = body.get("id")
        if not charge_id:
            raise MalformedResponse("Charge response has no id")
        return cls(
            charge_id=str(charge_id),
            barcode=body.get("barcode"),
            pix_payload=body.get("pix_qr_code"),
            payment_url=body.get("pdf_url"),
            payment_method=body.get("payment_method"),
            raw=body,
        )


class GatewayChargesClient:
    """
    POST /charges and GET /invoices with a bearer token over mutual TLS.

    Like the auth client, this performs no logging; the billing engine
    records each attempt.
    """

    def __init__(self, base_url: str, http: Optional[HTTPClient] = None, timeout: int = 30):
        self.base_url = base_url.rstrip("/")
        self.http = http or HTTPClient()
        self.timeout = timeout

    def create_charge(
        self,
        access_token: str,
        payload: Dict[str, Any],
        certificate: ClientCertificate,
        idempotency_key: str,
    ) -> ChargeResult:
        """
        Raises:
            AuthError: 401/403, the token should be refreshed
            ProviderUnavailable: network failure or other non-2xx status
            MalformedResponse: 2xx without a JSON body or charge id
        """
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Idempotency-Key": idempotency_key,
        }
        with certificate.files() as cert:
            response = self.http.post(
                f"{self.base_url}/charges",
                json=payload,
                headers=headers,
                timeout=self.timeout,
                cert=cert,
            )

        if is_success(response):
            body = json_body(response)
            if not isinstance(body, dict):
                raise MalformedResponse("Charge response is not a JSON object", status_code=response.status_code)
            return ChargeResult.from_response(body)

        detail = (response.text or "")[:200]
        if response.status_code in (401, 403):
            raise AuthError(
                f"Gateway refused token (HTTP {response.status_code}): {detail}",
                status_code=response.status_code,
            )
        raise ProviderUnavailable(
            f"Gateway charge failed (HTTP {response.status_code}): {detail}",
            status_code=response.status_code,
        )

    def list_invoices(
        self,
        access_token: str,
        certificate: ClientCertificate,
        start: Optional[str] = None,
        end: Optional[str] = None,
        state: Optional[str] = None,
        page: int = 1,
        per_page: int = 100,
    ) -> List[Dict[str, Any]]:
        """
        GET /invoices for one page, filtered by due date range and state.

        Raises:
            AuthError: 401/403, the token should be refreshed
            ProviderUnavailable: network failure or other non-2xx status
            MalformedResponse: 2xx without a JSON list of items
        """
        params: Dict[str, Any] = {"page": page, "perPage": per_page}
        if start:
            params["start"] = start
        if end:
            params["end"] = end
        if state:
            params["state"] = state
        headers = {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}
        with certificate.files() as cert:
            response = self.http.get(
                f"{self.base_url}/invoices",
                params=params,
                headers=headers,
                timeout=self.timeout,
                cert=cert,
            )

        if not is_success(response):
            detail = (response.text or "")[:200]
            if response.status_code in (401, 403):
                raise AuthError(
                    f"Gateway refused token (HTTP {response.status_code}): {detail}",
                    status_code=response.status_code,
                )
            raise ProviderUnavailable(
                f"Gateway invoice listing failed (HTTP {response.status_code}): {detail}",
                status_code=response.status_code,
            )

        body = json_body(response)
        if isinstance(body, dict):
            body = body.get("items", body.get("invoices"))
        if not isinstance(body, list):
            raise MalformedResponse("Invoice listing has no items", status_code=response.status_code)
        return [item for item in body if isinstance(item, dict)]
