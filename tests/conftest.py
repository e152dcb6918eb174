"""
Pytest Configuration and Fixtures
"""

import json
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

# Add repository root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Set test environment
_scratch = tempfile.mkdtemp(prefix="rentalsync-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_scratch, 'default.db')}"
os.environ["API_KEY"] = "test-key-12345"
os.environ["KEY_MASTER_SECRET"] = "test-master-secret-for-tests"
os.environ["KEY_STORAGE_PATH"] = _scratch
os.environ.pop("TELEMETRY_LOGIN", None)
os.environ.pop("TELEMETRY_PASSWORD", None)

from rentalsync.config import Settings, reset_settings  # noqa: E402
from rentalsync.core.credentials import CredentialVault  # noqa: E402
from rentalsync.persistence.database import Database, get_database  # noqa: E402
from rentalsync.persistence.models import ContractRecord, CustomerRecord, TenantRecord  # noqa: E402
from rentalsync.persistence.repository import (  # noqa: E402
    ContractRepository,
    CustomerRepository,
    TenantConfigRepository,
    TenantRepository,
)

MASTER_SECRET = "test-master-secret-for-tests"
TELEMETRY = "https://telemetry.test/api_v2"
GATEWAY = "https://gateway.test"
TENANT_ID = "tenant-1"


# ============================================================================
# Fake HTTP transport
# ============================================================================

class FakeResponse:
    """Just enough of requests.Response for the clients."""

    def __init__(self, status_code=200, body=None, text=None):
        self.status_code = status_code
        if text is None:
            text = json.dumps(body) if body is not None else ""
        self.text = text
        self.content = text.encode("utf-8")

    def json(self):
        return json.loads(self.text)


class FakeHTTP:
    """
    Scripted HTTPClient stand-in.

    Each (method, url) route holds a queue of responses; the last one repeats.
    An Exception in the queue is raised instead of returned.
    """

    def __init__(self):
        self.routes = {}
        self.calls = []

    def add(self, method, url, *responses):
        self.routes.setdefault((method.upper(), url), []).extend(responses)
        return self

    def set(self, method, url, *responses):
        self.routes[(method.upper(), url)] = list(responses)
        return self

    def request(self, method, url, **kwargs):
        self.calls.append((method.upper(), url, kwargs))
        queue = self.routes.get((method.upper(), url))
        if not queue:
            raise AssertionError(f"Unexpected request: {method.upper()} {url}")
        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, Exception):
            raise response
        return response

    def get(self, url, **kwargs):
        return self.request("GET", url, **kwargs)

    def post(self, url, **kwargs):
        return self.request("POST", url, **kwargs)

    def calls_to(self, url, method=None):
        return [c for c in self.calls if c[1] == url and (method is None or c[0] == method.upper())]


# ============================================================================
# Certificates
# ============================================================================

def make_certificate(expired=False):
    """Self-signed client certificate and key as PEM strings."""
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "rentalsync-test-client")])
    now = datetime.now(timezone.utc)
    if expired:
        not_before, not_after = now - timedelta(days=60), now - timedelta(days=1)
    else:
        not_before, not_after = now - timedelta(days=1), now + timedelta(days=30)
    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .sign(key, hashes.SHA256())
    )
    cert_pem = certificate.public_bytes(serialization.Encoding.PEM).decode("ascii")
    key_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode("ascii")
    return cert_pem, key_pem


@pytest.fixture(scope="session")
def cert_pems():
    return make_certificate()


@pytest.fixture(scope="session")
def expired_cert_pems():
    return make_certificate(expired=True)


# ============================================================================
# Store
# ============================================================================

@pytest.fixture
def db(tmp_path, monkeypatch):
    """Fresh SQLite database file per test."""
    url = f"sqlite:///{tmp_path / 'rentalsync.db'}"
    monkeypatch.setenv("DATABASE_URL", url)
    reset_settings()
    Database.reset_instance()
    database = get_database(url)
    yield database
    Database.reset_instance()
    reset_settings()


@pytest.fixture
def settings(db):
    return Settings(
        database_url=db.database_url,
        api_key="test-key-12345",
        key_master_secret=MASTER_SECRET,
        telemetry_base_url=TELEMETRY,
        gateway_auth_base_url=GATEWAY,
        gateway_api_base_url=GATEWAY,
        http_retries=0,
        max_workers=2,
    )


@pytest.fixture
def vault():
    return CredentialVault(MASTER_SECRET)


@pytest.fixture
def tenant(db):
    return TenantRepository(db).create(TenantRecord(id=TENANT_ID, name="Locadora Um"))


@pytest.fixture
def fake_http():
    return FakeHTTP()


@pytest.fixture
def telemetry_config(db, vault, tenant):
    config = {"login": "54858795000100", "password": "s3cret", "base_url": TELEMETRY}
    TenantConfigRepository(db, vault).set(tenant.id, "telemetry", config)
    return config


@pytest.fixture
def gateway_config(db, vault, tenant, cert_pems):
    cert_pem, key_pem = cert_pems
    config = {
        "client_id": "int-client-123",
        "certificate_pem": cert_pem,
        "private_key_pem": key_pem,
        "account_id": "acct-42",
        "payment_types": ["pix", "boleto"],
        "auth_base_url": GATEWAY,
        "api_base_url": GATEWAY,
    }
    TenantConfigRepository(db, vault).set(tenant.id, "gateway", config)
    return config


def add_customer(db, tenant_id=TENANT_ID, external_id="p-1", name="Maria Silva", tax_id="12345678901"):
    customer = CustomerRecord(
        tenant_id=tenant_id,
        external_id=external_id,
        name=name,
        tax_id=tax_id,
        email="maria@example.com",
        phone="(11) 98888-7777",
        street="Rua A",
        number="10",
        city="São Paulo",
        state="SP",
        zip_code="01000-000",
    )
    CustomerRepository(db).insert(customer)
    return customer


def add_contract(db, contract_id, next_billing_date, tenant_id=TENANT_ID, customer_id=None,
                 amount="1500.00", description="Moto CG 160", **overrides):
    contract = ContractRecord(
        id=contract_id,
        tenant_id=tenant_id,
        customer_id=customer_id,
        description=description,
        monthly_amount=Decimal(amount),
        next_billing_date=next_billing_date,
        **overrides,
    )
    return ContractRepository(db).create(contract)
