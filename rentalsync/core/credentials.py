"""
Credential Handling

Tenant secrets are Fernet-encrypted at rest in tenant_config. Client
certificates for mutual TLS are held in memory and only written to disk
inside a private temporary directory for the lifetime of one request.
"""

import base64
import os
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Generator, Iterable, Optional, Tuple
import structlog

from cryptography import x509
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import AuthError

logger = structlog.get_logger()

ENCRYPTED_PREFIX = "enc:v1:"

SECRET_FIELDS = ("password", "certificate_pem", "private_key_pem", "client_secret")


class CredentialVault:
    """
    Encrypts and decrypts tenant secret fields.

    The Fernet key is derived from KEY_MASTER_SECRET. Without it a random
    master key is generated once and kept in KEY_STORAGE_PATH (development
    only).
    """

    def __init__(
        self,
        master_secret: Optional[str] = None,
        storage_path: Optional[str] = None,
    ):
        master_secret = master_secret if master_secret is not None else os.environ.get("KEY_MASTER_SECRET", "")
        if master_secret:
            self._master_key = self._derive_key(master_secret.encode())
        else:
            path = Path(storage_path or os.environ.get("KEY_STORAGE_PATH", ".keys"))
            path.mkdir(parents=True, exist_ok=True)
            master_key_file = path / ".master"
            if master_key_file.exists():
                self._master_key = master_key_file.read_bytes()
            else:
                self._master_key = Fernet.generate_key()
                master_key_file.write_bytes(self._master_key)
                os.chmod(master_key_file, 0o600)
                logger.warning(
                    "master_key_generated",
                    message="Generated new master key. Set KEY_MASTER_SECRET in production.",
                )
        self._fernet = Fernet(self._master_key)

    def _derive_key(self, secret: bytes) -> bytes:
        salt = b"rentalsync-tenant-config-v1"
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=100000,
        )
        return base64.urlsafe_b64encode(kdf.derive(secret))

    def encrypt(self, value: str) -> str:
        if value.startswith(ENCRYPTED_PREFIX):
            return value
        token = self._fernet.encrypt(value.encode("utf-8")).decode("ascii")
        return ENCRYPTED_PREFIX + token

    def decrypt(self, value: str) -> str:
        if not value.startswith(ENCRYPTED_PREFIX):
            return value
        try:
            return self._fernet.decrypt(value[len(ENCRYPTED_PREFIX):].encode("ascii")).decode("utf-8")
        except InvalidToken as e:
            raise AuthError("Stored credential cannot be decrypted with the current master secret") from e

    def seal(self, config: Dict[str, Any], fields: Iterable[str] = SECRET_FIELDS) -> Dict[str, Any]:
        """Return a copy of config with secret fields encrypted."""
        sealed = dict(config)
        for name in fields:
            value = sealed.get(name)
            if isinstance(value, str) and value:
                sealed[name] = self.encrypt(value)
        return sealed

    def unseal(self, config: Dict[str, Any], fields: Iterable[str] = SECRET_FIELDS) -> Dict[str, Any]:
        """Return a copy of config with secret fields decrypted."""
        opened = dict(config)
        for name in fields:
            value = opened.get(name)
            if isinstance(value, str) and value:
                opened[name] = self.decrypt(value)
        return opened


@dataclass
class ClientCertificate:
    """Client certificate and private key as PEM bytes, kept in memory."""
    certificate_pem: bytes = field(repr=False)
    private_key_pem: bytes = field(repr=False)

    @classmethod
    def from_strings(cls, certificate_pem: str, private_key_pem: str) -> "ClientCertificate":
        return cls(
            certificate_pem=certificate_pem.encode("utf-8"),
            private_key_pem=private_key_pem.encode("utf-8"),
        )

    def validate(self, now: Optional[datetime] = None) -> None:
        """
        Check that the PEM material parses and the certificate is in date.

        Raises:
            AuthError: if the certificate or key is unusable
        """
        try:
            certificate = x509.load_pem_x509_certificate(self.certificate_pem)
        except ValueError as e:
            raise AuthError(f"Invalid client certificate: {e}") from e

        try:
            serialization.load_pem_private_key(self.private_key_pem, password=None)
        except (ValueError, TypeError) as e:
            raise AuthError(f"Invalid client private key: {e}") from e

        now = now or datetime.now(timezone.utc)
        not_after = certificate.not_valid_after_utc
        not_before = certificate.not_valid_before_utc
        if now > not_after:
            raise AuthError(f"Client certificate expired at {not_after.isoformat()}")
        if now < not_before:
            raise AuthError(f"Client certificate not valid before {not_before.isoformat()}")

    @contextmanager
    def files(self) -> Generator[Tuple[str, str], None, None]:
        """
        Materialise the pair as files for one outbound call.

        The TLS stack only loads client chains from paths, so both halves are
        written with mode 0600 into a private directory that is removed when
        the block exits.
        """
        with tempfile.TemporaryDirectory(prefix="rentalsync-mtls-") as tmpdir:
            cert_path = os.path.join(tmpdir, "client.crt")
            key_path = os.path.join(tmpdir, "client.key")
            for path, payload in ((cert_path, self.certificate_pem), (key_path, self.private_key_pem)):
                fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
                with os.fdopen(fd, "wb") as handle:
                    handle.write(payload)
            yield cert_path, key_path
