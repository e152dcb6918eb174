"""
Payment Gateway Authentication

OAuth2 client-credentials grant over mutual TLS. The gateway has served the
token endpoint under two paths; `/token` is tried first and `/oauth2/token`
only when the first path is not routed.
"""

import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from ..core.credentials import ClientCertificate
from ..core.errors import AuthError, MalformedResponse, ProviderUnavailable
from ..core.http import HTTPClient, is_success, json_body

TOKEN_PATHS = ("/token", "/oauth2/token")

# Refresh this many seconds before the advertised expiry
TOKEN_EXPIRY_SKEW = 300
DEFAULT_EXPIRES_IN = 3600


@dataclass
class GatewayCredentials:
    """What a tenant needs to authenticate against the gateway."""
    client_id: str
    certificate: ClientCertificate
    base_url: str


def _path_not_routed(response: Any) -> bool:
    if response.status_code == 404:
        return True
    return "No context-path" in (response.text or "")


class GatewayAuthClient:
    """
    Obtains access tokens from the gateway.

    This client has no logging side effect: the caller records the outcome
    in the integration log.

    Usage:
        client = GatewayAuthClient(HTTPClient())
        token = client.get_access_token(credentials)
        token["access_token"]
    """

    def __init__(self, http: Optional[HTTPClient] = None, timeout: int = 30):
        self.http = http or HTTPClient()
        self.timeout = timeout

    def get_access_token(self, credentials: GatewayCredentials, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Exchange the tenant's client id and certificate for a token.

        Returns:
            The token response body, verbatim.

        Raises:
            AuthError: invalid certificate, or 400/401/403 from the gateway
            ProviderUnavailable: network failure or any other non-2xx status
            MalformedResponse: 2xx with a body that is not JSON
        """
        if not credentials.client_id:
            raise AuthError("Gateway client_id is empty")
        credentials.certificate.validate(now)

        base = credentials.base_url.rstrip("/")
        body = {"grant_type": "client_credentials", "client_id": credentials.client_id}
        headers = {"Content-Type": "application/x-www-form-urlencoded", "Accept": "application/json"}

        response = None
        with credentials.certificate.files() as cert:
            for path in TOKEN_PATHS:
                response = self.http.post(
                    base + path,
                    data=body,
                    headers=headers,
                    timeout=self.timeout,
                    cert=cert,
                )
                if not _path_not_routed(response):
                    break

        if is_success(response):
            token = json_body(response)
            if not isinstance(token, dict):
                raise MalformedResponse("Token response is not a JSON object", status_code=response.status_code)
            return token

        detail = (response.text or "")[:200]
        if response.status_code in (400, 401, 403):
            raise AuthError(
                f"Gateway rejected credentials (HTTP {response.status_code}): {detail}",
                status_code=response.status_code,
            )
        raise ProviderUnavailable(
            f"Gateway token endpoint failed (HTTP {response.status_code}): {detail}",
            status_code=response.status_code,
        )


class TokenCache:
    """
    Holds one tenant's access token for the length of an engine run.

    The token is reused until TOKEN_EXPIRY_SKEW seconds before it expires.
    `invalidate()` forces the next `get()` to fetch a fresh one.
    """

    def __init__(self, client: GatewayAuthClient, credentials: GatewayCredentials, clock=time.monotonic):
        self.client = client
        self.credentials = credentials
        self._clock = clock
        self._token: Optional[Dict[str, Any]] = None
        self._expires_at = 0.0

    @property
    def needs_refresh(self) -> bool:
        return self._token is None or self._clock() >= self._expires_at

    def refresh(self) -> Dict[str, Any]:
        """Fetch a new token unconditionally and return the raw response."""
        token = self.client.get_access_token(self.credentials)
        if not token.get("access_token"):
            raise MalformedResponse("Token response has no access_token")
        try:
            expires_in = int(token.get("expires_in") or DEFAULT_EXPIRES_IN)
        except (TypeError, ValueError):
            expires_in = DEFAULT_EXPIRES_IN
        self._token = token
        self._expires_at = self._clock() + max(expires_in - TOKEN_EXPIRY_SKEW, 0)
        return token

    def get(self) -> str:
        if self.needs_refresh:
            self.refresh()
        return self._token["access_token"]

    @property
    def current(self) -> Optional[Dict[str, Any]]:
        return self._token

    def invalidate(self) -> None:
        self._token = None
        self._expires_at = 0.0
