"""
Fleet Telemetry Provider Client

Token login, the customer and vehicle listings used by reconciliation, and
the block/unblock device command. Every HTTP call, each listing page
included, is recorded exactly once in the integration log whatever its
outcome, and failures are raised as the engine's error taxonomy.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional
import structlog

from ..config import Settings
from ..core.errors import AuthError, ConfigMissing, MalformedResponse, ProviderUnavailable, RentalSyncError
from ..core.http import HTTPClient, is_success, json_body
from ..core.integration_log import IntegrationLogSink

logger = structlog.get_logger()

SERVICE = "telemetry"

# Keys under which the provider wraps list payloads
LIST_WRAPPER_KEYS = ("dispositivos", "results", "data", "items", "pessoas", "veiculos")

# Upper bound on followed `next` links per listing
MAX_PAGES = 100

DEVICE_COMMANDS = ("block", "unblock")


@dataclass
class TelemetryConfig:
    base_url: str
    login: str
    password: str
    app: int = 9
    fetch_positions: bool = False

    @classmethod
    def resolve(cls, tenant_config: Optional[Dict[str, Any]], settings: Settings) -> "TelemetryConfig":
        """
        Tenant `telemetry` config first, then the process-wide fallback.

        Raises:
            ConfigMissing: when neither source has credentials
        """
        tenant_config = tenant_config or {}
        login = tenant_config.get("login") or settings.telemetry_login
        password = tenant_config.get("password") or settings.telemetry_password
        if not login or not password:
            raise ConfigMissing("No telemetry credentials configured")
        return cls(
            base_url=(tenant_config.get("base_url") or settings.telemetry_base_url).rstrip("/"),
            login=str(login),
            password=str(password),
            app=int(tenant_config.get("app") or settings.telemetry_app),
            fetch_positions=bool(tenant_config.get("fetch_positions", False)),
        )


@dataclass
class TelemetrySession:
    token: str
    account_id: Optional[str] = None


def unwrap_list(body: Any) -> List[Dict[str, Any]]:
    """Accept a bare array or an object wrapping one."""
    if isinstance(body, list):
        items = body
    elif isinstance(body, dict):
        items = None
        for key in LIST_WRAPPER_KEYS:
            if isinstance(body.get(key), list):
                items = body[key]
                break
        if items is None:
            raise MalformedResponse(f"Expected a list, got object with keys {sorted(body)[:10]}")
    else:
        raise MalformedResponse(f"Expected a list, got {type(body).__name__}")
    return [item for item in items if isinstance(item, dict)]


def _next_link(body: Any) -> Optional[str]:
    if isinstance(body, dict):
        link = body.get("next")
        if isinstance(link, str) and link:
            return link
    return None


def _check(response: Any, operation: str) -> Any:
    if is_success(response):
        return json_body(response)
    detail = (response.text or "")[:200]
    if response.status_code in (401, 403) or (operation == "login" and response.status_code == 400):
        raise AuthError(
            f"Telemetry {operation} rejected (HTTP {response.status_code}): {detail}",
            status_code=response.status_code,
        )
    raise ProviderUnavailable(
        f"Telemetry {operation} failed (HTTP {response.status_code}): {detail}",
        status_code=response.status_code,
    )


class TelemetryClient:
    """
    Client for one tenant's telemetry account.

    Usage:
        client = TelemetryClient(tenant_id, config, sink)
        session = client.login()
        people = client.list_customers(session)
        vehicles = client.list_vehicles(session)
    """

    def __init__(
        self,
        tenant_id: str,
        config: TelemetryConfig,
        sink: IntegrationLogSink,
        http: Optional[HTTPClient] = None,
        timeout: int = 30,
    ):
        self.tenant_id = tenant_id
        self.config = config
        self.sink = sink
        self.http = http or HTTPClient()
        self.timeout = timeout

    @classmethod
    def for_tenant(
        cls,
        tenant_id: str,
        tenant_config: Optional[Dict[str, Any]],
        settings: Settings,
        sink: IntegrationLogSink,
        http: Optional[HTTPClient] = None,
    ) -> "TelemetryClient":
        """
        Raises:
            ConfigMissing: no telemetry credentials for the tenant
        """
        config = TelemetryConfig.resolve(tenant_config, settings)
        return cls(tenant_id, config, sink, http=http, timeout=settings.http_timeout_seconds)

    def _headers(self, session: Optional[TelemetrySession] = None) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if session:
            headers["Authorization"] = f"token {session.token}"
        return headers

    def login(self) -> TelemetrySession:
        request = {"login": self.config.login, "senha": self.config.password, "app": self.config.app}
        try:
            response = self.http.post(
                f"{self.config.base_url}/login/",
                json=request,
                headers=self._headers(),
                timeout=self.timeout,
            )
            body = _check(response, "login")
            if not isinstance(body, dict) or not body.get("token"):
                raise MalformedResponse("Login response has no token")
        except RentalSyncError as e:
            self.sink.error(self.tenant_id, SERVICE, "login", request, e.message)
            raise

        account_id = body.get("cliente_id")
        account_id = None if account_id is None or account_id == "" else str(account_id)
        self.sink.success(self.tenant_id, SERVICE, "login", request, {"cliente_id": account_id})
        logger.info("telemetry_login_ok", tenant_id=self.tenant_id, has_account=account_id is not None)
        return TelemetrySession(token=str(body["token"]), account_id=account_id)

    def test_connection(self) -> Dict[str, Any]:
        """Log in once and report whether a token came back."""
        session = self.login()
        return {"success": True, "has_token": bool(session.token), "base_url": self.config.base_url}

    def _list(self, session: TelemetrySession, operation: str, url: str) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        page = 0
        next_url: Optional[str] = url
        while next_url and page < MAX_PAGES:
            page += 1
            request: Dict[str, Any] = {"url": next_url, "page": page}
            try:
                response = self.http.get(next_url, headers=self._headers(session), timeout=self.timeout)
                body = _check(response, operation)
                page_items = unwrap_list(body)
            except RentalSyncError as e:
                self.sink.error(self.tenant_id, SERVICE, operation, request, e.message)
                raise
            next_url = _next_link(body)
            self.sink.success(self.tenant_id, SERVICE, operation, request,
                              {"count": len(page_items), "next": next_url})
            items.extend(page_items)

        if next_url:
            logger.warning("telemetry_page_limit_reached", tenant_id=self.tenant_id, operation=operation,
                           pages=page)
        return items

    def list_customers(self, session: TelemetrySession) -> List[Dict[str, Any]]:
        return self._list(session, "list_customers", f"{self.config.base_url}/list-pessoas")

    def list_vehicles(self, session: TelemetrySession) -> List[Dict[str, Any]]:
        """
        Raises:
            MalformedResponse: the login gave no `cliente_id` to list under
        """
        if not session.account_id:
            raise MalformedResponse("Login response has no cliente_id; vehicle listing unavailable")
        return self._list(session, "list_vehicles", f"{self.config.base_url}/veiculos/{session.account_id}/")

    def send_command(self, session: TelemetrySession, device_id: str, command: str) -> Dict[str, Any]:
        """
        Send a block/unblock command to a tracker.

        Raises:
            ValueError: unknown command or empty device id
            AuthError, ProviderUnavailable, MalformedResponse: provider failure
        """
        if command not in DEVICE_COMMANDS:
            raise ValueError(f"command must be one of: {', '.join(DEVICE_COMMANDS)}")
        if not device_id:
            raise ValueError("device_id is required")

        request = {"device_id": device_id, "command": command}
        try:
            response = self.http.post(
                f"{self.config.base_url}/comando/",
                json=request,
                headers=self._headers(session),
                timeout=self.timeout,
            )
            body = _check(response, "send_command")
        except RentalSyncError as e:
            self.sink.error(self.tenant_id, SERVICE, "send_command", request, e.message)
            raise

        result = body if isinstance(body, dict) else {"result": body}
        self.sink.success(self.tenant_id, SERVICE, "send_command", request, result)
        logger.info("telemetry_command_sent", tenant_id=self.tenant_id, device_id=device_id, command=command)
        return result

    def get_vehicle(self, session: TelemetrySession, provider_vehicle_id: str) -> Dict[str, Any]:
        """Single vehicle detail, used to fill in a missing position."""
        request = {"vehicle_id": provider_vehicle_id}
        try:
            response = self.http.get(
                f"{self.config.base_url}/veiculo/{provider_vehicle_id}/",
                headers=self._headers(session),
                timeout=self.timeout,
            )
            body = _check(response, "get_vehicle")
            if isinstance(body, list):
                body = body[0] if body and isinstance(body[0], dict) else {}
            if not isinstance(body, dict):
                raise MalformedResponse("Vehicle detail is not an object")
        except RentalSyncError as e:
            self.sink.error(self.tenant_id, SERVICE, "get_vehicle", request, e.message)
            raise

        self.sink.success(self.tenant_id, SERVICE, "get_vehicle", request, body)
        return body
