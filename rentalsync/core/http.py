"""
HTTP Transport

Pooled requests session with retry on idempotent methods. Status codes are
returned to the caller untouched; only transport failures become
ProviderUnavailable. Callers decide what a non-2xx means for their protocol.
"""

from typing import Any, Dict, List, Optional, Tuple
import json

import requests
import structlog
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .errors import MalformedResponse, ProviderUnavailable

logger = structlog.get_logger()


class HTTPClient:
    """
    HTTP client with connection pooling and automatic retry logic.

    POST is never retried at the transport level: creating a gateway charge
    twice is worse than failing once.
    """

    def __init__(
        self,
        pool_connections: int = 10,
        pool_maxsize: int = 20,
        total_retries: int = 3,
        backoff_factor: float = 1.0,
        status_forcelist: Optional[List[int]] = None,
        allowed_methods: Optional[List[str]] = None,
        default_timeout: int = 30,
    ):
        self.default_timeout = default_timeout
        self.session = self._create_session(
            pool_connections=pool_connections,
            pool_maxsize=pool_maxsize,
            total_retries=total_retries,
            backoff_factor=backoff_factor,
            status_forcelist=status_forcelist or [429, 502, 503, 504],
            allowed_methods=allowed_methods or ["GET", "HEAD", "OPTIONS"],
        )

    def _create_session(
        self,
        pool_connections: int,
        pool_maxsize: int,
        total_retries: int,
        backoff_factor: float,
        status_forcelist: List[int],
        allowed_methods: List[str],
    ) -> requests.Session:
        session = requests.Session()

        retry_strategy = Retry(
            total=total_retries,
            backoff_factor=backoff_factor,
            status_forcelist=status_forcelist,
            allowed_methods=allowed_methods,
            raise_on_status=False,
        )

        adapter = HTTPAdapter(
            max_retries=retry_strategy,
            pool_connections=pool_connections,
            pool_maxsize=pool_maxsize,
            pool_block=True,
        )

        session.mount("https://", adapter)
        session.mount("http://", adapter)

        logger.debug(
            "http_client_initialized",
            pool_connections=pool_connections,
            pool_maxsize=pool_maxsize,
            retries=total_retries,
            timeout=self.default_timeout,
        )
        return session

    def request(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[Any] = None,
        json: Optional[Any] = None,
        timeout: Optional[int] = None,
        cert: Optional[Tuple[str, str]] = None,
    ) -> requests.Response:
        """
        Send a request and return the response whatever its status.

        Server certificate verification is always on; `cert` adds the client
        certificate for mutual TLS.

        Raises:
            ProviderUnavailable: on connection errors and timeouts
        """
        timeout = timeout or self.default_timeout

        try:
            response = self.session.request(
                method=method.upper(),
                url=url,
                headers=headers or {},
                params=params,
                data=data,
                json=json,
                timeout=timeout,
                cert=cert,
                verify=True,
            )
        except requests.exceptions.Timeout as e:
            logger.error("http_timeout", method=method.upper(), url=url, timeout=timeout)
            raise ProviderUnavailable(f"Timeout after {timeout}s: {method.upper()} {url}") from e
        except requests.exceptions.RequestException as e:
            logger.error("http_request_failed", method=method.upper(), url=url, error=str(e))
            raise ProviderUnavailable(f"Request failed: {method.upper()} {url}: {e}") from e

        logger.debug(
            "http_response",
            method=method.upper(),
            url=url,
            status=response.status_code,
            size=len(response.content or b""),
        )
        return response

    def get(self, url: str, **kwargs) -> requests.Response:
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs) -> requests.Response:
        return self.request("POST", url, **kwargs)

    def close(self) -> None:
        self.session.close()


def is_success(response: Any) -> bool:
    return 200 <= response.status_code < 300


def json_body(response: Any) -> Any:
    """Parse a response body as JSON or raise MalformedResponse."""
    try:
        return response.json()
    except (ValueError, json.JSONDecodeError) as e:
        snippet = (response.text or "")[:200]
        raise MalformedResponse(
            f"Non-JSON response (HTTP {response.status_code}): {snippet}",
            status_code=response.status_code,
        ) from e
