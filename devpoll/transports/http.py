# ═══════════════════════════════════════════════════════════════
# DevPoll - HTTP Transport
# Request/response transport over HTTP(S)
# ═══════════════════════════════════════════════════════════════

from typing import Any, Dict, Optional

import httpx

from .base import BaseTransport
from .models import AuthMode, HttpConfig, Operation, RawResult, TransportKind


class HttpTransport(BaseTransport):
    """
    Request/response transport built on ``httpx.AsyncClient``.

    Non-2xx statuses are returned on the RawResult rather than raised;
    whether they count as success is up to the operation's predicate.
    Cookies persist between requests only when ``cookie_jar`` is enabled.

    Usage:
        config = HttpConfig(host="10.0.0.1", auth_mode=AuthMode.BASIC,
                            username="admin", password=SecretStr("secret"))
        async with HttpTransport(config) as transport:
            result = await transport.send(Operation(target="/api/status"))
    """

    kind = TransportKind.HTTP

    def __init__(
        self,
        config: HttpConfig,
        http_transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Initialize the HTTP transport.

        Args:
            config: HTTP connection configuration
            http_transport: Optional httpx transport (tests pass a MockTransport)
        """
        super().__init__(config)
        self.config: HttpConfig = config
        self._http_transport = http_transport
        self._client: Optional[httpx.AsyncClient] = None

    # ═══════════════════════════════════════════════════════════
    # Channel Management
    # ═══════════════════════════════════════════════════════════

    async def _open(self) -> None:
        client_options: Dict[str, Any] = {
            'base_url': self.config.base_url,
            'verify': self.config.verify_tls,
            'timeout': self.config.timeout,
            'follow_redirects': self.config.follow_redirects,
            'headers': self._static_headers(),
        }

        if self.config.auth_mode == AuthMode.BASIC:
            client_options['auth'] = httpx.BasicAuth(
                self.config.username or "",
                self.config.password.get_secret_value() if self.config.password else ""
            )

        if self._http_transport is not None:
            client_options['transport'] = self._http_transport

        self._client = httpx.AsyncClient(**client_options)

    async def _close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _is_open(self) -> bool:
        return self._client is not None and not self._client.is_closed

    def _static_headers(self) -> Dict[str, str]:
        headers = dict(self.config.default_headers)
        token = self.config.token.get_secret_value() if self.config.token else None

        if self.config.auth_mode == AuthMode.BEARER and token:
            headers['Authorization'] = f"Bearer {token}"
        elif self.config.auth_mode == AuthMode.HEADER and token:
            headers[self.config.auth_header] = token

        return headers

    @property
    def cookies(self) -> httpx.Cookies:
        """Cookies currently held by the client jar."""
        if self._client is None:
            return httpx.Cookies()
        return self._client.cookies

    # ═══════════════════════════════════════════════════════════
    # Request Execution
    # ═══════════════════════════════════════════════════════════

    async def _send(self, operation: Operation) -> RawResult:
        request_options: Dict[str, Any] = {
            'headers': operation.headers or None,
            'params': operation.params or None,
            'timeout': operation.timeout,
        }
        if operation.follow_redirects is not None:
            request_options['follow_redirects'] = operation.follow_redirects

        if operation.json_body is not None:
            request_options['json'] = operation.json_body
        elif operation.form is not None:
            request_options['data'] = operation.form
        elif operation.content is not None:
            request_options['content'] = operation.content

        self.logger.debug(f"HTTP {operation.method} {operation.target}")

        try:
            response = await self._client.request(
                operation.method,
                operation.target or "/",
                **request_options
            )
        except httpx.ConnectTimeout as e:
            raise self._error(
                f"Connection to {self.config.host} timed out",
                original_error=e,
                timed_out=True,
                unreachable=True
            )
        except httpx.TimeoutException as e:
            raise self._error(
                f"HTTP {operation.method} {operation.target} timed out",
                original_error=e,
                timed_out=True
            )
        except httpx.ConnectError as e:
            raise self._error(
                f"Cannot connect to {self.config.host}: {e}",
                original_error=e,
                unreachable=True
            )
        except httpx.HTTPError as e:
            raise self._error(f"HTTP request failed: {e}", original_error=e)
        finally:
            if not self.config.cookie_jar and self._client is not None:
                self._client.cookies.clear()

        return self._result(
            operation,
            output=response.text,
            stdout=response.text,
            status_code=response.status_code,
            headers=dict(response.headers),
            cookies={cookie.name: cookie.value for cookie in response.cookies.jar},
            url=str(response.url),
        )
