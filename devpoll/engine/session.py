# ═══════════════════════════════════════════════════════════════
# DevPoll - Session Manager
# Authentication strategies and the per-cycle session
# ═══════════════════════════════════════════════════════════════

import asyncio
import json
import re
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional
from uuid import uuid4

from bs4 import BeautifulSoup
from pydantic import BaseModel, ConfigDict, Field, SecretStr

from ..core.exceptions import (
    AuthenticationFailed,
    ConfigurationError,
    OperationFailed,
    SessionNotReadyError,
    TransportError,
)
from ..core.logging import audit_logger, get_logger
from ..transports.base import BaseTransport
from ..transports.models import Operation, RawResult, TransportKind
from .classifier import ErrorClassification, FailureSignal, classify
from .normalizer import resolve_path

logger = get_logger("devpoll.engine.session")

# Slack on top of an operation timeout so the transport reports its own timeout first
TIMEOUT_GRACE = 1.0

Sender = Callable[[Operation], Awaitable[RawResult]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Session(BaseModel):
    """
    Authenticated context for one polling cycle.

    Holds the credential artifact obtained at login (token, cookies,
    anti-forgery token, prompt signature) and stamps it onto every
    operation through ``authorize``. Never shared between cycles.
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str = Field(default_factory=lambda: uuid4().hex[:12])
    kind: TransportKind
    device: str
    username: Optional[str] = None
    secret: Optional[SecretStr] = None

    # Credential artifact
    token: Optional[SecretStr] = None
    token_header: Optional[str] = None
    token_scheme: Optional[str] = None
    token_cookie: Optional[str] = None
    cookies: Dict[str, str] = Field(default_factory=dict)
    csrf_field: Optional[str] = None
    csrf_token: Optional[str] = None
    prompt_signature: Optional[str] = None

    created_at: datetime = Field(default_factory=_utcnow)
    authenticated: bool = False
    login_count: int = 0
    generation: int = 0

    def clear_artifact(self) -> None:
        self.token = None
        self.cookies = {}
        self.csrf_token = None
        self.authenticated = False

    def authorize(self, operation: Operation) -> Operation:
        """
        Return a copy of ``operation`` carrying the credential artifact.

        Raises:
            SessionNotReadyError: If login has not completed
        """
        if not self.authenticated:
            raise SessionNotReadyError(self.id)

        headers = dict(operation.headers)
        form = dict(operation.form) if operation.form is not None else None

        if self.token is not None:
            token = self.token.get_secret_value()
            if self.token_cookie:
                headers["Cookie"] = self._cookie_header({**self.cookies, self.token_cookie: token})
            else:
                header = self.token_header or "Authorization"
                headers[header] = f"{self.token_scheme} {token}" if self.token_scheme else token
        elif self.cookies:
            headers["Cookie"] = self._cookie_header(self.cookies)

        if form is not None and self.csrf_field and self.csrf_token:
            form.setdefault(self.csrf_field, self.csrf_token)

        return operation.model_copy(update={"headers": headers, "form": form})

    @staticmethod
    def _cookie_header(cookies: Dict[str, str]) -> str:
        return "; ".join(f"{name}={value}" for name, value in cookies.items())


# ═══════════════════════════════════════════════════════════════
# Authentication Strategies
# ═══════════════════════════════════════════════════════════════

class AuthStrategy(ABC):
    """
    How a session becomes authenticated.

    ``login`` receives the session and a ``send`` callable that issues
    one operation over the session's transport.
    """

    name: str = "stateless"

    def __init__(self, expiry_statuses: Iterable[int] = ()):
        self.expiry_statuses = frozenset(expiry_statuses)

    @abstractmethod
    async def login(self, session: Session, send: Sender) -> None:
        """Authenticate ``session`` or raise AuthenticationFailed / TransportError."""

    def is_expired(self, session: Session, result: RawResult) -> bool:
        """Whether a response says the cached artifact is no longer accepted."""
        return result.status_code in self.expiry_statuses

    @staticmethod
    def _check(step: str, result: RawResult) -> None:
        if result.status_code is not None and not 200 <= result.status_code < 300:
            raise AuthenticationFailed(
                f"Login step '{step}' returned status {result.status_code}",
                step=step,
                details={"status_code": result.status_code}
            )


class StatelessAuth(AuthStrategy):
    """
    Credentials travel with every call or are presented at channel open.

    Covers basic/bearer/API-key HTTP, SSH, WinRM and terminal logins.
    Nothing to cache except the shell prompt signature.
    """

    name = "stateless"

    def __init__(self):
        super().__init__(expiry_statuses=())

    async def login(self, session: Session, send: Sender) -> None:
        pass


class TokenLogin(AuthStrategy):
    """
    Single-call login that yields a token.

    The credentials are merged into the login operation's JSON body (or
    form), the token is read from a dotted JSON path, a response header
    or a cookie, and then attached to every later operation as a header
    (``attach_header`` + ``scheme``) or as a cookie (``attach_cookie``).
    """

    name = "token"

    def __init__(
        self,
        operation: Operation,
        token_path: Optional[str] = None,
        token_header: Optional[str] = None,
        token_cookie: Optional[str] = None,
        attach_header: str = "Authorization",
        scheme: Optional[str] = "Bearer",
        attach_cookie: Optional[str] = None,
        credentials_format: str = "json",
        username_field: str = "username",
        password_field: str = "password",
        expiry_statuses: Iterable[int] = (401,)
    ):
        super().__init__(expiry_statuses)
        sources = [source for source in (token_path, token_header, token_cookie) if source]
        if len(sources) != 1:
            raise ConfigurationError("TokenLogin needs exactly one of token_path, token_header, token_cookie")
        if credentials_format not in ("json", "form"):
            raise ConfigurationError(f"Unsupported credentials format: {credentials_format}")

        self.operation = operation
        self.token_path = token_path
        self.token_header = token_header
        self.token_cookie = token_cookie
        self.attach_header = attach_header
        self.scheme = scheme
        self.attach_cookie = attach_cookie
        self.credentials_format = credentials_format
        self.username_field = username_field
        self.password_field = password_field

    def _login_operation(self, session: Session) -> Operation:
        credentials = {
            self.username_field: session.username or "",
            self.password_field: session.secret.get_secret_value() if session.secret else "",
        }
        if self.credentials_format == "form":
            return self.operation.model_copy(update={"form": {**(self.operation.form or {}), **credentials}})

        body = self.operation.json_body if isinstance(self.operation.json_body, dict) else {}
        return self.operation.model_copy(update={"json_body": {**body, **credentials}})

    def _extract_token(self, result: RawResult) -> Optional[str]:
        if self.token_header:
            lowered = {name.lower(): value for name, value in result.headers.items()}
            return lowered.get(self.token_header.lower())
        if self.token_cookie:
            return result.cookies.get(self.token_cookie)

        try:
            document = json.loads(result.output)
        except ValueError:
            return None
        token = resolve_path(document, self.token_path)
        return str(token) if token not in (None, "") else None

    async def login(self, session: Session, send: Sender) -> None:
        result = await send(self._login_operation(session))
        self._check("token", result)

        token = self._extract_token(result)
        if not token:
            raise AuthenticationFailed("Login response carried no token", step="token")

        session.token = SecretStr(token)
        session.token_header = self.attach_header
        session.token_scheme = self.scheme
        session.token_cookie = self.attach_cookie


class FormLogin(AuthStrategy):
    """
    Multi-step form login protected by an anti-forgery token.

    1. GET the login page and extract the token (CSS selector or regex)
    2. POST credentials plus token as a form, following the redirect
    3. Optionally GET a confirmation page, refreshing the token when
       the page carries a new one, and check a logged-in marker

    The session cookie lives in the transport's cookie jar, so the HTTP
    config must enable ``cookie_jar``. The token is re-sent with every
    later form submission.
    """

    name = "form"

    def __init__(
        self,
        login_path: str = "/",
        token_field: str = "__csrf_magic",
        token_selector: Optional[str] = None,
        token_pattern: Optional[str] = None,
        username_field: str = "usernamefld",
        password_field: str = "passwordfld",
        extra_fields: Optional[Dict[str, str]] = None,
        submit_path: Optional[str] = None,
        confirm_path: Optional[str] = None,
        logged_in_marker: Optional[str] = None,
        expiry_pattern: Optional[str] = None,
        expiry_statuses: Iterable[int] = (401,)
    ):
        super().__init__(expiry_statuses)
        self.login_path = login_path
        self.token_field = token_field
        self.token_selector = token_selector or f'input[name="{token_field}"]'
        self.token_pattern = re.compile(token_pattern) if token_pattern else None
        self.username_field = username_field
        self.password_field = password_field
        self.extra_fields = extra_fields or {}
        self.submit_path = submit_path or login_path
        self.confirm_path = confirm_path
        self.logged_in_marker = re.compile(logged_in_marker) if logged_in_marker else None
        # The login form showing up again means the session is gone
        self.expiry_pattern = re.compile(
            expiry_pattern or rf"""name=["']?{re.escape(username_field)}["'\s>]"""
        )

    def extract_token(self, page: str) -> Optional[str]:
        """Read the anti-forgery token from a page, or None."""
        if self.token_pattern is not None:
            match = self.token_pattern.search(page)
            if not match:
                return None
            return match.group(1) if match.groups() else match.group(0)

        node = BeautifulSoup(page, "html.parser").select_one(self.token_selector)
        if node is None:
            return None
        return node.get("value") or None

    async def login(self, session: Session, send: Sender) -> None:
        page = await send(Operation(name="login-page", target=self.login_path, method="GET"))
        self._check("login_page", page)

        token = self.extract_token(page.output)
        if not token:
            raise AuthenticationFailed("Anti-forgery token not found on login page", step="login_page")

        form = {
            self.token_field: token,
            self.username_field: session.username or "",
            self.password_field: session.secret.get_secret_value() if session.secret else "",
            **self.extra_fields,
        }
        submitted = await send(Operation(
            name="login-submit",
            target=self.submit_path,
            method="POST",
            form=form,
            follow_redirects=True,
        ))
        self._check("submit", submitted)

        if self.expiry_pattern.search(submitted.output):
            raise AuthenticationFailed("Credentials rejected, login form shown again", step="submit")

        landing = submitted
        if self.confirm_path:
            landing = await send(Operation(name="login-confirm", target=self.confirm_path, method="GET"))
            self._check("confirm", landing)

        fresh = self.extract_token(landing.output)
        if fresh:
            token = fresh

        if self.logged_in_marker is not None and not self.logged_in_marker.search(landing.output):
            raise AuthenticationFailed("Logged-in marker not found", step="confirm")

        session.csrf_field = self.token_field
        session.csrf_token = token

    def is_expired(self, session: Session, result: RawResult) -> bool:
        if super().is_expired(session, result):
            return True
        return result.kind == TransportKind.HTTP and bool(self.expiry_pattern.search(result.output))


# ═══════════════════════════════════════════════════════════════
# Session Manager
# ═══════════════════════════════════════════════════════════════

class SessionManager:
    """
    Opens the transport and authenticates the cycle's session.

    Any login failure surfaces as OperationFailed classified as
    AUTHENTICATION_ERROR, unless its cause classifies as
    RESOURCE_UNAVAILABLE (device down, endpoint gone, timeout with no
    data). ``refresh`` re-runs the login once per expiry; concurrent
    operations that saw the same expiry share one re-login.

    Usage:
        manager = SessionManager(transport, TokenLogin(login_op, token_path="token"))
        session = await manager.login()
    """

    def __init__(
        self,
        transport: BaseTransport,
        strategy: Optional[AuthStrategy] = None,
        device: Optional[str] = None
    ):
        self.transport = transport
        self.strategy = strategy or StatelessAuth()
        self.device = device or transport.config.host
        self.session: Optional[Session] = None
        self.last_failure: Optional[OperationFailed] = None
        self._lock = asyncio.Lock()

        if isinstance(self.strategy, FormLogin) and not getattr(transport.config, "cookie_jar", False):
            raise ConfigurationError("FormLogin requires an HTTP transport with cookie_jar enabled")
        if not isinstance(self.strategy, StatelessAuth) and transport.kind != TransportKind.HTTP:
            raise ConfigurationError(f"{type(self.strategy).__name__} only works over HTTP")

    async def send(self, operation: Operation) -> RawResult:
        """Issue one operation on the transport under its timeout."""
        async with self.transport.reserve():
            return await asyncio.wait_for(
                self.transport.send_reserved(operation),
                timeout=operation.timeout + TIMEOUT_GRACE
            )

    async def login(self) -> Session:
        """
        Open the transport and authenticate.

        Returns:
            The authenticated session (the existing one when already logged in)

        Raises:
            OperationFailed: Classified login failure
        """
        async with self._lock:
            if self.session is not None and self.session.authenticated:
                return self.session

            config = self.transport.config
            self.session = Session(
                kind=self.transport.kind,
                device=self.device,
                username=config.username,
                secret=config.password,
            )
            await self._perform_login(self.session)
            return self.session

    async def refresh(self, session: Session, seen_generation: Optional[int] = None) -> Session:
        """
        Re-authenticate after an expiry.

        ``seen_generation`` is the session generation the caller observed
        before its request; when another operation already refreshed
        since then, no new login is performed.
        """
        async with self._lock:
            if seen_generation is not None and session.generation != seen_generation:
                return session

            logger.info("Session expired, logging in again", session_id=session.id)
            session.clear_artifact()
            await self._perform_login(session)
            session.generation += 1
            return session

    async def wait_ready(self, session: Session) -> None:
        """
        Wait while another operation is re-authenticating ``session``.

        Raises:
            OperationFailed: The re-login this call waited for failed
            SessionNotReadyError: The session was never authenticated
        """
        if session.authenticated:
            return

        async with self._lock:
            pass

        if session.authenticated:
            return
        if self.last_failure is not None:
            raise self.last_failure
        raise SessionNotReadyError(session.id)

    def is_expired(self, session: Session, result: RawResult) -> bool:
        return self.strategy.is_expired(session, result)

    async def _perform_login(self, session: Session) -> None:
        try:
            await self.transport.open()
            await self.strategy.login(session, self.send)
        except ConfigurationError as e:
            raise OperationFailed(
                ErrorClassification.GENERIC_ERROR,
                e.message,
                operation="login",
                original_error=e
            )
        except (AuthenticationFailed, TransportError, asyncio.TimeoutError) as e:
            signal = self._login_signal(e)
            classification = classify(signal)
            if classification != ErrorClassification.RESOURCE_UNAVAILABLE:
                classification = ErrorClassification.AUTHENTICATION_ERROR

            audit_logger.log_authentication(
                device=self.device,
                success=False,
                method=self.strategy.name,
                username=session.username,
                details={"classification": classification.value}
            )
            self.last_failure = OperationFailed(
                classification,
                f"Login failed: {getattr(e, 'message', None) or str(e) or 'timed out'}",
                operation="login",
                attempts=1,
                signal=signal,
                original_error=e
            )
            raise self.last_failure

        self.last_failure = None
        if self.transport.kind == TransportKind.SHELL:
            session.prompt_signature = getattr(self.transport, "prompt_signature", None)

        session.authenticated = True
        session.login_count += 1
        audit_logger.log_authentication(
            device=self.device,
            success=True,
            method=self.strategy.name,
            username=session.username
        )

    @staticmethod
    def _login_signal(error: Exception) -> FailureSignal:
        if isinstance(error, AuthenticationFailed):
            return FailureSignal(
                status_code=error.details.get("status_code"),
                auth_rejected=error.details.get("status_code") is None,
                message=error.message,
            )
        return FailureSignal.from_exception(error)
