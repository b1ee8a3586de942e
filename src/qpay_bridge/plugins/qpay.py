"""QPay plugin module.

This module wraps the QPay merchant API v2: the client-credentials token
exchange, an executor that attaches the bearer token to every call and
re-authenticates once when the gateway answers 401, and thin helpers for the
invoice and payment endpoints used by the invoice workflow.
"""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Callable

import requests

from qpay_bridge.core.results import (
    AuthError,
    AuthErrorKind,
    RequestError,
    RequestErrorKind,
    Result,
)
from qpay_bridge.core.settings import QPaySettings
from qpay_bridge.core.tokens import AccessToken, TokenStore

# Setup module-level logger
logger = logging.getLogger("qpay")

# Error codes QPay returns on the token endpoint for bad merchant credentials
BAD_CREDENTIAL_CODES = {
    "AUTHENTICATION_FAILED",
    "CLIENT_NOTFOUND",
    "INVALID_CLIENT",
    "INVALID_CREDENTIALS",
    "NO_CREDENDIALS",
    "USER_NOT_FOUND",
    "PERMISSION_DENIED",
}

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _error_code(response: requests.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return ""
    if isinstance(data, dict):
        return str(data.get("error") or data.get("code") or data.get("message") or "")
    return ""


@dataclass(frozen=True)
class GatewayResponse:
    """Successful (2xx) gateway response."""

    status_code: int
    data: Any


class QPayAuthenticator:
    """Performs the client-credentials exchange against ``POST /auth/token``."""

    def __init__(
        self,
        settings: QPaySettings,
        token_store: TokenStore,
        session: requests.Session | None = None,
        clock: Clock = _utcnow,
    ) -> None:
        self.settings = settings
        self.token_store = token_store
        self._session = session or requests.Session()
        self._clock = clock

    def authenticate(self) -> Result[AccessToken, AuthError]:
        """
        Obtain a new access token and store it.

        QPay authenticates the merchant with HTTP Basic credentials and an
        empty body. Expected HTTP failures are returned, not raised.

        Returns:
            Result[AccessToken, AuthError]: The stored token, or the classified failure.
        """
        url = f"{self.settings.base_url}/auth/token"
        issued_at = self._clock()
        try:
            response = self._session.post(
                url,
                auth=(self.settings.username.strip(), self.settings.password.strip()),
                timeout=self.settings.request_timeout,
            )
        except requests.Timeout as e:
            logger.error("QPay token request timed out: %s", e)
            return Result.fail(AuthError(AuthErrorKind.NETWORK_ERROR, f"Timeout: {e}"))
        except requests.RequestException as e:
            logger.error("QPay token request failed: %s: %s", type(e).__name__, e)
            return Result.fail(AuthError(AuthErrorKind.NETWORK_ERROR, str(e)))

        if response.status_code != 200:
            return Result.fail(self._classify_failure(response))

        try:
            data = response.json()
        except ValueError:
            logger.error("QPay token response is not JSON (status=%s)", response.status_code)
            return Result.fail(
                AuthError(
                    AuthErrorKind.UNEXPECTED_RESPONSE,
                    "Token response is not valid JSON",
                    response.status_code,
                )
            )

        access_token = data.get("access_token") if isinstance(data, dict) else None
        expires_in = data.get("expires_in") if isinstance(data, dict) else None
        if (
            not isinstance(access_token, str)
            or not access_token
            or isinstance(expires_in, bool)
            or not isinstance(expires_in, (int, float))
        ):
            logger.error("QPay token response is missing access_token or expires_in")
            return Result.fail(
                AuthError(
                    AuthErrorKind.UNEXPECTED_RESPONSE,
                    "Token response is missing access_token or expires_in",
                    response.status_code,
                )
            )

        refresh_token = data.get("refresh_token")
        token = self.token_store.set(
            access_token,
            issued_at=issued_at,
            ttl_seconds=expires_in,
            refresh_token=refresh_token if isinstance(refresh_token, str) else None,
        )
        logger.info(
            "Obtained QPay access token: length=%d expires_at=%s",
            len(access_token),
            token.expires_at.isoformat(),
        )
        return Result.ok(token)

    def _classify_failure(self, response: requests.Response) -> AuthError:
        code = _error_code(response)
        status = response.status_code
        if status in (401, 403) or (400 <= status < 500 and code.upper() in BAD_CREDENTIAL_CODES):
            logger.error("QPay rejected merchant credentials: status=%s code=%s", status, code)
            return AuthError(
                AuthErrorKind.INVALID_CREDENTIALS,
                f"Invalid QPay credentials ({code or status})",
                status,
            )
        logger.error("Unexpected QPay token response: status=%s code=%s", status, code)
        return AuthError(
            AuthErrorKind.UNEXPECTED_RESPONSE,
            f"Unexpected token response: {status} {code}".strip(),
            status,
        )


class AuthenticatedRequestExecutor:
    """
    Issues bearer-authenticated requests to the gateway.

    A request is attempted at most ``max_attempts`` times. Only a 401 answer
    causes another attempt: the rejected token is discarded and a fresh one
    is obtained before retrying. Any other outcome ends the loop.
    """

    def __init__(
        self,
        settings: QPaySettings,
        token_store: TokenStore,
        authenticator: QPayAuthenticator,
        session: requests.Session | None = None,
        max_attempts: int | None = None,
    ) -> None:
        self.settings = settings
        self.token_store = token_store
        self.authenticator = authenticator
        self._session = session or requests.Session()
        self.max_attempts = max_attempts or settings.max_auth_attempts

    def _token(self) -> Result[AccessToken, AuthError]:
        token = self.token_store.valid_token()
        if token is not None:
            return Result.ok(token)
        return self.authenticator.authenticate()

    def execute(
        self, method: str, path: str, body: dict[str, Any] | None = None
    ) -> Result[GatewayResponse, RequestError]:
        """
        Execute ``method path`` against the gateway.

        Args:
            method (str): HTTP method.
            path (str): Path relative to the API URL, starting with ``/``.
            body (dict[str, Any] | None): JSON body.

        Returns:
            Result[GatewayResponse, RequestError]: The parsed response or the failure.
        """
        url = f"{self.settings.base_url}{path}"
        attempt = 0
        while attempt < self.max_attempts:
            attempt += 1
            token_result = self._token()
            if not token_result.is_success():
                return Result.fail(RequestError.from_auth_error(token_result.error))
            token = token_result.unwrap()

            try:
                response = self._session.request(
                    method,
                    url,
                    json=body,
                    headers={
                        "Authorization": f"Bearer {token.token}",
                        "Content-Type": "application/json",
                    },
                    timeout=self.settings.request_timeout,
                )
            except requests.Timeout as e:
                logger.error("QPay request timed out %s %s: %s", method, path, e)
                return Result.fail(RequestError(RequestErrorKind.TIMEOUT, f"Timeout: {e}"))
            except requests.RequestException as e:
                logger.error("QPay connection error %s %s: %s", method, path, e)
                return Result.fail(RequestError(RequestErrorKind.NETWORK_ERROR, str(e)))

            if response.status_code == 401:
                logger.warning(
                    "QPay rejected access token %s %s (attempt %d/%d)",
                    method,
                    path,
                    attempt,
                    self.max_attempts,
                )
                self.token_store.invalidate(token)
                continue

            if response.status_code >= 400:
                logger.error(
                    "QPay API error %s %s: status=%s body=%s",
                    method,
                    path,
                    response.status_code,
                    response.text,
                )
                return Result.fail(
                    RequestError(
                        RequestErrorKind.GATEWAY_ERROR,
                        f"QPay returned {response.status_code}",
                        status_code=response.status_code,
                        body=response.text,
                    )
                )

            return self._parse(method, path, response)

        logger.error("QPay authentication failed after %d attempts %s %s", attempt, method, path)
        return Result.fail(
            RequestError(
                RequestErrorKind.AUTHENTICATION_FAILED,
                f"Gateway rejected the access token {attempt} times",
                status_code=401,
            )
        )

    def _parse(
        self, method: str, path: str, response: requests.Response
    ) -> Result[GatewayResponse, RequestError]:
        if response.status_code == 204 or not response.content:
            return Result.ok(GatewayResponse(response.status_code, {}))
        try:
            data = response.json()
        except ValueError:
            logger.error("QPay returned non-JSON body for %s %s: %s", method, path, response.text)
            return Result.fail(
                RequestError(
                    RequestErrorKind.UNEXPECTED_RESPONSE,
                    "Gateway response is not valid JSON",
                    status_code=response.status_code,
                    body=response.text,
                )
            )
        return Result.ok(GatewayResponse(response.status_code, data))


class QPayClient:
    """Endpoint helpers for the QPay merchant API."""

    def __init__(self, settings: QPaySettings, executor: AuthenticatedRequestExecutor) -> None:
        self.settings = settings
        self.executor = executor

    @classmethod
    def from_settings(
        cls,
        settings: QPaySettings,
        token_store: TokenStore,
        session: requests.Session | None = None,
    ) -> "QPayClient":
        session = session or requests.Session()
        authenticator = QPayAuthenticator(settings, token_store, session)
        executor = AuthenticatedRequestExecutor(settings, token_store, authenticator, session)
        return cls(settings, executor)

    def create_invoice(self, payload: dict[str, Any]) -> Result[GatewayResponse, RequestError]:
        """``POST /invoice``; the configured invoice code is filled in when absent."""
        body = {"invoice_code": self.settings.invoice_code.strip(), **payload}
        return self.executor.execute("POST", "/invoice", body)

    def check_payment(
        self, invoice_id: str, page_number: int = 1, page_limit: int = 100
    ) -> Result[GatewayResponse, RequestError]:
        return self.executor.execute(
            "POST",
            "/payment/check",
            {
                "object_type": "INVOICE",
                "object_id": invoice_id,
                "offset": {"page_number": page_number, "page_limit": page_limit},
            },
        )

    def cancel_invoice(self, invoice_id: str) -> Result[GatewayResponse, RequestError]:
        return self.executor.execute("DELETE", f"/invoice/{invoice_id}")

    def get_payment(self, payment_id: str) -> Result[GatewayResponse, RequestError]:
        return self.executor.execute("GET", f"/payment/{payment_id}")
