"""In-process storage for the gateway access token."""

import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

DEFAULT_SAFETY_MARGIN = timedelta(minutes=5)


@dataclass(frozen=True)
class AccessToken:
    """
    An OAuth2 access token issued by the payment gateway.

    Attributes:
        token (str): Opaque bearer token. Hidden from ``repr``.
        issued_at (datetime): When the token was obtained.
        expires_at (datetime): ``issued_at`` plus the lifetime reported by the gateway.
        refresh_token (str | None): Refresh token, when the gateway returns one.
    """

    token: str = field(repr=False)
    issued_at: datetime
    expires_at: datetime
    refresh_token: str | None = field(default=None, repr=False)

    def is_valid(self, now: datetime, margin: timedelta = DEFAULT_SAFETY_MARGIN) -> bool:
        return now < self.expires_at - margin


class TokenStore:
    """
    Holds the current access token for one gateway client.

    The token and its expiry are always replaced together under a lock, so a
    reader never sees a token paired with another token's expiry. Tokens are
    superseded, never mutated; concurrent refreshes simply race and the last
    writer wins.
    """

    def __init__(self, safety_margin: timedelta = DEFAULT_SAFETY_MARGIN) -> None:
        self.safety_margin = safety_margin
        self._lock = threading.Lock()
        self._token: AccessToken | None = None

    @property
    def current(self) -> AccessToken | None:
        with self._lock:
            return self._token

    def is_valid(self, now: datetime | None = None) -> bool:
        return self.valid_token(now) is not None

    def valid_token(self, now: datetime | None = None) -> AccessToken | None:
        """Return the held token if it is still inside its validity window."""
        now = now or datetime.now(UTC)
        with self._lock:
            token = self._token
        if token is not None and token.is_valid(now, self.safety_margin):
            return token
        return None

    def set(
        self,
        token: str,
        issued_at: datetime,
        ttl_seconds: float,
        refresh_token: str | None = None,
    ) -> AccessToken:
        access_token = AccessToken(
            token=token,
            issued_at=issued_at,
            expires_at=issued_at + timedelta(seconds=ttl_seconds),
            refresh_token=refresh_token,
        )
        with self._lock:
            self._token = access_token
        return access_token

    def clear(self) -> None:
        with self._lock:
            self._token = None

    def invalidate(self, token: AccessToken) -> bool:
        """
        Clear the store only if it still holds ``token``.

        Used after a 401 so that a rejected token is discarded without
        throwing away a fresh token another request stored meanwhile.

        Returns:
            bool: True if the token was discarded.
        """
        with self._lock:
            if self._token is token:
                self._token = None
                return True
            return False
