"""OAuth2 client-credentials token cache for the Halaxy API."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

import httpx

from bloom.core.settings import HalaxyConfig
from bloom.services.halaxy.errors import ConfigurationError, UpstreamAuthError

logger = logging.getLogger(__name__)

TOKEN_EXPIRY_BUFFER_SECONDS = 120


@dataclass(frozen=True)
class TokenStatus:
    has_token: bool
    expires_at: str | None
    is_expired: bool

    def as_dict(self) -> dict[str, object]:
        return {
            "hasToken": self.has_token,
            "expiresAt": self.expires_at,
            "isExpired": self.is_expired,
        }


class TokenManager:
    def __init__(
        self,
        config: HalaxyConfig | None,
        http_client: httpx.Client,
        *,
        clock: Callable[[], float] = time.time,
        buffer_seconds: float = TOKEN_EXPIRY_BUFFER_SECONDS,
    ) -> None:
        self._config = config
        self._http = http_client
        self._clock = clock
        self._buffer_seconds = buffer_seconds
        self._token: str | None = None
        self._expires_at: float | None = None

    def has_credentials(self) -> bool:
        config = self._config
        return bool(config and config.client_id and config.client_secret)

    def get_access_token(self) -> str:
        if self._token is not None and self._is_fresh(self._clock()):
            return self._token

        if not self.has_credentials():
            raise ConfigurationError(
                "Missing Halaxy credentials. Set HALAXY_CLIENT_ID and HALAXY_CLIENT_SECRET."
            )

        config = self._config
        logger.info("Fetching new Halaxy access token")
        response = self._http.post(
            config.token_url,
            json={
                "grant_type": "client_credentials",
                "client_id": config.client_id,
                "client_secret": config.client_secret,
            },
            headers={"Accept": "application/json", "Content-Type": "application/json"},
            timeout=config.request_timeout_seconds,
        )
        if not response.is_success:
            raise UpstreamAuthError(response.status_code, response.text)

        payload = response.json()
        token = payload.get("access_token")
        if not token:
            raise UpstreamAuthError(response.status_code, "Token response missing access_token")
        expires_in = float(payload.get("expires_in") or 0)

        self._token = token
        self._expires_at = self._clock() + expires_in
        logger.info("Halaxy token obtained, expires at %s", _format_instant(self._expires_at))
        return token

    def invalidate_token(self) -> None:
        if self._token is not None:
            logger.info("Halaxy token invalidated")
        self._token = None
        self._expires_at = None

    def get_token_status(self) -> TokenStatus:
        if self._expires_at is None:
            return TokenStatus(has_token=self._token is not None, expires_at=None, is_expired=True)
        return TokenStatus(
            has_token=self._token is not None,
            expires_at=_format_instant(self._expires_at),
            is_expired=not self._is_fresh(self._clock()),
        )

    def _is_fresh(self, now: float) -> bool:
        if self._expires_at is None:
            return False
        return now < self._expires_at - self._buffer_seconds


def _format_instant(epoch_seconds: float) -> str:
    return datetime.fromtimestamp(epoch_seconds, tz=timezone.utc).isoformat()
