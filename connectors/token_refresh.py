"""
Token refresh with retry/backoff.

Transient failures (HTTP 408 / 429 / 5xx, network errors) are retried
with the configured delays; anything else means the stored grant is no
longer usable and the caller must send the user through OAuth again.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

import httpx

from config.settings import Settings, config
from connectors.errors import (
    ConfigurationError,
    ProviderNotFoundError,
    ReauthRequiredError,
    RetryableProviderError,
    UnsupportedOperationError,
)
from connectors.registry import ProviderRegistry
from connectors.schemas import Integration, TokenData

logger = logging.getLogger(__name__)

_PASS_THROUGH = (ConfigurationError, UnsupportedOperationError, ProviderNotFoundError)


def is_retryable_error(exc: BaseException) -> bool:
    if isinstance(exc, RetryableProviderError):
        return True
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        code = exc.response.status_code
        return code in (408, 429) or 500 <= code < 600
    return False


class TokenRefreshManager:
    """Refresh tokens through a provider, retrying transient failures."""

    def __init__(
        self,
        registry: ProviderRegistry,
        settings: Settings = config,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._registry = registry
        self._threshold = timedelta(seconds=settings.token_refresh_threshold_seconds)
        self._max_attempts = max(1, settings.token_refresh_max_attempts)
        self._delays = list(settings.token_refresh_retry_delays) or [1.0]
        self._sleep = sleep

    def should_refresh_token(self, token: TokenData, now: Optional[datetime] = None) -> bool:
        return self.is_within_refresh_window(token.expires_at, now)

    def is_within_refresh_window(
        self, expires_at: Optional[datetime], now: Optional[datetime] = None
    ) -> bool:
        if expires_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        return expires_at - self._threshold <= now < expires_at

    @staticmethod
    def is_token_expired(token: TokenData, now: Optional[datetime] = None) -> bool:
        if token.expires_at is None:
            return False
        return (now or datetime.now(timezone.utc)) >= token.expires_at

    def _delay_for(self, attempt: int) -> float:
        return self._delays[min(attempt, len(self._delays) - 1)]

    async def refresh_token_with_retry(
        self,
        provider_name: str,
        refresh_token: str,
        attempt: int = 0,
        integration: Optional[Integration] = None,
    ) -> TokenData:
        """
        Refresh ``refresh_token`` with ``provider_name``.

        When ``integration`` is given the provider may use its config
        (e.g. a self-hosted instance URL) to reach the token endpoint.

        Raises
        ------
        RetryableProviderError  transient failures persisted past the last attempt
        ReauthRequiredError     the provider rejected the grant
        ConfigurationError / UnsupportedOperationError / ProviderNotFoundError
                                passed through unchanged
        """
        provider = self._registry.get(provider_name)

        while True:
            try:
                if integration is None:
                    token = await provider.refresh_token(refresh_token)
                else:
                    token = await provider.refresh_integration_token(
                        refresh_token, integration
                    )
            except _PASS_THROUGH:
                raise
            except Exception as exc:
                if not is_retryable_error(exc):
                    logger.warning(
                        "%s token refresh rejected, reauthorization required: %s",
                        provider_name,
                        exc,
                    )
                    raise ReauthRequiredError(
                        f"{provider_name} token refresh failed: {exc}"
                    ) from exc

                if attempt + 1 >= self._max_attempts:
                    logger.error(
                        "%s token refresh failed after %d attempts: %s",
                        provider_name,
                        attempt + 1,
                        exc,
                    )
                    if isinstance(exc, RetryableProviderError):
                        raise
                    raise RetryableProviderError(
                        f"{provider_name} token refresh failed after {attempt + 1} attempts: {exc}"
                    ) from exc

                delay = self._delay_for(attempt)
                logger.warning(
                    "%s token refresh attempt %d/%d failed (%s), retrying in %.1fs",
                    provider_name,
                    attempt + 1,
                    self._max_attempts,
                    exc,
                    delay,
                )
                await self._sleep(delay)
                attempt += 1
                continue

            if not token.access_token:
                raise ReauthRequiredError(
                    f"{provider_name} token refresh returned no access token"
                )
            return token
