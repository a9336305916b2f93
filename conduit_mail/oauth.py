"""Guarded OAuth2 access-token refresh for mail accounts.

The access token is the one piece of mutable state concurrent invocations
share.  :meth:`TokenRefresher.access_token` therefore runs the whole
read-check-refresh-write sequence inside one transaction holding the
account row (``SELECT ... FOR UPDATE``): a second invocation blocks on the
row, then re-reads the freshly committed token and skips its own refresh.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime, timedelta

import httpx
import structlog
from sqlalchemy import select

from conduit_pipeline.config import RetryConfig
from conduit_pipeline.db import Database, MailAccount
from conduit_pipeline.errors import ConfigurationError, TokenRefreshError
from conduit_pipeline.retry import with_retry

from .config import OAuthConfig

logger = structlog.get_logger()


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=UTC)


class TokenRefresher:
    def __init__(
        self,
        db: Database,
        config: OAuthConfig,
        retry: RetryConfig | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._db = db
        self._config = config
        self._client = http_client
        self._post = with_retry(
            retry or RetryConfig(),
            retryable_exceptions=(httpx.TransportError,),
        )(self._post_refresh)

    def needs_refresh(self, expires_at: datetime | None, now: datetime | None = None) -> bool:
        if expires_at is None:
            return True
        now = now or datetime.now(UTC)
        margin = timedelta(seconds=self._config.refresh_margin_seconds)
        return _aware(expires_at) <= now + margin

    async def access_token(self, account_id: uuid.UUID) -> str:
        """Return a usable access token for *account_id*, refreshing it first if needed."""
        async with self._db.session() as session:
            account = (
                await session.execute(
                    select(MailAccount).where(MailAccount.id == account_id).with_for_update()
                )
            ).scalar_one_or_none()
            if account is None:
                raise ConfigurationError(f"Mail account {account_id} not found")

            if account.access_token and not self.needs_refresh(account.token_expires_at):
                return account.access_token

            if not account.refresh_token:
                raise TokenRefreshError(f"Mail account {account.address} has no refresh token")

            payload = await self._refresh(account.refresh_token)
            account.access_token = payload["access_token"]
            account.token_expires_at = datetime.now(UTC) + timedelta(
                seconds=int(payload.get("expires_in", 3600)),
            )
            if payload.get("refresh_token"):
                account.refresh_token = payload["refresh_token"]
            await session.commit()

            logger.info(
                "oauth_token_refreshed",
                account_id=str(account_id),
                expires_at=account.token_expires_at.isoformat(),
            )
            return account.access_token

    async def _refresh(self, refresh_token: str) -> dict:
        form = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self._config.client_id,
            "client_secret": self._config.client_secret.get_secret_value(),
        }
        try:
            response = await self._post(form)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as exc:
            raise TokenRefreshError(
                f"Token endpoint returned {exc.response.status_code}: {exc.response.text[:200]}"
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise TokenRefreshError(f"Token refresh failed: {exc}") from exc

        if not isinstance(payload, dict) or "access_token" not in payload:
            raise TokenRefreshError("Token endpoint response has no access_token")
        return payload

    async def _post_refresh(self, form: dict) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(self._config.token_url, data=form)
        async with httpx.AsyncClient(timeout=self._config.timeout_seconds) as client:
            return await client.post(self._config.token_url, data=form)
