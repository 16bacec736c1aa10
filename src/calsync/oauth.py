"""Cloud OAuth contract: authorization URL, code exchange, refresh, user info.

Only the token-exchange side of the flow lives here; the interactive consent
step (opening a browser, receiving the redirect) belongs to the host
application, which hands the resulting authorization code to
:meth:`OAuthClient.exchange_code`.
"""

from __future__ import annotations

import logging
import secrets
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import urlencode

import httpx
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    ValidationError,
    ValidationInfo,
    field_validator,
)

from calsync.errors import OAuthExchangeError, TokenExpired, sanitize_error_message
from calsync.models import AccountUserInfo
from calsync.retry import RetryingRequestClient, safe_error_message

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
DEFAULT_REDIRECT_URI = "http://localhost:8080/oauth/callback"
OAUTH_SCOPES = (
    "https://www.googleapis.com/auth/calendar.readonly",
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/userinfo.profile",
)
# Refresh early to avoid edge-of-expiration failures.
ACCESS_TOKEN_EARLY_REFRESH_SECONDS = 60


class OAuthClientCredentials(BaseModel):
    """OAuth client registration used for every token exchange."""

    model_config = ConfigDict(extra="forbid")

    client_id: str = Field(min_length=1)
    client_secret: SecretStr
    redirect_uri: str = DEFAULT_REDIRECT_URI

    @field_validator("client_id", "redirect_uri")
    @classmethod
    def _normalize_non_empty(cls, value: str, info: ValidationInfo) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError(f"{info.field_name} must be a non-empty string")
        return normalized

    @field_validator("client_secret")
    @classmethod
    def _secret_non_empty(cls, value: SecretStr) -> SecretStr:
        if not value.get_secret_value().strip():
            raise ValueError("client_secret must be a non-empty string")
        return value


class TokenGrant(BaseModel):
    """Result of a code exchange or refresh. Secrets are redacted in reprs."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    access_token: SecretStr
    refresh_token: SecretStr | None = None
    expires_at: datetime


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return 3600
    if isinstance(value, int | float):
        return int(value) if value > 0 else 3600
    return 3600


class OAuthClient:
    """Talks to the OAuth token and user-info endpoints for one client registration."""

    def __init__(
        self,
        credentials: OAuthClientCredentials,
        http_client: httpx.AsyncClient,
        *,
        request_client: RetryingRequestClient | None = None,
        auth_url: str = GOOGLE_OAUTH_AUTH_URL,
        token_url: str = GOOGLE_OAUTH_TOKEN_URL,
        userinfo_url: str = GOOGLE_USERINFO_URL,
    ) -> None:
        self._credentials = credentials
        self._http_client = http_client
        self._requests = request_client or RetryingRequestClient(http_client)
        self._auth_url = auth_url
        self._token_url = token_url
        self._userinfo_url = userinfo_url

    @staticmethod
    def new_state() -> str:
        return secrets.token_urlsafe(32)

    def authorization_url(self, state: str) -> str:
        """Consent URL requesting offline access to the read-only calendar scopes."""
        params = {
            "client_id": self._credentials.client_id,
            "redirect_uri": self._credentials.redirect_uri,
            "response_type": "code",
            "scope": " ".join(OAUTH_SCOPES),
            "access_type": "offline",
            "prompt": "consent",
            "state": state,
        }
        return f"{self._auth_url}?{urlencode(params)}"

    async def _token_request(self, data: dict[str, str], *, action: str) -> dict[str, Any]:
        body = {
            "client_id": self._credentials.client_id,
            "client_secret": self._credentials.client_secret.get_secret_value(),
            **data,
        }
        try:
            response = await self._http_client.post(
                self._token_url, data=body, headers={"Accept": "application/json"}
            )
        except httpx.HTTPError as exc:
            raise OAuthExchangeError(
                f"OAuth token {action} request failed: {type(exc).__name__}"
            ) from exc

        if response.status_code < 200 or response.status_code >= 300:
            message = safe_error_message(response)
            if action == "refresh" and "invalid_grant" in message:
                raise TokenExpired(f"Refresh token was rejected: {sanitize_error_message(message)}")
            raise OAuthExchangeError(
                f"OAuth token {action} failed ({response.status_code}): "
                f"{sanitize_error_message(message)}"
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise OAuthExchangeError("OAuth token endpoint returned invalid JSON") from exc
        if not isinstance(payload, dict):
            raise OAuthExchangeError("OAuth token endpoint returned an unexpected payload shape")
        return payload

    def _grant_from_payload(self, payload: dict[str, Any]) -> TokenGrant:
        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token.strip():
            raise OAuthExchangeError("OAuth token response is missing a non-empty access_token")
        refresh_token = payload.get("refresh_token")
        if not isinstance(refresh_token, str) or not refresh_token.strip():
            refresh_token = None
        expires_in = _coerce_expires_in_seconds(payload.get("expires_in"))
        return TokenGrant(
            access_token=SecretStr(access_token.strip()),
            refresh_token=SecretStr(refresh_token.strip()) if refresh_token else None,
            expires_at=datetime.now(UTC) + timedelta(seconds=expires_in),
        )

    async def exchange_code(self, code: str) -> TokenGrant:
        """Exchange an authorization code; the grant must include a refresh token."""
        if not code or not code.strip():
            raise ValueError("code must be a non-empty string")
        payload = await self._token_request(
            {
                "code": code.strip(),
                "redirect_uri": self._credentials.redirect_uri,
                "grant_type": "authorization_code",
            },
            action="exchange",
        )
        grant = self._grant_from_payload(payload)
        if grant.refresh_token is None:
            raise OAuthExchangeError(
                "No refresh token received; revoke the app's access and connect again"
            )
        return grant

    async def refresh(self, refresh_token: SecretStr) -> TokenGrant:
        """Mint a new access token. ``refresh_token`` on the grant is set only if rotated."""
        payload = await self._token_request(
            {
                "refresh_token": refresh_token.get_secret_value(),
                "grant_type": "refresh_token",
            },
            action="refresh",
        )
        return self._grant_from_payload(payload)

    async def fetch_user_info(self, access_token: SecretStr) -> AccountUserInfo:
        payload = await self._requests.get_json(
            self._userinfo_url,
            headers={"Authorization": f"Bearer {access_token.get_secret_value()}"},
        )
        try:
            return AccountUserInfo(
                email=payload.get("email") or "",
                display_name=payload.get("name"),
            )
        except ValidationError as exc:
            raise OAuthExchangeError("User info response has no valid email address") from exc
