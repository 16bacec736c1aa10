"""Shared Pydantic response/request models for the calsync API.

Every successful response follows ``{"data": T, "meta": {...}}``; every error
follows ``{"error": {"code": "...", "message": "...", "source": "..."}}``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field, SecretStr
from pydantic.alias_generators import to_camel

from calsync.models import AccountUserInfo

# ---------------------------------------------------------------------------
# Base response wrappers
# ---------------------------------------------------------------------------


class ApiMeta(BaseModel):
    """Extensible metadata bag attached to every API response."""

    model_config = {"extra": "allow"}


T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    """Generic API response wrapper."""

    data: T
    meta: ApiMeta = Field(default_factory=ApiMeta)


class ErrorDetail(BaseModel):
    """Structured error payload."""

    code: str
    message: str
    source: str | None = None
    details: dict | None = None


class ErrorResponse(BaseModel):
    """Standard error response envelope."""

    error: ErrorDetail


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------


class _RequestModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class AddAccountRequest(_RequestModel):
    """Connect an account from an already-obtained refresh token.

    ``user_info`` is optional; when absent it is fetched from the provider.
    """

    refresh_token: SecretStr
    user_info: AccountUserInfo | None = None
    token_expiry: datetime | None = None


class OAuthCallbackRequest(_RequestModel):
    code: str = Field(min_length=1)
    state: str | None = None


class ImportFileRequest(_RequestModel):
    path: str = Field(min_length=1)


class AuthorizationUrl(BaseModel):
    url: str
    state: str


class RemovedAccount(BaseModel):
    email: str
    removed: bool


class ImportedFile(BaseModel):
    path: str
    name: str


class CacheInvalidated(BaseModel):
    invalidated: bool = True
