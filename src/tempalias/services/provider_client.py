"""Mail-forwarding provider client.

This module provides an httpx-based client for the provider REST API to:
- Verify an API key (account lookup)
- Create and delete forwarding aliases on a domain
- Fetch delivery logs for a domain

Authentication is HTTP basic auth with the fixed user ``api`` and the
user's API key as password. The key is passed through unchanged.

Example:
    config = ProviderConfig(api_key="sk_xxx")
    async with ProviderClient(config) as client:
        created = await client.create_alias("example.com", "a1b2c3", "me@gmail.com")
        logs = await client.fetch_logs("example.com")
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from tempalias.core.config import DEFAULT_PROVIDER_URL
from tempalias.db.models.base import DeliveryStatus

if TYPE_CHECKING:
    from tempalias.core.config import ProviderSettings

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0

# Basic-auth user name expected by the provider
API_USER = "api"

SAME_DOMAIN_PROVIDER_MESSAGE = "You cannot use your domain in your email"
SAME_DOMAIN_USER_MESSAGE = "Cannot forward to your own domain email"


@dataclass(frozen=True)
class ProviderConfig:
    """Configuration for the provider client."""

    api_key: str
    base_url: str = DEFAULT_PROVIDER_URL
    timeout: float = DEFAULT_TIMEOUT

    @classmethod
    def from_settings(
        cls, settings: ProviderSettings, api_key: str | None = None
    ) -> ProviderConfig:
        """Create config from ProviderSettings, optionally overriding the key."""
        key = api_key
        if key is None and settings.api_key is not None:
            key = settings.api_key.get_secret_value()
        if not key:
            msg = "An API key is required to talk to the provider"
            raise ValueError(msg)
        return cls(api_key=key, base_url=settings.base_url, timeout=settings.timeout)


# =============================================================================
# Wire models
# =============================================================================


class LogParty(BaseModel):
    """Sender or recipient of a logged message."""

    model_config = ConfigDict(extra="ignore")

    email: str | None = None
    name: str | None = None


class LogEvent(BaseModel):
    """One delivery event of a logged message."""

    model_config = ConfigDict(extra="ignore")

    status: str | None = None
    message: str | None = None


class MailLog(BaseModel):
    """A delivery log entry as returned by the provider."""

    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    subject: str | None = None
    sender: LogParty | None = None
    recipient: LogParty | None = None
    created: datetime | None = None
    events: list[LogEvent] = Field(default_factory=list)

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v: Any) -> Any:
        return str(v) if v is not None else None

    @property
    def sender_email(self) -> str | None:
        return self.sender.email if self.sender else None

    @property
    def recipient_email(self) -> str | None:
        return self.recipient.email if self.recipient else None

    @property
    def recipient_local_part(self) -> str:
        """Local part of the recipient address (empty when unknown)."""
        return (self.recipient_email or "").split("@")[0]

    @property
    def delivery_status(self) -> DeliveryStatus:
        """Status of the most recent delivery event."""
        if not self.events or not self.events[-1].status:
            return DeliveryStatus.UNKNOWN
        try:
            return DeliveryStatus(self.events[-1].status.upper())
        except ValueError:
            return DeliveryStatus.UNKNOWN


class LogsResponse(BaseModel):
    """Response body of the logs endpoint."""

    model_config = ConfigDict(extra="ignore")

    logs: list[MailLog] = Field(default_factory=list)


@dataclass(frozen=True)
class CreatedAlias:
    """Result of a successful remote alias creation."""

    success: bool
    alias_remote_id: str | None


# =============================================================================
# Errors
# =============================================================================


class ProviderError(Exception):
    """Base exception for provider client errors.

    Attributes:
        message: Human-readable message, the provider's own where available.
        status_code: HTTP status code if the provider answered.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class ProviderConnectionError(ProviderError):
    """Failed to reach the provider."""


class ProviderAuthError(ProviderError):
    """The provider rejected the API key."""


class ProviderNotFoundError(ProviderError):
    """Domain or alias not found at the provider."""


def _error_message(response: httpx.Response) -> str:
    """Extract the provider's error messages from a failed response.

    The provider reports errors as ``{"errors": {"field": ["msg", ...]}}``.
    """
    try:
        data = response.json()
    except ValueError:
        return "API error"

    errors = data.get("errors") if isinstance(data, dict) else None
    if not errors:
        return "API error"

    messages: list[str] = []
    values = errors.values() if isinstance(errors, dict) else errors
    for value in values:
        if isinstance(value, list):
            messages.extend(str(v) for v in value)
        else:
            messages.append(str(value))

    message = ", ".join(messages) or "API error"
    if SAME_DOMAIN_PROVIDER_MESSAGE in message:
        return SAME_DOMAIN_USER_MESSAGE
    return message


# =============================================================================
# Client
# =============================================================================


class ProviderClient:
    """Client for the provider REST API.

    Must be used as an async context manager so the underlying connection
    pool is opened and closed deterministically.
    """

    def __init__(self, config: ProviderConfig) -> None:
        self._config = config
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> ProviderClient:
        self._client = httpx.AsyncClient(
            base_url=self._config.base_url,
            timeout=self._config.timeout,
            auth=httpx.BasicAuth(API_USER, self._config.api_key),
            headers={"Content-Type": "application/json"},
        )
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the HTTP client if open."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        """Get the HTTP client, raising if not in context."""
        if self._client is None:
            msg = "ProviderClient must be used as async context manager"
            raise RuntimeError(msg)
        return self._client

    @staticmethod
    def _domain_path(domain: str) -> str:
        return f"/domains/{quote(domain, safe='')}"

    def _alias_path(self, domain: str, name: str) -> str:
        return f"{self._domain_path(domain)}/aliases/{quote(name, safe='')}"

    async def _request(
        self,
        method: str,
        url: str,
        *,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Send a request and map failures onto the ProviderError hierarchy."""
        client = self._get_client()
        try:
            response = await client.request(method, url, json=json_body)
        except httpx.ConnectError as e:
            msg = f"Cannot connect to provider at {self._config.base_url}"
            raise ProviderConnectionError(msg) from e
        except httpx.TimeoutException as e:
            msg = f"Provider request timed out: {method} {url}"
            raise ProviderConnectionError(msg) from e
        except httpx.HTTPError as e:
            msg = f"Provider request failed: {e}"
            raise ProviderError(msg) from e

        if response.is_success:
            try:
                data = response.json()
            except ValueError:
                return {}
            return data if isinstance(data, dict) else {}

        message = _error_message(response)
        status = response.status_code
        if status in (401, 403):
            raise ProviderAuthError(message, status_code=status)
        if status == 404:
            raise ProviderNotFoundError(message, status_code=status)
        raise ProviderError(message, status_code=status)

    async def get_account(self) -> dict[str, Any]:
        """Fetch the account the API key belongs to.

        Used to verify a credential at login.

        Raises:
            ProviderAuthError: The key was rejected.
            ProviderConnectionError: The provider is unreachable.
        """
        return await self._request("GET", "/account")

    async def create_alias(self, domain: str, name: str, forward: str) -> CreatedAlias:
        """Create a forwarding alias ``name@domain`` -> ``forward``.

        Raises:
            ProviderError: The provider rejected the alias.
        """
        data = await self._request(
            "POST",
            f"{self._domain_path(domain)}/aliases",
            json_body={"alias": name, "forward": forward},
        )
        if not data.get("success"):
            msg = f"Provider did not confirm creation of {name}@{domain}"
            raise ProviderError(msg)

        alias = data.get("alias") or {}
        remote_id = alias.get("id") if isinstance(alias, dict) else None
        logger.info("Alias created at provider: alias=%s@%s", name, domain)
        return CreatedAlias(
            success=True,
            alias_remote_id=str(remote_id) if remote_id is not None else None,
        )

    async def delete_alias(self, domain: str, name: str) -> None:
        """Delete the alias ``name@domain`` at the provider.

        Raises:
            ProviderNotFoundError: The alias no longer exists.
            ProviderError: The provider rejected the deletion.
        """
        await self._request("DELETE", self._alias_path(domain, name))
        logger.info("Alias deleted at provider: alias=%s@%s", name, domain)

    async def fetch_logs(self, domain: str) -> list[MailLog]:
        """Fetch all delivery logs for a domain.

        Raises:
            ProviderError: The request failed or the payload is malformed.
        """
        data = await self._request("GET", f"{self._domain_path(domain)}/logs")
        try:
            return LogsResponse.model_validate(data).logs
        except ValidationError as e:
            msg = f"Malformed logs payload for domain {domain}"
            raise ProviderError(msg) from e
