"""Service wiring for the HTTP API.

Provides:
- ``OraServices``: the store, HTTP client and domain services one app uses.
- ``IdentityVerifier``: turns a bearer ID token into a uid.
- ``init_services()`` / ``shutdown_services()`` called from the app lifespan,
  and ``get_services()`` as the FastAPI dependency used by the routers.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

import httpx

from ora.calendar.oauth import GoogleTokenEndpoint
from ora.calendar.provider import GoogleCalendarClient, TokenSource
from ora.calendar.sync import CalendarSyncOrchestrator
from ora.config import OraConfig
from ora.consent.flow import ConsentFlow
from ora.errors import NoClientConfigError
from ora.store.base import DocumentStore

logger = logging.getLogger(__name__)


class IdentityVerifier(Protocol):
    async def verify_id_token(self, token: str) -> str:
        """Return the uid for *token*; raise ``AuthRequiredError`` when invalid."""
        ...


@dataclass
class OraServices:
    config: OraConfig
    store: DocumentStore
    http_client: httpx.AsyncClient
    identity_verifier: IdentityVerifier | None = None
    token_endpoint: GoogleTokenEndpoint | None = None
    owns_http_client: bool = False

    @property
    def consent_configured(self) -> bool:
        return bool(self.config.google.client_id and self.config.state_secret)

    def _calendar_client(self, source: TokenSource) -> GoogleCalendarClient:
        return GoogleCalendarClient(
            source,
            self.http_client,
            default_event_minutes=self.config.calendar.default_event_minutes,
        )

    def consent_flow(self) -> ConsentFlow:
        client_id = self.config.google.client_id
        if self.token_endpoint is None or not self.config.state_secret or not client_id:
            raise NoClientConfigError("Missing OAuth server configuration.")
        return ConsentFlow(
            self.store,
            self.token_endpoint,
            client_id=client_id,
            state_secret=self.config.state_secret,
            client_factory=self._calendar_client,
            defaults=self.config.calendar,
        )

    def orchestrator(self) -> CalendarSyncOrchestrator:
        return CalendarSyncOrchestrator(
            self.store,
            token_endpoint=self.token_endpoint,
            http_client=self.http_client,
            defaults=self.config.calendar,
        )


def build_services(
    config: OraConfig,
    store: DocumentStore,
    *,
    identity_verifier: IdentityVerifier | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> OraServices:
    """Assemble services; the token endpoint is left out when the client is unconfigured."""
    client = http_client or httpx.AsyncClient(timeout=30.0)
    endpoint = None
    if config.google.configured:
        endpoint = GoogleTokenEndpoint(
            client,
            client_id=config.google.client_id,
            client_secret=config.google.client_secret,
        )
    else:
        logger.warning("Google OAuth client is not configured; consent and sync are disabled")
    return OraServices(
        config=config,
        store=store,
        http_client=client,
        identity_verifier=identity_verifier,
        token_endpoint=endpoint,
        owns_http_client=http_client is None,
    )


_services: OraServices | None = None


def init_services(services: OraServices) -> OraServices:
    global _services  # noqa: PLW0603
    _services = services
    return services


async def shutdown_services() -> None:
    global _services  # noqa: PLW0603
    if _services is not None and _services.owns_http_client:
        await _services.http_client.aclose()
    _services = None


def get_services() -> OraServices:
    """FastAPI dependency: provides the OraServices singleton."""
    if _services is None:
        raise RuntimeError("OraServices not initialized; call init_services() first")
    return _services
