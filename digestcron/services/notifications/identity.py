from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from digestcron.core.config import Settings, get_settings
from digestcron.core.errors import ServiceAuthError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ServiceCredentials:
    provider: str
    access_token: str | None = None


async def resolve_service_credentials(
    settings: Settings | None = None,
    *,
    client: httpx.AsyncClient | None = None,
) -> ServiceCredentials:
    """Establish the identity the scheduler sends mail as.

    The noop provider needs no credentials; a static access token is used as
    is; otherwise the refresh token is exchanged at the OAuth token endpoint.
    """
    settings = settings or get_settings()
    provider = settings.email_provider.lower()
    if provider == "noop":
        return ServiceCredentials(provider="noop")
    if settings.google_access_token:
        return ServiceCredentials(provider=provider, access_token=settings.google_access_token)
    if not settings.google_refresh_token:
        raise ServiceAuthError("missing_refresh_token", "No refresh token configured for the service account")
    form = {
        "grant_type": "refresh_token",
        "refresh_token": settings.google_refresh_token,
        "client_id": settings.google_client_id or "",
        "client_secret": settings.google_client_secret or "",
    }
    timeout_s = max(0.2, settings.ext_call_timeout_ms / 1000.0)
    try:
        if client is not None:
            response = await client.post(settings.google_token_url, data=form, timeout=timeout_s)
        else:
            async with httpx.AsyncClient(timeout=timeout_s) as owned:
                response = await owned.post(settings.google_token_url, data=form)
        response.raise_for_status()
        token = response.json().get("access_token")
    except (httpx.HTTPError, ValueError) as exc:
        logger.warning("service_token_exchange_failed error=%s", exc.__class__.__name__)
        raise ServiceAuthError("token_exchange_failed", "Unable to refresh the service access token") from exc
    if not token:
        raise ServiceAuthError("token_exchange_failed", "Token endpoint returned no access token")
    return ServiceCredentials(provider=provider, access_token=str(token))
