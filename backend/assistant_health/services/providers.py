"""Registry of the providers that support OAuth connection and API sync."""

import httpx

from assistant_health.errors import UnsupportedProvider
from assistant_health.services.fitbit_client import FitbitClient
from assistant_health.services.google_fit_client import GoogleFitClient
from assistant_health.services.provider_base import ProviderClient

PROVIDER_CLIENTS: dict[str, type[ProviderClient]] = {
    FitbitClient.provider: FitbitClient,
    GoogleFitClient.provider: GoogleFitClient,
}


def get_provider_client(provider: str, http_client: httpx.AsyncClient) -> ProviderClient:
    client_cls = PROVIDER_CLIENTS.get(provider)
    if client_cls is None:
        raise UnsupportedProvider("Unsupported provider")
    return client_cls(http_client)
