"""
Data Source Providers
Clients and normalizers for the monitored collaboration platforms (Gmail, Office 365, Teams)
"""
from typing import Dict

import httpx

from app.core.config import settings
from app.models.schemas.sync import Provider
from app.services.sync.oauth import NangoTokenProvider
from app.services.sync.providers.base import ProviderClient, ProviderHttpClient, mailbox_contexts
from app.services.sync.providers.gmail import GmailClient, normalize_gmail_message
from app.services.sync.providers.office365 import Office365Client, normalize_office365_message
from app.services.sync.providers.teams import TeamsClient, normalize_teams_message


def build_provider_clients(http_client: httpx.AsyncClient) -> Dict[Provider, ProviderClient]:
    """
    Provider clients wired to Nango tokens from settings.

    Missing Nango configuration does not fail here; the first token request
    raises ConfigurationError instead.
    """
    return {
        Provider.GMAIL: GmailClient(
            http_client,
            NangoTokenProvider(http_client, settings.nango_provider_key_gmail, settings.nango_connection_id_gmail),
            domain=settings.google_workspace_domain,
        ),
        Provider.OFFICE365: Office365Client(
            http_client,
            NangoTokenProvider(http_client, settings.nango_provider_key_office365, settings.nango_connection_id_office365),
        ),
        Provider.TEAMS: TeamsClient(
            http_client,
            NangoTokenProvider(http_client, settings.nango_provider_key_teams, settings.nango_connection_id_teams),
            teams_per_batch=settings.sync_teams_per_batch,
            pacing=settings.sync_batch_delay_seconds,
        ),
    }


__all__ = [
    "ProviderClient",
    "ProviderHttpClient",
    "mailbox_contexts",
    "GmailClient",
    "Office365Client",
    "TeamsClient",
    "normalize_gmail_message",
    "normalize_office365_message",
    "normalize_teams_message",
    "build_provider_clients",
]
