"""
Microsoft Teams provider
Team → channel enumeration and channel message paging via Microsoft Graph

Every channel is its own principal. Channel messages are always inbound to
the channel: the owner account is the channel's email address (or a synthetic
'teams:<team>:<channel>' address when Graph exposes none).
"""
import logging
from typing import Any, Dict, List, Optional

import httpx

from app.models.schemas.sync import (
    FOLDER_CHANNEL,
    ActivityPage,
    AttachmentInfo,
    CanonicalMessage,
    ConnectionTestResult,
    FetchContext,
    Principal,
    PrincipalKind,
    Provider,
    RawItem,
)
from app.services.sync.errors import AuthFailure, NormalizationError, SyncCancelled
from app.services.sync.normalization import (
    build_participants,
    direction_for_folder,
    owner_email_for,
    strip_html,
)
from app.services.sync.oauth import TokenProvider
from app.services.sync.providers.base import ProviderHttpClient
from app.services.sync.providers.office365 import GRAPH_API, parse_graph_datetime
from app.services.sync.scheduler import BatchScheduler

logger = logging.getLogger(__name__)

# Graph caps channel message pages at 50
MAX_CHANNEL_PAGE = 50


def _sender(message: Dict[str, Any]) -> tuple:
    """(address, display name) of a channel message author."""
    origin = message.get("from") or {}
    user = origin.get("user") or {}
    if user:
        address = user.get("mail") or user.get("userPrincipalName") or user.get("id") or ""
        return address, user.get("displayName") or ""
    application = origin.get("application") or {}
    if application.get("id"):
        return f"app:{application['id']}", application.get("displayName") or ""
    return "", ""


# ============================================================================
# NORMALIZATION
# ============================================================================

def normalize_teams_message(raw_item: RawItem, principal: Principal, context: FetchContext) -> CanonicalMessage:
    message = raw_item.payload
    message_id = message.get("id")
    if not message_id:
        raise NormalizationError("Teams message has no id", unit=principal.label)

    owner = owner_email_for(principal)
    direction = direction_for_folder(raw_item.folder)
    address, name = _sender(message)
    sender_email, sender_name, recipient_emails = build_participants(
        direction, owner, principal, address, [], from_name=name
    )

    body = message.get("body") or {}
    content = body.get("content") or ""
    if (body.get("contentType") or "").lower() == "html":
        body_html = content
        body_text = strip_html(content)
    else:
        body_html = None
        body_text = content

    sent_at = parse_graph_datetime(message.get("createdDateTime"))
    if sent_at is None:
        raise NormalizationError(f"Teams message {message_id} has no createdDateTime", unit=principal.label)

    # Teams attachments carry no size; reference attachments point at SharePoint files
    attachments = [
        AttachmentInfo(name=attachment["name"], content_type=attachment.get("contentType"))
        for attachment in message.get("attachments") or []
        if attachment.get("name")
    ]

    return CanonicalMessage(
        provider=Provider.TEAMS,
        provider_message_id=message_id,
        owner_account_email=owner,
        principal_id=principal.id,
        thread_id=message.get("replyToId") or message_id,
        sender_email=sender_email,
        sender_name=sender_name,
        recipient_emails=recipient_emails,
        subject=message.get("subject") or f"Teams message in {principal.display_name or principal.id}",
        body_text=body_text,
        body_html=body_html,
        sent_at=sent_at,
        has_attachments=bool(attachments),
        attachments=attachments,
        attachment_count=len(attachments),
        direction=direction,
    )


# ============================================================================
# TEAMS CLIENT
# ============================================================================

class TeamsClient:
    """
    Teams channels through Microsoft Graph.

    Channel listing is fanned out across teams with its own bound
    (`teams_per_batch`), separate from the orchestrator's principal bound.
    """

    provider = Provider.TEAMS

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        token_provider: TokenProvider,
        teams_per_batch: int = 5,
        pacing: float = 1.0,
        **http_options
    ):
        self.graph = ProviderHttpClient(http_client, token_provider, **http_options)
        self.team_scheduler = BatchScheduler(
            teams_per_batch,
            pacing,
            fatal_exceptions=(AuthFailure,),
            label="teams"
        )

    async def _get_all(self, url: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        values: List[Dict[str, Any]] = []
        next_url: Optional[str] = url
        while next_url:
            data = await self.graph.get_json(next_url, params)
            values.extend(data.get("value", []))
            next_url = data.get("@odata.nextLink")
            params = None
        return values

    async def list_teams(self) -> List[Dict[str, Any]]:
        teams = await self._get_all(f"{GRAPH_API}/teams", {"$select": "id,displayName,description"})
        logger.info(f"✅ Retrieved {len(teams)} teams")
        return teams

    async def list_channels(self, team: Dict[str, Any]) -> List[Principal]:
        channels = await self._get_all(
            f"{GRAPH_API}/teams/{team['id']}/channels",
            {"$select": "id,displayName,description,membershipType,email"}
        )
        return [
            Principal(
                id=channel["id"],
                primary_email=channel.get("email") or None,
                display_name=channel.get("displayName") or "",
                enabled=True,
                kind=PrincipalKind.CHANNEL,
                parent_id=team["id"],
                parent_name=team.get("displayName"),
                attributes={"membership_type": channel.get("membershipType")},
            )
            for channel in channels
            if channel.get("id")
        ]

    async def list_principals(self) -> List[Principal]:
        """
        All channels of all teams.

        Failing to list teams fails enumeration; failing to list one team's
        channels skips that team (auth failures still propagate).
        """
        teams = await self.list_teams()
        outcomes = await self.team_scheduler.run(teams, self.list_channels)

        principals: List[Principal] = []
        for outcome in outcomes:
            if outcome.ok:
                principals.extend(outcome.value)
            elif isinstance(outcome.error, SyncCancelled):
                raise outcome.error
            else:
                team_name = outcome.unit.get("displayName") or outcome.unit.get("id")
                logger.error(f"❌ Error fetching channels for team {team_name}: {outcome.error}")

        logger.info(f"✅ Retrieved {len(principals)} channels across {len(teams)} teams")
        return principals

    def fetch_contexts(self, principal: Principal, base: FetchContext, include_outbound: bool) -> List[FetchContext]:
        return [base.model_copy(update={"folder": FOLDER_CHANNEL})]

    async def fetch_page(self, principal: Principal, context: FetchContext, cursor: Optional[str]) -> ActivityPage:
        """
        One page of channel messages. Graph does not filter channel messages
        by date, so the window is applied here; system event messages and
        deleted messages are dropped.

        Paging stops once a whole page predates the window.
        """
        if cursor:
            data = await self.graph.get_json(cursor)
        else:
            data = await self.graph.get_json(
                f"{GRAPH_API}/teams/{principal.parent_id}/channels/{principal.id}/messages",
                {"$top": min(context.page_size, MAX_CHANNEL_PAGE)}
            )

        values = data.get("value", [])
        items = []
        stale = 0
        for message in values:
            created = parse_graph_datetime(message.get("createdDateTime"))
            if created is not None and created < context.since:
                stale += 1
                continue
            if message.get("messageType", "message") != "message" or message.get("deletedDateTime"):
                continue
            items.append(RawItem(payload=message, folder=context.folder))

        next_cursor = data.get("@odata.nextLink")
        if values and stale == len(values):
            next_cursor = None

        logger.info(f"💬 Fetched {len(items)} messages from channel {principal.label}")
        return ActivityPage(items=items, next_cursor=next_cursor)

    async def test_connection(self) -> ConnectionTestResult:
        data = await self.graph.get_json(f"{GRAPH_API}/teams", {"$select": "id", "$top": 5})
        count = len(data.get("value", []))
        return ConnectionTestResult(
            success=True,
            detail=f"Connected to Microsoft Teams; found {count} teams",
            count_found=count,
        )
