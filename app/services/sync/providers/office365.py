"""
Microsoft 365 (Outlook) provider
Handles user listing, folder-scoped mailbox paging, and message normalization
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from app.models.schemas.sync import (
    FOLDER_SENT,
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
from app.services.sync.errors import NormalizationError
from app.services.sync.normalization import (
    build_participants,
    direction_for_folder,
    owner_email_for,
    strip_html,
)
from app.services.sync.oauth import TokenProvider
from app.services.sync.providers.base import ProviderHttpClient, mailbox_contexts

logger = logging.getLogger(__name__)

GRAPH_API = "https://graph.microsoft.com/v1.0"

# Graph well-known folder name per folder tag
FOLDER_NAMES = {
    "inbox": "inbox",
    FOLDER_SENT: "sentitems",
}

USER_FIELDS = "id,userPrincipalName,mail,displayName,accountEnabled,userType,department,jobTitle"
MESSAGE_FIELDS = (
    "id,internetMessageId,conversationId,subject,from,toRecipients,ccRecipients,"
    "bccRecipients,body,bodyPreview,receivedDateTime,sentDateTime,hasAttachments"
)
# Attachment metadata rides along with the message page; content is never downloaded
ATTACHMENT_EXPAND = "attachments($select=name,size,contentType)"


def parse_graph_datetime(value: Optional[str]) -> Optional[datetime]:
    """Graph timestamps are ISO 8601 with a trailing Z (sometimes 7 fractional digits)."""
    if not value:
        return None
    text = value.strip().replace("Z", "+00:00")
    if "." in text:
        # truncate to microseconds
        head, _, tail = text.partition(".")
        digits = "".join(ch for ch in tail if ch.isdigit())
        zone = tail[len(digits):]
        text = f"{head}.{digits[:6]}{zone}"
    parsed = datetime.fromisoformat(text)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def graph_filter_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _address(recipient: Optional[Dict[str, Any]]) -> str:
    """Render a Graph recipient as 'Name <address>' for the shared address parser."""
    email_address = (recipient or {}).get("emailAddress") or {}
    address = email_address.get("address") or ""
    name = email_address.get("name") or ""
    if address and name and name != address:
        return f'"{name}" <{address}>'
    return address


# ============================================================================
# NORMALIZATION
# ============================================================================

def normalize_office365_message(raw_item: RawItem, principal: Principal, context: FetchContext) -> CanonicalMessage:
    """
    Normalize a Graph message resource into a CanonicalMessage.

    The internetMessageId is preferred as provider_message_id (stable across
    folder moves); the Graph id is used when it is absent.
    """
    message = raw_item.payload
    message_id = message.get("internetMessageId") or message.get("id")
    if not message_id:
        raise NormalizationError("Graph message has no id", unit=principal.label)

    owner = owner_email_for(principal)
    direction = direction_for_folder(raw_item.folder)

    recipients = [
        _address(recipient)
        for field in ("toRecipients", "ccRecipients", "bccRecipients")
        for recipient in message.get(field) or []
    ]
    sender = message.get("from") or message.get("sender")
    sender_email, sender_name, recipient_emails = build_participants(
        direction,
        owner,
        principal,
        _address(sender),
        recipients,
        from_name=((sender or {}).get("emailAddress") or {}).get("name"),
    )

    body = message.get("body") or {}
    content = body.get("content") or ""
    if (body.get("contentType") or "").lower() == "html":
        body_html = content
        body_text = strip_html(content) or message.get("bodyPreview") or ""
    else:
        body_html = None
        body_text = content or message.get("bodyPreview") or ""

    attachments = [
        AttachmentInfo(name=attachment["name"], size=attachment.get("size"), content_type=attachment.get("contentType"))
        for attachment in message.get("attachments") or []
        if attachment.get("name")
    ]

    sent_at = (
        parse_graph_datetime(message.get("sentDateTime"))
        or parse_graph_datetime(message.get("receivedDateTime"))
    )
    if sent_at is None:
        raise NormalizationError(f"Graph message {message_id} has no timestamp", unit=principal.label)

    return CanonicalMessage(
        provider=Provider.OFFICE365,
        provider_message_id=message_id,
        owner_account_email=owner,
        principal_id=principal.id,
        thread_id=message.get("conversationId"),
        sender_email=sender_email,
        sender_name=sender_name,
        recipient_emails=recipient_emails,
        subject=message.get("subject") or "",
        body_text=body_text,
        body_html=body_html,
        sent_at=sent_at,
        has_attachments=bool(message.get("hasAttachments")) or bool(attachments),
        attachments=attachments,
        attachment_count=len(attachments),
        direction=direction,
    )


# ============================================================================
# MICROSOFT GRAPH CLIENT
# ============================================================================

class Office365Client:
    """Tenant-wide mailbox access through Microsoft Graph (application permissions)."""

    provider = Provider.OFFICE365

    def __init__(self, http_client: httpx.AsyncClient, token_provider: TokenProvider, **http_options):
        self.graph = ProviderHttpClient(http_client, token_provider, **http_options)

    @staticmethod
    def _to_principal(user: Dict[str, Any]) -> Principal:
        return Principal(
            id=user["id"],
            primary_email=user.get("mail") or user.get("userPrincipalName"),
            display_name=user.get("displayName") or "",
            enabled=user.get("accountEnabled", True) is not False,
            kind=PrincipalKind.MAILBOX,
            attributes={
                "user_principal_name": user.get("userPrincipalName"),
                "user_type": (user.get("userType") or "member").lower(),
                "department": user.get("department"),
                "job_title": user.get("jobTitle"),
            },
        )

    async def list_principals(self) -> List[Principal]:
        """
        List all users in the tenant.

        Returns:
            Principals for every user, paged through @odata.nextLink
        """
        principals: List[Principal] = []
        url: Optional[str] = f"{GRAPH_API}/users"
        params: Optional[Dict[str, Any]] = {"$select": USER_FIELDS, "$top": 999}

        while url:
            data = await self.graph.get_json(url, params)
            principals.extend(self._to_principal(user) for user in data.get("value", []) if user.get("id"))
            # nextLink already carries the query string
            url = data.get("@odata.nextLink")
            params = None

        logger.info(f"✅ Retrieved {len(principals)} users from Microsoft Graph")
        return principals

    def fetch_contexts(self, principal: Principal, base: FetchContext, include_outbound: bool) -> List[FetchContext]:
        return mailbox_contexts(base, include_outbound)

    async def fetch_page(self, principal: Principal, context: FetchContext, cursor: Optional[str]) -> ActivityPage:
        """Fetch one page of a mail folder; the cursor is Graph's @odata.nextLink."""
        if cursor:
            data = await self.graph.get_json(cursor)
        else:
            folder = FOLDER_NAMES.get(context.folder, "inbox")
            date_field = "sentDateTime" if context.folder == FOLDER_SENT else "receivedDateTime"
            data = await self.graph.get_json(
                f"{GRAPH_API}/users/{principal.id}/mailFolders/{folder}/messages",
                {
                    "$filter": f"{date_field} ge {graph_filter_timestamp(context.since)}",
                    "$top": min(context.page_size, 1000),
                    "$select": MESSAGE_FIELDS,
                    "$expand": ATTACHMENT_EXPAND,
                }
            )

        items = [RawItem(payload=message, folder=context.folder) for message in data.get("value", [])]
        logger.info(f"📬 Fetched {len(items)} Graph messages for {principal.label} ({context.folder})")
        return ActivityPage(items=items, next_cursor=data.get("@odata.nextLink"))

    async def test_connection(self) -> ConnectionTestResult:
        data = await self.graph.get_json(f"{GRAPH_API}/users", {"$select": "id", "$top": 5})
        count = len(data.get("value", []))
        return ConnectionTestResult(
            success=True,
            detail=f"Connected to Microsoft Graph; found {count} users",
            count_found=count,
        )
