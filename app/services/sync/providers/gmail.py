"""
Gmail / Google Workspace provider
Admin Directory enumeration, label-scoped message fetch and message normalization
"""
import base64
import binascii
import logging
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

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
from app.services.sync.errors import AuthFailure, NormalizationError, SyncCancelled
from app.services.sync.normalization import (
    build_participants,
    direction_for_folder,
    owner_email_for,
    split_address_list,
    strip_html,
)
from app.services.sync.oauth import TokenProvider
from app.services.sync.providers.base import ProviderHttpClient, mailbox_contexts
from app.services.sync.scheduler import BatchScheduler

logger = logging.getLogger(__name__)

GMAIL_API = "https://gmail.googleapis.com/gmail/v1"
DIRECTORY_API = "https://admin.googleapis.com/admin/directory/v1"

# Gmail label per folder tag
FOLDER_LABELS = {
    "inbox": "INBOX",
    FOLDER_SENT: "SENT",
}


# ============================================================================
# NORMALIZATION
# ============================================================================

def _decode_body(data: str) -> str:
    """Decode Gmail base64url body data (padding optional)."""
    padded = data + "=" * (-len(data) % 4)
    try:
        return base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8", errors="replace")
    except (binascii.Error, ValueError, UnicodeEncodeError) as e:
        raise NormalizationError(f"undecodable body data: {e}") from e


def extract_bodies(payload: Dict[str, Any]) -> Tuple[str, Optional[str], List[AttachmentInfo]]:
    """
    Walk a (possibly nested) multipart payload.

    Returns:
        (plain_text, html_or_None, attachments)

    The first text/plain and first text/html parts found depth-first win; any
    part with a filename is an attachment (metadata only, no body download).
    """
    plain: List[str] = []
    html_parts: List[str] = []
    attachments: List[AttachmentInfo] = []

    def walk(part: Dict[str, Any]) -> None:
        if part.get("filename"):
            attachments.append(AttachmentInfo(
                name=part["filename"],
                size=(part.get("body") or {}).get("size"),
                content_type=part.get("mimeType"),
            ))
            return

        mime_type = (part.get("mimeType") or "").lower()
        data = (part.get("body") or {}).get("data")
        if data:
            if mime_type == "text/html":
                html_parts.append(_decode_body(data))
            elif mime_type.startswith("text/") or not mime_type:
                plain.append(_decode_body(data))

        for child in part.get("parts") or []:
            walk(child)

    walk(payload)

    html = html_parts[0] if html_parts else None
    if plain:
        text = plain[0]
    elif html is not None:
        text = strip_html(html)
    else:
        text = ""
    return text, html, attachments


def _sent_at(message: Dict[str, Any], date_header: str) -> datetime:
    internal_date = message.get("internalDate")
    if internal_date:
        try:
            return datetime.fromtimestamp(int(internal_date) / 1000, tz=timezone.utc)
        except (TypeError, ValueError, OverflowError):
            logger.debug(f"Bad internalDate {internal_date!r}, falling back to Date header")
    if date_header:
        try:
            parsed = parsedate_to_datetime(date_header)
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
        except (TypeError, ValueError):
            pass
    raise NormalizationError(f"message {message.get('id')} has no usable timestamp")


def normalize_gmail_message(raw_item: RawItem, principal: Principal, context: FetchContext) -> CanonicalMessage:
    """
    Normalize a Gmail API message (format=full) into a CanonicalMessage.

    Gmail message structure:
    {
        "id": "18c3f8a9",
        "threadId": "18c3f8a0",
        "internalDate": "1704067200000",
        "payload": {
            "mimeType": "multipart/alternative",
            "headers": [{"name": "From", "value": "\"Bob\" <bob@co.com>"}, ...],
            "parts": [{"mimeType": "text/plain", "body": {"data": "..."}}, ...]
        }
    }
    """
    message = raw_item.payload
    message_id = message.get("id")
    payload = message.get("payload")
    if not message_id or not isinstance(payload, dict):
        raise NormalizationError("Gmail item missing id or payload", unit=principal.label)

    headers = {}
    for header in payload.get("headers") or []:
        name = (header.get("name") or "").lower()
        if name and name not in headers:
            headers[name] = header.get("value") or ""

    body_text, body_html, attachments = extract_bodies(payload)

    owner = owner_email_for(principal)
    direction = direction_for_folder(raw_item.folder)
    recipients = []
    for header in ("to", "cc", "bcc"):
        recipients.extend(split_address_list(headers.get(header)))

    sender_email, sender_name, recipient_emails = build_participants(
        direction, owner, principal, headers.get("from"), recipients
    )

    return CanonicalMessage(
        provider=Provider.GMAIL,
        provider_message_id=message_id,
        owner_account_email=owner,
        principal_id=principal.id,
        thread_id=message.get("threadId"),
        sender_email=sender_email,
        sender_name=sender_name,
        recipient_emails=recipient_emails,
        subject=headers.get("subject", ""),
        body_text=body_text,
        body_html=body_html,
        sent_at=_sent_at(message, headers.get("date", "")),
        has_attachments=bool(attachments),
        attachments=attachments,
        attachment_count=len(attachments),
        direction=direction,
    )


# ============================================================================
# CLIENT
# ============================================================================

class GmailClient:
    """
    Google Workspace client.

    Principals come from the Admin Directory; each user's mailbox is read with
    the token returned by `mailbox_token_factory(user_email)` (domain-wide
    delegation), or the directory token when no factory is given.
    """

    provider = Provider.GMAIL

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        token_provider: TokenProvider,
        domain: Optional[str],
        mailbox_token_factory: Optional[Callable[[str], TokenProvider]] = None,
        detail_concurrency: int = 10,
        detail_pacing: float = 0.1,
        **http_options
    ):
        self.http_client = http_client
        self.directory = ProviderHttpClient(http_client, token_provider, **http_options)
        self.domain = domain
        self.mailbox_token_factory = mailbox_token_factory
        self.http_options = http_options
        self.detail_scheduler = BatchScheduler(
            detail_concurrency,
            detail_pacing,
            fatal_exceptions=(AuthFailure,),
            label="gmail message details"
        )

    def _mailbox(self, user_email: str) -> ProviderHttpClient:
        if self.mailbox_token_factory is None:
            return self.directory
        return ProviderHttpClient(self.http_client, self.mailbox_token_factory(user_email), **self.http_options)

    @staticmethod
    def _to_principal(user: Dict[str, Any]) -> Principal:
        organizations = user.get("organizations") or [{}]
        primary_org = organizations[0] if organizations else {}
        return Principal(
            id=user.get("id") or user.get("primaryEmail"),
            primary_email=user.get("primaryEmail"),
            display_name=(user.get("name") or {}).get("fullName") or "",
            enabled=not user.get("suspended", False),
            kind=PrincipalKind.MAILBOX,
            attributes={
                "department": primary_org.get("department"),
                "job_title": primary_org.get("title"),
                "user_type": "member",
            },
        )

    async def list_principals(self) -> List[Principal]:
        """List all users in the Workspace domain (paged by nextPageToken)."""
        principals: List[Principal] = []
        params: Dict[str, Any] = {"maxResults": 500, "orderBy": "email"}
        if self.domain:
            params["domain"] = self.domain
        else:
            params["customer"] = "my_customer"

        page_token = None
        while True:
            if page_token:
                params["pageToken"] = page_token
            data = await self.directory.get_json(f"{DIRECTORY_API}/users", params)
            for user in data.get("users", []):
                if user.get("id") or user.get("primaryEmail"):
                    principals.append(self._to_principal(user))
                else:
                    logger.warning("⚠️  Skipping directory user with neither id nor primaryEmail")
            page_token = data.get("nextPageToken")
            if not page_token:
                break

        logger.info(f"✅ Retrieved {len(principals)} users from Google Workspace")
        return principals

    def fetch_contexts(self, principal: Principal, base: FetchContext, include_outbound: bool) -> List[FetchContext]:
        return mailbox_contexts(base, include_outbound)

    async def fetch_page(self, principal: Principal, context: FetchContext, cursor: Optional[str]) -> ActivityPage:
        """
        List one page of message ids for a label, then fetch full messages.
        Individual detail failures are skipped (logged); auth failures propagate.
        """
        mailbox = self._mailbox(principal.primary_email)
        user = principal.primary_email
        params: Dict[str, Any] = {
            "labelIds": FOLDER_LABELS.get(context.folder, "INBOX"),
            "q": f"after:{int(context.since.timestamp())}",
            "maxResults": min(context.page_size, 500),
        }
        if cursor:
            params["pageToken"] = cursor

        listing = await mailbox.get_json(f"{GMAIL_API}/users/{user}/messages", params)
        refs = listing.get("messages") or []

        async def fetch_detail(ref: Dict[str, Any]) -> Dict[str, Any]:
            return await mailbox.get_json(
                f"{GMAIL_API}/users/{user}/messages/{ref['id']}",
                {"format": "full"}
            )

        outcomes = await self.detail_scheduler.run(refs, fetch_detail)
        items = []
        for outcome in outcomes:
            if outcome.ok:
                items.append(RawItem(payload=outcome.value, folder=context.folder))
            elif isinstance(outcome.error, SyncCancelled):
                raise outcome.error
            else:
                logger.warning(f"⚠️  Skipping Gmail message {outcome.unit.get('id')} for {user}: {outcome.error}")

        logger.info(f"📬 Fetched {len(items)} Gmail messages for {user} ({context.folder})")
        return ActivityPage(items=items, next_cursor=listing.get("nextPageToken"))

    async def test_connection(self) -> ConnectionTestResult:
        params: Dict[str, Any] = {"maxResults": 5}
        if self.domain:
            params["domain"] = self.domain
        else:
            params["customer"] = "my_customer"
        data = await self.directory.get_json(f"{DIRECTORY_API}/users", params)
        count = len(data.get("users", []))
        return ConnectionTestResult(
            success=True,
            detail=f"Connected to Google Workspace{f' domain {self.domain}' if self.domain else ''}; found {count} users",
            count_found=count,
        )
