"""
Provider-agnostic normalization helpers
Address parsing, direction policy and the per-provider normalizer dispatch

DIRECTION POLICY:
Direction comes from the folder a raw item was fetched from, never from
headers: items from the "sent" folder are outbound, everything else inbound.

    outbound → sender = owner account, recipients = To + Cc + Bcc
    inbound  → sender = parsed From,   recipients = [owner account]
"""
import html
import logging
import re
from typing import Iterable, List, Optional, Tuple

from app.models.schemas.sync import (
    FOLDER_SENT,
    CanonicalMessage,
    Direction,
    FetchContext,
    Principal,
    Provider,
    RawItem,
)
from app.services.sync.canonical import normalize_email
from app.services.sync.errors import NormalizationError

logger = logging.getLogger(__name__)

_ANGLE_ADDRESS = re.compile(r"<\s*([^<>\s]+@[^<>\s]+)\s*>")
_BARE_ADDRESS = re.compile(r"[A-Za-z0-9._%+'\-]+@[A-Za-z0-9.\-]+\.[A-Za-z0-9\-]+")
_TAG = re.compile(r"<[^>]+>")
_BLOCK_TAG = re.compile(r"<\s*(br|/p|/div|/li|/tr)\b[^>]*>", re.IGNORECASE)
_SCRIPT_STYLE = re.compile(r"<(script|style)\b.*?</\1\s*>", re.IGNORECASE | re.DOTALL)


# ============================================================================
# ADDRESS PARSING
# ============================================================================

def parse_address(raw: Optional[str]) -> Tuple[str, str]:
    """
    Parse a From/To style value into (name, email).

    Precedence:
    1. Angle-bracketed address:  '"Bob" <bob@co.com>' → ("Bob", "bob@co.com")
    2. Bare address-like token:  'bob@co.com (Bob)'  → ("", "bob@co.com")
    3. Raw string verbatim:      'Undisclosed'       → ("", "Undisclosed")

    Matched addresses are lower-cased; an unmatched value is kept as written
    (stripped only). The name has surrounding quotes removed.
    """
    value = (raw or "").strip()
    if not value:
        return "", ""

    angle = _ANGLE_ADDRESS.search(value)
    if angle:
        name = value[:angle.start()].strip().strip('"').strip("'").strip()
        return name, normalize_email(angle.group(1))

    bare = _BARE_ADDRESS.search(value)
    if bare:
        return "", normalize_email(bare.group(0))

    return "", value


def split_address_list(raw: Optional[str]) -> List[str]:
    """
    Split a header like 'a@x.com, "Doe, John" <j@x.com>' on commas that sit
    outside quotes and angle brackets.
    """
    if not raw:
        return []

    parts, current = [], []
    in_quotes = False
    depth = 0
    for char in raw:
        if char == '"':
            in_quotes = not in_quotes
        elif char == "<" and not in_quotes:
            depth += 1
        elif char == ">" and not in_quotes and depth:
            depth -= 1
        if char in ",;" and not in_quotes and depth == 0:
            parts.append("".join(current))
            current = []
            continue
        current.append(char)
    parts.append("".join(current))

    return [p.strip() for p in parts if p.strip()]


def unique_emails(values: Iterable[str]) -> List[str]:
    """Ordered set of non-empty addresses, as parse_address returned them."""
    seen = set()
    ordered = []
    for value in values:
        email = (value or "").strip()
        if email and email not in seen:
            seen.add(email)
            ordered.append(email)
    return ordered


def strip_html(content: str) -> str:
    """Plain-text rendering of an HTML body."""
    text = _SCRIPT_STYLE.sub("", content or "")
    text = _BLOCK_TAG.sub("\n", text)
    text = _TAG.sub("", text)
    text = html.unescape(text)
    text = re.sub(r"[ \t\r\f\v]+", " ", text)
    text = re.sub(r"\n\s*\n+", "\n\n", text)
    return text.strip()


# ============================================================================
# DIRECTION
# ============================================================================

def direction_for_folder(folder: str) -> Direction:
    return Direction.OUTBOUND if folder == FOLDER_SENT else Direction.INBOUND


def owner_email_for(principal: Principal) -> str:
    """
    Monitored account address for a principal (never empty).
    Channel principals without an email fall back to 'teams:<team>:<channel>'.
    """
    if principal.primary_email:
        return normalize_email(principal.primary_email)
    if principal.parent_id:
        return f"teams:{principal.parent_id}:{principal.id}".lower()
    raise NormalizationError(f"principal {principal.id} has no owner address", unit=principal.id)


def build_participants(
    direction: Direction,
    owner_email: str,
    principal: Principal,
    from_value: Optional[str],
    recipient_values: Iterable[str],
    from_name: Optional[str] = None
) -> Tuple[str, str, List[str]]:
    """
    Apply the direction invariant.

    Returns:
        (sender_email, sender_name, recipient_emails)
    """
    if direction == Direction.OUTBOUND:
        recipients = unique_emails(parse_address(value)[1] for value in recipient_values)
        return owner_email, principal.display_name or "", recipients

    name, email = parse_address(from_value)
    if not email:
        raise NormalizationError("inbound item has no sender", unit=principal.label)
    return email, from_name or name, [owner_email]


# ============================================================================
# DISPATCH
# ============================================================================

def normalize(
    provider: Provider,
    raw_item: RawItem,
    principal: Principal,
    context: FetchContext
) -> CanonicalMessage:
    """
    Convert one raw provider item into a CanonicalMessage.

    Raises:
        NormalizationError: For malformed / unparseable items (caller skips the item)
    """
    from app.services.sync.providers.gmail import normalize_gmail_message
    from app.services.sync.providers.office365 import normalize_office365_message
    from app.services.sync.providers.teams import normalize_teams_message

    normalizers = {
        Provider.GMAIL: normalize_gmail_message,
        Provider.OFFICE365: normalize_office365_message,
        Provider.TEAMS: normalize_teams_message,
    }

    try:
        return normalizers[Provider(provider)](raw_item, principal, context)
    except NormalizationError:
        raise
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        # pydantic ValidationError is a ValueError
        item_id = raw_item.payload.get("id") if isinstance(raw_item.payload, dict) else None
        raise NormalizationError(
            f"malformed {Provider(provider).value} item {item_id or '<no id>'}: {e}",
            unit=principal.label
        ) from e
