"""
Normalization tests.

Coverage:
  - Sent/inbox end-to-end scenarios (direction from folder, never headers)
  - Direction invariant enforced by CanonicalMessage
  - Address parsing precedence and address-list splitting
  - Gmail multipart bodies, attachments, timestamps
  - Office 365 and Teams normalizers
  - Malformed items surface as NormalizationError
"""
import base64
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from app.models.schemas.sync import (
    CanonicalMessage,
    Direction,
    FetchContext,
    Principal,
    PrincipalKind,
    Provider,
    RawItem,
)
from app.services.sync.errors import NormalizationError
from app.services.sync.normalization import normalize, parse_address, split_address_list, strip_html
from app.services.sync.providers.gmail import extract_bodies
from app.services.sync.providers.office365 import parse_graph_datetime


ALICE = Principal(id="u-alice", primary_email="Alice@Co.com", display_name="Alice Smith")
CONTEXT = FetchContext(since=datetime.now(timezone.utc) - timedelta(days=7), max_items=100)


def _b64(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode()).decode().rstrip("=")


def _gmail(headers: dict, payload_extra: dict = None, **message_fields) -> dict:
    payload = {
        "mimeType": "text/plain",
        "headers": [{"name": k, "value": v} for k, v in headers.items()],
        "body": {"data": _b64("Hello there")},
    }
    payload.update(payload_extra or {})
    message = {"id": "18c3f8a9", "threadId": "18c3f8a0", "internalDate": "1767225600000", "payload": payload}
    message.update(message_fields)
    return message


class TestEndToEndScenarios:
    def test_sent_item_is_outbound_from_owner(self):
        raw = RawItem(payload=_gmail({"From": "Alice <alice@co.com>", "To": "bob@co.com, carol@co.com"}), folder="sent")

        message = normalize(Provider.GMAIL, raw, ALICE, CONTEXT)

        assert message.direction == Direction.OUTBOUND
        assert message.sender_email == "alice@co.com"
        assert message.recipient_emails == ["bob@co.com", "carol@co.com"]

    def test_inbox_item_is_inbound_to_owner(self):
        raw = RawItem(payload=_gmail({"From": '"Bob" <bob@co.com>', "To": "alice@co.com"}), folder="inbox")

        message = normalize(Provider.GMAIL, raw, ALICE, CONTEXT)

        assert message.direction == Direction.INBOUND
        assert message.sender_email == "bob@co.com"
        assert message.sender_name == "Bob"
        assert message.recipient_emails == ["alice@co.com"]

    def test_direction_ignores_headers(self):
        # From header names the owner, but the item came from the inbox
        raw = RawItem(payload=_gmail({"From": "alice@co.com", "To": "bob@co.com"}), folder="inbox")

        message = normalize(Provider.GMAIL, raw, ALICE, CONTEXT)

        assert message.direction == Direction.INBOUND
        assert message.recipient_emails == ["alice@co.com"]

    def test_outbound_recipients_include_cc_and_bcc_deduplicated(self):
        raw = RawItem(
            payload=_gmail({"To": "Bob <BOB@co.com>", "Cc": "carol@co.com, bob@co.com", "Bcc": "dan@co.com"}),
            folder="sent",
        )

        message = normalize(Provider.GMAIL, raw, ALICE, CONTEXT)

        assert message.recipient_emails == ["bob@co.com", "carol@co.com", "dan@co.com"]


class TestDirectionInvariant:
    def _fields(self, **overrides):
        fields = {
            "provider": Provider.GMAIL,
            "provider_message_id": "m1",
            "owner_account_email": "alice@co.com",
            "sender_email": "alice@co.com",
            "recipient_emails": ["bob@co.com"],
            "sent_at": datetime(2026, 10, 1, tzinfo=timezone.utc),
            "direction": Direction.OUTBOUND,
        }
        fields.update(overrides)
        return fields

    def test_outbound_sender_must_be_owner(self):
        with pytest.raises(ValidationError):
            CanonicalMessage(**self._fields(sender_email="mallory@co.com"))

    def test_inbound_recipients_must_be_owner_only(self):
        with pytest.raises(ValidationError):
            CanonicalMessage(**self._fields(
                direction=Direction.INBOUND,
                sender_email="bob@co.com",
                recipient_emails=["alice@co.com", "carol@co.com"],
            ))

    def test_valid_message_has_natural_key(self):
        message = CanonicalMessage(**self._fields())
        assert message.natural_key == ("gmail", "m1", "alice@co.com")


class TestAddressParsing:
    def test_angle_bracket_with_display_name(self):
        assert parse_address('"Bob" <bob@co.com>') == ("Bob", "bob@co.com")

    def test_angle_bracket_wins_over_bare_token(self):
        assert parse_address("bob@old.com <Bob@Co.com>") == ("bob@old.com", "bob@co.com")

    def test_bare_address(self):
        assert parse_address("bob@co.com (Bob)") == ("", "bob@co.com")

    def test_unparseable_value_used_verbatim(self):
        assert parse_address(" Undisclosed Recipients ") == ("", "Undisclosed Recipients")

    def test_matched_addresses_are_lower_cased(self):
        assert parse_address("BOB@CO.COM") == ("", "bob@co.com")

    def test_empty(self):
        assert parse_address(None) == ("", "")

    def test_split_respects_quotes_and_brackets(self):
        assert split_address_list('"Doe, John" <j@x.com>, a@x.com; b@x.com') == [
            '"Doe, John" <j@x.com>',
            "a@x.com",
            "b@x.com",
        ]


class TestGmailNormalization:
    def test_multipart_prefers_plain_keeps_html_and_flags_attachment(self):
        payload = {
            "mimeType": "multipart/mixed",
            "parts": [
                {
                    "mimeType": "multipart/alternative",
                    "parts": [
                        {"mimeType": "text/plain", "body": {"data": _b64("Quarterly numbers attached")}},
                        {"mimeType": "text/html", "body": {"data": _b64("<p>Quarterly numbers attached</p>")}},
                    ],
                },
                {"mimeType": "application/pdf", "filename": "q3.pdf", "body": {"attachmentId": "att-1", "size": 48213}},
            ],
        }

        text, html, attachments = extract_bodies(payload)

        assert text == "Quarterly numbers attached"
        assert html == "<p>Quarterly numbers attached</p>"
        assert [(a.name, a.size, a.content_type) for a in attachments] == [("q3.pdf", 48213, "application/pdf")]

    def test_html_only_body_is_stripped_to_text(self):
        payload = {"mimeType": "text/html", "body": {"data": _b64("<div>Hi Bob<br>Thanks</div>")}}

        text, html, attachments = extract_bodies(payload)

        assert text == "Hi Bob\nThanks"
        assert html.startswith("<div>")
        assert attachments == []

    def test_message_carries_attachment_metadata(self):
        parts = {
            "mimeType": "multipart/mixed",
            "parts": [
                {"mimeType": "text/plain", "body": {"data": _b64("Two files")}},
                {"mimeType": "image/png", "filename": "chart.png", "body": {"attachmentId": "a1", "size": 900}},
                {"mimeType": "text/csv", "filename": "export.csv", "body": {"attachmentId": "a2", "size": 120}},
            ],
        }
        raw = RawItem(payload=_gmail({"From": "bob@co.com"}, payload_extra=parts), folder="inbox")

        message = normalize(Provider.GMAIL, raw, ALICE, CONTEXT)

        assert message.has_attachments is True
        assert message.attachment_count == 2
        assert [a.name for a in message.attachments] == ["chart.png", "export.csv"]
        assert message.body_text == "Two files"

    def test_internal_date_used_for_sent_at(self):
        raw = RawItem(payload=_gmail({"From": "bob@co.com"}), folder="inbox")

        message = normalize(Provider.GMAIL, raw, ALICE, CONTEXT)

        assert message.sent_at == datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert message.thread_id == "18c3f8a0"

    def test_date_header_fallback(self):
        raw = RawItem(
            payload=_gmail({"From": "bob@co.com", "Date": "Mon, 12 Oct 2026 09:30:00 +0000"}, internalDate=None),
            folder="inbox",
        )

        message = normalize(Provider.GMAIL, raw, ALICE, CONTEXT)

        assert message.sent_at == datetime(2026, 10, 12, 9, 30, tzinfo=timezone.utc)

    def test_missing_timestamp_is_normalization_error(self):
        raw = RawItem(payload=_gmail({"From": "bob@co.com"}, internalDate=None), folder="inbox")

        with pytest.raises(NormalizationError):
            normalize(Provider.GMAIL, raw, ALICE, CONTEXT)

    def test_missing_payload_is_normalization_error(self):
        raw = RawItem(payload={"id": "x"}, folder="inbox")

        with pytest.raises(NormalizationError):
            normalize(Provider.GMAIL, raw, ALICE, CONTEXT)

    def test_inbound_without_sender_is_normalization_error(self):
        raw = RawItem(payload=_gmail({"To": "alice@co.com"}), folder="inbox")

        with pytest.raises(NormalizationError, match="no sender"):
            normalize(Provider.GMAIL, raw, ALICE, CONTEXT)

    def test_non_address_sender_kept_as_written(self):
        raw = RawItem(payload=_gmail({"From": "MAILER-DAEMON", "To": "alice@co.com"}), folder="inbox")

        message = normalize(Provider.GMAIL, raw, ALICE, CONTEXT)

        assert message.sender_email == "MAILER-DAEMON"
        assert message.recipient_emails == ["alice@co.com"]


class TestOffice365Normalization:
    def _graph(self, **overrides):
        message = {
            "id": "AAMkAGI2",
            "internetMessageId": "<CAF123@mail.co.com>",
            "conversationId": "conv-1",
            "subject": "Contract draft",
            "from": {"emailAddress": {"name": "Bob Jones", "address": "Bob@Partner.com"}},
            "toRecipients": [{"emailAddress": {"name": "Alice", "address": "alice@co.com"}}],
            "ccRecipients": [{"emailAddress": {"name": "Carol", "address": "carol@co.com"}}],
            "body": {"contentType": "html", "content": "<p>See <b>draft</b></p>"},
            "sentDateTime": "2026-10-12T09:29:58.1234567Z",
            "receivedDateTime": "2026-10-12T09:30:00Z",
            "hasAttachments": True,
        }
        message.update(overrides)
        return message

    def test_inbound_message(self):
        message = normalize(Provider.OFFICE365, RawItem(payload=self._graph(), folder="inbox"), ALICE, CONTEXT)

        assert message.provider_message_id == "<CAF123@mail.co.com>"
        assert message.sender_email == "bob@partner.com"
        assert message.sender_name == "Bob Jones"
        assert message.recipient_emails == ["alice@co.com"]
        assert message.body_text == "See draft"
        assert message.body_html == "<p>See <b>draft</b></p>"
        assert message.thread_id == "conv-1"
        assert message.has_attachments is True
        assert message.sent_at.microsecond == 123456

    def test_expanded_attachments_are_listed(self):
        payload = self._graph(attachments=[
            {"name": "draft-v2.docx", "size": 20480, "contentType": "application/vnd.openxmlformats-officedocument.wordprocessingml.document"},
            {"name": "logo.png", "size": 512, "contentType": "image/png"},
        ])

        message = normalize(Provider.OFFICE365, RawItem(payload=payload, folder="inbox"), ALICE, CONTEXT)

        assert message.attachment_count == 2
        assert [a.name for a in message.attachments] == ["draft-v2.docx", "logo.png"]
        assert message.attachments[1].size == 512

    def test_outbound_message_uses_all_recipients(self):
        message = normalize(Provider.OFFICE365, RawItem(payload=self._graph(), folder="sent"), ALICE, CONTEXT)

        assert message.direction == Direction.OUTBOUND
        assert message.sender_email == "alice@co.com"
        assert message.recipient_emails == ["alice@co.com", "carol@co.com"]

    def test_graph_id_used_without_internet_message_id(self):
        payload = self._graph(internetMessageId=None)

        message = normalize(Provider.OFFICE365, RawItem(payload=payload, folder="inbox"), ALICE, CONTEXT)

        assert message.provider_message_id == "AAMkAGI2"

    def test_received_time_fallback(self):
        payload = self._graph(sentDateTime=None)

        message = normalize(Provider.OFFICE365, RawItem(payload=payload, folder="inbox"), ALICE, CONTEXT)

        assert message.sent_at == datetime(2026, 10, 12, 9, 30, tzinfo=timezone.utc)

    def test_malformed_sender_is_normalization_error(self):
        payload = self._graph(**{"from": "bob@partner.com"})

        with pytest.raises(NormalizationError, match="malformed office365 item AAMkAGI2"):
            normalize(Provider.OFFICE365, RawItem(payload=payload, folder="inbox"), ALICE, CONTEXT)

    def test_parse_graph_datetime(self):
        assert parse_graph_datetime("2026-10-12T09:30:00Z") == datetime(2026, 10, 12, 9, 30, tzinfo=timezone.utc)
        assert parse_graph_datetime(None) is None


class TestTeamsNormalization:
    CHANNEL = Principal(
        id="19:chan-1@thread.tacv2",
        display_name="General",
        kind=PrincipalKind.CHANNEL,
        parent_id="team-1",
        parent_name="Finance",
    )

    def _teams(self, **overrides):
        message = {
            "id": "1760261400000",
            "messageType": "message",
            "createdDateTime": "2026-10-12T09:30:00Z",
            "from": {"user": {"id": "aad-1", "displayName": "Bob Jones", "userPrincipalName": "Bob@co.com"}},
            "body": {"contentType": "html", "content": "<div>Ship it</div>"},
            "attachments": [],
        }
        message.update(overrides)
        return message

    def test_channel_message_is_inbound_to_synthetic_owner(self):
        raw = RawItem(payload=self._teams(), folder="channel")

        message = normalize(Provider.TEAMS, raw, self.CHANNEL, CONTEXT)

        assert message.owner_account_email == "teams:team-1:19:chan-1@thread.tacv2"
        assert message.direction == Direction.INBOUND
        assert message.sender_email == "bob@co.com"
        assert message.sender_name == "Bob Jones"
        assert message.recipient_emails == [message.owner_account_email]
        assert message.subject == "Teams message in General"
        assert message.body_text == "Ship it"
        assert message.thread_id == "1760261400000"

    def test_reply_threads_to_parent(self):
        raw = RawItem(payload=self._teams(replyToId="1760261000000"), folder="channel")

        message = normalize(Provider.TEAMS, raw, self.CHANNEL, CONTEXT)

        assert message.thread_id == "1760261000000"

    def test_application_sender(self):
        payload = self._teams(**{"from": {"application": {"id": "bot-42", "displayName": "Deploy Bot"}}})

        message = normalize(Provider.TEAMS, RawItem(payload=payload, folder="channel"), self.CHANNEL, CONTEXT)

        assert message.sender_email == "app:bot-42"
        assert message.sender_name == "Deploy Bot"

    def test_named_attachment_sets_flag(self):
        payload = self._teams(attachments=[{"id": "a1", "contentType": "reference", "name": "budget.xlsx"}])

        message = normalize(Provider.TEAMS, RawItem(payload=payload, folder="channel"), self.CHANNEL, CONTEXT)

        assert message.has_attachments is True
        assert message.attachment_count == 1
        assert message.attachments[0].name == "budget.xlsx"
        assert message.attachments[0].content_type == "reference"

    def test_channel_email_is_owner_when_present(self):
        channel = self.CHANNEL.model_copy(update={"primary_email": "General.Finance@co.com"})

        message = normalize(Provider.TEAMS, RawItem(payload=self._teams(), folder="channel"), channel, CONTEXT)

        assert message.owner_account_email == "general.finance@co.com"


class TestStripHtml:
    def test_removes_scripts_and_tags(self):
        assert strip_html("<style>p{}</style><p>One</p><p>Two &amp; three</p>") == "One\nTwo & three"
