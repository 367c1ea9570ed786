"""
Provider client tests against mocked HTTP (httpx.MockTransport).

Coverage:
  - Error mapping: 401 refresh-once, 403, 404, 429 retry, transport errors
  - Nango token caching and failures
  - Gmail: directory paging, label-scoped listing, detail failures skipped
  - Office 365: nextLink paging, folder filters
  - Teams: channel fan-out, failing team skipped, window/system-message filtering
"""
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from app.models.schemas.sync import FetchContext, Principal, PrincipalKind
from app.services.sync.errors import AuthFailure, ConfigurationError, TransientFetchError
from app.services.sync.oauth import NangoTokenProvider, StaticTokenProvider
from app.services.sync.providers.base import ProviderHttpClient, mailbox_contexts
from app.services.sync.providers.gmail import GmailClient
from app.services.sync.providers.office365 import Office365Client
from app.services.sync.providers.teams import TeamsClient

NO_WAIT = {"min_wait": 0, "max_wait": 0}
TOKEN = StaticTokenProvider("test-token")
ALICE = Principal(id="u-alice", primary_email="alice@co.com", display_name="Alice")


def _http(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _context(folder="inbox", page_size=50) -> FetchContext:
    return FetchContext(
        since=datetime.now(timezone.utc) - timedelta(days=7),
        max_items=100,
        page_size=page_size,
        folder=folder,
    )


class RotatingTokenProvider:
    def __init__(self):
        self.calls = []

    async def get_token(self, force_refresh: bool = False) -> str:
        self.calls.append(force_refresh)
        return "fresh" if force_refresh else "stale"


class TestProviderHttpClient:
    async def test_401_refreshes_token_once(self):
        def handler(request):
            if request.headers["Authorization"] == "Bearer fresh":
                return httpx.Response(200, json={"value": []})
            return httpx.Response(401, json={"error": "InvalidAuthenticationToken"})

        tokens = RotatingTokenProvider()
        async with _http(handler) as http:
            data = await ProviderHttpClient(http, tokens, **NO_WAIT).get_json("https://graph.microsoft.com/v1.0/users")

        assert data == {"value": []}
        assert tokens.calls == [False, True]

    async def test_persistent_401_is_auth_failure(self):
        tokens = RotatingTokenProvider()
        async with _http(lambda request: httpx.Response(401)) as http:
            with pytest.raises(AuthFailure, match="HTTP 401"):
                await ProviderHttpClient(http, tokens, **NO_WAIT).get_json("https://graph.microsoft.com/v1.0/users")

        assert tokens.calls == [False, True]

    async def test_403_is_auth_failure_without_retry(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(403, json={"error": "Authorization_RequestDenied"})

        async with _http(handler) as http:
            with pytest.raises(AuthFailure):
                await ProviderHttpClient(http, TOKEN, **NO_WAIT).get_json("https://graph.microsoft.com/v1.0/users")

        assert len(calls) == 1

    async def test_404_is_transient_fetch_error(self):
        async with _http(lambda request: httpx.Response(404)) as http:
            with pytest.raises(TransientFetchError, match="HTTP 404"):
                await ProviderHttpClient(http, TOKEN, **NO_WAIT).get_json("https://graph.microsoft.com/v1.0/users/x")

    async def test_429_retried_then_succeeds(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                return httpx.Response(429, headers={"Retry-After": "0"})
            return httpx.Response(200, json={"value": [{"id": "1"}]})

        async with _http(handler) as http:
            data = await ProviderHttpClient(http, TOKEN, **NO_WAIT).get_json("https://graph.microsoft.com/v1.0/users")

        assert len(calls) == 2
        assert data["value"][0]["id"] == "1"

    async def test_server_errors_exhaust_retries(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(503)

        async with _http(handler) as http:
            with pytest.raises(TransientFetchError, match="HTTP 503"):
                await ProviderHttpClient(http, TOKEN, max_attempts=3, **NO_WAIT).get_json("https://graph.microsoft.com/v1.0/users")

        assert len(calls) == 3

    async def test_transport_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with _http(handler) as http:
            with pytest.raises(TransientFetchError, match="ConnectError"):
                await ProviderHttpClient(http, TOKEN, max_attempts=2, **NO_WAIT).get_json("https://graph.microsoft.com/v1.0/users")


class TestNangoTokenProvider:
    async def test_token_cached_until_expiry(self):
        calls = []

        def handler(request):
            calls.append(request)
            assert request.headers["Authorization"] == "Bearer nango-secret"
            assert request.url.params["provider_config_key"] == "microsoft"
            return httpx.Response(200, json={
                "credentials": {"access_token": "graph-token", "expires_at": "2099-01-01T00:00:00Z"}
            })

        async with _http(handler) as http:
            provider = NangoTokenProvider(http, "microsoft", "conn-1", secret="nango-secret")
            assert await provider.get_token() == "graph-token"
            assert await provider.get_token() == "graph-token"
            await provider.get_token(force_refresh=True)

        assert len(calls) == 2
        assert calls[1].url.params["force_refresh"] == "true"

    async def test_missing_connection_is_configuration_error(self):
        async with _http(lambda request: httpx.Response(200)) as http:
            provider = NangoTokenProvider(http, "microsoft", None, secret="nango-secret")
            with pytest.raises(ConfigurationError):
                await provider.get_token()

    async def test_rejected_request_is_auth_failure(self):
        async with _http(lambda request: httpx.Response(404, json={"error": "unknown connection"})) as http:
            provider = NangoTokenProvider(http, "microsoft", "conn-1", secret="nango-secret")
            with pytest.raises(AuthFailure, match="HTTP 404"):
                await provider.get_token()

    async def test_missing_access_token_is_auth_failure(self):
        async with _http(lambda request: httpx.Response(200, json={"credentials": {}})) as http:
            provider = NangoTokenProvider(http, "microsoft", "conn-1", secret="nango-secret")
            with pytest.raises(AuthFailure, match="no access token"):
                await provider.get_token()


class TestMailboxContexts:
    def test_budget_split_between_inbox_and_sent(self):
        contexts = mailbox_contexts(_context().model_copy(update={"max_items": 5}), include_outbound=True)

        assert [(c.folder, c.max_items) for c in contexts] == [("inbox", 3), ("sent", 2)]

    def test_inbox_only(self):
        contexts = mailbox_contexts(_context(), include_outbound=False)

        assert [(c.folder, c.max_items) for c in contexts] == [("inbox", 100)]


class TestGmailClient:
    def _message(self, message_id):
        return {
            "id": message_id,
            "threadId": "t-1",
            "internalDate": "1767225600000",
            "payload": {"mimeType": "text/plain", "headers": [{"name": "From", "value": "bob@co.com"}]},
        }

    async def test_list_principals_pages_directory(self):
        def handler(request):
            assert request.url.path == "/admin/directory/v1/users"
            assert request.url.params["domain"] == "co.com"
            if request.url.params.get("pageToken") == "page-2":
                return httpx.Response(200, json={"users": [
                    {"id": "2", "primaryEmail": "omar@co.com", "name": {"fullName": "Omar"}, "suspended": True},
                ]})
            return httpx.Response(200, json={
                "users": [{
                    "id": "1",
                    "primaryEmail": "alice@co.com",
                    "name": {"fullName": "Alice Smith"},
                    "organizations": [{"department": "Finance", "title": "Controller"}],
                }],
                "nextPageToken": "page-2",
            })

        async with _http(handler) as http:
            principals = await GmailClient(http, TOKEN, domain="co.com", **NO_WAIT).list_principals()

        assert [p.primary_email for p in principals] == ["alice@co.com", "omar@co.com"]
        assert principals[0].attributes["department"] == "Finance"
        assert principals[1].enabled is False

    async def test_directory_user_without_identity_is_skipped(self):
        def handler(request):
            return httpx.Response(200, json={"users": [
                {"name": {"fullName": "Ghost Entry"}},
                {"primaryEmail": "dana@co.com", "name": {"fullName": "Dana Lee"}},
            ]})

        async with _http(handler) as http:
            principals = await GmailClient(http, TOKEN, domain="co.com", **NO_WAIT).list_principals()

        assert [(p.id, p.primary_email) for p in principals] == [("dana@co.com", "dana@co.com")]

    async def test_fetch_page_skips_failed_details(self):
        def handler(request):
            path = request.url.path
            if path.endswith("/messages"):
                assert request.url.params["labelIds"] == "SENT"
                assert request.url.params["q"].startswith("after:")
                return httpx.Response(200, json={
                    "messages": [{"id": "m1"}, {"id": "m2"}],
                    "nextPageToken": "next-1",
                })
            if path.endswith("/m1"):
                assert request.url.params["format"] == "full"
                return httpx.Response(200, json=self._message("m1"))
            return httpx.Response(500)

        async with _http(handler) as http:
            client = GmailClient(http, TOKEN, domain="co.com", detail_pacing=0, **NO_WAIT)
            page = await client.fetch_page(ALICE, _context(folder="sent"), None)

        assert [item.payload["id"] for item in page.items] == ["m1"]
        assert page.items[0].folder == "sent"
        assert page.next_cursor == "next-1"

    async def test_detail_auth_failure_propagates(self):
        def handler(request):
            if request.url.path.endswith("/messages"):
                return httpx.Response(200, json={"messages": [{"id": "m1"}]})
            return httpx.Response(403)

        async with _http(handler) as http:
            client = GmailClient(http, TOKEN, domain="co.com", detail_pacing=0, **NO_WAIT)
            with pytest.raises(AuthFailure):
                await client.fetch_page(ALICE, _context(), None)

    async def test_mailbox_token_factory_used_for_mailbox_calls(self):
        seen = []

        def handler(request):
            seen.append(request.headers["Authorization"])
            return httpx.Response(200, json={"messages": []})

        async with _http(handler) as http:
            client = GmailClient(
                http, TOKEN, domain="co.com",
                mailbox_token_factory=lambda email: StaticTokenProvider(f"delegated-{email}"),
                **NO_WAIT
            )
            page = await client.fetch_page(ALICE, _context(), None)

        assert page.items == []
        assert seen == ["Bearer delegated-alice@co.com"]


class TestOffice365Client:
    async def test_list_principals_follows_next_link(self):
        def handler(request):
            if request.url.params.get("$skiptoken") == "abc":
                return httpx.Response(200, json={"value": [
                    {"id": "2", "userPrincipalName": "guest_x#EXT#@co.onmicrosoft.com", "userType": "Guest"},
                ]})
            assert request.url.params["$top"] == "999"
            return httpx.Response(200, json={
                "value": [{"id": "1", "mail": "alice@co.com", "displayName": "Alice", "accountEnabled": False}],
                "@odata.nextLink": "https://graph.microsoft.com/v1.0/users?$skiptoken=abc",
            })

        async with _http(handler) as http:
            principals = await Office365Client(http, TOKEN, **NO_WAIT).list_principals()

        assert [p.id for p in principals] == ["1", "2"]
        assert principals[0].enabled is False
        assert principals[1].attributes["user_type"] == "guest"

    async def test_fetch_page_filters_folder_by_date(self):
        def handler(request):
            assert request.url.path == "/v1.0/users/u-alice/mailFolders/sentitems/messages"
            assert request.url.params["$filter"].startswith("sentDateTime ge ")
            assert request.url.params["$top"] == "10"
            assert request.url.params["$expand"] == "attachments($select=name,size,contentType)"
            return httpx.Response(200, json={
                "value": [{"id": "AAMk1"}],
                "@odata.nextLink": "https://graph.microsoft.com/v1.0/users/u-alice/mailFolders/sentitems/messages?$skip=10",
            })

        async with _http(handler) as http:
            page = await Office365Client(http, TOKEN, **NO_WAIT).fetch_page(ALICE, _context("sent", page_size=10), None)

        assert page.items[0].folder == "sent"
        assert page.next_cursor.endswith("$skip=10")

    async def test_cursor_is_fetched_verbatim(self):
        cursor = "https://graph.microsoft.com/v1.0/users/u-alice/mailFolders/inbox/messages?$skip=50"

        def handler(request):
            assert request.url.params["$skip"] == "50"
            return httpx.Response(200, json={"value": []})

        async with _http(handler) as http:
            page = await Office365Client(http, TOKEN, **NO_WAIT).fetch_page(ALICE, _context(), cursor)

        assert page.items == []
        assert page.next_cursor is None


class TestTeamsClient:
    CHANNEL = Principal(
        id="chan-1", display_name="General", kind=PrincipalKind.CHANNEL, parent_id="team-1", parent_name="Finance"
    )

    async def test_failing_team_is_skipped(self):
        def handler(request):
            path = request.url.path
            if path == "/v1.0/teams":
                return httpx.Response(200, json={"value": [
                    {"id": "team-1", "displayName": "Finance"},
                    {"id": "team-2", "displayName": "Legal"},
                ]})
            if path == "/v1.0/teams/team-1/channels":
                return httpx.Response(200, json={"value": [
                    {"id": "chan-1", "displayName": "General", "email": "general@co.com"},
                    {"id": "chan-2", "displayName": "Audit"},
                ]})
            return httpx.Response(500)

        async with _http(handler) as http:
            principals = await TeamsClient(http, TOKEN, pacing=0, **NO_WAIT).list_principals()

        assert [p.id for p in principals] == ["chan-1", "chan-2"]
        assert principals[0].primary_email == "general@co.com"
        assert principals[1].primary_email is None
        assert all(p.parent_name == "Finance" for p in principals)

    async def test_team_listing_failure_propagates(self):
        async with _http(lambda request: httpx.Response(503)) as http:
            with pytest.raises(TransientFetchError):
                await TeamsClient(http, TOKEN, pacing=0, max_attempts=1, min_wait=0, max_wait=0).list_principals()

    async def test_fetch_page_filters_messages(self):
        recent = (datetime.now(timezone.utc) - timedelta(hours=1)).strftime("%Y-%m-%dT%H:%M:%S.%fZ")

        def handler(request):
            assert request.url.path == "/v1.0/teams/team-1/channels/chan-1/messages"
            assert request.url.params["$top"] == "50"
            return httpx.Response(200, json={
                "value": [
                    {"id": "1", "messageType": "message", "createdDateTime": recent},
                    {"id": "2", "messageType": "systemEventMessage", "createdDateTime": recent},
                    {"id": "3", "messageType": "message", "createdDateTime": recent, "deletedDateTime": recent},
                    {"id": "4", "messageType": "message", "createdDateTime": "2020-01-01T00:00:00Z"},
                ],
                "@odata.nextLink": "https://graph.microsoft.com/v1.0/teams/team-1/channels/chan-1/messages?$skiptoken=x",
            })

        async with _http(handler) as http:
            page = await TeamsClient(http, TOKEN, pacing=0, **NO_WAIT).fetch_page(
                self.CHANNEL, _context("channel", page_size=100), None
            )

        assert [item.payload["id"] for item in page.items] == ["1"]
        assert page.next_cursor is not None

    async def test_stale_page_ends_paging(self):
        def handler(request):
            return httpx.Response(200, json={
                "value": [{"id": "9", "messageType": "message", "createdDateTime": "2020-01-01T00:00:00Z"}],
                "@odata.nextLink": "https://graph.microsoft.com/v1.0/teams/team-1/channels/chan-1/messages?$skiptoken=y",
            })

        async with _http(handler) as http:
            page = await TeamsClient(http, TOKEN, pacing=0, **NO_WAIT).fetch_page(self.CHANNEL, _context("channel"), None)

        assert page.items == []
        assert page.next_cursor is None

    async def test_connection_counts_teams(self):
        async with _http(lambda request: httpx.Response(200, json={"value": [{"id": "t1"}, {"id": "t2"}]})) as http:
            result = await TeamsClient(http, TOKEN, pacing=0, **NO_WAIT).test_connection()

        assert result.success is True
        assert result.count_found == 2
