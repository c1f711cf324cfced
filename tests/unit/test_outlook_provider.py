"""Unit tests for the Microsoft Graph provider."""

import json
from datetime import datetime, timezone

import httpx
import pytest
import pytest_asyncio

from mailsync.exceptions import QuotaExceededError, ReauthRequiredError
from mailsync.schemas import FetchOptions, OutgoingMessage
from mailsync.services.mail.base import ReplyContext
from mailsync.services.mail.outlook import OutlookProvider


def graph_message(n: int, **overrides) -> dict:
    message = {
        "id": f"AAMk-{n}",
        "conversationId": f"conv-{n}",
        "internetMessageId": f"<graph-{n}@outlook.com>",
        "subject": f"Message {n}",
        "from": {"emailAddress": {"address": "customer@example.com", "name": "Customer"}},
        "toRecipients": [{"emailAddress": {"address": "owner@outlook.example.com"}}],
        "receivedDateTime": "2026-10-02T08:30:00Z",
        "isRead": False,
        "bodyPreview": "Preview",
        "body": {"contentType": "text", "content": "Body"},
    }
    message.update(overrides)
    return message


class GraphStub:
    """Routes Graph requests to canned responses and records them"""

    def __init__(self):
        self.requests = []
        self.messages = [graph_message(n) for n in range(3)]
        self.total = 3
        self.statuses = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.statuses:
            return httpx.Response(self.statuses.pop(0), json={"error": {"code": "stub"}})
        path = request.url.path
        if path.endswith("/$count"):
            return httpx.Response(200, text=str(self.total))
        if path.endswith("/messages") and request.method == "GET":
            return httpx.Response(200, json={"value": self.messages})
        if path == "/v1.0/me/sendMail":
            return httpx.Response(202)
        if path.endswith("/reply"):
            return httpx.Response(202)
        if path == "/v1.0/me/messages" and request.method == "POST":
            return httpx.Response(201, json={"id": "draft-9", "conversationId": "conv-d"})
        if request.method == "PATCH":
            return httpx.Response(200, json={})
        if path.startswith("/v1.0/me/messages/"):
            return httpx.Response(200, json=graph_message(
                1,
                replyTo=[{"emailAddress": {"address": "Help@Example.com", "name": "Help"}}],
                internetMessageHeaders=[{"name": "References", "value": "<root@example.com>"}],
            ))
        return httpx.Response(404, json={})

    def json_body(self, index: int) -> dict:
        return json.loads(self.requests[index].content)


@pytest.fixture
def graph() -> GraphStub:
    return GraphStub()


@pytest_asyncio.fixture
async def provider(services, outlook_account, graph):
    async with httpx.AsyncClient(transport=httpx.MockTransport(graph.handler)) as client:
        yield OutlookProvider(outlook_account, services.tokens, 0, http_client=client)


class TestOutlookProvider:
    """Test suite for OutlookProvider class."""

    @pytest.mark.asyncio
    async def test_fetch_page(self, provider, graph) -> None:
        """Test that a page is fetched with paging and ordering parameters."""
        page = await provider.fetch(FetchOptions(page=1, page_size=3))

        params = graph.requests[0].url.params
        assert graph.requests[0].url.path == "/v1.0/me/mailFolders/inbox/messages"
        assert params["$top"] == "3"
        assert params["$skip"] == "0"
        assert params["$orderby"] == "receivedDateTime desc"
        assert graph.requests[0].headers["Authorization"] == "Bearer access-token"
        assert [m.message_id for m in page.messages] == ["AAMk-0", "AAMk-1", "AAMk-2"]
        assert page.total_count == 3
        assert page.pagination.has_next_page is False

    @pytest.mark.asyncio
    async def test_fetch_reports_next_page_from_count(self, provider, graph) -> None:
        """Test that the $count total drives has_next_page."""
        graph.total = 10

        page = await provider.fetch(FetchOptions(page=2, page_size=3))

        assert graph.requests[0].url.params["$skip"] == "3"
        assert page.pagination.has_next_page is True
        assert page.pagination.has_previous_page is True

    @pytest.mark.asyncio
    async def test_fetch_filter(self, provider, graph) -> None:
        """Test that dates and query become an OData filter."""
        await provider.fetch(FetchOptions(
            folder="Sent",
            since=datetime(2026, 10, 1, tzinfo=timezone.utc),
            query="it's late",
        ))

        request = graph.requests[0]
        assert request.url.path == "/v1.0/me/mailFolders/sentitems/messages"
        assert request.url.params["$filter"] == (
            "receivedDateTime ge 2026-10-01T00:00:00Z and contains(subject,'it''s late')"
        )

    @pytest.mark.asyncio
    async def test_mark_as_read_patches(self, provider, graph) -> None:
        """Test that unread messages are patched when mark_as_read is set."""
        page = await provider.fetch(FetchOptions(page_size=3, mark_as_read=True))

        patches = [r for r in graph.requests if r.method == "PATCH"]
        assert len(patches) == 3
        assert json.loads(patches[0].content) == {"isRead": True}
        assert all(m.is_read for m in page.messages)

    @pytest.mark.asyncio
    async def test_rejected_token_is_refreshed_once(self, provider, graph, token_endpoint) -> None:
        """Test that a 401 refreshes the Microsoft token and retries."""
        graph.statuses = [401]

        page = await provider.fetch(FetchOptions(page_size=3))

        assert len(page.messages) == 3
        assert len(token_endpoint.requests) == 1
        assert graph.requests[1].headers["Authorization"] == "Bearer fresh-token-1"

    @pytest.mark.asyncio
    async def test_rejected_twice_requires_reauth(self, provider, graph, outlook_account) -> None:
        """Test that a token rejected after refresh flags the account."""
        graph.statuses = [401, 401]

        with pytest.raises(ReauthRequiredError):
            await provider.fetch(FetchOptions(page_size=3))

        assert outlook_account.requires_reauth is True

    @pytest.mark.asyncio
    async def test_throttling_maps_to_quota_error(self, provider, graph) -> None:
        """Test that HTTP 429 surfaces as QuotaExceededError."""
        graph.statuses = [429]

        with pytest.raises(QuotaExceededError):
            await provider.fetch(FetchOptions(page_size=3))

    @pytest.mark.asyncio
    async def test_send(self, provider, graph) -> None:
        """Test that sendMail receives recipients and an HTML body."""
        result = await provider.send(OutgoingMessage(
            to=["a@x.com"], cc=["b@x.com"], subject="Hello", body_html="<p>Hi</p>",
        ))

        body = graph.json_body(0)
        assert result.success is True
        assert result.provider == "outlook"
        assert result.message_id.startswith("outlook_msg_")
        assert body["saveToSentItems"] is True
        assert body["message"]["body"] == {"contentType": "HTML", "content": "<p>Hi</p>"}
        assert body["message"]["toRecipients"] == [{"emailAddress": {"address": "a@x.com"}}]
        assert body["message"]["ccRecipients"] == [{"emailAddress": {"address": "b@x.com"}}]

    @pytest.mark.asyncio
    async def test_reply_uses_reply_endpoint(self, provider, graph) -> None:
        """Test that replies go through the message reply action."""
        context = ReplyContext(message_id="AAMk-1", thread_id="conv-1", subject="Question")

        result = await provider.reply(context, OutgoingMessage(to=["c@x.com"], body_text="Answer"))

        assert graph.requests[0].url.path == "/v1.0/me/messages/AAMk-1/reply"
        assert graph.json_body(0)["comment"] == "Answer"
        assert result.thread_id == "conv-1"

    @pytest.mark.asyncio
    async def test_create_draft(self, provider, graph) -> None:
        """Test that drafts are created as unsent messages."""
        result = await provider.create_draft(OutgoingMessage(to=["a@x.com"], subject="D", body_text="x"))

        assert result.is_draft is True
        assert result.message_id == "draft-9"
        assert result.thread_id == "conv-d"

    @pytest.mark.asyncio
    async def test_reply_context(self, provider) -> None:
        """Test that reply context prefers Reply-To and reads References."""
        context = await provider.get_reply_context("AAMk-1")

        assert context.internet_message_id == "graph-1@outlook.com"
        assert context.thread_id == "conv-1"
        assert [a.email for a in context.reply_to] == ["help@example.com"]
        assert context.references == ["root@example.com"]
