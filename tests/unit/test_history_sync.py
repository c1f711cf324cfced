"""Unit tests for Gmail History API synchronisation."""

from datetime import timedelta

import pytest

from mailsync.config import settings
from mailsync.exceptions import UnsupportedAccountError
from mailsync.models import OAuthProvider
from mailsync.schemas import FetchOptions
from mailsync.utils import isoformat, utcnow


@pytest.fixture
def engine(services):
    return services.history_sync


@pytest.fixture
def mailbox(gmail_service, gmail_message):
    gmail_service.inbox = [gmail_message(f"gm-{i}", subject=f"Message {i}") for i in range(3)]
    gmail_service.history_id = "500"
    return gmail_service


class TestInitialSync:
    """Test suite for the initial phase of HistorySyncEngine."""

    @pytest.mark.asyncio
    async def test_initial_sync_stores_and_completes(self, engine, store, mailbox, gmail_account) -> None:
        """Test that a fresh account is fetched, cursored and caught up in one run."""
        result = await engine.sync_gmail_with_history_api(gmail_account)

        state = gmail_account.sync_state
        assert result.success is True
        assert result.sync_status == "complete"
        assert result.new_count == 3
        assert state["syncStatus"] == "complete"
        assert state["lastHistoryId"] == "500"
        assert state["isProcessing"] is False
        assert state["totalProcessed"] == 3
        assert await store.count_messages(gmail_account.id) == 3
        assert gmail_account.total_messages == 3

    @pytest.mark.asyncio
    async def test_cursor_captured_before_fetch(self, engine, mailbox, gmail_account) -> None:
        """Test that the profile is read before messages are listed."""
        await engine.sync_gmail_with_history_api(gmail_account)

        names = [name for name, _ in mailbox.calls]
        assert names.index("getProfile") < names.index("messages.list")

    @pytest.mark.asyncio
    async def test_quota_usage_is_persisted(self, engine, mailbox, gmail_account) -> None:
        """Test that quota units spent in a run are saved for the day."""
        await engine.sync_gmail_with_history_api(gmail_account)

        state = gmail_account.sync_state
        assert state["quotaDate"] == utcnow().date().isoformat()
        # profile 1 + list 5 + 3 gets 15 + history 2
        assert state["quotaUsed"] == 23


class TestHistoricalSync:
    """Test suite for the history replay phase of HistorySyncEngine."""

    @pytest.mark.asyncio
    async def test_history_records_are_applied(
        self, engine, services, store, gmail_service, gmail_message, make_message, oauth_account_factory
    ) -> None:
        """Test that added, read and deleted changes reach storage and thread counters."""
        account = await oauth_account_factory(sync_state={"syncStatus": "historical", "lastHistoryId": "100"})
        await services.ingestor.ingest(account.id, make_message(message_id="old-read"))
        await services.ingestor.ingest(account.id, make_message(message_id="old-deleted"))
        gmail_service.inbox = [gmail_message("gm-new", subject="Brand new")]
        gmail_service.history_responses = [{
            "history": [
                {"id": "120", "messagesAdded": [{"message": {"id": "gm-new"}}]},
                {"id": "130", "labelsRemoved": [{"message": {"id": "old-read"}, "labelIds": ["UNREAD"]}]},
                {"id": "140", "messagesDeleted": [{"message": {"id": "old-deleted"}}]},
            ],
            "historyId": "150",
        }]

        result = await engine.sync_gmail_with_history_api(account)

        read = await store.find_message(account.id, "old-read")
        deleted = await store.find_message(account.id, "old-deleted")
        assert result.success is True
        assert result.history_processed == 3
        assert result.new_count == 1
        assert account.sync_state["lastHistoryId"] == "150"
        assert account.sync_state["syncStatus"] == "complete"
        assert read.is_read is True
        assert (await store.find_thread(account.id, read.thread_id)).unread_count == 0
        assert deleted.is_deleted is True
        assert (await store.find_thread(account.id, deleted.thread_id)).unread_count == 0
        assert await store.message_exists(account.id, "gm-new")

    @pytest.mark.asyncio
    async def test_history_pages_advance_cursor(self, engine, gmail_service, oauth_account_factory) -> None:
        """Test that every history page is followed until no token remains."""
        account = await oauth_account_factory(sync_state={"syncStatus": "historical", "lastHistoryId": "100"})
        gmail_service.history_responses = [
            {"history": [{"id": "110"}], "nextPageToken": "p2", "historyId": "300"},
            {"history": [{"id": "120"}], "historyId": "300"},
        ]

        await engine.sync_gmail_with_history_api(account)

        pages = [params for name, params in gmail_service.calls if name == "history.list"]
        assert [p["pageToken"] for p in pages] == [None, "p2"]
        assert all(p["startHistoryId"] == "100" for p in pages)
        assert account.sync_state["lastHistoryId"] == "300"

    @pytest.mark.asyncio
    async def test_quota_guard_pauses_replay(self, engine, gmail_service, oauth_account_factory) -> None:
        """Test that a nearly spent daily quota pauses without calling the API."""
        account = await oauth_account_factory(sync_state={
            "syncStatus": "historical",
            "lastHistoryId": "100",
            "quotaDate": utcnow().date().isoformat(),
            "quotaUsed": settings.GMAIL_DAILY_QUOTA_UNITS - 5000,
        })

        result = await engine.sync_gmail_with_history_api(account)

        assert result.success is True
        assert result.sync_status == "historical"
        assert gmail_service.count("history.list") == 0
        assert account.sync_state["lastHistoryId"] == "100"

    @pytest.mark.asyncio
    async def test_missing_cursor_is_recaptured(self, engine, gmail_service, oauth_account_factory) -> None:
        """Test that a historical account without a cursor takes the current one."""
        account = await oauth_account_factory(sync_state={"syncStatus": "historical"})

        result = await engine.sync_gmail_with_history_api(account)

        assert result.sync_status == "complete"
        assert account.sync_state["lastHistoryId"] == "1000"
        assert gmail_service.count("history.list") == 0

    @pytest.mark.asyncio
    async def test_expired_cursor_restarts_initial(
        self, engine, store, mailbox, http_error, oauth_account_factory
    ) -> None:
        """Test that a 404 cursor re-runs the initial fetch and completes."""
        account = await oauth_account_factory(sync_state={"syncStatus": "historical", "lastHistoryId": "1"})
        mailbox.history_responses = [http_error(404)]

        result = await engine.sync_gmail_with_history_api(account)

        assert result.success is True
        assert result.sync_status == "complete"
        assert account.sync_state["lastHistoryId"] == "500"
        assert await store.count_messages(account.id) == 3

    @pytest.mark.asyncio
    async def test_error_status_resumes_from_cursor(self, engine, gmail_service, oauth_account_factory) -> None:
        """Test that a failed run resumes history replay instead of refetching."""
        account = await oauth_account_factory(sync_state={"syncStatus": "error", "lastHistoryId": "100"})

        result = await engine.sync_gmail_with_history_api(account)

        assert result.sync_status == "complete"
        assert gmail_service.count("messages.list") == 0
        assert gmail_service.count("history.list") == 1


class TestHistorySyncGuards:
    """Test suite for HistorySyncEngine preconditions and failures."""

    @pytest.mark.asyncio
    async def test_concurrent_run_is_rejected(self, engine, gmail_service, oauth_account_factory) -> None:
        """Test that an account already processing is left alone."""
        account = await oauth_account_factory(sync_state={"isProcessing": True})

        result = await engine.sync_gmail_with_history_api(account)

        assert result.success is False
        assert result.error == "A sync is already in progress for this account"
        assert gmail_service.calls == []

    @pytest.mark.asyncio
    async def test_non_gmail_account_is_rejected(self, engine, outlook_account) -> None:
        """Test that history sync only serves Gmail OAuth accounts."""
        result = await engine.sync_gmail_with_history_api(outlook_account)

        assert result.success is False
        assert result.error == "History sync requires a Gmail OAuth account"

    @pytest.mark.asyncio
    async def test_revoked_token_requires_reauth(self, engine, token_endpoint, oauth_account_factory) -> None:
        """Test that invalid_grant ends the run in error and flags the account."""
        account = await oauth_account_factory(token_expiry=utcnow() - timedelta(minutes=5))
        token_endpoint.queue(400, {"error": "invalid_grant"})

        result = await engine.sync_gmail_with_history_api(account)

        assert result.success is False
        assert result.requires_reauth is True
        assert account.requires_reauth is True
        assert account.sync_state["syncStatus"] == "error"
        assert account.sync_state["isProcessing"] is False
        assert account.sync_state["lastError"] == result.error

    @pytest.mark.asyncio
    async def test_server_error_releases_lock(self, engine, mailbox, http_error, gmail_account) -> None:
        """Test that a provider failure records the error and clears isProcessing."""
        mailbox.list_errors = [http_error(500)]

        result = await engine.sync_gmail_with_history_api(gmail_account)

        assert result.success is False
        assert gmail_account.sync_state["syncStatus"] == "error"
        assert gmail_account.sync_state["isProcessing"] is False


class TestWatch:
    """Test suite for Gmail push watch registration."""

    @pytest.mark.asyncio
    async def test_watch_registered_when_complete(self, engine, mailbox, gmail_account, monkeypatch) -> None:
        """Test that a caught-up account registers a push watch."""
        monkeypatch.setattr(settings, "GMAIL_PUBSUB_TOPIC", "projects/p/topics/mail")

        await engine.sync_gmail_with_history_api(gmail_account)

        assert mailbox.count("watch") == 1
        assert gmail_account.sync_state["isWatching"] is True
        assert gmail_account.sync_state["watchExpiration"]

    @pytest.mark.asyncio
    async def test_no_topic_no_watch(self, engine, mailbox, gmail_account, monkeypatch) -> None:
        """Test that no watch is registered without a configured topic."""
        monkeypatch.setattr(settings, "GMAIL_PUBSUB_TOPIC", "")

        await engine.sync_gmail_with_history_api(gmail_account)

        assert mailbox.count("watch") == 0

    @pytest.mark.asyncio
    async def test_renew_expiring_watches(
        self, engine, gmail_service, oauth_account_factory, monkeypatch
    ) -> None:
        """Test that only watches inside the renewal window are re-registered."""
        monkeypatch.setattr(settings, "GMAIL_PUBSUB_TOPIC", "projects/p/topics/mail")
        expiring = await oauth_account_factory(sync_state={
            "isWatching": True, "watchExpiration": isoformat(utcnow() + timedelta(hours=1)),
        })
        await oauth_account_factory(
            email_address="fresh@gmail.example.com",
            sync_state={"isWatching": True, "watchExpiration": isoformat(utcnow() + timedelta(days=5))},
        )
        await oauth_account_factory(OAuthProvider.OUTLOOK, sync_state={"isWatching": True})

        outcome = await engine.renew_expiring_watches()

        assert outcome == {"renewed": 1, "failed": 0}
        assert gmail_service.count("watch") == 1
        assert expiring.sync_state["lastWatchRenewal"]


class TestWatchStop:
    """Test suite for cancelling Gmail push watches."""

    @pytest.mark.asyncio
    async def test_stop_watch_clears_state(self, engine, gmail_service, oauth_account_factory) -> None:
        """Test that a registered watch is stopped and forgotten."""
        account = await oauth_account_factory(sync_state={
            "isWatching": True, "watchExpiration": isoformat(utcnow() + timedelta(days=3)),
        })

        stopped = await engine.stop_watch(account)

        assert stopped is True
        assert gmail_service.count("stop") == 1
        assert account.sync_state["isWatching"] is False
        assert account.sync_state["watchExpiration"] is None

    @pytest.mark.asyncio
    async def test_stop_watch_without_watch(self, engine, gmail_service, gmail_account) -> None:
        """Test that accounts without a watch make no provider call."""
        stopped = await engine.stop_watch(gmail_account)

        assert stopped is False
        assert gmail_service.count("stop") == 0

    @pytest.mark.asyncio
    async def test_stop_watch_failure_still_clears_state(
        self, engine, gmail_service, http_error, oauth_account_factory
    ) -> None:
        """Test that a refused stop call still clears the local watch flag."""
        account = await oauth_account_factory(sync_state={"isWatching": True})
        gmail_service.stop_errors = [http_error(500)]

        stopped = await engine.stop_watch(account)

        assert stopped is True
        assert account.sync_state["isWatching"] is False


class TestThreadRefresh:
    """Test suite for pulling whole Gmail conversations."""

    @pytest.mark.asyncio
    async def test_refresh_stores_missing_messages(
        self, engine, store, services, gmail_service, gmail_message, gmail_account
    ) -> None:
        """Test that only messages not yet stored are ingested into the thread."""
        gmail_service.inbox = [
            gmail_message("gm-1", thread_id="conv-1"),
            gmail_message("gm-2", thread_id="conv-1", subject="Re: Hello"),
            gmail_message("gm-3", thread_id="conv-2"),
        ]
        await services.fetcher.fetch_emails_from_account(gmail_account, FetchOptions(limit=1))

        new_count = await engine.refresh_thread(gmail_account, "conv-1")
        again = await engine.refresh_thread(gmail_account, "conv-1")

        thread = await store.find_thread(gmail_account.id, "conv-1")
        assert new_count == 1
        assert again == 0
        assert thread.message_count == 2
        assert await store.count_messages(gmail_account.id) == 2

    @pytest.mark.asyncio
    async def test_refresh_requires_gmail(self, engine, outlook_account) -> None:
        """Test that non-Gmail accounts cannot refresh a Gmail thread."""
        with pytest.raises(UnsupportedAccountError):
            await engine.refresh_thread(outlook_account, "conv-1")
