"""Unit tests for the Celery task bodies."""

from types import SimpleNamespace

import pytest

from mailsync.tasks import sync_tasks
from mailsync.tasks.celery_app import celery_app


@pytest.fixture
def queued(monkeypatch):
    calls = []
    monkeypatch.setattr(
        sync_tasks, "sync_account_task",
        SimpleNamespace(delay=lambda *args: calls.append(args)),
    )
    return calls


class TestSyncTasks:
    """Test suite for the sync task coroutines."""

    @pytest.mark.asyncio
    async def test_gmail_account_uses_history_sync(self, services, gmail_service, gmail_message,
                                                  gmail_account) -> None:
        """Test that Gmail OAuth accounts are synced through the History API."""
        gmail_service.inbox = [gmail_message("gm-1")]

        outcome = await sync_tasks.sync_account_async(services, gmail_account.id)

        assert outcome["status"] == "success"
        assert outcome["sync_status"] == "complete"
        assert outcome["new_count"] == 1

    @pytest.mark.asyncio
    async def test_imap_account_uses_fetch(self, services, imap_account) -> None:
        """Test that password accounts are synced with a plain fetch."""
        outcome = await sync_tasks.sync_account_async(services, imap_account.id)

        assert outcome["status"] == "success"
        assert outcome["new_count"] == 3
        assert outcome["sync_status"] is None

    @pytest.mark.asyncio
    async def test_reauth_account_is_skipped(self, services, oauth_account_factory) -> None:
        """Test that accounts awaiting re-authentication are not synced."""
        account = await oauth_account_factory(requires_reauth=True)

        outcome = await sync_tasks.sync_account_async(services, account.id)

        assert outcome == {"status": "skipped", "reason": "account requires re-authentication"}

    @pytest.mark.asyncio
    async def test_missing_account_is_skipped(self, services) -> None:
        """Test that unknown account ids are skipped."""
        outcome = await sync_tasks.sync_account_async(services, 4242)

        assert outcome["status"] == "skipped"

    @pytest.mark.asyncio
    async def test_sync_all_queues_healthy_accounts(
        self, services, queued, gmail_account, imap_account, oauth_account_factory
    ) -> None:
        """Test that every active account not awaiting reauth is queued."""
        await oauth_account_factory(email_address="stale@gmail.example.com", requires_reauth=True)
        await oauth_account_factory(email_address="off@gmail.example.com", is_active=False)

        outcome = await sync_tasks.sync_all_accounts_async(services)

        assert outcome == {"status": "triggered", "count": 2}
        assert sorted(queued) == sorted([(gmail_account.id,), (imap_account.id,)])


def test_beat_schedule_registers_periodic_tasks() -> None:
    schedule = celery_app.conf.beat_schedule

    assert {entry["task"] for entry in schedule.values()} >= {
        "mailsync.tasks.sync_tasks.sync_all_accounts",
        "mailsync.tasks.sync_tasks.renew_gmail_watches",
    }
