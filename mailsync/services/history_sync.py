"""Incremental Gmail sync driven by the History API.

Per-account phases live in ``sync_state['syncStatus']``:

* ``initial``: bounded fetch of recent mail, history cursor captured
* ``historical``: delta replay from ``lastHistoryId`` until exhausted
* ``complete``: caught up, push watch registered when a topic is configured
* ``error``: last run failed; the next run resumes from the stored cursor

``isProcessing`` keeps a second run off the same account.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, Optional

from mailsync.config import settings
from mailsync.exceptions import (
    AuthError,
    CursorExpiredError,
    ProviderError,
    QuotaExceededError,
    ReauthRequiredError,
    StorageError,
    UnsupportedAccountError,
)
from mailsync.models import AccountType, EmailAccount, OAuthProvider, SyncStatus
from mailsync.schemas import EmailFetchResult, FetchOptions
from mailsync.services.ingestion import MessageIngestor
from mailsync.services.mail.factory import ProviderFactory
from mailsync.services.mail.gmail import GmailProvider, QuotaTracker
from mailsync.services.store import MailStore
from mailsync.services.threads import ThreadResolver
from mailsync.utils import isoformat, parse_iso, utcnow

logger = logging.getLogger(__name__)

DEFAULT_WATCH_LIFETIME = timedelta(days=7)


def is_gmail_oauth(account: EmailAccount) -> bool:
    return (
        account.uses_oauth
        and account.oauth_provider == OAuthProvider.GMAIL
        and account.account_type == AccountType.GMAIL
    )


class HistorySyncEngine:
    def __init__(self, store: MailStore, providers: ProviderFactory, ingestor: MessageIngestor,
                 threads: ThreadResolver):
        self.store = store
        self.providers = providers
        self.ingestor = ingestor
        self.threads = threads

    async def sync_gmail_with_history_api(
        self,
        account: EmailAccount,
        options: Optional[FetchOptions] = None,
    ) -> EmailFetchResult:
        options = (options or FetchOptions()).normalized()
        result = EmailFetchResult(success=False, account_id=account.id, email_address=account.email_address)
        state = dict(account.sync_state or {})
        result.sync_status = state.get('syncStatus')

        if not is_gmail_oauth(account):
            result.error = "History sync requires a Gmail OAuth account"
            return result
        if state.get('isProcessing'):
            result.error = "A sync is already in progress for this account"
            return result

        quota = QuotaTracker(state)
        provider = self.providers.gmail(account, quota=quota)
        await self.store.update_sync_state(account, isProcessing=True, lastSyncStartedAt=isoformat(utcnow()))
        status = state.get('syncStatus') or SyncStatus.INITIAL.value
        if status == SyncStatus.ERROR.value:
            status = SyncStatus.HISTORICAL.value if state.get('lastHistoryId') else SyncStatus.INITIAL.value

        try:
            if status == SyncStatus.INITIAL.value:
                await self._initial(account, provider, options, result)
                status = SyncStatus.HISTORICAL.value
            status = await self._historical(account, provider, quota, options, result)
            if status == SyncStatus.COMPLETE.value:
                await self._ensure_watch(account, provider)
            await self.ingestor.update_account_stats(account)
            result.success = True
        except QuotaExceededError as e:
            # Provider throttling leaves the phase untouched so the next run resumes
            logger.warning("Gmail quota exhausted for account %s: %s", account.id, e)
            result.error = str(e)
        except ReauthRequiredError as e:
            status = SyncStatus.ERROR.value
            result.error = str(e)
            result.requires_reauth = True
        except (AuthError, ProviderError, StorageError) as e:
            logger.error("History sync failed for account %s: %s", account.id, e)
            status = SyncStatus.ERROR.value
            result.error = str(e)
        finally:
            changes = {'isProcessing': False, 'syncStatus': status, **quota.state()}
            if result.error and not result.success:
                changes.update(lastError=result.error, lastErrorAt=isoformat(utcnow()))
            try:
                if not result.success:
                    await self.store.rollback()
                    await self.store.refresh(account)
                await self.store.update_sync_state(account, **changes)
            except StorageError as e:
                logger.error("Could not release sync state for account %s: %s", account.id, e)

        result.sync_status = status
        return result

    async def _initial(self, account: EmailAccount, provider: GmailProvider, options: FetchOptions,
                       result: EmailFetchResult):
        """Bounded fetch of recent mail, then hand over to history replay"""
        # Cursor first: anything arriving mid-fetch is replayed later and deduplicated on ingest
        profile = await provider.get_profile()
        page = await provider.fetch(options)
        stored, abort_reason = await self.ingestor.ingest_batch(account, page.messages)
        if abort_reason:
            raise StorageError(abort_reason, connection_lost=True)

        result.messages.extend(page.messages)
        result.new_count += stored
        result.stored_count += stored
        result.total_count = page.total_count or len(page.messages)
        result.pagination = page.pagination

        state = account.sync_state or {}
        await self.store.update_sync_state(
            account,
            syncStatus=SyncStatus.HISTORICAL.value,
            lastHistoryId=str(profile['historyId']),
            totalProcessed=state.get('totalProcessed', 0) + len(page.messages),
            lastSyncAt=isoformat(utcnow()),
        )
        logger.info(
            "Initial Gmail sync for account %s stored %d of %d messages",
            account.id, stored, len(page.messages),
        )

    async def _historical(self, account: EmailAccount, provider: GmailProvider, quota: QuotaTracker,
                          options: FetchOptions, result: EmailFetchResult) -> str:
        start_cursor = (account.sync_state or {}).get('lastHistoryId')
        if not start_cursor:
            logger.warning("Account %s has no history cursor, capturing a fresh one", account.id)
            profile = await provider.get_profile()
            await self.store.update_sync_state(
                account,
                lastHistoryId=str(profile['historyId']),
                syncStatus=SyncStatus.COMPLETE.value,
                lastSyncAt=isoformat(utcnow()),
            )
            return SyncStatus.COMPLETE.value

        page_token = None
        while True:
            if not quota.has_headroom():
                logger.warning(
                    "Gmail quota guard tripped for account %s (%d units left), pausing",
                    account.id, quota.remaining,
                )
                await self.store.update_sync_state(account, syncStatus=SyncStatus.HISTORICAL.value, **quota.state())
                return SyncStatus.HISTORICAL.value

            try:
                response = await provider.list_history(start_cursor, page_token)
            except CursorExpiredError:
                logger.warning("History cursor %s expired for account %s, restarting", start_cursor, account.id)
                await self.store.update_sync_state(
                    account, syncStatus=SyncStatus.INITIAL.value, lastHistoryId=None,
                )
                await self._initial(account, provider, options, result)
                await self.store.update_sync_state(account, syncStatus=SyncStatus.COMPLETE.value)
                return SyncStatus.COMPLETE.value

            records = response.get('history', []) or []
            processed = await self._apply_history(account, provider, records, result)
            result.history_processed += processed

            page_token = response.get('nextPageToken')
            if page_token:
                cursor = records[-1]['id'] if records else None
            else:
                cursor = response.get('historyId') or (records[-1]['id'] if records else None)
            changes = {
                'totalProcessed': (account.sync_state or {}).get('totalProcessed', 0) + processed,
                'lastSyncAt': isoformat(utcnow()),
                **quota.state(),
            }
            if cursor:
                changes['lastHistoryId'] = str(cursor)
            await self.store.update_sync_state(account, **changes)
            if not page_token:
                break

        await self.store.update_sync_state(account, syncStatus=SyncStatus.COMPLETE.value)
        logger.info("History replay complete for account %s (%d changes)", account.id, result.history_processed)
        return SyncStatus.COMPLETE.value

    async def _apply_history(self, account: EmailAccount, provider: GmailProvider, records: Iterable[Dict],
                             result: EmailFetchResult) -> int:
        processed = 0
        for record in records:
            for added in record.get('messagesAdded', []) or []:
                message_id = added['message']['id']
                if await self.store.message_exists(account.id, message_id):
                    continue
                message = await provider.fetch_message(message_id)
                if message is None:
                    continue
                if await self._ingest(account, message):
                    result.messages.append(message)
                    result.new_count += 1
                    result.stored_count += 1
                processed += 1
                await provider.pause()

            for deleted in record.get('messagesDeleted', []) or []:
                await self._mark_deleted(account, deleted['message']['id'])
                processed += 1
            for change in record.get('labelsAdded', []) or []:
                await self._apply_labels(account, change['message']['id'], added=change.get('labelIds', []))
                processed += 1
            for change in record.get('labelsRemoved', []) or []:
                await self._apply_labels(account, change['message']['id'], removed=change.get('labelIds', []))
                processed += 1
            await self.store.commit()
        return processed

    async def _ingest(self, account: EmailAccount, message) -> bool:
        try:
            return await self.ingestor.ingest(account.id, message) is not None
        except StorageError as e:
            await self.store.rollback()
            if e.connection_lost:
                raise
            logger.warning("Could not store Gmail message %s: %s", message.message_id, e)
            await self.store.refresh(account)
            return False

    async def _mark_deleted(self, account: EmailAccount, message_id: str):
        stored = await self.store.find_message(account.id, message_id)
        if stored is None or stored.is_deleted:
            return
        stored.is_deleted = True
        if not stored.is_read:
            await self.threads.adjust_unread_count(account.id, stored.thread_id, -1)

    async def _apply_labels(self, account: EmailAccount, message_id: str, added=(), removed=()):
        stored = await self.store.find_message(account.id, message_id)
        if stored is None:
            return
        labels = [label for label in (stored.labels or []) if label not in removed]
        labels += [label for label in added if label not in labels]
        stored.labels = labels

        is_read = 'UNREAD' not in labels
        if is_read != stored.is_read:
            stored.is_read = is_read
            if not stored.is_deleted:
                await self.threads.adjust_unread_count(account.id, stored.thread_id, -1 if is_read else 1)

    # Push notifications
    async def _ensure_watch(self, account: EmailAccount, provider: GmailProvider):
        if not settings.GMAIL_PUBSUB_TOPIC:
            return
        state = account.sync_state or {}
        expiration = parse_iso(state.get('watchExpiration'))
        window = timedelta(hours=settings.WATCH_RENEWAL_WINDOW_HOURS)
        if state.get('isWatching') and expiration and expiration > utcnow() + window:
            return
        try:
            await self.register_watch(account, provider)
        except ProviderError as e:
            logger.warning("Could not register Gmail watch for account %s: %s", account.id, e)

    async def register_watch(self, account: EmailAccount, provider: Optional[GmailProvider] = None) -> datetime:
        provider = provider or self.providers.gmail(account)
        response = await provider.watch(settings.GMAIL_PUBSUB_TOPIC)
        if response.get('expiration'):
            expiration = datetime.fromtimestamp(int(response['expiration']) / 1000, tz=timezone.utc)
        else:
            expiration = utcnow() + DEFAULT_WATCH_LIFETIME
        await self.store.update_sync_state(
            account,
            isWatching=True,
            watchExpiration=isoformat(expiration),
            lastWatchRenewal=isoformat(utcnow()),
        )
        logger.info("Gmail watch for account %s active until %s", account.id, expiration.isoformat())
        return expiration

    async def renew_expiring_watches(self) -> Dict[str, int]:
        """Re-register watches that expire within the renewal window"""
        cutoff = utcnow() + timedelta(hours=settings.WATCH_RENEWAL_WINDOW_HOURS)
        renewed, failed = 0, 0
        for account in await self.store.list_accounts(active_only=True):
            state = account.sync_state or {}
            if not is_gmail_oauth(account) or not state.get('isWatching'):
                continue
            expiration = parse_iso(state.get('watchExpiration'))
            if expiration and expiration > cutoff:
                continue
            try:
                await self.register_watch(account)
                renewed += 1
            except (AuthError, ProviderError) as e:
                failed += 1
                logger.error("Watch renewal failed for account %s: %s", account.id, e)
                await self.ingestor.record_error(account, f"Watch renewal failed: {e}")
        return {'renewed': renewed, 'failed': failed}

    async def stop_watch(self, account: EmailAccount) -> bool:
        """Cancel the account's push watch; returns False when none was registered"""
        if not is_gmail_oauth(account) or not (account.sync_state or {}).get('isWatching'):
            return False
        try:
            await self.providers.gmail(account).stop_watch()
        except (AuthError, ProviderError) as e:
            # Gmail drops the watch on its own at expiry; local state is cleared regardless
            logger.warning("Could not stop Gmail watch for account %s: %s", account.id, e)
        await self.store.update_sync_state(account, isWatching=False, watchExpiration=None)
        logger.info("Gmail watch stopped for account %s", account.id)
        return True

    # Conversations
    async def refresh_thread(self, account: EmailAccount, thread_id: str) -> int:
        """Re-read one Gmail conversation and store the messages missing locally"""
        if not is_gmail_oauth(account):
            raise UnsupportedAccountError("Thread refresh requires a Gmail OAuth account")
        provider = self.providers.gmail(account)
        stored = 0
        for message in await provider.fetch_thread(thread_id):
            if await self._ingest(account, message):
                stored += 1
        await self.ingestor.update_account_stats(account)
        logger.info("Refreshed Gmail thread %s for account %s (%d new)", thread_id, account.id, stored)
        return stored
