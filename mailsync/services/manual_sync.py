"""Operator-driven Gmail backfill, one bounded batch per call."""

import logging
from typing import Optional

from mailsync.config import settings
from mailsync.exceptions import AuthError, ProviderError, ReauthRequiredError, StorageError
from mailsync.models import EmailAccount, SyncStatus
from mailsync.schemas import ManualSyncBatch, ManualSyncProgress, ManualSyncResult
from mailsync.services.history_sync import is_gmail_oauth
from mailsync.services.ingestion import MessageIngestor
from mailsync.services.mail.factory import ProviderFactory
from mailsync.services.oauth import TokenManager
from mailsync.services.store import MailStore
from mailsync.utils import isoformat, utcnow

logger = logging.getLogger(__name__)


def estimate_progress(total_processed: int, has_more: bool, batch_size: int):
    """Return (estimated_total, percentage) for a backfill in flight"""
    estimated_total = total_processed + (batch_size if has_more else 0)
    if estimated_total == 0:
        return 0, 100
    return estimated_total, round(min(total_processed / estimated_total * 100, 100))


class ManualSyncDriver:
    def __init__(self, store: MailStore, tokens: TokenManager, providers: ProviderFactory,
                 ingestor: MessageIngestor, batch_size: Optional[int] = None):
        self.store = store
        self.tokens = tokens
        self.providers = providers
        self.ingestor = ingestor
        self.batch_size = batch_size or settings.MANUAL_SYNC_BATCH_SIZE

    async def _load(self, account_id: int, result: ManualSyncResult) -> Optional[EmailAccount]:
        account = await self.store.get_account(account_id)
        if account is None:
            result.error = result.message = "Account not found"
            return None
        result.email_address = account.email_address
        return account

    async def start_manual_sync(self, account_id: int) -> ManualSyncResult:
        result = ManualSyncResult(success=False, account_id=account_id)
        try:
            account = await self._load(account_id, result)
            if account is None:
                return result
            if not is_gmail_oauth(account):
                result.error = result.message = "Account doesn't support Gmail sync"
                return result
            if (account.sync_state or {}).get('isProcessing'):
                result.error = result.message = "Account is already being processed"
                return result

            logger.info("Starting manual sync for account %s", account_id)
            await self.store.update_sync_state(
                account,
                isProcessing=True,
                manualSyncStarted=isoformat(utcnow()),
                currentBatch=1,
                totalProcessed=0,
                nextPageToken=None,
            )
        except StorageError as e:
            result.error = result.message = str(e)
            return result

        return await self._run_batch(account, result, "Manual sync started successfully")

    async def continue_manual_sync(self, account_id: int) -> ManualSyncResult:
        result = ManualSyncResult(success=False, account_id=account_id)
        try:
            account = await self._load(account_id, result)
            if account is None:
                return result
            state = account.sync_state or {}
            if not state.get('nextPageToken'):
                result.error = result.message = "No more emails to sync"
                return result
            if state.get('isProcessing'):
                result.error = result.message = "Account is already being processed"
                return result
            await self.store.update_sync_state(account, isProcessing=True)
        except StorageError as e:
            result.error = result.message = str(e)
            return result

        return await self._run_batch(account, result, "Batch processed successfully")

    async def stop_manual_sync(self, account_id: int) -> ManualSyncResult:
        result = ManualSyncResult(success=False, account_id=account_id)
        try:
            account = await self._load(account_id, result)
            if account is None:
                return result
            await self.store.update_sync_state(
                account, isProcessing=False, manualSyncStopped=isoformat(utcnow()),
            )
        except StorageError as e:
            result.error = result.message = str(e)
            return result
        result.success = True
        result.message = "Manual sync stopped successfully"
        result.progress = self.progress_for(account)
        return result

    async def get_manual_sync_progress(self, account_id: int) -> Optional[ManualSyncProgress]:
        try:
            account = await self.store.get_account(account_id)
        except StorageError as e:
            logger.error("Failed to load manual sync progress for account %s: %s", account_id, e)
            return None
        if account is None or not account.sync_state:
            return None
        return self.progress_for(account)

    def progress_for(self, account: EmailAccount) -> ManualSyncProgress:
        state = account.sync_state or {}
        total_processed = state.get('totalProcessed') or 0
        has_more = bool(state.get('nextPageToken'))
        estimated_total, percentage = estimate_progress(total_processed, has_more, self.batch_size)
        return ManualSyncProgress(
            is_processing=bool(state.get('isProcessing')),
            current_batch=state.get('currentBatch') or 0,
            total_processed=total_processed,
            estimated_total=estimated_total,
            percentage=percentage,
            has_more=has_more,
            sync_status=state.get('syncStatus'),
            last_processed_at=state.get('lastProcessedAt'),
            last_error=state.get('lastError'),
        )

    async def _run_batch(self, account: EmailAccount, result: ManualSyncResult, message: str) -> ManualSyncResult:
        try:
            result.batch = await self.process_next_batch(account)
        except ReauthRequiredError as e:
            if not account.requires_reauth:
                await self._safe_mark_reauth(account, str(e))
            await self._release(account, f"Gmail authentication failed: {e}")
            result.error = f"Gmail authentication failed: {e}"
            result.message = "Failed to process batch"
            result.requires_reauth = True
            return result
        except (AuthError, ProviderError, StorageError) as e:
            logger.error("Manual sync batch failed for account %s: %s", account.id, e)
            await self._release(account, str(e))
            result.error = str(e)
            result.message = "Failed to process batch"
            return result

        result.success = True
        result.message = message
        result.progress = self.progress_for(account)
        return result

    async def process_next_batch(self, account: EmailAccount) -> ManualSyncBatch:
        """List one page of ids from the stored token, fetch, ingest and release the account"""
        state = account.sync_state or {}
        current_batch = state.get('currentBatch') or 1
        total_processed = state.get('totalProcessed') or 0
        provider = self.providers.gmail(account)

        response = await provider.list_message_ids(
            max_results=self.batch_size,
            page_token=state.get('nextPageToken'),
        )
        refs = response.get('messages', []) or []
        next_token = response.get('nextPageToken')

        messages = []
        for ref in refs:
            message = await provider.fetch_message(ref['id'])
            if message is not None:
                messages.append(message)
            await provider.pause()

        if messages:
            _, abort_reason = await self.ingestor.ingest_batch(account, messages)
            if abort_reason:
                raise StorageError(abort_reason, connection_lost=True)

        total_processed += len(messages)
        await self.store.update_sync_state(
            account,
            currentBatch=current_batch + 1,
            totalProcessed=total_processed,
            nextPageToken=next_token,
            lastProcessedAt=isoformat(utcnow()),
            isProcessing=False,
        )
        if not next_token:
            await self._complete(account, provider)

        logger.info(
            "Manual sync batch %d for account %s: %d of %d messages processed",
            current_batch, account.id, len(messages), len(refs),
        )
        return ManualSyncBatch(
            batch_number=current_batch,
            processed=len(messages),
            has_more=bool(next_token),
            next_page_token=next_token,
        )

    async def _complete(self, account: EmailAccount, provider):
        profile = await provider.get_profile()
        now = isoformat(utcnow())
        await self.store.update_sync_state(
            account,
            isProcessing=False,
            syncStatus=SyncStatus.COMPLETE.value,
            lastSyncAt=now,
            lastHistoryId=str(profile['historyId']),
            manualSyncCompleted=now,
            nextPageToken=None,
        )
        await self.ingestor.update_account_stats(account)
        logger.info("Manual sync completed for account %s", account.id)

    async def _release(self, account: EmailAccount, error: str):
        await self.store.rollback()
        try:
            await self.store.refresh(account)
            await self.store.update_sync_state(
                account, isProcessing=False, lastError=error, lastErrorAt=isoformat(utcnow()),
            )
        except StorageError as e:
            logger.error("Could not release manual sync for account %s: %s", account.id, e)

    async def _safe_mark_reauth(self, account: EmailAccount, error: str):
        try:
            await self.tokens.mark_reauth_required(account, error)
        except StorageError as e:
            logger.error("Could not flag account %s for re-authentication: %s", account.id, e)
