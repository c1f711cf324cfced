import logging
from typing import Optional

from mailsync.config import settings
from mailsync.exceptions import (
    AuthError,
    ProviderError,
    ReauthRequiredError,
    StorageError,
    UnsupportedAccountError,
)
from mailsync.models import AccountStatus, AccountType, EmailAccount
from mailsync.schemas import AccountCapabilities, EmailFetchResult, FetchOptions
from mailsync.services.ingestion import MessageIngestor
from mailsync.services.mail.factory import ProviderFactory
from mailsync.services.oauth import TokenManager
from mailsync.services.store import MailStore
from mailsync.utils import isoformat, utcnow

logger = logging.getLogger(__name__)


class FetchService:
    """Fetches a page (or all pages) from an account and ingests it"""

    def __init__(self, store: MailStore, tokens: TokenManager, providers: ProviderFactory,
                 ingestor: MessageIngestor, history_sync=None):
        self.store = store
        self.tokens = tokens
        self.providers = providers
        self.ingestor = ingestor
        self.history_sync = history_sync

    @staticmethod
    def is_fetchable(account: EmailAccount) -> bool:
        return bool(account.is_active) and account.status != AccountStatus.ERROR

    async def fetch_emails_from_account(
        self,
        account: EmailAccount,
        options: Optional[FetchOptions] = None,
    ) -> EmailFetchResult:
        options = (options or FetchOptions()).normalized()
        result = EmailFetchResult(success=False, account_id=account.id, email_address=account.email_address)

        if not self.is_fetchable(account):
            result.error = "Account is inactive or in error state"
            result.requires_reauth = bool(account.requires_reauth)
            return result

        if (options.use_history_api and self.history_sync is not None
                and account.uses_oauth and account.account_type == AccountType.GMAIL):
            return await self.history_sync.sync_gmail_with_history_api(account, options)

        if (account.sync_state or {}).get('isProcessing'):
            result.error = "A sync is already in progress for this account"
            return result

        # Same per-account lock as history and manual sync: one thread writer at a time
        await self.store.update_sync_state(account, isProcessing=True, lastSyncStartedAt=isoformat(utcnow()))
        try:
            return await self._fetch(account, options, result)
        finally:
            try:
                await self.store.update_sync_state(account, isProcessing=False)
            except StorageError as e:
                logger.error("Could not release sync state for account %s: %s", account.id, e)

    async def _fetch(self, account: EmailAccount, options: FetchOptions,
                     result: EmailFetchResult) -> EmailFetchResult:
        try:
            provider = self.providers.for_fetch(account)
            page = await provider.fetch(options)
            messages = list(page.messages)
            last_page = page
            page_number = options.page
            while (options.fetch_all and last_page.pagination.has_next_page
                   and page_number - options.page + 1 < settings.FETCH_ALL_MAX_PAGES):
                page_number += 1
                last_page = await provider.fetch(options.model_copy(update={
                    'page': page_number,
                    'page_token': last_page.pagination.next_page_token,
                }))
                messages.extend(last_page.messages)

            stored, abort_reason = await self.ingestor.ingest_batch(account, messages)
            await self.ingestor.update_account_stats(account, error=abort_reason)
        except ReauthRequiredError as e:
            if not account.requires_reauth:
                await self.tokens.mark_reauth_required(account, str(e))
            result.error = str(e)
            result.requires_reauth = True
            return result
        except (AuthError, ProviderError, UnsupportedAccountError) as e:
            logger.error("Fetch failed for account %s: %s", account.id, e)
            await self.ingestor.record_error(account, str(e))
            result.error = str(e)
            return result
        except StorageError as e:
            logger.error("Storage failed while fetching account %s: %s", account.id, e)
            await self.store.rollback()
            await self.store.refresh(account)
            result.error = str(e)
            return result

        result.success = abort_reason is None
        result.error = abort_reason
        result.messages = messages
        result.total_count = page.total_count if page.total_count is not None else len(messages)
        result.new_count = stored
        result.stored_count = stored
        result.pagination = last_page.pagination
        logger.info(
            "Fetched %d messages (%d new) for account %s",
            len(messages), stored, account.id,
        )
        return result

    def get_account_capabilities(self, account: EmailAccount) -> AccountCapabilities:
        return self.providers.for_send(account).capabilities()
