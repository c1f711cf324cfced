import asyncio
import logging

from celery import Task

from mailsync.config import settings
from mailsync.database import create_worker_sessionmaker
from mailsync.exceptions import StorageError
from mailsync.schemas import FetchOptions
from mailsync.services import MailServices
from mailsync.services.history_sync import is_gmail_oauth
from mailsync.tasks.celery_app import celery_app

logger = logging.getLogger(__name__)

# Pause between chained manual sync batches
MANUAL_SYNC_BATCH_DELAY_SECONDS = 2


class DatabaseTask(Task):
    """Base task that runs a coroutine against a fresh worker engine"""

    def run_with_services(self, work):
        return asyncio.run(run_with_services(work))


async def run_with_services(work):
    engine, session_factory = create_worker_sessionmaker()
    try:
        async with session_factory() as db:
            return await work(MailServices(db))
    finally:
        await engine.dispose()


@celery_app.task(bind=True, base=DatabaseTask, max_retries=3)
def sync_account_task(self, account_id: int):
    """Sync a single email account"""
    try:
        return self.run_with_services(lambda services: sync_account_async(services, account_id))
    except StorageError as e:
        logger.error("Sync of account %s hit a storage failure: %s", account_id, e)
        # Exponential backoff
        raise self.retry(exc=e, countdown=2 ** self.request.retries * 60)


async def sync_account_async(services: MailServices, account_id: int):
    account = await services.store.get_account(account_id)
    if not account or not account.is_active:
        return {'status': 'skipped', 'reason': 'account not found or inactive'}
    if account.requires_reauth:
        return {'status': 'skipped', 'reason': 'account requires re-authentication'}

    options = FetchOptions(limit=settings.MAX_MESSAGES_PER_ACCOUNT)
    if is_gmail_oauth(account):
        result = await services.history_sync.sync_gmail_with_history_api(account, options)
    else:
        result = await services.fetcher.fetch_emails_from_account(account, options)

    return {
        'status': 'success' if result.success else 'failed',
        'account_id': account_id,
        'new_count': result.new_count,
        'sync_status': result.sync_status,
        'error': result.error,
        'requires_reauth': result.requires_reauth,
    }


@celery_app.task
def sync_all_accounts():
    """Sync all active accounts"""
    return asyncio.run(run_with_services(sync_all_accounts_async))


async def sync_all_accounts_async(services: MailServices):
    accounts = await services.store.list_accounts(active_only=True)
    triggered = 0
    for account in accounts:
        if account.requires_reauth:
            continue
        sync_account_task.delay(account.id)
        triggered += 1
    logger.info("Triggered sync for %d of %d active accounts", triggered, len(accounts))
    return {'status': 'triggered', 'count': triggered}


@celery_app.task
def renew_gmail_watches():
    """Re-register Gmail push watches close to expiry"""
    if not settings.GMAIL_PUBSUB_TOPIC:
        return {'status': 'skipped', 'reason': 'no pub/sub topic configured'}
    counts = asyncio.run(run_with_services(lambda services: services.history_sync.renew_expiring_watches()))
    return {'status': 'success', **counts}


@celery_app.task(bind=True, base=DatabaseTask)
def continue_manual_sync_task(self, account_id: int, chain: bool = True):
    """Process one manual sync batch, queueing the next while more remain"""
    result = self.run_with_services(lambda services: services.manual_sync.continue_manual_sync(account_id))
    if result.success and chain and result.batch and result.batch.has_more:
        continue_manual_sync_task.apply_async(
            (account_id,), {'chain': True}, countdown=MANUAL_SYNC_BATCH_DELAY_SECONDS,
        )
    return result.model_dump(mode='json')
