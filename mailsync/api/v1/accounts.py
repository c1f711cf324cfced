from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException

from mailsync.api.deps import get_account, get_current_user_id, get_services
from mailsync.exceptions import UnsupportedAccountError
from mailsync.models import AccountStatus, EmailAccount
from mailsync.schemas import (
    AccountCapabilities,
    CleanupResult,
    EmailAccountSchema,
    EmailFetchResult,
    FetchOptions,
    ManualSyncProgress,
    ManualSyncResult,
    ThreadRefreshResult,
    ThreadStats,
    TokenRefreshResult,
)
from mailsync.services import MailServices
from mailsync.tasks.sync_tasks import sync_account_task

router = APIRouter()


@router.get("/", response_model=List[EmailAccountSchema])
async def list_accounts(
    user_id: str = Depends(get_current_user_id),
    services: MailServices = Depends(get_services),
):
    """List all connected email accounts for current user"""
    return await services.store.list_accounts(user_id=user_id)


@router.get("/{account_id}", response_model=EmailAccountSchema)
async def read_account(account: EmailAccount = Depends(get_account)):
    """Get specific email account"""
    return account


@router.delete("/{account_id}")
async def deactivate_account(
    account: EmailAccount = Depends(get_account),
    services: MailServices = Depends(get_services),
):
    """Disconnect an email account; stored mail is kept"""
    await services.history_sync.stop_watch(account)
    account.is_active = False
    account.status = AccountStatus.INACTIVE
    await services.store.commit()
    return {"status": "deactivated", "account_id": account.id}


@router.post("/{account_id}/sync")
async def trigger_sync(account: EmailAccount = Depends(get_account)):
    """Queue a background sync for an account"""
    task = sync_account_task.delay(account.id)
    return {"status": "sync_triggered", "task_id": task.id}


@router.post("/{account_id}/fetch", response_model=EmailFetchResult)
async def fetch_emails(
    options: Optional[FetchOptions] = None,
    account: EmailAccount = Depends(get_account),
    services: MailServices = Depends(get_services),
):
    """Fetch a page of mail from the provider and store it"""
    return await services.fetcher.fetch_emails_from_account(account, options)


@router.post("/{account_id}/history-sync", response_model=EmailFetchResult)
async def history_sync(
    options: Optional[FetchOptions] = None,
    account: EmailAccount = Depends(get_account),
    services: MailServices = Depends(get_services),
):
    """Run one incremental Gmail sync pass"""
    return await services.history_sync.sync_gmail_with_history_api(account, options)


@router.post("/{account_id}/manual-sync/start", response_model=ManualSyncResult)
async def start_manual_sync(
    account: EmailAccount = Depends(get_account),
    services: MailServices = Depends(get_services),
):
    return await services.manual_sync.start_manual_sync(account.id)


@router.post("/{account_id}/manual-sync/continue", response_model=ManualSyncResult)
async def continue_manual_sync(
    account: EmailAccount = Depends(get_account),
    services: MailServices = Depends(get_services),
):
    return await services.manual_sync.continue_manual_sync(account.id)


@router.post("/{account_id}/manual-sync/stop", response_model=ManualSyncResult)
async def stop_manual_sync(
    account: EmailAccount = Depends(get_account),
    services: MailServices = Depends(get_services),
):
    return await services.manual_sync.stop_manual_sync(account.id)


@router.get("/{account_id}/manual-sync/progress", response_model=ManualSyncProgress)
async def manual_sync_progress(
    account: EmailAccount = Depends(get_account),
    services: MailServices = Depends(get_services),
):
    progress = await services.manual_sync.get_manual_sync_progress(account.id)
    if progress is None:
        raise HTTPException(status_code=404, detail="No sync state for this account")
    return progress


@router.post("/{account_id}/refresh-token", response_model=TokenRefreshResult)
async def refresh_token(
    account: EmailAccount = Depends(get_account),
    services: MailServices = Depends(get_services),
):
    """Force an OAuth token refresh"""
    return await services.tokens.refresh_tokens(account)


@router.get("/{account_id}/threads/stats", response_model=ThreadStats)
async def thread_stats(
    account: EmailAccount = Depends(get_account),
    services: MailServices = Depends(get_services),
):
    return await services.threads.get_thread_stats(account.id)


@router.post("/{account_id}/threads/cleanup", response_model=CleanupResult)
async def cleanup_threads(
    account: EmailAccount = Depends(get_account),
    services: MailServices = Depends(get_services),
):
    """Remove threads that no longer hold any message"""
    deleted = await services.threads.cleanup_orphaned_threads(account.id)
    return CleanupResult(account_id=account.id, deleted_threads=deleted)


@router.post("/{account_id}/threads/{thread_id}/refresh", response_model=ThreadRefreshResult)
async def refresh_thread(
    thread_id: str,
    account: EmailAccount = Depends(get_account),
    services: MailServices = Depends(get_services),
):
    """Pull a whole Gmail conversation and store what is missing"""
    try:
        new_count = await services.history_sync.refresh_thread(account, thread_id)
    except UnsupportedAccountError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return ThreadRefreshResult(account_id=account.id, thread_id=thread_id, new_count=new_count)


@router.get("/{account_id}/capabilities", response_model=AccountCapabilities)
async def capabilities(
    account: EmailAccount = Depends(get_account),
    services: MailServices = Depends(get_services),
):
    return services.fetcher.get_account_capabilities(account)
