import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import RedirectResponse

from mailsync.api.deps import get_current_user_id, get_services
from mailsync.config import settings
from mailsync.exceptions import AuthError, StorageError
from mailsync.models import OAuthProvider
from mailsync.schemas import AuthorizeResponse
from mailsync.services import MailServices
from mailsync.tasks.sync_tasks import sync_account_task

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/{provider}/authorize", response_model=AuthorizeResponse)
async def authorize(
    provider: OAuthProvider,
    account_name: Optional[str] = Query(None),
    is_primary: bool = Query(False),
    user_id: str = Depends(get_current_user_id),
    services: MailServices = Depends(get_services),
):
    """Initiate the OAuth flow for a Gmail or Outlook mailbox"""
    url = services.linking.get_authorization_url(provider, user_id, account_name, is_primary)
    return AuthorizeResponse(authorization_url=url)


@router.get("/{provider}/callback")
async def callback(
    provider: OAuthProvider,
    code: str = Query(...),
    state: str = Query(...),
    services: MailServices = Depends(get_services),
):
    """Handle the provider redirect, store tokens and queue the first sync"""
    try:
        account = await services.linking.complete_authorization(provider, code, state)
    except (AuthError, StorageError) as e:
        logger.warning("%s OAuth callback failed: %s", provider.value, e)
        raise HTTPException(status_code=400, detail=f"OAuth error: {e}")

    # Trigger initial sync
    sync_account_task.delay(account.id)

    # Redirect to frontend
    return RedirectResponse(url=f"{settings.BASE_URL}/#/dashboard?connected={provider.value}")
