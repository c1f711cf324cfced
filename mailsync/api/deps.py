from typing import Optional

from fastapi import Depends, Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from mailsync.database import get_db
from mailsync.models import EmailAccount
from mailsync.services import MailServices


async def get_current_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    """Acting user as asserted by the upstream authentication layer"""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id


async def get_services(db: AsyncSession = Depends(get_db)) -> MailServices:
    return MailServices(db)


async def load_account(services: MailServices, account_id: int, user_id: str) -> EmailAccount:
    account = await services.store.get_account(account_id)
    if not account or account.user_id != user_id:
        raise HTTPException(status_code=404, detail="Account not found")
    return account


async def get_account(
    account_id: int,
    user_id: str = Depends(get_current_user_id),
    services: MailServices = Depends(get_services),
) -> EmailAccount:
    return await load_account(services, account_id, user_id)
