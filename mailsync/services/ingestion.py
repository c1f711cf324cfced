import logging
from typing import List, Optional, Tuple

from mailsync.exceptions import StorageError
from mailsync.models import AccountStatus, Attachment, ConnectionStatus, EmailAccount, Message
from mailsync.schemas import NormalizedMessage
from mailsync.services.store import MailStore
from mailsync.services.threads import ThreadResolver
from mailsync.utils import utcnow

logger = logging.getLogger(__name__)


def _message_row(account_id: int, thread_id: str, message: NormalizedMessage) -> Message:
    row = Message(
        account_id=account_id,
        message_id=message.message_id,
        internet_message_id=message.internet_message_id,
        thread_id=thread_id,
        subject=message.subject,
        from_addr=message.from_addr.model_dump() if message.from_addr else None,
        to_addrs=[a.model_dump() for a in message.to],
        cc_addrs=[a.model_dump() for a in message.cc],
        bcc_addrs=[a.model_dump() for a in message.bcc],
        date=message.date,
        body_text=message.body_text,
        body_html=message.body_html,
        snippet=message.snippet,
        is_read=message.is_read,
        in_reply_to=message.in_reply_to,
        references=list(message.references),
        labels=list(message.labels),
        category=message.category,
        folder=message.folder,
        order_reference=message.order_reference,
        has_attachments=message.has_attachments,
        size=message.size,
    )
    row.attachments = [
        Attachment(
            filename=att.filename,
            size=att.size,
            mime_type=att.mime_type,
            provider_attachment_id=att.attachment_id,
            content_id=att.content_id,
        )
        for att in message.attachments
    ]
    return row


class MessageIngestor:
    """Stores normalized messages exactly once and keeps account stats current"""

    def __init__(self, store: MailStore, threads: ThreadResolver):
        self.store = store
        self.threads = threads

    async def ingest(self, account_id: int, message: NormalizedMessage) -> Optional[str]:
        """Store one message; returns its thread id, or None if it was already stored"""
        if await self.store.message_exists(account_id, message.message_id):
            return None
        thread_id = await self.threads.find_or_create_thread(account_id, message)
        await self.store.add_message(_message_row(account_id, thread_id, message))
        await self.store.commit()
        return thread_id

    async def ingest_batch(self, account: EmailAccount, messages: List[NormalizedMessage]) -> Tuple[int, Optional[str]]:
        """Ingest in provider order; returns (stored count, abort reason)"""
        account_id = account.id
        stored = 0
        for message in messages:
            try:
                if await self.ingest(account_id, message) is not None:
                    stored += 1
            except StorageError as e:
                await self.store.rollback()
                if e.connection_lost:
                    logger.error("Storage connection lost for account %s, aborting batch: %s", account_id, e)
                    return stored, str(e)
                logger.warning("Could not store message %s: %s", message.message_id, e)
                try:
                    await self.store.refresh(account)
                except StorageError as refresh_error:
                    return stored, str(refresh_error)
        return stored, None

    async def update_account_stats(self, account: EmailAccount, error: Optional[str] = None):
        account.total_messages = await self.store.count_messages(account.id)
        account.unread_messages = await self.store.count_messages(account.id, unread_only=True)
        account.last_synced_at = utcnow()
        account.connection_status = ConnectionStatus.CONNECTED
        if account.status in (AccountStatus.SYNCING, AccountStatus.ERROR) and not account.requires_reauth:
            account.status = AccountStatus.ACTIVE
        account.last_error = error
        if error:
            account.last_error_at = utcnow()
        await self.store.commit()

    async def record_error(self, account: EmailAccount, error: str):
        account.last_error = error
        account.last_error_at = utcnow()
        try:
            await self.store.commit()
        except StorageError as e:
            logger.error("Could not record error for account %s: %s", account.id, e)
