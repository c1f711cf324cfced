import logging
import secrets
import time
from typing import Optional

from mailsync.exceptions import (
    AuthError,
    MessageParseError,
    ProviderError,
    ReauthRequiredError,
    StorageError,
    UnsupportedAccountError,
)
from mailsync.models import EmailAccount
from mailsync.schemas import OutgoingMessage, SendResult
from mailsync.services.mail.base import MailProvider, ReplyContext
from mailsync.services.mail.factory import ProviderFactory
from mailsync.services.store import MailStore

logger = logging.getLogger(__name__)


def validate_outgoing(message: OutgoingMessage, reply: bool = False) -> Optional[str]:
    """Return a validation error, or None when the message can be sent"""
    if not reply:
        if not message.to:
            return "At least one recipient is required"
        if not (message.subject or '').strip():
            return "Subject is required"
    if not (message.body_text or message.body_html):
        return "Message body is required"
    return None


def generate_draft_id() -> str:
    return f'draft_{int(time.time() * 1000)}_{secrets.token_hex(4)}'


class SendFacade:
    """Send, reply and draft through whichever transport the account uses"""

    def __init__(self, store: MailStore, providers: ProviderFactory):
        self.store = store
        self.providers = providers

    async def send(self, account: EmailAccount, message: OutgoingMessage) -> SendResult:
        error = validate_outgoing(message)
        if error:
            return SendResult(success=False, error=error)
        provider = self.providers.for_send(account)
        result = await self._guarded(account, provider, provider.send(message))
        if result.success:
            logger.info("Sent message %s from account %s via %s", result.message_id, account.id, result.provider)
        return result

    async def reply(self, account: EmailAccount, original_message_id: str, message: OutgoingMessage) -> SendResult:
        error = validate_outgoing(message, reply=True)
        if error:
            return SendResult(success=False, error=error)
        provider = self.providers.for_send(account)
        return await self._guarded(account, provider, self._reply(account, provider, original_message_id, message))

    async def _reply(self, account: EmailAccount, provider: MailProvider, original_message_id: str,
                     message: OutgoingMessage) -> SendResult:
        context = await self.get_reply_context(account, provider, original_message_id)
        result = await provider.reply(context, message)
        logger.info("Replied to %s from account %s via %s", original_message_id, account.id, result.provider)
        return result

    async def get_reply_context(self, account: EmailAccount, provider: MailProvider,
                                original_message_id: str) -> ReplyContext:
        """Prefer the stored copy of the original, fall back to the provider"""
        stored = await self.store.find_message(account.id, original_message_id)
        if stored is not None:
            return ReplyContext.from_stored(stored)
        return await provider.get_reply_context(original_message_id)

    async def create_draft(self, account: EmailAccount, message: OutgoingMessage) -> SendResult:
        provider = self.providers.for_send(account)
        if not provider.capabilities().supports_drafts:
            # No provider-side drafts over SMTP
            return SendResult(success=True, provider='local', message_id=generate_draft_id(), is_draft=True)
        return await self._guarded(account, provider, provider.create_draft(message))

    async def _guarded(self, account: EmailAccount, provider: MailProvider, operation) -> SendResult:
        try:
            return await operation
        except ReauthRequiredError as e:
            logger.error("Send from account %s needs re-authentication: %s", account.id, e)
            return SendResult(success=False, provider=provider.name, error=str(e), requires_reauth=True)
        except (AuthError, ProviderError, UnsupportedAccountError, MessageParseError, StorageError) as e:
            logger.error("Send from account %s failed: %s", account.id, e)
            return SendResult(success=False, provider=provider.name, error=str(e))
