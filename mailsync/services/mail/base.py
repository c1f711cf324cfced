"""Abstract mail provider interface and shared data structures."""

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, TypeVar

from mailsync.config import settings
from mailsync.exceptions import ProviderAuthenticationError, ReauthRequiredError, UnsupportedAccountError
from mailsync.models import EmailAccount, Message
from mailsync.schemas import (
    AccountCapabilities,
    EmailAddress,
    FetchOptions,
    NormalizedMessage,
    OutgoingMessage,
    Pagination,
    SendResult,
)
from mailsync.services.oauth import TokenManager

logger = logging.getLogger(__name__)

T = TypeVar('T')

_REPLY_PREFIX_RE = re.compile(r'^\s*re\s*:', re.IGNORECASE)


@dataclass
class FetchPage:
    """One page of normalized messages returned by a provider."""

    messages: List[NormalizedMessage] = field(default_factory=list)
    pagination: Optional[Pagination] = None
    total_count: Optional[int] = None
    skipped: int = 0


@dataclass
class ReplyContext:
    """What a reply needs to know about the message it answers."""

    message_id: str
    internet_message_id: Optional[str] = None
    thread_id: Optional[str] = None
    subject: str = ''
    reply_to: List[EmailAddress] = field(default_factory=list)
    references: List[str] = field(default_factory=list)

    @classmethod
    def from_stored(cls, message: Message) -> 'ReplyContext':
        sender = message.from_addr or {}
        return cls(
            message_id=message.message_id,
            internet_message_id=message.internet_message_id,
            thread_id=message.thread_id,
            subject=message.subject or '',
            reply_to=[EmailAddress(**sender)] if sender.get('email') else [],
            references=list(message.references or []),
        )


def reply_subject(subject: str) -> str:
    subject = subject or ''
    return subject if _REPLY_PREFIX_RE.match(subject) else f'Re: {subject}'.strip()


def prepare_reply(context: ReplyContext, message: OutgoingMessage) -> OutgoingMessage:
    """Fill in recipients, subject and threading headers for a reply"""
    references = list(context.references)
    if context.internet_message_id and context.internet_message_id not in references:
        references.append(context.internet_message_id)
    return message.model_copy(update={
        'to': message.to or [addr.email for addr in context.reply_to],
        'subject': reply_subject(message.subject or context.subject),
        'in_reply_to': context.internet_message_id or message.in_reply_to,
        'references': references or message.references,
    })


class MailProvider(ABC):
    """Capability interface implemented once per account variant."""

    name: str = ''

    def __init__(self, account: EmailAccount, tokens: TokenManager, request_delay: Optional[float] = None):
        self.account = account
        self.tokens = tokens
        self.request_delay = (
            settings.PROVIDER_REQUEST_DELAY_SECONDS if request_delay is None else request_delay
        )

    async def pause(self):
        """Throttle between consecutive provider requests"""
        if self.request_delay:
            await asyncio.sleep(self.request_delay)

    @abstractmethod
    async def fetch(self, options: FetchOptions) -> FetchPage:
        """Fetch one page of messages for ``options`` (already normalized)."""

    @abstractmethod
    async def send(self, message: OutgoingMessage) -> SendResult:
        """Send a new message."""

    @abstractmethod
    async def reply(self, context: ReplyContext, message: OutgoingMessage) -> SendResult:
        """Reply to ``context`` setting In-Reply-To, References and subject."""

    async def create_draft(self, message: OutgoingMessage) -> SendResult:
        raise UnsupportedAccountError(f"{self.name} does not support provider drafts")

    async def get_reply_context(self, message_id: str) -> ReplyContext:
        raise UnsupportedAccountError(f"{self.name} cannot look up message {message_id} remotely")

    @abstractmethod
    def capabilities(self) -> AccountCapabilities:
        """Describe what this provider supports."""


class OAuthMailProvider(MailProvider):
    """Provider whose API calls carry an OAuth bearer token."""

    async def _with_token(self, call: Callable[[str], Awaitable[T]]) -> T:
        """Run ``call`` with a valid token, refreshing and retrying once on 401"""
        token = await self.tokens.get_valid_access_token(self.account)
        try:
            return await call(token)
        except ProviderAuthenticationError:
            logger.info("%s rejected token for account %s, refreshing once", self.name, self.account.id)
        token = await self.tokens.get_valid_access_token(self.account, force_refresh=True)
        try:
            return await call(token)
        except ProviderAuthenticationError as e:
            await self.tokens.mark_reauth_required(self.account, "Access token rejected after refresh")
            raise ReauthRequiredError("Access token rejected after refresh") from e
