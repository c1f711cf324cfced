"""Conversation threading.

A message is attached to a thread by the first signal that matches, in
order: provider thread id, References chain, In-Reply-To, then a recent
thread with the same normalized subject that the sender takes part in.
Nothing matching means a new thread.
"""

import logging
import re
import secrets
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from mailsync.config import settings
from mailsync.exceptions import StorageError
from mailsync.models import Thread, ThreadStatus, ThreadType
from mailsync.schemas import NormalizedMessage, ThreadStats
from mailsync.services.store import MailStore
from mailsync.utils import as_utc, utcnow

logger = logging.getLogger(__name__)

NATIVE_CONFIDENCE = 1.0
REFERENCES_CONFIDENCE = 0.95
IN_REPLY_TO_CONFIDENCE = 0.90
SUBJECT_CONFIDENCE = 0.80

_PREFIX_RE = re.compile(r'^\s*(?:re|fwd?|aw|sv|wg)\s*(?:\[\d+\])?\s*:\s*', re.IGNORECASE)
_BRACKET_TAG_RE = re.compile(r'^\s*\[[^\]]*\]\s*')
_WHITESPACE_RE = re.compile(r'\s+')
_HTML_TAG_RE = re.compile(r'<[^>]+>')

_MARKETING_SUBJECT_RE = re.compile(r'\b(newsletter|promotion|offer|sale|unsubscribe)s?\b', re.IGNORECASE)
_MARKETING_BODY_RE = re.compile(r'\b(unsubscribe|newsletter|promotion|marketing)s?\b', re.IGNORECASE)
_SYSTEM_SUBJECT_RE = re.compile(r'\b(notification|alert|system|update)s?\b', re.IGNORECASE)
_NOTIFICATION_SUBJECT_RE = re.compile(r'\b(order|receipt|invoice|confirmation)s?\b', re.IGNORECASE)


def normalize_subject(subject: Optional[str]) -> str:
    """Strip reply/forward prefixes and bracket tags, collapse whitespace, case-fold"""
    value = (subject or '').strip()
    while True:
        stripped = _BRACKET_TAG_RE.sub('', _PREFIX_RE.sub('', value, count=1), count=1).strip()
        if stripped == value:
            break
        value = stripped
    return _WHITESPACE_RE.sub(' ', value).strip().lower()


def determine_thread_type(message: NormalizedMessage) -> ThreadType:
    subject = message.subject or ''
    content = message.body_text or _HTML_TAG_RE.sub(' ', message.body_html or '')
    if _MARKETING_SUBJECT_RE.search(subject) or _MARKETING_BODY_RE.search(content):
        return ThreadType.MARKETING
    if _SYSTEM_SUBJECT_RE.search(subject):
        return ThreadType.SYSTEM
    if message.order_reference or _NOTIFICATION_SUBJECT_RE.search(subject):
        return ThreadType.NOTIFICATION
    return ThreadType.CONVERSATION


def generate_thread_id() -> str:
    return f'thread_{int(time.time() * 1000)}_{secrets.token_hex(4)}'


def _content_size(message: NormalizedMessage) -> int:
    return len(message.body_text or '') + len(message.body_html or '')


@dataclass
class ThreadMatch:
    thread: Thread
    method: str
    confidence: float


class ThreadResolver:
    def __init__(
        self,
        store: MailStore,
        window_days: Optional[int] = None,
        min_confidence: Optional[float] = None,
    ):
        self.store = store
        self.window = timedelta(
            days=settings.THREAD_SUBJECT_WINDOW_DAYS if window_days is None else window_days
        )
        self.min_confidence = (
            settings.THREAD_SUBJECT_MIN_CONFIDENCE if min_confidence is None else min_confidence
        )

    async def find_or_create_thread(self, account_id: int, message: NormalizedMessage) -> str:
        """Attach ``message`` to its thread, creating one when nothing matches.

        Returns the thread's string id. Callers must not pass a message that
        is already stored; counts are bumped unconditionally on a match.
        """
        try:
            # A failed lookup would otherwise poison the transaction the new thread is written in
            async with self.store.savepoint("Thread lookup"):
                match = await self.resolve(account_id, message)
        except StorageError as e:
            logger.warning("Thread lookup failed for %s, starting a new thread: %s", message.message_id, e)
            match = None

        if match is not None:
            self.add_message_to_thread(match.thread, message)
            logger.debug(
                "Message %s joined thread %s via %s (%.2f)",
                message.message_id, match.thread.thread_id, match.method, match.confidence,
            )
            return match.thread.thread_id

        thread = await self.create_thread(account_id, message)
        return thread.thread_id

    async def resolve(self, account_id: int, message: NormalizedMessage) -> Optional[ThreadMatch]:
        if message.thread_id:
            thread = await self.store.find_thread(account_id, message.thread_id)
            if thread is not None:
                return ThreadMatch(thread, 'native', NATIVE_CONFIDENCE)

        if message.references:
            thread = await self._thread_for_messages(account_id, message.references)
            if thread is not None:
                return ThreadMatch(thread, 'references', REFERENCES_CONFIDENCE)

        if message.in_reply_to:
            thread = await self._thread_for_messages(account_id, [message.in_reply_to])
            if thread is not None:
                return ThreadMatch(thread, 'in_reply_to', IN_REPLY_TO_CONFIDENCE)

        if SUBJECT_CONFIDENCE >= self.min_confidence:
            thread = await self._thread_by_subject(account_id, message)
            if thread is not None:
                return ThreadMatch(thread, 'subject', SUBJECT_CONFIDENCE)
        return None

    async def _thread_for_messages(self, account_id: int, message_ids) -> Optional[Thread]:
        thread_id = await self.store.find_thread_id_for_messages(account_id, list(message_ids))
        if not thread_id:
            return None
        return await self.store.find_thread(account_id, thread_id)

    async def _thread_by_subject(self, account_id: int, message: NormalizedMessage) -> Optional[Thread]:
        normalized = normalize_subject(message.subject)
        if not normalized or message.from_addr is None:
            return None
        sender = message.from_addr.email.lower()
        cutoff = utcnow() - self.window
        for thread in await self.store.find_threads_by_subject(account_id, normalized):
            last = as_utc(thread.last_message_at)
            if last is None or last < cutoff:
                continue
            if any((p.get('email') or '').lower() == sender for p in thread.participants or []):
                return thread
        return None

    async def create_thread(self, account_id: int, message: NormalizedMessage) -> Thread:
        thread = Thread(
            account_id=account_id,
            thread_id=message.thread_id or generate_thread_id(),
            subject=message.subject or '(no subject)',
            normalized_subject=normalize_subject(message.subject),
            snippet=message.snippet,
            participants=[p.model_dump() for p in message.participants()],
            message_count=1,
            unread_count=0 if message.is_read else 1,
            first_message_at=message.date,
            last_message_at=message.date,
            status=ThreadStatus.ACTIVE,
            thread_type=determine_thread_type(message),
            folder=message.folder,
            has_attachments=message.has_attachments,
            total_size=_content_size(message),
        )
        await self.store.add_thread(thread)
        logger.info("Created %s thread %s for account %s", thread.thread_type.value, thread.thread_id, account_id)
        return thread

    @staticmethod
    def add_message_to_thread(thread: Thread, message: NormalizedMessage):
        thread.message_count = (thread.message_count or 0) + 1
        if not message.is_read:
            thread.unread_count = (thread.unread_count or 0) + 1

        date = as_utc(message.date)
        first = as_utc(thread.first_message_at)
        last = as_utc(thread.last_message_at)
        if first is None or date < first:
            thread.first_message_at = date
        if last is None or date > last:
            thread.last_message_at = date
            thread.snippet = message.snippet or thread.snippet

        participants = list(thread.participants or [])
        known = {(p.get('email') or '').lower() for p in participants}
        for address in message.participants():
            if address.email.lower() not in known:
                participants.append(address.model_dump())
                known.add(address.email.lower())
        thread.participants = participants

        thread.has_attachments = bool(thread.has_attachments) or message.has_attachments
        thread.total_size = (thread.total_size or 0) + _content_size(message)

    async def adjust_unread_count(self, account_id: int, thread_id: str, delta: int):
        thread = await self.store.find_thread(account_id, thread_id)
        if thread is not None:
            thread.unread_count = max((thread.unread_count or 0) + delta, 0)

    async def get_thread_stats(self, account_id: int) -> ThreadStats:
        return ThreadStats(**await self.store.thread_stats(account_id))

    async def cleanup_orphaned_threads(self, account_id: int) -> int:
        deleted = await self.store.delete_orphaned_threads(account_id)
        if deleted:
            logger.info("Removed %d orphaned threads for account %s", deleted, account_id)
        return deleted
