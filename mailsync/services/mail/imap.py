import asyncio
import imaplib
import logging
import smtplib
import ssl
import time
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Callable, Dict, List, Optional, Tuple

from mailsync.config import settings
from mailsync.exceptions import ProviderError, ReauthRequiredError, UnsupportedAccountError
from mailsync.models import EmailAccount
from mailsync.schemas import AccountCapabilities, FetchOptions, OutgoingMessage, Pagination, SendResult
from mailsync.services.mail.base import FetchPage, MailProvider, ReplyContext, prepare_reply
from mailsync.services.mail.parse import build_mime, parse_rfc822, strip_brackets
from mailsync.services.oauth import TokenManager

logger = logging.getLogger(__name__)

IMAP_FOLDERS = {
    'SENT': 'Sent',
    'DRAFTS': 'Drafts',
    'TRASH': 'Trash',
    'SPAM': 'Junk',
    'JUNK': 'Junk',
    'ARCHIVE': 'Archive',
}

HEADER_FIELDS = 'FROM TO CC BCC SUBJECT DATE MESSAGE-ID IN-REPLY-TO REFERENCES'

_MONTHS = ['Jan', 'Feb', 'Mar', 'Apr', 'May', 'Jun', 'Jul', 'Aug', 'Sep', 'Oct', 'Nov', 'Dec']


def imap_date(value) -> str:
    """IMAP search date (dd-Mon-yyyy), independent of locale"""
    return f'{value.day:02d}-{_MONTHS[value.month - 1]}-{value.year}'


def _quote(value: str) -> str:
    return '"' + value.replace('\\', '\\\\').replace('"', '\\"') + '"'


def build_search_criteria(options: FetchOptions) -> List[str]:
    criteria = []
    if options.since:
        criteria += ['SINCE', imap_date(options.since)]
    if options.before:
        criteria += ['BEFORE', imap_date(options.before)]
    if options.query:
        criteria += ['OR', 'SUBJECT', _quote(options.query), 'BODY', _quote(options.query)]
    return criteria or ['ALL']


def extract_fetch_response(response) -> Tuple[Optional[bytes], List[str]]:
    """Pull the literal and the FLAGS out of one UID FETCH response"""
    raw, meta = None, b''
    for item in response or []:
        if isinstance(item, tuple):
            meta += b' ' + item[0]
            if raw is None:
                raw = item[1]
        elif isinstance(item, bytes):
            meta += b' ' + item
    flags = [flag.decode() for flag in imaplib.ParseFlags(meta)]
    return raw, flags


def connect_imap(server: Dict, password: Optional[str]) -> imaplib.IMAP4:
    host = server['host']
    security = (server.get('security') or 'ssl').lower()
    context = ssl.create_default_context()
    if security in ('ssl', 'tls'):
        conn = imaplib.IMAP4_SSL(host, server.get('port') or 993, ssl_context=context,
                                 timeout=settings.IMAP_TIMEOUT_SECONDS)
    else:
        conn = imaplib.IMAP4(host, server.get('port') or 143, timeout=settings.IMAP_TIMEOUT_SECONDS)
        if security == 'starttls':
            conn.starttls(ssl_context=context)
    if server.get('requires_auth', True):
        conn.login(server.get('username') or '', password or '')
    return conn


def connect_smtp(server: Dict, password: Optional[str]) -> smtplib.SMTP:
    host = server['host']
    port = server.get('port') or 587
    security = (server.get('security') or 'starttls').lower()
    context = ssl.create_default_context()
    if security == 'ssl' or port == 465:
        smtp = smtplib.SMTP_SSL(host, port, timeout=settings.IMAP_TIMEOUT_SECONDS, context=context)
    else:
        smtp = smtplib.SMTP(host, port, timeout=settings.IMAP_TIMEOUT_SECONDS)
        smtp.ehlo()
        if security in ('starttls', 'tls'):
            smtp.starttls(context=context)
            smtp.ehlo()
    if server.get('requires_auth', True):
        smtp.login(server.get('username') or '', password or '')
    return smtp


class ImapProvider(MailProvider):
    """IMAP fetch and SMTP send for password-based accounts"""

    name = 'imap'

    def __init__(
        self,
        account: EmailAccount,
        tokens: TokenManager,
        request_delay: Optional[float] = None,
        imap_factory: Optional[Callable] = None,
        smtp_factory: Optional[Callable] = None,
    ):
        super().__init__(account, tokens, request_delay)
        self.imap_factory = imap_factory or connect_imap
        self.smtp_factory = smtp_factory or connect_smtp

    @staticmethod
    def mailbox_name(folder: Optional[str]) -> str:
        folder = folder or 'INBOX'
        return IMAP_FOLDERS.get(folder.upper(), folder)

    def _open(self) -> imaplib.IMAP4:
        server = self.account.incoming_server
        if not server or not server.get('host'):
            raise UnsupportedAccountError(f"Account {self.account.id} has no incoming server")
        password = self.tokens.get_server_password(server)
        try:
            return self.imap_factory(server, password)
        except imaplib.IMAP4.error as e:
            raise ReauthRequiredError(f"IMAP login failed: {e}") from e
        except OSError as e:
            raise ProviderError(f"IMAP connection failed: {e}", retryable=True) from e

    def _fetch_sync(self, options: FetchOptions) -> Tuple[List[Tuple[str, bytes, List[str]]], int]:
        conn = self._open()
        try:
            mailbox = self.mailbox_name(options.folder)
            typ, _ = conn.select(mailbox, readonly=not options.mark_as_read)
            if typ != 'OK':
                raise ProviderError(f"Cannot open mailbox {mailbox}")

            typ, data = conn.uid('SEARCH', None, *build_search_criteria(options))
            if typ != 'OK':
                raise ProviderError(f"IMAP search failed in {mailbox}")
            uids = data[0].split() if data and data[0] else []
            total = len(uids)

            # Newest first: page 1 is the tail of the search result
            end = total - options.offset
            start = max(end - options.page_size, 0)
            window = list(reversed(uids[start:end])) if end > 0 else []

            if options.include_body:
                part = 'BODY[]' if options.mark_as_read else 'BODY.PEEK[]'
            else:
                part = f'BODY.PEEK[HEADER.FIELDS ({HEADER_FIELDS})]'

            items = []
            for uid in window:
                typ, response = conn.uid('FETCH', uid, f'(UID FLAGS {part})')
                raw, flags = extract_fetch_response(response) if typ == 'OK' else (None, [])
                if raw is None:
                    logger.warning("IMAP fetch returned nothing for uid %s in %s", uid, mailbox)
                    continue
                if options.mark_as_read and '\\Seen' not in flags:
                    conn.uid('STORE', uid, '+FLAGS', '(\\Seen)')
                    flags.append('\\Seen')
                items.append((uid.decode(), raw, flags))
                if self.request_delay:
                    time.sleep(self.request_delay)
            return items, total
        except imaplib.IMAP4.error as e:
            raise ProviderError(f"IMAP error: {e}") from e
        except OSError as e:
            raise ProviderError(f"IMAP connection lost: {e}", retryable=True) from e
        finally:
            try:
                conn.logout()
            except (imaplib.IMAP4.error, OSError) as e:
                logger.debug("IMAP logout failed: %s", e)

    async def fetch(self, options: FetchOptions) -> FetchPage:
        options = options.normalized()
        items, total = await asyncio.to_thread(self._fetch_sync, options)
        page = FetchPage(total_count=total)
        for uid, raw, flags in items:
            try:
                message = parse_rfc822(raw, f'imap_{options.folder}_{uid}', flags, options.folder)
            except (TypeError, ValueError) as e:
                logger.warning("Skipping malformed IMAP message %s: %s", uid, e)
                page.skipped += 1
                continue
            page.messages.append(message)

        page.pagination = Pagination(
            page=options.page,
            page_size=options.page_size,
            total_count=total,
            has_next_page=options.offset + options.page_size < total,
            has_previous_page=options.page > 1,
        )
        logger.info(
            "IMAP fetch for account %s: %d of %d messages (page %d)",
            self.account.id, len(page.messages), total, options.page,
        )
        return page

    # Sending
    def _send_sync(self, mime: EmailMessage):
        server = self.account.outgoing_server
        if not server or not server.get('host'):
            raise UnsupportedAccountError(f"Account {self.account.id} has no outgoing server")
        password = self.tokens.get_server_password(server)
        try:
            smtp = self.smtp_factory(server, password)
        except smtplib.SMTPAuthenticationError as e:
            raise ReauthRequiredError(f"SMTP login failed: {e}") from e
        except (smtplib.SMTPException, OSError) as e:
            raise ProviderError(f"SMTP connection failed: {e}", retryable=True) from e
        try:
            smtp.send_message(mime)
        except (smtplib.SMTPException, OSError) as e:
            raise ProviderError(f"SMTP send failed: {e}") from e
        finally:
            try:
                smtp.quit()
            except (smtplib.SMTPException, OSError) as e:
                logger.debug("SMTP quit failed: %s", e)

    async def _send(self, message: OutgoingMessage, thread_id: Optional[str] = None) -> SendResult:
        domain = self.account.email_address.split('@')[-1]
        message_id = make_msgid(domain=domain)
        mime = build_mime(message, from_addr=self.account.email_address, message_id=message_id)
        await asyncio.to_thread(self._send_sync, mime)
        return SendResult(
            success=True,
            provider='smtp',
            message_id=strip_brackets(message_id),
            thread_id=thread_id,
        )

    async def send(self, message: OutgoingMessage) -> SendResult:
        return await self._send(message)

    async def reply(self, context: ReplyContext, message: OutgoingMessage) -> SendResult:
        return await self._send(prepare_reply(context, message), thread_id=context.thread_id)

    def capabilities(self) -> AccountCapabilities:
        return AccountCapabilities(provider='smtp')
