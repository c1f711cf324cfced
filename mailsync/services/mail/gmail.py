import asyncio
import base64
import logging
from datetime import date
from typing import Callable, Dict, List, Optional, Tuple

from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from mailsync.config import settings
from mailsync.exceptions import (
    CursorExpiredError,
    MessageParseError,
    ProviderAuthenticationError,
    ProviderError,
    QuotaExceededError,
)
from mailsync.models import EmailAccount
from mailsync.schemas import (
    AccountCapabilities,
    FetchOptions,
    NormalizedMessage,
    OutgoingMessage,
    Pagination,
    SendResult,
)
from mailsync.services.mail.base import FetchPage, OAuthMailProvider, ReplyContext, prepare_reply
from mailsync.services.mail.parse import (
    build_mime,
    parse_address,
    parse_address_list,
    parse_gmail_message,
    parse_references,
    strip_brackets,
)
from mailsync.services.oauth import TokenManager
from mailsync.utils import utcnow

logger = logging.getLogger(__name__)

# Quota units per call, from the Gmail API usage limits table
GMAIL_QUOTA_UNITS = {
    'messages.list': 5,
    'messages.get': 5,
    'messages.modify': 5,
    'messages.send': 100,
    'drafts.create': 10,
    'threads.get': 10,
    'history.list': 2,
    'getProfile': 1,
    'watch': 100,
    'stop': 50,
}

# Folder names mapped to Gmail system label ids
GMAIL_FOLDER_LABELS = {
    'INBOX': 'INBOX',
    'SENT': 'SENT',
    'DRAFTS': 'DRAFT',
    'DRAFT': 'DRAFT',
    'TRASH': 'TRASH',
    'SPAM': 'SPAM',
    'JUNK': 'SPAM',
    'STARRED': 'STARRED',
    'IMPORTANT': 'IMPORTANT',
}

METADATA_HEADERS = [
    'From', 'Reply-To', 'To', 'Cc', 'Bcc', 'Subject', 'Date', 'Message-ID', 'In-Reply-To', 'References',
]

MAX_LIST_RESULTS = 500


class QuotaTracker:
    """Daily Gmail quota counter persisted in the account's sync state"""

    def __init__(
        self,
        sync_state: Optional[Dict] = None,
        daily_limit: Optional[int] = None,
        safety_margin: Optional[int] = None,
        today: Optional[date] = None,
    ):
        sync_state = sync_state or {}
        self.date = (today or utcnow().date()).isoformat()
        self.daily_limit = settings.GMAIL_DAILY_QUOTA_UNITS if daily_limit is None else daily_limit
        self.safety_margin = settings.GMAIL_QUOTA_SAFETY_MARGIN if safety_margin is None else safety_margin
        self.used = sync_state.get('quotaUsed', 0) if sync_state.get('quotaDate') == self.date else 0

    def charge(self, operation: str, count: int = 1):
        self.used += GMAIL_QUOTA_UNITS.get(operation, 5) * count

    @property
    def remaining(self) -> int:
        return max(self.daily_limit - self.used, 0)

    def has_headroom(self) -> bool:
        return self.remaining >= self.safety_margin

    def state(self) -> Dict:
        return {'quotaDate': self.date, 'quotaUsed': self.used}


def build_gmail_service(access_token: str):
    """Create Gmail API service client"""
    creds = Credentials(token=access_token)
    return build('gmail', 'v1', credentials=creds, cache_discovery=False)


def _map_http_error(error: HttpError) -> ProviderError:
    status = int(getattr(error.resp, 'status', 0) or 0)
    detail = str(error)
    if status == 401:
        return ProviderAuthenticationError(f"Gmail rejected access token: {detail}")
    if status == 429 or (status == 403 and ('rateLimit' in detail or 'quota' in detail.lower())):
        return QuotaExceededError(f"Gmail quota exceeded: {detail}")
    return ProviderError(f"Gmail API error {status}: {detail}", status_code=status, retryable=status >= 500)


class GmailProvider(OAuthMailProvider):
    """Gmail API fetch, history replay, push watch and send"""

    name = 'gmail'

    def __init__(
        self,
        account: EmailAccount,
        tokens: TokenManager,
        request_delay: Optional[float] = None,
        service_factory: Optional[Callable] = None,
        quota: Optional[QuotaTracker] = None,
    ):
        super().__init__(account, tokens, request_delay)
        self.service_factory = service_factory or build_gmail_service
        self.quota = quota
        self._service = None
        self._service_token = None

    def _service_for(self, token: str):
        if self._service is None or self._service_token != token:
            self._service = self.service_factory(token)
            self._service_token = token
        return self._service

    async def _call(self, operation: str, make_request: Callable):
        """Execute ``make_request(service)`` off the event loop with token retry"""
        async def run(token: str):
            request = make_request(self._service_for(token))
            if self.quota is not None:
                self.quota.charge(operation)
            try:
                return await asyncio.to_thread(request.execute)
            except HttpError as e:
                raise _map_http_error(e) from e

        return await self._with_token(run)

    # Low-level API calls
    async def get_profile(self) -> Dict:
        return await self._call('getProfile', lambda s: s.users().getProfile(userId='me'))

    async def list_message_ids(
        self,
        max_results: int,
        page_token: Optional[str] = None,
        query: Optional[str] = None,
        label_ids: Optional[List[str]] = None,
        include_spam_trash: bool = False,
    ) -> Dict:
        params = {'userId': 'me', 'maxResults': max_results}
        if page_token:
            params['pageToken'] = page_token
        if query:
            params['q'] = query
        if label_ids:
            params['labelIds'] = label_ids
        if include_spam_trash:
            params['includeSpamTrash'] = True
        return await self._call('messages.list', lambda s: s.users().messages().list(**params))

    async def get_message(self, message_id: str, include_body: bool = True) -> Dict:
        if include_body:
            return await self._call(
                'messages.get',
                lambda s: s.users().messages().get(userId='me', id=message_id, format='full'),
            )
        return await self._call(
            'messages.get',
            lambda s: s.users().messages().get(
                userId='me', id=message_id, format='metadata', metadataHeaders=METADATA_HEADERS
            ),
        )

    async def mark_as_read(self, message_id: str):
        await self._call(
            'messages.modify',
            lambda s: s.users().messages().modify(
                userId='me', id=message_id, body={'removeLabelIds': ['UNREAD']}
            ),
        )

    async def list_history(self, start_history_id: str, page_token: Optional[str] = None,
                           max_results: Optional[int] = None) -> Dict:
        params = {
            'userId': 'me',
            'startHistoryId': start_history_id,
            'historyTypes': ['messageAdded', 'messageDeleted', 'labelAdded', 'labelRemoved'],
            'maxResults': max_results or settings.GMAIL_HISTORY_PAGE_SIZE,
        }
        if page_token:
            params['pageToken'] = page_token
        try:
            return await self._call('history.list', lambda s: s.users().history().list(**params))
        except ProviderError as e:
            if e.status_code == 404:
                raise CursorExpiredError(f"History id {start_history_id} is no longer available") from e
            raise

    async def watch(self, topic_name: str, label_ids: Optional[List[str]] = None) -> Dict:
        body = {
            'topicName': topic_name,
            'labelIds': label_ids or settings.GMAIL_WATCH_LABELS,
            'labelFilterBehavior': 'INCLUDE',
        }
        return await self._call('watch', lambda s: s.users().watch(userId='me', body=body))

    async def stop_watch(self):
        await self._call('stop', lambda s: s.users().stop(userId='me'))

    # Fetching
    @staticmethod
    def build_query(options: FetchOptions) -> Tuple[Optional[str], List[str], bool]:
        """Translate fetch options into (q, labelIds, includeSpamTrash)"""
        parts = []
        if options.query:
            parts.append(options.query)
        if options.since:
            parts.append(f'after:{int(options.since.timestamp())}')
        if options.before:
            parts.append(f'before:{int(options.before.timestamp())}')

        label_ids = list(options.label_ids)
        folder = (options.folder or 'INBOX').upper()
        if folder not in ('ALL', 'ALL_MAIL'):
            system_label = GMAIL_FOLDER_LABELS.get(folder)
            if system_label:
                if system_label not in label_ids:
                    label_ids.append(system_label)
            else:
                parts.append(f'label:{options.folder}')
        include_spam_trash = any(label in ('SPAM', 'TRASH') for label in label_ids)
        return (' '.join(parts) or None), label_ids, include_spam_trash

    async def _collect_ids(self, options: FetchOptions) -> Tuple[List[Dict], Optional[str], Optional[int]]:
        """Walk list pages until the requested window is covered"""
        query, label_ids, include_spam_trash = self.build_query(options)
        needed = self._window_start(options) + options.page_size
        ids: List[Dict] = []
        page_token = options.page_token
        estimate = None
        while len(ids) < needed:
            response = await self.list_message_ids(
                max_results=min(needed - len(ids), MAX_LIST_RESULTS),
                page_token=page_token,
                query=query,
                label_ids=label_ids,
                include_spam_trash=include_spam_trash,
            )
            if estimate is None:
                estimate = response.get('resultSizeEstimate')
            ids.extend(response.get('messages', []) or [])
            page_token = response.get('nextPageToken')
            if not page_token:
                break
        return ids, page_token, estimate

    @staticmethod
    def _window_start(options: FetchOptions) -> int:
        # A continuation token already points at the first id of the page
        return 0 if options.page_token else options.offset

    async def fetch(self, options: FetchOptions) -> FetchPage:
        options = options.normalized()
        ids, next_token, estimate = await self._collect_ids(options)
        start = self._window_start(options)
        window = ids[start:start + options.page_size]
        page = FetchPage()

        for ref in window:
            message = await self.fetch_message(ref['id'], options.include_body, options.folder)
            if message is None:
                page.skipped += 1
                continue
            if options.mark_as_read and not message.is_read:
                await self.mark_as_read(message.message_id)
                message.is_read = True
            page.messages.append(message)
            await self.pause()

        has_next = len(ids) > start + options.page_size or next_token is not None
        page.total_count = estimate if estimate is not None else len(ids)
        page.pagination = Pagination(
            page=options.page,
            page_size=options.page_size,
            total_count=page.total_count,
            has_next_page=has_next,
            has_previous_page=options.page > 1,
            next_page_token=next_token,
        )
        logger.info(
            "Gmail fetch for account %s: %d messages (page %d)",
            self.account.id, len(page.messages), options.page,
        )
        return page

    async def fetch_message(self, message_id: str, include_body: bool = True,
                            folder: Optional[str] = None) -> Optional[NormalizedMessage]:
        """Fetch and parse one message; None when it is gone or malformed"""
        try:
            raw = await self.get_message(message_id, include_body)
        except QuotaExceededError:
            raise
        except ProviderError as e:
            if e.status_code == 401:
                raise
            logger.warning("Failed to fetch Gmail message %s: %s", message_id, e)
            return None
        try:
            return parse_gmail_message(raw, folder)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Skipping malformed Gmail message %s: %s", message_id, e)
            return None

    async def fetch_thread(self, thread_id: str) -> List[NormalizedMessage]:
        data = await self._call(
            'threads.get', lambda s: s.users().threads().get(userId='me', id=thread_id, format='full')
        )
        messages = []
        for raw in data.get('messages', []):
            try:
                messages.append(parse_gmail_message(raw))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping malformed Gmail message in thread %s: %s", thread_id, e)
        return messages

    # Sending
    def _raw(self, message: OutgoingMessage) -> str:
        mime = build_mime(message, from_addr=self.account.email_address)
        return base64.urlsafe_b64encode(mime.as_bytes()).decode()

    async def _send_raw(self, message: OutgoingMessage, thread_id: Optional[str] = None) -> SendResult:
        body = {'raw': self._raw(message)}
        if thread_id:
            body['threadId'] = thread_id
        result = await self._call('messages.send', lambda s: s.users().messages().send(userId='me', body=body))
        return SendResult(
            success=True,
            provider=self.name,
            message_id=result.get('id'),
            thread_id=result.get('threadId', thread_id),
        )

    async def send(self, message: OutgoingMessage) -> SendResult:
        """Send email via Gmail"""
        return await self._send_raw(message)

    async def reply(self, context: ReplyContext, message: OutgoingMessage) -> SendResult:
        return await self._send_raw(prepare_reply(context, message), thread_id=context.thread_id)

    async def create_draft(self, message: OutgoingMessage) -> SendResult:
        body = {'message': {'raw': self._raw(message)}}
        result = await self._call('drafts.create', lambda s: s.users().drafts().create(userId='me', body=body))
        return SendResult(
            success=True,
            provider=self.name,
            message_id=result.get('id'),
            thread_id=(result.get('message') or {}).get('threadId'),
            is_draft=True,
        )

    async def get_reply_context(self, message_id: str) -> ReplyContext:
        raw = await self.get_message(message_id, include_body=False)
        headers = {h['name'].lower(): h['value'] for h in raw.get('payload', {}).get('headers', [])}
        if not headers:
            raise MessageParseError(f"Gmail message {message_id} has no headers")
        reply_to = parse_address_list(headers.get('reply-to'))
        if not reply_to:
            sender = parse_address(headers.get('from'))
            reply_to = [sender] if sender else []
        return ReplyContext(
            message_id=message_id,
            internet_message_id=strip_brackets(headers.get('message-id')),
            thread_id=raw.get('threadId'),
            subject=headers.get('subject', ''),
            reply_to=reply_to,
            references=parse_references(headers.get('references')),
        )

    def capabilities(self) -> AccountCapabilities:
        return AccountCapabilities(
            provider=self.name,
            supports_drafts=True,
            supports_threading=True,
            supports_history_sync=True,
            supports_push=bool(settings.GMAIL_PUBSUB_TOPIC),
        )
