import logging
import secrets
import time
from contextlib import asynccontextmanager
from typing import Dict, List, Optional

import httpx

from mailsync.config import settings
from mailsync.exceptions import ProviderAuthenticationError, ProviderError, QuotaExceededError
from mailsync.models import EmailAccount
from mailsync.schemas import (
    AccountCapabilities,
    EmailAddress,
    FetchOptions,
    OutgoingMessage,
    Pagination,
    SendResult,
)
from mailsync.services.mail.base import FetchPage, OAuthMailProvider, ReplyContext, prepare_reply
from mailsync.services.mail.parse import parse_graph_message, parse_references, strip_brackets
from mailsync.services.oauth import GRAPH_BASE_URL, TokenManager

logger = logging.getLogger(__name__)

# Folder names mapped to Graph well-known folder ids
OUTLOOK_FOLDERS = {
    'INBOX': 'inbox',
    'SENT': 'sentitems',
    'SENT ITEMS': 'sentitems',
    'DRAFTS': 'drafts',
    'TRASH': 'deleteditems',
    'DELETED': 'deleteditems',
    'SPAM': 'junkemail',
    'JUNK': 'junkemail',
    'ARCHIVE': 'archive',
    'OUTBOX': 'outbox',
}

SELECT_FIELDS = [
    'id', 'conversationId', 'internetMessageId', 'subject', 'from', 'sender',
    'toRecipients', 'ccRecipients', 'bccRecipients', 'receivedDateTime', 'sentDateTime',
    'isRead', 'hasAttachments', 'bodyPreview', 'categories', 'internetMessageHeaders',
]


def _recipients(addresses: List[str]) -> List[Dict]:
    return [{'emailAddress': {'address': addr}} for addr in addresses]


def _graph_datetime(value) -> str:
    return value.strftime('%Y-%m-%dT%H:%M:%SZ')


class OutlookProvider(OAuthMailProvider):
    """Microsoft Graph fetch and send"""

    name = 'outlook'

    def __init__(
        self,
        account: EmailAccount,
        tokens: TokenManager,
        request_delay: Optional[float] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(account, tokens, request_delay)
        self.http_client = http_client

    @asynccontextmanager
    async def _http(self):
        if self.http_client is not None:
            yield self.http_client
        else:
            async with httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT_SECONDS) as client:
                yield client

    async def _request(self, method: str, path: str, *, params: Optional[Dict] = None,
                       json: Optional[Dict] = None, headers: Optional[Dict] = None) -> httpx.Response:
        url = path if path.startswith('http') else f'{GRAPH_BASE_URL}{path}'

        async def run(token: str) -> httpx.Response:
            request_headers = {'Authorization': f'Bearer {token}', **(headers or {})}
            try:
                async with self._http() as client:
                    response = await client.request(method, url, params=params, json=json, headers=request_headers)
            except httpx.HTTPError as e:
                raise ProviderError(f"Graph request failed: {e}", retryable=True) from e
            if response.status_code == 401:
                raise ProviderAuthenticationError("Graph rejected access token")
            if response.status_code == 429:
                raise QuotaExceededError("Graph throttled the request")
            if response.status_code >= 400:
                raise ProviderError(
                    f"Graph API error {response.status_code}: {response.text[:200]}",
                    status_code=response.status_code,
                    retryable=response.status_code >= 500,
                )
            return response

        return await self._with_token(run)

    # Fetching
    @staticmethod
    def folder_id(folder: Optional[str]) -> str:
        folder = folder or 'INBOX'
        return OUTLOOK_FOLDERS.get(folder.upper(), folder)

    @staticmethod
    def build_filter(options: FetchOptions) -> Optional[str]:
        clauses = []
        if options.since:
            clauses.append(f'receivedDateTime ge {_graph_datetime(options.since)}')
        if options.before:
            clauses.append(f'receivedDateTime lt {_graph_datetime(options.before)}')
        if options.query:
            escaped = options.query.replace("'", "''")
            clauses.append(f"contains(subject,'{escaped}')")
        return ' and '.join(clauses) or None

    async def count_messages(self, folder_id: str, filter_expr: Optional[str] = None) -> Optional[int]:
        """Folder message count through the $count endpoint"""
        params = {'$filter': filter_expr} if filter_expr else None
        try:
            response = await self._request(
                'GET', f'/me/mailFolders/{folder_id}/messages/$count',
                params=params, headers={'ConsistencyLevel': 'eventual'},
            )
            return int(response.text.strip())
        except (ProviderError, ValueError) as e:
            logger.warning("Could not count Outlook folder %s: %s", folder_id, e)
            return None

    async def fetch(self, options: FetchOptions) -> FetchPage:
        options = options.normalized()
        folder_id = self.folder_id(options.folder)
        filter_expr = self.build_filter(options)
        select = SELECT_FIELDS + (['body'] if options.include_body else [])
        params = {
            '$top': options.page_size,
            '$skip': options.offset,
            '$orderby': 'receivedDateTime desc',
            '$select': ','.join(select),
        }
        if filter_expr:
            params['$filter'] = filter_expr
        if options.include_body:
            params['$expand'] = 'attachments($select=id,name,contentType,size,isInline)'

        response = await self._request('GET', f'/me/mailFolders/{folder_id}/messages', params=params)
        data = response.json()
        total = await self.count_messages(folder_id, filter_expr)

        page = FetchPage(total_count=total)
        for raw in data.get('value', []):
            try:
                message = parse_graph_message(raw, options.folder)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping malformed Outlook message %s: %s", raw.get('id'), e)
                page.skipped += 1
                continue
            if options.mark_as_read and not message.is_read:
                await self._request('PATCH', f'/me/messages/{message.message_id}', json={'isRead': True})
                message.is_read = True
            page.messages.append(message)

        fetched_through = options.offset + len(data.get('value', []))
        has_next = bool(data.get('@odata.nextLink')) or (total is not None and fetched_through < total)
        page.pagination = Pagination(
            page=options.page,
            page_size=options.page_size,
            total_count=total,
            has_next_page=has_next,
            has_previous_page=options.page > 1,
        )
        logger.info(
            "Outlook fetch for account %s: %d messages (page %d)",
            self.account.id, len(page.messages), options.page,
        )
        return page

    # Sending
    @staticmethod
    def _message_payload(message: OutgoingMessage) -> Dict:
        payload = {
            'subject': message.subject,
            'body': {
                'contentType': 'HTML' if message.body_html else 'Text',
                'content': message.body_html or message.body_text or '',
            },
            'toRecipients': _recipients(message.to),
        }
        if message.cc:
            payload['ccRecipients'] = _recipients(message.cc)
        if message.bcc:
            payload['bccRecipients'] = _recipients(message.bcc)
        return payload

    @staticmethod
    def _generated_id() -> str:
        return f'outlook_msg_{int(time.time() * 1000)}_{secrets.token_hex(4)}'

    async def send(self, message: OutgoingMessage) -> SendResult:
        """Send email via Outlook"""
        await self._request('POST', '/me/sendMail', json={
            'message': self._message_payload(message),
            'saveToSentItems': True,
        })
        # sendMail answers 202 without a resource
        return SendResult(success=True, provider=self.name, message_id=self._generated_id())

    async def reply(self, context: ReplyContext, message: OutgoingMessage) -> SendResult:
        prepared = prepare_reply(context, message)
        reply_message = {'toRecipients': _recipients(prepared.to)}
        if prepared.cc:
            reply_message['ccRecipients'] = _recipients(prepared.cc)
        await self._request('POST', f'/me/messages/{context.message_id}/reply', json={
            'message': reply_message,
            'comment': prepared.body_html or prepared.body_text or '',
        })
        return SendResult(
            success=True,
            provider=self.name,
            message_id=self._generated_id(),
            thread_id=context.thread_id,
        )

    async def create_draft(self, message: OutgoingMessage) -> SendResult:
        response = await self._request('POST', '/me/messages', json=self._message_payload(message))
        data = response.json()
        return SendResult(
            success=True,
            provider=self.name,
            message_id=data.get('id'),
            thread_id=data.get('conversationId'),
            is_draft=True,
        )

    async def get_reply_context(self, message_id: str) -> ReplyContext:
        response = await self._request('GET', f'/me/messages/{message_id}', params={
            '$select': 'id,conversationId,internetMessageId,subject,from,replyTo,internetMessageHeaders',
        })
        data = response.json()
        headers = {
            h.get('name', '').lower(): h.get('value')
            for h in data.get('internetMessageHeaders', []) or []
        }
        targets = data.get('replyTo') or ([data['from']] if data.get('from') else [])
        reply_to = [
            EmailAddress(email=t['emailAddress']['address'].lower(), name=t['emailAddress'].get('name'))
            for t in targets if (t.get('emailAddress') or {}).get('address')
        ]
        return ReplyContext(
            message_id=data['id'],
            internet_message_id=strip_brackets(data.get('internetMessageId')),
            thread_id=data.get('conversationId'),
            subject=data.get('subject') or '',
            reply_to=reply_to,
            references=parse_references(headers.get('references')),
        )

    def capabilities(self) -> AccountCapabilities:
        return AccountCapabilities(provider=self.name, supports_drafts=True, supports_threading=True)
