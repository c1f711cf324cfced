"""Normalisation of Gmail, Graph and RFC822 messages.

Every fetcher funnels its raw payloads through here so that threading
headers, addresses and bodies come out in the same shape.
"""

import base64
import binascii
import logging
import re
from datetime import datetime, timezone
from email import message_from_bytes, policy
from email.message import EmailMessage
from email.utils import formatdate, getaddresses, parseaddr, parsedate_to_datetime
from typing import Dict, List, Optional, Tuple

from mailsync.schemas import AttachmentInfo, EmailAddress, NormalizedMessage, OutgoingMessage
from mailsync.utils import as_utc, parse_iso, utcnow

logger = logging.getLogger(__name__)

SNIPPET_LENGTH = 200

_TAG_RE = re.compile(r'<[^>]+>')
_WS_RE = re.compile(r'\s+')
_ORDER_RE = re.compile(
    r'\b(\d{2}-\d{5}-\d{5})\b'  # marketplace order numbers
    r'|\border\b[^#\d\n]{0,20}#?\s*(\d[\w-]{2,})',
    re.IGNORECASE,
)

GMAIL_CATEGORIES = {
    'CATEGORY_PROMOTIONS': 'promotions',
    'CATEGORY_SOCIAL': 'social',
    'CATEGORY_UPDATES': 'updates',
    'CATEGORY_FORUMS': 'forums',
    'CATEGORY_PERSONAL': 'primary',
}


# Header helpers
def strip_brackets(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    value = value.strip().strip('<>').strip()
    return value or None


def format_msgid(value: str) -> str:
    value = value.strip()
    return value if value.startswith('<') else f'<{value}>'


def parse_references(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [ref for ref in (strip_brackets(part) for part in value.split()) if ref]


def parse_address(value: Optional[str]) -> Optional[EmailAddress]:
    if not value:
        return None
    name, email = parseaddr(str(value))
    if not email:
        return None
    return EmailAddress(email=email.lower(), name=name or None)


def parse_address_list(value: Optional[str]) -> List[EmailAddress]:
    if not value:
        return []
    return [
        EmailAddress(email=email.lower(), name=name or None)
        for name, email in getaddresses([str(value)])
        if email
    ]


def parse_date(value) -> datetime:
    if not value:
        return utcnow()
    try:
        return as_utc(parsedate_to_datetime(str(value)))
    except (TypeError, ValueError, IndexError):
        logger.debug("Unparseable date header %r, using current time", value)
        return utcnow()


def make_snippet(text: str, html: str = '') -> str:
    source = text or _TAG_RE.sub(' ', html or '')
    return _WS_RE.sub(' ', source).strip()[:SNIPPET_LENGTH]


def extract_order_reference(subject: str, body: str = '') -> Optional[str]:
    match = _ORDER_RE.search(f'{subject or ""} {(body or "")[:2000]}')
    if not match:
        return None
    return match.group(1) or match.group(2)


def determine_category(labels: List[str], subject: str, text: str) -> str:
    """Gmail category label first, then a keyword guess"""
    for label, category in GMAIL_CATEGORIES.items():
        if label in labels:
            return category
    content = f'{subject} {text}'.lower()
    if any(word in content for word in ('order', 'purchase', 'receipt')):
        return 'primary'
    if any(word in content for word in ('newsletter', 'promotion', 'sale')):
        return 'promotions'
    if any(word in content for word in ('facebook', 'twitter', 'linkedin')):
        return 'social'
    return 'primary'


# Gmail
def _gmail_header(headers: List[Dict], name: str) -> Optional[str]:
    name_lower = name.lower()
    for header in headers:
        if header.get('name', '').lower() == name_lower:
            return header.get('value')
    return None


def _decode_base64url(data: str) -> str:
    padded = data + '=' * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded).decode('utf-8', errors='replace')


def extract_gmail_parts(payload: Dict) -> Tuple[str, str, List[AttachmentInfo]]:
    """Walk a Gmail payload tree for the first text/plain and text/html leaves"""
    text, html = '', ''
    attachments: List[AttachmentInfo] = []

    def walk(part: Dict):
        nonlocal text, html
        mime_type = part.get('mimeType', '')
        body = part.get('body', {}) or {}
        if part.get('filename') and body.get('attachmentId'):
            attachments.append(AttachmentInfo(
                filename=part['filename'],
                mime_type=mime_type,
                size=body.get('size', 0),
                attachment_id=body['attachmentId'],
                content_id=strip_brackets(_gmail_header(part.get('headers', []), 'Content-ID')),
            ))
        elif body.get('data') and mime_type in ('text/plain', 'text/html'):
            try:
                decoded = _decode_base64url(body['data'])
            except (binascii.Error, ValueError) as e:
                logger.warning("Skipping undecodable %s part: %s", mime_type, e)
            else:
                if mime_type == 'text/plain' and not text:
                    text = decoded
                elif mime_type == 'text/html' and not html:
                    html = decoded
        for child in part.get('parts', []) or []:
            walk(child)

    walk(payload or {})
    return text, html, attachments


def parse_gmail_message(raw: Dict, folder: Optional[str] = None) -> NormalizedMessage:
    """Parse Gmail API message (format=full or metadata) into the normalized shape"""
    payload = raw.get('payload', {}) or {}
    headers = payload.get('headers', []) or []
    labels = raw.get('labelIds', []) or []
    text, html, attachments = extract_gmail_parts(payload)
    subject = _gmail_header(headers, 'Subject') or ''
    internet_id = strip_brackets(_gmail_header(headers, 'Message-ID'))

    if raw.get('internalDate'):
        date = datetime.fromtimestamp(int(raw['internalDate']) / 1000, tz=timezone.utc)
    else:
        date = parse_date(_gmail_header(headers, 'Date'))

    return NormalizedMessage(
        message_id=raw.get('id') or internet_id,
        internet_message_id=internet_id,
        thread_id=raw.get('threadId'),
        subject=subject,
        from_addr=parse_address(_gmail_header(headers, 'From')),
        to=parse_address_list(_gmail_header(headers, 'To')),
        cc=parse_address_list(_gmail_header(headers, 'Cc')),
        bcc=parse_address_list(_gmail_header(headers, 'Bcc')),
        date=date,
        body_text=text,
        body_html=html,
        snippet=raw.get('snippet') or make_snippet(text, html),
        attachments=attachments,
        is_read='UNREAD' not in labels,
        in_reply_to=strip_brackets(_gmail_header(headers, 'In-Reply-To')),
        references=parse_references(_gmail_header(headers, 'References')),
        labels=labels,
        category=determine_category(labels, subject, text),
        folder=folder,
        order_reference=extract_order_reference(subject, text),
        size=int(raw.get('sizeEstimate') or len(text) + len(html)),
    )


# Microsoft Graph
def _graph_address(entry: Optional[Dict]) -> Optional[EmailAddress]:
    address = (entry or {}).get('emailAddress') or {}
    if not address.get('address'):
        return None
    return EmailAddress(email=address['address'].lower(), name=address.get('name') or None)


def _graph_addresses(entries: Optional[List[Dict]]) -> List[EmailAddress]:
    return [addr for addr in (_graph_address(e) for e in entries or []) if addr]


def parse_graph_message(raw: Dict, folder: Optional[str] = None) -> NormalizedMessage:
    """Parse Microsoft Graph message resource into the normalized shape"""
    headers = {
        h.get('name', '').lower(): h.get('value')
        for h in raw.get('internetMessageHeaders', []) or []
    }
    body = raw.get('body', {}) or {}
    text, html = '', ''
    if body.get('contentType', '').lower() == 'html':
        html = body.get('content', '') or ''
    else:
        text = body.get('content', '') or ''

    attachments = [
        AttachmentInfo(
            filename=att.get('name', ''),
            mime_type=att.get('contentType'),
            size=att.get('size', 0),
            attachment_id=att.get('id'),
            content_id=att.get('contentId'),
        )
        for att in raw.get('attachments', []) or []
    ]

    subject = raw.get('subject') or ''
    categories = raw.get('categories', []) or []
    date = parse_iso(raw.get('receivedDateTime') or raw.get('sentDateTime')) or utcnow()
    preview = raw.get('bodyPreview') or make_snippet(text, html)

    return NormalizedMessage(
        message_id=raw['id'],
        internet_message_id=strip_brackets(raw.get('internetMessageId')),
        thread_id=raw.get('conversationId'),
        subject=subject,
        from_addr=_graph_address(raw.get('from') or raw.get('sender')),
        to=_graph_addresses(raw.get('toRecipients')),
        cc=_graph_addresses(raw.get('ccRecipients')),
        bcc=_graph_addresses(raw.get('bccRecipients')),
        date=date,
        body_text=text,
        body_html=html,
        snippet=preview,
        attachments=attachments,
        is_read=bool(raw.get('isRead', False)),
        in_reply_to=strip_brackets(headers.get('in-reply-to')),
        references=parse_references(headers.get('references')),
        labels=categories,
        category=determine_category([], subject, text or preview),
        folder=folder,
        order_reference=extract_order_reference(subject, text or preview),
        size=len(text) + len(html),
    )


# RFC822 (IMAP)
def parse_rfc822(
    data: bytes,
    fallback_id: str,
    flags: Optional[List[str]] = None,
    folder: Optional[str] = None,
) -> NormalizedMessage:
    """Parse raw RFC822 bytes (full message or header block) into the normalized shape"""
    msg = message_from_bytes(data, policy=policy.default)
    text, html = '', ''
    attachments: List[AttachmentInfo] = []

    for part in msg.walk():
        if part.is_multipart():
            continue
        disposition = part.get_content_disposition()
        content_type = part.get_content_type()
        if disposition == 'attachment' or (part.get_filename() and disposition == 'inline'
                                           and not content_type.startswith('text/')):
            payload = part.get_payload(decode=True) or b''
            attachments.append(AttachmentInfo(
                filename=part.get_filename() or 'attachment',
                mime_type=content_type,
                size=len(payload),
                content_id=strip_brackets(part.get('Content-ID')),
            ))
            continue
        if content_type not in ('text/plain', 'text/html'):
            continue
        try:
            content = part.get_content()
        except (LookupError, UnicodeDecodeError, ValueError) as e:
            logger.warning("Skipping undecodable %s part in %s: %s", content_type, fallback_id, e)
            continue
        if content_type == 'text/plain' and not text:
            text = content
        elif content_type == 'text/html' and not html:
            html = content

    flags = flags or []
    subject = str(msg.get('Subject', '') or '')
    internet_id = strip_brackets(str(msg.get('Message-ID', '') or ''))

    return NormalizedMessage(
        message_id=internet_id or fallback_id,
        internet_message_id=internet_id,
        subject=subject,
        from_addr=parse_address(msg.get('From')),
        to=parse_address_list(msg.get('To')),
        cc=parse_address_list(msg.get('Cc')),
        bcc=parse_address_list(msg.get('Bcc')),
        date=parse_date(msg.get('Date')),
        body_text=text,
        body_html=html,
        snippet=make_snippet(text, html),
        attachments=attachments,
        is_read='\\Seen' in flags,
        in_reply_to=strip_brackets(str(msg.get('In-Reply-To', '') or '')),
        references=parse_references(str(msg.get('References', '') or '')),
        labels=[flag for flag in flags if not flag.startswith('\\')],
        category=determine_category([], subject, text),
        folder=folder,
        order_reference=extract_order_reference(subject, text),
        size=len(data),
    )


# Outbound
def build_mime(
    message: OutgoingMessage,
    from_addr: Optional[str] = None,
    message_id: Optional[str] = None,
) -> EmailMessage:
    """Build an RFC822 message with threading headers"""
    mime = EmailMessage()
    if from_addr:
        mime['From'] = from_addr
    mime['To'] = ', '.join(message.to)
    if message.cc:
        mime['Cc'] = ', '.join(message.cc)
    if message.bcc:
        mime['Bcc'] = ', '.join(message.bcc)
    mime['Subject'] = message.subject
    mime['Date'] = formatdate(localtime=False)
    if message_id:
        mime['Message-ID'] = format_msgid(message_id)
    if message.in_reply_to:
        mime['In-Reply-To'] = format_msgid(message.in_reply_to)
    if message.references:
        mime['References'] = ' '.join(format_msgid(ref) for ref in message.references)

    mime.set_content(message.body_text or make_snippet('', message.body_html or '') or '')
    if message.body_html:
        mime.add_alternative(message.body_html, subtype='html')
    return mime
