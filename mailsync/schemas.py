from pydantic import BaseModel, Field
from typing import Optional, List, Dict
from datetime import datetime
from mailsync.config import settings
from mailsync.models import AccountStatus, AccountType, ConnectionStatus, OAuthProvider


# Normalized message shape shared by every fetcher
class EmailAddress(BaseModel):
    email: str
    name: Optional[str] = None


class AttachmentInfo(BaseModel):
    filename: str
    mime_type: Optional[str] = None
    size: int = 0
    attachment_id: Optional[str] = None
    content_id: Optional[str] = None


class NormalizedMessage(BaseModel):
    message_id: str
    internet_message_id: Optional[str] = None
    thread_id: Optional[str] = None
    subject: str = ""
    from_addr: Optional[EmailAddress] = None
    to: List[EmailAddress] = []
    cc: List[EmailAddress] = []
    bcc: List[EmailAddress] = []
    date: datetime
    body_text: str = ""
    body_html: str = ""
    snippet: str = ""
    attachments: List[AttachmentInfo] = []
    is_read: bool = False
    in_reply_to: Optional[str] = None
    references: List[str] = []
    labels: List[str] = []
    category: Optional[str] = None
    folder: Optional[str] = None
    order_reference: Optional[str] = None
    size: int = 0

    @property
    def parent_message_id(self) -> Optional[str]:
        if self.in_reply_to:
            return self.in_reply_to
        return self.references[-1] if self.references else None

    @property
    def has_attachments(self) -> bool:
        return len(self.attachments) > 0

    def participants(self) -> List[EmailAddress]:
        """Union of from/to/cc, deduplicated by lower-cased email"""
        seen = set()
        result = []
        candidates = ([self.from_addr] if self.from_addr else []) + self.to + self.cc
        for address in candidates:
            key = address.email.lower()
            if key and key not in seen:
                seen.add(key)
                result.append(address)
        return result


# Fetch options and results
class FetchOptions(BaseModel):
    folder: str = "INBOX"
    limit: Optional[int] = None
    page: Optional[int] = None
    page_size: Optional[int] = None
    # Provider continuation token; when set the page starts there instead of at the offset
    page_token: Optional[str] = None
    since: Optional[datetime] = None
    before: Optional[datetime] = None
    query: Optional[str] = None
    label_ids: List[str] = []
    include_body: bool = True
    mark_as_read: bool = False
    fetch_all: bool = False
    use_history_api: bool = False

    def normalized(self) -> "FetchOptions":
        """Resolve limit/page/page_size into a concrete page window"""
        page = max(self.page or 1, 1)
        page_size = self.page_size or self.limit or settings.DEFAULT_PAGE_SIZE
        page_size = min(max(page_size, 1), settings.MAX_PAGE_SIZE)
        return self.model_copy(update={'page': page, 'page_size': page_size, 'folder': self.folder or 'INBOX'})

    @property
    def offset(self) -> int:
        return ((self.page or 1) - 1) * (self.page_size or settings.DEFAULT_PAGE_SIZE)


class Pagination(BaseModel):
    page: int = 1
    page_size: int
    total_count: Optional[int] = None
    has_next_page: bool = False
    has_previous_page: bool = False
    next_page_token: Optional[str] = None


class EmailFetchResult(BaseModel):
    success: bool
    account_id: Optional[int] = None
    email_address: Optional[str] = None
    messages: List[NormalizedMessage] = []
    total_count: int = 0
    new_count: int = 0
    stored_count: int = 0
    pagination: Optional[Pagination] = None
    sync_status: Optional[str] = None
    history_processed: int = 0
    error: Optional[str] = None
    requires_reauth: bool = False


# Manual sync
class ManualSyncProgress(BaseModel):
    is_processing: bool = False
    current_batch: int = 0
    total_processed: int = 0
    estimated_total: int = 0
    percentage: int = 0
    has_more: bool = False
    sync_status: Optional[str] = None
    last_processed_at: Optional[str] = None
    last_error: Optional[str] = None


class ManualSyncBatch(BaseModel):
    batch_number: int
    processed: int
    has_more: bool
    next_page_token: Optional[str] = None


class ManualSyncResult(BaseModel):
    success: bool
    account_id: Optional[int] = None
    email_address: Optional[str] = None
    message: Optional[str] = None
    batch: Optional[ManualSyncBatch] = None
    progress: Optional[ManualSyncProgress] = None
    error: Optional[str] = None
    requires_reauth: bool = False


# Outbound mail
class OutgoingMessage(BaseModel):
    to: List[str] = []
    cc: List[str] = []
    bcc: List[str] = []
    subject: str = ""
    body_text: Optional[str] = None
    body_html: Optional[str] = None
    in_reply_to: Optional[str] = None
    references: List[str] = []


class SendResult(BaseModel):
    success: bool
    provider: Optional[str] = None
    message_id: Optional[str] = None
    thread_id: Optional[str] = None
    is_draft: bool = False
    error: Optional[str] = None
    requires_reauth: bool = False


class AccountCapabilities(BaseModel):
    provider: str
    can_send: bool = True
    can_reply: bool = True
    supports_drafts: bool = False
    supports_threading: bool = False
    supports_history_sync: bool = False
    supports_push: bool = False


# Token lifecycle
class TokenRefreshResult(BaseModel):
    success: bool
    account_id: Optional[int] = None
    email_address: Optional[str] = None
    expires_at: Optional[datetime] = None
    error: Optional[str] = None
    requires_reauth: bool = False


class ThreadStats(BaseModel):
    total_threads: int = 0
    unread_threads: int = 0
    by_type: Dict[str, int] = {}
    by_status: Dict[str, int] = {}


# API schemas
class EmailAccountSchema(BaseModel):
    id: int
    user_id: str
    email_address: str
    account_name: Optional[str] = None
    display_name: Optional[str] = None
    account_type: AccountType
    oauth_provider: Optional[OAuthProvider] = None
    is_active: bool
    is_primary: bool
    status: AccountStatus
    connection_status: ConnectionStatus
    requires_reauth: bool
    total_messages: int
    unread_messages: int
    last_synced_at: Optional[datetime] = None
    last_error: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class AuthorizeResponse(BaseModel):
    authorization_url: str


class SendMessageRequest(OutgoingMessage):
    account_id: int


class ReplyRequest(OutgoingMessage):
    account_id: int
    original_message_id: str


class CleanupResult(BaseModel):
    account_id: int
    deleted_threads: int = Field(0, ge=0)


class ThreadRefreshResult(BaseModel):
    account_id: int
    thread_id: str
    new_count: int = 0
