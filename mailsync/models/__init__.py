from mailsync.models.email_account import (
    AccountStatus,
    AccountType,
    ConnectionStatus,
    EmailAccount,
    OAuthProvider,
    SyncStatus,
)
from mailsync.models.thread import Thread, ThreadStatus, ThreadType
from mailsync.models.message import Attachment, Message

__all__ = [
    "AccountStatus",
    "AccountType",
    "Attachment",
    "ConnectionStatus",
    "EmailAccount",
    "Message",
    "OAuthProvider",
    "SyncStatus",
    "Thread",
    "ThreadStatus",
    "ThreadType",
]
