from mailsync.services.mail.base import FetchPage, MailProvider, ReplyContext
from mailsync.services.mail.factory import ProviderFactory
from mailsync.services.mail.gmail import GmailProvider, QuotaTracker
from mailsync.services.mail.imap import ImapProvider
from mailsync.services.mail.outlook import OutlookProvider

__all__ = [
    "FetchPage",
    "GmailProvider",
    "ImapProvider",
    "MailProvider",
    "OutlookProvider",
    "ProviderFactory",
    "QuotaTracker",
    "ReplyContext",
]
