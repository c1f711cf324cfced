"""Selects the provider variant serving an account."""

from typing import Callable, Optional

import httpx

from mailsync.models import AccountType, EmailAccount, OAuthProvider
from mailsync.services.mail.base import MailProvider
from mailsync.services.mail.gmail import GmailProvider, QuotaTracker
from mailsync.services.mail.imap import ImapProvider
from mailsync.services.mail.outlook import OutlookProvider
from mailsync.services.oauth import TokenManager


class ProviderFactory:
    """Builds providers with injected transport collaborators"""

    def __init__(
        self,
        tokens: TokenManager,
        request_delay: Optional[float] = None,
        gmail_service_factory: Optional[Callable] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        imap_factory: Optional[Callable] = None,
        smtp_factory: Optional[Callable] = None,
    ):
        self.tokens = tokens
        self.request_delay = request_delay
        self.gmail_service_factory = gmail_service_factory
        self.http_client = http_client
        self.imap_factory = imap_factory
        self.smtp_factory = smtp_factory

    def gmail(self, account: EmailAccount, quota: Optional[QuotaTracker] = None) -> GmailProvider:
        return GmailProvider(
            account, self.tokens, self.request_delay,
            service_factory=self.gmail_service_factory, quota=quota,
        )

    def outlook(self, account: EmailAccount) -> OutlookProvider:
        return OutlookProvider(account, self.tokens, self.request_delay, http_client=self.http_client)

    def imap(self, account: EmailAccount) -> ImapProvider:
        return ImapProvider(
            account, self.tokens, self.request_delay,
            imap_factory=self.imap_factory, smtp_factory=self.smtp_factory,
        )

    def for_fetch(self, account: EmailAccount) -> MailProvider:
        """Gmail or Outlook API when the account is OAuth-linked, IMAP otherwise"""
        account_type = AccountType(account.account_type)
        if account.uses_oauth and account_type == AccountType.GMAIL:
            return self.gmail(account)
        if account.uses_oauth and account_type in (AccountType.OUTLOOK, AccountType.EXCHANGE):
            return self.outlook(account)
        return self.imap(account)

    def for_send(self, account: EmailAccount) -> MailProvider:
        """Routed strictly by the account's OAuth provider"""
        if account.oauth_provider == OAuthProvider.OUTLOOK:
            return self.outlook(account)
        if account.oauth_provider == OAuthProvider.GMAIL:
            return self.gmail(account)
        return self.imap(account)
