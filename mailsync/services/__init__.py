"""Service wiring.

``MailServices`` builds every collaborator around one database session.
Transport collaborators (OAuth clients, Gmail service factory, Graph HTTP
client, IMAP/SMTP connectors) are injectable so tests can substitute fakes.
"""

from typing import Callable, Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from mailsync.models import OAuthProvider
from mailsync.services.encryption import EncryptionService, encryption_service
from mailsync.services.fetching import FetchService
from mailsync.services.history_sync import HistorySyncEngine
from mailsync.services.ingestion import MessageIngestor
from mailsync.services.mail.factory import ProviderFactory
from mailsync.services.manual_sync import ManualSyncDriver
from mailsync.services.oauth import AccountLinkService, OAuthClient, TokenManager
from mailsync.services.sending import SendFacade
from mailsync.services.store import MailStore
from mailsync.services.threads import ThreadResolver


class MailServices:
    def __init__(
        self,
        db: AsyncSession,
        vault: EncryptionService = encryption_service,
        google: Optional[OAuthClient] = None,
        microsoft: Optional[OAuthClient] = None,
        request_delay: Optional[float] = None,
        gmail_service_factory: Optional[Callable] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        imap_factory: Optional[Callable] = None,
        smtp_factory: Optional[Callable] = None,
    ):
        self.store = MailStore(db)
        self.tokens = TokenManager(self.store, vault, google=google, microsoft=microsoft)
        self.linking = AccountLinkService(
            self.store, vault, google=self.tokens.clients[OAuthProvider.GMAIL],
            microsoft=self.tokens.clients[OAuthProvider.OUTLOOK],
        )
        self.providers = ProviderFactory(
            self.tokens,
            request_delay=request_delay,
            gmail_service_factory=gmail_service_factory,
            http_client=http_client,
            imap_factory=imap_factory,
            smtp_factory=smtp_factory,
        )
        self.threads = ThreadResolver(self.store)
        self.ingestor = MessageIngestor(self.store, self.threads)
        self.history_sync = HistorySyncEngine(self.store, self.providers, self.ingestor, self.threads)
        self.fetcher = FetchService(
            self.store, self.tokens, self.providers, self.ingestor, history_sync=self.history_sync,
        )
        self.manual_sync = ManualSyncDriver(self.store, self.tokens, self.providers, self.ingestor)
        self.sender = SendFacade(self.store, self.providers)
