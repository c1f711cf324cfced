"""Pytest configuration and shared fixtures."""

import os

# Settings are read at import time; configure them before mailsync is imported
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("FERNET_KEY", "MDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDA=")
os.environ.setdefault("GOOGLE_CLIENT_ID", "google-client-id")
os.environ.setdefault("GOOGLE_CLIENT_SECRET", "google-client-secret")
os.environ.setdefault("MS_CLIENT_ID", "ms-client-id")
os.environ.setdefault("MS_CLIENT_SECRET", "ms-client-secret")
os.environ.setdefault("PROVIDER_REQUEST_DELAY_SECONDS", "0")

from datetime import datetime, timedelta, timezone  # noqa: E402

import httpx  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy import event  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from mailsync.database import Base  # noqa: E402
from mailsync.models import AccountStatus, AccountType, ConnectionStatus, EmailAccount, OAuthProvider  # noqa: E402
from mailsync.schemas import EmailAddress, NormalizedMessage  # noqa: E402
from mailsync.services import MailServices  # noqa: E402
from mailsync.services.encryption import EncryptionService  # noqa: E402
from mailsync.services.oauth import GoogleOAuthClient, MicrosoftOAuthClient  # noqa: E402
from mailsync.services.store import MailStore  # noqa: E402
from mailsync.utils import utcnow  # noqa: E402

TEST_FERNET_KEY = "MDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDA="


@pytest_asyncio.fixture
async def db_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite defers BEGIN on its own, which breaks SAVEPOINT; let SQLAlchemy emit it
    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(db_engine):
    session_factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest.fixture
def store(db_session) -> MailStore:
    return MailStore(db_session)


@pytest.fixture
def vault() -> EncryptionService:
    return EncryptionService(key=TEST_FERNET_KEY)


def build_oauth_account(vault: EncryptionService, provider: OAuthProvider, **overrides) -> EmailAccount:
    values = dict(
        user_id="user-1",
        email_address=f"owner@{provider.value}.example.com",
        account_name="Support inbox",
        account_type=AccountType(provider.value),
        oauth_provider=provider,
        encrypted_access_token=vault.encrypt("access-token"),
        encrypted_refresh_token=vault.encrypt("refresh-token"),
        token_expiry=utcnow() + timedelta(hours=1),
        is_active=True,
        status=AccountStatus.ACTIVE,
        connection_status=ConnectionStatus.CONNECTED,
        sync_state={},
    )
    values.update(overrides)
    return EmailAccount(**values)


@pytest_asyncio.fixture
async def gmail_account(store, vault) -> EmailAccount:
    account = build_oauth_account(vault, OAuthProvider.GMAIL)
    await store.add_account(account)
    await store.commit()
    return account


@pytest_asyncio.fixture
async def outlook_account(store, vault) -> EmailAccount:
    account = build_oauth_account(vault, OAuthProvider.OUTLOOK)
    await store.add_account(account)
    await store.commit()
    return account


@pytest_asyncio.fixture
async def imap_account(store, vault) -> EmailAccount:
    account = EmailAccount(
        user_id="user-1",
        email_address="shop@example.org",
        account_type=AccountType.IMAP,
        incoming_server={
            "host": "imap.example.org", "port": 993, "security": "ssl",
            "username": "shop@example.org", "password": vault.encrypt("imap-secret"),
        },
        outgoing_server={
            "host": "smtp.example.org", "port": 587, "security": "starttls",
            "username": "shop@example.org", "password": vault.encrypt("imap-secret"),
        },
        is_active=True,
        status=AccountStatus.ACTIVE,
        connection_status=ConnectionStatus.CONNECTED,
        sync_state={},
    )
    await store.add_account(account)
    await store.commit()
    return account


@pytest.fixture
def make_message():
    """Factory for normalized messages with sensible defaults"""
    counter = {"n": 0}

    def factory(**overrides) -> NormalizedMessage:
        counter["n"] += 1
        n = counter["n"]
        values = dict(
            message_id=f"msg-{n}",
            internet_message_id=f"msg-{n}@mail.example.com",
            subject=f"Subject {n}",
            from_addr=EmailAddress(email="customer@example.com", name="Customer"),
            to=[EmailAddress(email="owner@gmail.example.com")],
            date=datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc) + timedelta(minutes=n),
            body_text=f"Body {n}",
            snippet=f"Body {n}",
            is_read=False,
        )
        values.update(overrides)
        return NormalizedMessage(**values)

    return factory


@pytest.fixture
def oauth_account_factory(store, vault):
    """Persist an OAuth-linked account with a still-valid access token"""

    async def factory(provider: OAuthProvider = OAuthProvider.GMAIL, **overrides) -> EmailAccount:
        account = build_oauth_account(vault, provider, **overrides)
        await store.add_account(account)
        await store.commit()
        return account

    return factory


# Gmail discovery client stand-in
def gmail_http_error(status: int):
    import httplib2
    from googleapiclient.errors import HttpError

    return HttpError(httplib2.Response({"status": status}), b'{"error": {"message": "fake"}}')


def gmail_raw_message(
    message_id: str,
    thread_id: str = None,
    subject: str = "Hello",
    sender: str = "Customer <customer@example.com>",
    labels=("INBOX", "UNREAD"),
    internal_ms: int = None,
    body: str = "Hi there",
    extra_headers=None,
) -> dict:
    import base64

    headers = [
        {"name": "Subject", "value": subject},
        {"name": "From", "value": sender},
        {"name": "To", "value": "owner@gmail.example.com"},
        {"name": "Message-ID", "value": f"<{message_id}@mail.gmail.com>"},
    ]
    for name, value in (extra_headers or {}).items():
        headers.append({"name": name, "value": value})
    if internal_ms is None:
        internal_ms = int(utcnow().timestamp() * 1000)
    return {
        "id": message_id,
        "threadId": thread_id or f"thread-{message_id}",
        "labelIds": list(labels),
        "snippet": body[:50],
        "internalDate": str(internal_ms),
        "payload": {
            "mimeType": "text/plain",
            "headers": headers,
            "body": {"data": base64.urlsafe_b64encode(body.encode()).decode()},
        },
    }


class FakeRequest:
    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error

    def execute(self):
        if self.error is not None:
            raise self.error
        return self.result


class FakeGmailService:
    """Mimics the chained ``users().messages().list(...)`` builder API"""

    def __init__(self, messages=None, history_id="1000"):
        # Newest first, as Gmail lists them
        self.inbox = list(messages or [])
        self.history_id = history_id
        self.history_responses = []
        self.calls = []
        self.sent = []
        self.drafts_created = []
        self.modified = []
        self.list_errors = []
        self.stop_errors = []
        self.gone = set()

    # builder plumbing
    def users(self):
        return self

    def history(self):
        return _Namespace(list=self._history_list)

    def drafts(self):
        return _Namespace(create=self._draft_create)

    def threads(self):
        return _Namespace(get=self._thread_get)

    def getProfile(self, userId):
        self.calls.append(("getProfile", {}))
        return FakeRequest({"emailAddress": "owner@gmail.example.com", "historyId": self.history_id})

    def watch(self, userId, body):
        self.calls.append(("watch", body))
        expiration = int((utcnow() + timedelta(days=7)).timestamp() * 1000)
        return FakeRequest({"historyId": self.history_id, "expiration": str(expiration)})

    def stop(self, userId):
        self.calls.append(("stop", {}))
        if self.stop_errors:
            return FakeRequest(error=self.stop_errors.pop(0))
        return FakeRequest({})

    def messages(self):
        return _Namespace(
            list=self._messages_list,
            get=self._messages_get,
            modify=self._messages_modify,
            send=self._messages_send,
        )

    # messages
    def _messages_list(self, userId, maxResults, pageToken=None, **params):
        self.calls.append(("messages.list", {"maxResults": maxResults, "pageToken": pageToken, **params}))
        if self.list_errors:
            return FakeRequest(error=self.list_errors.pop(0))
        start = int(pageToken or 0)
        end = start + maxResults
        page = self.inbox[start:end]
        response = {
            "messages": [{"id": m["id"], "threadId": m["threadId"]} for m in page],
            "resultSizeEstimate": len(self.inbox),
        }
        if end < len(self.inbox):
            response["nextPageToken"] = str(end)
        return FakeRequest(response)

    def _messages_get(self, userId, id, format="full", metadataHeaders=None):
        self.calls.append(("messages.get", {"id": id, "format": format}))
        if id in self.gone:
            return FakeRequest(error=gmail_http_error(404))
        for message in self.inbox:
            if message["id"] == id:
                return FakeRequest(message)
        return FakeRequest(error=gmail_http_error(404))

    def _messages_modify(self, userId, id, body):
        self.modified.append((id, body))
        return FakeRequest({"id": id})

    def _messages_send(self, userId, body):
        self.sent.append(body)
        return FakeRequest({"id": f"sent-{len(self.sent)}", "threadId": body.get("threadId", "new-thread")})

    # history, drafts, threads
    def _history_list(self, userId, startHistoryId, historyTypes=None, maxResults=None, pageToken=None):
        self.calls.append(("history.list", {"startHistoryId": startHistoryId, "pageToken": pageToken}))
        if not self.history_responses:
            return FakeRequest({"historyId": self.history_id})
        response = self.history_responses.pop(0)
        if isinstance(response, Exception):
            return FakeRequest(error=response)
        return FakeRequest(response)

    def _draft_create(self, userId, body):
        self.drafts_created.append(body)
        return FakeRequest({"id": "draft-1", "message": {"id": "m-draft", "threadId": "t-draft"}})

    def _thread_get(self, userId, id, format="full"):
        self.calls.append(("threads.get", {"id": id}))
        return FakeRequest({"id": id, "messages": [m for m in self.inbox if m["threadId"] == id]})

    def count(self, operation: str) -> int:
        return sum(1 for name, _ in self.calls if name == operation)


class _Namespace:
    def __init__(self, **methods):
        self.__dict__.update(methods)


@pytest.fixture
def gmail_service() -> FakeGmailService:
    return FakeGmailService()


class TokenEndpoint:
    """Scripted OAuth token endpoint served through ``httpx.MockTransport``"""

    def __init__(self):
        self.requests = []
        self.responses = []

    def queue(self, status_code: int, body: dict):
        self.responses.append((status_code, body))

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.responses:
            status_code, body = self.responses.pop(0)
        else:
            status_code, body = 200, {
                "access_token": f"fresh-token-{len(self.requests)}",
                "expires_in": 3600,
            }
        return httpx.Response(status_code, json=body)


@pytest.fixture
def token_endpoint() -> TokenEndpoint:
    return TokenEndpoint()


@pytest_asyncio.fixture
async def oauth_http(token_endpoint):
    async with httpx.AsyncClient(transport=httpx.MockTransport(token_endpoint.handler)) as client:
        yield client


@pytest.fixture
def services(db_session, vault, oauth_http, gmail_service, imap_factory, smtp_factory) -> MailServices:
    return MailServices(
        db_session,
        vault,
        google=GoogleOAuthClient(http_client=oauth_http),
        microsoft=MicrosoftOAuthClient(http_client=oauth_http),
        request_delay=0,
        gmail_service_factory=lambda token: gmail_service,
        imap_factory=imap_factory,
        smtp_factory=smtp_factory,
    )


@pytest.fixture
def gmail_message():
    """Factory for Gmail API message resources"""
    return gmail_raw_message


@pytest.fixture
def http_error():
    """Factory for googleapiclient ``HttpError`` with a given status"""
    return gmail_http_error


@pytest.fixture
def account_builder(vault):
    """Unsaved OAuth account with a valid token"""
    return lambda provider=OAuthProvider.GMAIL, **overrides: build_oauth_account(vault, provider, **overrides)


# IMAP/SMTP connection stand-ins
def imap_rfc822(uid: int, subject: str = None) -> bytes:
    return (
        f"From: Customer <customer@example.com>\r\n"
        f"To: shop@example.org\r\n"
        f"Subject: {subject or f'Message {uid}'}\r\n"
        f"Date: Thu, 01 Oct 2026 10:{uid:02d}:00 +0000\r\n"
        f"Message-ID: <imap-{uid}@example.com>\r\n"
        f"\r\n"
        f"Body {uid}\r\n"
    ).encode()


class FakeImap:
    """Answers SELECT, UID SEARCH/FETCH/STORE like ``imaplib.IMAP4``"""

    def __init__(self, uids=(b"1", b"2", b"3"), seen=(b"1",)):
        self.uids = list(uids)
        self.seen = set(seen)
        self.commands = []
        self.selected = None
        self.logged_out = False

    def select(self, mailbox, readonly=False):
        self.selected = (mailbox, readonly)
        return "OK", [str(len(self.uids)).encode()]

    def uid(self, command, *args):
        self.commands.append((command,) + args)
        if command == "SEARCH":
            return "OK", [b" ".join(self.uids)]
        if command == "FETCH":
            uid = args[0]
            flags = b"\\Seen" if uid in self.seen else b""
            meta = b"%s (UID %s FLAGS (%s) BODY[] {100}" % (uid, uid, flags)
            return "OK", [(meta, imap_rfc822(int(uid))), b")"]
        if command == "STORE":
            self.seen.add(args[0])
            return "OK", [b""]
        return "NO", [None]

    def logout(self):
        self.logged_out = True


class FakeSmtp:
    def __init__(self):
        self.sent = []
        self.quit_called = False

    def send_message(self, message):
        self.sent.append(message)

    def quit(self):
        self.quit_called = True


@pytest.fixture
def imap() -> FakeImap:
    return FakeImap()


@pytest.fixture
def smtp() -> FakeSmtp:
    return FakeSmtp()


@pytest.fixture
def connections():
    """(protocol, host, password) for every connection opened"""
    return []


@pytest.fixture
def imap_factory(imap, connections):
    def factory(server, password):
        connections.append(("imap", server["host"], password))
        return imap

    return factory


@pytest.fixture
def smtp_factory(smtp, connections):
    def factory(server, password):
        connections.append(("smtp", server["host"], password))
        return smtp

    return factory
