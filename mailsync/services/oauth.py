"""OAuth token lifecycle and account linking for Gmail and Outlook.

Access tokens are kept encrypted on the account and refreshed on expiry.
A rejected refresh token (``invalid_grant``) is terminal: the account is
flagged for re-authentication instead of being retried.
"""

import base64
import json
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Dict, Optional
from urllib.parse import urlencode

import httpx

from mailsync.config import settings
from mailsync.exceptions import (
    AuthError,
    CryptoError,
    InvalidGrantError,
    ReauthRequiredError,
    StorageError,
    TransientAuthError,
    UnsupportedAccountError,
)
from mailsync.models import (
    AccountStatus,
    AccountType,
    ConnectionStatus,
    EmailAccount,
    OAuthProvider,
)
from mailsync.schemas import TokenRefreshResult
from mailsync.services.encryption import EncryptionService, encryption_service
from mailsync.services.store import MailStore
from mailsync.utils import as_utc, utcnow

logger = logging.getLogger(__name__)

GRAPH_BASE_URL = 'https://graph.microsoft.com/v1.0'
OAUTH_STATE_MAX_AGE_SECONDS = 3600


class OAuthClient:
    """Token endpoint client shared by the Google and Microsoft flows"""

    provider: OAuthProvider
    authorize_url: str
    token_url: str
    scopes: list

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.http_client = http_client

    @asynccontextmanager
    async def _http(self):
        if self.http_client is not None:
            yield self.http_client
        else:
            async with httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT_SECONDS) as client:
                yield client

    def _authorization_params(self, state: str) -> Dict:
        return {
            'client_id': self.client_id,
            'redirect_uri': self.redirect_uri,
            'response_type': 'code',
            'scope': ' '.join(self.scopes),
            'state': state,
        }

    def get_authorization_url(self, state: str) -> str:
        """Generate OAuth authorization URL"""
        return f'{self.authorize_url}?{urlencode(self._authorization_params(state))}'

    async def _post_token(self, data: Dict) -> Dict:
        try:
            async with self._http() as client:
                response = await client.post(self.token_url, data=data)
        except httpx.HTTPError as e:
            raise TransientAuthError(f"{self.provider.value} token endpoint unreachable: {e}") from e

        if response.status_code >= 500 or response.status_code == 429:
            raise TransientAuthError(
                f"{self.provider.value} token endpoint returned {response.status_code}"
            )
        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = {}
            error = body.get('error', 'unknown_error')
            description = body.get('error_description') or error
            if error == 'invalid_grant':
                raise InvalidGrantError(f"Refresh token expired or revoked: {description}")
            raise ReauthRequiredError(f"{self.provider.value} token request rejected: {description}")
        return response.json()

    async def exchange_code_for_tokens(self, code: str) -> Dict:
        """Exchange authorization code for access and refresh tokens"""
        return await self._post_token({
            'code': code,
            'client_id': self.client_id,
            'client_secret': self.client_secret,
            'redirect_uri': self.redirect_uri,
            'grant_type': 'authorization_code',
        })

    async def refresh_access_token(
        self,
        refresh_token: str,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
    ) -> Dict:
        """Refresh access token using refresh token"""
        return await self._post_token({
            'refresh_token': refresh_token,
            'client_id': client_id or self.client_id,
            'client_secret': client_secret or self.client_secret,
            'grant_type': 'refresh_token',
        })

    async def get_user_profile(self, access_token: str) -> Dict:
        raise NotImplementedError


class GoogleOAuthClient(OAuthClient):
    provider = OAuthProvider.GMAIL
    authorize_url = 'https://accounts.google.com/o/oauth2/v2/auth'
    token_url = 'https://oauth2.googleapis.com/token'
    profile_url = 'https://gmail.googleapis.com/gmail/v1/users/me/profile'
    scopes = [
        'https://www.googleapis.com/auth/gmail.readonly',
        'https://www.googleapis.com/auth/gmail.send',
        'https://www.googleapis.com/auth/gmail.compose',
        'https://www.googleapis.com/auth/gmail.modify',
    ]

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None):
        super().__init__(
            settings.GOOGLE_CLIENT_ID,
            settings.GOOGLE_CLIENT_SECRET,
            settings.GOOGLE_REDIRECT_URI,
            http_client,
        )

    def _authorization_params(self, state: str) -> Dict:
        params = super()._authorization_params(state)
        params.update({'access_type': 'offline', 'prompt': 'consent'})
        return params

    async def get_user_profile(self, access_token: str) -> Dict:
        """Get the mailbox address and current history id"""
        async with self._http() as client:
            response = await client.get(self.profile_url, headers={'Authorization': f'Bearer {access_token}'})
        response.raise_for_status()
        return response.json()


class MicrosoftOAuthClient(OAuthClient):
    provider = OAuthProvider.OUTLOOK
    scopes = ['Mail.Read', 'Mail.ReadWrite', 'Mail.Send', 'User.Read', 'offline_access']

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None):
        super().__init__(
            settings.MS_CLIENT_ID,
            settings.MS_CLIENT_SECRET,
            settings.MS_REDIRECT_URI,
            http_client,
        )
        self.tenant = settings.MS_TENANT
        self.authorize_url = f'https://login.microsoftonline.com/{self.tenant}/oauth2/v2.0/authorize'
        self.token_url = f'https://login.microsoftonline.com/{self.tenant}/oauth2/v2.0/token'

    def _authorization_params(self, state: str) -> Dict:
        params = super()._authorization_params(state)
        params['response_mode'] = 'query'
        return params

    async def exchange_code_for_tokens(self, code: str) -> Dict:
        return await self._post_token({
            'code': code,
            'client_id': self.client_id,
            'client_secret': self.client_secret,
            'redirect_uri': self.redirect_uri,
            'grant_type': 'authorization_code',
            'scope': ' '.join(self.scopes),
        })

    async def refresh_access_token(
        self,
        refresh_token: str,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
    ) -> Dict:
        return await self._post_token({
            'refresh_token': refresh_token,
            'client_id': client_id or self.client_id,
            'client_secret': client_secret or self.client_secret,
            'grant_type': 'refresh_token',
            'scope': ' '.join(self.scopes),
        })

    async def get_user_profile(self, access_token: str) -> Dict:
        """Get user's email address and profile info"""
        async with self._http() as client:
            response = await client.get(f'{GRAPH_BASE_URL}/me', headers={'Authorization': f'Bearer {access_token}'})
        response.raise_for_status()
        return response.json()


class TokenManager:
    """Hands out valid access tokens, refreshing them through the vault"""

    def __init__(
        self,
        store: MailStore,
        vault: EncryptionService = encryption_service,
        google: Optional[OAuthClient] = None,
        microsoft: Optional[OAuthClient] = None,
        skew_seconds: Optional[int] = None,
    ):
        self.store = store
        self.vault = vault
        self.clients = {
            OAuthProvider.GMAIL: google or GoogleOAuthClient(),
            OAuthProvider.OUTLOOK: microsoft or MicrosoftOAuthClient(),
        }
        self.skew = timedelta(
            seconds=settings.TOKEN_EXPIRY_SKEW_SECONDS if skew_seconds is None else skew_seconds
        )

    def client_for(self, account: EmailAccount) -> OAuthClient:
        if account.oauth_provider is None:
            raise UnsupportedAccountError(f"Account {account.id} has no OAuth provider")
        return self.clients[OAuthProvider(account.oauth_provider)]

    def get_decrypted_access_token(self, account: EmailAccount) -> Optional[str]:
        """Return the stored access token, or None when absent or unreadable"""
        if not account.encrypted_access_token:
            return None
        try:
            return self.vault.decrypt(account.encrypted_access_token)
        except CryptoError:
            logger.warning("Access token for account %s could not be decrypted", account.id)
            return None

    def token_is_valid(self, account: EmailAccount, now: Optional[datetime] = None) -> bool:
        expiry = as_utc(account.token_expiry)
        if not account.encrypted_access_token or expiry is None:
            return False
        return (now or utcnow()) + self.skew < expiry

    async def get_valid_access_token(self, account: EmailAccount, force_refresh: bool = False) -> str:
        """Return a usable access token, refreshing it when expired or forced"""
        if not force_refresh and self.token_is_valid(account):
            try:
                return self.vault.decrypt(account.encrypted_access_token)
            except CryptoError:
                logger.warning("Stored access token for account %s is unreadable, refreshing", account.id)
        return await self._refresh(account)

    async def _refresh(self, account: EmailAccount) -> str:
        client = self.client_for(account)
        if not account.encrypted_refresh_token:
            await self.mark_reauth_required(account, "No refresh token available")
            raise ReauthRequiredError("No refresh token available")
        try:
            refresh_token = self.vault.decrypt(account.encrypted_refresh_token)
            client_secret = (
                self.vault.decrypt(account.encrypted_client_secret)
                if account.encrypted_client_secret else None
            )
        except CryptoError as e:
            await self.mark_reauth_required(account, str(e))
            raise ReauthRequiredError(str(e)) from e

        try:
            tokens = await client.refresh_access_token(
                refresh_token,
                client_id=account.oauth_client_id,
                client_secret=client_secret,
            )
        except ReauthRequiredError as e:
            await self.mark_reauth_required(account, str(e))
            raise

        access_token = tokens['access_token']
        account.encrypted_access_token = self.vault.encrypt(access_token)
        account.token_expiry = utcnow() + timedelta(seconds=int(tokens.get('expires_in', 3600)))
        # Update refresh token if new one provided
        if tokens.get('refresh_token'):
            account.encrypted_refresh_token = self.vault.encrypt(tokens['refresh_token'])
        account.connection_status = ConnectionStatus.CONNECTED
        account.requires_reauth = False
        if account.status == AccountStatus.ERROR:
            account.status = AccountStatus.ACTIVE
        await self.store.commit()
        logger.info("Refreshed %s access token for account %s", client.provider.value, account.id)
        return access_token

    async def mark_reauth_required(self, account: EmailAccount, error: str):
        account.connection_status = ConnectionStatus.ERROR
        account.status = AccountStatus.ERROR
        account.requires_reauth = True
        account.last_error = f"{error}. Please re-authenticate your account."
        account.last_error_at = utcnow()
        await self.store.commit()
        logger.error("Account %s requires re-authentication: %s", account.id, error)

    async def refresh_tokens(self, account: EmailAccount) -> TokenRefreshResult:
        """Force a refresh and report the outcome without raising"""
        result = TokenRefreshResult(success=False, account_id=account.id, email_address=account.email_address)
        try:
            await self._refresh(account)
        except ReauthRequiredError as e:
            result.error = str(e)
            result.requires_reauth = True
            return result
        except (AuthError, StorageError) as e:
            result.error = str(e)
            return result
        result.success = True
        result.expires_at = as_utc(account.token_expiry)
        return result

    def get_server_password(self, server: Optional[Dict]) -> Optional[str]:
        """Decrypt the password stored in an incoming/outgoing server record"""
        if not server or not server.get('password'):
            return None
        try:
            return self.vault.decrypt(server['password'])
        except CryptoError as e:
            raise ReauthRequiredError("Stored server password could not be decrypted") from e


DEFAULT_SERVERS = {
    OAuthProvider.GMAIL: (
        {'host': 'imap.gmail.com', 'port': 993, 'security': 'ssl'},
        {'host': 'smtp.gmail.com', 'port': 587, 'security': 'starttls'},
    ),
    OAuthProvider.OUTLOOK: (
        {'host': 'outlook.office365.com', 'port': 993, 'security': 'ssl'},
        {'host': 'smtp.office365.com', 'port': 587, 'security': 'starttls'},
    ),
}


class AccountLinkService:
    """Connects mailboxes through the OAuth authorization-code flow"""

    def __init__(
        self,
        store: MailStore,
        vault: EncryptionService = encryption_service,
        google: Optional[OAuthClient] = None,
        microsoft: Optional[OAuthClient] = None,
    ):
        self.store = store
        self.vault = vault
        self.clients = {
            OAuthProvider.GMAIL: google or GoogleOAuthClient(),
            OAuthProvider.OUTLOOK: microsoft or MicrosoftOAuthClient(),
        }

    @staticmethod
    def encode_state(user_id: str, provider: OAuthProvider, account_name: Optional[str] = None,
                     is_primary: bool = False) -> str:
        payload = {
            'userId': user_id,
            'provider': provider.value,
            'accountName': account_name,
            'isPrimary': is_primary,
            'timestamp': int(time.time()),
        }
        return base64.urlsafe_b64encode(json.dumps(payload).encode()).decode()

    @staticmethod
    def decode_state(state: str) -> Dict:
        try:
            payload = json.loads(base64.urlsafe_b64decode(state.encode()).decode())
        except (ValueError, UnicodeDecodeError) as e:
            raise AuthError("Invalid OAuth state parameter") from e
        if not isinstance(payload, dict) or not payload.get('userId') or not payload.get('provider'):
            raise AuthError("Invalid OAuth state parameter")
        if time.time() - payload.get('timestamp', 0) > OAUTH_STATE_MAX_AGE_SECONDS:
            raise AuthError("OAuth state has expired")
        return payload

    def get_authorization_url(self, provider: OAuthProvider, user_id: str,
                              account_name: Optional[str] = None, is_primary: bool = False) -> str:
        state = self.encode_state(user_id, provider, account_name, is_primary)
        return self.clients[provider].get_authorization_url(state)

    async def complete_authorization(self, provider: OAuthProvider, code: str, state: str) -> EmailAccount:
        """Exchange the callback code and create or update the linked account"""
        payload = self.decode_state(state)
        if payload['provider'] != provider.value:
            raise AuthError("OAuth state does not match provider")

        client = self.clients[provider]
        tokens = await client.exchange_code_for_tokens(code)
        access_token = tokens['access_token']
        try:
            profile = await client.get_user_profile(access_token)
        except httpx.HTTPError as e:
            raise TransientAuthError(f"Could not load {provider.value} profile: {e}") from e

        if provider == OAuthProvider.GMAIL:
            email_address = profile['emailAddress']
            display_name = email_address
        else:
            email_address = profile.get('mail') or profile['userPrincipalName']
            display_name = profile.get('displayName') or email_address

        user_id = payload['userId']
        account = await self.store.find_account(user_id, email_address)
        if account is None:
            incoming, outgoing = DEFAULT_SERVERS[provider]
            account = EmailAccount(
                user_id=user_id,
                email_address=email_address,
                display_name=display_name,
                account_name=payload.get('accountName') or email_address,
                account_type=AccountType(provider.value),
                incoming_server={**incoming, 'username': email_address},
                outgoing_server={**outgoing, 'username': email_address},
                sync_state={},
            )
            await self.store.add_account(account)
            logger.info("Linked new %s account for user %s", provider.value, user_id)

        account.oauth_provider = provider
        account.encrypted_access_token = self.vault.encrypt(access_token)
        if tokens.get('refresh_token'):
            account.encrypted_refresh_token = self.vault.encrypt(tokens['refresh_token'])
        account.token_expiry = utcnow() + timedelta(seconds=int(tokens.get('expires_in', 3600)))
        account.is_active = True
        account.status = AccountStatus.ACTIVE
        account.connection_status = ConnectionStatus.CONNECTED
        account.requires_reauth = False
        account.last_error = None
        if payload.get('isPrimary'):
            account.is_primary = True
            await self.store.clear_primary(user_id, account.id)

        await self.store.commit()
        await self.store.refresh(account)
        return account
