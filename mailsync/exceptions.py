"""Exception hierarchy for the mail ingestion core.

Internal code raises these; public service operations catch them at their
boundary and convert them into structured result objects.
"""

from typing import Optional


class MailSyncError(Exception):
    """Base exception for all mail sync errors."""


class CryptoError(MailSyncError):
    """Stored credential could not be decrypted."""


class AuthError(MailSyncError):
    """Access credentials could not be obtained for an account."""


class TransientAuthError(AuthError):
    """Token endpoint unreachable or failing; the caller may retry later."""


class ReauthRequiredError(AuthError):
    """Credentials are unusable until the user re-authenticates."""


class InvalidGrantError(ReauthRequiredError):
    """Refresh token expired or revoked (OAuth ``invalid_grant``)."""


class ProviderError(MailSyncError):
    """A provider API call failed."""

    def __init__(self, message: str, status_code: Optional[int] = None, retryable: bool = False):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class ProviderAuthenticationError(ProviderError):
    """Provider rejected the access token (HTTP 401)."""

    def __init__(self, message: str = "Provider rejected access token"):
        super().__init__(message, status_code=401)


class CursorExpiredError(ProviderError):
    """History cursor is too old for the provider to replay."""

    def __init__(self, message: str = "History cursor expired"):
        super().__init__(message, status_code=404)


class QuotaExceededError(ProviderError):
    """Daily provider quota is exhausted or under the safety margin."""

    def __init__(self, message: str = "Provider quota exhausted"):
        super().__init__(message, status_code=429, retryable=True)


class MessageParseError(MailSyncError):
    """A provider message could not be decoded into the normalized shape."""


class StorageError(MailSyncError):
    """The persistence layer failed or lost its connection."""

    def __init__(self, message: str, connection_lost: bool = False):
        super().__init__(message)
        self.connection_lost = connection_lost


class UnsupportedAccountError(MailSyncError):
    """Account type or provider cannot serve the requested operation."""
