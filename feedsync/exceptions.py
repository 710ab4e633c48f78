"""
Exception hierarchy for the sync service.

Credential errors are fatal at the point of use: a broken credential
store must surface loudly instead of silently stopping sync.
"""


class FeedSyncError(Exception):
    """Base class for all feedsync errors."""


class ConfigurationError(FeedSyncError):
    """Required configuration is missing or malformed."""


class CredentialError(FeedSyncError):
    """The OAuth credential cannot be used."""


class DecryptionError(CredentialError):
    """Stored ciphertext failed authentication (tampered or corrupt)."""


class NoCredentialError(CredentialError):
    """No credential on file; first-time authorization must be run."""


class NoRefreshTokenError(CredentialError):
    """The stored credential carries no refresh token."""


class TokenRefreshError(CredentialError):
    """The OAuth token endpoint rejected a grant."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class RemoteServiceError(FeedSyncError):
    """The remote reader API answered with a non-success status."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code
