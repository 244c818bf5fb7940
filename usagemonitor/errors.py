"""Exception types raised while reading credentials and calling the usage API.

``str(exc)`` is always the message shown to the user and stored as the last
error, so every subclass formats a complete sentence from its fields.
"""
from __future__ import annotations

from typing import Optional


class UsageMonitorError(Exception):
    """Base class for every failure this package reports."""


class CredentialStoreError(UsageMonitorError):
    """The secret store could not be read or written."""


class StoreUnavailable(CredentialStoreError):
    """The store lookup process could not be started."""


class StoreAccessDenied(CredentialStoreError):
    """The operating system refused access to the stored credential."""


class StoreWriteFailure(CredentialStoreError):
    """Inserting the updated credential record failed."""


class ParseFailure(UsageMonitorError):
    """A stored record or API payload was not well-formed."""


class NoCredentials(UsageMonitorError):
    """No OAuth token is present in the credential record."""


class NoRefreshToken(UsageMonitorError):
    """An auth error occurred but the record holds no refresh token."""


class RefreshError(UsageMonitorError):
    def __init__(self, status: Optional[int], body: str = "") -> None:
        self.status = status
        self.body = body
        if status is None:
            message = f"Token refresh request failed: {body}"
        else:
            message = f"Token refresh failed ({status}): {body}"
        super().__init__(message)


class ApiError(UsageMonitorError):
    """A usage or profile call failed.

    ``status`` is None for transport failures and unparseable bodies; only a
    401 is treated as an auth error that may be recovered by refreshing.
    """

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        self.status = status
        super().__init__(message)

    @property
    def is_auth_error(self) -> bool:
        return self.status == 401
