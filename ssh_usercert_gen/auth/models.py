"""Authentication models and types."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol


class BackendUnavailableError(Exception):
    """A verifier could not render a verdict (unreachable, timed out, bad data)."""


@dataclass(frozen=True)
class Credential:
    """Username and secret presented for a single authentication attempt."""

    username: str
    secret: str = field(repr=False)


class AuthStatus(Enum):
    AUTHENTICATED = "authenticated"
    UNAUTHENTICATED = "unauthenticated"
    BACKEND_ERROR = "backend_error"


@dataclass(frozen=True)
class AuthOutcome:
    """Result of one authentication attempt."""

    status: AuthStatus
    identity: str | None = None

    @classmethod
    def authenticated(cls, identity: str) -> "AuthOutcome":
        return cls(AuthStatus.AUTHENTICATED, identity)

    @classmethod
    def unauthenticated(cls) -> "AuthOutcome":
        return cls(AuthStatus.UNAUTHENTICATED)

    @classmethod
    def backend_error(cls) -> "AuthOutcome":
        return cls(AuthStatus.BACKEND_ERROR)

    @property
    def is_authenticated(self) -> bool:
        return self.status is AuthStatus.AUTHENTICATED


class CredentialVerifier(Protocol):
    """Protocol for credential verification backends."""

    name: str

    def verify(self, username: str, password: str) -> bool:
        """Return the backend's verdict for the credential.

        Raises:
            BackendUnavailableError: if the backend cannot render a verdict
        """
        ...
