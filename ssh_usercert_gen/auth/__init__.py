from .authenticator import Authenticator, parse_basic_auth
from .backends import HtpasswdVerifier, LDAPVerifier, build_verifiers
from .models import (
    AuthOutcome,
    AuthStatus,
    BackendUnavailableError,
    Credential,
    CredentialVerifier,
)

__all__ = [
    "AuthOutcome",
    "AuthStatus",
    "Authenticator",
    "BackendUnavailableError",
    "Credential",
    "CredentialVerifier",
    "HtpasswdVerifier",
    "LDAPVerifier",
    "build_verifiers",
    "parse_basic_auth",
]
