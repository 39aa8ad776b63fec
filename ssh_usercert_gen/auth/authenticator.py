"""Ordered-fallback authentication over the configured credential verifiers."""

import base64
import binascii
from collections.abc import Sequence

import structlog
from starlette.concurrency import run_in_threadpool

from .models import (
    AuthOutcome,
    BackendUnavailableError,
    Credential,
    CredentialVerifier,
)

logger = structlog.get_logger()


def parse_basic_auth(header: str | None) -> Credential | None:
    """Extract a credential from an HTTP Basic Authorization header.

    Returns None when the header is absent or malformed.
    """
    if not header:
        return None

    scheme, _, payload = header.partition(" ")
    if scheme.lower() != "basic" or not payload:
        return None

    try:
        decoded = base64.b64decode(payload.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None

    username, sep, secret = decoded.partition(":")
    if not sep:
        return None
    return Credential(username=username, secret=secret)


class Authenticator:
    """Consults verifiers in a fixed order; the first definitive verdict wins.

    A verifier that cannot answer (unreachable, timed out, unreadable data)
    is skipped. A verifier that answers, allow or deny, ends the search.
    """

    def __init__(self, verifiers: Sequence[CredentialVerifier]):
        self.verifiers = tuple(verifiers)

    async def authenticate(self, credential: Credential) -> AuthOutcome:
        if not credential.username:
            logger.info("Authentication rejected: empty username")
            return AuthOutcome.unauthenticated()

        for verifier in self.verifiers:
            try:
                valid = await run_in_threadpool(
                    verifier.verify, credential.username, credential.secret
                )
            except BackendUnavailableError as e:
                logger.warning(
                    "Credential backend unavailable, trying next",
                    backend=verifier.name,
                    error=str(e),
                )
                continue
            except Exception as e:
                logger.error(
                    "Credential backend failed, trying next",
                    backend=verifier.name,
                    error_type=type(e).__name__,
                )
                continue

            logger.info(
                "Credential verdict",
                backend=verifier.name,
                username=credential.username,
                result="allow" if valid else "deny",
            )
            if valid:
                return AuthOutcome.authenticated(credential.username)
            return AuthOutcome.unauthenticated()

        logger.error(
            "No credential backend could render a verdict",
            username=credential.username,
            backends=len(self.verifiers),
        )
        return AuthOutcome.backend_error()
