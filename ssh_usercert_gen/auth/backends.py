"""Credential verification backends."""

import contextlib
import ssl
from urllib.parse import urlsplit

import structlog
from ldap3 import SIMPLE, Connection, Server, Tls
from ldap3.core.exceptions import LDAPException
from ldap3.utils.dn import escape_rdn
from passlib.apache import HtpasswdFile
from passlib.context import CryptContext
from passlib.exc import MissingBackendError

from ..config import AppConfig
from .models import BackendUnavailableError, CredentialVerifier

logger = structlog.get_logger()

LDAPS_DEFAULT_PORT = 636

# Bind result codes that are a real answer about the credential.
# Anything else (busy, unavailable, other) means the server could not decide.
LDAP_SUCCESS = 0
LDAP_DENY_RESULTS = frozenset(
    {
        32,  # noSuchObject
        34,  # invalidDNSyntax
        48,  # inappropriateAuthentication
        49,  # invalidCredentials
        50,  # insufficientAccessRights
        53,  # unwillingToPerform
    }
)

# Hash formats accepted in the htpasswd file. No plaintext: an entry in an
# unknown format must never be compared verbatim against the password.
HTPASSWD_CONTEXT = CryptContext(
    schemes=[
        "bcrypt",
        "sha256_crypt",
        "sha512_crypt",
        "apr_md5_crypt",
        "des_crypt",
        "ldap_sha1",
    ]
)


def parse_ldap_url(url: str) -> tuple[str, int]:
    """Split an ldaps:// URL into host and port.

    Raises:
        ValueError: if the URL is not a usable ldaps URL
    """
    parts = urlsplit(url)
    if parts.scheme != "ldaps":
        raise ValueError(f"unsupported ldap scheme in {url!r}, only ldaps is allowed")
    if not parts.hostname:
        raise ValueError(f"missing host in ldap url {url!r}")
    return parts.hostname, parts.port or LDAPS_DEFAULT_PORT


class LDAPVerifier:
    """Verifies credentials with a simple bind against one directory server."""

    def __init__(self, url: str, bind_pattern: str, timeout_seconds: float = 3.0):
        self.name = url
        self.host, self.port = parse_ldap_url(url)
        self.bind_pattern = bind_pattern
        self.timeout_seconds = timeout_seconds

    def bind_dn(self, username: str) -> str:
        return self.bind_pattern % escape_rdn(username)

    def _server(self) -> Server:
        return Server(
            self.host,
            port=self.port,
            use_ssl=True,
            tls=Tls(validate=ssl.CERT_REQUIRED),
            connect_timeout=self.timeout_seconds,
        )

    def verify(self, username: str, password: str) -> bool:
        # An empty password turns a simple bind into an anonymous bind.
        if not password:
            return False

        conn = Connection(
            self._server(),
            user=self.bind_dn(username),
            password=password,
            authentication=SIMPLE,
            receive_timeout=self.timeout_seconds,
            raise_exceptions=False,
        )
        try:
            conn.bind()
            result = (conn.result or {}).get("result")
        except LDAPException as e:
            raise BackendUnavailableError(
                f"ldap server {self.name} unavailable: {type(e).__name__}"
            ) from e
        finally:
            with contextlib.suppress(LDAPException):
                conn.unbind()

        if result == LDAP_SUCCESS:
            return True
        if result in LDAP_DENY_RESULTS:
            return False
        raise BackendUnavailableError(
            f"ldap server {self.name} returned non-definitive result {result}"
        )


class HtpasswdVerifier:
    """Verifies credentials against an Apache htpasswd file.

    The file is read on every call so that edits take effect without a restart.
    """

    def __init__(self, path: str):
        self.name = f"htpasswd:{path}"
        self.path = path

    @staticmethod
    def _storable(username: str) -> bool:
        # htpasswd entries cannot hold these, so such a user cannot be on file.
        return len(username) <= 255 and not any(c in username for c in ":\r\n")

    def verify(self, username: str, password: str) -> bool:
        if not self._storable(username):
            return False

        try:
            htpasswd = HtpasswdFile(self.path, context=HTPASSWD_CONTEXT)
        except OSError as e:
            raise BackendUnavailableError(
                f"cannot read htpasswd file {self.path}: {type(e).__name__}"
            ) from e
        except ValueError as e:
            raise BackendUnavailableError(
                f"cannot parse htpasswd file {self.path}"
            ) from e

        stored = htpasswd.get_hash(username)
        if stored is None:
            return False
        if HTPASSWD_CONTEXT.identify(stored) is None:
            logger.warning(
                "Unsupported hash format in htpasswd entry",
                backend=self.name,
                username=username,
            )
            return False

        try:
            return bool(htpasswd.check_password(username, password))
        except (ValueError, MissingBackendError) as e:
            raise BackendUnavailableError(
                f"cannot check htpasswd entry in {self.path}: {type(e).__name__}"
            ) from e


def build_verifiers(config: AppConfig) -> list[CredentialVerifier]:
    """Build the verifier chain: directory servers in config order, file last."""
    verifiers: list[CredentialVerifier] = []

    for url in config.ldap.target_urls:
        try:
            verifiers.append(
                LDAPVerifier(url, config.ldap.bind_pattern, config.ldap.timeout_seconds)
            )
        except ValueError as e:
            logger.warning("Skipping invalid ldap url", url=url, error=str(e))

    if config.base.htpasswd_filename:
        verifiers.append(HtpasswdVerifier(config.base.htpasswd_filename))

    logger.info(
        "Credential verifiers configured",
        backends=[verifier.name for verifier in verifiers],
    )
    return verifiers
