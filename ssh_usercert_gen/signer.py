"""SSH user certificate signing with an in-memory CA key."""

import secrets
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import structlog
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, rsa
from cryptography.hazmat.primitives.serialization import (
    SSHCertificateBuilder,
    SSHCertificateType,
)

from .config import ConfigError
from .errors import ValidationError
from .validation import validate_public_key

logger = structlog.get_logger()

CAPrivateKey = ed25519.Ed25519PrivateKey | ec.EllipticCurvePrivateKey | rsa.RSAPrivateKey
CertifiableKey = ed25519.Ed25519PublicKey | ec.EllipticCurvePublicKey | rsa.RSAPublicKey

CERT_EXTENSIONS = (
    b"permit-X11-forwarding",
    b"permit-agent-forwarding",
    b"permit-port-forwarding",
    b"permit-pty",
    b"permit-user-rc",
)
KEY_LOOKUP_TIMEOUT_SECONDS = 10


class SigningError(Exception):
    """The certificate could not be produced."""


class KeyNotFoundError(SigningError):
    """No public key is on record for the identity."""


@dataclass(frozen=True)
class SigningRequest:
    """Everything the signer is told about a certificate to issue.

    ``public_key`` is None when the key has to be looked up by identity.
    """

    subject: str
    public_key: str | None = None


class SigningOracle(Protocol):
    """Protocol for certificate signers."""

    def sign(self, subject: str, public_key: str) -> str:
        """Return the certificate text for ``public_key`` issued to ``subject``."""
        ...

    def sign_on_record(self, subject: str) -> str:
        """Return a certificate for the key on record for ``subject``.

        Raises:
            KeyNotFoundError: if no key is on record
        """
        ...


def _certifiable(public_key: str) -> bool:
    """True if the key parses and is of a type a certificate can carry."""
    try:
        key = serialization.load_ssh_public_key(public_key.encode("utf-8"))
    except (ValueError, UnsupportedAlgorithm):
        return False
    return isinstance(key, CertifiableKey)


def load_ca_key(path: str, password: bytes | None = None) -> CAPrivateKey:
    """Parse the CA private key file (OpenSSH or PEM format)."""
    try:
        data = Path(path).read_bytes()
    except OSError as e:
        raise ConfigError(f"cannot read ssh CA file: {path}") from e

    try:
        if b"BEGIN OPENSSH PRIVATE KEY" in data:
            key = serialization.load_ssh_private_key(data, password=password)
        else:
            key = serialization.load_pem_private_key(data, password=password)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise ConfigError(f"cannot parse ssh CA private key: {path}") from e

    if not isinstance(key, CAPrivateKey):
        raise ConfigError(f"unsupported ssh CA key type: {type(key).__name__}")
    return key


class SSHCertificateSigner:
    """Issues OpenSSH user certificates signed by the CA key."""

    def __init__(
        self,
        ca_key: CAPrivateKey,
        host_identity: str,
        validity_seconds: int = 24 * 60 * 60,
        key_lookup_command: str = "/usr/bin/sss_ssh_authorizedkeys",
    ):
        self.ca_key = ca_key
        self.host_identity = host_identity
        self.validity_seconds = validity_seconds
        self.key_lookup_command = key_lookup_command

    @staticmethod
    def _serial(now: int) -> int:
        return (now << 32) | secrets.randbits(32)

    def sign(self, subject: str, public_key: str) -> str:
        now = int(time.time())
        try:
            user_key = serialization.load_ssh_public_key(public_key.encode("utf-8"))
            builder = (
                SSHCertificateBuilder()
                .public_key(user_key)  # type: ignore[arg-type]
                .serial(self._serial(now))
                .type(SSHCertificateType.USER)
                .key_id(f"{self.host_identity}_{subject}".encode())
                .valid_principals([subject.encode("utf-8")])
                .valid_after(now)
                .valid_before(now + self.validity_seconds)
            )
            for extension in CERT_EXTENSIONS:
                builder = builder.add_extension(extension, b"")
            certificate = builder.sign(self.ca_key)
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            raise SigningError(f"cannot sign key for {subject}: {e}") from e

        return certificate.public_bytes().decode("ascii") + "\n"

    def lookup_public_key(self, subject: str) -> str:
        """Ask the key lookup command for the first certifiable key of ``subject``.

        Every failure to produce such a key, including a lookup command that
        cannot run, is reported as ``KeyNotFoundError``.
        """
        if not subject or subject.startswith("-"):
            raise KeyNotFoundError(f"no key lookup for identity {subject!r}")

        try:
            proc = subprocess.run(
                [self.key_lookup_command, subject],
                capture_output=True,
                timeout=KEY_LOOKUP_TIMEOUT_SECONDS,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            logger.warning(
                "Key lookup timed out",
                user=subject,
                timeout_seconds=KEY_LOOKUP_TIMEOUT_SECONDS,
            )
            raise KeyNotFoundError(f"key lookup for {subject} timed out") from e
        except OSError as e:
            logger.error(
                "Key lookup command failed to run",
                command=self.key_lookup_command,
                error=str(e),
            )
            raise KeyNotFoundError(
                f"key lookup command {self.key_lookup_command} failed to run"
            ) from e

        if proc.returncode != 0:
            logger.info(
                "Key lookup returned no keys",
                user=subject,
                returncode=proc.returncode,
            )
            raise KeyNotFoundError(f"no key on record for {subject}")

        for line in proc.stdout.splitlines():
            try:
                key = validate_public_key(line.strip())
            except ValidationError:
                continue
            if _certifiable(key):
                return key
            logger.info("Skipping key on record that cannot be certified", user=subject)

        raise KeyNotFoundError(f"no usable key on record for {subject}")

    def sign_on_record(self, subject: str) -> str:
        return self.sign(subject, self.lookup_public_key(subject))
