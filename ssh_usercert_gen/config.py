"""Configuration loader for the certificate generation service."""

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path

import structlog
import yaml

logger = structlog.get_logger()

DEFAULT_CERT_VALIDITY_SECONDS = 24 * 60 * 60
DEFAULT_MAX_REQUEST_BYTES = 64 * 1024
DEFAULT_LDAP_TIMEOUT_SECONDS = 3.0
DEFAULT_KEY_LOOKUP_COMMAND = "/usr/bin/sss_ssh_authorizedkeys"


class ConfigError(Exception):
    """Raised when the configuration file cannot be loaded or verified."""


@dataclass
class BaseConfig:
    """Network, TLS and CA settings."""

    http_address: str
    tls_cert_filename: str
    tls_key_filename: str
    ssh_ca_filename: str
    htpasswd_filename: str | None = None
    cert_validity_seconds: int = DEFAULT_CERT_VALIDITY_SECONDS
    max_request_bytes: int = DEFAULT_MAX_REQUEST_BYTES
    key_lookup_command: str = DEFAULT_KEY_LOOKUP_COMMAND


@dataclass
class LdapConfig:
    """Directory service settings shared by every configured URL."""

    bind_pattern: str = ""
    target_urls: list[str] = field(default_factory=list)
    timeout_seconds: float = DEFAULT_LDAP_TIMEOUT_SECONDS


@dataclass
class AppConfig:
    """Validated application settings."""

    base: BaseConfig
    ldap: LdapConfig

    @property
    def listen_host(self) -> str:
        host, _, _ = self.base.http_address.rpartition(":")
        return host.strip("[]") or "0.0.0.0"

    @property
    def listen_port(self) -> int:
        _, _, port = self.base.http_address.rpartition(":")
        return int(port)


def _check_readable(filename: str | None, description: str) -> None:
    """Fail if a referenced file is missing or cannot be read."""
    if not filename:
        raise ConfigError(f"missing {description} filename")
    path = Path(filename)
    if not path.exists():
        raise ConfigError(f"missing {description} file: {filename}")
    try:
        with open(path, "rb") as f:
            f.read(1)
    except OSError as e:
        raise ConfigError(f"cannot read {description} file: {filename}") from e


class ConfigLoader:
    """Loads and verifies the YAML configuration file."""

    def __init__(self, config_file: str = "config.yml"):
        self.config_file = Path(config_file)

    def load(self) -> AppConfig:
        """Load, parse and verify the configuration file."""
        if not self.config_file.exists():
            raise ConfigError(f"missing config file: {self.config_file}")

        try:
            with open(self.config_file) as f:
                content = yaml.safe_load(f)
        except OSError as e:
            raise ConfigError(f"cannot read config file: {self.config_file}") from e
        except yaml.YAMLError as e:
            raise ConfigError(f"cannot parse config file: {self.config_file}") from e

        if not isinstance(content, dict):
            raise ConfigError(f"config file is empty or malformed: {self.config_file}")

        config = AppConfig(
            base=self._parse_base(content.get("base") or {}),
            ldap=self._parse_ldap(content.get("ldap") or {}),
        )
        self._verify(config)

        logger.info(
            "Configuration loaded",
            file=str(self.config_file),
            ldap_urls=len(config.ldap.target_urls),
            htpasswd=bool(config.base.htpasswd_filename),
        )
        return config

    def _parse_base(self, base: dict) -> BaseConfig:
        try:
            return BaseConfig(
                http_address=str(base.get("http_address", ":33443")),
                tls_cert_filename=base.get("tls_cert_filename", ""),
                tls_key_filename=base.get("tls_key_filename", ""),
                ssh_ca_filename=base.get("ssh_ca_filename", ""),
                htpasswd_filename=base.get("htpasswd_filename") or None,
                cert_validity_seconds=int(
                    base.get("cert_validity_seconds", DEFAULT_CERT_VALIDITY_SECONDS)
                ),
                max_request_bytes=int(
                    base.get("max_request_bytes", DEFAULT_MAX_REQUEST_BYTES)
                ),
                key_lookup_command=base.get(
                    "key_lookup_command", DEFAULT_KEY_LOOKUP_COMMAND
                ),
            )
        except (TypeError, ValueError) as e:
            raise ConfigError(f"invalid base section: {e}") from e

    def _parse_ldap(self, ldap: dict) -> LdapConfig:
        urls = ldap.get("ldap_target_urls") or ""
        if isinstance(urls, str):
            target_urls = [u.strip() for u in urls.split(",") if u.strip()]
        else:
            target_urls = [str(u).strip() for u in urls if str(u).strip()]

        try:
            timeout = float(ldap.get("timeout_seconds", DEFAULT_LDAP_TIMEOUT_SECONDS))
        except (TypeError, ValueError) as e:
            raise ConfigError(f"invalid ldap timeout: {e}") from e

        return LdapConfig(
            bind_pattern=ldap.get("bind_pattern", "") or "",
            target_urls=target_urls,
            timeout_seconds=timeout,
        )

    def _verify(self, config: AppConfig) -> None:
        _check_readable(config.base.ssh_ca_filename, "ssh CA")
        _check_readable(config.base.tls_cert_filename, "http cert")
        _check_readable(config.base.tls_key_filename, "http key")

        if config.ldap.target_urls and "%s" not in config.ldap.bind_pattern:
            raise ConfigError("ldap bind_pattern must contain a %s placeholder")
        if config.base.cert_validity_seconds <= 0:
            raise ConfigError("cert_validity_seconds must be positive")
        if config.base.max_request_bytes <= 0:
            raise ConfigError("max_request_bytes must be positive")
        try:
            config.listen_port
        except ValueError as e:
            raise ConfigError(
                f"invalid http_address: {config.base.http_address}"
            ) from e


def get_host_identity() -> str:
    """Hostname embedded in the key id of every issued certificate."""
    return socket.gethostname()


def get_config_loader(config_file: str | None = None) -> ConfigLoader:
    """Get config loader for the given file, or the one named in the environment."""
    return ConfigLoader(
        config_file or os.getenv("SSH_USERCERT_GEN_CONFIG", "config.yml")
    )
