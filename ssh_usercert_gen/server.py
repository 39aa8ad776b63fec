#!/usr/bin/env python3
"""SSH user certificate generation service."""

import argparse
import os
import sys
from dataclasses import dataclass

import structlog
from starlette.applications import Starlette
from starlette.routing import Route

from .auth import Authenticator, CredentialVerifier, build_verifiers
from .config import AppConfig, ConfigError, get_config_loader, get_host_identity
from .handler import IssuanceHandler
from .logging import configure_logging, get_uvicorn_log_config
from .monitoring import new_metrics_data, start_health_metrics_server
from .signer import SigningOracle, SSHCertificateSigner, load_ca_key
from .validation import CERTGEN_PATH, RequestValidator

logger = structlog.get_logger()

# Forward-secret AEAD suites only
TLS_CIPHERS = "ECDHE+AESGCM:ECDHE+CHACHA20"


@dataclass(frozen=True)
class RuntimeState:
    """Process-wide state built once at startup and only read afterwards."""

    config: AppConfig
    host_identity: str
    verifiers: tuple[CredentialVerifier, ...]
    oracle: SigningOracle


def build_runtime_state(config: AppConfig) -> RuntimeState:
    """Load the CA key and build the verifier chain.

    Raises:
        ConfigError: if the CA key cannot be loaded
    """
    host_identity = get_host_identity()
    ca_key = load_ca_key(config.base.ssh_ca_filename)
    oracle = SSHCertificateSigner(
        ca_key,
        host_identity,
        validity_seconds=config.base.cert_validity_seconds,
        key_lookup_command=config.base.key_lookup_command,
    )
    return RuntimeState(
        config=config,
        host_identity=host_identity,
        verifiers=tuple(build_verifiers(config)),
        oracle=oracle,
    )


def create_app(state: RuntimeState) -> Starlette:
    """Build the ASGI application around the runtime state."""
    handler = IssuanceHandler(
        authenticator=Authenticator(state.verifiers),
        oracle=state.oracle,
        validator=RequestValidator(state.config.base.max_request_bytes),
    )
    # The handler is a plain ASGI app so every method reaches it; it answers 405 itself.
    return Starlette(routes=[Route(CERTGEN_PATH + "{identity:path}", endpoint=handler)])


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="SSH user certificate generator")
    parser.add_argument(
        "--config",
        default=os.getenv("SSH_USERCERT_GEN_CONFIG", "config.yml"),
        help="The filename of the configuration",
    )
    parser.add_argument(
        "--debug", action="store_true", help="Enable debug messages to console"
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the server."""
    import uvicorn

    args = parse_args(argv)
    configure_logging(debug=args.debug)

    try:
        config = get_config_loader(args.config).load()
        state = build_runtime_state(config)
    except ConfigError as e:
        logger.error("Cannot start certificate service", error=str(e))
        sys.exit(1)

    logger.info(
        "Certificate service configured",
        host_identity=state.host_identity,
        backends=len(state.verifiers),
    )
    if not state.verifiers:
        logger.warning("No credential backends configured, every request will fail")

    start_health_metrics_server(
        new_metrics_data([verifier.name for verifier in state.verifiers])
    )

    try:
        uvicorn.run(
            create_app(state),
            host=config.listen_host,
            port=config.listen_port,
            ssl_certfile=config.base.tls_cert_filename,
            ssl_keyfile=config.base.tls_key_filename,
            ssl_ciphers=TLS_CIPHERS,
            log_level="debug" if args.debug else "info",
            log_config=get_uvicorn_log_config(debug=args.debug),
        )
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully...")
    except Exception as e:
        logger.error(f"Server error: {e}")
        raise


if __name__ == "__main__":
    main()
