"""Certificate issuance endpoint.

Each request walks the same sequence of guarded steps::

    size guard -> credentials -> authenticate -> method -> identity check
    -> key material -> issue

A step either passes or raises ``RequestRejected`` carrying its
classification; ``handle`` turns that into exactly one response.
"""

from http import HTTPStatus

import structlog
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import PlainTextResponse, Response
from starlette.types import Receive, Scope, Send

from .auth import Authenticator, AuthStatus, Credential, parse_basic_auth
from .errors import Failure, RequestRejected
from .signer import KeyNotFoundError, SigningError, SigningOracle, SigningRequest
from .validation import RequestValidator, path_suffix

logger = structlog.get_logger()

CERT_FILENAME = "id_rsa-cert.pub"
AUTH_CHALLENGE = 'Basic realm="User Credentials"'


def failure_response(failure: Failure, message: str = "") -> Response:
    """Plain text error body; never carries internal error details."""
    code = failure.status_code
    headers = {"WWW-Authenticate": AUTH_CHALLENGE} if failure is Failure.UNAUTHORIZED else None
    return PlainTextResponse(
        f"{code} {HTTPStatus(code).phrase} {message}\n",
        status_code=code,
        headers=headers,
    )


def certificate_response(certificate: str) -> Response:
    return PlainTextResponse(
        certificate,
        headers={"Content-Disposition": f'attachment; filename="{CERT_FILENAME}"'},
    )


class IssuanceHandler:
    """ASGI endpoint joining authentication, validation and signing."""

    def __init__(
        self,
        authenticator: Authenticator,
        oracle: SigningOracle,
        validator: RequestValidator | None = None,
    ):
        self.authenticator = authenticator
        self.oracle = oracle
        self.validator = validator or RequestValidator()

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        response = await self.handle(Request(scope, receive))
        await response(scope, receive, send)

    async def handle(self, request: Request) -> Response:
        try:
            certificate = await self._process(request)
        except RequestRejected as e:
            logger.info(
                "Certificate request rejected",
                status=e.failure.status_code,
                reason=e.reason,
                method=request.method,
                path=request.url.path,
            )
            return failure_response(e.failure, e.public_message)
        except Exception as e:
            logger.error(
                "Certificate request failed",
                error=str(e),
                error_type=type(e).__name__,
                method=request.method,
                path=request.url.path,
            )
            return failure_response(Failure.INTERNAL_ERROR)

        return certificate_response(certificate)

    async def _process(self, request: Request) -> str:
        self.validator.check_declared_size(request.headers.get("content-length"))
        credential = self._credential(request)
        identity = await self._authenticate(credential)

        self.validator.check_method(request.method)
        suffix = path_suffix(request.url.path)
        self._check_identity(identity, suffix)

        form = await self.validator.read_form(request) if request.method == "POST" else None
        _, public_key = self.validator.validate(request.method, suffix, form)

        certificate = await self._issue(SigningRequest(subject=identity, public_key=public_key))
        logger.info("Generated certificate", user=identity, method=request.method)
        return certificate

    def _credential(self, request: Request) -> Credential:
        credential = parse_basic_auth(request.headers.get("authorization"))
        if credential is None:
            raise RequestRejected(
                "invalid or no auth header", failure=Failure.UNAUTHORIZED
            )
        return credential

    async def _authenticate(self, credential: Credential) -> str:
        outcome = await self.authenticator.authenticate(credential)
        if outcome.status is AuthStatus.BACKEND_ERROR:
            raise RequestRejected(
                "no credential backend available", failure=Failure.INTERNAL_ERROR
            )
        if not outcome.is_authenticated or outcome.identity is None:
            raise RequestRejected(
                f"invalid credentials for {credential.username}",
                failure=Failure.UNAUTHORIZED,
            )
        return outcome.identity

    def _check_identity(self, identity: str, requested: str) -> None:
        if identity != requested:
            logger.warning(
                "User asking for certificate of another user",
                authenticated_user=identity,
                requested_user=requested,
            )
            raise RequestRejected(
                f"{identity} requested certificate for {requested}",
                failure=Failure.FORBIDDEN,
            )

    async def _issue(self, signing_request: SigningRequest) -> str:
        try:
            if signing_request.public_key is None:
                return await run_in_threadpool(
                    self.oracle.sign_on_record, signing_request.subject
                )
            return await run_in_threadpool(
                self.oracle.sign, signing_request.subject, signing_request.public_key
            )
        except KeyNotFoundError as e:
            raise RequestRejected(str(e), failure=Failure.NOT_FOUND) from e
        except SigningError as e:
            raise RequestRejected(str(e), failure=Failure.INTERNAL_ERROR) from e
