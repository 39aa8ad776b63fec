"""Request validation: allowed methods, requested identity and public key material."""

import re
from collections.abc import Awaitable, Callable

from starlette.datastructures import FormData, UploadFile
from starlette.exceptions import HTTPException
from starlette.formparsers import MultiPartException
from starlette.requests import Request

from .errors import MethodNotAllowedError, ValidationError

CERTGEN_PATH = "/certgen/"
ALLOWED_METHODS = frozenset({"GET", "POST"})
KEY_FORM_FIELD = "pubkeyfile"
MAX_KEY_BYTES = 16 * 1024

# One authorized_keys style line: algorithm, base64 blob, optional comment.
PUBLIC_KEY_RE = re.compile(
    rb"(?:ssh-rsa|ssh-dss|ecdsa-sha2-nistp256|ssh-ed25519)"
    rb" [A-Za-z0-9+/]+={0,2}"
    rb"(?: [^\r\n]{0,512})?"
    rb"\n?"
)


def validate_public_key(data: bytes) -> str:
    """Return the key text if ``data`` is exactly one acceptable public key line.

    Raises:
        ValidationError: on any deviation from the key grammar
    """
    if len(data) > MAX_KEY_BYTES:
        raise ValidationError(
            f"public key too large ({len(data)} bytes)", "Invalid File, key too large"
        )
    if not PUBLIC_KEY_RE.fullmatch(data):
        raise ValidationError("public key does not match grammar", "Invalid File, bad re")
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as e:
        raise ValidationError(
            "public key is not valid utf-8", "Invalid File, bad encoding"
        ) from e


def path_suffix(path: str) -> str:
    """Requested identity: the path after the route prefix, verbatim."""
    return path[len(CERTGEN_PATH) :] if path.startswith(CERTGEN_PATH) else ""


def _replay(body: bytes) -> Callable[[], Awaitable[dict]]:
    """ASGI receive callable that hands back an already buffered body."""
    sent = False

    async def receive() -> dict:
        nonlocal sent
        if sent:
            return {"type": "http.disconnect"}
        sent = True
        return {"type": "http.request", "body": body, "more_body": False}

    return receive


class RequestValidator:
    """Checks the method, the requested identity and the key payload."""

    def __init__(self, max_request_bytes: int = 64 * 1024):
        self.max_request_bytes = max_request_bytes

    def check_method(self, method: str) -> None:
        if method not in ALLOWED_METHODS:
            raise MethodNotAllowedError(f"method {method} not allowed")

    def check_declared_size(self, content_length: str | None) -> None:
        """Reject a body whose declared length is over the bound before reading it."""
        if content_length is None:
            return
        try:
            length = int(content_length)
        except ValueError as e:
            raise ValidationError(
                "invalid Content-Length header", "Invalid Content-Length"
            ) from e
        if length < 0 or length > self.max_request_bytes:
            raise ValidationError(
                f"declared body size {length} over limit", "Request body too large"
            )

    async def read_form(self, request: Request) -> FormData:
        """Read at most ``max_request_bytes`` of body, then parse it as a form."""
        body = bytearray()
        async for chunk in request.stream():
            body.extend(chunk)
            if len(body) > self.max_request_bytes:
                raise ValidationError("body over size limit", "Request body too large")

        buffered = Request(request.scope, receive=_replay(bytes(body)))
        try:
            return await buffered.form(max_files=1, max_fields=16)
        except MultiPartException as e:
            raise ValidationError(f"malformed form: {e.message}", "Error parsing form") from e
        except HTTPException as e:
            # Starlette reports multipart errors this way when running inside an app
            raise ValidationError(f"malformed form: {e.detail}", "Error parsing form") from e

    def key_from_form(self, form_data: FormData | None) -> str:
        """Extract and validate the single uploaded public key file."""
        entries = form_data.getlist(KEY_FORM_FIELD) if form_data is not None else []
        if len(entries) != 1 or not isinstance(entries[0], UploadFile):
            raise ValidationError(
                f"expected one {KEY_FORM_FIELD} file, got {len(entries)} entries",
                "Missing public key file",
            )

        upload = entries[0]
        upload.file.seek(0)
        data = upload.file.read(MAX_KEY_BYTES + 1)
        return validate_public_key(data)

    def validate(
        self, method: str, suffix: str, form_data: FormData | None = None
    ) -> tuple[str, str | None]:
        """Return the requested identity and the key text (None for GET)."""
        self.check_method(method)
        if method == "GET":
            return suffix, None
        return suffix, self.key_from_form(form_data)
