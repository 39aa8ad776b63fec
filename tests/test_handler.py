"""End-to-end tests for the certificate issuance endpoint."""

from unittest.mock import Mock

import pytest
from starlette.testclient import TestClient

from ssh_usercert_gen.auth import Authenticator, BackendUnavailableError
from ssh_usercert_gen.handler import IssuanceHandler
from ssh_usercert_gen.server import create_app
from ssh_usercert_gen.signer import KeyNotFoundError, SigningError
from ssh_usercert_gen.validation import RequestValidator

ED25519_KEY = "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIxxx user@host\n"
FAKE_CERT = "ssh-ed25519-cert-v01@openssh.com AAAAHHNzaC1lZDI1NTE5LWNlcnQ=\n"
USERS = {"alice": "wonderland", "bob": "builder"}


class UserTableVerifier:
    """Reachable backend with a fixed user table."""

    name = "table"

    def __init__(self, users: dict[str, str]):
        self.users = users
        self.calls = 0

    def verify(self, username: str, password: str) -> bool:
        self.calls += 1
        return self.users.get(username) == password


class DownVerifier:
    """Backend that can never be reached."""

    name = "ldaps://down.example.com"

    def verify(self, username: str, password: str) -> bool:
        raise BackendUnavailableError("timed out")


def spy_oracle() -> Mock:
    oracle = Mock()
    oracle.sign.return_value = FAKE_CERT
    oracle.sign_on_record.return_value = FAKE_CERT
    return oracle


def make_client(
    oracle: Mock, verifiers: list | None = None, max_request_bytes: int = 64 * 1024
) -> TestClient:
    state = Mock()
    state.verifiers = tuple(
        verifiers if verifiers is not None else [UserTableVerifier(USERS)]
    )
    state.oracle = oracle
    state.config.base.max_request_bytes = max_request_bytes
    return TestClient(create_app(state))


def key_file(key: str = ED25519_KEY) -> dict:
    return {"pubkeyfile": ("id_ed25519.pub", key.encode(), "application/octet-stream")}


class TestIssuance:
    """Test successful certificate issuance."""

    def test_post_issues_certificate(self) -> None:
        """Test a POST for one's own identity returns the certificate."""
        oracle = spy_oracle()
        client = make_client(oracle)

        response = client.post(
            "/certgen/alice", auth=("alice", "wonderland"), files=key_file()
        )

        assert response.status_code == 200
        assert response.headers["content-disposition"] == (
            'attachment; filename="id_rsa-cert.pub"'
        )
        assert response.headers["content-type"].startswith("text/plain")
        assert response.text == FAKE_CERT

    def test_post_sends_exactly_one_signing_request(self) -> None:
        """Test the oracle gets the authenticated identity and the validated key."""
        oracle = spy_oracle()
        client = make_client(oracle)

        client.post("/certgen/alice", auth=("alice", "wonderland"), files=key_file())

        oracle.sign.assert_called_once_with("alice", ED25519_KEY)
        oracle.sign_on_record.assert_not_called()

    def test_get_signs_key_on_record(self) -> None:
        """Test a GET asks the oracle to look up the key by identity."""
        oracle = spy_oracle()
        client = make_client(oracle)

        response = client.get("/certgen/bob", auth=("bob", "builder"))

        assert response.status_code == 200
        assert response.text == FAKE_CERT
        oracle.sign_on_record.assert_called_once_with("bob")
        oracle.sign.assert_not_called()

    def test_unreachable_primary_falls_back(self) -> None:
        """Test a certificate is issued when only a later backend is reachable."""
        oracle = spy_oracle()
        client = make_client(oracle, [DownVerifier(), UserTableVerifier(USERS)])

        response = client.get("/certgen/alice", auth=("alice", "wonderland"))

        assert response.status_code == 200


class TestAuthenticationFailures:
    """Test requests rejected before the identity check."""

    def test_missing_authorization_header(self) -> None:
        """Test a request without credentials gets a Basic challenge."""
        oracle = spy_oracle()
        client = make_client(oracle)

        response = client.get("/certgen/alice")

        assert response.status_code == 401
        assert response.headers["www-authenticate"] == 'Basic realm="User Credentials"'
        oracle.sign_on_record.assert_not_called()

    def test_malformed_authorization_header(self) -> None:
        """Test a malformed Authorization header is treated as missing."""
        client = make_client(spy_oracle())

        response = client.get(
            "/certgen/alice", headers={"Authorization": "Basic %%%"}
        )

        assert response.status_code == 401
        assert "www-authenticate" in response.headers

    def test_wrong_password(self) -> None:
        """Test denied credentials get a challenge and no certificate."""
        oracle = spy_oracle()
        client = make_client(oracle)

        response = client.post(
            "/certgen/alice", auth=("alice", "guess"), files=key_file()
        )

        assert response.status_code == 401
        assert response.headers["www-authenticate"] == 'Basic realm="User Credentials"'
        oracle.sign.assert_not_called()

    def test_all_backends_unreachable(self) -> None:
        """Test an internal error when no backend can render a verdict."""
        oracle = spy_oracle()
        client = make_client(oracle, [DownVerifier(), DownVerifier()])

        response = client.post(
            "/certgen/alice", auth=("alice", "wonderland"), files=key_file()
        )

        assert response.status_code == 500
        assert "www-authenticate" not in response.headers
        assert "wonderland" not in response.text
        assert "timed out" not in response.text
        oracle.sign.assert_not_called()

    def test_no_backends_configured(self) -> None:
        """Test an empty verifier chain never authenticates anyone."""
        client = make_client(spy_oracle(), [])

        response = client.get("/certgen/alice", auth=("alice", "wonderland"))

        assert response.status_code == 500

    def test_authentication_precedes_method_check(self) -> None:
        """Test unauthenticated callers learn nothing about allowed methods."""
        client = make_client(spy_oracle())

        response = client.delete("/certgen/alice")

        assert response.status_code == 401


class TestIdentityCheck:
    """Test the caller == subject rule."""

    def test_post_for_other_user_is_forbidden(self) -> None:
        """Test asking for someone else's certificate never reaches the oracle."""
        oracle = spy_oracle()
        client = make_client(oracle)

        response = client.post(
            "/certgen/bob", auth=("alice", "wonderland"), files=key_file()
        )

        assert response.status_code == 403
        oracle.sign.assert_not_called()
        oracle.sign_on_record.assert_not_called()

    def test_get_for_other_user_is_forbidden(self) -> None:
        """Test a GET for another identity is forbidden."""
        oracle = spy_oracle()
        client = make_client(oracle)

        response = client.get("/certgen/bob", auth=("alice", "wonderland"))

        assert response.status_code == 403
        oracle.sign_on_record.assert_not_called()

    @pytest.mark.parametrize("path", ["/certgen/", "/certgen/Alice", "/certgen/alice/x"])
    def test_identity_match_is_exact(self, path: str) -> None:
        """Test near-miss identities are forbidden."""
        oracle = spy_oracle()
        client = make_client(oracle)

        response = client.get(path, auth=("alice", "wonderland"))

        assert response.status_code == 403
        oracle.sign_on_record.assert_not_called()

    def test_identity_checked_before_key(self) -> None:
        """Test a forbidden request is refused before its key is looked at."""
        oracle = spy_oracle()
        client = make_client(oracle)

        response = client.post(
            "/certgen/bob", auth=("alice", "wonderland"), files=key_file("garbage")
        )

        assert response.status_code == 403


class TestRequestValidation:
    """Test method and key material handling."""

    @pytest.mark.parametrize("method", ["PUT", "DELETE", "PATCH"])
    def test_other_methods(self, method: str) -> None:
        """Test methods other than GET and POST are not allowed."""
        oracle = spy_oracle()
        client = make_client(oracle)

        response = client.request(method, "/certgen/alice", auth=("alice", "wonderland"))

        assert response.status_code == 405
        oracle.sign.assert_not_called()

    def test_missing_key_file(self) -> None:
        """Test a POST without the key file is a bad request."""
        oracle = spy_oracle()
        client = make_client(oracle)

        response = client.post(
            "/certgen/alice",
            auth=("alice", "wonderland"),
            files={"otherfile": ("x.pub", ED25519_KEY.encode())},
        )

        assert response.status_code == 400
        assert "Missing public key file" in response.text
        oracle.sign.assert_not_called()

    def test_non_multipart_body(self) -> None:
        """Test a POST with a urlencoded key field is a bad request."""
        client = make_client(spy_oracle())

        response = client.post(
            "/certgen/alice",
            auth=("alice", "wonderland"),
            data={"pubkeyfile": ED25519_KEY},
        )

        assert response.status_code == 400

    @pytest.mark.parametrize(
        "key",
        [
            "ssh-rsa AAAAB3NzaC1yc2E= a\nssh-rsa AAAAB3NzaC1yc2E= b\n",
            "ssh-bogus AAAAB3NzaC1yc2E= \n",
            "ssh-ed25519 AAAA " + "c" * 600 + "\n",
        ],
    )
    def test_bad_key_material(self, key: str) -> None:
        """Test malformed keys never reach the oracle."""
        oracle = spy_oracle()
        client = make_client(oracle)

        response = client.post(
            "/certgen/alice", auth=("alice", "wonderland"), files=key_file(key)
        )

        assert response.status_code == 400
        oracle.sign.assert_not_called()

    def test_two_key_files(self) -> None:
        """Test more than one uploaded key file is a bad request."""
        oracle = spy_oracle()
        client = make_client(oracle)

        response = client.post(
            "/certgen/alice",
            auth=("alice", "wonderland"),
            files=[
                ("pubkeyfile", ("a.pub", ED25519_KEY.encode())),
                ("pubkeyfile", ("b.pub", ED25519_KEY.encode())),
            ],
        )

        assert response.status_code == 400
        oracle.sign.assert_not_called()

    def test_oversized_body_rejected_before_authentication(self) -> None:
        """Test a declared oversized body is refused without backend work."""
        verifier = UserTableVerifier(USERS)
        client = make_client(spy_oracle(), [verifier], max_request_bytes=1024)

        response = client.post(
            "/certgen/alice",
            auth=("alice", "wonderland"),
            files=key_file("ssh-ed25519 AAAA " + "c" * 4000),
        )

        assert response.status_code == 400
        assert verifier.calls == 0


class TestSigningFailures:
    """Test classification of oracle failures."""

    def test_no_key_on_record(self) -> None:
        """Test a GET without an on-record key is not found."""
        oracle = spy_oracle()
        oracle.sign_on_record.side_effect = KeyNotFoundError("no key for alice")
        client = make_client(oracle)

        response = client.get("/certgen/alice", auth=("alice", "wonderland"))

        assert response.status_code == 404
        assert "no key for alice" not in response.text

    def test_signing_error(self) -> None:
        """Test an oracle failure is an internal error without details."""
        oracle = spy_oracle()
        oracle.sign.side_effect = SigningError("ca key exploded")
        client = make_client(oracle)

        response = client.post(
            "/certgen/alice", auth=("alice", "wonderland"), files=key_file()
        )

        assert response.status_code == 500
        assert "exploded" not in response.text
        oracle.sign.assert_called_once()

    def test_unexpected_oracle_error(self) -> None:
        """Test an unexpected oracle exception becomes an internal error."""
        oracle = spy_oracle()
        oracle.sign_on_record.side_effect = RuntimeError("bug")
        client = make_client(oracle)

        response = client.get("/certgen/alice", auth=("alice", "wonderland"))

        assert response.status_code == 500
        assert response.text == "500 Internal Server Error \n"


class TestHandlerDirect:
    """Test the handler without the routing layer."""

    @pytest.mark.asyncio
    async def test_failure_body_format(self) -> None:
        """Test failure bodies carry code, reason phrase and public message."""
        from starlette.requests import Request

        handler = IssuanceHandler(
            Authenticator([UserTableVerifier(USERS)]),
            spy_oracle(),
            RequestValidator(),
        )
        scope = {
            "type": "http",
            "method": "GET",
            "path": "/certgen/alice",
            "raw_path": b"/certgen/alice",
            "query_string": b"",
            "headers": [],
        }

        response = await handler.handle(Request(scope))

        assert response.status_code == 401
        assert response.body == b"401 Unauthorized \n"
