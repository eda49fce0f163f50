import json
from pathlib import Path
from urllib.parse import parse_qs

import httpx
import pytest
from google.auth import jwt

from audioflow.configs import Settings
from audioflow.const import DRIVE_SCOPES
from audioflow.utils.google_clients import (
    AuthorizationError,
    CredentialsError,
    GoogleAPIError,
    NotFoundError,
    QuotaExceeded,
    ServiceAccountCredentials,
    load_service_account_key,
    parse_service_account_key,
    raise_for_google_status,
)

PRIVATE_KEY = (Path(__file__).parent / "data" / "privatekey.pem").read_text()
TOKEN_URI = "https://oauth2.example.com/token"


def _key_info() -> dict:
    return {
        "type": "service_account",
        "project_id": "audio-project",
        "private_key_id": "key-1",
        "private_key": PRIVATE_KEY,
        "client_email": "converter@audio-project.iam.gserviceaccount.com",
        "token_uri": TOKEN_URI,
    }


def _error_response(status: int, reason: str = "", message: str = "denied") -> httpx.Response:
    return httpx.Response(status, json={"error": {"message": message, "errors": [{"reason": reason}]}})


def test_parse_key_with_escaped_newlines():
    raw = '{"client_email": "a@b.c", "private_key": "-----BEGIN-----\\nabc\\n-----END-----\\n"}'

    info = parse_service_account_key(raw)

    assert info["private_key"] == "-----BEGIN-----\nabc\n-----END-----\n"


def test_parse_key_with_literal_newlines_in_strings():
    raw = '{"client_email": "a@b.c", "private_key": "-----BEGIN-----\nabc\n-----END-----"}'

    info = parse_service_account_key(raw)

    assert info["private_key"] == "-----BEGIN-----\nabc\n-----END-----"


def test_parse_key_rejects_garbage():
    with pytest.raises(CredentialsError):
        parse_service_account_key("not json at all")


def test_load_key_prefers_env_value(tmp_path):
    key_file = tmp_path / "key.json"
    key_file.write_text(json.dumps({"client_email": "file@b.c"}))
    config = Settings(
        google_service_account_key='{"client_email": "env@b.c"}',
        google_service_account_key_file=str(key_file),
    )

    assert load_service_account_key(config)["client_email"] == "env@b.c"


def test_load_key_from_file(tmp_path):
    key_file = tmp_path / "key.json"
    key_file.write_text(json.dumps({"client_email": "file@b.c"}))
    config = Settings(google_service_account_key=None, google_service_account_key_file=str(key_file))

    assert load_service_account_key(config)["client_email"] == "file@b.c"


def test_load_key_requires_a_source(tmp_path):
    with pytest.raises(CredentialsError):
        load_service_account_key(Settings(google_service_account_key=None, google_service_account_key_file=None))
    with pytest.raises(CredentialsError):
        load_service_account_key(
            Settings(google_service_account_key=None, google_service_account_key_file=str(tmp_path / "missing.json"))
        )


@pytest.mark.parametrize(
    "response, expected",
    [
        (_error_response(404, "notFound", "File not found: abc"), NotFoundError),
        (_error_response(429, "rateLimitExceeded"), QuotaExceeded),
        (_error_response(403, "storageQuotaExceeded"), QuotaExceeded),
        (_error_response(403, "userRateLimitExceeded"), QuotaExceeded),
        (_error_response(403, "insufficientPermissions"), AuthorizationError),
        (_error_response(401, "authError"), AuthorizationError),
    ],
)
def test_raise_for_google_status_maps_errors(response, expected):
    with pytest.raises(expected) as exc_info:
        raise_for_google_status(response, "drive file abc")

    assert exc_info.value.status_code == response.status_code
    assert exc_info.value.resource == "drive file abc"


def test_raise_for_google_status_generic_error():
    with pytest.raises(GoogleAPIError) as exc_info:
        raise_for_google_status(httpx.Response(409, text="conflict"), "gs://media/clip.mp3")

    assert type(exc_info.value) is GoogleAPIError
    assert "conflict" in str(exc_info.value)


def test_raise_for_google_status_passes_success():
    raise_for_google_status(httpx.Response(200, json={}), "anything")


def test_credentials_require_client_email():
    info = _key_info()
    del info["client_email"]

    with pytest.raises(CredentialsError):
        ServiceAccountCredentials(info)


@pytest.mark.asyncio
async def test_access_tokens_are_minted_and_cached_per_subject():
    assertions = []

    def token_endpoint(request: httpx.Request) -> httpx.Response:
        form = parse_qs(request.content.decode())
        assert form["grant_type"] == ["urn:ietf:params:oauth:grant-type:jwt-bearer"]
        assertions.append(jwt.decode(form["assertion"][0], verify=False))
        return httpx.Response(200, json={"access_token": f"token-{len(assertions)}", "expires_in": 3600})

    client = httpx.AsyncClient(transport=httpx.MockTransport(token_endpoint))
    credentials = ServiceAccountCredentials(_key_info(), client=client)

    first = await credentials.get_access_token(["scope-b", "scope-a"], subject="user@example.com")
    cached = await credentials.get_access_token(["scope-a", "scope-b"], subject="user@example.com")
    other = await credentials.get_access_token(["scope-a"])

    assert first == cached == "token-1"
    assert other == "token-2"
    assert assertions[0]["sub"] == "user@example.com"
    assert assertions[0]["iss"] == "converter@audio-project.iam.gserviceaccount.com"
    assert assertions[0]["aud"] == TOKEN_URI
    assert assertions[0]["scope"] == "scope-a scope-b"
    assert "sub" not in assertions[1]


@pytest.mark.asyncio
async def test_rejected_token_request_is_an_authorization_error():
    def token_endpoint(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": "unauthorized_client"})

    client = httpx.AsyncClient(transport=httpx.MockTransport(token_endpoint))
    credentials = ServiceAccountCredentials(_key_info(), client=client)

    with pytest.raises(AuthorizationError):
        await credentials.get_access_token(["scope-a"], subject="user@example.com")


@pytest.mark.asyncio
async def test_drive_impersonation_asks_for_read_only_access():
    assertions = []

    def token_endpoint(request: httpx.Request) -> httpx.Response:
        assertions.append(jwt.decode(parse_qs(request.content.decode())["assertion"][0], verify=False))
        return httpx.Response(200, json={"access_token": "drive-token", "expires_in": 3600})

    client = httpx.AsyncClient(transport=httpx.MockTransport(token_endpoint))
    credentials = ServiceAccountCredentials(_key_info(), client=client)

    await credentials.get_access_token(DRIVE_SCOPES, subject="user@example.com")

    assert assertions[0]["scope"] == "https://www.googleapis.com/auth/drive.readonly"
    assert assertions[0]["sub"] == "user@example.com"
