"""
Google service account credentials and API error mapping.

Access tokens are minted with the OAuth 2.0 JWT bearer grant: the assertion is
signed locally with the service account key (via google-auth's signer) and
exchanged over httpx, so all network traffic goes through the same client
stack as the Drive and Storage calls. Tokens are cached per (subject, scopes)
until shortly before they expire.
"""

import json
import logging
import time
from pathlib import Path
from typing import Optional

import anyio
import httpx
from google.auth import crypt, jwt

from audioflow.configs import Settings, settings
from audioflow.utils.http_utils import create_httpx_client, request_with_retry

logger = logging.getLogger(__name__)

_DEFAULT_TOKEN_URI = "https://oauth2.googleapis.com/token"
_JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"
_TOKEN_LIFETIME = 3600
_TOKEN_REFRESH_MARGIN = 60


class GoogleAPIError(Exception):
    """Error response from a Google API."""

    def __init__(self, status_code: int, message: str, resource: str = ""):
        self.status_code = status_code
        self.message = message
        self.resource = resource
        super().__init__(message)


class NotFoundError(GoogleAPIError):
    pass


class AuthorizationError(GoogleAPIError):
    pass


class QuotaExceeded(GoogleAPIError):
    pass


class CredentialsError(Exception):
    """The service account key is missing or unusable."""


def _error_reason(response: httpx.Response) -> tuple[str, str]:
    try:
        error = response.json().get("error", {})
    except (ValueError, AttributeError):
        return "", response.text[:500]
    if not isinstance(error, dict):
        return str(error), str(error)
    reasons = [item.get("reason", "") for item in error.get("errors", []) if isinstance(item, dict)]
    return ",".join(reasons), error.get("message", "")


def raise_for_google_status(response: httpx.Response, resource: str) -> None:
    """Map a non-2xx Google API response to the matching ``GoogleAPIError`` subclass."""
    if response.is_success:
        return
    status = response.status_code
    reason, detail = _error_reason(response)
    message = f"HTTP {status} for {resource}: {detail or reason or response.reason_phrase}"
    logger.debug("Google API error for %s (status=%s, reason=%s): %s", resource, status, reason, detail)

    if status == 404:
        raise NotFoundError(status, message, resource)
    if status == 429 or (status == 403 and ("quota" in reason.lower() or "ratelimit" in reason.lower())):
        raise QuotaExceeded(status, message, resource)
    if status in (401, 403):
        raise AuthorizationError(status, message, resource)
    raise GoogleAPIError(status, message, resource)


def parse_service_account_key(raw: str) -> dict:
    """
    Parse a service account key passed through an environment variable.

    Keys pasted into env vars often have their private key newlines either
    escaped or expanded, so a few normalisations are attempted in turn.
    """
    raw = raw.strip()
    candidates = []
    if "\\n" in raw:
        candidates.append(raw.replace("\\n", "\n"))
    candidates.append(raw)
    if "\n" in raw:
        candidates.append(raw.replace("\n", "\\n"))

    parse_error = None
    for candidate in candidates:
        try:
            return json.loads(candidate)
        except json.JSONDecodeError as e:
            parse_error = e

    logger.error("Invalid GOOGLE_SERVICE_ACCOUNT_KEY JSON: %s", parse_error)
    raise CredentialsError(f"Invalid GOOGLE_SERVICE_ACCOUNT_KEY JSON: {parse_error}")


def load_service_account_key(config: Settings = settings) -> dict:
    if config.google_service_account_key:
        logger.debug("Using GOOGLE_SERVICE_ACCOUNT_KEY env var.")
        return parse_service_account_key(config.google_service_account_key)

    if config.google_service_account_key_file:
        path = Path(config.google_service_account_key_file).expanduser().resolve()
        logger.debug("Reading service account key from file: %s", path)
        try:
            return json.loads(path.read_text("utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.error("Failed to read or parse GOOGLE_SERVICE_ACCOUNT_KEY_FILE: %s", e)
            raise CredentialsError(f"Failed to read or parse GOOGLE_SERVICE_ACCOUNT_KEY_FILE: {e}") from e

    message = "GOOGLE_SERVICE_ACCOUNT_KEY or GOOGLE_SERVICE_ACCOUNT_KEY_FILE must be provided"
    logger.error(message)
    raise CredentialsError(message)


class ServiceAccountCredentials:
    """Mints and caches OAuth access tokens for a service account, optionally impersonating a user."""

    def __init__(self, key_info: dict, client: Optional[httpx.AsyncClient] = None):
        try:
            self.client_email = key_info["client_email"]
            self._signer = crypt.RSASigner.from_service_account_info(key_info)
        except (KeyError, ValueError) as e:
            raise CredentialsError(f"Service account key is missing required fields: {e}") from e
        self.project_id = key_info.get("project_id")
        self.token_uri = key_info.get("token_uri", _DEFAULT_TOKEN_URI)
        self._client = client
        self._tokens: dict[tuple[str | None, tuple[str, ...]], tuple[str, float]] = {}
        self._lock = anyio.Lock()

    @classmethod
    def from_settings(cls, config: Settings = settings, client: Optional[httpx.AsyncClient] = None):
        return cls(load_service_account_key(config), client=client)

    def _build_assertion(self, scopes: tuple[str, ...], subject: str | None) -> str:
        now = int(time.time())
        payload = {
            "iss": self.client_email,
            "scope": " ".join(scopes),
            "aud": self.token_uri,
            "iat": now,
            "exp": now + _TOKEN_LIFETIME,
        }
        if subject:
            payload["sub"] = subject
        assertion = jwt.encode(self._signer, payload)
        return assertion.decode("ascii") if isinstance(assertion, bytes) else assertion

    async def get_access_token(self, scopes: list[str], subject: str | None = None) -> str:
        key = (subject, tuple(sorted(scopes)))
        async with self._lock:
            cached = self._tokens.get(key)
            if cached and cached[1] - _TOKEN_REFRESH_MARGIN > time.time():
                return cached[0]

            logger.debug("Requesting access token for %s (subject=%s)", self.client_email, subject)
            data = {"grant_type": _JWT_BEARER_GRANT, "assertion": self._build_assertion(key[1], subject)}
            if self._client is not None:
                response = await request_with_retry(self._client, "POST", self.token_uri, data=data)
            else:
                async with create_httpx_client() as client:
                    response = await request_with_retry(client, "POST", self.token_uri, data=data)

            if response.status_code in (400, 401, 403):
                raise AuthorizationError(
                    response.status_code, f"Token request rejected for {subject or self.client_email}: {response.text[:500]}"
                )
            raise_for_google_status(response, "oauth2 token")

            body = response.json()
            token = body["access_token"]
            self._tokens[key] = (token, time.time() + int(body.get("expires_in", _TOKEN_LIFETIME)))
            logger.debug("Access token granted for %s", subject or self.client_email)
            return token
