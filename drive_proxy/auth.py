from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import httpx
import jwt
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey
from cryptography.hazmat.primitives.serialization import load_pem_private_key
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from .errors import AuthError, ConfigError, UpstreamError

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

    from .proxy import ProxySettings

LOG = logging.getLogger("drive_proxy.auth")

GRANT_TYPE = "urn:ietf:params:oauth:grant-type:jwt-bearer"
DEFAULT_TOKEN_URI = "https://oauth2.googleapis.com/token"
TOKEN_LIFETIME = 3600
REFRESH_MARGIN = 60


class ServiceAccount(BaseModel):
    """The subset of a Google service-account key file used for token exchange."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    client_email: str
    private_key: str
    token_uri: str = DEFAULT_TOKEN_URI
    private_key_id: str | None = None

    @field_validator("client_email", "private_key", "token_uri")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            msg = "must not be empty"
            raise ValueError(msg)
        return value

    @field_validator("private_key")
    @classmethod
    def _loadable_rsa_key(cls, value: str) -> str:
        try:
            key = load_pem_private_key(value.encode(), password=None)
        except (ValueError, TypeError) as exc:
            msg = f"not a PEM private key: {exc}"
            raise ValueError(msg) from exc
        if not isinstance(key, RSAPrivateKey):
            msg = "RS256 requires an RSA private key"
            raise ValueError(msg)
        return value

    def __repr__(self) -> str:
        return f"ServiceAccount(client_email={self.client_email!r})"

    __str__ = __repr__


def parse_service_account(raw: str | bytes) -> ServiceAccount:
    """Parse a service-account JSON document.

    Raises:
        ConfigError: The document is not JSON or lacks a usable key.
    """
    try:
        data = json.loads(raw)
    except ValueError as exc:
        msg = f"service account is not valid JSON: {exc}"
        raise ConfigError(msg) from exc
    if not isinstance(data, dict):
        msg = "service account must be a JSON object"
        raise ConfigError(msg)
    try:
        return ServiceAccount.model_validate(data)
    except ValidationError as exc:
        fields = ", ".join(".".join(map(str, e["loc"])) for e in exc.errors())
        msg = f"invalid service account fields: {fields}"
        raise ConfigError(msg) from exc


def load_service_account(settings: ProxySettings) -> ServiceAccount:
    """Load the service account from inline JSON or from the key file.

    Raises:
        ConfigError: Nothing is configured, the file is unreadable or the
            document is malformed.
    """
    if settings.service_account_json:
        return parse_service_account(settings.service_account_json)

    path: Path | None = settings.service_account_file
    if path is None:
        msg = "no service account configured"
        raise ConfigError(msg)
    try:
        raw = path.read_bytes()
    except OSError as exc:
        msg = f"cannot read service account file {path}: {exc.strerror}"
        raise ConfigError(msg) from exc
    return parse_service_account(raw)


@dataclass(frozen=True)
class Credential:
    issuer: str
    assertion: str
    access_token: str
    issued_at: int
    expires_at: int
    token_expires_at: int

    def valid_at(self, now: float) -> bool:
        return now < self.token_expires_at


class TokenProvider:
    """Obtains Drive bearer tokens through the signed JWT assertion grant."""

    def __init__(
        self,
        service_account: ServiceAccount,
        http_client: httpx.AsyncClient,
        *,
        scope: str,
        cache: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._account = service_account
        self._http_client = http_client
        self._scope = scope
        self._cache = cache
        self._clock = clock
        self._credential: Credential | None = None

    def claims(self, now: int) -> dict[str, Any]:
        return {
            "iss": self._account.client_email,
            "scope": self._scope,
            "aud": self._account.token_uri,
            "iat": now,
            "exp": now + TOKEN_LIFETIME,
        }

    def sign(self, claims: dict[str, Any]) -> str:
        headers = None
        if self._account.private_key_id:
            headers = {"kid": self._account.private_key_id}
        return jwt.encode(
            claims, self._account.private_key, algorithm="RS256", headers=headers
        )

    async def obtain_access_token(self) -> Credential:
        """Return a bearer credential, exchanging a fresh assertion if needed.

        Raises:
            AuthError: The token endpoint answered with a non-success status
                or without an ``access_token``.
            UpstreamError: The token endpoint could not be reached.
        """
        credential = self._credential
        if (
            self._cache
            and credential is not None
            and credential.valid_at(self._clock())
        ):
            return credential

        now = int(self._clock())
        claims = self.claims(now)
        assertion = self.sign(claims)

        try:
            response = await self._http_client.post(
                self._account.token_uri,
                data={"grant_type": GRANT_TYPE, "assertion": assertion},
            )
        except httpx.HTTPError as exc:
            LOG.warning(
                "token endpoint %s unreachable: %s", self._account.token_uri, exc
            )
            raise UpstreamError("token") from exc

        if not response.is_success:
            LOG.warning(
                "token exchange for %s rejected (status=%s): %s",
                self._account.client_email,
                response.status_code,
                response.text,
            )
            raise AuthError(response.status_code, response.text)

        try:
            payload = response.json()
            access_token = payload["access_token"]
        except (ValueError, KeyError, TypeError) as exc:
            LOG.warning("token endpoint returned no access_token: %s", response.text)
            raise AuthError(response.status_code, response.text) from exc

        token_expires_at = claims["exp"]
        expires_in = payload.get("expires_in")
        if isinstance(expires_in, int) and not isinstance(expires_in, bool):
            token_expires_at = min(token_expires_at, int(self._clock()) + expires_in)

        credential = Credential(
            issuer=claims["iss"],
            assertion=assertion,
            access_token=access_token,
            issued_at=claims["iat"],
            expires_at=claims["exp"],
            token_expires_at=token_expires_at - REFRESH_MARGIN,
        )
        LOG.info(
            "obtained access token for %s (expires_at=%d)",
            credential.issuer,
            credential.token_expires_at,
        )
        if self._cache:
            self._credential = credential
        return credential

    def invalidate(self, access_token: str) -> None:
        """Forget the cached credential if it carries ``access_token``."""
        credential = self._credential
        if credential is not None and credential.access_token == access_token:
            LOG.info("dropping rejected access token for %s", credential.issuer)
            self._credential = None
