from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import TYPE_CHECKING
from urllib.parse import parse_qs

import httpx
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from drive_proxy import DriveProxy, ProxySettings, ServiceAccount

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey

TOKEN_URI = "https://oauth2.googleapis.com/token"


@dataclass
class StoredFile:
    metadata: dict[str, object]
    content: bytes


class TrackedStream(httpx.AsyncByteStream):
    """Chunked response body that remembers whether it was closed."""

    def __init__(
        self, content: bytes, chunk_size: int | None, fail_after: int | None
    ) -> None:
        self.content = content
        self.chunk_size = chunk_size or len(content) or 1
        self.fail_after = fail_after
        self.closed = False

    async def __aiter__(self) -> AsyncIterator[bytes]:
        sent = 0
        for offset in range(0, len(self.content), self.chunk_size):
            if self.fail_after is not None and sent >= self.fail_after:
                message = "connection reset"
                raise httpx.ReadError(message)
            chunk = self.content[offset : offset + self.chunk_size]
            sent += len(chunk)
            yield chunk

    async def aclose(self) -> None:
        self.closed = True


@dataclass
class FakeDrive:
    """In-memory stand-in for the Drive v3 API and the OAuth token endpoint."""

    files: dict[str, StoredFile] = field(default_factory=dict)
    metadata_status: int | None = None
    content_status: int | None = None
    token_status: int = 200
    expires_in: int = 3599
    chunk_size: int | None = None
    fail_after: int | None = None
    requests: list[httpx.Request] = field(default_factory=list)
    issued_tokens: list[str] = field(default_factory=list)
    assertions: list[str] = field(default_factory=list)
    revoked: set[str] = field(default_factory=set)
    streams: list[TrackedStream] = field(default_factory=list)

    def add(self, file_id: str, content: bytes, **metadata: object) -> None:
        metadata.setdefault("size", str(len(content)))
        self.files[file_id] = StoredFile(metadata=metadata, content=content)

    @property
    def file_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path.startswith("/drive/v3/files/")]

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if str(request.url) == TOKEN_URI:
            return self._token(request)

        token = request.headers.get("authorization", "").removeprefix("Bearer ")
        if token not in self.issued_tokens or token in self.revoked:
            return httpx.Response(401, json={"error": {"code": 401}})

        file_id = request.url.path.rsplit("/", 1)[-1]
        if request.url.params.get("alt") == "media":
            return self._content(file_id)
        return self._metadata(file_id, request.url.params.get("fields", ""))

    def _token(self, request: httpx.Request) -> httpx.Response:
        form = parse_qs(request.content.decode())
        self.assertions.append(form["assertion"][0])
        if self.token_status != 200:
            return httpx.Response(
                self.token_status, json={"error": "invalid_grant"}
            )
        token = f"ya29.token-{len(self.issued_tokens) + 1}"
        self.issued_tokens.append(token)
        return httpx.Response(
            200,
            json={
                "access_token": token,
                "expires_in": self.expires_in,
                "token_type": "Bearer",
            },
        )

    def _metadata(self, file_id: str, fields: str) -> httpx.Response:
        if self.metadata_status is not None:
            return httpx.Response(self.metadata_status, json={"error": {}})
        stored = self.files.get(file_id)
        if stored is None:
            return httpx.Response(404, json={"error": {"code": 404}})
        wanted = fields.split(",")
        return httpx.Response(
            200, json={k: v for k, v in stored.metadata.items() if k in wanted}
        )

    def _content(self, file_id: str) -> httpx.Response:
        if self.content_status is not None:
            return httpx.Response(self.content_status, json={"error": {}})
        stored = self.files.get(file_id)
        if stored is None:
            return httpx.Response(404, json={"error": {"code": 404}})
        stream = TrackedStream(stored.content, self.chunk_size, self.fail_after)
        self.streams.append(stream)
        return httpx.Response(200, stream=stream)


@pytest.fixture(scope="session")
def rsa_key() -> RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def private_key_pem(rsa_key: RSAPrivateKey) -> str:
    return rsa_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()


@pytest.fixture(scope="session")
def service_account_info(private_key_pem: str) -> dict[str, str]:
    return {
        "type": "service_account",
        "project_id": "drive-proxy-test",
        "private_key_id": "key-1",
        "private_key": private_key_pem,
        "client_email": "proxy@drive-proxy-test.iam.gserviceaccount.com",
        "client_id": "1234567890",
        "token_uri": TOKEN_URI,
    }


@pytest.fixture
def service_account(service_account_info: dict[str, str]) -> ServiceAccount:
    return ServiceAccount.model_validate(service_account_info)


@pytest.fixture
def service_account_json(service_account_info: dict[str, str]) -> str:
    return json.dumps(service_account_info)


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    """Remove proxy-related variables inherited from the surrounding shell."""
    for name in (
        "GOOGLE_APPLICATION_CREDENTIALS",
        "DRIVE_PROXY_SERVICE_ACCOUNT_FILE",
        "DRIVE_PROXY_SERVICE_ACCOUNT_JSON",
        "DRIVE_PROXY_API_BASE_URL",
        "DRIVE_PROXY_SCOPE",
        "DRIVE_PROXY_TIMEOUT",
        "DRIVE_PROXY_READ_TIMEOUT",
        "DRIVE_PROXY_TOKEN_CACHE",
    ):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


@pytest.fixture
def fake_drive() -> FakeDrive:
    drive = FakeDrive()
    drive.add(
        "1ABC",
        bytes(i % 251 for i in range(1000)),
        name="pic.jpg",
        mimeType="image/jpeg",
        modifiedTime="2024-01-01T00:00:00Z",
    )
    return drive


@pytest.fixture
def drive_proxy(
    clean_env: pytest.MonkeyPatch,
    fake_drive: FakeDrive,
    service_account: ServiceAccount,
) -> DriveProxy:
    return DriveProxy(
        ProxySettings(), service_account, transport=fake_drive.transport()
    )
