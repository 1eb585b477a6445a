from __future__ import annotations

import logging
from datetime import UTC, datetime
from email.utils import format_datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

import httpx
from litestar.background_tasks import BackgroundTask
from litestar.response import Stream
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from .auth import ServiceAccount, TokenProvider, load_service_account
from .errors import ForbiddenError, NotFoundError, StreamError, UpstreamError
from .media import extension_for, resolve_content_type, strip_extension
from .ranges import ByteRangeReader, parse_range

if TYPE_CHECKING:
    from collections.abc import AsyncIterable, AsyncIterator
else:  # pragma: no cover
    AsyncIterable = AsyncIterator = Any

LOG = logging.getLogger("drive_proxy.proxy")

METADATA_FIELDS = "name,mimeType,size,modifiedTime"
CACHE_CONTROL = "public, max-age=31536000, immutable"
CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET",
    "Access-Control-Allow-Headers": "Range",
}


class ProxySettings(BaseSettings):
    """Configuration for the Drive proxy."""

    model_config = SettingsConfigDict(
        env_prefix="", case_sensitive=False, extra="ignore", frozen=True
    )

    service_account_file: Path | None = Field(
        default=Path("service-account-key.json"),
        validation_alias=AliasChoices(
            "DRIVE_PROXY_SERVICE_ACCOUNT_FILE",
            "GOOGLE_APPLICATION_CREDENTIALS",
        ),
    )
    service_account_json: str | None = Field(
        default=None,
        validation_alias="DRIVE_PROXY_SERVICE_ACCOUNT_JSON",
    )
    api_base_url: str = Field(
        default="https://www.googleapis.com/drive/v3",
        validation_alias="DRIVE_PROXY_API_BASE_URL",
    )
    scope: str = Field(
        default="https://www.googleapis.com/auth/drive.readonly",
        validation_alias="DRIVE_PROXY_SCOPE",
    )
    timeout: float = Field(
        default=30.0,
        validation_alias="DRIVE_PROXY_TIMEOUT",
    )
    read_timeout: float = Field(
        default=300.0,
        validation_alias="DRIVE_PROXY_READ_TIMEOUT",
    )
    token_cache: bool = Field(
        default=True,
        validation_alias="DRIVE_PROXY_TOKEN_CACHE",
    )


def load_settings_from_env() -> ProxySettings:
    """Load proxy settings from environment variables.

    Returns:
        ProxySettings instance populated from environment variables.
    """
    return ProxySettings()


class DriveFile(BaseModel):
    """File metadata as returned by ``files.get``."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    name: str
    mime_type: str | None = Field(default=None, alias="mimeType")
    size: int | None = None
    modified_time: str | None = Field(default=None, alias="modifiedTime")

    @property
    def modified_at(self) -> datetime | None:
        if not self.modified_time:
            return None
        try:
            return datetime.fromisoformat(self.modified_time)
        except ValueError:
            return None


class DriveProxy:
    def __init__(
        self,
        settings: ProxySettings,
        service_account: ServiceAccount | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._service_account = service_account
        self._transport = transport
        self._http_client: httpx.AsyncClient | None = None
        self._token_provider: TokenProvider | None = None

    @property
    def settings(self) -> ProxySettings:
        return self._settings

    async def startup(self) -> None:
        if self._service_account is None:
            self._service_account = load_service_account(self._settings)
        self._http_client = httpx.AsyncClient(
            base_url=self._settings.api_base_url,
            timeout=httpx.Timeout(
                self._settings.timeout, read=self._settings.read_timeout
            ),
            transport=self._transport,
            trust_env=False,
        )
        self._token_provider = TokenProvider(
            self._service_account,
            self._http_client,
            scope=self._settings.scope,
            cache=self._settings.token_cache,
        )
        LOG.info(
            "Drive proxy ready (api=%s, account=%s, token cache=%s)",
            self._settings.api_base_url,
            self._service_account.client_email,
            "enabled" if self._settings.token_cache else "disabled",
        )

    async def shutdown(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
        self._token_provider = None

    async def handle_file_request(
        self, identifier: str, range_header: str | None = None
    ) -> Stream:
        """Stream the Drive file named by ``identifier`` back to the caller.

        Any ``.ext`` suffix on the identifier is ignored. When ``range_header``
        holds a satisfiable byte range the response is a 206 carrying only
        those bytes; the full file is still fetched from Drive and sliced here.
        The Drive response is closed when the body ends or, failing that, by
        the response's background task.

        Raises:
            NotFoundError: Drive has no such file.
            ForbiddenError: The service account may not read the file.
            UpstreamError: Drive failed before any bytes were sent.
            RangeNotSatisfiableError: The range lies outside the file.
        """
        file_id = strip_extension(identifier)
        LOG.debug("file request id=%s range=%s", file_id, range_header)
        token = await self._access_token()

        metadata = await self.fetch_metadata(file_id, token=token)
        headers = self._file_headers(file_id, metadata)

        byte_range = None
        if metadata.size is not None:
            byte_range = parse_range(range_header, metadata.size)
            if byte_range is not None:
                headers["Content-Length"] = str(byte_range.length)
                headers["Content-Range"] = byte_range.content_range

        upstream = await self._open_content(file_id, token)
        body: AsyncIterable[bytes] = upstream.aiter_bytes()
        if byte_range is not None:
            body = ByteRangeReader(body, byte_range)

        async def iterator() -> AsyncIterator[bytes]:
            try:
                async for chunk in body:
                    yield chunk
            except httpx.HTTPError as exc:
                LOG.exception("stream for %s aborted", file_id)
                raise StreamError from exc
            finally:
                await upstream.aclose()

        status_code = 206 if byte_range is not None else 200
        LOG.debug("serving id=%s status=%s", file_id, status_code)
        return Stream(
            content=iterator(),
            status_code=status_code,
            headers=headers,
            media_type=resolve_content_type(metadata.mime_type, metadata.name),
            background=BackgroundTask(upstream.aclose),
        )

    async def redirect_path(self, identifier: str) -> str:
        """Return the canonical ``/img/<id>.<ext>`` path for a file."""
        file_id = strip_extension(identifier)
        token = await self._access_token()
        metadata = await self.fetch_metadata(
            file_id, token=token, fields="name,mimeType"
        )
        return f"/img/{file_id}.{extension_for(metadata.mime_type)}"

    async def fetch_metadata(
        self, file_id: str, *, token: str, fields: str = METADATA_FIELDS
    ) -> DriveFile:
        client = self._client()
        try:
            response = await client.get(
                self._file_url(file_id),
                params={"fields": fields},
                headers=self._auth_headers(token),
            )
        except httpx.HTTPError as exc:
            LOG.warning("metadata request for %s failed: %s", file_id, exc)
            raise UpstreamError("metadata") from exc

        if response.status_code == 404:
            raise NotFoundError
        if response.status_code == 403:
            raise ForbiddenError
        if response.status_code == 401:
            self._reject_token(token)
        if not response.is_success:
            LOG.warning(
                "metadata request for %s returned %s: %s",
                file_id,
                response.status_code,
                response.text,
            )
            raise UpstreamError("metadata", response.status_code)

        try:
            return DriveFile.model_validate_json(response.content)
        except ValidationError as exc:
            LOG.warning("malformed metadata for %s: %s", file_id, exc)
            raise UpstreamError("metadata", response.status_code) from exc

    async def _open_content(self, file_id: str, token: str) -> httpx.Response:
        client = self._client()
        request = client.build_request(
            "GET",
            self._file_url(file_id),
            params={"alt": "media"},
            headers=self._auth_headers(token),
        )
        try:
            response = await client.send(request, stream=True)
        except httpx.HTTPError as exc:
            LOG.warning("content request for %s failed: %s", file_id, exc)
            raise UpstreamError("content") from exc

        if not response.is_success:
            await response.aclose()
            if response.status_code == 401:
                self._reject_token(token)
            LOG.warning(
                "content request for %s returned %s", file_id, response.status_code
            )
            raise UpstreamError("content", response.status_code)
        return response

    async def _access_token(self) -> str:
        if self._token_provider is None:
            message = "proxy not initialised"
            raise RuntimeError(message)
        credential = await self._token_provider.obtain_access_token()
        return credential.access_token

    def _reject_token(self, token: str) -> None:
        LOG.warning("Drive rejected the access token, it will be renewed")
        if self._token_provider is not None:
            self._token_provider.invalidate(token)

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            message = "proxy not initialised"
            raise RuntimeError(message)
        return self._http_client

    def _file_headers(self, file_id: str, metadata: DriveFile) -> dict[str, str]:
        headers = {
            "Cache-Control": CACHE_CONTROL,
            "Accept-Ranges": "bytes",
            **CORS_HEADERS,
        }
        if metadata.size is not None:
            headers["Content-Length"] = str(metadata.size)
        if metadata.modified_time:
            headers["ETag"] = f'"{file_id}-{metadata.modified_time}"'
        if metadata.modified_at is not None:
            headers["Last-Modified"] = self._format_http_date(metadata.modified_at)
        return headers

    @staticmethod
    def _format_http_date(value: datetime) -> str:
        aware = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
        aware = aware.astimezone(UTC)
        return format_datetime(aware, usegmt=True)

    @staticmethod
    def _file_url(file_id: str) -> str:
        return f"files/{quote(file_id, safe='')}"

    @staticmethod
    def _auth_headers(token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {token}"}

    @classmethod
    def from_env(cls) -> DriveProxy:
        """Create a DriveProxy from environment variables.

        The service account itself is read on :meth:`startup`.
        """
        return cls(settings=load_settings_from_env())
