from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from litestar import Litestar, MediaType, Request, Response, get
from litestar.exceptions import MethodNotAllowedException, NotFoundException
from litestar.plugins.prometheus import PrometheusConfig, PrometheusController
from litestar.response import Redirect

from .errors import ProxyError
from .proxy import DriveProxy

LOG = logging.getLogger("drive_proxy.app")

prometheus_config = PrometheusConfig(app_name="drive_proxy", prefix="drive_proxy")


def _proxy_error_handler(request: Request, exc: ProxyError) -> Response:
    if exc.status_code >= 500:
        LOG.warning("%s %s failed: %s", request.method, request.url.path, exc)
    return Response(
        content={"error": exc.message},
        status_code=exc.status_code,
        headers=exc.headers,
        media_type=MediaType.JSON,
    )


def _not_found_handler(request: Request, exc: Exception) -> Response:
    return Response(content="Not Found", status_code=404, media_type=MediaType.TEXT)


def create_app(proxy: DriveProxy | None = None) -> Litestar:
    """Create the Drive proxy ASGI application."""
    if proxy is None:
        proxy = DriveProxy.from_env()

    @get("/", include_in_schema=False)
    async def index(request: Request) -> dict[str, Any]:
        base = str(request.base_url).rstrip("/")
        return {
            "service": "Google Drive Proxy",
            "usage": "GET /img/{FILE_ID}.{EXT}",
            "example": f"{base}/img/1ABC123DEF456GHI789JKL.jpg",
            "endpoints": {
                "/img/:fileId": "Proxy Google Drive file (backward compatible)",
                "/img/:fileId.ext": "Proxy Google Drive file with proper extension",
                "/img/:fileId/redirect": "Redirect to proper extension URL",
                "/health": "Health check",
            },
            "notionCompatible": True,
        }

    @get("/health", include_in_schema=False)
    async def health() -> dict[str, str]:
        return {"status": "ok", "timestamp": datetime.now(UTC).isoformat()}

    @get("/img/{file_id:str}", include_in_schema=False)
    async def image(request: Request) -> Response:
        return await proxy.handle_file_request(
            request.path_params["file_id"], request.headers.get("range")
        )

    @get("/img/{file_id:str}/redirect", include_in_schema=False)
    async def image_redirect(request: Request) -> Redirect:
        path = await proxy.redirect_path(request.path_params["file_id"])
        base = str(request.base_url).rstrip("/")
        return Redirect(f"{base}{path}", status_code=301)

    async def startup(app: Litestar) -> None:
        await proxy.startup()

    async def shutdown(app: Litestar) -> None:
        await proxy.shutdown()

    return Litestar(
        route_handlers=[index, health, image, image_redirect, PrometheusController],
        on_startup=[startup],
        on_shutdown=[shutdown],
        exception_handlers={
            ProxyError: _proxy_error_handler,
            NotFoundException: _not_found_handler,
            MethodNotAllowedException: _not_found_handler,
        },
        middleware=[prometheus_config.middleware],
    )
