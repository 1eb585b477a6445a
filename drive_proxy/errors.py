"""Error taxonomy shared by the token provider and the file proxy."""

from __future__ import annotations


class ProxyError(Exception):
    """Base class for errors that map onto an HTTP error response."""

    status_code = 500
    message = "Internal server error"

    def __init__(self, message: str | None = None) -> None:
        if message is not None:
            self.message = message
        super().__init__(self.message)

    @property
    def headers(self) -> dict[str, str]:
        return {}


class ConfigError(ProxyError):
    """Service-account configuration is missing or malformed."""

    def __init__(self, detail: str) -> None:
        super().__init__()
        self.detail = detail

    def __str__(self) -> str:
        return self.detail


class AuthError(ProxyError):
    """The token endpoint rejected the signed assertion."""

    message = "Failed to obtain access token"

    def __init__(self, upstream_status: int, body: str) -> None:
        super().__init__()
        self.upstream_status = upstream_status
        self.body = body

    def __str__(self) -> str:
        return f"token endpoint returned {self.upstream_status}: {self.body}"


class NotFoundError(ProxyError):
    status_code = 404
    message = "File not found"


class ForbiddenError(ProxyError):
    status_code = 403
    message = "Access denied"


class UpstreamError(ProxyError):
    """Non-success answer from the backend at the given stage."""

    _messages = {
        "token": "Failed to obtain access token",
        "metadata": "Failed to fetch file metadata",
        "content": "Failed to fetch file content",
    }

    def __init__(self, stage: str, upstream_status: int | None = None) -> None:
        super().__init__(self._messages.get(stage))
        self.stage = stage
        self.upstream_status = upstream_status

    def __str__(self) -> str:
        if self.upstream_status is None:
            return f"{self.stage} request failed"
        return f"{self.stage} request returned {self.upstream_status}"


class RangeNotSatisfiableError(ProxyError):
    status_code = 416
    message = "Requested range not satisfiable"

    def __init__(self, size: int) -> None:
        super().__init__()
        self.size = size

    @property
    def headers(self) -> dict[str, str]:
        return {"Content-Range": f"bytes */{self.size}"}


class StreamError(ProxyError):
    """The content stream failed after the response had started."""

    message = "Failed to stream file"
