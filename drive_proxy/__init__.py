"""Google Drive proxy serving files with embed-friendly headers."""

from .app import create_app
from .auth import Credential, ServiceAccount, TokenProvider
from .proxy import DriveFile, DriveProxy, ProxySettings

__all__ = [
    "Credential",
    "DriveFile",
    "DriveProxy",
    "ProxySettings",
    "ServiceAccount",
    "TokenProvider",
    "create_app",
]
