# api/__init__.py
from api.server import (
    AppServices,
    ServerConfig,
    configure_logging,
    create_app,
)

__all__ = [
    "AppServices",
    "ServerConfig",
    "configure_logging",
    "create_app",
]
