"""FastAPI middleware integration."""

from flowgate.middleware.fastapi import (
    GatewayMiddleware,
    create_gateway,
    get_identity,
    require_identity,
    require_permission,
)

__all__ = [
    "GatewayMiddleware",
    "create_gateway",
    "get_identity",
    "require_identity",
    "require_permission",
]
