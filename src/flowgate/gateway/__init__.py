"""Request gateway: transport hardening, sanitization, CSRF and the stage pipeline."""

from flowgate.gateway import sanitize, transport
from flowgate.gateway.csrf import CsrfTokenStore
from flowgate.gateway.pipeline import (
    Continue,
    Gateway,
    GatewayRequest,
    GatewayStage,
    Reject,
    RouteRule,
)

__all__ = [
    "Gateway",
    "GatewayRequest",
    "GatewayStage",
    "Continue",
    "Reject",
    "RouteRule",
    "CsrfTokenStore",
    "sanitize",
    "transport",
]
