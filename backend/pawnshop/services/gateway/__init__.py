from pawnshop.services.gateway.adapter import (
    GatewayConfig,
    GatewayConfigError,
    InitiateResult,
    LineItem,
    PaymentGateway,
    PollResult,
    WebhookEvent,
    build_gateway,
    map_status,
    normalize_phone,
)

__all__ = [
    "GatewayConfig",
    "GatewayConfigError",
    "InitiateResult",
    "LineItem",
    "PaymentGateway",
    "PollResult",
    "WebhookEvent",
    "build_gateway",
    "map_status",
    "normalize_phone",
]
