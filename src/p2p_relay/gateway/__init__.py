"""Gateway protocols and the rate-limited HTTP client behind them."""

from p2p_relay.gateway.base import (
    AdvertisementSpec,
    GatewayBundle,
    GatewayError,
    GatewayUnavailableError,
    InboundDocument,
    InboundMessage,
    Mailbox,
    MarketplaceGateway,
    Order,
    PayoutGateway,
    RateLimitedError,
    ReceiptExtractor,
    SessionExpiredError,
)
from p2p_relay.gateway.http import PlatformHttpClient
from p2p_relay.gateway.rate_limiter import RateLimiter, RateLimiterStats

__all__ = [
    "AdvertisementSpec",
    "GatewayBundle",
    "GatewayError",
    "GatewayUnavailableError",
    "InboundDocument",
    "InboundMessage",
    "Mailbox",
    "MarketplaceGateway",
    "Order",
    "PayoutGateway",
    "PlatformHttpClient",
    "RateLimitedError",
    "RateLimiter",
    "RateLimiterStats",
    "ReceiptExtractor",
    "SessionExpiredError",
]
