"""Channel adapters that deliver flow messages to contacts."""
from channels.base import (
    ChannelAdapter,
    ChannelRegistry,
    ChannelError,
    RateLimitedError,
    CircuitOpenError,
    TokenBucketRateLimiter,
    CircuitBreaker,
    ChannelMetrics,
    Transport,
)
from channels.whatsapp_adapter import WhatsAppAdapter
from channels.console_adapter import ConsoleAdapter

__all__ = [
    "ChannelAdapter", "ChannelRegistry", "ChannelError",
    "RateLimitedError", "CircuitOpenError",
    "TokenBucketRateLimiter", "CircuitBreaker", "ChannelMetrics", "Transport",
    "WhatsAppAdapter", "ConsoleAdapter",
]
