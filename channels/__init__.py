"""Channel senders for the supported messaging channels."""
from channels.base import (
    ChannelSender,
    ChannelRegistry,
    ChannelError,
    TransportTransientError,
    TransportPermanentError,
    RecipientNotFoundError,
    RateLimitedError,
    CircuitOpenError,
    SendResult,
    TokenBucketRateLimiter,
    CircuitBreaker,
    ChannelMetrics,
    RECIPIENT_NOT_FOUND,
)
from channels.instagram_adapter import InstagramSender
from channels.gmail_adapter import GmailSender

__all__ = [
    "ChannelSender", "ChannelRegistry", "ChannelError",
    "TransportTransientError", "TransportPermanentError",
    "RecipientNotFoundError", "RateLimitedError", "CircuitOpenError",
    "SendResult", "TokenBucketRateLimiter", "CircuitBreaker", "ChannelMetrics",
    "RECIPIENT_NOT_FOUND", "InstagramSender", "GmailSender",
]
