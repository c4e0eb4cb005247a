"""Outbound transports and normalized inbound events."""
from channels.base import (
    ChannelError,
    Destination,
    Transport,
    InboundMessage,
    InboundCallback,
)
from channels.telegram_adapter import TelegramAdapter

__all__ = [
    "ChannelError", "Destination", "Transport",
    "InboundMessage", "InboundCallback",
    "TelegramAdapter",
]
