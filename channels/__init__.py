"""Messaging gateways for reaching automated responders."""
from channels.base import (
    GatewayError,
    InputSanitizer,
    MessageDeduplicator,
    MessagingGateway,
    is_group_address,
    normalize_address,
)
from channels.whatsapp_adapter import WhatsAppGateway, extract_text, parse_webhook

__all__ = [
    "GatewayError", "InputSanitizer", "MessageDeduplicator", "MessagingGateway",
    "is_group_address", "normalize_address",
    "WhatsAppGateway", "extract_text", "parse_webhook",
]
