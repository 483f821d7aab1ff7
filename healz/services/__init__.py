"""Integrations with external services used by the Healz API."""

from healz.services.bot_state import (
    WHATSAPP_SESSION_WINDOW,
    last_interaction,
    record_last_interaction,
    session_window_open,
)
from healz.services.whatsapp_client import (
    EvolutionMessagingGateway,
    send_media,
    send_template,
    send_text,
)

__all__ = [
    "EvolutionMessagingGateway",
    "WHATSAPP_SESSION_WINDOW",
    "last_interaction",
    "record_last_interaction",
    "send_media",
    "send_template",
    "send_text",
    "session_window_open",
]
