"""Thin wrapper around the Evolution WhatsApp API."""

from __future__ import annotations

import logging
import re
import uuid
from typing import Iterable
from urllib.parse import quote

import httpx

from healz.conversation.ports import DeliveryStatus, OutgoingMessage
from healz.core.clock import utcnow
from healz.core.config import settings
from healz.services.whatsapp_templates import TEMPLATES

logger = logging.getLogger(__name__)

_TIMEOUT = httpx.Timeout(connect=5.0, read=15.0, write=15.0, pool=5.0)

_MEDIA_TYPES = {"image", "document", "audio", "video"}


def _build_evolution_url(action: str) -> str:
    base_url = settings.evolution_api_base_url.rstrip("/")
    instance_name = settings.evolution_instance_name
    if not instance_name:
        raise RuntimeError("EVOLUTION_INSTANCE_NAME is not configured")
    return f"{base_url}/message/{action}/{quote(instance_name)}"


def _evolution_number(phone: str) -> str:
    # Evolution expects bare digits, patients are stored as +digits.
    return re.sub(r"\D", "", phone or "")


def _mock_send(action: str, payload: dict) -> tuple[str, dict]:
    message_id = f"mocked-{uuid.uuid4()}"
    logger.debug("Mocking Evolution send (%s) with payload: %s", action, payload)
    normalized_phone = _evolution_number(payload.get("number", ""))
    mock_response = {
        "key": {
            "id": message_id,
            "remoteJid": f"{normalized_phone or '00000000000'}@mock",
        },
        "messageType": action,
        "mocked": True,
        "payload": payload,
    }
    if action == "sendTemplate":
        template = TEMPLATES.get(payload.get("name", ""))
        if template is not None:
            variables = [
                parameter["text"]
                for component in payload.get("components", [])
                for parameter in component.get("parameters", [])
            ]
            mock_response["preview"] = template.render(variables)
    return message_id, mock_response


def _dispatch(action: str, payload: dict) -> tuple[str, dict]:
    if settings.whatsapp_mock_mode:
        return _mock_send(action, payload)

    api_key = settings.evolution_api_key
    if not api_key:
        raise RuntimeError("EVOLUTION_API_KEY is not configured")

    url = _build_evolution_url(action)
    headers = {
        "apikey": api_key,
        "Content-Type": "application/json",
    }

    with httpx.Client(timeout=_TIMEOUT) as client:
        response = client.post(url, headers=headers, json=payload)
    response.raise_for_status()
    data = response.json()
    message_id = (
        data.get("key", {}).get("id")
        or data.get("id")
        or data.get("message", {}).get("key", {}).get("id")
    )
    if not message_id:
        raise RuntimeError("Evolution API response did not include a message identifier")

    logger.debug("Evolution API responded with %s", data)
    return message_id, data


def send_text(to: str, body: str) -> tuple[str, dict, dict]:
    """Send a plain text WhatsApp message."""

    payload = {"number": _evolution_number(to), "text": body}
    message_id, response = _dispatch("sendText", payload)
    return message_id, response, payload


def send_media(
    to: str, media_type: str, media_url: str, caption: str | None = None
) -> tuple[str, dict, dict]:
    """Send an image, document, audio or video by URL."""

    if media_type not in _MEDIA_TYPES:
        raise ValueError(f"Unsupported media type {media_type!r}")
    payload = {
        "number": _evolution_number(to),
        "mediatype": media_type,
        "media": media_url,
        "caption": caption or "",
    }
    message_id, response = _dispatch("sendMedia", payload)
    return message_id, response, payload


def send_template(
    to: str,
    template_name: str,
    variables: Iterable[str] | None = None,
    language_code: str = "pt_BR",
) -> tuple[str, dict, dict]:
    """Send a template-based WhatsApp message."""

    components = []
    if variables:
        components.append(
            {
                "type": "body",
                "parameters": [
                    {"type": "text", "text": str(value)} for value in variables
                ],
            }
        )

    payload = {
        "number": _evolution_number(to),
        "name": template_name,
        "language": language_code,
        "components": components,
    }
    message_id, response = _dispatch("sendTemplate", payload)
    return message_id, response, payload


class EvolutionMessagingGateway:
    """Messaging gateway backed by the Evolution API (or its mock mode)."""

    def send_message(self, message: OutgoingMessage) -> DeliveryStatus:
        try:
            if message.type == "text":
                message_id, response, request = send_text(message.to, message.content)
            else:
                if not message.media_url:
                    raise ValueError("media_url is required for media messages")
                message_id, response, request = send_media(
                    message.to, message.type, message.media_url, message.content
                )
        except (httpx.HTTPError, RuntimeError) as exc:
            logger.error(
                "whatsapp delivery failed",
                extra={"recipient": message.to, "error": str(exc)},
            )
            raise

        return DeliveryStatus(
            message_id=message_id,
            status="sent",
            timestamp=utcnow(),
            request=request,
            response=response,
        )


__all__ = [
    "EvolutionMessagingGateway",
    "send_media",
    "send_template",
    "send_text",
]
