"""Approved WhatsApp templates used outside the customer-service window."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable


@dataclass(frozen=True)
class MessageTemplate:
    name: str
    body: str
    category: str = "UTILITY"
    language: str = "pt_BR"

    def render(self, variables: Iterable[str] | None = None) -> str:
        """Fill ``{{1}}``, ``{{2}}``... the way WhatsApp shows the message."""

        text = self.body
        for position, value in enumerate(variables or (), start=1):
            text = text.replace(f"{{{{{position}}}}}", str(value))
        return text


TEMPLATES: dict[str, MessageTemplate] = {
    template.name: template
    for template in (
        MessageTemplate(
            "lembrete_d1",
            "Lembrete: você possui uma consulta amanhã às {{1}}. Responda 1 para confirmar.",
        ),
        MessageTemplate(
            "lembrete_h2",
            "Sua consulta começa em 2 horas, às {{1}}. Até logo!",
        ),
    )
}

# Reminder window -> template name.
REMINDER_TEMPLATES: dict[str, str] = {
    "d1": "lembrete_d1",
    "h2": "lembrete_h2",
}

__all__ = ["MessageTemplate", "REMINDER_TEMPLATES", "TEMPLATES"]
