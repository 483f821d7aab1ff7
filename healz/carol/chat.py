"""Carol's conversational loop: prompt, tool calls and short session memory."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.orm import Session

from healz.appointment.service import AppointmentService
from healz.carol.ports import ChatModel
from healz.carol.tools import CarolToolbox
from healz.clinic_settings.schemas import CarolConfig
from healz.clinic_settings.service import CarolVersion, ClinicSettingsService
from healz.core.config import settings

logger = logging.getLogger(__name__)

NOT_CONFIGURED_REPLY = "Carol ainda não foi configurada para esta clínica."
GIVE_UP_REPLY = (
    "Desculpe, não consegui concluir agora. Posso transferir você para um atendente?"
)

_TONES = {
    "formal": (
        'Seja formal e profissional. Use "senhor/senhora" e linguagem técnica '
        "quando apropriado."
    ),
    "informal": "Seja descontraída e acessível. Use linguagem simples e amigável.",
    "empathetic": "Seja empática e acolhedora. Demonstre compreensão e cuidado genuíno.",
}


@dataclass
class ChatResult:
    reply: str
    session_id: str
    tools_used: list[str] = field(default_factory=list)


def build_system_prompt(config: CarolConfig) -> str:
    rules = config.scheduling_rules
    lines = [
        f"Você é {config.name}, assistente virtual de uma clínica de saúde.",
        "",
        "PERSONALIDADE:",
        _TONES.get(config.voice_tone, _TONES["empathetic"]),
    ]
    if config.selected_traits:
        lines.append(f"Sua personalidade é: {', '.join(config.selected_traits)}.")
    greeting = config.greeting or f"Olá! Sou {config.name}. Como posso ajudar?"
    lines += [
        "",
        "SAUDAÇÃO:",
        f'Quando o paciente iniciar a conversa, use esta saudação: "{greeting}"',
        "",
        "DIRETRIZES:",
        "- Responda sempre em português brasileiro",
        "- Seja objetiva e clara, com respostas curtas (máximo 2-3 frases)",
        "- Não invente informações, use as ferramentas disponíveis para buscar dados reais",
        "- Se não souber responder, ofereça transferir para atendimento humano",
    ]
    if config.restrict_sensitive_topics:
        lines.append(
            "- NÃO discuta diagnósticos médicos, tratamentos específicos "
            "ou valores de faturamento detalhados"
        )
    lines += ["", "AGENDAMENTO:"]
    if rules.confirm_before_scheduling:
        lines.append("- Sempre confirme os dados antes de criar um agendamento")
    lines.append(
        "- Você pode cancelar consultas a pedido do paciente"
        if rules.allow_cancellation
        else "- NÃO cancele consultas, encaminhe para atendimento humano"
    )
    lines.append(
        "- Você pode reagendar consultas"
        if rules.allow_rescheduling
        else "- NÃO reagende consultas, encaminhe para atendimento humano"
    )
    if rules.post_scheduling_message:
        lines.append(f'- Após agendar, diga: "{rules.post_scheduling_message}"')
    return "\n".join(lines)


class CarolUnavailable(RuntimeError):
    """No language model is configured for Carol."""


class CarolChatService:
    """Answers one message at a time, letting the model call Carol's tools.

    Session history lives in memory and holds only the human and assistant
    turns; it is lost when the process restarts.
    """

    def __init__(
        self,
        clinic_settings: ClinicSettingsService,
        appointments: AppointmentService,
        model: ChatModel | None = None,
        max_tool_rounds: int | None = None,
    ) -> None:
        self.clinic_settings = clinic_settings
        self.appointments = appointments
        self.model = model
        self.max_tool_rounds = max_tool_rounds or settings.carol_max_tool_rounds
        self.sessions: dict[str, list[dict[str, Any]]] = {}

    def process_message(
        self,
        session: Session,
        *,
        tenant_id: str,
        clinic_id: str,
        message: str,
        session_id: str | None = None,
        version: CarolVersion = "published",
        patient_id: str | None = None,
    ) -> ChatResult:
        session_id = session_id or str(uuid.uuid4())
        toolbox = CarolToolbox(
            session,
            tenant_id=tenant_id,
            clinic_id=clinic_id,
            clinic_settings=self.clinic_settings,
            appointments=self.appointments,
            patient_id=patient_id,
        )
        config = self.clinic_settings.carol_config(session, toolbox.clinic.id, version)
        if config is None:
            return ChatResult(reply=NOT_CONFIGURED_REPLY, session_id=session_id)
        if self.model is None:
            raise CarolUnavailable("No language model is configured for Carol")

        history = self.sessions.get(session_id, [])
        messages: list[dict[str, Any]] = [
            {"role": "system", "content": build_system_prompt(config)},
            *history,
            {"role": "user", "content": message},
        ]

        tools_used: list[str] = []
        response = self.model.complete(messages, toolbox.definitions)
        rounds = 0
        while response.tool_calls:
            rounds += 1
            if rounds > self.max_tool_rounds:
                logger.warning(
                    "carol tool loop did not settle",
                    extra={"session_id": session_id, "tools_used": tools_used},
                )
                response = None
                break
            messages.append(response.as_message())
            for call in response.tool_calls:
                tools_used.append(call.name)
                messages.append(
                    {
                        "role": "tool",
                        "tool_call_id": call.id,
                        "content": toolbox.run(call.name, call.arguments),
                    }
                )
            response = self.model.complete(messages, toolbox.definitions)

        reply = GIVE_UP_REPLY if response is None else (response.content or "")
        history.append({"role": "user", "content": message})
        history.append({"role": "assistant", "content": reply})
        self.sessions[session_id] = history
        logger.info(
            "carol replied",
            extra={
                "session_id": session_id,
                "clinic_id": clinic_id,
                "version": version,
                "tools_used": tools_used,
            },
        )
        return ChatResult(reply=reply, session_id=session_id, tools_used=tools_used)
