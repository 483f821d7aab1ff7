"""Tools Carol may call while answering a patient."""

from __future__ import annotations

import json
import logging
from datetime import date, datetime
from typing import Any

from sqlalchemy.orm import Session

from healz.appointment.service import AppointmentService
from healz.clinic_settings.schemas import ClinicService
from healz.clinic_settings.service import ClinicSettingsService
from healz.core.clock import clinic_timezone, ensure_utc
from healz.event_sourcing.errors import DomainError
from healz.services.tenancy import resolve_clinic

logger = logging.getLogger(__name__)

# Carol books into the clinic agenda; staff assign the doctor afterwards.
CLINIC_AGENDA = "clinic-agenda"

TOOL_DEFINITIONS: list[dict[str, Any]] = [
    {
        "type": "function",
        "function": {
            "name": "get_clinic_info",
            "description": "Busca informações gerais da clínica: nome, descrição, endereço",
            "parameters": {"type": "object", "properties": {}},
        },
    },
    {
        "type": "function",
        "function": {
            "name": "get_services",
            "description": "Lista os serviços oferecidos pela clínica com duração e valor",
            "parameters": {"type": "object", "properties": {}},
        },
    },
    {
        "type": "function",
        "function": {
            "name": "get_operating_hours",
            "description": "Retorna os horários de funcionamento da clínica por dia da semana",
            "parameters": {"type": "object", "properties": {}},
        },
    },
    {
        "type": "function",
        "function": {
            "name": "check_availability",
            "description": "Verifica horários disponíveis para agendamento em uma data específica",
            "parameters": {
                "type": "object",
                "properties": {
                    "date": {"type": "string", "description": "Data no formato YYYY-MM-DD"},
                },
                "required": ["date"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "create_appointment",
            "description": "Cria um agendamento de consulta para o paciente",
            "parameters": {
                "type": "object",
                "properties": {
                    "date": {"type": "string", "description": "Data no formato YYYY-MM-DD"},
                    "time": {"type": "string", "description": "Horário no formato HH:MM"},
                    "service": {"type": "string", "description": "Serviço desejado"},
                },
                "required": ["date", "time"],
            },
        },
    },
]


def _dumps(payload: dict[str, Any]) -> str:
    return json.dumps(payload, ensure_ascii=False)


class CarolToolbox:
    """Runs Carol's tools against one clinic inside the caller's session."""

    def __init__(
        self,
        session: Session,
        *,
        tenant_id: str,
        clinic_id: str,
        clinic_settings: ClinicSettingsService,
        appointments: AppointmentService,
        patient_id: str | None = None,
    ) -> None:
        self.session = session
        self.tenant_id = tenant_id
        self.clinic = resolve_clinic(session, tenant_id, clinic_id)
        self.clinic_settings = clinic_settings
        self.appointments = appointments
        self.patient_id = patient_id
        self._handlers = {
            "get_clinic_info": self.get_clinic_info,
            "get_services": self.get_services,
            "get_operating_hours": self.get_operating_hours,
            "check_availability": self.check_availability,
            "create_appointment": self.create_appointment,
        }

    @property
    def definitions(self) -> list[dict[str, Any]]:
        return TOOL_DEFINITIONS

    def run(self, name: str, arguments: dict[str, Any]) -> str:
        """Run a tool and return its JSON result; failures become an ``error`` field."""

        handler = self._handlers.get(name)
        if handler is None:
            return _dumps({"error": f"Tool '{name}' not found"})
        try:
            return _dumps(handler(**arguments))
        except (DomainError, ValueError, TypeError) as exc:
            logger.info("carol tool refused", extra={"tool": name, "reason": str(exc)})
            return _dumps({"error": str(exc)})

    def get_clinic_info(self) -> dict[str, Any]:
        general = self.clinic_settings.general(self.session, self.clinic.id)
        address = general.address if general is not None else None
        return {
            "name": (general.name if general is not None else None) or self.clinic.name,
            "description": general.description if general is not None else None,
            "address": address.one_line() if address is not None else None,
            "phone": self.clinic.phone,
        }

    def get_services(self) -> dict[str, Any]:
        services = self.clinic_settings.services(self.session, self.clinic.id).services
        return {"services": [service.model_dump() for service in services]}

    def get_operating_hours(self) -> dict[str, Any]:
        rules = self.clinic_settings.scheduling(self.session, self.clinic.id)
        if rules is None:
            return {"schedule": []}
        return {
            "schedule": [
                day.model_dump(mode="json", by_alias=True) for day in rules.weekly_schedule
            ],
            "appointment_duration": rules.default_appointment_duration,
        }

    def check_availability(self, date: str) -> dict[str, Any]:
        slots = self.appointments.available_slots(
            self.session,
            tenant_id=self.tenant_id,
            clinic_id=str(self.clinic.id),
            day=_parse_date(date),
        )
        return {
            "date": date,
            "slots": [{"time": slot["time"], "available": slot["available"]} for slot in slots],
        }

    def create_appointment(
        self, date: str, time: str, service: str | None = None
    ) -> dict[str, Any]:
        if self.patient_id is None:
            return {"success": False, "error": "Paciente não identificado nesta conversa"}

        chosen = self._find_service(service)
        duration = chosen.duration if chosen is not None else None
        day = _parse_date(date)
        slots = self.appointments.available_slots(
            self.session,
            tenant_id=self.tenant_id,
            clinic_id=str(self.clinic.id),
            day=day,
            duration=duration,
        )
        match = next((slot for slot in slots if slot["time"] == time), None)
        if match is None or not match["available"]:
            return {"success": False, "error": f"Horário {time} de {date} não está disponível"}

        start = ensure_utc(datetime.fromisoformat(match["start"]))
        rules = self.clinic_settings.scheduling(self.session, self.clinic.id)
        appointment = self.appointments.schedule(
            self.session,
            tenant_id=self.tenant_id,
            clinic_id=str(self.clinic.id),
            patient_id=self.patient_id,
            doctor_id=CLINIC_AGENDA,
            scheduled_at=start,
            duration=duration or rules.default_appointment_duration,
            reason=chosen.title if chosen is not None else service,
            user_id="carol",
        )
        tz = clinic_timezone(self.clinic.timezone)
        logger.info(
            "carol booked appointment",
            extra={"appointment_id": appointment.id, "clinic_id": str(self.clinic.id)},
        )
        return {
            "success": True,
            "appointment_id": appointment.id,
            "date": date,
            "time": appointment.scheduled_at.astimezone(tz).strftime("%H:%M"),
            "service": chosen.title if chosen is not None else (service or "Consulta geral"),
        }

    def _find_service(self, wanted: str | None) -> ClinicService | None:
        if not wanted:
            return None
        needle = wanted.strip().lower()
        for service in self.clinic_settings.services(self.session, self.clinic.id).services:
            if needle in (service.id.lower(), service.title.lower()):
                return service
        return None


def _parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise ValueError(f"Invalid date {value!r}; use YYYY-MM-DD") from None
