import copy
import json
from datetime import datetime, time, timedelta
from zoneinfo import ZoneInfo

import httpx
import pytest
from sqlalchemy import select

from healz.carol.chat import (
    GIVE_UP_REPLY,
    NOT_CONFIGURED_REPLY,
    CarolChatService,
    CarolUnavailable,
    build_system_prompt,
)
from healz.carol.openai_model import OpenAIChatModel
from healz.carol.ports import ChatModelError, ChatReply, ToolCall
from healz.carol.tools import CLINIC_AGENDA, CarolToolbox
from healz.clinic_settings.schemas import WEEKDAYS, CarolConfig
from healz.models import AppointmentView

SAO_PAULO = ZoneInfo("America/Sao_Paulo")


class ScriptedModel:
    """Chat model that answers from a fixed script and keeps what it was sent."""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.calls = []

    def complete(self, messages, tools):
        self.calls.append({"messages": copy.deepcopy(messages), "tools": tools})
        if len(self.replies) == 1:
            return self.replies[0]
        return self.replies.pop(0)


def said(text):
    return ChatReply(content=text)


def asks(name, call_id="call-1", **arguments):
    call = ToolCall(id=call_id, name=name, arguments=arguments)
    return ChatReply(content=None, tool_calls=[call])


def booking_day():
    return (datetime.now(SAO_PAULO) + timedelta(days=3)).date()


@pytest.fixture()
def configured_clinic(session, container, tenant):
    service = container.clinic_settings
    common = {"tenant_id": tenant["tenant_id"], "clinic_id": tenant["clinic_id"]}
    service.save_section(
        session,
        section="scheduling",
        data={
            "weekly_schedule": [
                {"day": day, "is_open": True, "time_slots": [{"from": "08:00", "to": "12:00"}]}
                for day in WEEKDAYS
            ],
            "default_appointment_duration": 60,
            "minimum_advance_hours": 0,
            "max_future_days": 60,
        },
        **common,
    )
    service.save_section(
        session,
        section="services",
        data={
            "services": [
                {"id": "limpeza", "title": "Limpeza", "duration": 60, "value": "R$ 150,00"},
                {"id": "avaliacao", "title": "Avaliação", "duration": 30},
            ]
        },
        **common,
    )
    service.save_section(
        session,
        section="general",
        data={
            "name": "Sorriso Centro",
            "description": "Odontologia para a família",
            "address": {
                "street": "Av. Santos Dumont",
                "number": "1500",
                "neighborhood": "Aldeota",
                "city": "Fortaleza",
                "state": "CE",
                "zip_code": "60150-160",
            },
        },
        **common,
    )
    service.save_carol_draft(
        session, data={"voice_tone": "formal", "selected_traits": ["paciente"]}, **common
    )
    return tenant


@pytest.fixture()
def patient(session, container, configured_clinic):
    return container.patients.register(
        session,
        tenant_id=configured_clinic["tenant_id"],
        clinic_id=configured_clinic["clinic_id"],
        phone="+5585987654321",
        full_name="Maria Souza",
    )


def toolbox(session, container, tenant, patient_id=None):
    return CarolToolbox(
        session,
        tenant_id=tenant["tenant_id"],
        clinic_id=tenant["clinic_id"],
        clinic_settings=container.clinic_settings,
        appointments=container.appointments,
        patient_id=patient_id,
    )


def run(box, name, **arguments):
    return json.loads(box.run(name, arguments))


def test_clinic_info_uses_general_settings(session, container, configured_clinic):
    info = run(toolbox(session, container, configured_clinic), "get_clinic_info")

    assert info["name"] == "Sorriso Centro"
    assert info["address"] == "Av. Santos Dumont, 1500 - Aldeota, Fortaleza/CE"


def test_clinic_info_falls_back_to_clinic_record(session, container, tenant):
    info = run(toolbox(session, container, tenant), "get_clinic_info")
    assert info["name"] == "Centro"
    assert info["address"] is None


def test_services_and_operating_hours(session, container, configured_clinic):
    box = toolbox(session, container, configured_clinic)

    services = run(box, "get_services")["services"]
    hours = run(box, "get_operating_hours")

    assert [service["id"] for service in services] == ["limpeza", "avaliacao"]
    assert hours["appointment_duration"] == 60
    assert hours["schedule"][0]["time_slots"] == [{"from": "08:00", "to": "12:00"}]


def test_check_availability_reports_real_slots(session, container, configured_clinic, patient):
    day = booking_day()
    container.appointments.schedule(
        session,
        tenant_id=patient.tenant_id,
        clinic_id=patient.clinic_id,
        patient_id=patient.id,
        doctor_id="dra.ana",
        scheduled_at=datetime.combine(day, time(10), tzinfo=SAO_PAULO),
        duration=60,
    )

    box = toolbox(session, container, configured_clinic)
    result = run(box, "check_availability", date=day.isoformat())

    assert result["date"] == day.isoformat()
    assert result["slots"] == [
        {"time": "08:00", "available": True},
        {"time": "09:00", "available": True},
        {"time": "10:00", "available": False},
        {"time": "11:00", "available": True},
    ]


def test_create_appointment_books_through_the_appointment_service(
    session, container, configured_clinic, patient
):
    box = toolbox(session, container, configured_clinic, patient_id=patient.id)
    day = booking_day().isoformat()

    booked = run(box, "create_appointment", date=day, time="09:00", service="limpeza")
    again = run(box, "create_appointment", date=day, time="09:00")

    assert booked["success"] is True
    assert booked["service"] == "Limpeza"
    row = session.execute(select(AppointmentView)).scalar_one()
    assert str(row.id) == booked["appointment_id"]
    assert row.doctor_id == CLINIC_AGENDA
    assert row.duration == 60
    assert row.reason == "Limpeza"
    assert again["success"] is False


def test_create_appointment_needs_a_known_patient(session, container, configured_clinic):
    box = toolbox(session, container, configured_clinic)
    result = run(box, "create_appointment", date=booking_day().isoformat(), time="09:00")
    assert result["success"] is False


def test_tool_errors_are_returned_to_the_model(session, container, configured_clinic):
    box = toolbox(session, container, configured_clinic)

    assert "YYYY-MM-DD" in run(box, "check_availability", date="amanhã")["error"]
    assert run(box, "cancel_everything")["error"] == "Tool 'cancel_everything' not found"


def test_system_prompt_reflects_configuration():
    prompt = build_system_prompt(
        CarolConfig(
            name="Bia",
            voice_tone="formal",
            selected_traits=["paciente", "objetiva"],
            scheduling_rules={
                "allow_cancellation": False,
                "post_scheduling_message": "Até logo!",
            },
        )
    )

    assert prompt.startswith("Você é Bia")
    assert "senhor/senhora" in prompt
    assert "paciente, objetiva" in prompt
    assert "NÃO discuta diagnósticos" in prompt
    assert "NÃO cancele consultas" in prompt
    assert 'Após agendar, diga: "Até logo!"' in prompt


def test_chat_without_configuration_says_so(session, container, tenant):
    chat = CarolChatService(container.clinic_settings, container.appointments)

    result = chat.process_message(
        session, tenant_id=tenant["tenant_id"], clinic_id=tenant["clinic_id"], message="Oi"
    )

    assert result.reply == NOT_CONFIGURED_REPLY
    assert result.session_id


def test_chat_without_model_is_unavailable(session, container, configured_clinic):
    chat = CarolChatService(container.clinic_settings, container.appointments)

    with pytest.raises(CarolUnavailable):
        chat.process_message(
            session,
            tenant_id=configured_clinic["tenant_id"],
            clinic_id=configured_clinic["clinic_id"],
            message="Oi",
            version="draft",
        )


def test_chat_runs_tools_until_the_model_answers(session, container, configured_clinic):
    day = booking_day().isoformat()
    model = ScriptedModel(
        asks("check_availability", date=day),
        said("Temos horários às 08:00, 09:00, 10:00 e 11:00."),
    )
    chat = CarolChatService(container.clinic_settings, container.appointments, model)

    result = chat.process_message(
        session,
        tenant_id=configured_clinic["tenant_id"],
        clinic_id=configured_clinic["clinic_id"],
        message="Tem horário?",
        version="draft",
    )

    assert result.reply.startswith("Temos horários")
    assert result.tools_used == ["check_availability"]
    first, second = model.calls
    assert first["messages"][0]["role"] == "system"
    assert "senhor/senhora" in first["messages"][0]["content"]
    assert {tool["function"]["name"] for tool in first["tools"]} >= {
        "check_availability",
        "create_appointment",
    }
    assistant, tool_answer = second["messages"][-2:]
    assert assistant["tool_calls"][0]["function"]["name"] == "check_availability"
    assert tool_answer["role"] == "tool"
    assert tool_answer["tool_call_id"] == "call-1"
    assert len(json.loads(tool_answer["content"])["slots"]) == 4


def test_chat_keeps_session_history(session, container, configured_clinic):
    model = ScriptedModel(said("Olá! Como posso ajudar?"))
    chat = CarolChatService(container.clinic_settings, container.appointments, model)
    kwargs = {
        "tenant_id": configured_clinic["tenant_id"],
        "clinic_id": configured_clinic["clinic_id"],
        "version": "draft",
    }

    first = chat.process_message(session, message="Oi", **kwargs)
    chat.process_message(session, message="Onde fica?", session_id=first.session_id, **kwargs)

    roles = [message["role"] for message in model.calls[-1]["messages"]]
    assert roles == ["system", "user", "assistant", "user"]
    assert model.calls[-1]["messages"][2]["content"] == "Olá! Como posso ajudar?"


def test_chat_published_version_needs_publishing(session, container, configured_clinic):
    model = ScriptedModel(said("Olá!"))
    chat = CarolChatService(container.clinic_settings, container.appointments, model)
    kwargs = {
        "tenant_id": configured_clinic["tenant_id"],
        "clinic_id": configured_clinic["clinic_id"],
        "message": "Oi",
    }

    assert chat.process_message(session, **kwargs).reply == NOT_CONFIGURED_REPLY

    container.clinic_settings.publish_carol(
        session,
        tenant_id=configured_clinic["tenant_id"],
        clinic_id=configured_clinic["clinic_id"],
    )
    assert chat.process_message(session, **kwargs).reply == "Olá!"


def test_chat_gives_up_when_tools_never_settle(session, container, configured_clinic):
    model = ScriptedModel(asks("get_services"))
    chat = CarolChatService(
        container.clinic_settings, container.appointments, model, max_tool_rounds=2
    )

    result = chat.process_message(
        session,
        tenant_id=configured_clinic["tenant_id"],
        clinic_id=configured_clinic["clinic_id"],
        message="Quais serviços?",
        version="draft",
    )

    assert result.reply == GIVE_UP_REPLY
    assert result.tools_used == ["get_services", "get_services"]


def completion(message, status_code=200):
    def handler(request):
        handler.requests.append(request)
        body = {"model": "gpt-4o-mini", "choices": [{"message": message}]}
        return httpx.Response(status_code, json=body)

    handler.requests = []
    return handler


def test_openai_model_parses_tool_calls():
    handler = completion(
        {
            "content": None,
            "tool_calls": [
                {
                    "id": "call-9",
                    "type": "function",
                    "function": {
                        "name": "check_availability",
                        "arguments": '{"date": "2030-01-14"}',
                    },
                }
            ],
        }
    )
    model = OpenAIChatModel(
        api_key="sk-test", base_url="https://llm.local/v1", transport=httpx.MockTransport(handler)
    )

    reply = model.complete([{"role": "user", "content": "Oi"}], [{"type": "function"}])

    assert reply.tool_calls == [ToolCall("call-9", "check_availability", {"date": "2030-01-14"})]
    request = handler.requests[0]
    assert str(request.url) == "https://llm.local/v1/chat/completions"
    assert request.headers["Authorization"] == "Bearer sk-test"
    body = json.loads(request.content)
    assert body["tools"] == [{"type": "function"}]
    assert body["messages"][0]["content"] == "Oi"


def test_openai_model_reports_failures():
    limited = OpenAIChatModel(
        api_key="sk-test",
        transport=httpx.MockTransport(completion({"content": "x"}, status_code=429)),
    )
    with pytest.raises(ChatModelError, match="rate limit"):
        limited.complete([{"role": "user", "content": "Oi"}], [])

    with pytest.raises(ChatModelError, match="OPENAI_API_KEY"):
        OpenAIChatModel(api_key="").complete([{"role": "user", "content": "Oi"}], [])
