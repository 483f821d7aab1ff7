from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Literal
from uuid import UUID

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from starlette.middleware.base import BaseHTTPMiddleware

from healz.appointment.aggregate import Appointment
from healz.appointment.service import AppointmentService, serialize_appointment
from healz.carol.chat import CarolUnavailable
from healz.carol.ports import ChatModelError
from healz.conversation.aggregate import MESSAGE_TYPES, Conversation
from healz.conversation.service import (
    ConversationService,
    ReceiveMessageCommand,
    SendMessageCommand,
    persist_message_log,
    serialize_message,
)
from healz.core.clock import clinic_timezone, ensure_utc
from healz.core.config import settings
from healz.db.session import get_db
from healz.event_sourcing.errors import (
    AggregateNotFound,
    ConcurrencyError,
    InvariantViolation,
)
from healz.logging_utils import (
    configure_logging,
    get_current_tenant,
    _request_id_ctx_var,
    _tenant_id_ctx_var,
)
from healz.models import (
    Clinic,
    MemberRole,
    MemberStatus,
    MessageLog,
    Organization,
    PatientView,
)
from healz.patient.aggregate import Patient
from healz.patient.service import PatientService, serialize_patient
from healz.patient_journey.service import serialize_journey
from healz.services import record_last_interaction, session_window_open
from healz.services.audit import record_audit
from healz.services.tenancy import (
    accept_invite,
    add_member,
    apply_tenant_scope,
    create_clinic,
    create_invite,
    create_organization,
    deactivate_member,
    resolve_clinic,
    serialize_clinic,
    serialize_invite,
    serialize_member,
    signup,
    update_member_role,
)
from healz.wiring import Container, get_container

configure_logging()

app = FastAPI(title=settings.app_name, version="0.1.0")

logger = logging.getLogger(__name__)

REQUEST_COUNTER = Counter(
    "healz_api_requests_total",
    "Total number of processed HTTP requests.",
    ["method", "path", "status", "tenant"],
)
REQUEST_LATENCY = Histogram(
    "healz_api_request_duration_seconds",
    "HTTP request latency in seconds.",
    ["method", "path"],
)


class SimpleRateLimiter:
    """In-memory rate limiter keyed by IP and tenant."""

    def __init__(self, limit: int, window_seconds: int) -> None:
        self.limit = max(1, limit)
        self.window_seconds = max(1, window_seconds)
        self._entries: dict[str, tuple[int, float]] = {}
        self._lock = asyncio.Lock()

    async def allow(self, key: str) -> bool:
        now = time.monotonic()
        async with self._lock:
            count, window_start = self._entries.get(key, (0, now))
            if now - window_start >= self.window_seconds:
                self._entries[key] = (1, now)
                return True
            if count >= self.limit:
                return False
            self._entries[key] = (count + 1, window_start)
            return True


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Populate request and tenant context for logging."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        tenant_hint = request.headers.get("X-Tenant-ID")

        request.state.request_id = request_id
        request_id_token = _request_id_ctx_var.set(request_id)
        tenant_token = _tenant_id_ctx_var.set(tenant_hint)

        try:
            response = await call_next(request)
        finally:
            _request_id_ctx_var.reset(request_id_token)
            _tenant_id_ctx_var.reset(tenant_token)

        response.headers["X-Request-ID"] = request_id
        return response


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Apply a coarse rate limit per IP and tenant."""

    def __init__(self, app: FastAPI, limiter: SimpleRateLimiter) -> None:  # type: ignore[override]
        super().__init__(app)
        self.limiter = limiter

    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        if request.method == "OPTIONS":
            return await call_next(request)

        client_host = request.client.host if request.client else "unknown"
        tenant_key = _tenant_id_ctx_var.get() or request.headers.get("X-Tenant-ID")
        tenant_value = tenant_key or "anonymous"
        rate_key = f"{client_host}:{tenant_value}"

        allowed = await self.limiter.allow(rate_key)
        if not allowed:
            logger.warning(
                "rate limit exceeded",
                extra={"client_ip": client_host, "tenant": tenant_value},
            )
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={"detail": "Rate limit exceeded"},
            )

        return await call_next(request)


class AccessLogMiddleware(BaseHTTPMiddleware):
    """Emit structured access logs and feed metrics."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        start_time = time.perf_counter()
        path = request.scope.get("root_path", "") + request.scope.get("path", request.url.path)
        method = request.method

        try:
            response = await call_next(request)
        except Exception:
            elapsed = time.perf_counter() - start_time
            tenant_label = get_current_tenant()
            REQUEST_COUNTER.labels(method=method, path=path, status="500", tenant=tenant_label).inc()
            REQUEST_LATENCY.labels(method=method, path=path).observe(elapsed)
            logger.exception(
                "request failed",
                extra={
                    "method": method,
                    "path": path,
                    "duration_ms": round(elapsed * 1000, 2),
                },
            )
            raise

        elapsed = time.perf_counter() - start_time
        status_code = response.status_code
        tenant_label = get_current_tenant()

        REQUEST_COUNTER.labels(
            method=method,
            path=path,
            status=str(status_code),
            tenant=tenant_label,
        ).inc()
        REQUEST_LATENCY.labels(method=method, path=path).observe(elapsed)

        logger.info(
            "request completed",
            extra={
                "method": method,
                "path": path,
                "status_code": status_code,
                "duration_ms": round(elapsed * 1000, 2),
            },
        )

        return response


rate_limiter = SimpleRateLimiter(
    settings.rate_limit_requests, settings.rate_limit_window_seconds
)


app.add_middleware(RequestContextMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RateLimitMiddleware, limiter=rate_limiter)
app.add_middleware(AccessLogMiddleware)




@dataclass(frozen=True)
class TenantScope:
    tenant_id: str
    actor: str | None


def tenant_scope(
    x_tenant_id: UUID = Header(..., alias="X-Tenant-ID"),
    x_user_id: str | None = Header(default=None, alias="X-User-ID"),
    db: Session = Depends(get_db),
) -> TenantScope:
    """Resolve the calling organization and scope the session to it."""

    organization = db.get(Organization, x_tenant_id)
    if not organization:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Tenant not found")
    apply_tenant_scope(db, x_tenant_id)
    return TenantScope(tenant_id=str(x_tenant_id), actor=x_user_id)


@contextmanager
def domain_errors() -> Iterator[None]:
    """Translate domain exceptions raised inside the block into HTTP errors."""

    try:
        yield
    except AggregateNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except (InvariantViolation, ConcurrencyError) as exc:
        logger.info("command rejected", extra={"reason": str(exc)})
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except IntegrityError as exc:
        logger.warning("write rejected by a unique constraint", extra={"reason": str(exc.orig)})
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail="Conflicting write; record already exists"
        ) from exc
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)
        ) from exc


class OrganizationCreate(BaseModel):
    name: str
    slug: str


class ClinicCreate(BaseModel):
    name: str
    slug: str
    phone: str | None = None
    email: str | None = None
    address: dict[str, Any] | None = None
    timezone: str | None = None
    settings: dict[str, Any] | None = None


class MemberCreate(BaseModel):
    user_id: str
    role: MemberRole = MemberRole.RECEPTIONIST


class MemberUpdate(BaseModel):
    role: MemberRole | None = None
    status: MemberStatus | None = None


class SignupOrganization(BaseModel):
    name: str = Field(min_length=3, max_length=255)
    slug: str = Field(min_length=3, max_length=100)


class SignupClinic(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    slug: str = Field(min_length=1, max_length=100)
    timezone: str | None = None


class SignupRequest(BaseModel):
    organization: SignupOrganization
    clinic: SignupClinic
    user_id: str = Field(min_length=1)


class InviteCreate(BaseModel):
    email: str = Field(pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    role: MemberRole = MemberRole.RECEPTIONIST
    name: str | None = None


class InviteAccept(BaseModel):
    user_id: str = Field(min_length=1)


class CarolChatRequest(BaseModel):
    message: str = Field(min_length=1)
    session_id: str | None = None
    version: Literal["draft", "published"] = "published"
    patient_id: UUID | None = None


class PatientCreate(BaseModel):
    clinic_id: UUID
    phone: str
    full_name: str | None = None
    email: str | None = None
    birth_date: date | None = None


class PatientUpdate(BaseModel):
    full_name: str | None = None
    email: str | None = None
    birth_date: date | None = None
    status: str | None = Field(default=None, pattern="^(active|inactive|suspended)$")
    reason: str | None = None


class AppointmentCreate(BaseModel):
    clinic_id: UUID
    patient_id: UUID
    doctor_id: str
    scheduled_at: datetime
    duration: int = 30
    reason: str | None = None
    notes: str | None = None


class AppointmentCancel(BaseModel):
    reason: str | None = None


class AppointmentReschedule(BaseModel):
    new_scheduled_at: datetime
    reason: str | None = None


class AppointmentComplete(BaseModel):
    notes: str | None = None


class InboundMessage(BaseModel):
    clinic_id: UUID
    patient_id: UUID
    content: str
    from_phone: str | None = None
    conversation_id: UUID | None = None
    channel: str = "whatsapp"
    message_type: str = "text"
    media_url: str | None = None
    intent: str | None = None
    confidence: float | None = None
    entities: dict[str, Any] = Field(default_factory=dict)


class ReplyCreate(BaseModel):
    content: str
    sent_by: str = "agent"
    message_type: str = "text"
    media_url: str | None = None


class EscalationRequest(BaseModel):
    reason: str = "manual_request"
    escalated_to_user_id: str | None = None


def patient_body(patient: Patient) -> dict[str, Any]:
    return {
        "id": patient.id,
        "tenant_id": patient.tenant_id,
        "clinic_id": patient.clinic_id,
        "phone": patient.phone,
        "full_name": patient.full_name,
        "email": patient.email,
        "birth_date": patient.birth_date,
        "status": patient.status,
        "version": patient.version,
    }


def appointment_body(appointment: Appointment, tz: Any = None) -> dict[str, Any]:
    scheduled_at = ensure_utc(appointment.scheduled_at)
    payload = {
        "id": appointment.id,
        "patient_id": appointment.patient_id,
        "clinic_id": appointment.clinic_id,
        "doctor_id": appointment.doctor_id,
        "scheduled_at": scheduled_at.isoformat(),
        "duration": appointment.duration,
        "status": appointment.status,
        "reason": appointment.reason,
        "notes": appointment.notes,
        "reschedule_count": appointment.reschedule_count,
        "version": appointment.version,
    }
    if tz is not None:
        payload["scheduled_at_local"] = scheduled_at.astimezone(tz).isoformat()
    return payload


def conversation_body(conversation: Conversation) -> dict[str, Any]:
    return {
        "id": conversation.id,
        "patient_id": conversation.patient_id,
        "clinic_id": conversation.clinic_id,
        "channel": conversation.channel,
        "status": conversation.status,
        "is_escalated": conversation.is_escalated,
        "escalated_to_user_id": conversation.escalated_to_user_id,
        "message_count": conversation.message_count,
        "version": conversation.version,
    }


def clinic_tz_for(db: Session, clinic_id: str | UUID) -> Any:
    clinic = db.get(Clinic, UUID(str(clinic_id)))
    return clinic_timezone(clinic.timezone if clinic else None)


def parse_timestamp(raw_timestamp: str | None) -> datetime:
    """Convert WhatsApp timestamps (seconds since epoch) to timezone-aware datetimes."""

    if not raw_timestamp:
        return datetime.now(timezone.utc)
    try:
        return datetime.fromtimestamp(int(raw_timestamp), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        logger.debug("Invalid timestamp payload received: %s", raw_timestamp)
        return datetime.now(timezone.utc)


def jid_to_phone(jid: str | None) -> str | None:
    """Extract the numeric portion of a WhatsApp JID."""

    if not jid:
        return None
    phone = jid.split("@", 1)[0]
    digits = "".join(char for char in phone if char.isdigit())
    return digits or None


def normalize_evolution_message(
    raw_message: dict[str, Any]
) -> tuple[dict[str, Any], dict[str, Any]]:
    """Convert Evolution webhook payloads into a Graph-like message structure."""

    key = raw_message.get("key", {}) or {}
    message_body = raw_message.get("message", {}) or {}
    message_type = raw_message.get("messageType")
    remote_jid = key.get("remoteJid") or ""
    received_at = parse_timestamp(raw_message.get("messageTimestamp"))

    normalized_message: dict[str, Any] = {
        "id": key.get("id") or raw_message.get("id"),
        "from": jid_to_phone(remote_jid),
        "timestamp": str(int(received_at.timestamp())),
        "type": "text",
    }

    if "conversation" in message_body:
        normalized_message["text"] = {"body": message_body.get("conversation", "")}
    elif "extendedTextMessage" in message_body:
        text_body = message_body.get("extendedTextMessage", {}).get("text", "")
        normalized_message["text"] = {"body": text_body}
    else:
        for media_type in ("image", "video", "audio", "document", "sticker", "location"):
            media_key = f"{media_type}Message"
            if media_key in message_body:
                normalized_message["type"] = media_type
                normalized_message[media_type] = message_body.get(media_key, {}) or {}
                break
        else:
            normalized_message["type"] = message_type or "unknown"

    metadata_extra = {
        "integration": "evolution_api",
        "message_type": message_type,
        "from_me": key.get("fromMe"),
        "remote_jid": remote_jid,
        "instance_id": raw_message.get("instanceId"),
        "push_name": raw_message.get("pushName"),
    }
    return normalized_message, metadata_extra


def extract_message_text(message: dict[str, Any]) -> str:
    """Return the human-readable text from a WhatsApp message payload."""

    message_type = message.get("type")
    if message_type == "text":
        return message.get("text", {}).get("body", "")
    if message_type == "interactive":
        interactive = message.get("interactive", {})
        if interactive.get("type") == "button_reply":
            return interactive.get("button_reply", {}).get("title", "")
        if interactive.get("type") == "list_reply":
            reply = interactive.get("list_reply", {})
            return reply.get("title") or reply.get("id", "")
    if message_type == "button":
        return message.get("button", {}).get("text", "")
    if message_type in MESSAGE_TYPES:
        media = message.get(message_type, {}) or {}
        return media.get("caption") or ""
    return ""


def handle_status_update(db: Session, status_payload: dict[str, Any]) -> None:
    """Apply delivery status updates to the message log."""

    message_id = (
        status_payload.get("keyId")
        or status_payload.get("id")
        or status_payload.get("message_id")
        or status_payload.get("messageId")
    )
    if not message_id:
        return

    stmt = select(MessageLog).where(
        MessageLog.metadata_json["wa_message_id"].as_string() == str(message_id)
    )
    message_log = db.execute(stmt).scalars().first()
    if not message_log:
        logger.debug("Received status for unknown message id %s", message_id)
        return

    status_value = status_payload.get("status")
    if isinstance(status_value, str):
        message_log.status = status_value.lower()
    metadata = dict(message_log.metadata_json or {})
    if "keyId" in status_payload:
        metadata["status_origin"] = "evolution_api"
    metadata["status_history"] = [*metadata.get("status_history", []), status_payload]
    message_log.metadata_json = metadata
    db.flush()


def default_clinic(db: Session) -> Clinic | None:
    clinic_id = settings.whatsapp_default_clinic_id
    if clinic_id is None:
        return None
    return db.get(Clinic, clinic_id)


def handle_inbound_message(
    db: Session,
    container: Container,
    message: dict[str, Any],
    *,
    raw_payload: dict[str, Any] | None = None,
    metadata_extra: dict[str, Any] | None = None,
) -> dict[str, Any] | None:
    """Register the sender if needed and hand the message to Carol."""

    phone = message.get("from")
    if not phone or (metadata_extra or {}).get("from_me"):
        return None

    clinic = default_clinic(db)
    if clinic is None:
        logger.warning("inbound message dropped, no default clinic configured")
        return None

    tenant_id = str(clinic.organization_id)
    apply_tenant_scope(db, tenant_id)
    received_at = parse_timestamp(message.get("timestamp"))

    metadata: dict[str, Any] = {
        "direction": "inbound",
        "wa_message_id": message.get("id"),
        "type": message.get("type"),
    }
    if metadata_extra:
        metadata.update({k: v for k, v in metadata_extra.items() if v is not None})

    patients = container.patients
    existing = PatientService.find_by_phone(db, tenant_id, phone)
    if existing is not None:
        patient_id, patient_phone = str(existing.id), existing.phone
    else:
        patient = patients.register(
            db,
            tenant_id=tenant_id,
            clinic_id=str(clinic.id),
            phone=phone,
            full_name=(metadata_extra or {}).get("push_name"),
        )
        patient_id, patient_phone = patient.id, patient.phone

    message_type = message.get("type")
    routed_type = "text" if message_type in ("interactive", "button") else message_type
    open_conversation = ConversationService.open_conversation_for(db, tenant_id, patient_id)
    result = None
    if routed_type in MESSAGE_TYPES:
        media = message.get(message_type, {}) if routed_type != "text" else {}
        result = container.receive_message.execute(
            db,
            ReceiveMessageCommand(
                tenant_id=tenant_id,
                clinic_id=str(clinic.id),
                patient_id=patient_id,
                from_phone=patient_phone,
                content=extract_message_text(message),
                conversation_id=str(open_conversation.id) if open_conversation else None,
                message_type=routed_type,
                media_url=(media or {}).get("url"),
                external_id=message.get("id"),
            ),
        )
    else:
        logger.debug("Unsupported WhatsApp message type %s", message_type)

    persist_message_log(
        db,
        tenant_id=tenant_id,
        conversation_id=result.conversation_id if result else None,
        channel="whatsapp",
        recipient=patient_phone,
        payload=raw_payload or message,
        metadata=metadata,
        status="received",
        sent_at=received_at,
    )
    record_last_interaction(patient_phone, received_at)

    if result is None:
        return None
    return {
        "patient_id": patient_id,
        "conversation_id": result.conversation_id,
        "message_id": result.message_id,
        "intent": result.intent,
        "escalated": result.escalated,
    }


@app.get("/metrics")
def metrics() -> Response:
    """Expose Prometheus metrics for scraping."""

    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/health")
def health() -> dict[str, str]:
    """Health check endpoint used by load balancers and orchestrators."""

    return {"status": "ok"}


@app.post("/api/v1/organizations", status_code=status.HTTP_201_CREATED)
def create_organization_endpoint(
    payload: OrganizationCreate,
    x_user_id: str | None = Header(default=None, alias="X-User-ID"),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    with domain_errors():
        organization = create_organization(db, name=payload.name, slug=payload.slug)
    apply_tenant_scope(db, organization.id)
    record_audit(
        db,
        tenant_id=organization.id,
        action="organization.created",
        resource=f"organization:{organization.id}",
        actor=x_user_id,
        metadata={"slug": organization.slug},
    )
    return {
        "organization": {
            "id": str(organization.id),
            "name": organization.name,
            "slug": organization.slug,
            "status": organization.status.value,
        }
    }


@app.post("/api/v1/organizations/{organization_id}/clinics", status_code=status.HTTP_201_CREATED)
def create_clinic_endpoint(
    organization_id: UUID,
    payload: ClinicCreate,
    scope: TenantScope = Depends(tenant_scope),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    if str(organization_id) != scope.tenant_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Organization not found")
    with domain_errors():
        clinic = create_clinic(
            db,
            organization_id=organization_id,
            name=payload.name,
            slug=payload.slug,
            phone=payload.phone,
            email=payload.email,
            address=payload.address,
            timezone=payload.timezone,
            settings=payload.settings,
        )
    record_audit(
        db,
        tenant_id=scope.tenant_id,
        clinic_id=clinic.id,
        action="clinic.created",
        resource=f"clinic:{clinic.id}",
        actor=scope.actor,
    )
    return {"clinic": serialize_clinic(clinic)}


@app.post("/api/v1/clinics/{clinic_id}/members", status_code=status.HTTP_201_CREATED)
def add_member_endpoint(
    clinic_id: UUID,
    payload: MemberCreate,
    scope: TenantScope = Depends(tenant_scope),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    with domain_errors():
        clinic = resolve_clinic(db, scope.tenant_id, clinic_id)
        member = add_member(db, clinic_id=clinic.id, user_id=payload.user_id, role=payload.role)
    record_audit(
        db,
        tenant_id=scope.tenant_id,
        clinic_id=clinic.id,
        action="member.added",
        resource=f"member:{member.user_id}",
        actor=scope.actor,
        metadata={"role": member.role.value},
    )
    return {"member": serialize_member(member)}


@app.patch("/api/v1/clinics/{clinic_id}/members/{user_id}")
def update_member_endpoint(
    clinic_id: UUID,
    user_id: str,
    payload: MemberUpdate,
    scope: TenantScope = Depends(tenant_scope),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    with domain_errors():
        clinic = resolve_clinic(db, scope.tenant_id, clinic_id)
        if payload.status == MemberStatus.INACTIVE:
            member = deactivate_member(db, clinic_id=clinic.id, user_id=user_id)
            action = "member.deactivated"
        elif payload.role is not None:
            member = update_member_role(db, clinic_id=clinic.id, user_id=user_id, role=payload.role)
            action = "member.role_changed"
        else:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="Nothing to update",
            )
    record_audit(
        db,
        tenant_id=scope.tenant_id,
        clinic_id=clinic.id,
        action=action,
        resource=f"member:{user_id}",
        actor=scope.actor,
        metadata={"role": member.role.value, "status": member.status.value},
    )
    return {"member": serialize_member(member)}


@app.post("/api/v1/signup", status_code=status.HTTP_201_CREATED)
def signup_endpoint(payload: SignupRequest, db: Session = Depends(get_db)) -> dict[str, Any]:
    """Open an organization with its first clinic and admin."""

    with domain_errors():
        organization, clinic, member = signup(
            db,
            organization_name=payload.organization.name,
            organization_slug=payload.organization.slug,
            clinic_name=payload.clinic.name,
            clinic_slug=payload.clinic.slug,
            admin_user_id=payload.user_id,
            timezone=payload.clinic.timezone,
        )
    apply_tenant_scope(db, organization.id)
    record_audit(
        db,
        tenant_id=organization.id,
        clinic_id=clinic.id,
        action="organization.signed_up",
        resource=f"organization:{organization.id}",
        actor=payload.user_id,
    )
    return {
        "organization": {
            "id": str(organization.id),
            "name": organization.name,
            "slug": organization.slug,
            "status": organization.status.value,
        },
        "clinic": serialize_clinic(clinic),
        "member": serialize_member(member),
    }


@app.post("/api/v1/clinics/{clinic_id}/invites", status_code=status.HTTP_201_CREATED)
def create_invite_endpoint(
    clinic_id: UUID,
    payload: InviteCreate,
    scope: TenantScope = Depends(tenant_scope),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    with domain_errors():
        clinic = resolve_clinic(db, scope.tenant_id, clinic_id)
        invite = create_invite(
            db,
            clinic=clinic,
            email=payload.email,
            role=payload.role,
            name=payload.name,
            invited_by=scope.actor,
        )
    record_audit(
        db,
        tenant_id=scope.tenant_id,
        clinic_id=clinic.id,
        action="member.invited",
        resource=f"invite:{invite.id}",
        actor=scope.actor,
        metadata={"role": invite.role.value},
    )
    # No mail delivery here; the caller hands the token to the invitee.
    return {"invite": serialize_invite(invite), "token": invite.token}


@app.post("/api/v1/invites/{token}/accept")
def accept_invite_endpoint(
    token: str, payload: InviteAccept, db: Session = Depends(get_db)
) -> dict[str, Any]:
    with domain_errors():
        invite, member = accept_invite(db, token=token, user_id=payload.user_id)
    record_audit(
        db,
        tenant_id=invite.tenant_id,
        clinic_id=invite.clinic_id,
        action="member.invite_accepted",
        resource=f"member:{member.user_id}",
        actor=payload.user_id,
        metadata={"role": member.role.value},
    )
    return {"invite": serialize_invite(invite), "member": serialize_member(member)}


@app.get("/api/v1/clinics/{clinic_id}/settings/{section}")
def get_clinic_settings(
    clinic_id: UUID,
    section: str,
    scope: TenantScope = Depends(tenant_scope),
    db: Session = Depends(get_db),
    container: Container = Depends(get_container),
) -> dict[str, Any]:
    with domain_errors():
        clinic = resolve_clinic(db, scope.tenant_id, clinic_id)
        document = container.clinic_settings.get_section(db, clinic.id, section)
    data = document.model_dump(mode="json", by_alias=True) if document is not None else None
    return {"clinic_id": str(clinic.id), "section": section, "data": data}


@app.put("/api/v1/clinics/{clinic_id}/settings/{section}")
def save_clinic_settings(
    clinic_id: UUID,
    section: str,
    payload: dict[str, Any],
    scope: TenantScope = Depends(tenant_scope),
    db: Session = Depends(get_db),
    container: Container = Depends(get_container),
) -> dict[str, Any]:
    with domain_errors():
        clinic = resolve_clinic(db, scope.tenant_id, clinic_id)
        document = container.clinic_settings.save_section(
            db, tenant_id=scope.tenant_id, clinic_id=clinic.id, section=section, data=payload
        )
    record_audit(
        db,
        tenant_id=scope.tenant_id,
        clinic_id=clinic.id,
        action="clinic.settings_saved",
        resource=f"clinic:{clinic.id}",
        actor=scope.actor,
        metadata={"section": section},
    )
    return {
        "clinic_id": str(clinic.id),
        "section": section,
        "data": document.model_dump(mode="json", by_alias=True),
    }


@app.get("/api/v1/clinics/{clinic_id}/availability")
def clinic_availability(
    clinic_id: UUID,
    day: date = Query(..., alias="date"),
    doctor_id: str | None = Query(default=None),
    duration: int | None = Query(default=None, ge=1, le=480),
    scope: TenantScope = Depends(tenant_scope),
    db: Session = Depends(get_db),
    container: Container = Depends(get_container),
) -> dict[str, Any]:
    with domain_errors():
        slots = container.appointments.available_slots(
            db,
            tenant_id=scope.tenant_id,
            clinic_id=str(clinic_id),
            day=day,
            doctor_id=doctor_id,
            duration=duration,
        )
    return {"date": day.isoformat(), "slots": slots}


@app.get("/api/v1/clinics/{clinic_id}/carol/config")
def get_carol_config(
    clinic_id: UUID,
    version: Literal["draft", "published"] = Query(default="published"),
    scope: TenantScope = Depends(tenant_scope),
    db: Session = Depends(get_db),
    container: Container = Depends(get_container),
) -> dict[str, Any]:
    with domain_errors():
        clinic = resolve_clinic(db, scope.tenant_id, clinic_id)
    config = container.clinic_settings.carol_config(db, clinic.id, version)
    return {"version": version, "config": config.model_dump() if config is not None else None}


@app.put("/api/v1/clinics/{clinic_id}/carol/config")
def save_carol_draft(
    clinic_id: UUID,
    payload: dict[str, Any],
    scope: TenantScope = Depends(tenant_scope),
    db: Session = Depends(get_db),
    container: Container = Depends(get_container),
) -> dict[str, Any]:
    with domain_errors():
        clinic = resolve_clinic(db, scope.tenant_id, clinic_id)
        config = container.clinic_settings.save_carol_draft(
            db, tenant_id=scope.tenant_id, clinic_id=clinic.id, data=payload
        )
    return {"version": "draft", "config": config.model_dump()}


@app.post("/api/v1/clinics/{clinic_id}/carol/config/publish")
def publish_carol_config(
    clinic_id: UUID,
    scope: TenantScope = Depends(tenant_scope),
    db: Session = Depends(get_db),
    container: Container = Depends(get_container),
) -> dict[str, Any]:
    with domain_errors():
        clinic = resolve_clinic(db, scope.tenant_id, clinic_id)
        config = container.clinic_settings.publish_carol(
            db, tenant_id=scope.tenant_id, clinic_id=clinic.id
        )
    record_audit(
        db,
        tenant_id=scope.tenant_id,
        clinic_id=clinic.id,
        action="carol.published",
        resource=f"clinic:{clinic.id}",
        actor=scope.actor,
    )
    return {"version": "published", "config": config.model_dump()}


@app.post("/api/v1/clinics/{clinic_id}/carol/chat")
def carol_chat(
    clinic_id: UUID,
    payload: CarolChatRequest,
    scope: TenantScope = Depends(tenant_scope),
    db: Session = Depends(get_db),
    container: Container = Depends(get_container),
) -> dict[str, Any]:
    """Talk to Carol with the draft or published configuration."""

    try:
        with domain_errors():
            result = container.carol_chat.process_message(
                db,
                tenant_id=scope.tenant_id,
                clinic_id=str(clinic_id),
                message=payload.message,
                session_id=payload.session_id,
                version=payload.version,
                patient_id=str(payload.patient_id) if payload.patient_id else None,
            )
    except (CarolUnavailable, ChatModelError) as exc:
        logger.warning("carol chat unavailable", extra={"reason": str(exc)})
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)
        ) from exc
    return {
        "reply": result.reply,
        "session_id": result.session_id,
        "tools_used": result.tools_used or None,
    }


@app.post("/api/v1/patients", status_code=status.HTTP_201_CREATED)
def register_patient(
    payload: PatientCreate,
    scope: TenantScope = Depends(tenant_scope),
    db: Session = Depends(get_db),
    container: Container = Depends(get_container),
) -> dict[str, Any]:
    with domain_errors():
        clinic = resolve_clinic(db, scope.tenant_id, payload.clinic_id)
        patient = container.patients.register(
            db,
            tenant_id=scope.tenant_id,
            clinic_id=str(clinic.id),
            phone=payload.phone,
            full_name=payload.full_name,
            email=payload.email,
            birth_date=payload.birth_date.isoformat() if payload.birth_date else None,
            user_id=scope.actor,
        )
    record_audit(
        db,
        tenant_id=scope.tenant_id,
        clinic_id=clinic.id,
        action="patient.registered",
        resource=f"patient:{patient.id}",
        actor=scope.actor,
    )
    return {"patient": patient_body(patient)}


@app.patch("/api/v1/patients/{patient_id}")
def update_patient(
    patient_id: UUID,
    payload: PatientUpdate,
    scope: TenantScope = Depends(tenant_scope),
    db: Session = Depends(get_db),
    container: Container = Depends(get_container),
) -> dict[str, Any]:
    """Apply profile changes, then an optional status change."""

    changes = payload.model_dump(
        exclude_unset=True, exclude_none=True, exclude={"status", "reason"}
    )
    if "birth_date" in changes:
        changes["birth_date"] = changes["birth_date"].isoformat()

    service = container.patients
    with domain_errors():
        patient = service.load(db, str(patient_id), scope.tenant_id)
        if changes:
            patient = service.update(
                db, str(patient_id), tenant_id=scope.tenant_id, user_id=scope.actor, **changes
            )
        if payload.status == "inactive":
            patient = service.deactivate(
                db, str(patient_id), tenant_id=scope.tenant_id,
                reason=payload.reason, user_id=scope.actor,
            )
        elif payload.status == "suspended":
            patient = service.suspend(
                db, str(patient_id), tenant_id=scope.tenant_id,
                reason=payload.reason, user_id=scope.actor,
            )
        elif payload.status == "active" and patient.status != "active":
            patient = service.reactivate(
                db, str(patient_id), tenant_id=scope.tenant_id, user_id=scope.actor
            )
    record_audit(
        db,
        tenant_id=scope.tenant_id,
        clinic_id=patient.clinic_id,
        action="patient.updated",
        resource=f"patient:{patient.id}",
        actor=scope.actor,
        metadata={"fields": sorted(changes), "status": payload.status},
    )
    return {"patient": patient_body(patient)}


@app.get("/api/v1/patients")
def list_patients(
    clinic_id: UUID | None = Query(default=None),
    scope: TenantScope = Depends(tenant_scope),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    if clinic_id is not None:
        with domain_errors():
            resolve_clinic(db, scope.tenant_id, clinic_id)
    rows = PatientService.list_patients(
        db, scope.tenant_id, str(clinic_id) if clinic_id else None
    )
    return {"patients": [serialize_patient(row) for row in rows]}


@app.post("/api/v1/appointments", status_code=status.HTTP_201_CREATED)
def create_appointment(
    payload: AppointmentCreate,
    scope: TenantScope = Depends(tenant_scope),
    db: Session = Depends(get_db),
    container: Container = Depends(get_container),
) -> dict[str, Any]:
    """Schedule an appointment for a registered patient."""

    with domain_errors():
        clinic = resolve_clinic(db, scope.tenant_id, payload.clinic_id)
        tz = clinic_timezone(clinic.timezone)
        scheduled_at = payload.scheduled_at
        if scheduled_at.tzinfo is None:
            scheduled_at = scheduled_at.replace(tzinfo=tz)
        appointment = container.appointments.schedule(
            db,
            tenant_id=scope.tenant_id,
            clinic_id=str(clinic.id),
            patient_id=str(payload.patient_id),
            doctor_id=payload.doctor_id,
            scheduled_at=ensure_utc(scheduled_at),
            duration=payload.duration,
            reason=payload.reason,
            notes=payload.notes,
            user_id=scope.actor,
        )
    record_audit(
        db,
        tenant_id=scope.tenant_id,
        clinic_id=clinic.id,
        action="appointment.scheduled",
        resource=f"appointment:{appointment.id}",
        actor=scope.actor,
    )
    return {"appointment": appointment_body(appointment, tz=tz)}


def _audit_appointment(
    db: Session, scope: TenantScope, appointment: Appointment, action: str
) -> dict[str, Any]:
    record_audit(
        db,
        tenant_id=scope.tenant_id,
        clinic_id=appointment.clinic_id,
        action=f"appointment.{action}",
        resource=f"appointment:{appointment.id}",
        actor=scope.actor,
        metadata={"status": appointment.status},
    )
    tz = clinic_tz_for(db, appointment.clinic_id)
    return {"appointment": appointment_body(appointment, tz=tz)}


@app.post("/api/v1/appointments/{appointment_id}/confirm")
def confirm_appointment(
    appointment_id: UUID,
    scope: TenantScope = Depends(tenant_scope),
    db: Session = Depends(get_db),
    container: Container = Depends(get_container),
) -> dict[str, Any]:
    with domain_errors():
        appointment = container.appointments.confirm(
            db, str(appointment_id), tenant_id=scope.tenant_id, confirmed_by=scope.actor
        )
    return _audit_appointment(db, scope, appointment, "confirmed")


@app.post("/api/v1/appointments/{appointment_id}/cancel")
def cancel_appointment(
    appointment_id: UUID,
    payload: AppointmentCancel | None = None,
    scope: TenantScope = Depends(tenant_scope),
    db: Session = Depends(get_db),
    container: Container = Depends(get_container),
) -> dict[str, Any]:
    with domain_errors():
        appointment = container.appointments.cancel(
            db,
            str(appointment_id),
            tenant_id=scope.tenant_id,
            cancelled_by=scope.actor,
            reason=payload.reason if payload else None,
        )
    return _audit_appointment(db, scope, appointment, "cancelled")


@app.post("/api/v1/appointments/{appointment_id}/reschedule")
def reschedule_appointment(
    appointment_id: UUID,
    payload: AppointmentReschedule,
    scope: TenantScope = Depends(tenant_scope),
    db: Session = Depends(get_db),
    container: Container = Depends(get_container),
) -> dict[str, Any]:
    with domain_errors():
        new_scheduled_at = payload.new_scheduled_at
        if new_scheduled_at.tzinfo is None:
            current = container.appointments.load(db, str(appointment_id), scope.tenant_id)
            new_scheduled_at = new_scheduled_at.replace(
                tzinfo=clinic_tz_for(db, current.clinic_id)
            )
        appointment = container.appointments.reschedule(
            db,
            str(appointment_id),
            tenant_id=scope.tenant_id,
            new_scheduled_at=ensure_utc(new_scheduled_at),
            rescheduled_by=scope.actor,
            reason=payload.reason,
        )
    return _audit_appointment(db, scope, appointment, "rescheduled")


@app.post("/api/v1/appointments/{appointment_id}/complete")
def complete_appointment(
    appointment_id: UUID,
    payload: AppointmentComplete | None = None,
    scope: TenantScope = Depends(tenant_scope),
    db: Session = Depends(get_db),
    container: Container = Depends(get_container),
) -> dict[str, Any]:
    with domain_errors():
        appointment = container.appointments.complete(
            db,
            str(appointment_id),
            tenant_id=scope.tenant_id,
            notes=payload.notes if payload else None,
        )
    return _audit_appointment(db, scope, appointment, "completed")


@app.post("/api/v1/appointments/{appointment_id}/no-show")
def mark_appointment_no_show(
    appointment_id: UUID,
    scope: TenantScope = Depends(tenant_scope),
    db: Session = Depends(get_db),
    container: Container = Depends(get_container),
) -> dict[str, Any]:
    with domain_errors():
        appointment = container.appointments.mark_no_show(
            db, str(appointment_id), tenant_id=scope.tenant_id
        )
    return _audit_appointment(db, scope, appointment, "no_show")


@app.get("/api/v1/appointments")
def list_appointments(
    clinic_id: UUID | None = Query(default=None),
    scope: TenantScope = Depends(tenant_scope),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """List appointments for the tenant, optionally for one clinic."""

    tz = None
    if clinic_id is not None:
        with domain_errors():
            clinic = resolve_clinic(db, scope.tenant_id, clinic_id)
        tz = clinic_timezone(clinic.timezone)
    rows = AppointmentService.list_appointments(
        db, scope.tenant_id, str(clinic_id) if clinic_id else None
    )
    return {
        "tenant_id": scope.tenant_id,
        "appointments": [serialize_appointment(row, tz=tz) for row in rows],
    }


@app.post("/api/v1/conversations/messages", status_code=status.HTTP_201_CREATED)
def receive_conversation_message(
    payload: InboundMessage,
    scope: TenantScope = Depends(tenant_scope),
    db: Session = Depends(get_db),
    container: Container = Depends(get_container),
) -> dict[str, Any]:
    """Record a patient message received outside the WhatsApp webhook."""

    with domain_errors():
        clinic = resolve_clinic(db, scope.tenant_id, payload.clinic_id)
        patient = container.patients.load(db, str(payload.patient_id), scope.tenant_id)
        result = container.receive_message.execute(
            db,
            ReceiveMessageCommand(
                tenant_id=scope.tenant_id,
                clinic_id=str(clinic.id),
                patient_id=patient.id,
                from_phone=payload.from_phone or patient.phone,
                content=payload.content,
                conversation_id=str(payload.conversation_id) if payload.conversation_id else None,
                channel=payload.channel,
                message_type=payload.message_type,
                media_url=payload.media_url,
                intent=payload.intent,
                confidence=payload.confidence,
                entities=payload.entities,
            ),
        )
    record_audit(
        db,
        tenant_id=scope.tenant_id,
        clinic_id=clinic.id,
        action="conversation.message_received",
        resource=f"conversation:{result.conversation_id}",
        actor=scope.actor,
        correlation_id=result.correlation_id,
    )
    if payload.channel == "whatsapp":
        record_last_interaction(patient.phone, datetime.now(timezone.utc))
    return {
        "conversation_id": result.conversation_id,
        "message_id": result.message_id,
        "correlation_id": result.correlation_id,
        "intent": result.intent,
        "confidence": result.confidence,
        "escalated": result.escalated,
    }


@app.post("/api/v1/conversations/{conversation_id}/replies", status_code=status.HTTP_201_CREATED)
def reply_to_conversation(
    conversation_id: UUID,
    payload: ReplyCreate,
    scope: TenantScope = Depends(tenant_scope),
    db: Session = Depends(get_db),
    container: Container = Depends(get_container),
) -> dict[str, Any]:
    """Send a free-form reply; WhatsApp only allows it inside the session window."""

    with domain_errors():
        conversation = container.conversations.load(db, str(conversation_id), scope.tenant_id)
    if conversation.channel == "whatsapp" and conversation.patient_id:
        patient = db.get(PatientView, uuid.UUID(conversation.patient_id))
        if patient is not None and not session_window_open(
            patient.phone, datetime.now(timezone.utc)
        ):
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="WhatsApp session window is closed; use a template message",
            )

    with domain_errors():
        result = container.send_message.execute(
            db,
            SendMessageCommand(
                tenant_id=scope.tenant_id,
                conversation_id=str(conversation_id),
                content=payload.content,
                sent_by=payload.sent_by,
                message_type=payload.message_type,
                media_url=payload.media_url,
                user_id=scope.actor,
            ),
        )
    record_audit(
        db,
        tenant_id=scope.tenant_id,
        action="conversation.reply_sent",
        resource=f"conversation:{result.conversation_id}",
        actor=scope.actor,
        correlation_id=result.correlation_id,
        metadata={"delivery_id": result.delivery_id},
    )
    return {
        "conversation_id": result.conversation_id,
        "message_id": result.message_id,
        "delivery_id": result.delivery_id,
        "status": result.status,
        "correlation_id": result.correlation_id,
    }


@app.post("/api/v1/conversations/{conversation_id}/escalate")
def escalate_conversation(
    conversation_id: UUID,
    payload: EscalationRequest | None = None,
    scope: TenantScope = Depends(tenant_scope),
    db: Session = Depends(get_db),
    container: Container = Depends(get_container),
) -> dict[str, Any]:
    request = payload or EscalationRequest()
    with domain_errors():
        conversation = container.conversations.escalate(
            db,
            str(conversation_id),
            tenant_id=scope.tenant_id,
            reason=request.reason,
            escalated_to_user_id=request.escalated_to_user_id,
            user_id=scope.actor,
        )
    record_audit(
        db,
        tenant_id=scope.tenant_id,
        clinic_id=conversation.clinic_id,
        action="conversation.escalated",
        resource=f"conversation:{conversation.id}",
        actor=scope.actor,
        metadata={"reason": request.reason},
    )
    return {"conversation": conversation_body(conversation)}


@app.post("/api/v1/conversations/{conversation_id}/resolve")
def resolve_conversation(
    conversation_id: UUID,
    scope: TenantScope = Depends(tenant_scope),
    db: Session = Depends(get_db),
    container: Container = Depends(get_container),
) -> dict[str, Any]:
    with domain_errors():
        conversation = container.conversations.resolve(
            db, str(conversation_id), tenant_id=scope.tenant_id, resolved_by=scope.actor
        )
    record_audit(
        db,
        tenant_id=scope.tenant_id,
        clinic_id=conversation.clinic_id,
        action="conversation.resolved",
        resource=f"conversation:{conversation.id}",
        actor=scope.actor,
    )
    return {"conversation": conversation_body(conversation)}


@app.get("/api/v1/conversations/{conversation_id}/messages")
def list_conversation_messages(
    conversation_id: UUID,
    scope: TenantScope = Depends(tenant_scope),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    with domain_errors():
        rows = ConversationService.list_messages(db, scope.tenant_id, str(conversation_id))
    return {
        "conversation_id": str(conversation_id),
        "messages": [serialize_message(row) for row in rows],
    }


@app.get("/api/v1/journeys/{patient_id}")
def get_patient_journey(
    patient_id: UUID,
    scope: TenantScope = Depends(tenant_scope),
    db: Session = Depends(get_db),
    container: Container = Depends(get_container),
) -> dict[str, Any]:
    with domain_errors():
        journey = container.journeys.get_journey(db, str(patient_id), scope.tenant_id)
    return {"journey": serialize_journey(journey)}


@app.get("/api/v1/events")
def trace_events(
    correlation_id: str = Query(..., min_length=1),
    scope: TenantScope = Depends(tenant_scope),
    db: Session = Depends(get_db),
    container: Container = Depends(get_container),
) -> dict[str, Any]:
    """Return every event recorded under one correlation id, oldest first."""

    events = [
        event
        for event in container.store.get_by_correlation_id(db, correlation_id)
        if event.tenant_id == scope.tenant_id
    ]
    return {
        "correlation_id": correlation_id,
        "events": [event.to_dict() for event in events],
    }


@app.post("/api/v1/projections/{name}/rebuild")
def rebuild_projection(
    name: str,
    scope: TenantScope = Depends(tenant_scope),
    db: Session = Depends(get_db),
    container: Container = Depends(get_container),
) -> dict[str, Any]:
    """Replay the tenant's history into one read model."""

    projection = container.projection(name)
    if projection is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Projection not found")
    applied = container.rebuilder.rebuild(db, projection, tenant_id=scope.tenant_id)
    record_audit(
        db,
        tenant_id=scope.tenant_id,
        action="projection.rebuilt",
        resource=f"projection:{name}",
        actor=scope.actor,
        metadata={"events_applied": applied},
    )
    return {"projection": name, "events_applied": applied}


@app.get("/api/v1/wa/webhook")
def whatsapp_webhook_verification(
    hub_mode: str | None = Query(default=None, alias="hub.mode"),
    hub_challenge: str | None = Query(default=None, alias="hub.challenge"),
    hub_verify_token: str | None = Query(default=None, alias="hub.verify_token"),
):
    """Handle the WhatsApp webhook verification handshake."""

    if (
        hub_mode == "subscribe"
        and hub_verify_token
        and hub_verify_token == settings.webhook_verify_token
    ):
        if not hub_challenge:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Missing hub.challenge",
            )
        return PlainTextResponse(content=hub_challenge)

    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")


@app.post("/api/v1/wa/webhook")
def whatsapp_webhook(
    payload: dict[str, Any],
    db: Session = Depends(get_db),
    container: Container = Depends(get_container),
) -> dict[str, Any]:
    """Ingest WhatsApp events (messages and delivery statuses)."""

    if not payload:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Payload required",
        )

    processed: list[dict[str, Any]] = []

    event_name = payload.get("event")
    if event_name:
        event_key = str(event_name).upper().replace(".", "_")
        event_data = payload.get("data")
        items = event_data if isinstance(event_data, list) else [event_data]

        if event_key == "MESSAGES_UPSERT":
            for item in items:
                if not isinstance(item, dict):
                    continue
                normalized, extra_metadata = normalize_evolution_message(item)
                with domain_errors():
                    result = handle_inbound_message(
                        db,
                        container,
                        normalized,
                        raw_payload=item,
                        metadata_extra=extra_metadata,
                    )
                if result:
                    processed.append(result)
        elif event_key == "MESSAGES_UPDATE":
            for status_update in items:
                if isinstance(status_update, dict):
                    handle_status_update(db, status_update)
        else:
            logger.debug("Unhandled Evolution webhook event: %s", event_name)

        return {"status": "ok", "processed": processed, "event": event_name}

    for entry in payload.get("entry", []):
        for change in entry.get("changes", []):
            value = change.get("value", {})
            contacts = {
                contact.get("wa_id"): (contact.get("profile") or {}).get("name")
                for contact in value.get("contacts", []) or []
            }
            for message in value.get("messages", []) or []:
                with domain_errors():
                    result = handle_inbound_message(
                        db,
                        container,
                        message,
                        metadata_extra={"push_name": contacts.get(message.get("from"))},
                    )
                if result:
                    processed.append(result)
            for status_update in value.get("statuses", []) or []:
                handle_status_update(db, status_update)

    return {"status": "ok", "processed": processed}
