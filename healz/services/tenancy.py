"""Organizations, clinics, staff membership and tenant scoping."""

from __future__ import annotations

import logging
import re
import secrets
import uuid
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select, text
from sqlalchemy.orm import Session

from healz.core.clock import ensure_utc, utcnow
from healz.event_sourcing.errors import AggregateNotFound, InvariantViolation
from healz.logging_utils import set_tenant_context
from healz.models import (
    Clinic,
    ClinicInvite,
    ClinicMember,
    ClinicStatus,
    MemberRole,
    MemberStatus,
    Organization,
    OrganizationStatus,
)

logger = logging.getLogger(__name__)

INVITE_TTL = timedelta(days=7)

_SLUG_PATTERN = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")


def _check_slug(slug: str) -> str:
    if not _SLUG_PATTERN.match(slug or ""):
        raise InvariantViolation(
            "Slug must contain lowercase letters, digits and single hyphens"
        )
    return slug


def apply_tenant_scope(session: Session, tenant_id: uuid.UUID | str) -> None:
    """Bind the tenant to the logging context and, on PostgreSQL, to RLS."""

    set_tenant_context(str(tenant_id))
    if session.get_bind().dialect.name != "postgresql":
        return
    session.execute(
        text("SELECT set_config('app.current_org_id', :org_id, true)"),
        {"org_id": str(tenant_id)},
    )


def create_organization(session: Session, *, name: str, slug: str) -> Organization:
    _check_slug(slug)
    existing = session.execute(
        select(Organization.id).where(Organization.slug == slug)
    ).first()
    if existing is not None:
        raise InvariantViolation(f"Organization slug {slug!r} is already taken")

    organization = Organization(name=name, slug=slug, status=OrganizationStatus.ACTIVE)
    session.add(organization)
    session.flush()
    logger.info(
        "organization created",
        extra={"organization_id": str(organization.id), "slug": slug},
    )
    return organization


def create_clinic(
    session: Session,
    *,
    organization_id: uuid.UUID,
    name: str,
    slug: str,
    phone: str | None = None,
    email: str | None = None,
    address: dict[str, Any] | None = None,
    timezone: str | None = None,
    settings: dict[str, Any] | None = None,
) -> Clinic:
    _check_slug(slug)
    organization = session.get(Organization, organization_id)
    if organization is None:
        raise AggregateNotFound("Organization", str(organization_id))
    if organization.status != OrganizationStatus.ACTIVE:
        raise InvariantViolation("Organization is not active")

    duplicate = session.execute(
        select(Clinic.id).where(
            Clinic.organization_id == organization_id, Clinic.slug == slug
        )
    ).first()
    if duplicate is not None:
        raise InvariantViolation(f"Clinic slug {slug!r} is already used in this organization")

    clinic = Clinic(
        organization_id=organization_id,
        name=name,
        slug=slug,
        phone=phone,
        email=email,
        address=address,
        timezone=timezone or "America/Sao_Paulo",
        settings=settings or {},
        status=ClinicStatus.ACTIVE,
    )
    session.add(clinic)
    session.flush()
    logger.info(
        "clinic created",
        extra={"clinic_id": str(clinic.id), "organization_id": str(organization_id)},
    )
    return clinic


def resolve_clinic(
    session: Session, tenant_id: uuid.UUID | str, clinic_id: uuid.UUID | str
) -> Clinic:
    """Return the clinic when it belongs to the tenant, as if missing otherwise."""

    clinic = session.get(Clinic, uuid.UUID(str(clinic_id)))
    if clinic is None or clinic.organization_id != uuid.UUID(str(tenant_id)):
        raise AggregateNotFound("Clinic", str(clinic_id))
    return clinic


def get_member(session: Session, clinic_id: uuid.UUID, user_id: str) -> ClinicMember:
    member = session.execute(
        select(ClinicMember).where(
            ClinicMember.clinic_id == clinic_id, ClinicMember.user_id == user_id
        )
    ).scalar_one_or_none()
    if member is None:
        raise AggregateNotFound("ClinicMember", user_id)
    return member


def add_member(
    session: Session, *, clinic_id: uuid.UUID, user_id: str, role: MemberRole
) -> ClinicMember:
    existing = session.execute(
        select(ClinicMember.id).where(
            ClinicMember.clinic_id == clinic_id, ClinicMember.user_id == user_id
        )
    ).first()
    if existing is not None:
        raise InvariantViolation("User is already a member of this clinic")

    member = ClinicMember(
        clinic_id=clinic_id,
        user_id=user_id,
        role=MemberRole(role),
        status=MemberStatus.ACTIVE,
    )
    session.add(member)
    session.flush()
    return member


def update_member_role(
    session: Session, *, clinic_id: uuid.UUID, user_id: str, role: MemberRole
) -> ClinicMember:
    member = get_member(session, clinic_id, user_id)
    if member.status != MemberStatus.ACTIVE:
        raise InvariantViolation("Only active members can change role")
    member.role = MemberRole(role)
    session.flush()
    return member


def deactivate_member(session: Session, *, clinic_id: uuid.UUID, user_id: str) -> ClinicMember:
    member = get_member(session, clinic_id, user_id)
    if member.status == MemberStatus.INACTIVE:
        raise InvariantViolation("Member is already inactive")
    member.status = MemberStatus.INACTIVE
    session.flush()
    return member


def serialize_member(member: ClinicMember) -> dict[str, Any]:
    return {
        "id": str(member.id),
        "clinic_id": str(member.clinic_id),
        "user_id": member.user_id,
        "role": member.role.value,
        "status": member.status.value,
    }


def serialize_clinic(clinic: Clinic) -> dict[str, Any]:
    return {
        "id": str(clinic.id),
        "organization_id": str(clinic.organization_id),
        "name": clinic.name,
        "slug": clinic.slug,
        "phone": clinic.phone,
        "email": clinic.email,
        "timezone": clinic.timezone,
        "status": clinic.status.value,
    }


def signup(
    session: Session,
    *,
    organization_name: str,
    organization_slug: str,
    clinic_name: str,
    clinic_slug: str,
    admin_user_id: str,
    timezone: str | None = None,
) -> tuple[Organization, Clinic, ClinicMember]:
    """Create an organization, its first clinic and the admin in one unit of work."""

    organization = create_organization(session, name=organization_name, slug=organization_slug)
    clinic = create_clinic(
        session,
        organization_id=organization.id,
        name=clinic_name,
        slug=clinic_slug,
        timezone=timezone,
    )
    member = add_member(
        session, clinic_id=clinic.id, user_id=admin_user_id, role=MemberRole.ADMIN
    )
    logger.info(
        "organization signed up",
        extra={"organization_id": str(organization.id), "clinic_id": str(clinic.id)},
    )
    return organization, clinic, member


def create_invite(
    session: Session,
    *,
    clinic: Clinic,
    email: str,
    role: MemberRole,
    name: str | None = None,
    invited_by: str | None = None,
    now: datetime | None = None,
) -> ClinicInvite:
    now = ensure_utc(now or utcnow())
    email = email.strip().lower()
    pending = session.execute(
        select(ClinicInvite).where(
            ClinicInvite.clinic_id == clinic.id,
            ClinicInvite.email == email,
            ClinicInvite.accepted_at.is_(None),
        )
    ).scalars()
    if any(ensure_utc(invite.expires_at) > now for invite in pending):
        raise InvariantViolation(f"{email} already has a pending invite to this clinic")

    invite = ClinicInvite(
        tenant_id=clinic.organization_id,
        clinic_id=clinic.id,
        email=email,
        name=name,
        role=MemberRole(role),
        token=secrets.token_hex(32),
        invited_by=invited_by,
        expires_at=now + INVITE_TTL,
    )
    session.add(invite)
    session.flush()
    logger.info(
        "invite created",
        extra={"clinic_id": str(clinic.id), "role": invite.role.value},
    )
    return invite


def accept_invite(
    session: Session, *, token: str, user_id: str, now: datetime | None = None
) -> tuple[ClinicInvite, ClinicMember]:
    now = ensure_utc(now or utcnow())
    invite = session.execute(
        select(ClinicInvite).where(ClinicInvite.token == token)
    ).scalar_one_or_none()
    if invite is None:
        raise AggregateNotFound("Invite", "token")
    if invite.accepted_at is not None:
        raise InvariantViolation("Invite has already been used")
    if now > ensure_utc(invite.expires_at):
        raise InvariantViolation("Invite has expired")

    apply_tenant_scope(session, invite.tenant_id)
    member = add_member(session, clinic_id=invite.clinic_id, user_id=user_id, role=invite.role)
    invite.accepted_at = now
    invite.accepted_user_id = user_id
    session.flush()
    logger.info(
        "invite accepted",
        extra={"clinic_id": str(invite.clinic_id), "role": invite.role.value},
    )
    return invite, member


def serialize_invite(invite: ClinicInvite) -> dict[str, Any]:
    return {
        "id": str(invite.id),
        "clinic_id": str(invite.clinic_id),
        "email": invite.email,
        "name": invite.name,
        "role": invite.role.value,
        "expires_at": ensure_utc(invite.expires_at).isoformat(),
        "accepted_at": ensure_utc(invite.accepted_at).isoformat() if invite.accepted_at else None,
    }
