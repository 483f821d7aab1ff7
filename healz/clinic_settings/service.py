"""Read and write clinic configuration sections."""

from __future__ import annotations

import logging
import uuid
from typing import Any, Literal

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.orm import Session

from healz.clinic_settings.schemas import (
    SECTION_SCHEMAS,
    CarolConfig,
    GeneralSettings,
    SchedulingSettings,
    ServicesSettings,
)
from healz.event_sourcing.errors import InvariantViolation
from healz.models import ClinicSetting

logger = logging.getLogger(__name__)

CAROL_DRAFT = "carol_draft"
CAROL_PUBLISHED = "carol_published"

CarolVersion = Literal["draft", "published"]


class ClinicSettingsService:
    """Each section is one JSON document per clinic, validated on the way in and out."""

    def get_section(
        self, session: Session, clinic_id: uuid.UUID | str, section: str
    ) -> BaseModel | None:
        schema = self._schema(section)
        row = self._row(session, clinic_id, section)
        if row is None:
            return None
        return schema.model_validate(row.data)

    def save_section(
        self,
        session: Session,
        *,
        tenant_id: uuid.UUID | str,
        clinic_id: uuid.UUID | str,
        section: str,
        data: dict[str, Any],
    ) -> BaseModel:
        document = self._schema(section).model_validate(data)
        self._upsert(session, tenant_id, clinic_id, section, document)
        return document

    def scheduling(self, session: Session, clinic_id: uuid.UUID | str) -> SchedulingSettings | None:
        return self.get_section(session, clinic_id, "scheduling")  # type: ignore[return-value]

    def services(self, session: Session, clinic_id: uuid.UUID | str) -> ServicesSettings:
        found = self.get_section(session, clinic_id, "services")
        return found if found is not None else ServicesSettings()  # type: ignore[return-value]

    def general(self, session: Session, clinic_id: uuid.UUID | str) -> GeneralSettings | None:
        return self.get_section(session, clinic_id, "general")  # type: ignore[return-value]

    def carol_config(
        self, session: Session, clinic_id: uuid.UUID | str, version: CarolVersion = "published"
    ) -> CarolConfig | None:
        row = self._row(session, clinic_id, CAROL_DRAFT if version == "draft" else CAROL_PUBLISHED)
        if row is None:
            return None
        return CarolConfig.model_validate(row.data)

    def save_carol_draft(
        self,
        session: Session,
        *,
        tenant_id: uuid.UUID | str,
        clinic_id: uuid.UUID | str,
        data: dict[str, Any],
    ) -> CarolConfig:
        config = CarolConfig.model_validate(data)
        self._upsert(session, tenant_id, clinic_id, CAROL_DRAFT, config)
        return config

    def publish_carol(
        self, session: Session, *, tenant_id: uuid.UUID | str, clinic_id: uuid.UUID | str
    ) -> CarolConfig:
        """Copy the draft over the published configuration."""

        draft = self.carol_config(session, clinic_id, "draft")
        if draft is None:
            raise InvariantViolation("There is no Carol draft to publish")
        self._upsert(session, tenant_id, clinic_id, CAROL_PUBLISHED, draft)
        logger.info("carol configuration published", extra={"clinic_id": str(clinic_id)})
        return draft

    @staticmethod
    def _schema(section: str) -> type[BaseModel]:
        try:
            return SECTION_SCHEMAS[section]
        except KeyError:
            raise ValueError(f"Unknown settings section {section!r}") from None

    @staticmethod
    def _row(session: Session, clinic_id: uuid.UUID | str, section: str) -> ClinicSetting | None:
        return session.execute(
            select(ClinicSetting).where(
                ClinicSetting.clinic_id == uuid.UUID(str(clinic_id)),
                ClinicSetting.section == section,
            )
        ).scalar_one_or_none()

    def _upsert(
        self,
        session: Session,
        tenant_id: uuid.UUID | str,
        clinic_id: uuid.UUID | str,
        section: str,
        document: BaseModel,
    ) -> ClinicSetting:
        data = document.model_dump(mode="json", by_alias=True)
        row = self._row(session, clinic_id, section)
        if row is None:
            row = ClinicSetting(
                tenant_id=uuid.UUID(str(tenant_id)),
                clinic_id=uuid.UUID(str(clinic_id)),
                section=section,
                data=data,
            )
            session.add(row)
        else:
            row.data = data
        session.flush()
        logger.info(
            "clinic settings saved",
            extra={"clinic_id": str(clinic_id), "section": section},
        )
        return row
