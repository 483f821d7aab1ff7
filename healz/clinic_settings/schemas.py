"""Validated shapes of the clinic configuration sections."""

from __future__ import annotations

import datetime as dt
import re
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

WEEKDAYS = (
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
    "sunday",
)

_HHMM = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


def parse_hhmm(value: str) -> dt.time:
    hours, minutes = value.split(":")
    return dt.time(int(hours), int(minutes))


class TimeRange(BaseModel):
    """A ``from``/``to`` window in clinic local time, as ``HH:MM``."""

    model_config = ConfigDict(populate_by_name=True)

    start: str = Field(alias="from")
    end: str = Field(alias="to")

    @field_validator("start", "end")
    @classmethod
    def _check_format(cls, value: str) -> str:
        if not _HHMM.match(value):
            raise ValueError("Time must use the HH:MM format")
        return value

    @model_validator(mode="after")
    def _check_order(self) -> "TimeRange":
        if parse_hhmm(self.start) >= parse_hhmm(self.end):
            raise ValueError("Time range must end after it starts")
        return self

    @property
    def opens(self) -> dt.time:
        return parse_hhmm(self.start)

    @property
    def closes(self) -> dt.time:
        return parse_hhmm(self.end)


class DaySchedule(BaseModel):
    day: Literal[
        "monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"
    ]
    is_open: bool = False
    time_slots: list[TimeRange] = Field(default_factory=list)


class SpecificBlock(TimeRange):
    date: dt.date
    reason: str | None = None


class SchedulingSettings(BaseModel):
    weekly_schedule: list[DaySchedule] = Field(default_factory=list)
    default_appointment_duration: int = Field(default=30, ge=1)
    minimum_advance_hours: int = Field(default=0, ge=0)
    max_future_days: int = Field(default=90, ge=1)
    specific_blocks: list[SpecificBlock] = Field(default_factory=list)

    @field_validator("weekly_schedule")
    @classmethod
    def _one_entry_per_day(cls, days: list[DaySchedule]) -> list[DaySchedule]:
        seen = [day.day for day in days]
        if len(seen) != len(set(seen)):
            raise ValueError("Each weekday may appear only once")
        return days

    def day(self, weekday: int) -> DaySchedule | None:
        name = WEEKDAYS[weekday]
        for entry in self.weekly_schedule:
            if entry.day == name:
                return entry
        return None


class ClinicService(BaseModel):
    id: str
    title: str = Field(min_length=1)
    description: str = ""
    duration: int = Field(default=30, ge=1)
    value: str | None = None
    note: str | None = None


class ServicesSettings(BaseModel):
    services: list[ClinicService] = Field(default_factory=list)


class Address(BaseModel):
    street: str
    number: str
    complement: str | None = None
    neighborhood: str | None = None
    city: str
    state: str
    zip_code: str
    country: str = "BR"

    def one_line(self) -> str:
        neighborhood = f" - {self.neighborhood}" if self.neighborhood else ""
        return f"{self.street}, {self.number}{neighborhood}, {self.city}/{self.state}"


class GeneralSettings(BaseModel):
    name: str | None = Field(default=None, max_length=255)
    description: str | None = None
    address: Address | None = None


class NotificationToggles(BaseModel):
    new_booking: bool = True
    risk_of_loss: bool = True


class NotificationsSettings(BaseModel):
    notification_settings: NotificationToggles = Field(default_factory=NotificationToggles)
    alert_channels: list[Literal["whatsapp", "email"]] = Field(default_factory=list)
    phone_numbers: list[str] = Field(default_factory=list)


class CarolSchedulingRules(BaseModel):
    confirm_before_scheduling: bool = True
    allow_cancellation: bool = True
    allow_rescheduling: bool = True
    post_scheduling_message: str | None = None


class CarolConfig(BaseModel):
    name: str = Field(default="Carol", min_length=1, max_length=100)
    selected_traits: list[str] = Field(default_factory=list)
    voice_tone: Literal["formal", "informal", "empathetic"] = "empathetic"
    greeting: str | None = None
    restrict_sensitive_topics: bool = True
    scheduling_rules: CarolSchedulingRules = Field(default_factory=CarolSchedulingRules)


SECTION_SCHEMAS: dict[str, type[BaseModel]] = {
    "general": GeneralSettings,
    "services": ServicesSettings,
    "scheduling": SchedulingSettings,
    "notifications": NotificationsSettings,
}
