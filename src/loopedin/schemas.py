from __future__ import annotations

import re
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .db import Frequency
from .reminders import WEEKDAYS

TIME_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


class ReminderSlot(BaseModel):
    day: str
    time: str

    @field_validator("day")
    @classmethod
    def _valid_day(cls, v: str) -> str:
        day = v.strip().lower()
        if day not in WEEKDAYS:
            raise ValueError(f"day must be one of {', '.join(WEEKDAYS)}")
        return day

    @field_validator("time")
    @classmethod
    def _valid_time(cls, v: str) -> str:
        if not TIME_RE.match(v):
            raise ValueError("time must be HH:MM (24h)")
        return v


def _normalize_schedule(slots: list[ReminderSlot]) -> list[ReminderSlot]:
    days = [s.day for s in slots]
    if len(days) != len(set(days)):
        raise ValueError("reminder schedule allows one entry per weekday")
    return sorted(slots, key=lambda s: WEEKDAYS.index(s.day))


# --- Users / auth ---


class RegisterRequest(BaseModel):
    first_name: str = Field(min_length=1)
    last_name: str = ""
    phone_number: str = Field(min_length=4)
    email: str | None = None


class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    first_name: str
    last_name: str
    phone_number: str
    email: str | None = None
    is_privileged: bool


class RegisterResponse(BaseModel):
    user: UserOut
    api_token: str


# --- Loops ---


class LoopCreate(BaseModel):
    name: str = Field(min_length=1)
    frequency: Frequency
    vibe: list[str] = Field(default_factory=list)
    context: str | None = None
    reminder_schedule: list[ReminderSlot] = Field(default_factory=list)

    @field_validator("reminder_schedule")
    @classmethod
    def _schedule(cls, v: list[ReminderSlot]) -> list[ReminderSlot]:
        return _normalize_schedule(v)


class LoopUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    frequency: Frequency | None = None
    vibe: list[str] | None = None
    context: str | None = None
    reminder_schedule: list[ReminderSlot] | None = None

    @field_validator("reminder_schedule")
    @classmethod
    def _schedule(cls, v: list[ReminderSlot] | None) -> list[ReminderSlot] | None:
        return None if v is None else _normalize_schedule(v)


class MemberCreate(BaseModel):
    first_name: str = Field(min_length=1)
    last_name: str = ""
    phone_number: str = Field(min_length=4)
    email: str | None = None
    context: str | None = None


class MemberOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    loop_id: int
    user_id: int
    context: str | None = None
    created_at: datetime
    user: UserOut


class UpdateCreate(BaseModel):
    content: str = Field(min_length=1)
    media_urls: list[str] = Field(default_factory=list)


class UpdateOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    loop_id: int
    user_id: int
    content: str
    media_urls: list[str]
    created_at: datetime


class NewsletterOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    loop_id: int
    content: str
    status: str
    slug: str
    created_at: datetime
    updated_at: datetime
    sent_at: datetime | None = None


class LoopOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    frequency: str
    vibe: list[str]
    context: str | None = None
    reminder_schedule: list[dict[str, Any]]
    creator_id: int
    created_at: datetime


class LoopDetail(LoopOut):
    members: list[MemberOut] = Field(default_factory=list)
    updates: list[UpdateOut] = Field(default_factory=list)
    newsletters: list[NewsletterOut] = Field(default_factory=list)


class LoopSummary(LoopOut):
    member_count: int
    update_count: int
    last_newsletter: datetime | None = None


# --- Newsletters ---


class GenerateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    custom_header: str | None = Field(default=None, alias="customHeader")
    custom_closing: str | None = Field(default=None, alias="customClosing")


class GeneratedNewsletter(NewsletterOut):
    url: str


class NewsletterEdit(BaseModel):
    content: str = Field(min_length=1)


class NewsletterEditResponse(BaseModel):
    newsletter: NewsletterOut
    suggestions: str | None = None


class SendResponse(BaseModel):
    newsletter: NewsletterOut
    attempted: int
    succeeded: int
    failed: int


# --- Admin ---


class GrowthPoint(BaseModel):
    date: datetime
    count: int


class AdminStats(BaseModel):
    total_loops: int
    total_members: int
    loop_growth: list[GrowthPoint]
    member_growth: list[GrowthPoint]
