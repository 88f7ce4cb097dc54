from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from .db import User

logger = logging.getLogger(__name__)


def normalize_phone(raw: str) -> str:
    """
    Canonical stored form of a phone number.

    Twilio delivers E.164 numbers ("+15551234567"); we store them without the
    leading "+" so that numbers entered by hand and numbers coming from the
    gateway compare equal.
    """
    phone = raw.strip()
    if phone.startswith("+"):
        phone = phone[1:]
    return phone


def to_e164(phone: str) -> str:
    """Outbound form expected by the SMS gateway."""
    phone = normalize_phone(phone)
    return f"+{phone}"


def resolve_user(db: Session, raw_phone: str) -> User | None:
    """Look up a user by phone number. Returns None for unknown numbers."""
    phone = normalize_phone(raw_phone)
    if not phone:
        return None
    return db.scalars(select(User).where(User.phone_number == phone)).first()
