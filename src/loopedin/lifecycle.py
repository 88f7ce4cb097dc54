"""
Newsletter state machine and delivery.

    draft --finalize--> finalized --send--> sent

Content can only be replaced while a newsletter is a draft. Every transition
is a conditional UPDATE on the current status, so a lost race (two admins
pressing "send") is rejected instead of delivering twice.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from sqlalchemy import select, update
from sqlalchemy.orm import Session, joinedload

from .config import get_settings
from .db import LoopMember, Newsletter, NewsletterStatus, utcnow
from .errors import InvalidTransition, NotFound
from .twilio_client import FanOutReport, fan_out

logger = logging.getLogger(__name__)


@dataclass
class SendResult:
    newsletter: Newsletter
    report: FanOutReport


def get_newsletter(db: Session, loop_id: int, newsletter_id: int) -> Newsletter:
    newsletter = db.scalars(
        select(Newsletter).where(Newsletter.id == newsletter_id, Newsletter.loop_id == loop_id)
    ).first()
    if newsletter is None:
        raise NotFound("Newsletter not found")
    return newsletter


def _transition(
    db: Session,
    newsletter: Newsletter,
    expected: NewsletterStatus,
    values: dict[str, object],
    error: str,
) -> Newsletter:
    result = db.execute(
        update(Newsletter)
        .where(Newsletter.id == newsletter.id, Newsletter.status == expected.value)
        .values(**values)
    )
    if result.rowcount != 1:  # type: ignore[attr-defined]
        db.rollback()
        raise InvalidTransition(error)
    db.commit()
    db.refresh(newsletter)
    return newsletter


def edit_content(db: Session, loop_id: int, newsletter_id: int, content: str) -> Newsletter:
    newsletter = get_newsletter(db, loop_id, newsletter_id)
    return _transition(
        db,
        newsletter,
        NewsletterStatus.DRAFT,
        {"content": content, "updated_at": utcnow()},
        "Only draft newsletters can be edited",
    )


def finalize(db: Session, loop_id: int, newsletter_id: int) -> Newsletter:
    newsletter = get_newsletter(db, loop_id, newsletter_id)
    newsletter = _transition(
        db,
        newsletter,
        NewsletterStatus.DRAFT,
        {"status": NewsletterStatus.FINALIZED.value, "updated_at": utcnow()},
        "Only draft newsletters can be finalized",
    )
    logger.info("Newsletter %s finalized", newsletter.id)
    return newsletter


def send_message_for(loop_name: str, slug: str) -> str:
    url = get_settings().newsletter_url(slug)
    return f"New update from {loop_name}! Read it here: {url}"


def _claim_for_sending(
    db: Session, loop_id: int, newsletter_id: int
) -> tuple[Newsletter, list[tuple[str, str]]]:
    """
    Load the recipients, then move finalized -> sent.

    Recipients are read first so a failing member query leaves the newsletter
    finalized and sendable again.
    """
    newsletter = get_newsletter(db, loop_id, newsletter_id)
    members = db.scalars(
        select(LoopMember).options(joinedload(LoopMember.user)).where(LoopMember.loop_id == loop_id)
    ).all()
    body = send_message_for(newsletter.loop.name, newsletter.slug)
    messages = [(m.user.phone_number, body) for m in members if m.user.phone_number]

    now = utcnow()
    newsletter = _transition(
        db,
        newsletter,
        NewsletterStatus.FINALIZED,
        {"status": NewsletterStatus.SENT.value, "sent_at": now, "updated_at": now},
        "Only finalized newsletters can be sent",
    )
    return newsletter, messages


async def send(db: Session, loop_id: int, newsletter_id: int) -> SendResult:
    """
    Deliver a finalized newsletter to every member with a phone number.

    The newsletter is marked sent before fan-out starts; per-member SMS
    failures are counted, never raised.
    """
    newsletter, messages = await asyncio.to_thread(_claim_for_sending, db, loop_id, newsletter_id)

    report = await fan_out(messages)
    logger.info(
        "Newsletter %s sent: attempted=%d succeeded=%d failed=%d",
        newsletter.id,
        report.attempted,
        report.succeeded,
        report.failed,
    )
    return SendResult(newsletter=newsletter, report=report)
