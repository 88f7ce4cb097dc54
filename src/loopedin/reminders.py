from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from .config import get_settings
from .db import Loop, LoopMember, SessionLocal
from .twilio_client import FanOutReport, fan_out

logger = logging.getLogger(__name__)

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

ONE_MINUTE = timedelta(minutes=1)
# Minutes further back than this are dropped instead of reminded late
MAX_CATCH_UP_MINUTES = 10


def local_now() -> datetime:
    return datetime.now(ZoneInfo(get_settings().reminder_timezone))


def is_due(schedule: list[dict[str, str]], now: datetime) -> bool:
    day = WEEKDAYS[now.weekday()]
    hhmm = now.strftime("%H:%M")
    return any(slot.get("day") == day and slot.get("time") == hhmm for slot in schedule)


def due_loops(db: Session, now: datetime) -> list[Loop]:
    """Loops with a reminder slot at this weekday and minute (read-only)."""
    stmt = select(Loop).options(selectinload(Loop.members).selectinload(LoopMember.user))
    return [loop for loop in db.scalars(stmt).all() if is_due(loop.reminder_schedule or [], now)]


def reminder_text(first_name: str, loop_name: str) -> str:
    return (
        f"Hi {first_name}! What's new with you? Reply with an update for {loop_name}. "
        f"Start your message with [{loop_name}] to share it only with this loop."
    )


def _collect_reminders(now: datetime) -> tuple[int, list[tuple[str, str]]]:
    db = SessionLocal()
    try:
        loops = due_loops(db, now)
        messages = [
            (member.user.phone_number, reminder_text(member.user.first_name, loop.name))
            for loop in loops
            for member in loop.members
            if member.user.phone_number
        ]
    finally:
        db.close()
    return len(loops), messages


async def send_reminders(now: datetime | None = None) -> FanOutReport:
    now = now or local_now()
    loop_count, messages = await asyncio.to_thread(_collect_reminders, now)

    if not messages:
        logger.debug("No reminders due at %s", now.isoformat())
        return FanOutReport()

    report = await fan_out(messages)
    logger.info(
        "Sent reminders for %d loop(s): attempted=%d succeeded=%d failed=%d",
        loop_count,
        report.attempted,
        report.succeeded,
        report.failed,
    )
    return report


def minutes_to_scan(last_scanned: datetime | None, now: datetime) -> list[datetime]:
    """
    Minute marks after `last_scanned` up to and including the minute of `now`.

    Stepping is done in UTC so DST changes neither repeat nor invent minutes.
    """
    current = now.replace(second=0, microsecond=0)
    if last_scanned is None:
        return [current]

    tz = now.tzinfo
    step = last_scanned.astimezone(UTC) + ONE_MINUTE
    end = current.astimezone(UTC)
    earliest = end - ONE_MINUTE * (MAX_CATCH_UP_MINUTES - 1)
    if step < earliest:
        logger.warning(
            "Reminder scheduler fell behind; skipping %s to %s",
            step.astimezone(tz).strftime("%H:%M"),
            (earliest - ONE_MINUTE).astimezone(tz).strftime("%H:%M"),
        )
        step = earliest

    minutes: list[datetime] = []
    while step <= end:
        minutes.append(step.astimezone(tz))
        step += ONE_MINUTE
    return minutes


async def reminder_loop(
    clock: Callable[[], datetime] = local_now,
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
) -> None:
    """
    Background task: scan every minute for due reminders.

    Ticks are aligned to the interval boundary and every minute since the last
    scan is covered, so slow ticks never skip a reminder slot.
    """
    interval = get_settings().reminder_interval_seconds
    last_scanned: datetime | None = None
    while True:
        for minute in minutes_to_scan(last_scanned, clock()):
            try:
                await send_reminders(minute)
            except Exception as e:
                logger.error("Error in reminder scheduler loop at %s: %s", minute.strftime("%H:%M"), e)
            last_scanned = minute

        await sleep(interval - clock().timestamp() % interval)
