from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from twilio.rest import Client

from .config import get_settings
from .phone_directory import to_e164

logger = logging.getLogger(__name__)


def get_twilio_client() -> Client:
    settings = get_settings()

    if not settings.twilio_account_sid or not settings.twilio_auth_token:
        raise RuntimeError(
            "Twilio credentials are not configured (TWILIO_ACCOUNT_SID / TWILIO_AUTH_TOKEN)"
        )

    return Client(settings.twilio_account_sid, settings.twilio_auth_token)


def send_sms(to: str, body: str) -> None:
    """
    Send an SMS using the configured Twilio account.

    Raises on misconfiguration or gateway errors; best-effort callers count the
    failure themselves.
    """
    settings = get_settings()
    if not settings.twilio_from_number:
        raise RuntimeError("TWILIO_FROM_NUMBER is not configured")

    client = get_twilio_client()
    client.messages.create(
        to=to_e164(to),
        from_=settings.twilio_from_number,
        body=body,
    )


async def send_sms_async(to: str, body: str) -> None:
    await asyncio.to_thread(send_sms, to, body)


async def send_sms_best_effort(to: str, body: str) -> bool:
    """Send without raising; returns whether the gateway accepted the message."""
    try:
        await send_sms_async(to, body)
    except Exception:
        logger.exception("Failed to send SMS to %s", to)
        return False
    return True


@dataclass
class FanOutReport:
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0


async def fan_out(messages: list[tuple[str, str]]) -> FanOutReport:
    """
    Send (to, body) pairs concurrently. One failing recipient never blocks
    the others; failures only show up in the counts.
    """
    results = await asyncio.gather(*(send_sms_best_effort(to, body) for to, body in messages))
    succeeded = sum(1 for ok in results if ok)
    return FanOutReport(
        attempted=len(messages),
        succeeded=succeeded,
        failed=len(messages) - succeeded,
    )
