from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from .db import Update
from .errors import InboundRejected, InboundState, UnknownSender
from .media import MediaIngestor
from .memberships import extract_group_token, memberships_for, select_targets, strip_group_token
from .phone_directory import resolve_user
from .sms import InboundSms

logger = logging.getLogger(__name__)


@dataclass
class InboundResult:
    state: InboundState
    reply_text: str
    update_ids: list[int] = field(default_factory=list)
    loop_ids: list[int] = field(default_factory=list)
    media_urls: list[str] = field(default_factory=list)


@dataclass
class _Targets:
    user_id: int
    loop_ids: list[int]
    loop_names: list[str]


def compose_ack(token_loop_name: str | None, target_count: int) -> str:
    """
    Reply sent back to the member:
      - explicit [Loop] -> "Thanks for your update to Loop!"
      - several loops   -> "Thanks for your updates to all your loops!"
      - otherwise       -> "Thanks for your update!"
    """
    message = "Thanks for your update"
    if token_loop_name is not None:
        message += f" to {token_loop_name}"
    elif target_count > 1:
        message += "s to all your loops"
    return message + "!"


def _advance(phone: str, state: InboundState) -> InboundState:
    logger.debug("Inbound SMS from %s: %s", phone, state.value)
    return state


def _resolve_targets(db: Session, phone: str, token: str | None) -> _Targets:
    user = resolve_user(db, phone)
    if user is None:
        logger.warning(
            "Received message from unknown number: %s (%s)", phone, InboundState.UNKNOWN_SENDER.value
        )
        raise UnknownSender()
    _advance(phone, InboundState.IDENTIFIED)

    try:
        targets = select_targets(memberships_for(db, user.id), token)
    except InboundRejected as e:
        logger.warning("Rejected inbound SMS from user %s (%s): %s", user.id, e.state.value, e)
        raise
    return _Targets(
        user_id=user.id,
        loop_ids=[m.loop_id for m in targets],
        loop_names=[m.loop.name for m in targets],
    )


def _store_updates(
    db: Session, user_id: int, loop_ids: list[int], content: str, media_urls: list[str]
) -> list[int]:
    """Write one Update per loop in a single commit and return their ids."""
    updates = [
        Update(loop_id=loop_id, user_id=user_id, content=content, media_urls=list(media_urls))
        for loop_id in loop_ids
    ]
    db.add_all(updates)
    db.flush()
    update_ids = [u.id for u in updates]
    db.commit()
    return update_ids


async def handle_inbound(
    db: Session, inbound: InboundSms, ingestor: MediaIngestor | None
) -> InboundResult:
    """
    Route one inbound SMS into Update rows.

    Raises an InboundRejected subclass for the terminal states (unknown sender,
    no memberships, unknown [Loop] token); nothing is written in those cases.
    Media failures only shrink the media list. Datastore work runs in a worker
    thread so the event loop keeps serving other requests.
    """
    _advance(inbound.phone, InboundState.RECEIVED)
    logger.info(
        "Inbound SMS from %s (%d media, %d chars)", inbound.phone, len(inbound.media), len(inbound.text)
    )

    # 1-2. Who sent it, and which loops does it go to?
    token = extract_group_token(inbound.text)
    targets = await asyncio.to_thread(_resolve_targets, db, inbound.phone, token)
    _advance(inbound.phone, InboundState.TARGETED)

    # 3. Copy media into our store (never fatal)
    media_urls: list[str] = []
    if inbound.media:
        if ingestor is None:
            logger.warning("Media storage not configured; dropping %d media items", len(inbound.media))
        else:
            media_urls = await ingestor.ingest(inbound.media)
    _advance(inbound.phone, InboundState.MEDIA_RESOLVED)

    # 4. One Update per target loop, committed together
    content = strip_group_token(inbound.text) if token is not None else inbound.text
    update_ids = await asyncio.to_thread(
        _store_updates, db, targets.user_id, targets.loop_ids, content, media_urls
    )
    _advance(inbound.phone, InboundState.PERSISTED)

    logger.info(
        "Saved %d updates for user %s (loops=%s, media=%d)",
        len(update_ids),
        targets.user_id,
        targets.loop_ids,
        len(media_urls),
    )

    # 5. Ack
    token_loop_name = targets.loop_names[0] if token is not None else None
    reply = compose_ack(token_loop_name, len(targets.loop_ids))
    return InboundResult(
        state=_advance(inbound.phone, InboundState.ACKED),
        reply_text=reply,
        update_ids=update_ids,
        loop_ids=targets.loop_ids,
        media_urls=media_urls,
    )
