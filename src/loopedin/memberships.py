from __future__ import annotations

import re
from collections.abc import Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session, joinedload

from .db import LoopMember
from .errors import NoMemberships, UnknownGroupToken

# First bracketed token in the body, e.g. "[Book Club] we finished chapter 3"
GROUP_TOKEN_RE = re.compile(r"\[(.*?)\]")


def extract_group_token(body: str) -> str | None:
    match = GROUP_TOKEN_RE.search(body)
    if match is None:
        return None
    return match.group(1).strip()


def strip_group_token(body: str) -> str:
    """
    Remove the group selector from a message body.

    Falls back to the untouched body when nothing but the selector was sent.
    """
    stripped = GROUP_TOKEN_RE.sub("", body, count=1).strip()
    return stripped or body


def memberships_for(db: Session, user_id: int) -> list[LoopMember]:
    """All memberships of a user, with their loop loaded."""
    stmt = (
        select(LoopMember)
        .options(joinedload(LoopMember.loop))
        .where(LoopMember.user_id == user_id)
        .order_by(LoopMember.id)
    )
    return list(db.scalars(stmt).all())


def select_targets(memberships: Sequence[LoopMember], token: str | None) -> list[LoopMember]:
    """
    Pick the memberships an inbound message is posted to.

    - no memberships at all -> NoMemberships
    - no token -> every membership
    - token -> memberships whose loop name matches case-insensitively; an
      explicit token matching nothing is rejected rather than widened to all.
    """
    if not memberships:
        raise NoMemberships()

    if token is None:
        return list(memberships)

    wanted = token.casefold()
    targets = [m for m in memberships if m.loop.name.casefold() == wanted]
    if not targets:
        raise UnknownGroupToken(f"Specified loop not found: {token}")
    return targets
