from __future__ import annotations

import logging
import secrets

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from .db import Loop, LoopMember, Newsletter, Update, User
from .errors import Forbidden, InvalidRequest, NotFound
from .phone_directory import normalize_phone, resolve_user
from .schemas import AdminStats, GrowthPoint, LoopCreate, LoopSummary, LoopUpdate, MemberCreate

logger = logging.getLogger(__name__)

CREATOR_CONTEXT = "Loop Creator"


def new_api_token() -> str:
    return secrets.token_urlsafe(32)


# --- Users ---


def register_user(
    db: Session,
    first_name: str,
    last_name: str,
    phone_number: str,
    email: str | None = None,
    privileged: bool = False,
) -> User:
    """Self-registration; the phone number must not be taken yet."""
    user = User(
        first_name=first_name,
        last_name=last_name,
        phone_number=normalize_phone(phone_number),
        email=email or None,
        is_privileged=privileged,
        api_token=new_api_token(),
    )
    db.add(user)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise InvalidRequest("Phone number or email already registered")
    db.refresh(user)
    return user


def get_or_create_user(db: Session, data: MemberCreate) -> User:
    """
    Find a user by phone, creating it if needed.

    The unique constraint on phone_number is the real guard: we insert first
    and fall back to reading the existing row when another request won.
    """
    phone = normalize_phone(data.phone_number)
    user = User(
        first_name=data.first_name,
        last_name=data.last_name,
        phone_number=phone,
        email=data.email or None,
    )
    db.add(user)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = resolve_user(db, phone)
        if existing is None:
            # Conflict was on email, not phone
            raise InvalidRequest("Email already belongs to another user")
        return existing
    db.refresh(user)
    return user


# --- Loops ---


def get_loop(db: Session, loop_id: int) -> Loop:
    loop = db.get(Loop, loop_id)
    if loop is None:
        raise NotFound("Loop not found")
    return loop


def get_owned_loop(db: Session, loop_id: int, user: User) -> Loop:
    loop = get_loop(db, loop_id)
    if loop.creator_id != user.id:
        raise Forbidden()
    return loop


def loops_created_by(db: Session, user: User) -> list[Loop]:
    stmt = select(Loop).where(Loop.creator_id == user.id).order_by(Loop.created_at.desc())
    return list(db.scalars(stmt).all())


def create_loop(db: Session, data: LoopCreate, creator: User) -> Loop:
    """Create a loop and its creator membership in one transaction."""
    loop = Loop(
        name=data.name.strip(),
        frequency=data.frequency.value,
        vibe=list(data.vibe),
        context=data.context,
        reminder_schedule=[slot.model_dump() for slot in data.reminder_schedule],
        creator_id=creator.id,
    )
    loop.members.append(LoopMember(user_id=creator.id, context=CREATOR_CONTEXT))
    db.add(loop)
    db.commit()
    db.refresh(loop)
    logger.info("Loop %s (%s) created by user %s", loop.id, loop.name, creator.id)
    return loop


def update_loop(db: Session, loop: Loop, data: LoopUpdate) -> Loop:
    if data.name is not None:
        loop.name = data.name.strip()
    if data.frequency is not None:
        loop.frequency = data.frequency.value
    if data.vibe is not None:
        loop.vibe = list(data.vibe)
    if data.context is not None:
        loop.context = data.context
    if data.reminder_schedule is not None:
        loop.reminder_schedule = [slot.model_dump() for slot in data.reminder_schedule]
    db.commit()
    db.refresh(loop)
    return loop


def delete_loop(db: Session, loop: Loop) -> None:
    """Members, updates and newsletters go with the loop."""
    db.delete(loop)
    db.commit()
    logger.info("Loop %s deleted", loop.id)


# --- Members ---


def add_member(db: Session, loop: Loop, data: MemberCreate) -> LoopMember:
    user = get_or_create_user(db, data)
    member = LoopMember(loop_id=loop.id, user_id=user.id, context=data.context)
    db.add(member)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise InvalidRequest("User is already a member of this loop")
    db.refresh(member)
    return member


def remove_member(db: Session, loop: Loop, member_id: int) -> None:
    member = db.scalars(
        select(LoopMember).where(LoopMember.id == member_id, LoopMember.loop_id == loop.id)
    ).first()
    if member is None:
        raise NotFound("Member not found")
    if member.user_id == loop.creator_id:
        raise InvalidRequest("The loop creator cannot be removed")
    db.delete(member)
    db.commit()


def is_member(db: Session, loop_id: int, user_id: int) -> bool:
    stmt = select(LoopMember.id).where(LoopMember.loop_id == loop_id, LoopMember.user_id == user_id)
    return db.scalars(stmt).first() is not None


# --- Updates ---


def create_update(db: Session, loop: Loop, author: User, content: str, media_urls: list[str]) -> Update:
    if not is_member(db, loop.id, author.id):
        raise Forbidden("Only loop members can post updates")
    update = Update(loop_id=loop.id, user_id=author.id, content=content, media_urls=list(media_urls))
    db.add(update)
    db.commit()
    db.refresh(update)
    return update


def delete_update(db: Session, loop_id: int, update_id: int, user: User) -> None:
    update = db.scalars(
        select(Update).where(Update.id == update_id, Update.loop_id == loop_id)
    ).first()
    if update is None:
        raise NotFound("Update not found")
    loop = get_loop(db, loop_id)
    if update.user_id != user.id and loop.creator_id != user.id:
        raise Forbidden("Not authorized to delete this update")
    db.delete(update)
    db.commit()


# --- Admin aggregation ---


def loop_detail(db: Session, loop_id: int) -> Loop:
    stmt = (
        select(Loop)
        .options(
            selectinload(Loop.members).selectinload(LoopMember.user),
            selectinload(Loop.updates),
            selectinload(Loop.newsletters),
        )
        .where(Loop.id == loop_id)
    )
    loop = db.scalars(stmt).first()
    if loop is None:
        raise NotFound("Loop not found")
    return loop


def admin_loop_summaries(db: Session, search: str | None = None, sort: str = "recent") -> list[LoopSummary]:
    member_count = (
        select(func.count(LoopMember.id)).where(LoopMember.loop_id == Loop.id).scalar_subquery()
    )
    update_count = select(func.count(Update.id)).where(Update.loop_id == Loop.id).scalar_subquery()
    last_sent = select(func.max(Newsletter.sent_at)).where(Newsletter.loop_id == Loop.id).scalar_subquery()

    stmt = select(Loop, member_count, update_count, last_sent)
    if search and search.strip():
        stmt = stmt.where(Loop.name.ilike(f"%{search.strip()}%"))
    stmt = stmt.order_by(Loop.name) if sort == "name" else stmt.order_by(Loop.created_at.desc())

    summaries: list[LoopSummary] = []
    for loop, members, updates, last in db.execute(stmt).all():
        summaries.append(
            LoopSummary.model_validate(
                {
                    "id": loop.id,
                    "name": loop.name,
                    "frequency": loop.frequency,
                    "vibe": loop.vibe,
                    "context": loop.context,
                    "reminder_schedule": loop.reminder_schedule,
                    "creator_id": loop.creator_id,
                    "created_at": loop.created_at,
                    "member_count": members,
                    "update_count": updates,
                    "last_newsletter": last,
                }
            )
        )
    return summaries


def admin_stats(db: Session) -> AdminStats:
    loops = db.scalars(
        select(Loop).options(selectinload(Loop.members)).order_by(Loop.created_at.desc())
    ).all()
    return AdminStats(
        total_loops=len(loops),
        total_members=sum(len(loop.members) for loop in loops),
        loop_growth=[GrowthPoint(date=loop.created_at, count=1) for loop in loops],
        member_growth=[GrowthPoint(date=loop.created_at, count=len(loop.members)) for loop in loops],
    )
