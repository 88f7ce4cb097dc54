from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Depends, Response
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from . import compiler, lifecycle
from . import loops as loop_service
from .auth import current_user, get_db, privileged_user
from .config import get_settings
from .db import Newsletter, User
from .schemas import (
    AdminStats,
    GeneratedNewsletter,
    GenerateRequest,
    LoopCreate,
    LoopDetail,
    LoopOut,
    LoopSummary,
    LoopUpdate,
    MemberCreate,
    MemberOut,
    NewsletterEdit,
    NewsletterEditResponse,
    NewsletterOut,
    RegisterRequest,
    RegisterResponse,
    SendResponse,
    UpdateCreate,
    UpdateOut,
    UserOut,
)
from .twilio_client import send_sms_best_effort

router = APIRouter(prefix="/api")


def welcome_text(loop_name: str) -> str:
    return (
        f"Welcome to {loop_name}! You're now connected with your group through LoopedIn. "
        "Share your updates by replying to this message, and we'll include them in the next newsletter!"
    )


# --- Users ---


@router.post("/register", response_model=RegisterResponse, status_code=201)
def register(payload: RegisterRequest, db: Session = Depends(get_db)) -> RegisterResponse:
    user = loop_service.register_user(
        db,
        first_name=payload.first_name,
        last_name=payload.last_name,
        phone_number=payload.phone_number,
        email=payload.email,
    )
    return RegisterResponse(user=UserOut.model_validate(user), api_token=user.api_token or "")


@router.get("/me", response_model=UserOut)
def me(user: User = Depends(current_user)) -> UserOut:
    return UserOut.model_validate(user)


# --- Loops ---


@router.get("/loops", response_model=list[LoopDetail])
def list_loops(user: User = Depends(current_user), db: Session = Depends(get_db)) -> list[LoopDetail]:
    return [LoopDetail.model_validate(loop) for loop in loop_service.loops_created_by(db, user)]


@router.get("/loops/{loop_id}", response_model=LoopDetail)
def get_loop(
    loop_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)
) -> LoopDetail:
    return LoopDetail.model_validate(loop_service.get_owned_loop(db, loop_id, user))


@router.post("/loops", response_model=LoopDetail, status_code=201)
def create_loop(
    payload: LoopCreate,
    background_tasks: BackgroundTasks,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
) -> LoopDetail:
    loop = loop_service.create_loop(db, payload, user)
    out = LoopDetail.model_validate(loop)
    background_tasks.add_task(send_sms_best_effort, user.phone_number, welcome_text(out.name))
    return out


@router.put("/loops/{loop_id}", response_model=LoopOut)
def update_loop(
    loop_id: int,
    payload: LoopUpdate,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
) -> LoopOut:
    loop = loop_service.get_owned_loop(db, loop_id, user)
    return LoopOut.model_validate(loop_service.update_loop(db, loop, payload))


@router.delete("/loops/{loop_id}")
def delete_loop(
    loop_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)
) -> dict[str, str]:
    loop_service.delete_loop(db, loop_service.get_owned_loop(db, loop_id, user))
    return {"message": "Loop and all associated data deleted"}


# --- Members ---


@router.post("/loops/{loop_id}/members", response_model=MemberOut, status_code=201)
def add_member(
    loop_id: int,
    payload: MemberCreate,
    background_tasks: BackgroundTasks,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
) -> MemberOut:
    loop = loop_service.get_owned_loop(db, loop_id, user)
    member = loop_service.add_member(db, loop, payload)
    out = MemberOut.model_validate(member)
    background_tasks.add_task(send_sms_best_effort, out.user.phone_number, welcome_text(loop.name))
    return out


@router.delete("/loops/{loop_id}/members/{member_id}")
def remove_member(
    loop_id: int,
    member_id: int,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
) -> dict[str, str]:
    loop_service.remove_member(db, loop_service.get_owned_loop(db, loop_id, user), member_id)
    return {"message": "Member removed successfully"}


# --- Updates ---


@router.post("/loops/{loop_id}/updates", response_model=UpdateOut, status_code=201)
def create_update(
    loop_id: int,
    payload: UpdateCreate,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
) -> UpdateOut:
    loop = loop_service.get_loop(db, loop_id)
    update = loop_service.create_update(db, loop, user, payload.content, payload.media_urls)
    return UpdateOut.model_validate(update)


@router.delete("/loops/{loop_id}/updates/{update_id}")
def delete_update(
    loop_id: int,
    update_id: int,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
) -> dict[str, str]:
    loop_service.delete_update(db, loop_id, update_id, user)
    return {"message": "Update deleted successfully"}


# --- Newsletters (privileged) ---


def _with_url(newsletter: Newsletter) -> GeneratedNewsletter:
    data = NewsletterOut.model_validate(newsletter).model_dump()
    return GeneratedNewsletter(**data, url=f"/newsletters/{newsletter.slug}")


def _draft_ready_notice(newsletter: Newsletter) -> tuple[GeneratedNewsletter, str, str]:
    """Response body plus the creator's phone and the SMS telling them a draft is waiting."""
    loop = newsletter.loop
    preview_url = get_settings().newsletter_url(newsletter.slug)
    text = f"Your {loop.name} newsletter draft is ready for review. Check it out here: {preview_url}"
    return _with_url(newsletter), loop.creator.phone_number, text


@router.post(
    "/loops/{loop_id}/newsletters/generate", response_model=GeneratedNewsletter, status_code=201
)
async def generate_newsletter(
    loop_id: int,
    payload: GenerateRequest | None = None,
    _: User = Depends(privileged_user),
    db: Session = Depends(get_db),
) -> GeneratedNewsletter:
    payload = payload or GenerateRequest()
    newsletter = await compiler.compile_newsletter(
        db,
        loop_id,
        compiler.CompileOptions(
            custom_header=payload.custom_header, custom_closing=payload.custom_closing
        ),
    )
    out, creator_phone, notice = await run_in_threadpool(_draft_ready_notice, newsletter)
    await send_sms_best_effort(creator_phone, notice)
    return out


@router.get("/loops/{loop_id}/newsletters", response_model=list[NewsletterOut])
def list_newsletters(
    loop_id: int, _: User = Depends(privileged_user), db: Session = Depends(get_db)
) -> list[NewsletterOut]:
    loop = loop_service.get_loop(db, loop_id)
    return [NewsletterOut.model_validate(n) for n in loop.newsletters]


@router.get("/loops/{loop_id}/newsletters/{newsletter_id}/preview", response_model=GeneratedNewsletter)
def preview_newsletter(
    loop_id: int,
    newsletter_id: int,
    _: User = Depends(privileged_user),
    db: Session = Depends(get_db),
) -> GeneratedNewsletter:
    return _with_url(lifecycle.get_newsletter(db, loop_id, newsletter_id))


def _edit(db: Session, loop_id: int, newsletter_id: int, content: str) -> tuple[NewsletterOut, list[str]]:
    newsletter = lifecycle.edit_content(db, loop_id, newsletter_id, content)
    return NewsletterOut.model_validate(newsletter), list(newsletter.loop.vibe)


@router.put("/loops/{loop_id}/newsletters/{newsletter_id}", response_model=NewsletterEditResponse)
async def edit_newsletter(
    loop_id: int,
    newsletter_id: int,
    payload: NewsletterEdit,
    suggest: bool = False,
    _: User = Depends(privileged_user),
    db: Session = Depends(get_db),
) -> NewsletterEditResponse:
    out, vibe = await run_in_threadpool(_edit, db, loop_id, newsletter_id, payload.content)
    suggestions = None
    if suggest:
        suggestions = await compiler.suggest_improvements(payload.content, vibe)
    return NewsletterEditResponse(newsletter=out, suggestions=suggestions)


@router.post("/loops/{loop_id}/newsletters/{newsletter_id}/finalize", response_model=NewsletterOut)
def finalize_newsletter(
    loop_id: int,
    newsletter_id: int,
    _: User = Depends(privileged_user),
    db: Session = Depends(get_db),
) -> NewsletterOut:
    return NewsletterOut.model_validate(lifecycle.finalize(db, loop_id, newsletter_id))


@router.post("/loops/{loop_id}/newsletters/{newsletter_id}/send", response_model=SendResponse)
async def send_newsletter(
    loop_id: int,
    newsletter_id: int,
    _: User = Depends(privileged_user),
    db: Session = Depends(get_db),
) -> SendResponse:
    result = await lifecycle.send(db, loop_id, newsletter_id)
    return SendResponse(
        newsletter=NewsletterOut.model_validate(result.newsletter),
        attempted=result.report.attempted,
        succeeded=result.report.succeeded,
        failed=result.report.failed,
    )


# --- Admin (privileged) ---


@router.get("/admin/loops", response_model=list[LoopSummary])
def admin_loops(
    search: str | None = None,
    sort: str = "recent",
    _: User = Depends(privileged_user),
    db: Session = Depends(get_db),
) -> list[LoopSummary]:
    return loop_service.admin_loop_summaries(db, search=search, sort=sort)


@router.get("/admin/loops/{loop_id}", response_model=LoopDetail)
def admin_loop(
    loop_id: int, _: User = Depends(privileged_user), db: Session = Depends(get_db)
) -> LoopDetail:
    return LoopDetail.model_validate(loop_service.loop_detail(db, loop_id))


@router.get("/admin/stats", response_model=AdminStats)
def admin_stats(_: User = Depends(privileged_user), db: Session = Depends(get_db)) -> AdminStats:
    return loop_service.admin_stats(db)


@router.get("/health", include_in_schema=False)
def health() -> Response:
    return Response(content="ok", media_type="text/plain")
