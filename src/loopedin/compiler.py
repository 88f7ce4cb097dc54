from __future__ import annotations

import asyncio
import html
import logging
import secrets
import string
from dataclasses import dataclass
from datetime import date
from typing import Final

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from . import llm
from .db import Loop, Newsletter, NewsletterStatus, Update
from .errors import CollaboratorError, GenerationFailed, InvalidRequest, NotFound

logger = logging.getLogger(__name__)

SLUG_ALPHABET: Final[str] = string.ascii_letters + string.digits
SLUG_LENGTH: Final[int] = 10
MAX_SLUG_ATTEMPTS: Final[int] = 5


@dataclass
class CompileOptions:
    custom_header: str | None = None
    custom_closing: str | None = None


@dataclass
class UpdateForPrompt:
    author: str
    content: str
    media_urls: list[str]


def generate_slug() -> str:
    return "".join(secrets.choice(SLUG_ALPHABET) for _ in range(SLUG_LENGTH))


def render_update_block(update: UpdateForPrompt) -> str:
    paragraphs = "\n".join(
        f"<p>{html.escape(line)}</p>" for line in update.content.split("\n") if line.strip()
    )
    media = "\n".join(
        f'<figure><img src="{html.escape(url, quote=True)}" alt="Update media {i}" loading="lazy" /></figure>'
        for i, url in enumerate(update.media_urls, start=1)
    )
    return (
        '<div class="update-block">\n'
        f"<h3>Update from {html.escape(update.author)}</h3>\n"
        f'<div class="update-content">\n{paragraphs}\n</div>\n'
        f"{media}\n"
        "</div>"
    )


def build_prompt(
    loop_name: str, vibe: list[str], updates: list[UpdateForPrompt], options: CompileOptions
) -> str:
    tone = ", ".join(vibe) if vibe else "friendly"
    updates_html = "\n\n".join(render_update_block(u) for u in updates)
    header = f"Use this custom header: {options.custom_header}\n" if options.custom_header else ""
    closing = f"\nEnd with this closing: {options.custom_closing}\n" if options.custom_closing else ""

    return f"""Generate a newsletter for the group "{loop_name}" that includes all member updates.
The newsletter should have a {tone} tone.
{header}
Here are all the updates from members:

{updates_html}

Structure the newsletter as:
- an engaging title (<h1>)
- a short "Highlights" section (<h2>) with the themes running through the updates
- a "Member Updates" section (<h2>) with EVERY update in full
- a short "Looking Forward" section (<h2>)
{closing}
Rules:
- Output HTML only (<h1>, <h2>, <p>, ...), no markdown and no <html>/<body> wrapper.
- Include ALL member updates in their entirety; do not summarize or omit any of them.
- Preserve every <figure> and <img> tag exactly as provided.
- Keep a {tone} tone throughout."""


def wrap_newsletter(loop_name: str, body: str, generated_on: date | None = None) -> str:
    generated_on = generated_on or date.today()
    return f"""<div class="newsletter-content">
  <header class="newsletter-header">
    <h1>{html.escape(loop_name)}</h1>
    <div class="newsletter-date">Generated on {generated_on.strftime("%B %d, %Y")}</div>
  </header>

  <article class="newsletter-body">
{body}
  </article>

  <footer class="newsletter-footer">
    <p>This newsletter was put together by LoopedIn</p>
    <p>Want to contribute to the next one? Just reply to this message!</p>
  </footer>
</div>"""


def _load_loop_with_updates(db: Session, loop_id: int) -> Loop:
    stmt = (
        select(Loop)
        .options(selectinload(Loop.updates).selectinload(Update.user))
        .where(Loop.id == loop_id)
    )
    loop = db.scalars(stmt).first()
    if loop is None:
        raise NotFound("Loop not found")
    return loop


def _prepare_prompt(db: Session, loop_id: int, options: CompileOptions) -> tuple[str, str, int]:
    loop = _load_loop_with_updates(db, loop_id)
    if not loop.updates:
        raise InvalidRequest("No updates available for newsletter generation")

    updates = [
        UpdateForPrompt(author=u.user.display_name, content=u.content, media_urls=list(u.media_urls))
        for u in loop.updates
    ]
    return loop.name, build_prompt(loop.name, list(loop.vibe), updates, options), len(updates)


def _insert_draft(db: Session, loop_id: int, content: str) -> Newsletter:
    """Insert with a fresh slug; the unique constraint decides collisions."""
    for attempt in range(1, MAX_SLUG_ATTEMPTS + 1):
        newsletter = Newsletter(
            loop_id=loop_id,
            content=content,
            status=NewsletterStatus.DRAFT.value,
            slug=generate_slug(),
        )
        db.add(newsletter)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.warning("Newsletter slug collision (attempt %d), retrying", attempt)
            continue
        db.refresh(newsletter)
        return newsletter
    raise CollaboratorError("Could not allocate a unique newsletter slug")


async def compile_newsletter(
    db: Session, loop_id: int, options: CompileOptions | None = None
) -> Newsletter:
    """
    Turn every update of a loop into a draft newsletter.

    The row is only inserted once generation succeeded, so a failing LLM call
    leaves nothing behind.
    """
    options = options or CompileOptions()
    loop_name, prompt, update_count = await asyncio.to_thread(_prepare_prompt, db, loop_id, options)

    try:
        body = await llm.ask_llm(prompt)
    except Exception as e:
        logger.exception("Failed to generate newsletter for loop %s", loop_id)
        raise GenerationFailed() from e
    if not body:
        raise GenerationFailed()

    newsletter = await asyncio.to_thread(
        _insert_draft, db, loop_id, wrap_newsletter(loop_name, body)
    )
    logger.info(
        "Compiled newsletter %s (slug=%s) for loop %s from %d updates",
        newsletter.id,
        newsletter.slug,
        loop_id,
        update_count,
    )
    return newsletter


async def suggest_improvements(content: str, vibe: list[str]) -> str:
    tone = ", ".join(vibe) if vibe else "friendly"
    prompt = f"""Review this newsletter draft and suggest improvements to make it more engaging and aligned with a {tone} vibe:

{content}

Focus on:
1. Tone and voice consistency
2. Structure and flow
3. Engagement
4. Personal touches
5. Call-to-action

Provide specific, actionable suggestions as plain text."""
    try:
        return await llm.ask_llm(prompt)
    except Exception as e:
        logger.exception("Failed to get newsletter suggestions")
        raise CollaboratorError("Failed to analyze newsletter. Please try again later.") from e
