from __future__ import annotations

import asyncio
import contextlib
import html
import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request, Response
from fastapi.responses import HTMLResponse, PlainTextResponse
from sqlalchemy import select
from sqlalchemy.orm import Session

from .api import router as api_router
from .auth import get_db
from .config import get_settings
from .db import Newsletter, init_db
from .errors import InvalidRequest, LoopedInError, NotFound
from .media import MediaIngestor, get_media_ingestor
from .pipeline import handle_inbound
from .reminders import reminder_loop
from .sms import InboundSms, twiml_reply

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%SZ",
)
logger = logging.getLogger(__name__)


async def initialize_media_store() -> None:
    """Make sure the media bucket exists and is public (idempotent)."""
    ingestor = get_media_ingestor()
    if ingestor is None:
        logger.warning("S3_BUCKET_NAME not set; inbound media will not be stored")
        return
    try:
        await asyncio.to_thread(ingestor.store.initialize)
    except Exception:
        # uploads report their own errors
        logger.exception("Media bucket initialization failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: runs once before the app starts serving requests
    init_db()
    await initialize_media_store()

    reminder_task: asyncio.Task[None] | None = None
    if settings.reminders_enabled:
        reminder_task = asyncio.create_task(reminder_loop())
        logger.info(
            "Reminder scheduler started (every %ss, %s)",
            settings.reminder_interval_seconds,
            settings.reminder_timezone,
        )
    yield
    # Shutdown
    if reminder_task is not None:
        reminder_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await reminder_task


app = FastAPI(title="loopedin", version="0.1.0", lifespan=lifespan)
app.include_router(api_router)


@app.exception_handler(LoopedInError)
async def loopedin_error_handler(request: Request, exc: LoopedInError) -> PlainTextResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return PlainTextResponse(exc.message, status_code=exc.status_code)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> PlainTextResponse:
    logger.exception("Unhandled exception: %s", exc)
    return PlainTextResponse("Internal server error", status_code=500)


# --- SMS webhook ---


def get_ingestor() -> MediaIngestor | None:
    return get_media_ingestor()


@app.post("/sms/inbound")
async def sms_inbound(
    request: Request,
    db: Session = Depends(get_db),
    ingestor: MediaIngestor | None = Depends(get_ingestor),
) -> Response:
    """
    Twilio messaging webhook.

    Stores the message as an update in the sender's loop(s) and answers with
    TwiML containing the acknowledgement. Unknown senders and unknown [Loop]
    selectors get a 404 and no reply SMS.
    """
    form = await request.form()
    inbound = InboundSms.from_twilio_form(form)
    if not inbound.phone:
        raise InvalidRequest("Missing From")

    result = await handle_inbound(db=db, inbound=inbound, ingestor=ingestor)
    return Response(content=twiml_reply(result.reply_text), media_type="application/xml")


# --- Public newsletter page ---

NEWSLETTER_PAGE = """<!DOCTYPE html>
<html>
<head>
  <meta charset="UTF-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <title>{title}</title>
  <style>
    body {{ background: #f9fafb; font-family: system-ui, sans-serif; margin: 0; padding: 2rem 1rem; }}
    article {{ background: #fff; border-radius: 0.75rem; box-shadow: 0 4px 12px rgba(0,0,0,.08); max-width: 800px; margin: 0 auto; }}
    .newsletter-content {{ padding: 2rem; }}
    .newsletter-content h1 {{ font-size: 2.25rem; margin-bottom: 1.5rem; color: #1a1a1a; }}
    .newsletter-content h2 {{ font-size: 1.5rem; margin: 2rem 0 1rem; color: #2d3748; }}
    .newsletter-content h3 {{ font-size: 1.25rem; margin: 1.5rem 0 .75rem; color: #4a5568; }}
    .newsletter-content p {{ line-height: 1.6; margin-bottom: 1rem; }}
    .newsletter-content img {{ max-width: 100%; height: auto; border-radius: .5rem; margin: 1rem 0; }}
  </style>
</head>
<body>
  <article>
    {content}
  </article>
</body>
</html>"""


@app.get("/newsletters/{slug}", response_class=HTMLResponse)
def newsletter_page(slug: str, db: Session = Depends(get_db)) -> HTMLResponse:
    newsletter = db.scalars(select(Newsletter).where(Newsletter.slug == slug)).first()
    if newsletter is None:
        raise NotFound("Newsletter not found")

    title = html.escape(f"{newsletter.loop.name} Newsletter")
    return HTMLResponse(NEWSLETTER_PAGE.format(title=title, content=newsletter.content))
