from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, Field
from twilio.twiml.messaging_response import MessagingResponse

from .media import MAX_MEDIA_ITEMS, MediaItem


class InboundSms(BaseModel):
    phone: str
    text: str
    media: list[MediaItem] = Field(default_factory=list)

    @classmethod
    def from_twilio_form(cls, form: Mapping[str, Any]) -> InboundSms:
        """
        Build from a Twilio messaging webhook form.

        Media arrive as indexed pairs MediaUrl0/MediaContentType0 .. 9; a pair
        missing either half is ignored.
        """
        media: list[MediaItem] = []
        for i in range(MAX_MEDIA_ITEMS):
            url = form.get(f"MediaUrl{i}")
            content_type = form.get(f"MediaContentType{i}")
            if url and content_type:
                media.append(MediaItem(url=str(url), content_type=str(content_type)))

        return cls(
            phone=str(form.get("From") or ""),
            text=str(form.get("Body") or ""),
            media=media,
        )


def twiml_reply(text: str) -> str:
    """TwiML document that makes Twilio answer the sender with `text`."""
    response = MessagingResponse()
    response.message(text)
    return str(response)
