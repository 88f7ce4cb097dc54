from __future__ import annotations

from typing import Final, cast

from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from .config import get_settings

SYSTEM_PROMPT: Final[str] = (
    "You are the editor of a small private newsletter shared by a group of friends, "
    "family or colleagues. You turn short member updates sent by SMS into a warm, "
    "well-structured HTML newsletter. You never invent news, never drop an update, "
    "and you copy every <img> and <figure> tag exactly as given."
)

_model: ChatOpenAI | None = None


def get_model() -> ChatOpenAI:
    """
    Lazily create and cache a ChatOpenAI model.

    Relies on the OPENAI_API_KEY environment variable.
    """
    global _model
    if _model is None:
        _model = ChatOpenAI(
            model=get_settings().openai_model,
            temperature=0.7,
            max_tokens=2000,  # full newsletter bodies  # type: ignore[call-arg]
        )
    return _model


async def ask_llm(prompt: str, system_prompt: str = SYSTEM_PROMPT) -> str:
    """
    Call the LLM with a single instruction and return the text of its answer.
    """
    model = get_model()
    messages = [
        SystemMessage(content=system_prompt),
        HumanMessage(content=prompt),
    ]
    response = await model.ainvoke(messages)
    # For ChatOpenAI, response.content is always a string
    content = cast(str, response.content)  # type: ignore[reportUnknownMemberType]
    return content.strip()
