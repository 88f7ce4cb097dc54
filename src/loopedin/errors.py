"""
Exception hierarchy shared by the services and the HTTP layer.

Each error carries the HTTP status it maps to; the app renders the message as a
plain-text body. Collaborator failures hide their cause behind a generic message
(the cause is logged where it is caught).
"""

from __future__ import annotations

from enum import Enum


class InboundState(str, Enum):
    """Progress of a single inbound SMS through the router."""

    RECEIVED = "received"
    IDENTIFIED = "identified"
    TARGETED = "targeted"
    MEDIA_RESOLVED = "media_resolved"
    PERSISTED = "persisted"
    ACKED = "acked"
    # terminal failures
    UNKNOWN_SENDER = "unknown_sender"
    NO_MEMBERSHIPS = "no_memberships"
    UNKNOWN_GROUP_TOKEN = "unknown_group_token"


class LoopedInError(Exception):
    status_code: int = 500
    default_message: str = "Internal server error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)
        self.message = message or self.default_message


class InvalidRequest(LoopedInError):
    status_code = 400
    default_message = "Invalid request"


class NotAuthenticated(LoopedInError):
    status_code = 401
    default_message = "Not authenticated"


class Forbidden(LoopedInError):
    status_code = 403
    default_message = "Not authorized"


class NotFound(LoopedInError):
    status_code = 404
    default_message = "Not found"


class InvalidTransition(LoopedInError):
    status_code = 409
    default_message = "Invalid newsletter status transition"


class CollaboratorError(LoopedInError):
    """An external service (LLM, SMS gateway, object store) failed."""

    status_code = 500


class GenerationFailed(CollaboratorError):
    default_message = "Failed to generate newsletter"


# --- Inbound router terminal states ---


class InboundRejected(NotFound):
    state: InboundState


class UnknownSender(InboundRejected):
    state = InboundState.UNKNOWN_SENDER
    default_message = "User not found"


class NoMemberships(InboundRejected):
    state = InboundState.NO_MEMBERSHIPS
    default_message = "No loops found for user"


class UnknownGroupToken(InboundRejected):
    state = InboundState.UNKNOWN_GROUP_TOKEN
    default_message = "Specified loop not found"
