"""User-facing text for terminal outcomes and progress notices.

Stage workers never send raw exception text or internal identifiers to a
chat. Every terminal failure goes through ``user_message_for`` so each
classification maps to exactly one friendly message.

Examples:
>>> "shorter" in user_message_for(ErrorKind.TIMEOUT, "video")
True
>>> user_message_for(ErrorKind.SAFETY_BLOCKED, "image").startswith("This image")
True
"""

from __future__ import annotations

from media_pipeline.constants import KIND_VIDEO
from media_pipeline.errors import ErrorKind


def _noun(kind: str) -> str:
    return "video" if kind == KIND_VIDEO else "image"


def user_message_for(kind_of_error: ErrorKind, media_kind: str) -> str:
    """Return the message shown to the user for a terminal failure."""
    noun = _noun(media_kind)
    if kind_of_error is ErrorKind.SAFETY_BLOCKED:
        return (
            f"This {noun} was blocked by the content safety filter, so I can't describe it. "
            "Please try a different one."
        )
    if kind_of_error is ErrorKind.FILE_TOO_LARGE:
        return f"This {noun} is too large for me to process. Please send a smaller file."
    if kind_of_error is ErrorKind.UNSUPPORTED_FORMAT:
        return f"I can't read this {noun} format. Please try a common format such as JPG, PNG or MP4."
    if kind_of_error is ErrorKind.TIMEOUT:
        if media_kind == KIND_VIDEO:
            return "Processing this video took too long. Please try a shorter or simpler clip."
        return "Processing this image took too long. Please try a simpler or smaller image."
    if kind_of_error is ErrorKind.SERVICE_UNAVAILABLE:
        return "The description service is temporarily overloaded. Please try again in a few minutes."
    if kind_of_error is ErrorKind.QUOTA:
        return "I've hit my usage limit for now. Please try again in a little while."
    if kind_of_error in (ErrorKind.FILE_EXPIRED, ErrorKind.FILE_FORBIDDEN):
        return f"Your {noun} expired before I could finish processing it. Please send it again."
    return f"Sorry, something went wrong while processing your {noun}. Please try again."


def empty_response_fallback(media_kind: str) -> str:
    return f"I couldn't generate a clear description for this {_noun(media_kind)}."


def progress_message(media_kind: str) -> str:
    return f"Still processing your {_noun(media_kind)}, hang on..."


def long_wait_message(media_kind: str) -> str:
    return f"Your {_noun(media_kind)} is taking longer than usual to process. I'll reply as soon as it's ready."


def media_disabled_message(media_kind: str) -> str:
    return f"{_noun(media_kind).capitalize()} descriptions are turned off in this conversation."
