"""Prompt selection for the analysis stage.

The user's own prompt wins. Without one, the description mode from the
conversation's configuration picks the long or short default for the media
kind.
"""
from __future__ import annotations

from media_pipeline.constants import KIND_VIDEO, MODE_LONG

IMAGE_PROMPT_LONG = (
    "Describe this image for someone who cannot see it. Start with the overall scene, "
    "then the people, objects, colours, any visible text, and the mood. Be precise and "
    "do not speculate beyond what is visible."
)
IMAGE_PROMPT_SHORT = (
    "Describe this image in two or three short sentences for someone who cannot see it. "
    "Mention any visible text."
)
VIDEO_PROMPT_LONG = (
    "Describe this video for someone who cannot see it. Narrate what happens in order, "
    "who appears, the setting, on-screen text, and relevant sounds or speech."
)
VIDEO_PROMPT_SHORT = (
    "Summarise this video in a few short sentences for someone who cannot see it, "
    "including any on-screen text or speech that matters."
)

SYSTEM_INSTRUCTION = (
    "You are an accessibility assistant that writes clear, plain-text descriptions of "
    "images and videos. Do not use markdown or emoji."
)


def build_prompt(kind: str, description_mode: str, user_prompt: str = "") -> str:
    if user_prompt and user_prompt.strip():
        return user_prompt.strip()
    long_mode = description_mode == MODE_LONG
    if kind == KIND_VIDEO:
        return VIDEO_PROMPT_LONG if long_mode else VIDEO_PROMPT_SHORT
    return IMAGE_PROMPT_LONG if long_mode else IMAGE_PROMPT_SHORT
