"""Inference client boundary and the Gemini adapter.

Stages only depend on the ``InferenceClient`` protocol:

- ``upload(path, mime_type) -> FileRef``
- ``get_file_status(file_name) -> FileStatus``
- ``delete_file(file_name) -> None``
- ``generate(prompt_parts, model_config) -> str``

Implementations raise ``InferenceError`` with an explicit ``ErrorKind`` so the
stages never have to read error messages. ``GeminiInferenceClient`` maps the
``google-generativeai`` SDK onto this protocol and keeps its model objects in
an LRU ``ModelCache``.
"""
from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Optional, Protocol, Sequence, Union

from media_pipeline.config import Settings
from media_pipeline.errors import ErrorKind, InferenceError
from media_pipeline.model_cache import ModelCache
from media_pipeline.models import FileRef, FileStatus, ModelConfig

logger = logging.getLogger(__name__)


class FilePart:
    """Reference to an uploaded remote file inside a prompt."""

    __slots__ = ("uri", "mime_type")

    def __init__(self, uri: str, mime_type: str) -> None:
        self.uri = uri
        self.mime_type = mime_type

    def __repr__(self) -> str:
        return f"FilePart(uri={self.uri!r}, mime_type={self.mime_type!r})"


PromptPart = Union[str, FilePart]


class InferenceClient(Protocol):
    async def upload(self, path: str, mime_type: str) -> FileRef: ...

    async def get_file_status(self, file_name: str) -> FileStatus: ...

    async def delete_file(self, file_name: str) -> None: ...

    async def generate(self, prompt_parts: Sequence[PromptPart], model_config: ModelConfig) -> str: ...


def model_config_from_settings(settings: Settings, system_instruction: Optional[str] = None) -> ModelConfig:
    return ModelConfig(
        model=settings.model_name,
        temperature=settings.model_temperature,
        top_k=settings.model_top_k,
        top_p=settings.model_top_p,
        max_output_tokens=settings.model_max_output_tokens,
        system_instruction=system_instruction,
    )


# Pictographs, dingbats, symbols and flags
_EMOJI_RE = re.compile(
    "["
    "\U0001F600-\U0001F64F"
    "\U0001F300-\U0001F5FF"
    "\U0001F680-\U0001F6FF"
    "\U0001F1E0-\U0001F1FF"
    "\U00002600-\U000026FF"
    "\U00002700-\U000027BF"
    "\U0001F900-\U0001F9FF"
    "\U0001F018-\U0001F0FF"
    "\U0001F100-\U0001F2FF"
    "]"
)


def clean_response_text(text: Optional[str], assistant_name: str = "") -> str:
    """Normalize model output for a plain-text chat.

    Strips emoji, leading ``<assistant name>:`` prefixes and markdown
    asterisks, normalizes line endings and collapses runs of blank lines.

    Example:
        >>> clean_response_text("Amelie: **Hi** there\\n\\n\\n\\nbye", "Amelie")
        'Hi there\\n\\nbye'
    """
    if not text:
        return ""
    cleaned = _EMOJI_RE.sub("", text)
    if assistant_name:
        prefix = re.compile(rf"^(?:{re.escape(assistant_name)}:\s*)+", re.IGNORECASE)
        cleaned = prefix.sub("", cleaned)
    cleaned = re.sub(r"\*+", "", cleaned)
    cleaned = cleaned.replace("\r\n", "\n").replace("\r", "\n")
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned)
    return cleaned.strip()


def _translate_google_error(exc: Exception) -> InferenceError:
    """Map SDK/transport exceptions to a classified ``InferenceError``."""
    from google.api_core import exceptions as gexc  # type: ignore
    from google.generativeai.types import BlockedPromptException, StopCandidateException  # type: ignore

    if isinstance(exc, (BlockedPromptException, StopCandidateException)):
        return InferenceError(ErrorKind.SAFETY_BLOCKED, str(exc))
    if isinstance(exc, gexc.ResourceExhausted):
        return InferenceError(ErrorKind.QUOTA, str(exc))
    if isinstance(exc, gexc.PermissionDenied):
        return InferenceError(ErrorKind.FILE_FORBIDDEN, str(exc))
    if isinstance(exc, gexc.NotFound):
        return InferenceError(ErrorKind.FILE_EXPIRED, str(exc))
    if isinstance(exc, gexc.DeadlineExceeded):
        return InferenceError(ErrorKind.TIMEOUT, str(exc))
    if isinstance(exc, gexc.GoogleAPICallError) and getattr(exc, "code", None) == 413:
        return InferenceError(ErrorKind.FILE_TOO_LARGE, str(exc))
    if isinstance(exc, gexc.InvalidArgument):
        return InferenceError(ErrorKind.UNSUPPORTED_FORMAT, str(exc))
    return InferenceError(ErrorKind.GENERAL, str(exc))


_SAFETY_SETTINGS = [
    {"category": "HARM_CATEGORY_HARASSMENT", "threshold": "BLOCK_NONE"},
    {"category": "HARM_CATEGORY_HATE_SPEECH", "threshold": "BLOCK_NONE"},
    {"category": "HARM_CATEGORY_SEXUALLY_EXPLICIT", "threshold": "BLOCK_MEDIUM_AND_ABOVE"},
    {"category": "HARM_CATEGORY_DANGEROUS_CONTENT", "threshold": "BLOCK_NONE"},
]


class GeminiInferenceClient:
    """``InferenceClient`` backed by ``google-generativeai``.

    The SDK's file calls are blocking, so they run in a worker thread.
    """

    def __init__(self, settings: Optional[Settings] = None, cache: Optional[ModelCache[Any]] = None) -> None:
        import google.generativeai as genai  # type: ignore

        self._settings = settings or Settings()
        self._genai = genai
        genai.configure(api_key=self._settings.gemini_api_key)
        self._cache: ModelCache[Any] = cache or ModelCache(self._settings.model_cache_size)

    def _model(self, cfg: ModelConfig) -> Any:
        def build() -> Any:
            logger.debug("Creating model client %s (temperature=%s)", cfg.model, cfg.temperature)
            return self._genai.GenerativeModel(
                model_name=cfg.model,
                generation_config={
                    "temperature": cfg.temperature,
                    "top_k": cfg.top_k,
                    "top_p": cfg.top_p,
                    "max_output_tokens": cfg.max_output_tokens,
                },
                safety_settings=_SAFETY_SETTINGS,
                system_instruction=cfg.system_instruction or None,
            )

        return self._cache.get_or_create(cfg.cache_key(), build)

    async def upload(self, path: str, mime_type: str) -> FileRef:
        try:
            remote = await asyncio.to_thread(self._genai.upload_file, path=path, mime_type=mime_type)
        except Exception as exc:
            raise _translate_google_error(exc) from exc
        return FileRef(name=remote.name, uri=remote.uri, mime_type=remote.mime_type)

    async def get_file_status(self, file_name: str) -> FileStatus:
        try:
            remote = await asyncio.to_thread(self._genai.get_file, file_name)
        except Exception as exc:
            raise _translate_google_error(exc) from exc
        return FileStatus(state=remote.state.name, uri=remote.uri, mime_type=remote.mime_type)

    async def delete_file(self, file_name: str) -> None:
        try:
            await asyncio.to_thread(self._genai.delete_file, file_name)
        except Exception as exc:
            raise _translate_google_error(exc) from exc

    async def generate(self, prompt_parts: Sequence[PromptPart], model_config: ModelConfig) -> str:
        contents: list[Any] = []
        for part in prompt_parts:
            if isinstance(part, FilePart):
                contents.append({"file_data": {"file_uri": part.uri, "mime_type": part.mime_type}})
            else:
                contents.append(part)
        model = self._model(model_config)
        try:
            resp = await model.generate_content_async(contents)
        except Exception as exc:
            raise _translate_google_error(exc) from exc

        feedback = getattr(resp, "prompt_feedback", None)
        if feedback is not None and getattr(feedback, "block_reason", 0):
            raise InferenceError(ErrorKind.SAFETY_BLOCKED, f"prompt blocked: {feedback.block_reason}")
        candidates = getattr(resp, "candidates", None) or []
        if candidates:
            finish = getattr(candidates[0], "finish_reason", None)
            if getattr(finish, "name", "") == "SAFETY":
                raise InferenceError(ErrorKind.SAFETY_BLOCKED, "response stopped for safety")
            content = getattr(candidates[0], "content", None)
            pieces = [p.text for p in getattr(content, "parts", None) or [] if getattr(p, "text", None)]
            if pieces:
                return "".join(pieces)
        logger.info("Model %s returned no text", model_config.model)
        return ""
