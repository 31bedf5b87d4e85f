"""Pydantic record models shared across the pipeline.

These models validate the shapes that cross component boundaries (inbound
events, ledger snapshots, pending notifications, remote file state) and make
call sites more explicit than passing generic dicts around.
"""
from __future__ import annotations

import hashlib
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from media_pipeline.constants import MODE_SHORT

SubmissionKind = Literal["text", "image", "video", "audio"]
DescriptionMode = Literal["short", "long"]


class InboundEvent(BaseModel):
    """A submission as received from the chat transport."""
    model_config = ConfigDict(extra="allow")

    submission_id: str
    conversation_id: str
    origin_id: str
    kind: Optional[SubmissionKind] = None
    content_ref: Optional[str] = None
    mime_type: Optional[str] = None
    text: Optional[str] = None
    sender_name: Optional[str] = None


class RecoveryData(BaseModel):
    """Everything needed to deliver a result without the original event."""
    model_config = ConfigDict(extra="allow")

    destination: str
    origin_id: str
    submission_id: str
    content_ref: Optional[str] = None
    mime_type: Optional[str] = None
    user_prompt: str = ""
    sender_name: Optional[str] = None


class HistoryEntry(BaseModel):
    timestamp: int
    status: str
    detail: str = ""


class Transaction(BaseModel):
    """Read-only snapshot of a ledger row plus its history."""
    model_config = ConfigDict(extra="allow")

    id: str
    submission_id: str
    conversation_id: str
    origin_id: str
    kind: SubmissionKind
    status: str
    attempts: int = 0
    recovery_data: Optional[dict[str, Any]] = None
    response: Optional[str] = None
    last_error: Optional[str] = None
    history: list[HistoryEntry] = Field(default_factory=list)
    created_at: int
    updated_at: int


class PendingNotification(BaseModel):
    """Durable record of a reply that could not be sent yet."""
    model_config = ConfigDict(extra="allow")

    id: int
    transaction_id: Optional[str] = None
    destination: str
    content: str
    quote_id: Optional[str] = None
    recovery_data: Optional[dict[str, Any]] = None
    attempts: int = 0
    created_at: int
    last_attempt_at: Optional[int] = None
    delivery_status: str
    last_error: Optional[str] = None


class FileRef(BaseModel):
    """Remote file handle returned by the inference backend."""
    name: str
    uri: str = ""
    mime_type: str = ""


class FileStatus(BaseModel):
    state: str
    uri: str = ""
    mime_type: str = ""


class ConversationConfig(BaseModel):
    """Per-conversation settings; read fresh whenever a stage needs them."""
    model_config = ConfigDict(extra="allow")

    description_mode: DescriptionMode = MODE_SHORT  # type: ignore[assignment]
    media_image_enabled: bool = True
    media_video_enabled: bool = True
    system_instruction: Optional[str] = None


class ModelConfig(BaseModel):
    """Generation parameters for one inference call."""
    model_config = ConfigDict(frozen=True)

    model: str
    temperature: float
    top_k: int
    top_p: float
    max_output_tokens: int
    system_instruction: Optional[str] = None

    def cache_key(self) -> tuple[str, float, int, float, int, str]:
        """Key for the model client cache; the instruction text is hashed."""
        digest = hashlib.md5((self.system_instruction or "").encode("utf-8")).hexdigest()
        return (self.model, self.temperature, self.top_k, self.top_p, self.max_output_tokens, digest)
