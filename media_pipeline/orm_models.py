"""SQLAlchemy ORM models for the ledger, notifications and support tables.

Timestamps are epoch milliseconds stored as integers so ordering and age
comparisons behave the same on every backend.

Models provided:
- ``TransactionRow``: Latest state snapshot of each transaction
- ``TransactionHistoryRow``: Append-only status log, one row per ledger mutation
- ``PendingNotificationRow``: Replies waiting for a successful send
- ``ProblemJobRow``: Failed jobs kept for inspection and replay
- ``ConversationConfigRow``: Per-conversation key/value configuration
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import JSON, BigInteger, Boolean, ForeignKey, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on Postgres, plain JSON elsewhere
JSONType = JSON(none_as_null=True).with_variant(JSONB(none_as_null=True), "postgresql")


class Base(DeclarativeBase):
    """Base class for all ORM models."""


class TransactionRow(Base):
    """Latest state snapshot of a transaction.

    Fields:
        - id: Time-ordered public identifier (``tx_<epoch ms>_<hex>``)
        - submission_id: Inbound event the transaction answers
        - conversation_id / origin_id: Routing identifiers
        - kind: text | image | video | audio
        - status: Current ledger status
        - attempts: Failures counted against the permanent-failure threshold
        - recovery_data: JSON needed to deliver without the original event
        - response: Generated reply, set at most once
        - last_error: Most recent failure detail (never shown to users)
    """
    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    submission_id: Mapped[str] = mapped_column(String, index=True)
    conversation_id: Mapped[str] = mapped_column(String, index=True)
    origin_id: Mapped[str] = mapped_column(String)
    kind: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, index=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    recovery_data: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    response: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[int] = mapped_column(BigInteger, index=True)
    updated_at: Mapped[int] = mapped_column(BigInteger, index=True)


class TransactionHistoryRow(Base):
    """Append-only history entry; rows are inserted, never updated."""
    __tablename__ = "transaction_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    transaction_id: Mapped[str] = mapped_column(
        String, ForeignKey("transactions.id", ondelete="CASCADE"), index=True
    )
    timestamp: Mapped[int] = mapped_column(BigInteger)
    status: Mapped[str] = mapped_column(String)
    detail: Mapped[str] = mapped_column(Text, default="")


class PendingNotificationRow(Base):
    """A reply that failed every direct send attempt.

    ``delivery_status`` is ``pending`` until the sweep sends it (the row is then
    deleted) or gives up after the attempt ceiling (``abandoned``).
    """
    __tablename__ = "pending_notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    transaction_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    destination: Mapped[str] = mapped_column(String)
    content: Mapped[str] = mapped_column(Text)
    quote_id: Mapped[str | None] = mapped_column(String, nullable=True)
    recovery_data: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[int] = mapped_column(BigInteger, index=True)
    last_attempt_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    delivery_status: Mapped[str] = mapped_column(String, index=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)


class ProblemJobRow(Base):
    """Failed job retained for inspection and operator replay."""
    __tablename__ = "problem_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    stage: Mapped[str] = mapped_column(String, index=True)
    job_id: Mapped[str] = mapped_column(String, index=True)
    transaction_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    classification: Mapped[str] = mapped_column(String)
    error: Mapped[str] = mapped_column(Text, default="")
    job: Mapped[dict[str, Any]] = mapped_column(JSONType)
    can_replay: Mapped[bool] = mapped_column(Boolean, default=True)
    failed_at: Mapped[int] = mapped_column(BigInteger, index=True)


class ConversationConfigRow(Base):
    __tablename__ = "conversation_configs"

    conversation_id: Mapped[str] = mapped_column(String, primary_key=True)
    config: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    updated_at: Mapped[int] = mapped_column(BigInteger)
