"""Per-conversation configuration collaborator.

Plain key/value persistence in the ``conversation_configs`` table. Stages call
``get_config`` every time they need a value; nothing here is cached.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Protocol

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from media_pipeline.db import get_engine, get_session
from media_pipeline.models import ConversationConfig
from media_pipeline.orm_models import ConversationConfigRow

logger = logging.getLogger(__name__)


class ConfigProvider(Protocol):
    async def get_config(self, conversation_id: str) -> ConversationConfig: ...


class SqlConfigProvider:
    """``ConfigProvider`` backed by the database; unknown conversations get defaults."""

    async def get_config(self, conversation_id: str) -> ConversationConfig:
        async with get_session() as session:
            res = await session.execute(
                select(ConversationConfigRow.config).where(ConversationConfigRow.conversation_id == conversation_id)
            )
            stored = res.scalar_one_or_none()
        return ConversationConfig.model_validate(stored or {})

    async def set_config(self, conversation_id: str, **values: Any) -> ConversationConfig:
        """Merge ``values`` into the stored configuration (upsert)."""
        current = (await self.get_config(conversation_id)).model_dump()
        current.update(values)
        merged = ConversationConfig.model_validate(current)
        payload = merged.model_dump()
        now = int(time.time() * 1000)

        dialect = get_engine().dialect.name
        insert_fn = pg_insert if dialect == "postgresql" else sqlite_insert
        stmt = insert_fn(ConversationConfigRow).values(
            conversation_id=conversation_id, config=payload, updated_at=now
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[ConversationConfigRow.conversation_id],
            set_={"config": payload, "updated_at": now},
        )
        async with get_session() as session:
            await session.execute(stmt)
            await session.commit()
        logger.info("Configuration updated for conversation %s: %s", conversation_id, sorted(values))
        return merged
