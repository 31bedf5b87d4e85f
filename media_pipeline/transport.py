"""Chat transport boundary.

The pipeline only needs to send text. A transport raises on failure (any
exception counts); ``quote_id`` asks for the reply form that references the
original inbound message.
"""

from __future__ import annotations

from typing import Optional, Protocol


class Transport(Protocol):
    async def deliver(self, destination: str, text: str, *, quote_id: Optional[str] = None) -> None: ...
