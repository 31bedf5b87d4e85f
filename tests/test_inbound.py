import json

import pytest

from media_pipeline.rabbit import handle_inbound_message


class FakeIncoming:
    """Stands in for an aio-pika incoming message and records the settlement."""

    def __init__(self, payload, redelivered: bool = False):
        self.body = payload if isinstance(payload, bytes) else json.dumps(payload).encode()
        self.redelivered = redelivered
        self.settled = []

    async def ack(self):
        self.settled.append("ack")

    async def nack(self, requeue: bool = True):
        self.settled.append(("nack", requeue))

    async def reject(self, requeue: bool = False):
        self.settled.append(("reject", requeue))


EVENT = {
    "submission_id": "m1",
    "conversation_id": "chat-1",
    "origin_id": "m1",
    "content_ref": "/tmp/cat.jpg",
    "mime_type": "image/jpeg",
}


@pytest.mark.asyncio
async def test_handled_event_is_acked():
    seen = []

    async def on_event(event):
        seen.append(event.submission_id)

    message = FakeIncoming(EVENT)
    assert await handle_inbound_message(message, on_event) == "acked"
    assert seen == ["m1"]
    assert message.settled == ["ack"]


@pytest.mark.asyncio
async def test_failed_event_is_requeued_once():
    async def on_event(event):
        raise ConnectionError("database connection reset")

    first = FakeIncoming(EVENT)
    assert await handle_inbound_message(first, on_event) == "requeued"
    assert first.settled == [("nack", True)]

    again = FakeIncoming(EVENT, redelivered=True)
    assert await handle_inbound_message(again, on_event) == "dropped"
    assert again.settled == [("reject", False)]


@pytest.mark.asyncio
async def test_invalid_payload_is_dropped():
    async def on_event(event):
        raise AssertionError("not called")

    message = FakeIncoming(b"{not json")
    assert await handle_inbound_message(message, on_event) == "dropped"
    assert message.settled == [("reject", False)]
