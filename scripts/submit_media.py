"""
Publish a test inbound event to the worker's inbound queue.

Usage examples:
- Submit an image with a question:
  uv run python -m scripts.submit_media --conversation-id c1 --path /tmp/cat.jpg \
    --mime-type image/jpeg --text "what breed is this?"

- Submit the same event twice to see the dedup cache drop the second copy:
  uv run python -m scripts.submit_media --conversation-id c1 --path /tmp/clip.mp4 \
    --submission-id dup-1 --count 2
"""

import argparse
import asyncio
import mimetypes
import uuid

from media_pipeline.config import Settings
from media_pipeline.models import InboundEvent
from media_pipeline.rabbit import connect, publish_inbound


async def submit(
    conversation_id: str,
    path: str,
    *,
    mime_type: str | None,
    text: str | None,
    submission_id: str | None,
    sender_name: str | None,
    count: int,
) -> None:
    s = Settings()
    submission_id = submission_id or uuid.uuid4().hex
    event = InboundEvent(
        submission_id=submission_id,
        conversation_id=conversation_id,
        origin_id=submission_id,
        content_ref=path,
        mime_type=mime_type or mimetypes.guess_type(path)[0],
        text=text,
        sender_name=sender_name,
    )
    connection = await connect(settings=s)
    async with connection:
        channel = await connection.channel()
        for idx in range(1, count + 1):
            await publish_inbound(channel, s, event)
            print(f"[{idx}/{count}] Published {event.submission_id} ({event.mime_type}) -> {s.inbound_queue}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Publish a test media submission")
    parser.add_argument("--conversation-id", required=True)
    parser.add_argument("--path", required=True, help="Local media file path")
    parser.add_argument("--mime-type", help="Defaults to a guess from the file name")
    parser.add_argument("--text", help="User prompt sent with the media")
    parser.add_argument("--submission-id")
    parser.add_argument("--sender-name")
    parser.add_argument("--count", type=int, default=1, help="Publish the same event N times")
    args = parser.parse_args()
    asyncio.run(
        submit(
            args.conversation_id,
            args.path,
            mime_type=args.mime_type,
            text=args.text,
            submission_id=args.submission_id,
            sender_name=args.sender_name,
            count=args.count,
        )
    )


if __name__ == "__main__":
    main()
