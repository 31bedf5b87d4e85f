from media_pipeline.errors import ErrorKind
from media_pipeline.inference import clean_response_text
from media_pipeline.messages import empty_response_fallback, user_message_for
from media_pipeline.prompts import IMAGE_PROMPT_LONG, IMAGE_PROMPT_SHORT, VIDEO_PROMPT_SHORT, build_prompt


def test_clean_response_strips_prefix_markdown_and_emoji():
    raw = "Amelie: amelie: **A dog** on a beach \U0001F436\r\n\r\n\r\n\r\nIt is *sunny*."
    assert clean_response_text(raw, "Amelie") == "A dog on a beach \n\nIt is sunny."


def test_clean_response_empty_input():
    assert clean_response_text(None) == ""
    assert clean_response_text("  \U0001F600 ") == ""


def test_every_error_kind_has_a_user_message_without_internals():
    for kind in ErrorKind:
        text = user_message_for(kind, "video")
        assert text
        assert "Traceback" not in text
        assert kind.value not in text


def test_timeout_message_suggests_shorter_clip():
    assert "shorter" in user_message_for(ErrorKind.TIMEOUT, "video")
    assert "simpler" in user_message_for(ErrorKind.TIMEOUT, "image")


def test_empty_response_fallback_mentions_media():
    assert "clear description" in empty_response_fallback("image")


def test_build_prompt_prefers_user_prompt_then_mode():
    assert build_prompt("image", "short", "  what breed is this? ") == "what breed is this?"
    assert build_prompt("image", "long", "") == IMAGE_PROMPT_LONG
    assert build_prompt("image", "short", "") == IMAGE_PROMPT_SHORT
    assert build_prompt("video", "short", "") == VIDEO_PROMPT_SHORT
