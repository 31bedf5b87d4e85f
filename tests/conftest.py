import sys
from pathlib import Path

import pytest
import pytest_asyncio

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from media_pipeline.config import Settings  # noqa: E402
from media_pipeline.db import configure_engine, dispose_engine, init_models  # noqa: E402


@pytest_asyncio.fixture
async def db(tmp_path):
    """Fresh SQLite database per test, shared by every store through the engine."""
    configure_engine(f"sqlite+aiosqlite:///{tmp_path / 'pipeline.db'}")
    await init_models()
    yield
    await dispose_engine()


@pytest.fixture
def fast_settings(tmp_path):
    # Millisecond delays so retries and polls finish inside a test
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'pipeline.db'}",
        poll_base_ms=10,
        poll_cap_ms=20,
        image_retry_base_ms=10,
        video_retry_base_ms=10,
        retry_cap_ms=50,
        quota_retry_delay_ms=10,
        progress_window_s=3600,
        image_analysis_timeout_s=1,
        video_analysis_timeout_s=1,
        upload_timeout_s=1,
        direct_send_pause_ms=0,
        notification_pause_ms=0,
        notification_min_age_s=0,
        blocked_media_dir=str(tmp_path / "blocked"),
    )


@pytest.fixture
def media_file(tmp_path):
    path = tmp_path / "f1.jpg"
    path.write_bytes(b"\xff\xd8\xff\xe0fake-jpeg")
    return path
