"""
Shared fixtures: throwaway SQLite databases, settings and sample data
"""

from datetime import timedelta

import pytest

from tubedigest.managers.database import DigestDatabase
from tubedigest.managers.settings_manager import SettingsManager
from tubedigest.utils.formatters import to_iso, utc_now


CHANNEL_ID = 'UCsBjURrPoezykLs9EqgamOA'
VIDEO_ID = 'dQw4w9WgXcQ'

SAMPLE_SRT = """1
00:00:00,000 --> 00:00:04,000
Welcome to the show, today we talk about Python.

2
00:00:04,000 --> 00:00:09,500
We will look at how the scheduler works and why it matters.

3
00:00:09,500 --> 00:00:15,000
Thanks for watching and see you in the next one.
"""


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep real credentials from the developer's shell out of tests"""
    for key in (
        'OPENAI_API_KEY', 'YOUTUBE_API_KEY', 'SEARCHAPI_KEY', 'GOOGLE_CLIENT_ID', 'GOOGLE_CLIENT_SECRET',
        'GMAIL_USER', 'GMAIL_APP_PASSWORD', 'SMTP_HOST', 'SMTP_USER', 'SMTP_PASS', 'SMTP_FROM',
        'GOOGLE_REDIRECT_URI', 'FRONTEND_URL', 'APP_URL',
        'ALLOW_MOCK_DATA', 'ASR_ENABLED', 'OPENAI_MODEL', 'DIGEST_HOUR', 'TRANSCRIPT_LANGUAGES',
        'DEFAULT_TIME_WINDOW_HOURS', 'COOKIE_SECURE', 'DATABASE_PATH',
    ):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv('TUBEDIGEST_MASTER_KEY', 'test-master-key')

    from tubedigest.utils.encryption import reset_cipher
    reset_cipher()
    yield
    reset_cipher()


@pytest.fixture
def db(tmp_path):
    return DigestDatabase(str(tmp_path / 'test.db'))


@pytest.fixture
def settings(db):
    return SettingsManager(db=db)


@pytest.fixture
def user(db):
    return db.upsert_user('viewer@example.com', 'Viewer')


@pytest.fixture
def summarized_video(db, user):
    """A selected channel with one fully processed video published an hour ago"""
    db.replace_user_channels(user['id'], [(CHANNEL_ID, 'Fireship')])
    db.add_video(
        video_id=VIDEO_ID,
        channel_id=CHANNEL_ID,
        title='Python in 100 Seconds',
        channel_title='Fireship',
        published_at=to_iso(utc_now() - timedelta(hours=1)),
        duration_seconds=600,
        processing_status='success',
    )
    db.upsert_summary(VIDEO_ID, 'A fast tour of Python.', model='gpt-4o-mini', tokens_used=42)
    db.replace_chapters(VIDEO_ID, [
        {'title': 'Intro', 'start_s': 0, 'end_s': 60},
        {'title': 'Syntax', 'start_s': 60, 'end_s': 600},
    ])
    return db.get_video(VIDEO_ID)
