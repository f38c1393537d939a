import sqlite3
from datetime import timedelta

import pytest

from tubedigest.utils.formatters import to_iso, utc_now

from tests.conftest import CHANNEL_ID, VIDEO_ID


def test_upsert_user_is_idempotent(db):
    first = db.upsert_user('someone@example.com', 'Someone')
    second = db.upsert_user('someone@example.com', None, 'https://example.com/me.png')

    assert first['id'] == second['id']
    assert second['name'] == 'Someone'
    assert second['picture'] == 'https://example.com/me.png'


def test_channel_selection(db, user):
    db.replace_user_channels(user['id'], [('UC1', 'One'), ('UC2', 'Two')])
    assert db.count_selected_channels(user['id']) == 2

    db.set_channel_selected(user['id'], 'UC2', False)
    selected = db.get_user_channels(user['id'])
    assert [c['channel_id'] for c in selected] == ['UC1']

    everything = db.get_user_channels(user['id'], selected_only=False)
    assert {c['channel_id']: c['selected'] for c in everything} == {'UC1': True, 'UC2': False}

    db.replace_user_channels(user['id'], [('UC3', None)])
    assert [c['channel_id'] for c in db.get_user_channels(user['id'])] == ['UC3']


def test_users_with_channels_only_lists_selected(db, user):
    other = db.upsert_user('idle@example.com')
    db.replace_user_channels(user['id'], [(CHANNEL_ID, 'Fireship')])
    db.replace_user_channels(other['id'], [('UC9', 'Nine')])
    db.set_channel_selected(other['id'], 'UC9', False)

    assert [u['email'] for u in db.get_users_with_channels()] == ['viewer@example.com']


def test_add_video_ignores_duplicates(db):
    assert db.add_video(VIDEO_ID, CHANNEL_ID, 'First title') is True
    assert db.add_video(VIDEO_ID, CHANNEL_ID, 'Second title') is False
    assert db.get_video(VIDEO_ID)['title'] == 'First title'
    assert db.video_exists(VIDEO_ID)


def test_update_video_whitelist_and_retry(db):
    db.add_video(VIDEO_ID, CHANNEL_ID, 'Title')
    db.update_video(VIDEO_ID, increment_retry=True, processing_status='failed_ai', error_message='boom')

    video = db.get_video(VIDEO_ID)
    assert video['processing_status'] == 'failed_ai'
    assert video['retry_count'] == 1

    with pytest.raises(ValueError):
        db.update_video(VIDEO_ID, id='other')


def test_videos_without_summary_respects_retries_and_skips(db):
    db.add_video('aaaaaaaaaaa', CHANNEL_ID, 'Pending')
    db.add_video('bbbbbbbbbbb', CHANNEL_ID, 'Skipped', processing_status='skipped')
    db.add_video('ccccccccccc', CHANNEL_ID, 'Retried out', processing_status='failed_ai')
    db.update_video('ccccccccccc', retry_count=3)

    ids = [v['id'] for v in db.get_videos_without_summary()]
    assert ids == ['aaaaaaaaaaa']


def test_summary_upsert_overwrites(summarized_video, db):
    db.upsert_summary(VIDEO_ID, 'Updated summary', model='gpt-4o', tokens_used=7)

    summary = db.get_summary(VIDEO_ID)
    assert summary['summary'] == 'Updated summary'
    assert summary['tokens_used'] == 7


def test_replace_chapters_drops_stale_rows(summarized_video, db):
    db.replace_chapters(VIDEO_ID, [
        {'title': 'Intro (again)', 'start_s': 0, 'end_s': 90},
        {'title': 'Wrap up', 'start_s': 90, 'end_s': 600},
    ])
    assert db.get_chapters(VIDEO_ID) == [
        {'start_s': 0, 'end_s': 90, 'title': 'Intro (again)'},
        {'start_s': 90, 'end_s': 600, 'title': 'Wrap up'},
    ]

    db.replace_chapters(VIDEO_ID, [])
    assert db.get_chapters(VIDEO_ID) == []


def test_summarized_videos_filters_by_since(summarized_video, db):
    videos = db.get_summarized_videos([CHANNEL_ID], since=to_iso(utc_now() - timedelta(hours=2)))
    assert [v['id'] for v in videos] == [VIDEO_ID]
    assert videos[0]['summary'] == 'A fast tour of Python.'
    assert videos[0]['chapters'][0] == {'start_s': 0, 'end_s': 60, 'title': 'Intro'}

    assert db.get_summarized_videos([CHANNEL_ID], since=to_iso(utc_now())) == []
    assert db.get_summarized_videos([]) == []


def test_transcript_requires_existing_video(db):
    with pytest.raises(sqlite3.IntegrityError):
        db.upsert_transcript('missing0000', 'youtube-api', 'text')


def test_transcript_upsert_and_source_counts(summarized_video, db):
    db.upsert_transcript(VIDEO_ID, 'yt-dlp', 'first', language='en', caption_format='vtt')
    db.upsert_transcript(VIDEO_ID, 'youtube-api', 'second', language='en', caption_format='srt')

    transcript = db.get_transcript(VIDEO_ID)
    assert transcript['text'] == 'second'
    assert db.get_transcript_source_counts() == {'youtube-api': 1}


def test_digest_runs_and_items(summarized_video, db, user):
    run_id = db.create_digest_run(user['id'], 'pending')
    db.add_digest_items(run_id, [VIDEO_ID])
    db.update_digest_run(run_id, status='sent', sent_at=to_iso(utc_now()), item_count=1)

    items = db.get_digest_items(run_id)
    assert [(i['id'], i['position']) for i in items] == [(VIDEO_ID, 1)]
    assert items[0]['chapters']
    assert db.get_last_sent_run(user['id'])['id'] == run_id
    assert db.get_latest_run(user['id'])['status'] == 'sent'

    with pytest.raises(ValueError):
        db.update_digest_run(run_id, user_id=2)


def test_last_sent_run_ignores_failures(db, user):
    run_id = db.create_digest_run(user['id'], 'failed')
    assert db.get_last_sent_run(user['id']) is None
    assert db.get_latest_run(user['id'])['id'] == run_id


def test_schedules(db, user):
    schedule_id = db.create_schedule(user['id'], 'weekly', to_iso(utc_now()))
    db.update_schedule(schedule_id, enabled=0)

    assert db.get_schedules(user['id']) == []
    assert db.get_schedules(user['id'], enabled_only=False)[0]['cadence'] == 'weekly'
    with pytest.raises(ValueError):
        db.update_schedule(schedule_id, cadence='daily')


def test_transcript_cache(db):
    db.set_transcript_cache(VIDEO_ID, 'disabled', 'Subtitles are disabled')
    db.set_transcript_cache(VIDEO_ID, 'not_found')
    assert db.get_transcript_cache(VIDEO_ID)['status'] == 'not_found'

    db.clear_transcript_cache(VIDEO_ID)
    assert db.get_transcript_cache(VIDEO_ID) is None


def test_search_cache_expiry_and_deactivation(db):
    future = utc_now() + timedelta(hours=1)
    db.set_search_cache(VIDEO_ID, {'id': VIDEO_ID, 'title': 'Python basics'}, future, query='python')
    db.set_search_cache('old00000000', {'id': 'old00000000', 'title': 'Old'}, utc_now() - timedelta(hours=1))

    assert db.get_search_cache(VIDEO_ID)['title'] == 'Python basics'
    assert db.get_search_cache('old00000000') is None
    assert [e['id'] for e in db.search_cache_entries('basics')] == [VIDEO_ID]
    assert db.get_search_cache_counts() == {'total': 2, 'active': 1, 'expired': 1}

    assert db.deactivate_search_cache(VIDEO_ID)
    assert db.get_search_cache(VIDEO_ID) is None
    assert db.delete_expired_search_cache() == 2


def test_encrypted_settings(db):
    db.set_setting('OPENAI_API_KEY', 'sk-secret', setting_type='secret', encrypt=True)

    with sqlite3.connect(db.db_path) as conn:
        raw = conn.execute("SELECT value FROM settings WHERE key = 'OPENAI_API_KEY'").fetchone()[0]
    assert raw != 'sk-secret'
    assert db.get_setting('OPENAI_API_KEY') == 'sk-secret'
    assert db.get_all_settings()['OPENAI_API_KEY']['encrypted'] is True

    assert db.delete_setting('OPENAI_API_KEY')
    assert db.get_setting('OPENAI_API_KEY') is None


def test_oauth_tokens_encrypted_and_refresh_kept(db, user):
    db.save_oauth_tokens(user['id'], 'access-1', 'refresh-1', scope='youtube.readonly')
    db.save_oauth_tokens(user['id'], 'access-2')

    tokens = db.get_oauth_tokens(user['id'])
    assert tokens['access_token'] == 'access-2'
    assert tokens['refresh_token'] == 'refresh-1'

    listed = db.list_oauth_tokens(user['id'])
    assert listed[0]['provider'] == 'google'
    assert listed[0]['has_refresh_token'] == 1
    assert 'access_token' not in listed[0]

    assert db.delete_oauth_tokens(user['id'])
    assert db.get_oauth_tokens(user['id']) is None
