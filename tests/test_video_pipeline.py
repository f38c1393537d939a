import sqlite3
from unittest.mock import Mock, patch

import pytest

from tubedigest.core.ai_summarizer import SummaryResult
from tubedigest.managers.transcript_manager import TranscriptOutcome
from tubedigest.managers.video_manager import VideoPipeline

from tests.conftest import CHANNEL_ID, VIDEO_ID


TEXT = "A long enough transcript about shipping Python services to production."


@pytest.fixture
def transcripts(db):
    service = Mock()

    def process(video_id, **kwargs):
        db.upsert_transcript(video_id, 'yt-dlp', TEXT, language='en')
        return TranscriptOutcome(video_id=video_id, status='processed', success=True, source='yt-dlp')

    service.process_transcript.side_effect = process
    return service


@pytest.fixture
def summarizer():
    summarizer = Mock()
    summarizer.generate_summary.return_value = SummaryResult('Ships Python to prod.', 'gpt-4o-mini', 50)
    summarizer.extract_chapters.return_value = [{'title': 'Intro', 'start_s': 0, 'end_s': 30}]
    return summarizer


@pytest.fixture
def pipeline(db, transcripts, summarizer):
    return VideoPipeline(db, transcripts, summarizer)


@pytest.fixture
def pending_video(db):
    db.add_video(VIDEO_ID, CHANNEL_ID, 'Shipping Python', channel_title='Fireship', duration_seconds=120)
    return VIDEO_ID


def test_process_video_success(pipeline, pending_video, db, summarizer):
    result = pipeline.process_video(pending_video)

    assert result == {'videoId': VIDEO_ID, 'status': 'success', 'source': 'yt-dlp', 'chapters': 1}
    assert db.get_summary(VIDEO_ID)['summary'] == 'Ships Python to prod.'
    assert db.get_chapters(VIDEO_ID) == [{'start_s': 0, 'end_s': 30, 'title': 'Intro'}]
    summarizer.extract_chapters.assert_called_once_with(TEXT, 'Shipping Python', 120)


def test_processed_video_is_not_reprocessed(pipeline, pending_video, transcripts):
    pipeline.process_video(pending_video)

    assert pipeline.process_video(pending_video)['cached'] is True
    assert transcripts.process_transcript.call_count == 1


def test_missing_video(pipeline):
    assert pipeline.process_video('nope0000000')['status'] == 'not_found'


def test_skipped_transcript_marks_skip(pipeline, pending_video, transcripts, summarizer):
    transcripts.process_transcript.side_effect = None
    transcripts.process_transcript.return_value = TranscriptOutcome(
        video_id=VIDEO_ID, status='no_captions', skip_reason='no_captions_available'
    )

    result = pipeline.process_video(pending_video)

    assert result == {'videoId': VIDEO_ID, 'status': 'skipped', 'skipReason': 'no_captions_available'}
    summarizer.generate_summary.assert_not_called()


def test_ai_failure_becomes_permanent_after_retries(pipeline, pending_video, summarizer, db):
    summarizer.generate_summary.return_value = None

    statuses = [pipeline.process_video(pending_video)['status'] for _ in range(3)]

    assert statuses == ['failed_ai', 'failed_ai', 'failed_permanent']
    video = db.get_video(VIDEO_ID)
    assert video['retry_count'] == 3
    assert 'max retries exceeded' in video['error_message']
    assert pipeline.process_video(pending_video)['status'] == 'failed_permanent'


def test_transcript_error_counts_as_failure(pipeline, pending_video, transcripts):
    transcripts.process_transcript.side_effect = None
    transcripts.process_transcript.return_value = TranscriptOutcome(
        video_id=VIDEO_ID, status='error', error='db locked'
    )

    assert pipeline.process_video(pending_video) == {
        'videoId': VIDEO_ID, 'status': 'failed_transcript', 'error': 'db locked'
    }


def test_searchapi_videos_fall_back_to_metadata_summary(db, summarizer, pending_video):
    transcripts = Mock()

    def process(video_id, **kwargs):
        db.upsert_transcript(video_id, 'searchapi', TEXT, language='en')
        return TranscriptOutcome(video_id=video_id, status='processed', success=True, source='searchapi')

    transcripts.process_transcript.side_effect = process
    search = Mock()
    search.get_cached_video.return_value = {
        'title': 'Shipping Python',
        'description': 'How we deploy',
        'key_moments': [{'title': 'Build', 'start_seconds': 0}, {'title': 'Deploy', 'start_seconds': 60}],
    }
    summarizer.generate_summary.return_value = None
    pipeline = VideoPipeline(db, transcripts, summarizer, search_client=search)

    assert pipeline.process_video(pending_video)['status'] == 'success'
    assert db.get_summary(VIDEO_ID)['model'] == 'searchapi'
    assert [c['title'] for c in db.get_chapters(VIDEO_ID)] == ['Build', 'Deploy']
    summarizer.extract_chapters.assert_not_called()


def test_fetch_new_videos_for_channel(pipeline, db, pending_video):
    youtube = Mock()
    youtube.get_channel_videos.return_value = [
        {'id': VIDEO_ID, 'title': 'Shipping Python'},
        {'id': 'bbbbbbbbbbb', 'title': 'New upload', 'channel_title': 'Fireship',
         'published_at': '2026-10-17T08:00:00+00:00', 'duration_seconds': 90},
    ]

    result = pipeline.fetch_new_videos_for_channel('viewer@example.com', CHANNEL_ID, youtube=youtube)

    assert result == {'channelId': CHANNEL_ID, 'discovered': 2, 'new': 1, 'processed': 1, 'failed': 0}
    assert db.get_video('bbbbbbbbbbb')['processing_status'] == 'success'
    assert db.get_video(VIDEO_ID)['processing_status'] == 'pending'


def test_fetch_for_user_isolates_channel_errors(pipeline, db, user):
    db.replace_user_channels(user['id'], [('UC_broken', 'Broken'), (CHANNEL_ID, 'Fireship')])
    youtube = Mock()
    youtube.get_channel_videos.side_effect = [
        RuntimeError('quota exceeded'),
        [{'id': 'ccccccccccc', 'title': 'Fresh'}],
    ]

    with patch.object(pipeline, '_youtube_client', return_value=youtube):
        totals = pipeline.fetch_new_videos_for_user('viewer@example.com')

    assert totals['channels'] == 2
    assert totals['processed'] == 1
    assert totals['errors'] == [{'channelId': 'UC_broken', 'error': 'quota exceeded'}]


def test_fetch_for_unknown_user(pipeline):
    assert pipeline.fetch_new_videos_for_user('ghost@example.com')['channels'] == 0


@patch('tubedigest.managers.video_manager.sleep')
def test_retry_failed_processing_backs_off(mock_sleep, pipeline, pending_video, summarizer):
    summarizer.generate_summary.side_effect = [None, SummaryResult('Second time lucky.', 'gpt-4o-mini', 10)]

    result = pipeline.retry_failed_processing(delay_seconds=1)

    assert result == {'attempted': 1, 'succeeded': 1, 'failed': 0}
    mock_sleep.assert_called_once_with(1)


def test_cleanup_stuck_videos(pipeline, db):
    db.add_video('aaaaaaaaaaa', CHANNEL_ID, 'Stuck', processing_status='processing')
    db.add_video('bbbbbbbbbbb', CHANNEL_ID, 'Stuck forever', processing_status='processing')
    db.update_video('bbbbbbbbbbb', retry_count=3)
    with sqlite3.connect(db.db_path) as conn:
        conn.execute("UPDATE videos SET updated_at = datetime('now', '-1 hour')")

    assert pipeline.cleanup_stuck_videos() == 2
    assert db.get_video('aaaaaaaaaaa')['processing_status'] == 'pending'
    assert db.get_video('bbbbbbbbbbb')['processing_status'] == 'failed_permanent'


def test_videos_for_digest_and_status(pipeline, summarized_video, user):
    videos = pipeline.get_videos_for_digest(user['id'])
    assert [v['id'] for v in videos] == [VIDEO_ID]
    assert pipeline.get_all_videos_with_summaries('viewer@example.com')[0]['summary']

    status = pipeline.get_processing_status()
    assert status['success'] == 1
    assert status['withSummaries'] == 1
