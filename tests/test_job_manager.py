from datetime import timedelta
from unittest.mock import Mock

import pytest
from apscheduler.jobstores.base import JobLookupError

from tubedigest.core.email_sender import EmailDeliveryError
from tubedigest.managers.digest_manager import DigestService
from tubedigest.managers.job_manager import JobManager
from tubedigest.managers.transcript_manager import TranscriptOutcome
from tubedigest.managers.video_manager import VideoPipeline
from tubedigest.utils.formatters import from_iso, to_iso, utc_now

from tests.conftest import CHANNEL_ID, VIDEO_ID


EMAIL = 'viewer@example.com'


@pytest.fixture
def scheduler():
    scheduler = Mock()
    scheduler.running = False
    return scheduler


@pytest.fixture
def digests():
    return Mock()


@pytest.fixture
def transcripts():
    return Mock()


@pytest.fixture
def jobs(db, digests, transcripts, scheduler):
    return JobManager(db, digests, Mock(), transcripts, scheduler=scheduler, digest_hour=7)


def queued(scheduler):
    """(kind, payload, attempt, job_id, kwargs) of every add_job call for _run_job"""
    calls = []
    for call in scheduler.add_job.call_args_list:
        if call.kwargs.get('args'):
            calls.append(tuple(call.kwargs['args']) + (call.kwargs,))
    return calls


def test_start_registers_daily_cron_and_restores(jobs, scheduler, db, user):
    future = utc_now() + timedelta(days=2)
    weekly_id = db.create_schedule(user['id'], 'weekly', to_iso(future))
    db.create_schedule(user['id'], 'immediate', to_iso(utc_now()))
    stale_id = db.create_schedule(user['id'], 'daily', to_iso(utc_now() - timedelta(days=1)))

    jobs.start()

    scheduler.start.assert_called_once()
    cron = scheduler.add_job.call_args_list[0]
    assert cron.args[1] == 'cron'
    assert cron.kwargs['hour'] == 7
    restored = {call[3]: call[4] for call in queued(scheduler)}
    assert set(restored) == {f'recurring-digest-{weekly_id}', f'recurring-digest-{stale_id}'}
    assert restored[f'recurring-digest-{stale_id}']['run_date'] >= utc_now() - timedelta(seconds=5)


def test_enqueue_unknown_kind(jobs):
    with pytest.raises(ValueError):
        jobs.enqueue('mine-bitcoin', {})


def test_enqueue_helpers(jobs, scheduler):
    jobs.enqueue_digest(EMAIL)
    jobs.enqueue_channel_discovery(EMAIL, CHANNEL_ID, 48)
    jobs.enqueue_transcript_batch((VIDEO_ID,))
    jobs.enqueue_transcript(VIDEO_ID, use_asr=True)

    kinds = [(call[0], call[1]) for call in queued(scheduler)]
    assert kinds == [
        ('process-digest', {'email': EMAIL}),
        ('discover-channel-videos', {'email': EMAIL, 'channel_id': CHANNEL_ID, 'time_window_hours': 48}),
        ('process-transcripts-batch', {'video_ids': [VIDEO_ID]}),
        ('process-transcript', {'video_id': VIDEO_ID, 'use_asr': True}),
    ]
    assert 'run_date' not in queued(scheduler)[0][4]


def test_successful_job_is_recorded(jobs, digests):
    digests.assemble_and_send.return_value = {'id': 1, 'status': 'sent'}

    result = jobs._run_job('process-digest', {'email': EMAIL}, 1, 'job-1')

    assert result == {'id': 1, 'status': 'sent'}
    history = jobs.get_job_history('process-digest')['process-digest']
    assert history['completed'][0]['id'] == 'job-1'
    assert history['failed'] == []


def test_failed_job_requeued_with_backoff(jobs, digests, scheduler):
    digests.assemble_and_send.side_effect = RuntimeError('smtp down')

    jobs._run_job('process-digest', {'email': EMAIL}, 2, 'job-1')

    kind, payload, attempt, _, kwargs = queued(scheduler)[0]
    assert (kind, payload, attempt) == ('process-digest', {'email': EMAIL}, 3)
    delay = (kwargs['run_date'] - utc_now()).total_seconds()
    assert 2 < delay <= 4
    assert jobs.history['process-digest']['failed'][0]['error'] == 'smtp down'


def test_failed_job_dead_letters_after_last_attempt(jobs, digests, scheduler):
    digests.assemble_and_send.side_effect = RuntimeError('smtp down')

    assert jobs._run_job('process-digest', {'email': EMAIL}, 3, 'job-1') is None
    assert queued(scheduler) == []


def test_transcript_skip_is_not_retried(jobs, transcripts, scheduler):
    transcripts.process_transcript.return_value = TranscriptOutcome(
        video_id=VIDEO_ID, status='no_captions', skip_reason='no_captions_available'
    )
    assert jobs._run_job('process-transcript', {'video_id': VIDEO_ID}, 1)['status'] == 'no_captions'

    transcripts.process_transcript.return_value = TranscriptOutcome(video_id=VIDEO_ID, status='error', error='boom')
    jobs._run_job('process-transcript', {'video_id': VIDEO_ID}, 1)
    assert queued(scheduler)[0][2] == 2


def test_recurring_digest_reschedules_itself(jobs, digests, db, user, scheduler):
    schedule_id = db.create_schedule(user['id'], 'custom', to_iso(utc_now()), custom_days=2)

    jobs._process_recurring_digest(EMAIL, schedule_id)

    digests.assemble_and_send.assert_called_once_with(EMAIL)
    schedule = db.get_schedule(schedule_id)
    next_run = from_iso(schedule['next_run'])
    assert next_run.hour == 7
    assert timedelta(days=1) < next_run - utc_now() < timedelta(days=3)
    assert queued(scheduler)[0][3] == f'recurring-digest-{schedule_id}'


def test_recurring_digest_reschedules_even_on_failure(jobs, digests, db, user, scheduler):
    schedule_id = db.create_schedule(user['id'], 'daily', to_iso(utc_now()))
    digests.assemble_and_send.side_effect = RuntimeError('smtp down')

    with pytest.raises(RuntimeError):
        jobs._process_recurring_digest(EMAIL, schedule_id)

    assert db.get_schedule(schedule_id)['last_run'] is not None
    assert len(queued(scheduler)) == 1


def test_disabled_schedule_does_not_run(jobs, digests, db, user):
    schedule_id = db.create_schedule(user['id'], 'daily', to_iso(utc_now()))
    db.update_schedule(schedule_id, enabled=0)

    assert jobs._process_recurring_digest(EMAIL, schedule_id) is None
    digests.assemble_and_send.assert_not_called()


def test_daily_digests_queue_users_with_channels(jobs, db, user, scheduler):
    db.replace_user_channels(user['id'], [(CHANNEL_ID, 'Fireship')])
    db.upsert_user('nochannels@example.com')

    assert jobs.run_daily_digests() == 1
    assert queued(scheduler)[0][1] == {'email': EMAIL}


def test_recurring_job_listing_and_cancel(jobs, scheduler):
    mine = Mock(id='recurring-digest-4', args=['process-recurring-digest', {'email': EMAIL, 'schedule_id': 4}])
    mine.next_run_time = None
    theirs = Mock(id='recurring-digest-5', args=['process-recurring-digest', {'email': 'x@example.com'}])
    other = Mock(id='process-digest-abc', args=[])
    scheduler.get_jobs.return_value = [mine, theirs, other]

    assert jobs.get_recurring_digest_jobs(EMAIL) == [
        {'id': 'recurring-digest-4', 'scheduleId': 4, 'nextRun': None}
    ]

    scheduler.remove_job.side_effect = JobLookupError('recurring-digest-9')
    assert jobs.cancel_job('recurring-digest-9') is False


def test_failed_recurring_digest_records_run_and_retries(db, summarized_video, user, scheduler, tmp_path):
    pipeline = VideoPipeline(db, Mock(), Mock())
    pipeline.fetch_new_videos_for_user = Mock(return_value={'channels': 1, 'new': 0, 'errors': []})
    email_sender = Mock()
    email_sender.send_digest.side_effect = EmailDeliveryError('All email transports failed')
    digests = DigestService(db, pipeline, email_sender, lock_dir=str(tmp_path / 'locks'))
    jobs = JobManager(db, digests, pipeline, Mock(), scheduler=scheduler, digest_hour=7)
    schedule_id = db.create_schedule(user['id'], 'daily', to_iso(utc_now()))
    payload = {'email': EMAIL, 'schedule_id': schedule_id}

    assert jobs._run_job('process-recurring-digest', payload, 1, f'recurring-digest-{schedule_id}') is None

    run = db.get_latest_run(user['id'])
    assert run['status'] == 'failed'
    assert run['error_message'] == 'All email transports failed'

    next_slot, retry = queued(scheduler)
    assert next_slot[3] == f'recurring-digest-{schedule_id}'
    assert next_slot[4]['run_date'] > utc_now() + timedelta(hours=1)
    assert (retry[0], retry[1], retry[2]) == ('process-recurring-digest', payload, 2)
    assert (retry[4]['run_date'] - utc_now()).total_seconds() <= 2

    schedule = db.get_schedule(schedule_id)
    assert from_iso(schedule['next_run']) == next_slot[4]['run_date']
    assert from_iso(schedule['next_run']).hour == 7
    assert jobs.history['process-recurring-digest']['failed'][0]['error'] == 'All email transports failed'
