#!/usr/bin/env python3
"""
Background Jobs
APScheduler-backed queue for digests, discovery and transcript work with
per-kind retry/backoff, recurring digest schedules and a daily digest cron
"""

import uuid
import logging
from collections import deque
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler

from tubedigest.core.constants import (
    JOB_RETRY_POLICY, JOB_HISTORY_COMPLETED, JOB_HISTORY_FAILED,
    CADENCE_IMMEDIATE, DEFAULT_DIGEST_HOUR, DEFAULT_TIME_WINDOW_HOURS, TRANSCRIPT_ERROR,
)
from tubedigest.managers.digest_manager import compute_following_run
from tubedigest.utils.formatters import to_iso, from_iso, utc_now


logger = logging.getLogger(__name__)

DAILY_DIGEST_JOB_ID = 'daily-digests'
RECURRING_PREFIX = 'recurring-digest-'


class JobManager:
    """Queue and run background work"""

    def __init__(
        self,
        db,
        digests,
        pipeline,
        transcripts,
        scheduler: Optional[BackgroundScheduler] = None,
        digest_hour: int = DEFAULT_DIGEST_HOUR,
    ):
        """
        Args:
            db: DigestDatabase
            digests: DigestService
            pipeline: VideoPipeline
            transcripts: TranscriptService
            scheduler: APScheduler instance; a UTC BackgroundScheduler by default
            digest_hour: Hour (UTC) of the daily digest cron
        """
        self.db = db
        self.digests = digests
        self.pipeline = pipeline
        self.transcripts = transcripts
        self.scheduler = scheduler or BackgroundScheduler(timezone='UTC')
        self.digest_hour = digest_hour

        self._handlers: Dict[str, Callable[..., Any]] = {
            'process-digest': self._process_digest,
            'process-recurring-digest': self._process_recurring_digest,
            'discover-videos': self._discover_videos,
            'discover-channel-videos': self._discover_channel_videos,
            'process-transcript': self._process_transcript,
            'process-transcripts-batch': self._process_transcripts_batch,
        }
        self.history: Dict[str, Dict[str, deque]] = {
            kind: {
                'completed': deque(maxlen=JOB_HISTORY_COMPLETED),
                'failed': deque(maxlen=JOB_HISTORY_FAILED),
            }
            for kind in self._handlers
        }

    # ========================
    # Lifecycle
    # ========================

    def start(self):
        if self.scheduler.running:
            return
        self.scheduler.start()
        self.scheduler.add_job(
            self.run_daily_digests,
            'cron',
            hour=self.digest_hour,
            minute=0,
            id=DAILY_DIGEST_JOB_ID,
            replace_existing=True,
        )
        restored = self.restore_schedules()
        logger.info(f"Scheduler started: daily digests at {self.digest_hour:02d}:00 UTC, {restored} schedules restored")

    def shutdown(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")

    def restore_schedules(self) -> int:
        """Re-queue enabled recurring schedules after a restart"""
        count = 0
        now = utc_now()
        for schedule in self.db.get_schedules(enabled_only=True):
            if schedule['cadence'] == CADENCE_IMMEDIATE or not schedule.get('next_run'):
                continue
            user = self.db.get_user(schedule['user_id'])
            if not user:
                continue
            next_run = max(from_iso(schedule['next_run']), now)
            self.schedule_recurring_digest(user['email'], schedule['id'], next_run)
            count += 1
        return count

    # ========================
    # Queueing
    # ========================

    def enqueue(
        self,
        kind: str,
        payload: Dict[str, Any],
        run_at: Optional[datetime] = None,
        attempt: int = 1,
        job_id: Optional[str] = None,
    ) -> str:
        """Queue one job; runs now unless run_at is given"""
        if kind not in self._handlers:
            raise ValueError(f"Unknown job kind: {kind}")

        job_id = job_id or f"{kind}-{uuid.uuid4().hex[:12]}"
        trigger_args = {'run_date': run_at} if run_at else {}
        self.scheduler.add_job(
            self._run_job,
            'date',
            args=[kind, payload, attempt, job_id],
            id=job_id,
            replace_existing=True,
            misfire_grace_time=3600,
            **trigger_args,
        )
        logger.debug(f"Queued {kind} job {job_id} (attempt {attempt})")
        return job_id

    def enqueue_digest(self, email: str) -> str:
        return self.enqueue('process-digest', {'email': email})

    def schedule_recurring_digest(self, email: str, schedule_id: int, run_at: datetime) -> str:
        return self.enqueue(
            'process-recurring-digest',
            {'email': email, 'schedule_id': schedule_id},
            run_at=run_at,
            job_id=f"{RECURRING_PREFIX}{schedule_id}",
        )

    def enqueue_discovery(self, email: str, time_window_hours: int = DEFAULT_TIME_WINDOW_HOURS) -> str:
        return self.enqueue('discover-videos', {'email': email, 'time_window_hours': time_window_hours})

    def enqueue_channel_discovery(
        self, email: str, channel_id: str, time_window_hours: int = DEFAULT_TIME_WINDOW_HOURS
    ) -> str:
        return self.enqueue(
            'discover-channel-videos',
            {'email': email, 'channel_id': channel_id, 'time_window_hours': time_window_hours},
        )

    def enqueue_transcript(self, video_id: str, use_asr: bool = False) -> str:
        return self.enqueue('process-transcript', {'video_id': video_id, 'use_asr': use_asr})

    def enqueue_transcript_batch(self, video_ids: List[str]) -> str:
        return self.enqueue('process-transcripts-batch', {'video_ids': list(video_ids)})

    def run_daily_digests(self) -> int:
        """Queue a digest for every user with at least one selected channel"""
        users = self.db.get_users_with_channels()
        for user in users:
            self.enqueue_digest(user['email'])
        logger.info(f"Daily digest run queued for {len(users)} users")
        return len(users)

    # ========================
    # Execution
    # ========================

    def _run_job(self, kind: str, payload: Dict[str, Any], attempt: int = 1, job_id: Optional[str] = None):
        """Run a job; on failure re-queue it with exponential backoff until attempts run out"""
        attempts, base_delay = JOB_RETRY_POLICY[kind]
        started = utc_now()
        try:
            result = self._handlers[kind](**payload)
        except Exception as e:
            self._record(kind, 'failed', job_id, payload, attempt, started, error=str(e))
            if attempt < attempts:
                delay = base_delay * (2 ** (attempt - 1))
                logger.warning(f"Job {kind} failed (attempt {attempt}/{attempts}): {e}. Retrying in {delay}s")
                self.enqueue(kind, payload, run_at=utc_now() + timedelta(seconds=delay), attempt=attempt + 1)
            else:
                logger.error(f"Job {kind} dead-lettered after {attempts} attempts: {e}", exc_info=True)
            return None

        self._record(kind, 'completed', job_id, payload, attempt, started)
        logger.info(f"Job {kind} completed (attempt {attempt})")
        return result

    def _record(self, kind, outcome, job_id, payload, attempt, started, error=None):
        self.history[kind][outcome].append({
            'id': job_id,
            'kind': kind,
            'payload': payload,
            'attempt': attempt,
            'startedAt': to_iso(started),
            'finishedAt': to_iso(utc_now()),
            'error': error,
        })

    def _process_digest(self, email: str):
        return self.digests.assemble_and_send(email)

    def _process_recurring_digest(self, email: str, schedule_id: int):
        schedule = self.db.get_schedule(schedule_id)
        if not schedule or not schedule['enabled']:
            logger.info(f"Schedule {schedule_id} disabled or removed, not running")
            return None

        try:
            return self.digests.assemble_and_send(email)
        finally:
            now = utc_now()
            next_run = compute_following_run(
                schedule['cadence'], now, schedule.get('custom_days'), self.digest_hour
            )
            self.db.update_schedule(schedule_id, last_run=to_iso(now), next_run=to_iso(next_run))
            if next_run:
                self.schedule_recurring_digest(email, schedule_id, next_run)
                logger.info(f"Next {schedule['cadence']} digest for {email} at {to_iso(next_run)}")

    def _discover_videos(self, email: str, time_window_hours: int = DEFAULT_TIME_WINDOW_HOURS):
        return self.pipeline.fetch_new_videos_for_user(email, time_window_hours)

    def _discover_channel_videos(self, email: str, channel_id: str, time_window_hours: int = DEFAULT_TIME_WINDOW_HOURS):
        return self.pipeline.fetch_new_videos_for_channel(email, channel_id, time_window_hours)

    def _process_transcript(self, video_id: str, use_asr: bool = False):
        outcome = self.transcripts.process_transcript(video_id, use_asr=use_asr)
        if outcome.status == TRANSCRIPT_ERROR:
            # Only unexpected errors are worth retrying; skips are final
            raise RuntimeError(outcome.error or f"Transcript processing failed for {video_id}")
        return outcome.to_dict()

    def _process_transcripts_batch(self, video_ids: List[str]):
        return self.transcripts.batch_process_transcripts(video_ids)

    # ========================
    # Inspection
    # ========================

    def get_recurring_digest_jobs(self, email: str) -> List[Dict]:
        jobs = []
        for job in self.scheduler.get_jobs():
            if not job.id.startswith(RECURRING_PREFIX):
                continue
            payload = job.args[1] if len(job.args) > 1 else {}
            if payload.get('email') != email:
                continue
            jobs.append({
                'id': job.id,
                'scheduleId': payload.get('schedule_id'),
                'nextRun': to_iso(job.next_run_time) if job.next_run_time else None,
            })
        return jobs

    def cancel_job(self, job_id: str) -> bool:
        try:
            self.scheduler.remove_job(job_id)
        except JobLookupError:
            return False
        logger.info(f"Cancelled job {job_id}")
        return True

    def get_job_history(self, kind: Optional[str] = None) -> Dict[str, Dict[str, List[Dict]]]:
        kinds = [kind] if kind else list(self.history)
        return {
            name: {
                'completed': list(self.history[name]['completed']),
                'failed': list(self.history[name]['failed']),
            }
            for name in kinds
        }
