#!/usr/bin/env python3
"""
Digest Assembly and Scheduling
Builds each user's digest from newly summarized videos, renders it with
Jinja2 and sends it by email. Schedules decide when that happens.
"""

import os
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple
from html import escape

from jinja2 import Environment, FileSystemLoader, select_autoescape

from tubedigest.core.constants import (
    CADENCES, CADENCE_IMMEDIATE, CADENCE_DAILY, CADENCE_WEEKLY, CADENCE_CUSTOM,
    DIGEST_ASSEMBLING, DIGEST_NO_CHANNELS, DIGEST_NO_NEW_VIDEOS, DIGEST_SENT, DIGEST_FAILED,
    DEFAULT_DIGEST_HOUR, DEFAULT_DIGEST_LOOKBACK_DAYS, DEFAULT_TIME_WINDOW_HOURS,
    PREVIEW_LOOKBACK_DAYS, PREVIEW_MAX_VIDEOS,
)
from tubedigest.utils.file_lock import exclusive_lock, LockBusyError
from tubedigest.utils.formatters import (
    to_iso, from_iso, utc_now, format_timestamp, format_duration, format_digest_date,
)


logger = logging.getLogger(__name__)

TEMPLATES_DIR = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), 'templates')


class ScheduleError(ValueError):
    """Invalid cadence, missing start date or unknown schedule"""


def _at_hour(dt: datetime, hour: int) -> datetime:
    return dt.replace(hour=hour, minute=0, second=0, microsecond=0)


def compute_next_run(
    cadence: str,
    start_date: Optional[datetime] = None,
    now: Optional[datetime] = None,
    hour: int = DEFAULT_DIGEST_HOUR,
) -> datetime:
    """
    First run of a new schedule (UTC)

    immediate: now; daily: next HOUR:00; weekly: next Monday HOUR:00;
    custom: start_date

    Raises:
        ScheduleError: unknown cadence, or custom without a future start_date
    """
    now = now or utc_now()

    if cadence == CADENCE_IMMEDIATE:
        return now

    if cadence == CADENCE_DAILY:
        next_run = _at_hour(now, hour)
        if next_run <= now:
            next_run += timedelta(days=1)
        return next_run

    if cadence == CADENCE_WEEKLY:
        # Always the coming Monday, a week out when today is Monday
        return _at_hour(now, hour) + timedelta(days=7 - now.weekday())

    if cadence == CADENCE_CUSTOM:
        if not start_date:
            raise ScheduleError('Start date is required for custom cadence')
        if start_date.tzinfo is None:
            start_date = start_date.replace(tzinfo=timezone.utc)
        if start_date < now:
            raise ScheduleError(f'Start date {to_iso(start_date)} is in the past')
        return start_date

    raise ScheduleError(f"Invalid cadence: {cadence}. Must be one of: {', '.join(CADENCES)}")


def compute_following_run(
    cadence: str,
    last_run: datetime,
    custom_days: Optional[int] = None,
    hour: int = DEFAULT_DIGEST_HOUR,
) -> Optional[datetime]:
    """Run after last_run for a recurring schedule; None for one-shot cadences"""
    if cadence == CADENCE_DAILY:
        days = 1
    elif cadence == CADENCE_WEEKLY:
        days = 7
    elif cadence == CADENCE_CUSTOM:
        days = custom_days or 1
    else:
        return None
    return _at_hour(last_run + timedelta(days=days), hour)


def _video_url(video_id: str) -> str:
    return f"https://www.youtube.com/watch?v={video_id}"


def _date_filter(value) -> str:
    if not value:
        return 'Unknown'
    if isinstance(value, str):
        try:
            value = from_iso(value)
        except ValueError:
            return value
    return format_digest_date(value)


class DigestService:
    """Assemble, render, send and schedule digests"""

    def __init__(
        self,
        db,
        pipeline,
        email_sender,
        app_url: str = 'http://localhost:8000',
        digest_hour: int = DEFAULT_DIGEST_HOUR,
        lock_dir: str = 'data/locks',
    ):
        """
        Args:
            db: DigestDatabase
            pipeline: VideoPipeline used to refresh and query videos
            email_sender: EmailSender
            app_url: Base URL for web-view links
            digest_hour: Hour (UTC) scheduled digests go out
            lock_dir: Directory for per-user lock files
        """
        self.db = db
        self.pipeline = pipeline
        self.email_sender = email_sender
        self.app_url = app_url.rstrip('/')
        self.digest_hour = digest_hour
        self.lock_dir = lock_dir
        self.jobs = None

        self.env = Environment(
            loader=FileSystemLoader(TEMPLATES_DIR),
            autoescape=select_autoescape(['html']),
            trim_blocks=False,
        )
        self.env.filters['timestamp'] = format_timestamp
        self.env.filters['duration'] = format_duration
        self.env.filters['digest_date'] = _date_filter

    def set_job_manager(self, jobs):
        """Attach the JobManager that runs scheduled digests"""
        self.jobs = jobs

    # ========================
    # Scheduling
    # ========================

    def schedule_digest(
        self,
        email: str,
        cadence: str,
        start_date: Optional[datetime] = None,
        custom_days: Optional[int] = None,
    ) -> Dict:
        """
        Store a schedule and queue its first run

        Raises:
            ScheduleError: invalid cadence / custom without a future start date
        """
        if cadence not in CADENCES:
            raise ScheduleError(f"Invalid cadence: {cadence}. Must be one of: {', '.join(CADENCES)}")
        if custom_days is not None and custom_days < 1:
            raise ScheduleError('custom_days must be at least 1')

        next_run = compute_next_run(cadence, start_date, hour=self.digest_hour)
        user = self.db.upsert_user(email)
        schedule_id = self.db.create_schedule(
            user['id'],
            cadence,
            next_run=to_iso(next_run),
            start_date=to_iso(start_date) if start_date else None,
            custom_days=custom_days,
        )

        if self.jobs is not None:
            if cadence == CADENCE_IMMEDIATE:
                self.jobs.enqueue_digest(email)
            else:
                self.jobs.schedule_recurring_digest(email, schedule_id, next_run)

        logger.info(f"Scheduled {cadence} digest for {email}, next run {to_iso(next_run)}")
        return {
            'id': schedule_id,
            'cadence': cadence,
            'nextRun': to_iso(next_run),
            'customDays': custom_days,
        }

    def get_user_schedules(self, email: str) -> List[Dict]:
        user = self.db.get_user_by_email(email)
        if not user:
            return []
        schedules = self.db.get_schedules(user['id'])
        return sorted(schedules, key=lambda schedule: schedule.get('next_run') or '')

    def cancel_schedule(self, schedule_id: int, email: str) -> Dict:
        """
        Disable a schedule owned by the user

        Raises:
            ScheduleError: user or schedule not found
        """
        user = self.db.get_user_by_email(email)
        if not user:
            raise ScheduleError('User not found')

        schedule = self.db.get_schedule(schedule_id)
        if not schedule or schedule['user_id'] != user['id']:
            raise ScheduleError('Schedule not found')

        self.db.update_schedule(schedule_id, enabled=0)
        if self.jobs is not None:
            self.jobs.cancel_job(f"recurring-digest-{schedule_id}")

        logger.info(f"Cancelled schedule {schedule_id} for {email}")
        return {'id': schedule_id, 'status': 'cancelled'}

    # ========================
    # Rendering
    # ========================

    def _prepare_videos(self, videos: List[Dict]) -> List[Dict]:
        prepared = []
        for video in videos:
            item = dict(video)
            item['url'] = _video_url(video['id'])
            item.setdefault('chapters', [])
            prepared.append(item)
        return prepared

    def render_digest(self, videos: List[Dict], web_view_url: str, date: Optional[datetime] = None) -> Tuple[str, str]:
        """HTML and plain-text bodies of a digest email"""
        context = {
            'videos': self._prepare_videos(videos),
            'web_view_url': web_view_url,
            'date': format_digest_date(date),
        }
        html = self.env.get_template('digest_email.html').render(**context)
        text = self.env.get_template('digest_email.txt').render(**context)
        return html, text

    # ========================
    # Assembly
    # ========================

    def assemble_and_send(self, email: str) -> Dict:
        """
        Build and send one digest

        Returns:
            {id, status, ...}; status is sent / no_channels / no_new_videos,
            or in_progress when another run for this user holds the lock

        Raises:
            Whatever failed; the run is marked failed first
        """
        try:
            with exclusive_lock(f"digest:{email}", timeout=1, lock_dir=self.lock_dir):
                return self._assemble_and_send(email)
        except LockBusyError:
            logger.warning(f"Digest for {email} already in progress, skipping")
            return {'id': None, 'status': 'in_progress'}

    def _assemble_and_send(self, email: str) -> Dict:
        user = self.db.upsert_user(email)
        run_id = self.db.create_digest_run(user['id'], DIGEST_ASSEMBLING)
        logger.info(f"Assembling digest {run_id} for {email}")

        try:
            channels = self.db.get_user_channels(user['id'])
            if not channels:
                self.db.update_digest_run(run_id, status=DIGEST_NO_CHANNELS)
                logger.info(f"Digest {run_id}: no channels selected")
                return {'id': run_id, 'status': DIGEST_NO_CHANNELS}

            now = utc_now()
            last_run = self.db.get_last_sent_run(user['id'])
            since = from_iso(last_run['sent_at']) if last_run else now - timedelta(days=DEFAULT_DIGEST_LOOKBACK_DAYS)

            # Look back at least a day when discovering, even right after a digest
            discovery_since = min(since, now - timedelta(hours=DEFAULT_TIME_WINDOW_HOURS))
            self.pipeline.fetch_new_videos_for_user(email, since=discovery_since)

            videos = self.pipeline.get_videos_for_digest(user['id'], since)
            if not videos:
                self.db.update_digest_run(run_id, status=DIGEST_NO_NEW_VIDEOS, since=to_iso(since))
                logger.info(f"Digest {run_id}: no new videos since {to_iso(since)}")
                return {'id': run_id, 'status': DIGEST_NO_NEW_VIDEOS}

            self.db.add_digest_items(run_id, [video['id'] for video in videos])

            web_view_url = f"{self.app_url}/digests/{run_id}"
            html, text = self.render_digest(videos, web_view_url, now)
            subject = f"TubeDigest - {format_digest_date(now)}"

            message_id = self.email_sender.send_digest(email, subject, html, text)

            self.db.update_digest_run(
                run_id,
                status=DIGEST_SENT,
                since=to_iso(since),
                sent_at=to_iso(utc_now()),
                message_id=message_id,
                web_view_url=web_view_url,
                item_count=len(videos),
            )
            logger.info(f"📧 Digest {run_id} sent to {email} with {len(videos)} videos")
            return {'id': run_id, 'status': DIGEST_SENT, 'messageId': message_id, 'itemCount': len(videos)}

        except Exception as e:
            logger.error(f"Digest {run_id} for {email} failed: {e}", exc_info=True)
            self.db.update_digest_run(run_id, status=DIGEST_FAILED, error_message=str(e))
            raise

    # ========================
    # Views
    # ========================

    @staticmethod
    def video_view(video: Dict) -> Dict:
        return {
            'id': video['id'],
            'title': video.get('title'),
            'url': _video_url(video['id']),
            'channelTitle': video.get('channel_title'),
            'publishedAt': video.get('published_at'),
            'duration': format_duration(video.get('duration_seconds')),
            'summary': video.get('summary') or 'No summary available',
            'chapters': [
                {
                    'startS': chapter['start_s'],
                    'endS': chapter['end_s'],
                    'timestamp': format_timestamp(chapter['start_s']),
                    'title': chapter['title'],
                }
                for chapter in video.get('chapters', [])
            ],
        }

    def generate_digest_preview(self, email: str) -> Dict:
        """Up to five summarized videos from the last week, nothing sent"""
        user = self.db.upsert_user(email)
        if not self.db.get_user_channels(user['id']):
            return {
                'title': 'No Channels Selected',
                'summary': 'Please select some channels to see a preview of your digest.',
                'videoCount': 0,
                'videos': [],
            }

        since = utc_now() - timedelta(days=PREVIEW_LOOKBACK_DAYS)
        videos = self.pipeline.get_videos_for_digest(user['id'], since, limit=PREVIEW_MAX_VIDEOS)
        return {
            'title': f"TubeDigest Preview - {format_digest_date()}",
            'summary': f"Preview of your digest with {len(videos)} videos from your selected channels.",
            'videoCount': len(videos),
            'videos': [self.video_view(video) for video in videos],
        }

    def get_digest(self, run_id: int, email: Optional[str] = None) -> Optional[Dict]:
        """Web view of a digest run; restricted to its owner when email is given"""
        run = self.db.get_digest_run(run_id)
        if not run:
            return None
        if email is not None:
            user = self.db.get_user_by_email(email)
            if not user or user['id'] != run['user_id']:
                return None

        items = self.db.get_digest_items(run_id)
        return {
            'id': run['id'],
            'status': run['status'],
            'since': run.get('since'),
            'sentAt': run.get('sent_at'),
            'messageId': run.get('message_id'),
            'webViewUrl': run.get('web_view_url'),
            'itemCount': run.get('item_count') or len(items),
            'videos': [self.video_view(video) for video in items],
        }

    def get_latest_digest(self, email: str) -> Optional[Dict]:
        user = self.db.get_user_by_email(email)
        if not user:
            return None
        run = self.db.get_latest_run(user['id'])
        return self.get_digest(run['id']) if run else None

    def send_test_digest(self, email: str) -> Dict:
        """Send a short test email; failures are reported, not raised"""
        subject = f"TubeDigest Test Digest for {email}"
        sent_at = to_iso(utc_now())
        html = (
            "<h1>TubeDigest Test Digest</h1>"
            f"<p>This is a test digest email sent to {escape(email)}</p>"
            f"<p>Sent at: {sent_at}</p>"
            "<p>If you receive this, the digest email system is working correctly!</p>"
        )
        text = f"TubeDigest Test Digest for {email} - Digest email system is working correctly!"

        try:
            message_id = self.email_sender.send_digest(email, subject, html, text)
            return {'email': email, 'status': 'sent', 'messageId': message_id}
        except Exception as e:
            logger.error(f"Test digest to {email} failed: {e}")
            return {'email': email, 'status': 'failed', 'error': str(e)}
