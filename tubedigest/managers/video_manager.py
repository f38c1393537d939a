#!/usr/bin/env python3
"""
Video Processing Pipeline
Discovers new uploads of selected channels and turns each one into a stored
summary with chapters: transcript, then summary, then chapters
"""

import logging
from datetime import datetime, timedelta
from time import sleep
from typing import Dict, List, Optional

from tubedigest.core.constants import (
    STATUS_PENDING, STATUS_PROCESSING, STATUS_SUCCESS, STATUS_FAILED_TRANSCRIPT,
    STATUS_FAILED_AI, STATUS_FAILED_PERMANENT, STATUS_SKIPPED, TRANSCRIPT_ERROR,
    SOURCE_SEARCHAPI, DEFAULT_TIME_WINDOW_HOURS, MAX_VIDEOS_PER_CHANNEL,
    DEFAULT_VIDEO_LIST_LIMIT, RETRY_ATTEMPTS, RETRY_BATCH_SIZE, PROCESSING_RETRY_DELAY,
)
from tubedigest.core.search_api import basic_chapters, basic_summary
from tubedigest.core.youtube import YouTubeClient
from tubedigest.utils.formatters import to_iso, utc_now


logger = logging.getLogger(__name__)


class VideoPipeline:
    """Discovery and per-video processing"""

    MAX_RETRIES = RETRY_ATTEMPTS

    def __init__(
        self,
        db,
        transcripts,
        summarizer,
        auth=None,
        youtube_api_key: Optional[str] = None,
        search_client=None,
    ):
        """
        Args:
            db: DigestDatabase
            transcripts: TranscriptService
            summarizer: AISummarizer
            auth: AuthManager, for discovery with the user's own credentials
            youtube_api_key: Data API key used when the user has no token
            search_client: SearchAPIClient, source of metadata-only summaries
        """
        self.db = db
        self.transcripts = transcripts
        self.summarizer = summarizer
        self.auth = auth
        self.youtube_api_key = youtube_api_key
        self.search_client = search_client

    def _youtube_client(self, email: Optional[str]) -> YouTubeClient:
        credentials = self.auth.get_credentials(email) if (self.auth and email) else None
        return YouTubeClient(api_key=self.youtube_api_key, credentials=credentials)

    # ========================
    # Discovery
    # ========================

    def fetch_new_videos_for_channel(
        self,
        email: Optional[str],
        channel_id: str,
        time_window_hours: int = DEFAULT_TIME_WINDOW_HOURS,
        since: Optional[datetime] = None,
        youtube: Optional[YouTubeClient] = None,
    ) -> Dict:
        """
        Store and process uploads published inside the window

        Returns:
            {channelId, discovered, new, processed, failed}
        """
        published_after = since or (utc_now() - timedelta(hours=time_window_hours))
        youtube = youtube or self._youtube_client(email)

        videos = youtube.get_channel_videos(channel_id, published_after, MAX_VIDEOS_PER_CHANNEL)
        logger.info(f"📡 {channel_id}: {len(videos)} videos since {to_iso(published_after)}")

        new_ids = []
        for video in videos:
            if self.db.video_exists(video['id']):
                logger.debug(f"   Already stored: {video['id']}")
                continue
            inserted = self.db.add_video(
                video_id=video['id'],
                channel_id=video.get('channel_id') or channel_id,
                title=video.get('title') or video['id'],
                channel_title=video.get('channel_title'),
                description=video.get('description'),
                published_at=video.get('published_at'),
                duration_seconds=video.get('duration_seconds'),
                processing_status=STATUS_PENDING,
            )
            if inserted:
                new_ids.append(video['id'])

        processed = failed = 0
        for video_id in new_ids:
            result = self.process_video(video_id)
            if result['status'] == STATUS_SUCCESS:
                processed += 1
            elif result['status'] != STATUS_SKIPPED:
                failed += 1

        return {
            'channelId': channel_id,
            'discovered': len(videos),
            'new': len(new_ids),
            'processed': processed,
            'failed': failed,
        }

    def fetch_new_videos_for_user(
        self,
        email: str,
        time_window_hours: int = DEFAULT_TIME_WINDOW_HOURS,
        since: Optional[datetime] = None,
    ) -> Dict:
        """Discovery over every selected channel; one channel failing doesn't stop the rest"""
        user = self.db.get_user_by_email(email)
        if not user:
            return {'channels': 0, 'new': 0, 'processed': 0, 'failed': 0, 'errors': []}

        channels = self.db.get_user_channels(user['id'])
        youtube = self._youtube_client(email)

        totals = {'channels': len(channels), 'new': 0, 'processed': 0, 'failed': 0, 'errors': []}
        for channel in channels:
            try:
                result = self.fetch_new_videos_for_channel(
                    email, channel['channel_id'], time_window_hours, since=since, youtube=youtube
                )
                totals['new'] += result['new']
                totals['processed'] += result['processed']
                totals['failed'] += result['failed']
            except Exception as e:
                logger.error(f"Discovery failed for channel {channel['channel_id']}: {e}", exc_info=True)
                totals['errors'].append({'channelId': channel['channel_id'], 'error': str(e)})

        logger.info(
            f"Discovery for {email}: {totals['new']} new, {totals['processed']} processed, "
            f"{totals['failed']} failed across {totals['channels']} channels"
        )
        return totals

    # ========================
    # Processing
    # ========================

    def _record_failure(self, video: Dict, status: str, message: str) -> Dict:
        """Count a failed attempt; the last allowed attempt makes it permanent"""
        if (video.get('retry_count') or 0) + 1 >= self.MAX_RETRIES:
            status = STATUS_FAILED_PERMANENT
            message = f"{message} (max retries exceeded)"
        self.db.update_video(video['id'], increment_retry=True, processing_status=status, error_message=message)
        logger.info(f"      ❌ {video['id']}: {message}")
        return {'videoId': video['id'], 'status': status, 'error': message}

    def _fallback_summary(self, video_id: str, source: Optional[str]):
        """Metadata summary and chapters for videos transcribed from SearchAPI data"""
        if source != SOURCE_SEARCHAPI or not self.search_client:
            return None, None
        data = self.search_client.get_cached_video(video_id)
        if not data:
            return None, None
        return basic_summary(data), basic_chapters(data)

    def process_video(self, video_id: str) -> Dict:
        """
        Transcript, summary and chapters for one stored video

        Returns:
            {videoId, status, ...} where status is the video's new processing status
        """
        video = self.db.get_video(video_id)
        if not video:
            return {'videoId': video_id, 'status': 'not_found', 'error': 'Video not found'}

        if video['processing_status'] == STATUS_SUCCESS and self.db.get_summary(video_id):
            return {'videoId': video_id, 'status': STATUS_SUCCESS, 'cached': True}
        if video['processing_status'] in (STATUS_FAILED_PERMANENT, STATUS_SKIPPED):
            return {'videoId': video_id, 'status': video['processing_status'], 'skipReason': video.get('skip_reason')}

        logger.info(f"   ▶️  {(video.get('title') or video_id)[:60]}")
        self.db.update_video(video_id, processing_status=STATUS_PROCESSING)

        # STEP 1: Transcript
        outcome = self.transcripts.process_transcript(video_id)
        if not outcome.success:
            if outcome.status == TRANSCRIPT_ERROR:
                return self._record_failure(video, STATUS_FAILED_TRANSCRIPT, outcome.error or 'Transcript processing failed')
            return {'videoId': video_id, 'status': STATUS_SKIPPED, 'skipReason': outcome.skip_reason}

        transcript = self.db.get_transcript(video_id)
        text = transcript['text'] if transcript else ''
        source = transcript['source'] if transcript else outcome.source
        duration = video.get('duration_seconds') or outcome.duration_seconds

        # STEP 2: Summary
        result = self.summarizer.generate_summary(text, video.get('title'))
        fallback_summary, fallback_chapters = (None, None)
        if result is None:
            fallback_summary, fallback_chapters = self._fallback_summary(video_id, source)
            if not fallback_summary:
                return self._record_failure(video, STATUS_FAILED_AI, 'Failed to generate summary using OpenAI API')
            logger.info(f"      Using metadata summary for {video_id}")

        # STEP 3: Chapters
        chapters = self.summarizer.extract_chapters(text, video.get('title'), duration) if result else None
        if not chapters:
            chapters = fallback_chapters or outcome.chapters or None

        # STEP 4: Persist
        if result:
            self.db.upsert_summary(video_id, result.summary, result.model, result.tokens_used)
        else:
            self.db.upsert_summary(video_id, fallback_summary, 'searchapi', 0)
        if chapters is not None:
            self.db.replace_chapters(video_id, chapters)

        self.db.update_video(video_id, processing_status=STATUS_SUCCESS, skip_reason=None, error_message=None)
        logger.info(f"      ✅ Summary stored for {video_id} ({len(chapters or [])} chapters)")
        return {
            'videoId': video_id,
            'status': STATUS_SUCCESS,
            'source': source,
            'chapters': len(chapters or []),
        }

    def retry_failed_processing(
        self,
        max_retries: int = RETRY_ATTEMPTS,
        delay_seconds: int = PROCESSING_RETRY_DELAY,
    ) -> Dict:
        """
        Retry up to RETRY_BATCH_SIZE unsummarized videos, backing off
        exponentially between attempts on the same video
        """
        videos = self.db.get_videos_without_summary(limit=RETRY_BATCH_SIZE, max_retries=max_retries)
        if not videos:
            logger.info("No videos need reprocessing")
            return {'attempted': 0, 'succeeded': 0, 'failed': 0}

        logger.info(f"🔄 Retrying {len(videos)} videos without summaries")
        succeeded = failed = 0
        for video in videos:
            attempts_left = max(1, max_retries - (video.get('retry_count') or 0))
            status = None
            for attempt in range(attempts_left):
                status = self.process_video(video['id'])['status']
                if status in (STATUS_SUCCESS, STATUS_SKIPPED, STATUS_FAILED_PERMANENT):
                    break
                if attempt < attempts_left - 1:
                    delay = delay_seconds * (2 ** attempt)
                    logger.info(f"   Retrying {video['id']} in {delay}s...")
                    sleep(delay)

            if status == STATUS_SUCCESS:
                succeeded += 1
            else:
                failed += 1

        return {'attempted': len(videos), 'succeeded': succeeded, 'failed': failed}

    def cleanup_stuck_videos(self, older_than_minutes: int = 10) -> int:
        """Reset videos stuck in 'processing' (e.g. after a crash)"""
        stuck = self.db.get_stuck_videos(older_than_minutes)
        for video in stuck:
            if (video.get('retry_count') or 0) >= self.MAX_RETRIES:
                self.db.update_video(
                    video['id'],
                    processing_status=STATUS_FAILED_PERMANENT,
                    error_message=f'Max retries exceeded ({self.MAX_RETRIES} attempts)',
                )
            else:
                self.db.update_video(
                    video['id'],
                    processing_status=STATUS_PENDING,
                    error_message='Reset from stuck processing state',
                )
        if stuck:
            logger.info(f"✅ Cleaned up {len(stuck)} stuck videos")
        return len(stuck)

    # ========================
    # Queries
    # ========================

    def get_videos_for_digest(self, user_id: int, since: Optional[datetime] = None, limit: Optional[int] = None) -> List[Dict]:
        """Summarized videos of the user's selected channels published after since"""
        channel_ids = [channel['channel_id'] for channel in self.db.get_user_channels(user_id)]
        return self.db.get_summarized_videos(channel_ids, since=to_iso(since) if since else None, limit=limit)

    def get_all_videos_with_summaries(self, email: str, limit: int = DEFAULT_VIDEO_LIST_LIMIT) -> List[Dict]:
        user = self.db.get_user_by_email(email)
        if not user:
            return []
        return self.get_videos_for_digest(user['id'], limit=limit)

    def get_processing_status(self) -> Dict:
        counts = self.db.get_processing_counts()
        failed = sum(
            counts.get(status, 0)
            for status in (STATUS_FAILED_TRANSCRIPT, STATUS_FAILED_AI, STATUS_FAILED_PERMANENT)
        )
        return {
            'total': counts.get('total', 0),
            'pending': counts.get(STATUS_PENDING, 0),
            'processing': counts.get(STATUS_PROCESSING, 0),
            'success': counts.get(STATUS_SUCCESS, 0),
            'failed': failed,
            'skipped': counts.get(STATUS_SKIPPED, 0),
            'withTranscripts': counts.get('with_transcripts', 0),
            'withSummaries': counts.get('with_summaries', 0),
        }
