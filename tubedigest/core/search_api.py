#!/usr/bin/env python3
"""
SearchAPI.io YouTube engine client
Last-resort transcript substitute built from a video's description and key
moments, with a 30-day result cache in SQLite
"""

import re
import logging
from datetime import timedelta
from typing import Dict, List, Optional

import requests

from tubedigest.core.captions import CaptionResult
from tubedigest.core.constants import (
    SEARCHAPI_URL, SEARCHAPI_TIMEOUT, SEARCH_CACHE_DAYS,
    DEFAULT_CHAPTER_LENGTH, SOURCE_SEARCHAPI,
)
from tubedigest.utils.formatters import utc_now


logger = logging.getLogger(__name__)


class SearchAPIError(RuntimeError):
    """SearchAPI request failed or returned an error payload"""


def _extract_video_id(link: Optional[str]) -> Optional[str]:
    if not link:
        return None
    match = re.search(r'[?&]v=([\w-]{11})', link)
    return match.group(1) if match else None


def map_video_result(video: Dict) -> Dict:
    """Normalize one ``video_results`` entry"""
    channel = video.get('channel') or {}
    return {
        'id': _extract_video_id(video.get('link')) or video.get('id'),
        'title': video.get('title', ''),
        'description': video.get('description', ''),
        'link': video.get('link'),
        'views': video.get('views'),
        'length': video.get('length'),
        'published_time': video.get('published_time'),
        'channel_title': channel.get('title'),
        'channel_id': channel.get('id'),
        'key_moments': video.get('key_moments') or [],
    }


def build_transcript_text(video: Dict) -> str:
    """Transcript-like text from description, key moments and context"""
    parts = []

    if video.get('description'):
        parts.append(f"Video Description:\n{video['description']}\n")

    key_moments = video.get('key_moments') or []
    if key_moments:
        lines = ['Key Moments:']
        for moment in key_moments:
            start = int(moment.get('start_seconds') or 0)
            lines.append(f"{start // 60}:{start % 60:02d} - {moment.get('title', '')}")
        parts.append('\n'.join(lines) + '\n')

    if video.get('channel_title'):
        parts.append(f"Channel: {video['channel_title']}")
    if video.get('length'):
        parts.append(f"Duration: {video['length']}")
    if video.get('views'):
        parts.append(f"Views: {video['views']:,}")

    return '\n'.join(parts).strip()


def basic_summary(video: Dict) -> str:
    """Summary assembled from metadata, used when no LLM summary is available"""
    lines = [f'Summary of "{video.get("title", "")}"', '']

    words = (video.get('description') or '').split()[:20]
    if words:
        lines.append(f"This video explores {' '.join(words).lower()}...")
        lines.append('')

    key_moments = (video.get('key_moments') or [])[:5]
    if key_moments:
        lines.append('Key Topics Covered:')
        lines.extend(f"• {moment.get('title', '')}" for moment in key_moments)
        lines.append('')

    if video.get('length'):
        lines.append(f"Video Duration: {video['length']}")
    if video.get('channel_title'):
        lines.append(f"Channel: {video['channel_title']}")
    if video.get('views'):
        lines.append(f"Views: {video['views']:,}")

    return '\n'.join(lines).strip()


def basic_chapters(video: Dict) -> List[Dict]:
    """Chapters from key moments; each ends where the next begins"""
    key_moments = video.get('key_moments') or []
    if not key_moments:
        return [{'title': 'Introduction', 'start_s': 0, 'end_s': DEFAULT_CHAPTER_LENGTH}]

    chapters = []
    for index, moment in enumerate(key_moments):
        start = int(moment.get('start_seconds') or 0)
        if index + 1 < len(key_moments):
            end = int(key_moments[index + 1].get('start_seconds') or start)
        else:
            end = start + DEFAULT_CHAPTER_LENGTH
        chapters.append({'title': moment.get('title', f'Part {index + 1}'), 'start_s': start, 'end_s': end})
    return chapters


class SearchAPIClient:
    """SearchAPI.io client with SQLite-backed cache"""

    def __init__(self, api_key: Optional[str], db=None, session: Optional[requests.Session] = None):
        """
        Args:
            api_key: SearchAPI.io key
            db: DigestDatabase used as result cache (optional)
            session: requests session, injectable for tests
        """
        self.api_key = api_key
        self.db = db
        self.session = session or requests.Session()

    def is_available(self) -> bool:
        return bool(self.api_key)

    def get_status(self) -> Dict:
        available = self.is_available()
        return {
            'available': available,
            'message': 'SearchAPI is configured' if available else 'SearchAPI key not configured',
        }

    def _request(self, query: str, num: int) -> Dict:
        if not self.api_key:
            raise SearchAPIError('SearchAPI key not configured')

        params = {
            'engine': 'youtube',
            'q': query,
            'api_key': self.api_key,
            'num': num,
            'gl': 'us',
            'hl': 'en',
        }
        try:
            response = self.session.get(SEARCHAPI_URL, params=params, timeout=SEARCHAPI_TIMEOUT)
            response.raise_for_status()
            data = response.json()
        except requests.RequestException as e:
            raise SearchAPIError(f"SearchAPI request failed: {e}") from e
        except ValueError as e:
            raise SearchAPIError("SearchAPI returned invalid JSON") from e

        if data.get('error'):
            raise SearchAPIError(f"SearchAPI error: {data['error']}")
        return data

    def search_youtube_videos(self, query: str, max_results: int = 10) -> List[Dict]:
        """Search YouTube; results are cached per video"""
        logger.info(f'Searching YouTube for: "{query}"')
        data = self._request(query, max_results)
        videos = [map_video_result(video) for video in data.get('video_results') or []]

        for video in videos:
            if video.get('id'):
                self.cache_video(video, query)

        logger.info(f'Found {len(videos)} videos for query: "{query}"')
        return videos

    def get_video_by_id(self, video_id: str, use_cache: bool = True) -> Optional[Dict]:
        """Video details by ID, from cache when possible"""
        if use_cache:
            cached = self.get_cached_video(video_id)
            if cached:
                logger.debug(f"SearchAPI cache hit for {video_id}")
                return cached

        data = self._request(video_id, 1)
        results = [map_video_result(video) for video in data.get('video_results') or []]
        if not results:
            logger.info(f"No SearchAPI result for video ID: {video_id}")
            return None

        # the engine matches the query loosely; never attribute another video to this ID
        video = next((result for result in results if result.get('id') == video_id), None)
        if video is None:
            if any(result.get('id') for result in results):
                logger.warning(f"SearchAPI returned other videos for {video_id}, ignoring them")
                return None
            logger.warning(f"SearchAPI results for {video_id} carry no video ID, using the first one")
            video = results[0]
            video['id'] = video_id
        self.cache_video(video)
        return video

    def fetch_transcript(self, video_id: str) -> CaptionResult:
        """Transcript substitute for the cascade. Never raises."""
        if not self.is_available():
            return CaptionResult.failure('SearchAPI not configured', SOURCE_SEARCHAPI)

        try:
            video = self.get_video_by_id(video_id)
        except SearchAPIError as e:
            logger.warning(f"SearchAPI lookup failed for {video_id}: {e}")
            return CaptionResult.failure(str(e), SOURCE_SEARCHAPI)

        if not video:
            return CaptionResult.failure('No SearchAPI data', SOURCE_SEARCHAPI)

        text = build_transcript_text(video)
        if not text:
            return CaptionResult.failure('SearchAPI data has no usable text', SOURCE_SEARCHAPI)

        return CaptionResult(
            has_captions=True,
            text=text,
            language='en',
            format='text',
            source=SOURCE_SEARCHAPI,
            chapters=basic_chapters(video) if video.get('key_moments') else [],
        )

    # ========================
    # Cache
    # ========================

    def get_cached_video(self, video_id: str) -> Optional[Dict]:
        if self.db is None:
            return None
        return self.db.get_search_cache(video_id)

    def cache_video(self, video: Dict, query: Optional[str] = None):
        if self.db is None or not video.get('id'):
            return
        expires_at = utc_now() + timedelta(days=SEARCH_CACHE_DAYS)
        self.db.set_search_cache(video['id'], video, expires_at, query)

    def search_cached_videos(self, query: str, limit: int = 10) -> List[Dict]:
        if self.db is None:
            return []
        return self.db.search_cache_entries(query, limit)

    def cleanup_expired_cache(self) -> int:
        if self.db is None:
            return 0
        removed = self.db.delete_expired_search_cache()
        logger.info(f"Removed {removed} expired SearchAPI cache entries")
        return removed

    def get_cache_stats(self) -> Dict:
        if self.db is None:
            return {'total': 0, 'active': 0, 'expired': 0}
        return self.db.get_search_cache_counts()

    def invalidate_cache(self, video_id: str) -> bool:
        if self.db is None:
            return False
        return self.db.deactivate_search_cache(video_id)
