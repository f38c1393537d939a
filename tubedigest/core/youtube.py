#!/usr/bin/env python3
"""
YouTube Channel and Video Operations
Video discovery and subscriptions via the YouTube Data API, with an RSS
fallback for discovery (transcripts handled separately)
"""

import re
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import feedparser
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from tubedigest.utils.formatters import to_iso, from_iso, utc_now, parse_iso8601_duration


logger = logging.getLogger(__name__)


class YouTubeAPIError(RuntimeError):
    """Raised when the Data API rejects a request we cannot fall back from"""


class YouTubeClient:
    """Client for YouTube channel and video operations"""

    RSS_URL = "https://www.youtube.com/feeds/videos.xml?channel_id={channel_id}"
    MAX_SUBSCRIPTIONS = 50

    def __init__(self, api_key: Optional[str] = None, credentials=None):
        """
        Args:
            api_key: Data API key (public data only)
            credentials: google.oauth2 Credentials of a signed-in user; preferred
                over the API key and required for subscriptions
        """
        self.api_key = api_key
        self.credentials = credentials
        self._youtube = None

    def is_configured(self) -> bool:
        return bool(self.api_key or self.credentials)

    @property
    def youtube(self):
        """Lazily built Data API resource"""
        if self._youtube is None:
            if self.credentials is not None:
                self._youtube = build('youtube', 'v3', credentials=self.credentials, cache_discovery=False)
            elif self.api_key:
                self._youtube = build('youtube', 'v3', developerKey=self.api_key, cache_discovery=False)
            else:
                raise YouTubeAPIError("YouTube Data API is not configured")
        return self._youtube

    # ========================
    # Subscriptions
    # ========================

    def list_subscriptions(self) -> List[Dict]:
        """
        The signed-in user's subscriptions

        Returns:
            List of {channelId, title, thumbnail}
        """
        if self.credentials is None:
            raise YouTubeAPIError("Listing subscriptions requires user credentials")

        try:
            response = self.youtube.subscriptions().list(
                part='snippet',
                mine=True,
                maxResults=self.MAX_SUBSCRIPTIONS,
                order='alphabetical',
            ).execute()
        except HttpError as e:
            logger.error(f"Failed to list subscriptions: HTTP {e.resp.status}")
            raise YouTubeAPIError(f"Subscriptions request failed ({e.resp.status})") from e

        channels = []
        for item in response.get('items', []):
            snippet = item.get('snippet', {})
            channel_id = snippet.get('resourceId', {}).get('channelId')
            if not channel_id:
                continue
            thumbnails = snippet.get('thumbnails', {})
            thumbnail = (thumbnails.get('default') or thumbnails.get('medium') or {}).get('url')
            channels.append({
                'channelId': channel_id,
                'title': snippet.get('title', channel_id),
                'thumbnail': thumbnail,
            })

        logger.info(f"Loaded {len(channels)} subscriptions")
        return channels

    # ========================
    # Video discovery
    # ========================

    def get_channel_videos(
        self,
        channel_id: str,
        published_after: Optional[datetime] = None,
        max_videos: int = 10
    ) -> List[Dict]:
        """
        Recent uploads of a channel, newest first
        Uses the Data API when configured, falls back to RSS
        """
        published_after = published_after or (utc_now() - timedelta(hours=24))

        if self.is_configured():
            try:
                return self._get_channel_videos_api(channel_id, published_after, max_videos)
            except (HttpError, YouTubeAPIError) as e:
                logger.warning(f"Data API discovery failed for {channel_id}, falling back to RSS: {e}")

        return self._get_channel_videos_rss(channel_id, published_after, max_videos)

    def _get_channel_videos_api(self, channel_id: str, published_after: datetime, max_videos: int) -> List[Dict]:
        response = self.youtube.search().list(
            part='snippet',
            channelId=channel_id,
            type='video',
            order='date',
            publishedAfter=to_iso(published_after).replace('+00:00', 'Z'),
            maxResults=min(max_videos, 50),
        ).execute()

        videos = []
        for item in response.get('items', []):
            video_id = item.get('id', {}).get('videoId')
            snippet = item.get('snippet', {})
            if not video_id:
                continue
            videos.append({
                'id': video_id,
                'title': snippet.get('title', 'Untitled'),
                'description': snippet.get('description', ''),
                'channel_id': snippet.get('channelId', channel_id),
                'channel_title': snippet.get('channelTitle'),
                'published_at': to_iso(from_iso(snippet.get('publishedAt'))) if snippet.get('publishedAt') else None,
                'url': f"https://www.youtube.com/watch?v={video_id}",
            })

        self._attach_durations(videos)
        logger.debug(f"Data API returned {len(videos)} videos for {channel_id}")
        return videos

    def _attach_durations(self, videos: List[Dict]):
        """Fill duration_seconds from videos.list; best effort"""
        if not videos:
            return
        try:
            response = self.youtube.videos().list(
                part='contentDetails',
                id=','.join(video['id'] for video in videos),
            ).execute()
        except HttpError as e:
            logger.debug(f"Could not load video durations: {e}")
            return

        durations = {
            item['id']: parse_iso8601_duration(item.get('contentDetails', {}).get('duration'))
            for item in response.get('items', [])
        }
        for video in videos:
            video['duration_seconds'] = durations.get(video['id'])

    def _get_channel_videos_rss(self, channel_id: str, published_after: datetime, max_videos: int) -> List[Dict]:
        """
        Fetch recent videos via RSS feed (fallback method)
        """
        if not re.match(r'^UC[\w-]{22}$', channel_id):
            logger.warning(f"RSS needs a UC... channel ID, got: {channel_id}")
            return []

        try:
            feed = feedparser.parse(self.RSS_URL.format(channel_id=channel_id))
        except Exception as e:
            logger.error(f"Error fetching RSS for {channel_id}: {e}")
            return []

        if feed.bozo and not feed.entries:
            logger.warning(f"Invalid RSS feed for {channel_id}: {feed.bozo_exception}")
            return []

        videos = []
        for entry in feed.entries:
            if '/shorts/' in entry.get('link', ''):
                logger.debug(f"Skipping short: {entry.get('title')}")
                continue

            try:
                published = from_iso(entry.get('published'))
            except ValueError:
                published = None
            if published and published <= published_after:
                continue

            video_id = entry.get('yt_videoid')
            if not video_id:
                continue

            videos.append({
                'id': video_id,
                'title': entry.get('title', 'Untitled'),
                'description': entry.get('summary', ''),
                'channel_id': channel_id,
                'channel_title': entry.get('author'),
                'published_at': to_iso(published),
                'url': entry.get('link', f"https://www.youtube.com/watch?v={video_id}"),
            })

            if len(videos) >= max_videos:
                break

        logger.debug(f"RSS returned {len(videos)} videos for {channel_id}")
        return videos
