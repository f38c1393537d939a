#!/usr/bin/env python3
"""
Caption tracks via the YouTube Data API
Lists a video's caption tracks, picks the best English one and downloads it,
retrying in the alternate format when the preferred one fails
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from tubedigest.core import caption_parser
from tubedigest.core.caption_parser import CaptionParseError, CaptionSegment
from tubedigest.core.language_detector import detect_language, language_from_youtube_response


logger = logging.getLogger(__name__)

# (language, trackKind) in order of preference
TRACK_PREFERENCE = [
    ('en', 'standard'),
    ('en', 'asr'),
    ('en-US', 'standard'),
    ('en-US', 'asr'),
    ('en-GB', 'standard'),
    ('en-GB', 'asr'),
]
DOWNLOAD_FORMATS = ('srt', 'vtt')


@dataclass
class CaptionResult:
    """Outcome of one transcript source"""
    has_captions: bool
    text: Optional[str] = None
    language: Optional[str] = None
    format: Optional[str] = None
    source: Optional[str] = None
    segments: List[CaptionSegment] = field(default_factory=list)
    duration_seconds: Optional[int] = None
    chapters: List[Dict] = field(default_factory=list)
    error: Optional[str] = None

    @classmethod
    def failure(cls, error: str, source: Optional[str] = None) -> 'CaptionResult':
        return cls(has_captions=False, error=error, source=source)


def select_best_track(tracks: List[Dict]) -> Optional[Dict]:
    """Manual English beats auto English, then regional English, then anything"""
    if not tracks:
        return None

    for language, kind in TRACK_PREFERENCE:
        for track in tracks:
            snippet = track.get('snippet', {})
            track_kind = (snippet.get('trackKind') or 'standard').lower()
            if snippet.get('language') == language and track_kind == kind:
                return track

    return tracks[0]


class CaptionsClient:
    """YouTube Data API captions provider"""

    def __init__(self, api_key: Optional[str] = None):
        self.api_key = api_key
        self._youtube = None

    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _service(self, credentials=None):
        # Downloading captions of other people's videos needs OAuth; listing works with a key
        if credentials is not None:
            return build('youtube', 'v3', credentials=credentials, cache_discovery=False)
        if self._youtube is None:
            self._youtube = build('youtube', 'v3', developerKey=self.api_key, cache_discovery=False)
        return self._youtube

    def fetch_captions(self, video_id: str, credentials=None) -> CaptionResult:
        """Fetch and parse the best caption track. Never raises."""
        if not self.is_configured() and credentials is None:
            return CaptionResult.failure('YouTube API not configured')

        logger.info(f"Fetching captions for video: {video_id}")
        try:
            youtube = self._service(credentials)
            tracks = self.list_tracks(video_id, youtube)
            if not tracks:
                logger.info(f"No caption tracks found for video: {video_id}")
                return CaptionResult.failure('No caption tracks available')

            track = select_best_track(tracks)
            content, used_format = self.download_track(track['id'], youtube)
            if not content:
                return CaptionResult.failure('Failed to download caption content')

            parsed = caption_parser.parse(content, used_format)
            text = parsed.text
            if not text:
                return CaptionResult.failure('Failed to parse caption content')

            language = language_from_youtube_response(track.get('snippet'))
            if language == 'unknown':
                language, _ = detect_language(text)

            logger.info(f"Fetched captions for {video_id} (language={language}, format={parsed.format})")
            return CaptionResult(
                has_captions=True,
                text=text,
                language=language,
                format=parsed.format,
                segments=parsed.segments,
                duration_seconds=parsed.duration_seconds,
            )

        except HttpError as e:
            logger.warning(f"Captions API error for {video_id}: HTTP {e.resp.status}")
            return CaptionResult.failure(f"YouTube API error {e.resp.status}")
        except CaptionParseError as e:
            return CaptionResult.failure(str(e))
        except Exception as e:
            logger.error(f"Error fetching captions for video {video_id}: {e}", exc_info=True)
            return CaptionResult.failure(str(e))

    def list_tracks(self, video_id: str, youtube=None) -> List[Dict]:
        youtube = youtube or self._service()
        response = youtube.captions().list(part='snippet', videoId=video_id).execute()
        return response.get('items', [])

    def download_track(self, track_id: str, youtube=None):
        """
        Download a track as SRT, retrying as VTT

        Returns:
            (content, format) or (None, None)
        """
        youtube = youtube or self._service()
        for tfmt in DOWNLOAD_FORMATS:
            try:
                raw = youtube.captions().download(id=track_id, tfmt=tfmt).execute()
                content = raw.decode('utf-8', errors='replace') if isinstance(raw, bytes) else raw
                if content:
                    return content, tfmt
            except HttpError as e:
                logger.debug(f"Caption download as {tfmt} failed: HTTP {e.resp.status}")
        return None, None
