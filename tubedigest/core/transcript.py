#!/usr/bin/env python3
"""
Transcript cascade for a single video
Ordered fallback cascade: Data API captions, youtube-transcript-api,
yt-dlp subtitles, timedtext, ASR, SearchAPI, and mock data for development
"""

import html
import logging
import random
import time
from typing import Any, Callable, List, Optional, Tuple

import requests
from bs4 import BeautifulSoup
from youtube_transcript_api import YouTubeTranscriptApi
from youtube_transcript_api._errors import (
    TranscriptsDisabled,
    NoTranscriptFound,
    VideoUnavailable,
    IpBlocked,
    RequestBlocked,
)

from tubedigest.core import caption_parser
from tubedigest.core.captions import CaptionResult, CaptionsClient
from tubedigest.core.caption_parser import CaptionSegment
from tubedigest.core.constants import (
    CACHE_SKIP_STATUSES, SOURCE_YOUTUBE_API, SOURCE_TRANSCRIPT_API, SOURCE_YTDLP,
    SOURCE_TIMEDTEXT, SOURCE_ASR, SOURCE_SEARCHAPI, SOURCE_MOCK,
)
from tubedigest.core.language_detector import detect_language


logger = logging.getLogger(__name__)

MOCK_SRT = """1
00:00:00,000 --> 00:00:03,000
Welcome to this video about how we process transcripts.

2
00:00:03,000 --> 00:00:06,000
Today we will look at what it takes to build

3
00:00:06,000 --> 00:00:09,000
a caption system that you can use in your own work.

4
00:00:09,000 --> 00:00:12,000
This includes the YouTube Data API and some text cleanup.

5
00:00:12,000 --> 00:00:15,000
We will also see how it all fits into the pipeline.

6
00:00:15,000 --> 00:00:18,000
Let's get started with the first part.
"""

STAGE_DIRECTIONS = {"music", "applause", "laughter", "silence", "background music"}


class TranscriptExtractor:
    """Fetch a transcript for a video from the first source that has one"""

    DEFAULT_LANGUAGES = ["en", "en-US", "en-GB"]
    DEFAULT_MAX_RETRIES = 3
    DEFAULT_BACKOFF_BASE = 2  # seconds
    DEFAULT_BACKOFF_CAP = 30  # seconds

    def __init__(
        self,
        captions_client: Optional[CaptionsClient] = None,
        ytdlp_client=None,
        asr_client=None,
        search_client=None,
        preferred_languages: Optional[List[str]] = None,
        asr_enabled: bool = False,
        allow_mock: bool = False,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff_base: int = DEFAULT_BACKOFF_BASE,
        backoff_cap: int = DEFAULT_BACKOFF_CAP,
        cache: Optional[Any] = None,
        transcript_api: Optional[YouTubeTranscriptApi] = None,
    ):
        """
        Args:
            captions_client: YouTube Data API captions provider
            ytdlp_client: YTDLPClient for subtitle discovery
            asr_client: ASRClient, used when ASR is enabled or requested
            search_client: SearchAPIClient, last real source
            preferred_languages: Language codes in order of preference
            asr_enabled: Run ASR on every video that lacks captions
            allow_mock: Return mock captions when every real source fails
            max_retries: Retry attempts for youtube-transcript-api blocks
            backoff_base: Base delay for exponential backoff (seconds)
            backoff_cap: Maximum delay for exponential backoff (seconds)
            cache: Object with get/set/clear_transcript_cache (DigestDatabase)
        """
        self.captions_client = captions_client
        self.ytdlp_client = ytdlp_client
        self.asr_client = asr_client
        self.search_client = search_client
        self.preferred_languages = (
            [lang.strip() for lang in preferred_languages if lang.strip()]
            if preferred_languages
            else list(self.DEFAULT_LANGUAGES)
        )
        self.asr_enabled = asr_enabled
        self.allow_mock = allow_mock
        self.max_retries = max(1, max_retries)
        self.backoff_base = max(1, backoff_base)
        self.backoff_cap = max(self.backoff_base, backoff_cap)
        self.cache = cache
        self.api = transcript_api or YouTubeTranscriptApi()

    # ------------------------------------------------------------------
    # Cascade
    # ------------------------------------------------------------------

    def get_transcript_cascade(self, video_id: str, use_asr: bool = False, credentials=None) -> CaptionResult:
        """
        Try each source in order until one returns text.

        Returns:
            CaptionResult with has_captions=True and the winning source,
            or a failure listing why the last source failed
        """
        methods: List[Tuple[str, str, Callable[[], CaptionResult]]] = [
            ('YouTube Data API captions', SOURCE_YOUTUBE_API, lambda: self._method_youtube_api(video_id, credentials)),
            ('youtube-transcript-api', SOURCE_TRANSCRIPT_API, lambda: self._method_transcript_api(video_id)),
            ('yt-dlp subtitles', SOURCE_YTDLP, lambda: self._method_ytdlp(video_id)),
            ('timedtext API', SOURCE_TIMEDTEXT, lambda: self._method_timedtext(video_id)),
        ]
        if self.asr_enabled or use_asr:
            methods.append(('Whisper ASR', SOURCE_ASR, lambda: self._method_asr(video_id)))
        methods.append(('SearchAPI', SOURCE_SEARCHAPI, lambda: self._method_searchapi(video_id)))
        if self.allow_mock:
            methods.append(('mock captions', SOURCE_MOCK, lambda: self._method_mock(video_id)))

        last_error = 'No transcript source available'
        total = len(methods)
        for i, (display_name, source, method) in enumerate(methods, 1):
            logger.info(f"Method {i}/{total}: {display_name} for {video_id}")
            try:
                result = method()
            except Exception as e:
                logger.warning(f"   {display_name} failed: {e}")
                last_error = str(e)
                continue

            if result and result.has_captions and result.text:
                result.source = result.source or source
                logger.info(f"Transcript for {video_id} via {display_name}")
                self._clear_cache(video_id)
                return result

            if result and result.error:
                last_error = result.error
            logger.debug(f"   Method {i} returned no transcript ({last_error})")

        logger.info(f"All {total} transcript methods exhausted for {video_id}")
        return CaptionResult.failure(last_error)

    # ------------------------------------------------------------------
    # Sources
    # ------------------------------------------------------------------

    def _method_youtube_api(self, video_id: str, credentials=None) -> CaptionResult:
        if not self.captions_client or (not self.captions_client.is_configured() and credentials is None):
            return CaptionResult.failure('YouTube API not configured')
        return self.captions_client.fetch_captions(video_id, credentials)

    def _method_transcript_api(self, video_id: str) -> CaptionResult:
        """
        youtube-transcript-api with retries on IP blocks and rate limits.
        Permanent unavailability is cached so the video is not asked again.
        """
        cached = self._get_cached_status(video_id)
        if cached:
            logger.debug(f"Transcript cache hit for {video_id} (status={cached.get('status')})")
            return CaptionResult.failure(cached.get('reason') or cached['status'])

        for attempt in range(self.max_retries):
            try:
                transcript = self._select_transcript(video_id)
                if transcript is None:
                    return CaptionResult.failure('No transcript in preferred languages')

                fetched = transcript.fetch()
                segments = self._to_segments(fetched)
                text = self._segments_to_text(segments)
                if not text:
                    return CaptionResult.failure('Empty transcript')

                return CaptionResult(
                    has_captions=True,
                    text=text,
                    language=getattr(transcript, 'language_code', None) or detect_language(text)[0],
                    format='json3',
                    segments=segments,
                    duration_seconds=int(segments[-1].end) if segments else None,
                )

            except TranscriptsDisabled:
                logger.info(f"Transcripts disabled for {video_id}")
                self._cache_unavailable(video_id, "disabled", "Transcripts disabled by uploader")
                return CaptionResult.failure('Transcripts disabled')
            except VideoUnavailable:
                logger.info(f"Video unavailable for transcript: {video_id}")
                self._cache_unavailable(video_id, "video_unavailable", "Video unavailable")
                return CaptionResult.failure('Video unavailable')
            except NoTranscriptFound:
                logger.info(f"No transcript found for {video_id} in preferred languages")
                self._cache_unavailable(video_id, "not_found", "No transcripts in preferred languages")
                return CaptionResult.failure('No transcript found')
            except (IpBlocked, RequestBlocked) as exc:
                # Temporary, so not cached
                delay = self._compute_backoff_delay(attempt)
                logger.warning(
                    f"YouTube blocked request for {video_id}: {type(exc).__name__}. "
                    f"Retrying in {delay:.1f}s (attempt {attempt + 1}/{self.max_retries})"
                )
                if attempt < self.max_retries - 1:
                    time.sleep(delay)
            except Exception as exc:
                error_str = str(exc).lower()
                is_rate_limit = '429' in error_str or 'too many requests' in error_str or 'rate limit' in error_str
                if not is_rate_limit:
                    logger.warning(f"Unexpected error fetching transcript for {video_id}: {exc}")
                    return CaptionResult.failure(str(exc))

                delay = self._compute_backoff_delay(attempt)
                logger.warning(
                    f"Rate limited fetching transcript for {video_id}. "
                    f"Retrying in {delay:.1f}s (attempt {attempt + 1}/{self.max_retries})"
                )
                if attempt < self.max_retries - 1:
                    time.sleep(delay)

        return CaptionResult.failure('Transcript extraction exhausted retries')

    def _select_transcript(self, video_id: str):
        """Manual track in a preferred language, then auto-generated"""
        transcript_list = self.api.list(video_id)

        try:
            return transcript_list.find_manually_created_transcript(self.preferred_languages)
        except NoTranscriptFound:
            pass

        try:
            transcript = transcript_list.find_generated_transcript(self.preferred_languages)
            logger.debug(f"Using auto-generated transcript for {video_id}")
            return transcript
        except NoTranscriptFound:
            pass

        return transcript_list.find_transcript(self.preferred_languages)

    def _method_ytdlp(self, video_id: str) -> CaptionResult:
        """Subtitle tracks found by yt-dlp; manual before automatic"""
        if not self.ytdlp_client:
            return CaptionResult.failure('yt-dlp not configured')

        info = self.ytdlp_client.get_subtitle_tracks(video_id, self.preferred_languages)
        if not info:
            return CaptionResult.failure('yt-dlp returned no info')

        for kind in ('subtitles', 'automatic_captions'):
            tracks = info.get(kind) or {}
            for lang in self.preferred_languages:
                for fmt in tracks.get(lang) or []:
                    if fmt.get('ext') not in ('json3', 'vtt'):
                        continue
                    parsed = self._download_subtitle(fmt['url'], fmt['ext'])
                    if parsed and parsed.segments:
                        logger.debug(f"   Found {kind} track in {lang} ({fmt['ext']})")
                        return CaptionResult(
                            has_captions=True,
                            text=parsed.text,
                            language=lang,
                            format=parsed.format,
                            segments=parsed.segments,
                            duration_seconds=info.get('duration') or parsed.duration_seconds,
                        )

        return CaptionResult.failure('No subtitle tracks via yt-dlp')

    @staticmethod
    def _download_subtitle(url: str, ext: str):
        try:
            response = requests.get(url, timeout=30)
            if response.status_code != 200:
                return None
            if ext == 'json3':
                return caption_parser.parse_json3(response.json())
            return caption_parser.parse_vtt(response.text)
        except (requests.RequestException, ValueError) as e:
            logger.debug(f"   Subtitle download failed: {e}")
            return None

    def _method_timedtext(self, video_id: str) -> CaptionResult:
        """Direct timedtext endpoint, XML parsed with BeautifulSoup"""
        for lang in self.preferred_languages:
            url = f"https://www.youtube.com/api/timedtext?v={video_id}&lang={lang}"
            try:
                response = requests.get(url, timeout=30)
            except requests.RequestException as e:
                logger.debug(f"   timedtext API ({lang}) failed: {e}")
                continue

            if response.status_code != 200 or '<transcript>' not in (response.text or ''):
                continue

            soup = BeautifulSoup(response.text, 'xml')
            segments = []
            for tag in soup.find_all('text'):
                start = float(tag.get('start', 0))
                segments.append(CaptionSegment(
                    start=start,
                    end=start + float(tag.get('dur', 0)),
                    text=tag.get_text(),
                ))

            text = self._segments_to_text(segments)
            if text:
                return CaptionResult(
                    has_captions=True,
                    text=text,
                    language=lang,
                    format='xml',
                    segments=segments,
                    duration_seconds=int(segments[-1].end) if segments else None,
                )

        return CaptionResult.failure('No timedtext captions')

    def _method_asr(self, video_id: str) -> CaptionResult:
        if not self.asr_client:
            return CaptionResult.failure('ASR not configured')
        return self.asr_client.transcribe_video(video_id)

    def _method_searchapi(self, video_id: str) -> CaptionResult:
        if not self.search_client:
            return CaptionResult.failure('SearchAPI not configured')
        return self.search_client.fetch_transcript(video_id)

    @staticmethod
    def _method_mock(video_id: str) -> CaptionResult:
        logger.warning(f"Using mock captions for {video_id}")
        parsed = caption_parser.parse_srt(MOCK_SRT)
        return CaptionResult(
            has_captions=True,
            text=parsed.text,
            language='en',
            format='srt',
            source=SOURCE_MOCK,
            segments=parsed.segments,
            duration_seconds=parsed.duration_seconds,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _to_segments(fetched) -> List[CaptionSegment]:
        """youtube-transcript-api snippets (objects or dicts) to segments"""
        segments = []
        for snippet in fetched or []:
            if hasattr(snippet, 'text'):
                text, start, duration = snippet.text, snippet.start, snippet.duration
            else:
                text, start, duration = snippet.get('text', ''), snippet.get('start', 0), snippet.get('duration', 0)
            start = float(start or 0)
            segments.append(CaptionSegment(start=start, end=start + float(duration or 0), text=text or ''))
        return segments

    @staticmethod
    def _segments_to_text(segments: List[CaptionSegment]) -> str:
        """Join segments into plaintext, dropping bracketed stage directions"""
        cleaned_parts: List[str] = []

        for segment in segments:
            text = (segment.text or '').strip()
            if not text:
                continue

            if text.startswith("[") and text.endswith("]"):
                if text[1:-1].strip().lower() in STAGE_DIRECTIONS:
                    continue

            cleaned_parts.append(html.unescape(text))

        return " ".join(" ".join(cleaned_parts).split())

    def _compute_backoff_delay(self, attempt: int) -> float:
        """base * 2**attempt plus jitter, never above the cap"""
        exponent = min(self.backoff_cap, self.backoff_base * (2 ** attempt))
        jitter = random.uniform(0, self.backoff_base)
        return min(self.backoff_cap, exponent + jitter)

    def _get_cached_status(self, video_id: str) -> Optional[dict]:
        if not self.cache:
            return None
        entry = self.cache.get_transcript_cache(video_id)
        if entry and entry.get("status") in CACHE_SKIP_STATUSES:
            return entry
        return None

    def _cache_unavailable(self, video_id: str, status: str, reason: str) -> None:
        if self.cache:
            self.cache.set_transcript_cache(video_id, status, reason)

    def _clear_cache(self, video_id: str) -> None:
        if self.cache:
            self.cache.clear_transcript_cache(video_id)
