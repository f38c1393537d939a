#!/usr/bin/env python3
"""
yt-dlp wrapper
Subtitle track discovery and audio download for ASR
"""

import os
import logging
import random
from typing import Any, Dict, List, Optional
from time import sleep

import yt_dlp


logger = logging.getLogger(__name__)


class YTDLPClient:
    """Metadata, subtitle listings and audio for a single video"""

    DEFAULT_MAX_RETRIES = 3
    DEFAULT_RETRY_DELAY_BASE = 10
    DEFAULT_RETRY_DELAY_CAP = 120

    DEFAULT_OPTIONS = {
        'quiet': True,
        'no_warnings': True,
        'extract_flat': False,
        'skip_download': True,
        'ignoreerrors': False,
        'noprogress': True,
        'socket_timeout': 30,
    }

    def __init__(
        self,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_base: int = DEFAULT_RETRY_DELAY_BASE,
        retry_delay_cap: int = DEFAULT_RETRY_DELAY_CAP,
    ):
        self.max_retries = max(max_retries, 1)
        self.retry_delay_base = max(retry_delay_base, 1)
        self.retry_delay_cap = max(retry_delay_cap, self.retry_delay_base)
        self.ydl_opts = self.DEFAULT_OPTIONS.copy()
        self.ydl_opts['retries'] = self.max_retries
        self.ydl_opts['extractor_retries'] = self.max_retries

    @staticmethod
    def video_url(video_id: str) -> str:
        return f"https://www.youtube.com/watch?v={video_id}"

    def _backoff(self, attempt: int) -> float:
        capped = min(self.retry_delay_base * 2 ** attempt, self.retry_delay_cap)
        return capped + random.uniform(0, self.retry_delay_base)

    @staticmethod
    def _is_throttled(error: Exception) -> bool:
        message = str(error).lower()
        return any(marker in message for marker in ('429', 'rate', 'quota'))

    def _extract(self, video_id: str, opts: Dict[str, Any], download: bool = False) -> Optional[Dict]:
        """
        extract_info with retries; only rate-limit errors are retried,
        anything else returns None right away
        """
        for attempt in range(self.max_retries):
            try:
                with yt_dlp.YoutubeDL(opts) as ydl:
                    return ydl.extract_info(self.video_url(video_id), download=download)

            except yt_dlp.utils.DownloadError as e:
                if self._is_throttled(e) and attempt < self.max_retries - 1:
                    delay = self._backoff(attempt)
                    logger.warning(
                        f"yt-dlp throttled on {video_id}, retry {attempt + 1}/{self.max_retries} in {delay:.1f}s"
                    )
                    sleep(delay)
                    continue
                logger.warning(f"yt-dlp download error for {video_id}: {e}")
                return None

            except Exception as e:
                logger.error(f"yt-dlp error for {video_id}: {e}")
                return None

        logger.error(f"Max retries reached for: {video_id}")
        return None

    def get_subtitle_tracks(self, video_id: str, languages: List[str]) -> Optional[Dict]:
        """
        Subtitle and automatic caption track listings

        Returns:
            {'subtitles': {...}, 'automatic_captions': {...}, 'duration': int} or None
        """
        opts = self.ydl_opts.copy()
        opts.update({
            'writesubtitles': True,
            'writeautomaticsub': True,
            'subtitleslangs': languages,
        })

        info = self._extract(video_id, opts)
        if not info:
            return None

        return {
            'subtitles': info.get('subtitles') or {},
            'automatic_captions': info.get('automatic_captions') or {},
            'duration': info.get('duration') or 0,
        }

    def download_audio(self, video_id: str, output_dir: str) -> Optional[str]:
        """
        Download the smallest audio-only stream for transcription

        Returns:
            Path to the downloaded file, or None
        """
        os.makedirs(output_dir, exist_ok=True)
        opts = self.ydl_opts.copy()
        opts.update({
            'skip_download': False,
            'format': 'worstaudio[ext=m4a]/worstaudio/bestaudio',
            'outtmpl': os.path.join(output_dir, f'{video_id}.%(ext)s'),
        })

        info = self._extract(video_id, opts, download=True)
        if not info:
            return None

        for entry in info.get('requested_downloads') or []:
            path = entry.get('filepath')
            if path and os.path.exists(path):
                return path

        ext = info.get('ext') or 'm4a'
        path = os.path.join(output_dir, f'{video_id}.{ext}')
        return path if os.path.exists(path) else None
