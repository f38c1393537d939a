#!/usr/bin/env python3
"""
Speech recognition fallback
Downloads a video's audio with yt-dlp and transcribes it with OpenAI Whisper
"""

import os
import logging
import shutil
import tempfile
from typing import Optional

import openai

from tubedigest.core.captions import CaptionResult
from tubedigest.core.constants import SOURCE_ASR
from tubedigest.core.language_detector import detect_language
from tubedigest.core.ytdlp_client import YTDLPClient


logger = logging.getLogger(__name__)


class ASRClient:
    """Whisper transcription of downloaded audio"""

    MODEL = 'whisper-1'
    MAX_UPLOAD_BYTES = 25 * 1024 * 1024  # Whisper API upload limit

    def __init__(self, api_key: Optional[str], ytdlp: Optional[YTDLPClient] = None):
        self.api_key = api_key
        self.ytdlp = ytdlp or YTDLPClient()
        self.client = openai.OpenAI(api_key=api_key, timeout=300.0) if api_key else None

    def is_configured(self) -> bool:
        return self.client is not None

    def transcribe_video(self, video_id: str) -> CaptionResult:
        """Transcribe a video's audio. Never raises."""
        if not self.is_configured():
            return CaptionResult.failure('ASR not configured (missing OpenAI key)', SOURCE_ASR)

        work_dir = tempfile.mkdtemp(prefix='tubedigest-asr-')
        try:
            audio_path = self.ytdlp.download_audio(video_id, work_dir)
            if not audio_path:
                return CaptionResult.failure('Audio download failed', SOURCE_ASR)

            size = os.path.getsize(audio_path)
            if size > self.MAX_UPLOAD_BYTES:
                logger.info(f"Audio for {video_id} too large for ASR ({size / 1_000_000:.1f} MB)")
                return CaptionResult.failure('Audio exceeds transcription size limit', SOURCE_ASR)

            logger.info(f"Transcribing audio for {video_id} with {self.MODEL}")
            with open(audio_path, 'rb') as audio_file:
                response = self.client.audio.transcriptions.create(
                    model=self.MODEL,
                    file=audio_file,
                    response_format='text',
                )

            text = response if isinstance(response, str) else getattr(response, 'text', '')
            text = ' '.join((text or '').split())
            if not text:
                return CaptionResult.failure('Empty transcription', SOURCE_ASR)

            language, _ = detect_language(text)
            return CaptionResult(
                has_captions=True,
                text=text,
                language=language,
                format='text',
                source=SOURCE_ASR,
            )

        except openai.OpenAIError as e:
            logger.warning(f"Whisper transcription failed for {video_id}: {e}")
            return CaptionResult.failure(f"ASR failed: {e}", SOURCE_ASR)
        except OSError as e:
            logger.warning(f"ASR file handling failed for {video_id}: {e}")
            return CaptionResult.failure(f"ASR failed: {e}", SOURCE_ASR)
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)
