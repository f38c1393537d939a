#!/usr/bin/env python3
"""
Transcript Processing
Runs the source cascade for a video, normalizes and validates the text,
checks its language and stores it. Every outcome is a status value.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from tubedigest.core.constants import (
    MAX_TRANSCRIPT_LENGTH, STATUS_SKIPPED,
    TRANSCRIPT_EXISTS, TRANSCRIPT_PROCESSED, TRANSCRIPT_NO_CAPTIONS,
    TRANSCRIPT_POOR_QUALITY, TRANSCRIPT_NON_ENGLISH, TRANSCRIPT_ERROR,
    SKIP_NO_CAPTIONS, SKIP_POOR_QUALITY, SKIP_NON_ENGLISH, SKIP_PROCESSING_FAILED,
)
from tubedigest.core.language_detector import detect_language, is_english, should_process_language
from tubedigest.core.text_normalizer import normalize_text, validate_text_quality
from tubedigest.core.transcript import TranscriptExtractor


logger = logging.getLogger(__name__)

SKIP_STATUSES = (TRANSCRIPT_NO_CAPTIONS, TRANSCRIPT_NON_ENGLISH)


@dataclass
class TranscriptOutcome:
    video_id: str
    status: str
    success: bool = False
    source: Optional[str] = None
    language: Optional[str] = None
    skip_reason: Optional[str] = None
    error: Optional[str] = None
    duration_seconds: Optional[int] = None
    chapters: List[Dict] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            'videoId': self.video_id,
            'status': self.status,
            'success': self.success,
            'source': self.source,
            'language': self.language,
            'skipReason': self.skip_reason,
            'error': self.error,
        }


class TranscriptService:
    """Fetch, validate and persist transcripts"""

    def __init__(self, db, extractor: TranscriptExtractor, max_length: int = MAX_TRANSCRIPT_LENGTH):
        """
        Args:
            db: DigestDatabase
            extractor: Configured source cascade
            max_length: Longest transcript accepted by the quality check
        """
        self.db = db
        self.extractor = extractor
        self.max_length = max_length

    def _skip(self, video_id: str, status: str, reason: str, error: Optional[str] = None) -> TranscriptOutcome:
        logger.info(f"Skipping {video_id}: {reason}" + (f" ({error})" if error else ""))
        self.db.update_video(video_id, processing_status=STATUS_SKIPPED, skip_reason=reason, error_message=error)
        return TranscriptOutcome(video_id=video_id, status=status, skip_reason=reason, error=error)

    def process_transcript(self, video_id: str, use_asr: bool = False, credentials=None) -> TranscriptOutcome:
        """
        Acquire and store the transcript of one video. Never raises.
        An existing transcript is left untouched.
        """
        try:
            existing = self.db.get_transcript(video_id)
            if existing:
                logger.debug(f"Transcript already stored for {video_id}")
                return TranscriptOutcome(
                    video_id=video_id,
                    status=TRANSCRIPT_EXISTS,
                    success=True,
                    source=existing.get('source'),
                    language=existing.get('language'),
                )

            if not self.db.video_exists(video_id):
                # transcripts reference videos; ad-hoc requests need a row
                self.db.add_video(video_id, channel_id='unknown', title=video_id)

            result = self.extractor.get_transcript_cascade(video_id, use_asr=use_asr, credentials=credentials)
            if not result.has_captions or not result.text:
                return self._skip(video_id, TRANSCRIPT_NO_CAPTIONS, SKIP_NO_CAPTIONS, result.error)

            text = normalize_text(result.text)
            quality = validate_text_quality(text, max_length=self.max_length)
            if not quality.is_valid:
                return self._skip(video_id, TRANSCRIPT_POOR_QUALITY, SKIP_POOR_QUALITY, ', '.join(quality.issues))

            language = result.language
            if language:
                # a reported track language, even "unknown", is checked against the text itself
                labelled_other = language != 'unknown' and not should_process_language(language)
                if labelled_other or not is_english(text):
                    return self._skip(video_id, TRANSCRIPT_NON_ENGLISH, SKIP_NON_ENGLISH, f"language={language}")
            if not language or language == 'unknown':
                language = detect_language(text)[0]

            self.db.upsert_transcript(
                video_id,
                source=result.source,
                text=text,
                language=language,
                caption_format=result.format,
                has_captions=True,
            )
            if result.duration_seconds:
                video = self.db.get_video(video_id)
                if video and not video.get('duration_seconds'):
                    self.db.update_video(video_id, duration_seconds=int(result.duration_seconds))

            logger.info(f"Stored transcript for {video_id} from {result.source} ({len(text)} chars)")
            return TranscriptOutcome(
                video_id=video_id,
                status=TRANSCRIPT_PROCESSED,
                success=True,
                source=result.source,
                language=language,
                duration_seconds=result.duration_seconds,
                chapters=list(result.chapters or []),
            )

        except Exception as e:
            logger.error(f"Transcript processing failed for {video_id}: {e}", exc_info=True)
            try:
                self.db.update_video(video_id, skip_reason=SKIP_PROCESSING_FAILED, error_message=str(e))
            except Exception as db_error:
                logger.error(f"Could not record failure for {video_id}: {db_error}")
            return TranscriptOutcome(
                video_id=video_id,
                status=TRANSCRIPT_ERROR,
                skip_reason=SKIP_PROCESSING_FAILED,
                error=str(e),
            )

    def batch_process_transcripts(self, video_ids: List[str], use_asr: bool = False) -> Dict:
        """Process several videos; one failure does not stop the batch"""
        results = [self.process_transcript(video_id, use_asr=use_asr) for video_id in video_ids]

        processed = sum(1 for result in results if result.success)
        skipped = sum(1 for result in results if result.status in SKIP_STATUSES)
        failed = len(results) - processed - skipped

        logger.info(f"Batch transcripts: {processed} processed, {skipped} skipped, {failed} failed")
        return {
            'processed': processed,
            'failed': failed,
            'skipped': skipped,
            'results': [result.to_dict() for result in results],
        }

    def get_transcript(self, video_id: str) -> Optional[Dict]:
        return self.db.get_transcript(video_id)

    def get_transcripts_by_video_ids(self, video_ids: List[str]) -> List[Dict]:
        return self.db.get_transcripts_by_video_ids(video_ids)

    def get_processing_stats(self) -> Dict:
        counts = self.db.get_processing_counts()
        total = counts.get('total', 0)
        with_transcripts = counts.get('with_transcripts', 0)
        return {
            'totalVideos': total,
            'withTranscripts': with_transcripts,
            'transcriptRate': round(with_transcripts / total * 100, 1) if total else 0.0,
            'bySource': self.db.get_transcript_source_counts(),
        }
