#!/usr/bin/env python3
"""
Service wiring shared by the web app and the CLI
"""

import logging
from dataclasses import dataclass
from typing import Optional

from tubedigest.core.asr import ASRClient
from tubedigest.core.ai_summarizer import AISummarizer
from tubedigest.core.captions import CaptionsClient
from tubedigest.core.constants import (
    DATABASE_FILE, DEFAULT_AI_MAX_TOKENS, DEFAULT_DIGEST_HOUR, MAX_TRANSCRIPT_LENGTH,
)
from tubedigest.core.email_sender import EmailSender
from tubedigest.core.search_api import SearchAPIClient
from tubedigest.core.transcript import TranscriptExtractor
from tubedigest.core.ytdlp_client import YTDLPClient
from tubedigest.managers.auth_manager import AuthManager
from tubedigest.managers.channel_manager import ChannelManager
from tubedigest.managers.database import DigestDatabase
from tubedigest.managers.digest_manager import DigestService
from tubedigest.managers.job_manager import JobManager
from tubedigest.managers.settings_manager import SettingsManager
from tubedigest.managers.transcript_manager import TranscriptService
from tubedigest.managers.video_manager import VideoPipeline


logger = logging.getLogger(__name__)


@dataclass
class Services:
    db: DigestDatabase
    settings: SettingsManager
    auth: AuthManager
    channels: ChannelManager
    search: SearchAPIClient
    extractor: TranscriptExtractor
    transcripts: TranscriptService
    summarizer: AISummarizer
    pipeline: VideoPipeline
    email: EmailSender
    digests: DigestService
    jobs: JobManager


def build_services(db_path: str = DATABASE_FILE, settings: Optional[SettingsManager] = None, scheduler=None) -> Services:
    """Build every service from settings (database, then environment)"""
    if settings is None:
        settings = SettingsManager(db=DigestDatabase(db_path))
    db = settings.db

    allow_mock = settings.get_bool('ALLOW_MOCK_DATA')
    openai_key = settings.get('OPENAI_API_KEY')
    youtube_key = settings.get('YOUTUBE_API_KEY')

    auth = AuthManager(settings, db)
    channels = ChannelManager(db, auth, allow_mock=allow_mock)

    ytdlp = YTDLPClient()
    search = SearchAPIClient(settings.get('SEARCHAPI_KEY'), db=db)
    extractor = TranscriptExtractor(
        captions_client=CaptionsClient(youtube_key),
        ytdlp_client=ytdlp,
        asr_client=ASRClient(openai_key, ytdlp=ytdlp),
        search_client=search,
        preferred_languages=settings.get_list('TRANSCRIPT_LANGUAGES') or None,
        asr_enabled=settings.get_bool('ASR_ENABLED'),
        allow_mock=allow_mock,
        cache=db,
    )
    transcripts = TranscriptService(
        db, extractor, max_length=settings.get_int('MAX_TRANSCRIPT_LENGTH', MAX_TRANSCRIPT_LENGTH)
    )

    summarizer = AISummarizer(
        openai_key,
        model=settings.get('OPENAI_MODEL'),
        max_tokens=settings.get_int('AI_MAX_TOKENS', DEFAULT_AI_MAX_TOKENS),
        allow_mock=allow_mock,
    )
    pipeline = VideoPipeline(
        db, transcripts, summarizer, auth=auth, youtube_api_key=youtube_key, search_client=search
    )

    digest_hour = settings.get_int('DIGEST_HOUR', DEFAULT_DIGEST_HOUR)
    email = EmailSender.from_settings(settings)
    digests = DigestService(
        db, pipeline, email,
        app_url=settings.get('APP_URL') or 'http://localhost:8000',
        digest_hour=digest_hour,
    )
    jobs = JobManager(db, digests, pipeline, transcripts, scheduler=scheduler, digest_hour=digest_hour)
    digests.set_job_manager(jobs)

    if not summarizer.is_configured():
        logger.warning("⚠️  OPENAI_API_KEY not set - summaries will be unavailable")
    if not email.is_configured():
        logger.warning("⚠️  No email transport configured - digests cannot be sent")

    return Services(
        db=db,
        settings=settings,
        auth=auth,
        channels=channels,
        search=search,
        extractor=extractor,
        transcripts=transcripts,
        summarizer=summarizer,
        pipeline=pipeline,
        email=email,
        digests=digests,
        jobs=jobs,
    )
