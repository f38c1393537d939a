#!/usr/bin/env python3
"""
Application-wide constants
Centralizes status strings, limits and retry defaults
"""

# ============================================================================
# VIDEO PROCESSING STATUS VALUES
# ============================================================================

STATUS_PENDING = 'pending'
STATUS_PROCESSING = 'processing'
STATUS_SUCCESS = 'success'
STATUS_FAILED_TRANSCRIPT = 'failed_transcript'
STATUS_FAILED_AI = 'failed_ai'
STATUS_FAILED_PERMANENT = 'failed_permanent'
STATUS_SKIPPED = 'skipped'


# ============================================================================
# TRANSCRIPT OUTCOMES AND SKIP REASONS
# ============================================================================

TRANSCRIPT_EXISTS = 'exists'
TRANSCRIPT_PROCESSED = 'processed'
TRANSCRIPT_NO_CAPTIONS = 'no_captions'
TRANSCRIPT_POOR_QUALITY = 'poor_quality'
TRANSCRIPT_NON_ENGLISH = 'non_english'
TRANSCRIPT_ERROR = 'error'

SKIP_NO_CAPTIONS = 'no_captions_available'
SKIP_POOR_QUALITY = 'poor_quality'
SKIP_NON_ENGLISH = 'non_english_language'
SKIP_PROCESSING_FAILED = 'transcript_processing_failed'

# Transcript sources, in cascade order
SOURCE_YOUTUBE_API = 'youtube-api'
SOURCE_TRANSCRIPT_API = 'youtube-transcript-api'
SOURCE_YTDLP = 'yt-dlp'
SOURCE_TIMEDTEXT = 'timedtext'
SOURCE_ASR = 'asr'
SOURCE_SEARCHAPI = 'searchapi'
SOURCE_MOCK = 'mock'

# transcript_cache statuses that mean "don't ask again"
CACHE_SKIP_STATUSES = {'disabled', 'not_found', 'video_unavailable'}


# ============================================================================
# DIGESTS
# ============================================================================

DIGEST_ASSEMBLING = 'assembling'
DIGEST_NO_CHANNELS = 'no_channels'
DIGEST_NO_NEW_VIDEOS = 'no_new_videos'
DIGEST_SENT = 'sent'
DIGEST_FAILED = 'failed'

CADENCE_IMMEDIATE = 'immediate'
CADENCE_DAILY = 'daily'
CADENCE_WEEKLY = 'weekly'
CADENCE_CUSTOM = 'custom'
CADENCES = (CADENCE_IMMEDIATE, CADENCE_DAILY, CADENCE_WEEKLY, CADENCE_CUSTOM)

DEFAULT_DIGEST_HOUR = 9
DEFAULT_DIGEST_LOOKBACK_DAYS = 7
PREVIEW_LOOKBACK_DAYS = 7
PREVIEW_MAX_VIDEOS = 5


# ============================================================================
# CHANNELS AND VIDEOS
# ============================================================================

MAX_CHANNELS = 10
DEFAULT_TIME_WINDOW_HOURS = 24
MAX_VIDEOS_PER_CHANNEL = 10
DEFAULT_VIDEO_LIST_LIMIT = 20
RETRY_BATCH_SIZE = 10


# ============================================================================
# API AND MODEL DEFAULTS
# ============================================================================

DEFAULT_OPENAI_MODEL = 'gpt-4o-mini'
DEFAULT_AI_MAX_TOKENS = 1000
SUMMARY_TEMPERATURE = 0.7
CHAPTER_TEMPERATURE = 0.3
MAX_TRANSCRIPT_CHARS = 15000  # ~3750 tokens
DEFAULT_CHAPTER_LENGTH = 300  # seconds
MOCK_MAX_CHAPTERS = 5

MIN_TEXT_LENGTH = 10
MAX_TRANSCRIPT_LENGTH = 50000
MAX_SPECIAL_CHAR_RATIO = 0.3
MIN_UNIQUE_WORD_RATIO = 0.3

SEARCHAPI_URL = 'https://www.searchapi.io/api/v1/search'
SEARCHAPI_TIMEOUT = 10  # seconds
SEARCH_CACHE_DAYS = 30

GOOGLE_USERINFO_URL = 'https://www.googleapis.com/oauth2/v2/userinfo'
OAUTH_SCOPES = [
    'https://www.googleapis.com/auth/youtube.readonly',
    'openid',
    'https://www.googleapis.com/auth/userinfo.email',
    'https://www.googleapis.com/auth/userinfo.profile',
]


# ============================================================================
# RETRY CONFIGURATION
# ============================================================================

RETRY_ATTEMPTS = 3
RETRY_BASE_DELAY = 2  # seconds for general retries
AI_RETRY_BASE_DELAY = 5  # seconds for AI API retries
PROCESSING_RETRY_DELAY = 5  # seconds, doubled per attempt

# (attempts, base delay seconds) per job kind
JOB_RETRY_POLICY = {
    'process-digest': (3, 2),
    'process-recurring-digest': (3, 2),
    'discover-videos': (3, 5),
    'discover-channel-videos': (3, 5),
    'process-transcript': (3, 3),
    'process-transcripts-batch': (2, 5),
}
JOB_HISTORY_COMPLETED = 10
JOB_HISTORY_FAILED = 5


# ============================================================================
# EMAIL CONFIGURATION
# ============================================================================

GMAIL_SMTP_HOST = 'smtp.gmail.com'
SMTP_PORT = 587
SMTP_TIMEOUT = 30  # seconds


# ============================================================================
# SECURITY
# ============================================================================

RATE_LIMIT_WINDOW_SECONDS = 15 * 60
RATE_LIMIT_MAX_REQUESTS = 200
RATE_LIMIT_CSRF_MAX_REQUESTS = 300
CSRF_MAX_TOKENS = 1000
CSRF_TRIM_TO = 500
SECURITY_EVENT_LIMIT = 1000
SLOW_REQUEST_SECONDS = 1.0
SESSION_COOKIE = 'user_email'
SESSION_MAX_AGE = 24 * 60 * 60


# ============================================================================
# APPLICATION SETTINGS
# ============================================================================

DATABASE_FILE = 'data/tubedigest.db'
DATA_DIR = 'data'
LOGS_DIR = 'logs'
LOG_FILE = 'tubedigest.log'

DEFAULT_LOG_LEVEL = 'INFO'
LOG_FILE_MAX_BYTES = 10 * 1024 * 1024  # 10MB
LOG_FILE_BACKUP_COUNT = 5

WEB_PORT = 8000
WEB_HOST = '0.0.0.0'
