#!/usr/bin/env python3
"""
TubeDigest - HTTP API
Google sign-in, channel selection, video/transcript processing, AI helpers,
SearchAPI cache and digest scheduling
"""

import os
import logging
import secrets
from datetime import timedelta, timezone
from typing import Dict, List, Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel, ConfigDict, field_validator
from pydantic.alias_generators import to_camel

load_dotenv()

from tubedigest.core.constants import (
    CADENCES, CADENCE_DAILY, CADENCE_IMMEDIATE, DATABASE_FILE, DEFAULT_DIGEST_LOOKBACK_DAYS,
    DEFAULT_TIME_WINDOW_HOURS, MAX_CHANNELS, MAX_VIDEOS_PER_CHANNEL, SESSION_COOKIE, SESSION_MAX_AGE,
)
from tubedigest.core.search_api import SearchAPIError
from tubedigest.core.youtube import YouTubeAPIError
from tubedigest.managers.auth_manager import AuthError
from tubedigest.managers.channel_manager import ChannelLimitError
from tubedigest.managers.digest_manager import ScheduleError
from tubedigest.managers.service_factory import Services, build_services
from tubedigest.utils.formatters import to_iso, utc_now
from tubedigest.utils.logging_setup import setup_logging
from tubedigest.utils.validators import is_valid_channel_id, is_valid_video_id, parse_iso_date
from tubedigest.web.security import (
    SecurityMiddleware, SecurityState, decode_session, encode_session, get_client_ip,
)

setup_logging()
logger = logging.getLogger('web')

OAUTH_STATE_COOKIE = 'oauth_state'

app = FastAPI(
    title="TubeDigest",
    version="1.0.0",
    description="Email digests of new YouTube videos with AI summaries and chapters"
)

security_state = SecurityState()
app.add_middleware(SecurityMiddleware, state=security_state)

_services: Optional[Services] = None


def get_services() -> Services:
    """Process-wide services, built on first use"""
    global _services
    if _services is None:
        _services = build_services(os.getenv('DATABASE_PATH', DATABASE_FILE))
    return _services


def require_session(request: Request) -> str:
    """Email of the signed-in user; 401 without a valid session cookie"""
    email = decode_session(request.cookies.get(SESSION_COOKIE))
    if not email:
        raise HTTPException(status_code=401, detail="No valid session found")
    return email


def require_channel_id(channel_id: str) -> None:
    if not is_valid_channel_id(channel_id):
        raise HTTPException(status_code=400, detail=f"Invalid channel ID: {channel_id}")


def _frontend_url(services: Services) -> str:
    return (services.settings.get('FRONTEND_URL') or 'http://localhost:3000').rstrip('/')


@app.on_event("startup")
def start_scheduler():
    """Start background jobs when the app starts"""
    try:
        services = get_services()
        services.pipeline.cleanup_stuck_videos()
        services.jobs.start()
        logger.info("✅ Background scheduler started")
    except Exception as e:
        logger.error(f"Failed to start scheduler: {e}", exc_info=True)


@app.on_event("shutdown")
def shutdown_scheduler():
    """Stop background jobs when the app stops"""
    if _services is None:
        return
    try:
        _services.jobs.shutdown()
    except Exception as e:
        logger.error(f"Error stopping scheduler: {e}")


# Pydantic models with validation (V2); JSON fields are camelCase
class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ChannelSelection(ApiModel):
    channel_ids: List[str]
    titles: Optional[Dict[str, str]] = None

    @field_validator('channel_ids')
    @classmethod
    def validate_channel_ids(cls, channel_ids):
        # blank entries are dropped by the channel manager
        invalid = [c for c in channel_ids if c.strip() and not is_valid_channel_id(c.strip())]
        if invalid:
            raise ValueError(f'Invalid channel IDs: {", ".join(invalid)}')
        return channel_ids


class ChannelUpdate(ApiModel):
    selected: bool
    title: Optional[str] = None


class IngestRequest(ApiModel):
    time_window_hours: Optional[int] = None

    @field_validator('time_window_hours')
    @classmethod
    def validate_window(cls, hours):
        if hours is not None and not 1 <= hours <= 720:
            raise ValueError('timeWindowHours must be between 1 and 720')
        return hours


class TranscriptRequest(ApiModel):
    video_id: str
    use_asr: bool = False

    @field_validator('video_id')
    @classmethod
    def validate_video_id(cls, video_id):
        video_id = video_id.strip()
        if not is_valid_video_id(video_id):
            raise ValueError(f'Invalid video ID: {video_id}')
        return video_id


class BatchTranscriptRequest(ApiModel):
    video_ids: List[str]
    use_asr: bool = False

    @field_validator('video_ids')
    @classmethod
    def validate_video_ids(cls, video_ids):
        if not video_ids:
            raise ValueError('At least one video ID is required')
        if len(video_ids) > 50:
            raise ValueError('At most 50 videos per batch')
        invalid = [video_id for video_id in video_ids if not is_valid_video_id(video_id)]
        if invalid:
            raise ValueError(f'Invalid video IDs: {", ".join(invalid)}')
        return video_ids


class TranscriptText(ApiModel):
    transcript: str
    title: Optional[str] = None
    duration_seconds: Optional[int] = None

    @field_validator('transcript')
    @classmethod
    def validate_transcript(cls, transcript):
        if not transcript.strip():
            raise ValueError('Transcript is empty')
        return transcript


class ScheduleRequest(ApiModel):
    cadence: str
    start_date: Optional[str] = None
    custom_days: Optional[int] = None

    @field_validator('cadence')
    @classmethod
    def validate_cadence(cls, cadence):
        cadence = cadence.strip().lower()
        if cadence not in CADENCES:
            raise ValueError(f"Invalid cadence: {cadence}. Must be one of: {', '.join(CADENCES)}")
        return cadence

    @field_validator('start_date')
    @classmethod
    def validate_start_date(cls, start_date):
        if start_date and parse_iso_date(start_date) is None:
            raise ValueError('startDate must be an ISO-8601 date')
        return start_date


class RunDigestRequest(ApiModel):
    schedule: bool = False
    cadence: Optional[str] = None
    start_date: Optional[str] = None


def _start_date(value: Optional[str]):
    start = parse_iso_date(value)
    if start is not None and start.tzinfo is None:
        start = start.replace(tzinfo=timezone.utc)
    return start


@app.get("/health")
async def health():
    """Health check endpoint"""
    return {
        "status": "ok",
        "timestamp": to_iso(utc_now()),
        "service": "TubeDigest",
        "version": app.version,
    }


# ============================================================================
# AUTH
# ============================================================================

@app.get("/auth/google")
def google_login(services: Services = Depends(get_services)):
    """Redirect to Google's consent screen"""
    try:
        state = secrets.token_urlsafe(16)
        url = services.auth.get_authorization_url(state=state)
    except AuthError as e:
        logger.error(f"OAuth not available: {e}")
        raise HTTPException(status_code=503, detail=str(e))

    response = RedirectResponse(url, status_code=302)
    response.set_cookie(OAUTH_STATE_COOKIE, state, max_age=600, httponly=True, samesite='lax')
    return response


@app.get("/auth/google/callback")
def google_callback(
    request: Request,
    code: Optional[str] = None,
    state: Optional[str] = None,
    services: Services = Depends(get_services),
):
    """Finish sign-in, set the session cookie and go to channel selection"""
    frontend = _frontend_url(services)
    security_state.record_event('login_attempt', request)

    expected_state = request.cookies.get(OAUTH_STATE_COOKIE)
    if not code or (expected_state and state != expected_state):
        logger.warning("OAuth callback without code or with mismatched state")
        return RedirectResponse(f"{frontend}/?auth=error", status_code=302)

    try:
        user = services.auth.complete_login(code)
    except AuthError as e:
        logger.error(f"OAuth callback failed: {e}")
        return RedirectResponse(f"{frontend}/?auth=error", status_code=302)

    response = RedirectResponse(f"{frontend}/channels", status_code=302)
    response.set_cookie(
        SESSION_COOKIE,
        encode_session(user['email']),
        max_age=SESSION_MAX_AGE,
        httponly=True,
        samesite='lax',
        secure=services.settings.get_bool('COOKIE_SECURE'),
    )
    response.delete_cookie(OAUTH_STATE_COOKIE)
    return response


@app.get("/auth/logout")
def logout_redirect(services: Services = Depends(get_services)):
    response = RedirectResponse(_frontend_url(services), status_code=302)
    response.delete_cookie(SESSION_COOKIE)
    return response


@app.post("/auth/logout")
async def logout():
    response = JSONResponse({"success": True, "message": "Logout successful"})
    response.delete_cookie(SESSION_COOKIE)
    return response


@app.get("/auth/tokens")
def list_connections(email: str = Depends(require_session), services: Services = Depends(get_services)):
    """OAuth connections of the current user (metadata only)"""
    return {"success": True, "connections": services.auth.list_tokens(email)}


@app.delete("/auth/tokens/{provider}")
def revoke_connection(provider: str, email: str = Depends(require_session), services: Services = Depends(get_services)):
    if not services.auth.revoke_tokens(email, provider):
        raise HTTPException(status_code=404, detail="Connection not found")
    return {"success": True, "message": "Connection revoked successfully"}


@app.get("/auth/csrf-token")
async def get_csrf_token():
    return {
        "success": True,
        "csrfToken": security_state.generate_csrf_token(),
        "message": "CSRF token generated successfully",
    }


@app.get("/auth/security/events")
async def get_security_events(limit: Optional[int] = Query(None, ge=1, le=1000), email: str = Depends(require_session)):
    return {"success": True, "events": security_state.get_events(limit)}


@app.get("/auth/security/rate-limit-stats")
async def get_rate_limit_stats(email: str = Depends(require_session)):
    return {"success": True, "stats": security_state.get_rate_limit_stats()}


@app.post("/auth/security/clear-rate-limit")
async def clear_rate_limit(
    request: Request,
    ip: Optional[str] = Query(None, min_length=1),
    email: str = Depends(require_session),
):
    # a session only grants control over its own address
    caller_ip = get_client_ip(request)
    ip = ip or caller_ip
    if ip != caller_ip:
        logger.warning(f"{email} tried to clear rate limit for {ip} from {caller_ip}")
        raise HTTPException(status_code=403, detail="Can only clear the rate limit for your own IP")
    cleared = security_state.clear_rate_limit(ip)
    logger.info(f"{email} cleared rate limit for {ip}: {cleared}")
    return {
        "success": True,
        "cleared": cleared,
        "message": "Rate limit cleared successfully" if cleared else "IP not found in rate limit store",
    }


# ============================================================================
# ME
# ============================================================================

@app.get("/me")
def get_me(email: str = Depends(require_session), services: Services = Depends(get_services)):
    user = services.db.get_user_by_email(email)
    if not user:
        raise HTTPException(status_code=401, detail="No valid session found")
    return {
        "id": user['id'],
        "email": user['email'],
        "name": user.get('name'),
        "picture": user.get('picture'),
        "createdAt": user.get('created_at'),
        "schedules": services.digests.get_user_schedules(email),
    }


@app.get("/me/session/health")
async def session_health(request: Request):
    email = decode_session(request.cookies.get(SESSION_COOKIE))
    return {
        "hasValidSession": bool(email),
        "userEmail": email,
        "timestamp": to_iso(utc_now()),
        "sessionValid": bool(email),
    }


# ============================================================================
# CHANNELS
# ============================================================================

@app.get("/channels")
def list_channels(email: str = Depends(require_session), services: Services = Depends(get_services)):
    """The user's YouTube subscriptions"""
    try:
        return services.channels.list_channels(email)
    except YouTubeAPIError as e:
        logger.error(f"Listing subscriptions failed for {email}: {e}")
        raise HTTPException(status_code=503, detail=f"YouTube API unavailable: {e}")
    except Exception as e:
        logger.error(f"Error listing channels for {email}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Failed to list channels: {str(e)}")


@app.get("/channels/selected")
def get_selected_channels(email: str = Depends(require_session), services: Services = Depends(get_services)):
    return services.channels.get_selected_channels(email)


@app.post("/channels/select")
def select_channels(
    data: ChannelSelection,
    email: str = Depends(require_session),
    services: Services = Depends(get_services),
):
    """Replace the selection (max 10 channels)"""
    try:
        return services.channels.select_channels(email, data.channel_ids, data.titles)
    except ChannelLimitError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.put("/channels/{channel_id}")
def update_channel(
    channel_id: str,
    data: ChannelUpdate,
    email: str = Depends(require_session),
    services: Services = Depends(get_services),
):
    require_channel_id(channel_id)
    try:
        return services.channels.update_channel_selection(email, channel_id, data.selected, data.title)
    except ChannelLimitError as e:
        raise HTTPException(status_code=400, detail=str(e))


# ============================================================================
# VIDEOS
# ============================================================================

@app.get("/videos/digest")
def get_digest_videos(
    since: Optional[str] = None,
    email: str = Depends(require_session),
    services: Services = Depends(get_services),
):
    """Summarized videos of the selected channels (last 7 days by default)"""
    since_date = _start_date(since) if since else utc_now() - timedelta(days=DEFAULT_DIGEST_LOOKBACK_DAYS)
    if since_date is None:
        raise HTTPException(status_code=400, detail="since must be an ISO-8601 date")

    user = services.db.get_user_by_email(email)
    if not user:
        return []
    videos = services.pipeline.get_videos_for_digest(user['id'], since_date)
    return [services.digests.video_view(video) for video in videos]


@app.get("/videos/processing-status")
def get_processing_status(email: str = Depends(require_session), services: Services = Depends(get_services)):
    return services.pipeline.get_processing_status()


@app.post("/videos/ingest")
def trigger_ingest(
    data: Optional[IngestRequest] = None,
    email: str = Depends(require_session),
    services: Services = Depends(get_services),
):
    """Queue discovery over every selected channel"""
    hours = (data.time_window_hours if data else None) or services.settings.get_int(
        'DEFAULT_TIME_WINDOW_HOURS', DEFAULT_TIME_WINDOW_HOURS
    )
    job_id = services.jobs.enqueue_discovery(email, hours)
    return {
        "message": "Video ingestion job scheduled",
        "jobId": job_id,
        "userEmail": email,
        "timeWindowHours": hours,
        "status": "scheduled",
    }


@app.post("/videos/ingest/channel/{channel_id}")
def trigger_channel_ingest(
    channel_id: str,
    data: Optional[IngestRequest] = None,
    email: str = Depends(require_session),
    services: Services = Depends(get_services),
):
    require_channel_id(channel_id)
    hours = (data.time_window_hours if data else None) or services.settings.get_int(
        'DEFAULT_TIME_WINDOW_HOURS', DEFAULT_TIME_WINDOW_HOURS
    )
    job_id = services.jobs.enqueue_channel_discovery(email, channel_id, hours)
    return {
        "message": "Channel video ingestion job scheduled",
        "jobId": job_id,
        "userEmail": email,
        "channelId": channel_id,
        "timeWindowHours": hours,
        "status": "scheduled",
    }


@app.get("/videos/config")
def get_video_config(services: Services = Depends(get_services)):
    return {
        "defaultTimeWindowHours": services.settings.get_int('DEFAULT_TIME_WINDOW_HOURS', DEFAULT_TIME_WINDOW_HOURS),
        "maxVideosPerChannel": MAX_VIDEOS_PER_CHANNEL,
        "maxChannels": MAX_CHANNELS,
        "supportedCadences": list(CADENCES),
        "defaultCadence": CADENCE_DAILY,
        "digestHourUtc": services.digests.digest_hour,
        "processingWindowSettings": {
            "daily": {"hours": 24},
            "weekly": {"hours": 168},
        },
    }


# ============================================================================
# TRANSCRIPTS
# ============================================================================

@app.post("/transcripts/process")
def process_transcript(
    data: TranscriptRequest,
    email: str = Depends(require_session),
    services: Services = Depends(get_services),
):
    """Fetch, validate and store one transcript now"""
    credentials = services.auth.get_credentials(email)
    outcome = services.transcripts.process_transcript(data.video_id, use_asr=data.use_asr, credentials=credentials)
    return outcome.to_dict()


@app.post("/transcripts/process/batch")
def process_transcript_batch(
    data: BatchTranscriptRequest,
    email: str = Depends(require_session),
    services: Services = Depends(get_services),
):
    """Queue a background batch"""
    job_id = services.jobs.enqueue_transcript_batch(data.video_ids)
    return {"jobId": job_id, "videoCount": len(data.video_ids), "status": "scheduled"}


@app.get("/transcripts/video/{video_id}")
def get_transcript(video_id: str, email: str = Depends(require_session), services: Services = Depends(get_services)):
    transcript = services.transcripts.get_transcript(video_id)
    if not transcript:
        raise HTTPException(status_code=404, detail="Transcript not found")
    return transcript


@app.get("/transcripts/batch")
def get_transcripts_batch(
    video_ids: str = Query(..., alias="videoIds"),
    email: str = Depends(require_session),
    services: Services = Depends(get_services),
):
    ids = [video_id.strip() for video_id in video_ids.split(',') if video_id.strip()]
    return services.transcripts.get_transcripts_by_video_ids(ids)


@app.get("/transcripts/stats")
def get_transcript_stats(email: str = Depends(require_session), services: Services = Depends(get_services)):
    return services.transcripts.get_processing_stats()


# ============================================================================
# AI
# ============================================================================

@app.post("/ai/summary")
def ai_summary(data: TranscriptText, email: str = Depends(require_session), services: Services = Depends(get_services)):
    result = services.summarizer.generate_summary(data.transcript, data.title)
    if result is None:
        raise HTTPException(status_code=503, detail="Summary generation unavailable")
    return {"summary": result.summary, "model": result.model, "tokensUsed": result.tokens_used}


@app.post("/ai/chapters")
def ai_chapters(data: TranscriptText, email: str = Depends(require_session), services: Services = Depends(get_services)):
    chapters = services.summarizer.extract_chapters(data.transcript, data.title, data.duration_seconds)
    if chapters is None:
        raise HTTPException(status_code=503, detail="Chapter extraction unavailable")
    return {
        "chapters": [
            {"title": chapter['title'], "startS": chapter['start_s'], "endS": chapter['end_s']}
            for chapter in chapters
        ]
    }


# ============================================================================
# SEARCHAPI
# ============================================================================

@app.get("/search-api/search")
def search_videos(
    q: str = Query(..., min_length=1),
    max_results: int = Query(10, alias="maxResults", ge=1, le=50),
    email: str = Depends(require_session),
    services: Services = Depends(get_services),
):
    """Search YouTube through SearchAPI, cache first"""
    cached = services.search.search_cached_videos(q, max_results)
    if cached:
        return {"source": "cache", "results": cached, "totalResults": len(cached)}

    if not services.search.is_available():
        raise HTTPException(status_code=503, detail="SearchAPI is not configured")
    try:
        results = services.search.search_youtube_videos(q, max_results)
    except SearchAPIError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {"source": "searchapi", "results": results, "totalResults": len(results)}


@app.get("/search-api/video/{video_id}")
def search_video(video_id: str, email: str = Depends(require_session), services: Services = Depends(get_services)):
    cached = services.search.get_cached_video(video_id)
    if cached:
        return {"source": "cache", "video": cached}

    if not services.search.is_available():
        raise HTTPException(status_code=503, detail="SearchAPI is not configured")
    try:
        video = services.search.get_video_by_id(video_id, use_cache=False)
    except SearchAPIError as e:
        raise HTTPException(status_code=503, detail=str(e))
    if not video:
        raise HTTPException(status_code=404, detail="Video not found")
    return {"source": "searchapi", "video": video}


@app.get("/search-api/cache/stats")
def search_cache_stats(email: str = Depends(require_session), services: Services = Depends(get_services)):
    return {"stats": services.search.get_cache_stats()}


@app.post("/search-api/cache/cleanup")
def search_cache_cleanup(email: str = Depends(require_session), services: Services = Depends(get_services)):
    cleaned = services.search.cleanup_expired_cache()
    return {"cleanedCount": cleaned, "message": f"Cleaned up {cleaned} expired cache entries"}


@app.post("/search-api/cache/invalidate/{video_id}")
def search_cache_invalidate(video_id: str, email: str = Depends(require_session), services: Services = Depends(get_services)):
    success = services.search.invalidate_cache(video_id)
    return {"success": success, "videoId": video_id}


@app.get("/search-api/status")
def search_status(email: str = Depends(require_session), services: Services = Depends(get_services)):
    return services.search.get_status()


# ============================================================================
# DIGESTS
# ============================================================================

@app.post("/digests/schedule")
def schedule_digest(
    data: ScheduleRequest,
    email: str = Depends(require_session),
    services: Services = Depends(get_services),
):
    try:
        return services.digests.schedule_digest(
            email, data.cadence, start_date=_start_date(data.start_date), custom_days=data.custom_days
        )
    except ScheduleError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.get("/digests/schedules")
def get_schedules(email: str = Depends(require_session), services: Services = Depends(get_services)):
    return {
        "schedules": services.digests.get_user_schedules(email),
        "jobs": services.jobs.get_recurring_digest_jobs(email),
    }


@app.delete("/digests/schedules/{schedule_id}")
def cancel_schedule(schedule_id: int, email: str = Depends(require_session), services: Services = Depends(get_services)):
    try:
        return services.digests.cancel_schedule(schedule_id, email)
    except ScheduleError as e:
        raise HTTPException(status_code=404, detail=str(e))


@app.get("/digests/preview")
def digest_preview(email: str = Depends(require_session), services: Services = Depends(get_services)):
    return services.digests.generate_digest_preview(email)


@app.get("/digests/latest")
def latest_digest(email: str = Depends(require_session), services: Services = Depends(get_services)):
    digest = services.digests.get_latest_digest(email)
    if not digest:
        raise HTTPException(status_code=404, detail="No digest yet")
    return digest


@app.post("/digests/run")
def run_digest(
    data: Optional[RunDigestRequest] = None,
    email: str = Depends(require_session),
    services: Services = Depends(get_services),
):
    """Queue a digest now, or create a schedule when schedule=true"""
    data = data or RunDigestRequest()
    try:
        if data.schedule:
            return services.digests.schedule_digest(
                email, data.cadence or CADENCE_DAILY, start_date=_start_date(data.start_date)
            )
        return services.digests.schedule_digest(email, CADENCE_IMMEDIATE)
    except ScheduleError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.post("/digests/test-email")
def test_email(email: str = Depends(require_session), services: Services = Depends(get_services)):
    return {
        "configuration": services.email.test_configuration(),
        "delivery": services.digests.send_test_digest(email),
    }


@app.get("/digests/{run_id}")
def get_digest(run_id: int, email: str = Depends(require_session), services: Services = Depends(get_services)):
    """Web view of a digest"""
    digest = services.digests.get_digest(run_id, email)
    if not digest:
        raise HTTPException(status_code=404, detail="Digest not found")
    return digest
