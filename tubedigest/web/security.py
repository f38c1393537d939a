#!/usr/bin/env python3
"""
Request security: per-IP rate limiting, CSRF tokens for state-changing
requests, security headers and a bounded security event log
"""

import time
import logging
import secrets
import threading
from collections import deque
from typing import Deque, Dict, List, Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from tubedigest.core.constants import (
    RATE_LIMIT_WINDOW_SECONDS, RATE_LIMIT_MAX_REQUESTS, RATE_LIMIT_CSRF_MAX_REQUESTS,
    CSRF_MAX_TOKENS, CSRF_TRIM_TO, SECURITY_EVENT_LIMIT, SLOW_REQUEST_SECONDS,
)
from tubedigest.utils.encryption import get_cipher
from tubedigest.utils.formatters import to_iso, utc_now
from tubedigest.utils.validators import is_valid_email


logger = logging.getLogger(__name__)

STATE_CHANGING_METHODS = {'POST', 'PUT', 'PATCH', 'DELETE'}
CSRF_EXEMPT_PATHS = {'/auth/google/callback', '/auth/csrf-token'}
SECURITY_HEADERS = {
    'X-Content-Type-Options': 'nosniff',
    'X-Frame-Options': 'DENY',
    'X-XSS-Protection': '1; mode=block',
    'Referrer-Policy': 'strict-origin-when-cross-origin',
    'Strict-Transport-Security': 'max-age=31536000; includeSubDomains',
}


def get_client_ip(request: Request) -> str:
    forwarded = (request.headers.get('x-forwarded-for') or '').strip()
    if forwarded:
        return forwarded.split(',')[0].strip()
    real_ip = (request.headers.get('x-real-ip') or '').strip()
    if real_ip:
        return real_ip
    if request.client and request.client.host:
        return request.client.host
    return 'unknown'


def encode_session(email: str) -> str:
    """Session cookie value: the user's email, Fernet-encrypted"""
    return get_cipher().encrypt(email)


def decode_session(value: Optional[str]) -> Optional[str]:
    """Email from a session cookie, or None when missing or tampered with"""
    if not value:
        return None
    email = get_cipher().decrypt(value)
    return email if is_valid_email(email) else None


class SecurityState:
    """In-memory rate limit buckets, CSRF tokens and security events"""

    def __init__(
        self,
        window_seconds: int = RATE_LIMIT_WINDOW_SECONDS,
        max_requests: int = RATE_LIMIT_MAX_REQUESTS,
        csrf_max_requests: int = RATE_LIMIT_CSRF_MAX_REQUESTS,
    ):
        self.window_seconds = window_seconds
        self.max_requests = max_requests
        self.csrf_max_requests = csrf_max_requests
        self._buckets: Dict[str, Deque[float]] = {}
        self._tokens: Dict[str, float] = {}
        self._events: Deque[Dict] = deque(maxlen=SECURITY_EVENT_LIMIT)
        self._lock = threading.Lock()

    # ========================
    # Rate limiting
    # ========================

    def check_rate_limit(self, client_ip: str, limit: Optional[int] = None) -> bool:
        """Sliding window; True when the request is allowed (and counted)"""
        limit = limit or self.max_requests
        now = time.time()
        cutoff = now - self.window_seconds

        with self._lock:
            bucket = self._buckets.setdefault(client_ip, deque())
            while bucket and bucket[0] < cutoff:
                bucket.popleft()
            if len(bucket) >= limit:
                return False
            bucket.append(now)
            return True

    def retry_after(self, client_ip: str) -> int:
        with self._lock:
            bucket = self._buckets.get(client_ip)
            if not bucket:
                return 0
            return max(0, int(bucket[0] + self.window_seconds - time.time()) + 1)

    def get_rate_limit_stats(self) -> Dict[str, Dict]:
        cutoff = time.time() - self.window_seconds
        with self._lock:
            return {
                ip: {
                    'count': sum(1 for ts in bucket if ts >= cutoff),
                    'resetIn': max(0, int(bucket[0] + self.window_seconds - time.time())) if bucket else 0,
                }
                for ip, bucket in self._buckets.items()
                if bucket
            }

    def clear_rate_limit(self, client_ip: str) -> bool:
        with self._lock:
            return self._buckets.pop(client_ip, None) is not None

    # ========================
    # CSRF
    # ========================

    def generate_csrf_token(self) -> str:
        token = secrets.token_hex(32)
        with self._lock:
            self._tokens[token] = time.time()
            if len(self._tokens) > CSRF_MAX_TOKENS:
                # dicts keep insertion order, so the tail is the newest
                newest = list(self._tokens.items())[-CSRF_TRIM_TO:]
                self._tokens = dict(newest)
        logger.debug(f"Generated CSRF token: {token[:8]}...")
        return token

    def validate_csrf_token(self, token: Optional[str]) -> bool:
        if not token:
            return False
        with self._lock:
            valid = token in self._tokens
        if not valid:
            logger.warning(f"Invalid CSRF token: {token[:8]}...")
        return valid

    def csrf_token_count(self) -> int:
        with self._lock:
            return len(self._tokens)

    # ========================
    # Events
    # ========================

    def record_event(self, event_type: str, request: Optional[Request] = None, **metadata):
        event = {
            'timestamp': to_iso(utc_now()),
            'eventType': event_type,
            'ip': get_client_ip(request) if request else None,
            'userAgent': request.headers.get('user-agent', 'Unknown') if request else None,
            'method': request.method if request else None,
            'path': request.url.path if request else None,
            'metadata': metadata or None,
        }
        with self._lock:
            self._events.append(event)
        logger.info(f"Security event: {event_type} from {event['ip']} - {event['method']} {event['path']}")

    def get_events(self, limit: Optional[int] = None) -> List[Dict]:
        with self._lock:
            events = list(self._events)
        return events[-limit:] if limit else events


class SecurityMiddleware(BaseHTTPMiddleware):
    """Rate limit, CSRF check and headers for every request"""

    def __init__(self, app, state: SecurityState):
        super().__init__(app)
        self.state = state

    async def dispatch(self, request: Request, call_next):
        started = time.perf_counter()
        client_ip = get_client_ip(request)
        path = request.url.path

        limit = self.state.csrf_max_requests if path.endswith('/csrf-token') else self.state.max_requests
        if not self.state.check_rate_limit(client_ip, limit):
            self.state.record_event('rate_limit_exceeded', request, limit=limit)
            return JSONResponse(
                status_code=429,
                content={
                    'error': 'Rate limit exceeded',
                    'message': 'Too many requests, please try again later.',
                    'retryAfter': self.state.retry_after(client_ip),
                },
                headers=SECURITY_HEADERS,
            )

        if request.method.upper() in STATE_CHANGING_METHODS and path not in CSRF_EXEMPT_PATHS:
            if not self.state.validate_csrf_token(request.headers.get('x-csrf-token')):
                self.state.record_event('csrf_violation', request)
                return JSONResponse(
                    status_code=403,
                    content={
                        'error': 'CSRF token validation failed',
                        'message': 'Invalid or missing CSRF token',
                    },
                    headers=SECURITY_HEADERS,
                )

        response = await call_next(request)
        for header, value in SECURITY_HEADERS.items():
            response.headers[header] = value

        elapsed = time.perf_counter() - started
        if elapsed > SLOW_REQUEST_SECONDS:
            logger.warning(f"Slow request: {request.method} {path} took {elapsed * 1000:.0f}ms")
        return response
