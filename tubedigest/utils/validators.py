#!/usr/bin/env python3
"""
Simple validation functions for common data types
"""
import re
from datetime import datetime
from typing import Optional


def is_valid_email(email: str) -> bool:
    """Check if email format is valid"""
    if not email:
        return False
    return bool(re.match(r'^[\w\.\-+]+@[\w\.\-]+\.\w+$', email))


def is_valid_channel_id(channel_id: str) -> bool:
    """
    Check if a YouTube channel ID is valid

    Only the canonical form is accepted: UC followed by 22 characters.
    Subscriptions from the Data API always use this form.
    """
    if not channel_id:
        return False
    return bool(re.match(r'^UC[\w-]{22}$', channel_id))


def is_valid_video_id(video_id: str) -> bool:
    """YouTube video IDs are 11 URL-safe base64 characters"""
    if not video_id:
        return False
    return bool(re.match(r'^[\w-]{11}$', video_id))


def is_valid_openai_key(api_key: str) -> bool:
    """Check if OpenAI API key format is valid (starts with sk-)"""
    if not api_key:
        return False
    return bool(re.match(r'^sk-[A-Za-z0-9_-]{20,}$', api_key))


def parse_iso_date(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO-8601 date or datetime (a trailing Z is accepted)

    Returns:
        datetime, or None when the value is empty or malformed
    """
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.strip().replace('Z', '+00:00'))
    except ValueError:
        return None
