#!/usr/bin/env python3
"""
Formatting utilities for timestamps, durations and dates
"""
from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """Current time as an aware UTC datetime"""
    return datetime.now(timezone.utc)


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    """
    Serialize a datetime for storage.
    Naive datetimes are taken to be UTC, so every stored value compares correctly.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec='seconds')


def from_iso(value: Optional[str]) -> Optional[datetime]:
    """Inverse of to_iso; tolerates the trailing Z used by the YouTube API"""
    if not value:
        return None
    dt = datetime.fromisoformat(value.replace('Z', '+00:00'))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_timestamp(seconds: Optional[float]) -> str:
    """
    Format a chapter offset

    Returns:
        "H:MM:SS" when an hour or longer, otherwise "M:SS"
    """
    if not seconds or seconds < 0:
        return '0:00'

    seconds = int(seconds)
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)

    if hours > 0:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def format_duration(seconds: Optional[int]) -> str:
    """Video length for display; 'Unknown' when missing"""
    if not seconds:
        return 'Unknown'
    return format_timestamp(seconds)


def format_digest_date(dt: Optional[datetime] = None) -> str:
    """Date used in digest subjects, e.g. 'Oct 17, 2026'"""
    dt = dt or utc_now()
    return dt.strftime('%b %d, %Y').replace(' 0', ' ')


def parse_iso8601_duration(value: Optional[str]) -> Optional[int]:
    """
    Parse a YouTube contentDetails duration like PT1H2M3S into seconds
    """
    if not value or not value.startswith('P'):
        return None

    total = 0
    number = ''
    in_time = False
    units = {'D': 86400, 'H': 3600, 'M': 60, 'S': 1}
    for char in value[1:]:
        if char == 'T':
            in_time = True
        elif char.isdigit():
            number += char
        elif char in units and number:
            if char == 'M' and not in_time:
                # Months are never used for video lengths
                return None
            total += int(number) * units[char]
            number = ''
        else:
            return None
    return total
