#!/usr/bin/env python3
"""
Caption Parsing
Turns SRT, WebVTT and YouTube json3 caption payloads into timed segments
"""

import re
import html
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Union


logger = logging.getLogger(__name__)

SRT_TIMESTAMP = re.compile(
    r'(\d{2}:\d{2}:\d{2},\d{3})\s*-->\s*(\d{2}:\d{2}:\d{2},\d{3})'
)
VTT_TIMESTAMP = re.compile(
    r'((?:\d{2}:)?\d{2}:\d{2}\.\d{3})\s*-->\s*((?:\d{2}:)?\d{2}:\d{2}\.\d{3})'
)


class CaptionParseError(ValueError):
    """Raised when a caption payload cannot be recognized"""


@dataclass
class CaptionSegment:
    start: float
    end: float
    text: str

    @property
    def duration(self) -> float:
        return max(0.0, self.end - self.start)


@dataclass
class ParsedCaption:
    segments: List[CaptionSegment] = field(default_factory=list)
    format: str = 'unknown'

    @property
    def text(self) -> str:
        return extract_text(self.segments)

    @property
    def duration_seconds(self) -> Optional[int]:
        if not self.segments:
            return None
        return int(self.segments[-1].end) or None


def parse_timestamp(value: str) -> float:
    """
    Convert an SRT (00:01:02,500) or VTT (00:01:02.500 / 01:02.500)
    timestamp to seconds
    """
    value = value.strip().replace(',', '.')
    parts = value.split(':')
    if len(parts) == 2:
        parts.insert(0, '0')
    if len(parts) != 3:
        raise ValueError(f"Invalid timestamp: {value}")

    hours, minutes, seconds = parts
    return int(hours) * 3600 + int(minutes) * 60 + float(seconds)


def parse_srt(content: str) -> ParsedCaption:
    """Parse SRT content into segments. Malformed blocks are skipped."""
    segments = []
    normalized = content.replace('\r\n', '\n').strip()

    for block in re.split(r'\n\s*\n', normalized):
        lines = [line for line in block.strip().split('\n')]
        if len(lines) < 3:
            continue

        match = SRT_TIMESTAMP.match(lines[1].strip())
        if not match:
            continue

        text = ' '.join(line.strip() for line in lines[2:] if line.strip())
        if not text:
            continue

        segments.append(CaptionSegment(
            start=parse_timestamp(match.group(1)),
            end=parse_timestamp(match.group(2)),
            text=text,
        ))

    logger.debug("Parsed %s SRT segments", len(segments))
    return ParsedCaption(segments=segments, format='srt')


def parse_vtt(content: str) -> ParsedCaption:
    """Parse WebVTT content. Cue settings after the timestamp are ignored."""
    segments = []
    current = None
    text_lines: List[str] = []

    def flush():
        if current is not None and text_lines:
            segments.append(CaptionSegment(
                start=current[0],
                end=current[1],
                text=' '.join(text_lines),
            ))

    for raw_line in content.replace('\r\n', '\n').split('\n'):
        line = raw_line.strip()

        match = VTT_TIMESTAMP.match(line)
        if match:
            flush()
            current = (parse_timestamp(match.group(1)), parse_timestamp(match.group(2)))
            text_lines = []
            continue

        if not line:
            flush()
            current = None
            text_lines = []
            continue

        if current is not None:
            # Strip inline voice/timing tags like <c> or <00:00:01.000>
            cleaned = re.sub(r'<[^>]+>', '', line).strip()
            if cleaned:
                text_lines.append(cleaned)

    flush()
    logger.debug("Parsed %s VTT segments", len(segments))
    return ParsedCaption(segments=segments, format='vtt')


def parse_json3(data: dict) -> ParsedCaption:
    """Parse YouTube json3 captions (``events[].segs[].utf8``)"""
    segments = []
    for event in data.get('events', []):
        segs = event.get('segs')
        if not segs:
            continue

        text = ''.join(seg.get('utf8', '') for seg in segs).strip()
        if not text:
            continue

        start = event.get('tStartMs', 0) / 1000.0
        end = start + event.get('dDurationMs', 0) / 1000.0
        segments.append(CaptionSegment(start=start, end=end, text=' '.join(text.split())))

    return ParsedCaption(segments=segments, format='json3')


def detect_format(content: str) -> str:
    """Guess caption format: 'srt', 'vtt' or 'unknown'"""
    if not content:
        return 'unknown'

    stripped = content.lstrip('\ufeff').lstrip()
    if '-->' in stripped and '\n\n' in stripped.replace('\r\n', '\n') \
            and not stripped.startswith('WEBVTT'):
        return 'srt'
    if 'WEBVTT' in stripped or '-->' in stripped:
        return 'vtt'
    return 'unknown'


def extract_text(segments: List[CaptionSegment]) -> str:
    """Join segment texts into one whitespace-normalized string"""
    combined = ' '.join(html.unescape(segment.text) for segment in segments if segment.text)
    return ' '.join(combined.split())


def parse(content: Union[str, dict], caption_format: Optional[str] = None) -> ParsedCaption:
    """Parse captions in any supported format, detecting it when not given"""
    if isinstance(content, dict):
        return parse_json3(content)

    caption_format = caption_format or detect_format(content)
    if caption_format == 'srt':
        return parse_srt(content)
    if caption_format == 'vtt':
        return parse_vtt(content)

    raise CaptionParseError(f"Unsupported caption format: {caption_format}")
