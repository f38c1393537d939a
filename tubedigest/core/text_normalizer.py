#!/usr/bin/env python3
"""
Transcript text cleanup and quality checks
"""

import re
import html
import logging
from dataclasses import dataclass, field
from typing import List

from tubedigest.core.constants import (
    MIN_TEXT_LENGTH, MAX_TRANSCRIPT_LENGTH,
    MAX_SPECIAL_CHAR_RATIO, MIN_UNIQUE_WORD_RATIO,
)


logger = logging.getLogger(__name__)


@dataclass
class QualityReport:
    is_valid: bool
    issues: List[str] = field(default_factory=list)


def normalize_text(text: str) -> str:
    """
    Strip markup and caption noise and collapse whitespace.
    Consecutive duplicate words (a common ASR artifact) are removed.
    """
    if not text:
        return ''

    try:
        cleaned = re.sub(r'<[^>]*>', ' ', text)
        cleaned = html.unescape(cleaned)
        cleaned = re.sub(r'\[[^\]]*\]', ' ', cleaned)
        cleaned = re.sub(r'\([^)]*\)', ' ', cleaned)
        cleaned = cleaned.replace('♪', ' ')
        cleaned = re.sub(r"[^\w\s.,!?'-]", ' ', cleaned)
        cleaned = ' '.join(cleaned.split())
        return remove_duplicate_words(cleaned)
    except Exception as e:
        logger.error(f"Error normalizing text: {e}")
        return text


def remove_duplicate_words(text: str) -> str:
    """Drop a word when it exactly repeats the previous one"""
    result = []
    for word in text.split():
        if not result or word != result[-1]:
            result.append(word)
    return ' '.join(result)


def clean_caption_text(text: str) -> str:
    """Remove caption artifacts: cue counter lines, speaker labels, acronyms"""
    if not text:
        return ''

    cleaned = re.sub(r'^\d+\s*$', '', text, flags=re.MULTILINE)
    # all-caps lines are speaker labels or sound cues
    cleaned = re.sub(r'^[A-Z \t]+$', '', cleaned, flags=re.MULTILINE)
    cleaned = re.sub(r'\b[A-Z]{2,}\b', ' ', cleaned)
    return ' '.join(cleaned.split())


def validate_text_quality(text: str, max_length: int = MAX_TRANSCRIPT_LENGTH) -> QualityReport:
    """Check a transcript is usable for summarization"""
    if not text or not text.strip():
        return QualityReport(is_valid=False, issues=['Empty text'])

    issues = []

    if len(text) < MIN_TEXT_LENGTH:
        issues.append('Text too short')

    if len(text) > max_length:
        issues.append('Text too long')

    special_chars = len(re.findall(r'[^\w\s]', text))
    if special_chars / len(text) > MAX_SPECIAL_CHAR_RATIO:
        issues.append('Too many special characters')

    words = text.lower().split()
    if words and len(set(words)) / len(words) < MIN_UNIQUE_WORD_RATIO:
        issues.append('Too much repetitive content')

    return QualityReport(is_valid=not issues, issues=issues)
