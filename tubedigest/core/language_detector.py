#!/usr/bin/env python3
"""
Lightweight English detection based on common-word frequency
"""

import re
import logging
from typing import Optional, Tuple


logger = logging.getLogger(__name__)

ENGLISH_WORDS = frozenset([
    'the', 'be', 'to', 'of', 'and', 'a', 'in', 'that', 'have', 'i', 'it', 'for', 'not', 'on', 'with',
    'he', 'as', 'you', 'do', 'at', 'this', 'but', 'his', 'by', 'from', 'they', 'we', 'say', 'her',
    'she', 'or', 'an', 'will', 'my', 'one', 'all', 'would', 'there', 'their', 'what', 'so', 'up',
    'out', 'if', 'about', 'who', 'get', 'which', 'go', 'me', 'when', 'make', 'can', 'like', 'time',
    'no', 'just', 'him', 'know', 'take', 'people', 'into', 'year', 'your', 'good', 'some', 'could',
    'them', 'see', 'other', 'than', 'then', 'now', 'look', 'only', 'come', 'its', 'over', 'think',
    'also', 'back', 'after', 'use', 'two', 'how', 'our', 'work', 'first', 'well', 'way', 'even',
    'new', 'want', 'because', 'any', 'these', 'give', 'day', 'most', 'us',
])

LANGUAGE_PRIORITY = {
    'en': 1,
    'es': 2,
    'fr': 3,
    'de': 4,
}
UNKNOWN_PRIORITY = 999


def detect_language(text: str) -> Tuple[str, float]:
    """
    Estimate whether text is English.

    Returns:
        (language, confidence) where language is 'en' or 'unknown'
    """
    if not text:
        return 'unknown', 0.0

    words = [
        word for word in re.sub(r'[^\w\s]', ' ', text.lower()).split()
        if len(word) > 2
    ]
    if not words:
        return 'unknown', 0.0

    english_count = sum(1 for word in words if word in ENGLISH_WORDS)
    ratio = english_count / len(words)

    if ratio > 0.3:
        return 'en', min(ratio * 2, 1.0)
    if ratio > 0.1:
        # Low confidence English
        return 'en', 0.5
    return 'unknown', 0.0


def is_english(text: str) -> bool:
    language, confidence = detect_language(text)
    return language == 'en' and confidence > 0.5


def should_process_language(language: Optional[str]) -> bool:
    """Only English variants (en, en-US, en-GB, ...) are summarized"""
    if not language:
        return False
    return language.lower().split('-')[0] == 'en'


def language_priority(language: Optional[str]) -> int:
    if not language:
        return UNKNOWN_PRIORITY
    return LANGUAGE_PRIORITY.get(language.lower().split('-')[0], UNKNOWN_PRIORITY)


def language_from_youtube_response(snippet: Optional[dict]) -> str:
    """Read the language of a caption track snippet from the Data API"""
    if not snippet:
        return 'unknown'
    return snippet.get('language') or snippet.get('defaultAudioLanguage') or 'unknown'
