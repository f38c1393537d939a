#!/usr/bin/env python3
"""
AI Summarization using OpenAI GPT
Video summaries, chapter extraction, sentiment and key topics
"""

import re
import math
import json
import logging
from dataclasses import dataclass
from time import sleep
from typing import Dict, List, Optional, Tuple

import openai
from pydantic import BaseModel, ValidationError, field_validator

from tubedigest.core.constants import (
    DEFAULT_OPENAI_MODEL, DEFAULT_AI_MAX_TOKENS, SUMMARY_TEMPERATURE,
    CHAPTER_TEMPERATURE, MAX_TRANSCRIPT_CHARS, DEFAULT_CHAPTER_LENGTH,
    MOCK_MAX_CHAPTERS, RETRY_ATTEMPTS, AI_RETRY_BASE_DELAY,
)


logger = logging.getLogger(__name__)

SUMMARY_SYSTEM_PROMPT = (
    "You are a helpful assistant that creates concise, informative summaries of "
    "video transcripts. Focus on the main points and key insights."
)
CHAPTER_SYSTEM_PROMPT = (
    "You are a helpful assistant that analyzes video transcripts and identifies "
    "chapter boundaries. Return a JSON array of chapters with startS (start time "
    "in seconds), endS (end time in seconds), and title (descriptive chapter title)."
)
SENTIMENT_SYSTEM_PROMPT = (
    "Analyze the sentiment of the given text. Return a JSON object with sentiment "
    "(positive, negative, or neutral) and confidence (0-1)."
)
TOPICS_SYSTEM_PROMPT = (
    "Extract 3-5 key topics from the given text. Return a JSON array of topic strings."
)
TRUNCATION_NOTE = "\n\n[Note: Transcript was truncated due to length]"


class Chapter(BaseModel):
    """One chapter as returned by the model"""
    title: str
    startS: float
    endS: Optional[float] = None

    @field_validator('title')
    @classmethod
    def validate_title(cls, title):
        title = title.strip()
        if not title:
            raise ValueError('Chapter title is empty')
        return title

    @field_validator('startS')
    @classmethod
    def validate_start(cls, start):
        if start < 0:
            raise ValueError('Chapter start must be non-negative')
        return start


@dataclass
class SummaryResult:
    summary: str
    model: str
    tokens_used: int = 0


def _strip_code_fences(content: str) -> str:
    content = content.strip()
    match = re.match(r'^```(?:json)?\s*(.*?)\s*```$', content, re.DOTALL)
    return match.group(1) if match else content


def _whole_seconds(value: float) -> int:
    return int(math.floor(value + 0.5))


def parse_chapters(content: Optional[str], duration_seconds: Optional[int] = None) -> List[Dict]:
    """
    Parse the model's chapter JSON into sorted, de-duplicated chapters

    Accepts a bare array or {"chapters": [...]}, optionally in a code fence.
    Invalid entries are dropped. Times are rounded to whole seconds; a missing
    endS is the next chapter's start, or 5 minutes on for the last chapter
    (never past the end of the video).
    """
    if not content:
        return []

    try:
        data = json.loads(_strip_code_fences(content))
    except json.JSONDecodeError:
        logger.warning("Chapter response was not valid JSON")
        return []

    if isinstance(data, dict):
        data = data.get('chapters', [])
    if not isinstance(data, list):
        return []

    chapters: List[Chapter] = []
    for item in data:
        if not isinstance(item, dict):
            continue
        try:
            chapters.append(Chapter(**item))
        except (ValidationError, TypeError) as e:
            logger.debug(f"Dropping invalid chapter {item}: {e}")

    chapters.sort(key=lambda chapter: chapter.startS)

    unique = []
    seen_starts = set()
    for chapter in chapters:
        start = _whole_seconds(chapter.startS)
        if start in seen_starts:
            continue
        seen_starts.add(start)
        end = _whole_seconds(chapter.endS) if chapter.endS is not None else None
        unique.append((chapter.title, start, end))

    result = []
    for index, (title, start, end) in enumerate(unique):
        if end is None or end <= start:
            if index + 1 < len(unique):
                end = unique[index + 1][1]
            else:
                end = start + DEFAULT_CHAPTER_LENGTH
                if duration_seconds and start < duration_seconds < end:
                    end = duration_seconds
        result.append({'title': title, 'start_s': start, 'end_s': end})

    return result


def mock_summary(transcript: str) -> str:
    """Placeholder summary sized by transcript length"""
    words = len(transcript.split())
    if words < 50:
        return "This is a brief video with limited content. The main topic appears to be introductory in nature."
    if words < 200:
        return ("This video covers several key points in a concise format. The content provides "
                "practical information and insights on the topic.")
    return ("This comprehensive video explores multiple aspects of the topic in detail. The content "
            "includes detailed explanations, examples, and practical applications that provide "
            "valuable insights for viewers.")


def mock_chapters(duration_seconds: Optional[int]) -> List[Dict]:
    """One placeholder chapter per five minutes, at most five"""
    duration = duration_seconds or DEFAULT_CHAPTER_LENGTH
    count = min(MOCK_MAX_CHAPTERS, max(1, duration // DEFAULT_CHAPTER_LENGTH))
    chapters = []
    for index in range(count):
        start = index * DEFAULT_CHAPTER_LENGTH
        chapters.append({
            'title': 'Introduction' if index == 0 else f'Part {index + 1}',
            'start_s': start,
            'end_s': min(start + DEFAULT_CHAPTER_LENGTH, duration) if duration > start else start + DEFAULT_CHAPTER_LENGTH,
        })
    return chapters


class AISummarizer:
    """AI-powered video summarizer using OpenAI GPT"""

    MAX_TRANSCRIPT_CHARS = MAX_TRANSCRIPT_CHARS
    RETRY_ATTEMPTS = RETRY_ATTEMPTS
    RETRY_DELAY_BASE = AI_RETRY_BASE_DELAY

    def __init__(
        self,
        api_key: Optional[str],
        model: Optional[str] = None,
        max_tokens: int = DEFAULT_AI_MAX_TOKENS,
        allow_mock: bool = False,
    ):
        """
        Args:
            api_key: OpenAI key; without one only mock output is available
            model: Chat model name
            max_tokens: Completion limit for summaries and chapters
            allow_mock: Produce placeholder output when no key is configured
        """
        self.api_key = api_key
        self.model = model or DEFAULT_OPENAI_MODEL
        self.max_tokens = max_tokens
        self.allow_mock = allow_mock
        self.client = openai.OpenAI(api_key=api_key, timeout=120.0) if api_key else None
        if self.client:
            logger.info(f"OpenAI API client initialized with model: {self.model}")

    def is_configured(self) -> bool:
        return self.client is not None

    def _supports_temperature(self) -> bool:
        # o1/o3/reasoning models don't accept temperature
        model_lower = self.model.lower()
        return not (
            model_lower.startswith('o1') or
            model_lower.startswith('o3') or
            'gpt-5' in model_lower
        )

    def _truncate(self, transcript: str) -> str:
        if len(transcript) <= self.MAX_TRANSCRIPT_CHARS:
            return transcript
        logger.debug(f"Truncated transcript to {self.MAX_TRANSCRIPT_CHARS} chars")
        return transcript[:self.MAX_TRANSCRIPT_CHARS] + TRUNCATION_NOTE

    def _complete(
        self,
        system_prompt: str,
        user_prompt: str,
        temperature: float,
        max_tokens: Optional[int],
    ) -> Optional[Tuple[str, int]]:
        """
        Chat completion with retry logic
        Returns (content, total tokens) or None
        """
        api_params = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
        }
        if self._supports_temperature():
            api_params["temperature"] = temperature
        if max_tokens is not None:
            api_params["max_tokens"] = max_tokens

        for attempt in range(self.RETRY_ATTEMPTS):
            try:
                logger.debug(f"Calling OpenAI API (attempt {attempt + 1}/{self.RETRY_ATTEMPTS})...")
                response = self.client.chat.completions.create(**api_params)
                content = response.choices[0].message.content or ''
                usage = getattr(response, 'usage', None)
                tokens = getattr(usage, 'total_tokens', 0) or 0
                return content, tokens

            except openai.AuthenticationError:
                logger.error("Authentication error: Invalid OpenAI API key")
                return None

            except (openai.RateLimitError, openai.APITimeoutError, openai.APIError) as e:
                logger.warning(f"{type(e).__name__} (attempt {attempt + 1}/{self.RETRY_ATTEMPTS}): {e}")
                if attempt < self.RETRY_ATTEMPTS - 1:
                    delay = self.RETRY_DELAY_BASE * (2 ** attempt)
                    logger.info(f"Retrying in {delay}s...")
                    sleep(delay)
                else:
                    logger.error("Max retries reached for OpenAI request")
                    return None

            except Exception as e:
                logger.error(f"Unexpected error during API call: {e}", exc_info=True)
                return None

        return None

    # ========================
    # Summaries and chapters
    # ========================

    def generate_summary(self, transcript: str, title: Optional[str] = None) -> Optional[SummaryResult]:
        """2-3 sentence summary of a transcript, or None"""
        if not transcript:
            return None

        if not self.is_configured():
            if self.allow_mock:
                logger.warning("OpenAI not configured, using mock summary")
                return SummaryResult(summary=mock_summary(transcript), model='mock')
            logger.warning("OpenAI not configured, cannot generate summary")
            return None

        prompt = "Please provide a concise summary of this video transcript in 2-3 sentences"
        if title:
            prompt += f' (video title: "{title}")'
        prompt += f":\n\n{self._truncate(transcript)}"

        completion = self._complete(SUMMARY_SYSTEM_PROMPT, prompt, SUMMARY_TEMPERATURE, self.max_tokens)
        if not completion:
            return None

        summary, tokens = completion
        summary = summary.strip()
        if not summary:
            logger.warning("OpenAI returned an empty summary")
            return None

        logger.info(f"✓ Summary generated: {len(summary)} chars")
        return SummaryResult(summary=summary, model=self.model, tokens_used=tokens)

    def extract_chapters(
        self,
        transcript: str,
        title: Optional[str] = None,
        duration_seconds: Optional[int] = None
    ) -> Optional[List[Dict]]:
        """
        Chapter list [{title, start_s, end_s}], or None when unavailable
        """
        if not transcript:
            return None

        if not self.is_configured():
            if self.allow_mock:
                logger.warning("OpenAI not configured, using mock chapters")
                return mock_chapters(duration_seconds)
            return None

        prompt = "Please analyze this video transcript and identify logical chapter boundaries"
        if title:
            prompt += f' for the video "{title}"'
        if duration_seconds:
            prompt += f" (duration: {duration_seconds} seconds)"
        prompt += f":\n\n{self._truncate(transcript)}"

        completion = self._complete(CHAPTER_SYSTEM_PROMPT, prompt, CHAPTER_TEMPERATURE, self.max_tokens)
        if not completion:
            return None

        chapters = parse_chapters(completion[0], duration_seconds)
        logger.info(f"✓ Extracted {len(chapters)} chapters")
        return chapters

    # ========================
    # Extras
    # ========================

    def analyze_sentiment(self, text: str) -> Dict:
        """{sentiment, confidence}; neutral/0.5 when unavailable"""
        fallback = {'sentiment': 'neutral', 'confidence': 0.5}
        if not self.is_configured() or not text:
            return fallback

        completion = self._complete(SENTIMENT_SYSTEM_PROMPT, self._truncate(text), 0.1, 100)
        if not completion:
            return fallback

        try:
            data = json.loads(_strip_code_fences(completion[0]))
            sentiment = str(data.get('sentiment', 'neutral')).lower()
            if sentiment not in ('positive', 'negative', 'neutral'):
                sentiment = 'neutral'
            return {'sentiment': sentiment, 'confidence': float(data.get('confidence', 0.5))}
        except (json.JSONDecodeError, AttributeError, TypeError, ValueError):
            logger.warning("Could not parse sentiment response")
            return fallback

    def extract_key_topics(self, text: str) -> List[str]:
        """3-5 key topics; empty list when unavailable"""
        if not self.is_configured() or not text:
            return []

        completion = self._complete(TOPICS_SYSTEM_PROMPT, self._truncate(text), CHAPTER_TEMPERATURE, 200)
        if not completion:
            return []

        try:
            data = json.loads(_strip_code_fences(completion[0]))
        except json.JSONDecodeError:
            logger.warning("Could not parse key topics response")
            return []

        if isinstance(data, dict):
            data = data.get('topics', [])
        if not isinstance(data, list):
            return []
        return [str(topic).strip() for topic in data if str(topic).strip()][:5]
