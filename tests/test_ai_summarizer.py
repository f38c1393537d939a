from unittest.mock import Mock, patch

import httpx
import openai
import pytest

from tubedigest.core.ai_summarizer import (
    AISummarizer, mock_chapters, mock_summary, parse_chapters, TRUNCATION_NOTE,
)


TRANSCRIPT = "Today we build a small web service in Python and deploy it. " * 5


def completion(content, total_tokens=123):
    response = Mock()
    response.choices = [Mock(message=Mock(content=content))]
    response.usage = Mock(total_tokens=total_tokens)
    return response


@pytest.fixture
def summarizer():
    summarizer = AISummarizer(api_key='sk-test', model='gpt-4o-mini', max_tokens=500)
    summarizer.client = Mock()
    return summarizer


class TestParseChapters:
    def test_sorts_dedupes_and_fills_ends(self):
        content = """```json
        {"chapters": [
            {"title": "Setup", "startS": 120},
            {"title": "Intro", "startS": 0, "endS": 120},
            {"title": "Duplicate start", "startS": 0},
            {"title": "   ", "startS": 30},
            {"title": "Negative", "startS": -5},
            "not a chapter"
        ]}
        ```"""

        assert parse_chapters(content, duration_seconds=600) == [
            {'title': 'Intro', 'start_s': 0, 'end_s': 120},
            {'title': 'Setup', 'start_s': 120, 'end_s': 420},
        ]

    def test_missing_end_uses_next_start(self):
        content = '[{"title": "A", "startS": 0}, {"title": "B", "startS": 45, "endS": 10}]'

        assert parse_chapters(content) == [
            {'title': 'A', 'start_s': 0, 'end_s': 45},
            {'title': 'B', 'start_s': 45, 'end_s': 345},
        ]

    def test_fractional_times_are_rounded(self):
        content = '[{"title": "A", "startS": 0.4}, {"title": "B", "startS": 12.5, "endS": 59.6}]'

        assert parse_chapters(content) == [
            {'title': 'A', 'start_s': 0, 'end_s': 13},
            {'title': 'B', 'start_s': 13, 'end_s': 60},
        ]

    def test_last_chapter_stops_at_video_end(self):
        content = '[{"title": "Outro", "startS": 500}]'

        assert parse_chapters(content, duration_seconds=600)[0]['end_s'] == 600
        assert parse_chapters(content, duration_seconds=900)[0]['end_s'] == 800

    def test_garbage(self):
        assert parse_chapters('') == []
        assert parse_chapters('not json at all') == []
        assert parse_chapters('"just a string"') == []


class TestMockOutput:
    def test_summary_scales_with_length(self):
        assert 'brief video' in mock_summary('few words here')
        assert 'several key points' in mock_summary('word ' * 100)
        assert 'comprehensive video' in mock_summary('word ' * 500)

    def test_chapters_every_five_minutes(self):
        assert mock_chapters(900) == [
            {'title': 'Introduction', 'start_s': 0, 'end_s': 300},
            {'title': 'Part 2', 'start_s': 300, 'end_s': 600},
            {'title': 'Part 3', 'start_s': 600, 'end_s': 900},
        ]
        assert len(mock_chapters(10_000)) == 5
        assert mock_chapters(None) == [{'title': 'Introduction', 'start_s': 0, 'end_s': 300}]


class TestUnconfigured:
    def test_returns_none_without_mock(self):
        summarizer = AISummarizer(api_key=None)

        assert not summarizer.is_configured()
        assert summarizer.generate_summary(TRANSCRIPT) is None
        assert summarizer.extract_chapters(TRANSCRIPT) is None
        assert summarizer.analyze_sentiment(TRANSCRIPT) == {'sentiment': 'neutral', 'confidence': 0.5}
        assert summarizer.extract_key_topics(TRANSCRIPT) == []

    def test_mock_mode(self):
        summarizer = AISummarizer(api_key=None, allow_mock=True)

        result = summarizer.generate_summary(TRANSCRIPT)
        assert result.model == 'mock'
        assert summarizer.extract_chapters(TRANSCRIPT, duration_seconds=600)[1]['start_s'] == 300


class TestWithClient:
    def test_generate_summary(self, summarizer):
        summarizer.client.chat.completions.create.return_value = completion('  A short summary.  ', 88)

        result = summarizer.generate_summary(TRANSCRIPT, title='Deploying Python')

        assert result.summary == 'A short summary.'
        assert result.tokens_used == 88
        kwargs = summarizer.client.chat.completions.create.call_args.kwargs
        assert kwargs['model'] == 'gpt-4o-mini'
        assert kwargs['max_tokens'] == 500
        assert 'temperature' in kwargs
        assert 'Deploying Python' in kwargs['messages'][1]['content']

    def test_empty_summary_is_none(self, summarizer):
        summarizer.client.chat.completions.create.return_value = completion('   ')
        assert summarizer.generate_summary(TRANSCRIPT) is None

    def test_reasoning_models_skip_temperature(self, summarizer):
        summarizer.model = 'o3-mini'
        summarizer.client.chat.completions.create.return_value = completion('ok')

        summarizer.generate_summary(TRANSCRIPT)

        assert 'temperature' not in summarizer.client.chat.completions.create.call_args.kwargs

    def test_long_transcripts_are_truncated(self, summarizer):
        summarizer.client.chat.completions.create.return_value = completion('ok')

        summarizer.generate_summary('x' * (AISummarizer.MAX_TRANSCRIPT_CHARS + 500))

        prompt = summarizer.client.chat.completions.create.call_args.kwargs['messages'][1]['content']
        assert prompt.endswith(TRUNCATION_NOTE)

    def test_extract_chapters(self, summarizer):
        summarizer.client.chat.completions.create.return_value = completion(
            '[{"title": "Intro", "startS": 0, "endS": 60}, {"title": "Deploy", "startS": 60}]'
        )

        chapters = summarizer.extract_chapters(TRANSCRIPT, duration_seconds=240)

        assert chapters[-1] == {'title': 'Deploy', 'start_s': 60, 'end_s': 240}

    @patch('tubedigest.core.ai_summarizer.sleep')
    def test_transient_errors_are_retried(self, mock_sleep, summarizer):
        request = httpx.Request('POST', 'https://api.openai.com/v1/chat/completions')
        summarizer.client.chat.completions.create.side_effect = [
            openai.APIConnectionError(request=request),
            completion('Recovered summary.'),
        ]

        result = summarizer.generate_summary(TRANSCRIPT)

        assert result.summary == 'Recovered summary.'
        mock_sleep.assert_called_once_with(AISummarizer.RETRY_DELAY_BASE)

    @patch('tubedigest.core.ai_summarizer.sleep')
    def test_gives_up_after_retries(self, mock_sleep, summarizer):
        request = httpx.Request('POST', 'https://api.openai.com/v1/chat/completions')
        summarizer.client.chat.completions.create.side_effect = openai.APIConnectionError(request=request)

        assert summarizer.generate_summary(TRANSCRIPT) is None
        assert summarizer.client.chat.completions.create.call_count == AISummarizer.RETRY_ATTEMPTS

    def test_sentiment_and_topics(self, summarizer):
        summarizer.client.chat.completions.create.side_effect = [
            completion('{"sentiment": "Positive", "confidence": 0.9}'),
            completion('{"topics": ["python", "deployment", " "]}'),
        ]

        assert summarizer.analyze_sentiment(TRANSCRIPT) == {'sentiment': 'positive', 'confidence': 0.9}
        assert summarizer.extract_key_topics(TRANSCRIPT) == ['python', 'deployment']
