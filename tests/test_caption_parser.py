import pytest

from tubedigest.core import caption_parser
from tubedigest.core.caption_parser import CaptionParseError

from tests.conftest import SAMPLE_SRT


SAMPLE_VTT = """WEBVTT
Kind: captions
Language: en

00:00:01.000 --> 00:00:03.500 align:start position:0%
Hello <c>and</c> welcome

00:03.500 --> 00:07.000
to the <00:00:04.000>channel
"""


def test_parse_timestamp_formats():
    assert caption_parser.parse_timestamp('00:01:02,500') == pytest.approx(62.5)
    assert caption_parser.parse_timestamp('01:02:03.250') == pytest.approx(3723.25)
    assert caption_parser.parse_timestamp('01:02.000') == pytest.approx(62.0)


def test_parse_timestamp_rejects_garbage():
    with pytest.raises(ValueError):
        caption_parser.parse_timestamp('1:2:3:4')


def test_parse_srt_segments_and_text():
    parsed = caption_parser.parse_srt(SAMPLE_SRT)

    assert parsed.format == 'srt'
    assert len(parsed.segments) == 3
    assert parsed.segments[1].start == pytest.approx(4.0)
    assert parsed.segments[1].end == pytest.approx(9.5)
    assert parsed.text.startswith('Welcome to the show')
    assert parsed.duration_seconds == 15


def test_parse_srt_skips_malformed_blocks():
    content = "1\nnot a timestamp\nhello\n\n2\n00:00:01,000 --> 00:00:02,000\nworld\n"
    parsed = caption_parser.parse_srt(content)

    assert [segment.text for segment in parsed.segments] == ['world']


def test_parse_vtt_strips_tags_and_settings():
    parsed = caption_parser.parse_vtt(SAMPLE_VTT)

    assert parsed.format == 'vtt'
    assert [segment.text for segment in parsed.segments] == ['Hello and welcome', 'to the channel']
    assert parsed.segments[1].start == pytest.approx(3.5)


def test_parse_json3_events():
    data = {
        'events': [
            {'tStartMs': 0, 'dDurationMs': 2000, 'segs': [{'utf8': 'first '}, {'utf8': 'line'}]},
            {'tStartMs': 2000, 'dDurationMs': 1000},
            {'tStartMs': 3000, 'dDurationMs': 1500, 'segs': [{'utf8': '\n'}]},
            {'tStartMs': 4500, 'dDurationMs': 500, 'segs': [{'utf8': 'second'}]},
        ]
    }
    parsed = caption_parser.parse_json3(data)

    assert parsed.text == 'first line second'
    assert parsed.segments[-1].end == pytest.approx(5.0)


def test_detect_format():
    assert caption_parser.detect_format(SAMPLE_SRT) == 'srt'
    assert caption_parser.detect_format(SAMPLE_VTT) == 'vtt'
    assert caption_parser.detect_format('\ufeff' + SAMPLE_SRT) == 'srt'
    assert caption_parser.detect_format('just some words') == 'unknown'
    assert caption_parser.detect_format('') == 'unknown'


def test_parse_dispatches_and_rejects_unknown():
    assert caption_parser.parse(SAMPLE_VTT).format == 'vtt'
    assert caption_parser.parse({'events': []}).format == 'json3'

    with pytest.raises(CaptionParseError):
        caption_parser.parse('plain text with no cues')


def test_extract_text_unescapes_entities():
    segments = [
        caption_parser.CaptionSegment(0, 1, 'Tom &amp; Jerry'),
        caption_parser.CaptionSegment(1, 2, '  are   back '),
    ]
    assert caption_parser.extract_text(segments) == 'Tom & Jerry are back'
