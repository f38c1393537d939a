from unittest.mock import Mock

import pytest
import requests

from tubedigest.core.search_api import (
    SearchAPIClient, SearchAPIError, basic_chapters, basic_summary, build_transcript_text,
    map_video_result,
)

from tests.conftest import VIDEO_ID


RAW_RESULT = {
    'title': 'Python in 100 Seconds',
    'link': f'https://www.youtube.com/watch?v={VIDEO_ID}',
    'description': 'Python is a high-level language known for readability',
    'views': 1234567,
    'length': '2:17',
    'channel': {'title': 'Fireship', 'id': 'UCsBjURrPoezykLs9EqgamOA'},
    'key_moments': [
        {'title': 'History', 'start_seconds': 0},
        {'title': 'Syntax', 'start_seconds': 65},
    ],
}


def response(payload, status=200):
    resp = Mock(status_code=status)
    resp.json.return_value = payload
    if status >= 400:
        resp.raise_for_status.side_effect = requests.HTTPError(f'{status} error')
    return resp


@pytest.fixture
def session():
    return Mock()


@pytest.fixture
def client(db, session):
    return SearchAPIClient('search-key', db=db, session=session)


def test_map_video_result_extracts_id_and_channel():
    video = map_video_result(RAW_RESULT)

    assert video['id'] == VIDEO_ID
    assert video['channel_title'] == 'Fireship'
    assert len(video['key_moments']) == 2


def test_transcript_text_and_basic_summary():
    video = map_video_result(RAW_RESULT)

    text = build_transcript_text(video)
    assert text.startswith('Video Description:')
    assert '1:05 - Syntax' in text
    assert 'Views: 1,234,567' in text

    summary = basic_summary(video)
    assert summary.startswith('Summary of "Python in 100 Seconds"')
    assert '• History' in summary


def test_basic_chapters():
    assert basic_chapters(map_video_result(RAW_RESULT)) == [
        {'title': 'History', 'start_s': 0, 'end_s': 65},
        {'title': 'Syntax', 'start_s': 65, 'end_s': 365},
    ]
    assert basic_chapters({}) == [{'title': 'Introduction', 'start_s': 0, 'end_s': 300}]


def test_search_caches_results(client, session, db):
    session.get.return_value = response({'video_results': [RAW_RESULT]})

    videos = client.search_youtube_videos('python', max_results=5)

    assert [v['id'] for v in videos] == [VIDEO_ID]
    params = session.get.call_args.kwargs['params']
    assert params['engine'] == 'youtube'
    assert params['num'] == 5
    assert client.search_cached_videos('python')[0]['title'] == 'Python in 100 Seconds'


def test_get_video_uses_cache(client, session):
    session.get.return_value = response({'video_results': [RAW_RESULT]})

    first = client.get_video_by_id(VIDEO_ID)
    second = client.get_video_by_id(VIDEO_ID)

    assert first['id'] == second['id'] == VIDEO_ID
    assert session.get.call_count == 1


def test_get_video_prefers_exact_match(client, session):
    other = dict(RAW_RESULT, link='https://www.youtube.com/watch?v=aaaaaaaaaaa', title='Other')
    session.get.return_value = response({'video_results': [other, RAW_RESULT]})

    assert client.get_video_by_id(VIDEO_ID, use_cache=False)['title'] == 'Python in 100 Seconds'


def test_get_video_ignores_other_videos(client, session):
    other = dict(RAW_RESULT, link='https://www.youtube.com/watch?v=aaaaaaaaaaa', title='Other')
    session.get.return_value = response({'video_results': [other]})

    assert client.get_video_by_id(VIDEO_ID, use_cache=False) is None
    assert client.get_video_by_id(VIDEO_ID) is None
    assert session.get.call_count == 2


def test_errors_raise_search_api_error(client, session):
    session.get.return_value = response({'error': 'Invalid API key'})
    with pytest.raises(SearchAPIError, match='Invalid API key'):
        client.search_youtube_videos('python')

    session.get.return_value = response({}, status=500)
    with pytest.raises(SearchAPIError):
        client.search_youtube_videos('python')


def test_unconfigured_client(db):
    client = SearchAPIClient(None, db=db, session=Mock())

    assert client.get_status() == {'available': False, 'message': 'SearchAPI key not configured'}
    assert client.fetch_transcript(VIDEO_ID).error == 'SearchAPI not configured'
    with pytest.raises(SearchAPIError):
        client.search_youtube_videos('python')


def test_fetch_transcript(client, session):
    session.get.return_value = response({'video_results': [RAW_RESULT]})

    result = client.fetch_transcript(VIDEO_ID)

    assert result.has_captions
    assert result.source == 'searchapi'
    assert result.chapters[1]['title'] == 'Syntax'


def test_fetch_transcript_never_raises(client, session):
    session.get.side_effect = requests.ConnectionError('offline')

    result = client.fetch_transcript(VIDEO_ID)

    assert not result.has_captions
    assert 'offline' in result.error


def test_cache_maintenance(client, session):
    session.get.return_value = response({'video_results': [RAW_RESULT]})
    client.get_video_by_id(VIDEO_ID)

    assert client.get_cache_stats()['active'] == 1
    assert client.invalidate_cache(VIDEO_ID)
    assert client.get_cached_video(VIDEO_ID) is None
    assert client.cleanup_expired_cache() == 1
