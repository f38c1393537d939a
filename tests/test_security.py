import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from tubedigest.web.security import (
    SecurityMiddleware, SecurityState, decode_session, encode_session,
)


@pytest.fixture
def state():
    return SecurityState(window_seconds=60, max_requests=3, csrf_max_requests=5)


@pytest.fixture
def client(state):
    app = FastAPI()
    app.add_middleware(SecurityMiddleware, state=state)

    @app.get('/ping')
    def ping():
        return {'ok': True}

    @app.post('/things')
    def create_thing():
        return {'created': True}

    @app.get('/auth/csrf-token')
    def csrf_token():
        return {'csrfToken': state.generate_csrf_token()}

    return TestClient(app)


class TestSessionCookie:
    def test_round_trip(self):
        value = encode_session('viewer@example.com')

        assert 'viewer' not in value
        assert decode_session(value) == 'viewer@example.com'

    def test_tampered_or_missing(self):
        assert decode_session(None) is None
        assert decode_session('viewer@example.com') is None
        assert decode_session(encode_session('not an email')) is None


class TestSecurityState:
    def test_sliding_window(self, state):
        assert all(state.check_rate_limit('1.2.3.4') for _ in range(3))
        assert not state.check_rate_limit('1.2.3.4')
        assert state.check_rate_limit('5.6.7.8')

        stats = state.get_rate_limit_stats()
        assert stats['1.2.3.4']['count'] == 3
        assert 0 < state.retry_after('1.2.3.4') <= 61

        assert state.clear_rate_limit('1.2.3.4')
        assert not state.clear_rate_limit('1.2.3.4')
        assert state.check_rate_limit('1.2.3.4')

    def test_csrf_tokens(self, state):
        token = state.generate_csrf_token()

        assert len(token) == 64
        assert state.validate_csrf_token(token)
        assert not state.validate_csrf_token('forged')
        assert not state.validate_csrf_token(None)

    def test_csrf_store_is_trimmed(self, state):
        tokens = [state.generate_csrf_token() for _ in range(1001)]

        assert state.csrf_token_count() == 500
        assert state.validate_csrf_token(tokens[-1])
        assert not state.validate_csrf_token(tokens[0])

    def test_events(self, state):
        state.record_event('login_attempt', provider='google')
        state.record_event('csrf_violation')

        events = state.get_events(limit=1)
        assert [e['eventType'] for e in events] == ['csrf_violation']
        assert state.get_events()[0]['metadata'] == {'provider': 'google'}


class TestMiddleware:
    def test_security_headers(self, client):
        response = client.get('/ping')

        assert response.status_code == 200
        assert response.headers['X-Frame-Options'] == 'DENY'
        assert response.headers['X-Content-Type-Options'] == 'nosniff'

    def test_rate_limit(self, client, state):
        for _ in range(3):
            assert client.get('/ping').status_code == 200

        response = client.get('/ping')

        assert response.status_code == 429
        assert response.json()['error'] == 'Rate limit exceeded'
        assert response.json()['retryAfter'] > 0
        assert state.get_events()[-1]['eventType'] == 'rate_limit_exceeded'

    def test_forwarded_for_picks_bucket(self, client, state):
        for _ in range(3):
            client.get('/ping', headers={'X-Forwarded-For': '9.9.9.9, 10.0.0.1'})

        assert client.get('/ping', headers={'X-Forwarded-For': '9.9.9.9'}).status_code == 429
        assert client.get('/ping').status_code == 200

    def test_csrf_token_endpoint_has_higher_limit(self, client):
        statuses = [client.get('/auth/csrf-token').status_code for _ in range(5)]
        assert statuses == [200] * 5

    def test_post_requires_csrf_token(self, client, state):
        response = client.post('/things')

        assert response.status_code == 403
        assert response.json() == {
            'error': 'CSRF token validation failed',
            'message': 'Invalid or missing CSRF token',
        }
        assert state.get_events()[-1]['eventType'] == 'csrf_violation'

    def test_post_with_valid_token(self, client):
        token = client.get('/auth/csrf-token').json()['csrfToken']

        response = client.post('/things', headers={'X-CSRF-Token': token})

        assert response.status_code == 200
        assert response.json() == {'created': True}
