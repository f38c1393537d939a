from datetime import timedelta
from unittest.mock import Mock, patch
from urllib.parse import parse_qs, urlparse

import google.auth.exceptions
import pytest
import requests
from google.oauth2.credentials import Credentials

from tubedigest.managers.auth_manager import AuthError, AuthManager
from tubedigest.managers.channel_manager import ChannelLimitError, ChannelManager
from tubedigest.utils.formatters import from_iso, utc_now

from tests.conftest import CHANNEL_ID


EMAIL = 'viewer@example.com'


@pytest.fixture
def auth(settings, db, monkeypatch):
    monkeypatch.setenv('GOOGLE_CLIENT_ID', 'client-id.apps.googleusercontent.com')
    monkeypatch.setenv('GOOGLE_CLIENT_SECRET', 'client-secret')
    return AuthManager(settings, db)


class TestAuthManager:
    def test_unconfigured(self, settings, db):
        auth = AuthManager(settings, db)

        assert not auth.is_configured()
        with pytest.raises(AuthError):
            auth.get_authorization_url()

    def test_authorization_url(self, auth):
        url = auth.get_authorization_url(state='abc123')

        query = parse_qs(urlparse(url).query)
        assert query['client_id'] == ['client-id.apps.googleusercontent.com']
        assert query['state'] == ['abc123']
        assert query['access_type'] == ['offline']
        assert query['redirect_uri'] == ['http://localhost:8000/auth/google/callback']
        assert 'https://www.googleapis.com/auth/youtube.readonly' in query['scope'][0]

    @patch('tubedigest.managers.auth_manager.requests.get')
    def test_user_info(self, mock_get, auth):
        mock_get.return_value = Mock(json=Mock(return_value={'email': EMAIL, 'name': 'Viewer'}))
        assert auth.get_user_info('token')['name'] == 'Viewer'

        mock_get.return_value = Mock(json=Mock(return_value={'name': 'No email'}))
        with pytest.raises(AuthError):
            auth.get_user_info('token')

        mock_get.side_effect = requests.ConnectionError('offline')
        with pytest.raises(AuthError):
            auth.get_user_info('token')

    def test_complete_login_stores_user_and_tokens(self, auth, db):
        credentials = Credentials(token='access-1', refresh_token='refresh-1', scopes=['openid', 'email'])
        credentials.expiry = (utc_now() + timedelta(hours=1)).replace(tzinfo=None)

        with patch.object(auth, 'exchange_code', return_value=credentials), \
                patch.object(auth, 'get_user_info', return_value={'email': EMAIL, 'name': 'Viewer'}):
            user = auth.complete_login('auth-code')

        assert user['email'] == EMAIL
        tokens = db.get_oauth_tokens(user['id'])
        assert tokens['access_token'] == 'access-1'
        assert tokens['scope'] == 'openid email'
        assert [t['provider'] for t in auth.list_tokens(EMAIL)] == ['google']

    def test_exchange_failure(self, auth):
        with patch('tubedigest.managers.auth_manager.Flow.fetch_token', side_effect=ValueError('invalid_grant')):
            with pytest.raises(AuthError, match='invalid_grant'):
                auth.exchange_code('bad-code')

    def test_valid_credentials_returned(self, auth, db, user):
        db.save_oauth_tokens(user['id'], 'access-1', 'refresh-1', expires_at=utc_now() + timedelta(hours=1))

        credentials = auth.get_credentials(EMAIL)

        assert credentials.token == 'access-1'
        assert not credentials.expired

    def test_expired_token_is_refreshed(self, auth, db, user):
        db.save_oauth_tokens(user['id'], 'old-access', 'refresh-1', expires_at=utc_now() - timedelta(hours=1))

        def fake_refresh(credentials, request):
            credentials.token = 'new-access'
            credentials.expiry = (utc_now() + timedelta(hours=1)).replace(tzinfo=None)

        with patch.object(Credentials, 'refresh', autospec=True, side_effect=fake_refresh):
            credentials = auth.get_credentials(EMAIL)

        assert credentials.token == 'new-access'
        stored = db.get_oauth_tokens(user['id'])
        assert stored['access_token'] == 'new-access'
        assert stored['refresh_token'] == 'refresh-1'
        assert from_iso(stored['expires_at']) > utc_now()

    def test_expired_without_refresh_or_failed_refresh(self, auth, db, user):
        db.save_oauth_tokens(user['id'], 'old-access', expires_at=utc_now() - timedelta(hours=1))
        assert auth.get_credentials(EMAIL) is None

        db.save_oauth_tokens(user['id'], 'old-access', 'refresh-1', expires_at=utc_now() - timedelta(hours=1))
        error = google.auth.exceptions.RefreshError('invalid_grant')
        with patch.object(Credentials, 'refresh', side_effect=error):
            assert auth.get_credentials(EMAIL) is None

    def test_unknown_user(self, auth):
        assert auth.get_credentials('ghost@example.com') is None
        assert auth.list_tokens('ghost@example.com') == []
        assert auth.revoke_tokens('ghost@example.com') is False

    def test_revoke(self, auth, db, user):
        db.save_oauth_tokens(user['id'], 'access-1')

        assert auth.revoke_tokens(EMAIL)
        assert not auth.revoke_tokens(EMAIL)


class TestChannelManager:
    @pytest.fixture
    def auth(self):
        auth = Mock()
        auth.get_credentials.return_value = None
        return auth

    def test_list_channels_without_token(self, db, auth):
        assert ChannelManager(db, auth).list_channels(EMAIL) == []
        assert ChannelManager(db, auth, allow_mock=True).list_channels(EMAIL)[0]['title'] == 'Fireship'

    @patch('tubedigest.managers.channel_manager.YouTubeClient')
    def test_list_channels_with_token(self, mock_client, db, auth):
        auth.get_credentials.return_value = 'credentials'
        mock_client.return_value.list_subscriptions.return_value = [{'channelId': CHANNEL_ID, 'title': 'Fireship'}]

        channels = ChannelManager(db, auth).list_channels(EMAIL)

        mock_client.assert_called_once_with(credentials='credentials')
        assert channels[0]['channelId'] == CHANNEL_ID

    def test_select_replaces_and_dedupes(self, db, auth):
        manager = ChannelManager(db, auth)

        result = manager.select_channels(EMAIL, [CHANNEL_ID, ' UC2 ', CHANNEL_ID, ''], {CHANNEL_ID: 'Fireship'})

        assert result == {'ok': True, 'count': 2}
        assert manager.get_selected_channels(EMAIL) == [
            {'channelId': CHANNEL_ID, 'title': 'Fireship'},
            {'channelId': 'UC2', 'title': 'UC2'},
        ]

    def test_empty_selection_leaves_existing(self, db, auth):
        manager = ChannelManager(db, auth)
        manager.select_channels(EMAIL, [CHANNEL_ID])

        assert manager.select_channels(EMAIL, ['  ']) == {'ok': True, 'count': 0}
        assert len(manager.get_selected_channels(EMAIL)) == 1

    def test_limit(self, db, auth):
        manager = ChannelManager(db, auth)
        ids = [f'UC{i:022d}' for i in range(11)]

        with pytest.raises(ChannelLimitError, match='limit_exceeded'):
            manager.select_channels(EMAIL, ids)

        manager.select_channels(EMAIL, ids[:10])
        with pytest.raises(ChannelLimitError):
            manager.update_channel_selection(EMAIL, ids[10], True)

        # Reselecting a channel that is already selected is fine at the limit
        assert manager.update_channel_selection(EMAIL, ids[0], True)['selected']
        manager.update_channel_selection(EMAIL, ids[0], False)
        assert manager.update_channel_selection(EMAIL, ids[10], True, 'Eleventh')['ok']
