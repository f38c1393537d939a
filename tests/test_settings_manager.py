def test_resolution_order(settings, monkeypatch):
    assert settings.get('OPENAI_MODEL') == 'gpt-4o-mini'

    monkeypatch.setenv('OPENAI_MODEL', 'gpt-4o')
    assert settings.get('OPENAI_MODEL') == 'gpt-4o'

    settings.update_setting('OPENAI_MODEL', 'gpt-4.1-mini')
    assert settings.get('OPENAI_MODEL') == 'gpt-4.1-mini'


def test_typed_getters(settings, monkeypatch):
    monkeypatch.setenv('DIGEST_HOUR', 'seven')
    monkeypatch.setenv('ASR_ENABLED', 'True')
    monkeypatch.setenv('TRANSCRIPT_LANGUAGES', 'en, en-GB ,,')

    assert settings.get_int('DIGEST_HOUR', 9) == 9
    assert settings.get_bool('ASR_ENABLED')
    assert settings.get_list('TRANSCRIPT_LANGUAGES') == ['en', 'en-GB']


def test_secrets_are_encrypted_and_masked(settings, db):
    ok, _ = settings.update_setting('OPENAI_API_KEY', 'sk-abcdefghijklmnopqrstuvwxyz')
    assert ok

    assert db.get_all_settings()['OPENAI_API_KEY']['encrypted']
    display = settings.get_all_settings()['OPENAI_API_KEY']
    assert display['value'] == ''
    assert display['masked'] == 'sk-abcd***...***wxyz'


def test_validation(settings):
    assert settings.validate_setting('NOT_A_SETTING', 'x') == (False, 'Unknown setting: NOT_A_SETTING')
    assert not settings.validate_setting('OPENAI_API_KEY', 'not-a-key')[0]
    assert not settings.validate_setting('GMAIL_USER', 'not-an-email')[0]
    assert not settings.validate_setting('DIGEST_HOUR', '24')[0]
    assert not settings.validate_setting('APP_URL', 'ftp://example.com')[0]
    assert not settings.validate_setting('ASR_ENABLED', 'maybe')[0]
    assert settings.validate_setting('GMAIL_APP_PASSWORD', 'abcd efgh ijkl mnop') == (True, '')


def test_update_multiple_is_all_or_nothing(settings):
    ok, message, errors = settings.update_multiple_settings({'DIGEST_HOUR': '8', 'SMTP_PORT': 'abc'})

    assert not ok
    assert errors == ['SMTP_PORT must be a valid integer']
    assert settings.get('DIGEST_HOUR') == '9'

    ok, message, errors = settings.update_multiple_settings({'DIGEST_HOUR': '8', 'SMTP_PORT': ''})
    assert ok
    assert message == 'Updated 1 settings successfully'
    assert settings.get_int('DIGEST_HOUR') == 8
