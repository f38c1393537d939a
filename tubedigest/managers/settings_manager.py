#!/usr/bin/env python3
"""
Settings Manager - typed application settings with encrypted secrets
Values resolve from the database first, then the environment (.env), then
schema defaults
"""

import os
import re
import logging
from typing import Any, Dict, Optional, Tuple

from tubedigest.core.constants import (
    DATABASE_FILE, DEFAULT_OPENAI_MODEL, DEFAULT_AI_MAX_TOKENS,
    DEFAULT_DIGEST_HOUR, DEFAULT_TIME_WINDOW_HOURS, SMTP_PORT, MAX_TRANSCRIPT_LENGTH,
)
from tubedigest.managers.database import DigestDatabase
from tubedigest.utils.validators import is_valid_email, is_valid_openai_key


logger = logging.getLogger(__name__)


class SettingsManager:
    """
    Settings schema, validation and lookup

    - Secrets (API keys, passwords, OAuth client secret) are encrypted at rest
    - Every setting may also come from the environment, so a plain .env works
    - Values written through the API always land in the database
    """

    env_schema = {
        'OPENAI_API_KEY': {
            'type': 'secret',
            'description': 'OpenAI API key for summaries, chapters and ASR'
        },
        'YOUTUBE_API_KEY': {
            'type': 'secret',
            'description': 'YouTube Data API key (captions and video discovery)'
        },
        'GOOGLE_CLIENT_SECRET': {
            'type': 'secret',
            'description': 'Google OAuth client secret'
        },
        'SEARCHAPI_KEY': {
            'type': 'secret',
            'description': 'SearchAPI.io key for transcript fallback'
        },
        'SMTP_PASS': {
            'type': 'secret',
            'description': 'SMTP relay password'
        },
        'GMAIL_APP_PASSWORD': {
            'type': 'secret',
            'min_length': 16,
            'max_length': 16,
            'description': 'Gmail app password (16 chars)'
        },
        # OAuth
        'GOOGLE_CLIENT_ID': {
            'type': 'text',
            'description': 'Google OAuth client ID'
        },
        'GOOGLE_REDIRECT_URI': {
            'type': 'url',
            'default': 'http://localhost:8000/auth/google/callback',
            'description': 'OAuth redirect URI registered with Google'
        },
        # Email
        'GMAIL_USER': {
            'type': 'email',
            'description': 'Gmail account used to send digests'
        },
        'SMTP_HOST': {
            'type': 'text',
            'description': 'SMTP relay host (used when Gmail is not configured or fails)'
        },
        'SMTP_PORT': {
            'type': 'integer',
            'default': str(SMTP_PORT),
            'min': 1,
            'max': 65535,
            'description': 'SMTP relay port'
        },
        'SMTP_USER': {
            'type': 'text',
            'description': 'SMTP relay username'
        },
        'SMTP_FROM': {
            'type': 'email',
            'description': 'From address for relay mail'
        },
        # Application
        'APP_URL': {
            'type': 'url',
            'default': 'http://localhost:8000',
            'description': 'Public URL of this service (digest web view links)'
        },
        'FRONTEND_URL': {
            'type': 'url',
            'default': 'http://localhost:3000',
            'description': 'Frontend URL to redirect to after login'
        },
        'OPENAI_MODEL': {
            'type': 'text',
            'default': DEFAULT_OPENAI_MODEL,
            'description': 'OpenAI model used for summaries and chapters'
        },
        'AI_MAX_TOKENS': {
            'type': 'integer',
            'default': str(DEFAULT_AI_MAX_TOKENS),
            'min': 100,
            'max': 16000,
            'description': 'Max completion tokens per AI call'
        },
        'TRANSCRIPT_LANGUAGES': {
            'type': 'text',
            'default': 'en,en-US,en-GB',
            'description': 'Preferred caption languages, comma separated'
        },
        'MAX_TRANSCRIPT_LENGTH': {
            'type': 'integer',
            'default': str(MAX_TRANSCRIPT_LENGTH),
            'min': 1000,
            'max': 1000000,
            'description': 'Transcripts longer than this fail the quality check'
        },
        'ASR_ENABLED': {
            'type': 'enum',
            'default': 'false',
            'options': ['true', 'false'],
            'description': 'Transcribe audio with Whisper when no captions exist'
        },
        'ALLOW_MOCK_DATA': {
            'type': 'enum',
            'default': 'false',
            'options': ['true', 'false'],
            'description': 'Use mock transcripts/summaries when services are unconfigured (dev only)'
        },
        'DIGEST_HOUR': {
            'type': 'integer',
            'default': str(DEFAULT_DIGEST_HOUR),
            'min': 0,
            'max': 23,
            'description': 'Hour of day (UTC) for daily and weekly digests'
        },
        'DEFAULT_TIME_WINDOW_HOURS': {
            'type': 'integer',
            'default': str(DEFAULT_TIME_WINDOW_HOURS),
            'min': 1,
            'max': 720,
            'description': 'How far back to look for new videos on ingest'
        },
        'COOKIE_SECURE': {
            'type': 'enum',
            'default': 'false',
            'options': ['true', 'false'],
            'description': 'Mark the session cookie Secure (enable behind HTTPS)'
        },
        'LOG_LEVEL': {
            'type': 'enum',
            'default': 'INFO',
            'options': ['DEBUG', 'INFO', 'WARNING', 'ERROR'],
            'description': 'Logging verbosity level'
        },
    }

    def __init__(self, db: Optional[DigestDatabase] = None, db_path: str = DATABASE_FILE):
        self.db = db or DigestDatabase(db_path)

    # ========================
    # Lookup
    # ========================

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        """Resolve a setting: database, then environment, then schema default"""
        value = self.db.get_setting(key)
        if value:
            return value

        value = os.getenv(key)
        if value:
            return value

        if default is not None:
            return default
        return self.env_schema.get(key, {}).get('default')

    def get_int(self, key: str, default: int = 0) -> int:
        raw = self.get(key)
        if raw in (None, ''):
            return default
        try:
            return int(raw)
        except (TypeError, ValueError):
            logger.warning(f"Invalid integer for {key}: {raw!r}, using default {default}")
            return default

    def get_bool(self, key: str, default: bool = False) -> bool:
        raw = self.get(key)
        if raw in (None, ''):
            return default
        return str(raw).strip().lower() in ('1', 'true', 'yes', 'on')

    def get_list(self, key: str) -> list:
        raw = self.get(key) or ''
        return [item.strip() for item in raw.split(',') if item.strip()]

    # ========================
    # Display and updates
    # ========================

    def _mask_secret(self, value: str) -> str:
        """OpenAI keys keep their prefix and last 4 chars, anything else becomes dots"""
        if not value:
            return ''

        if value.startswith('sk-'):
            if len(value) > 15:
                return f"{value[:7]}***...***{value[-4:]}"
            return 'sk-***'
        return '•' * min(len(value), 16)

    def get_all_settings(self, mask_secrets: bool = True) -> Dict[str, Any]:
        """Resolved value, type and description of every known setting, keyed by name"""
        settings = {}

        for key, schema in self.env_schema.items():
            value = self.get(key) or ''

            setting_info = {
                'value': value,
                'type': schema['type'],
                'description': schema.get('description', ''),
            }

            if schema['type'] == 'enum':
                setting_info['options'] = schema.get('options', [])
                setting_info['default'] = schema.get('default', '')
            elif schema['type'] == 'integer':
                setting_info['min'] = schema.get('min')
                setting_info['max'] = schema.get('max')
                setting_info['default'] = schema.get('default', '')

            if mask_secrets and schema['type'] == 'secret':
                setting_info['masked'] = self._mask_secret(value)
                setting_info['value'] = ''
            else:
                setting_info['masked'] = value

            settings[key] = setting_info

        return settings

    def validate_setting(self, key: str, value: str) -> Tuple[bool, str]:
        """(ok, error) for one value; an empty value is valid and means "leave unchanged" """
        if key not in self.env_schema:
            return False, f"Unknown setting: {key}"

        schema = self.env_schema[key]

        if not value:
            return True, ''

        if schema['type'] == 'secret':
            if key == 'OPENAI_API_KEY' and not is_valid_openai_key(value):
                return False, f"Invalid format for {key}"

            clean_value = value.replace(' ', '')
            if 'min_length' in schema and len(clean_value) < schema['min_length']:
                return False, f"{key} must be at least {schema['min_length']} characters"
            if 'max_length' in schema and len(clean_value) > schema['max_length']:
                return False, f"{key} must be at most {schema['max_length']} characters"

        elif schema['type'] == 'email':
            if not is_valid_email(value):
                return False, f"Invalid email format for {key}"

        elif schema['type'] == 'url':
            if not re.match(r'^https?://[^\s]+$', value):
                return False, f"{key} must be an http(s) URL"

        elif schema['type'] == 'enum':
            if value not in schema.get('options', []):
                return False, f"{key} must be one of: {', '.join(schema['options'])}"

        elif schema['type'] == 'integer':
            try:
                int_value = int(value)
            except ValueError:
                return False, f"{key} must be a valid integer"
            if 'min' in schema and int_value < schema['min']:
                return False, f"{key} must be at least {schema['min']}"
            if 'max' in schema and int_value > schema['max']:
                return False, f"{key} must be at most {schema['max']}"

        return True, ''

    def update_setting(self, key: str, value: str) -> Tuple[bool, str]:
        """
        Validate and store one setting; secrets are encrypted
        Returns (success, message)
        """
        is_valid, error_msg = self.validate_setting(key, value)
        if not is_valid:
            return False, error_msg

        if not value:
            return True, f"{key} unchanged"

        schema = self.env_schema[key]
        if key == 'GMAIL_APP_PASSWORD':
            value = value.replace(' ', '')

        self.db.set_setting(
            key,
            value,
            setting_type=schema['type'],
            encrypt=schema['type'] == 'secret'
        )
        logger.info(f"Setting updated: {key}")
        return True, f"Updated {key} successfully"

    def update_multiple_settings(self, settings: Dict[str, str]) -> Tuple[bool, str, list]:
        """
        Validate everything first, then write non-empty values
        Returns (success, message, list of errors)
        """
        errors = []
        for key, value in settings.items():
            is_valid, error_msg = self.validate_setting(key, value)
            if not is_valid:
                errors.append(error_msg)

        if errors:
            return False, "Validation failed", errors

        updated = 0
        for key, value in settings.items():
            if value:
                self.update_setting(key, value)
                updated += 1

        if not updated:
            return True, "No settings to update", []
        return True, f"Updated {updated} settings successfully", []
