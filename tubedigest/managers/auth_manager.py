#!/usr/bin/env python3
"""
Google Sign-In
OAuth web flow, profile lookup and encrypted token storage with refresh
"""

import os
import logging
from typing import Dict, List, Optional

import requests
import google.auth.exceptions
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow

from tubedigest.core.constants import GOOGLE_USERINFO_URL, OAUTH_SCOPES
from tubedigest.utils.formatters import from_iso


logger = logging.getLogger(__name__)

GOOGLE_AUTH_URI = 'https://accounts.google.com/o/oauth2/auth'
GOOGLE_TOKEN_URI = 'https://oauth2.googleapis.com/token'

# Google answers with the full scope URLs for openid/email/profile
os.environ.setdefault('OAUTHLIB_RELAX_TOKEN_SCOPE', '1')


class AuthError(RuntimeError):
    """OAuth exchange or token handling failed"""


class AuthManager:
    """Google OAuth for TubeDigest users"""

    def __init__(self, settings, db):
        """
        Args:
            settings: SettingsManager with GOOGLE_* values
            db: DigestDatabase
        """
        self.settings = settings
        self.db = db

    @property
    def client_id(self) -> Optional[str]:
        return self.settings.get('GOOGLE_CLIENT_ID')

    @property
    def client_secret(self) -> Optional[str]:
        return self.settings.get('GOOGLE_CLIENT_SECRET')

    @property
    def redirect_uri(self) -> str:
        return self.settings.get('GOOGLE_REDIRECT_URI')

    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def _flow(self, state: Optional[str] = None) -> Flow:
        if not self.is_configured():
            raise AuthError("Google OAuth is not configured (GOOGLE_CLIENT_ID / GOOGLE_CLIENT_SECRET)")

        client_config = {
            'web': {
                'client_id': self.client_id,
                'client_secret': self.client_secret,
                'auth_uri': GOOGLE_AUTH_URI,
                'token_uri': GOOGLE_TOKEN_URI,
                'redirect_uris': [self.redirect_uri],
            }
        }
        # Authorization and exchange happen in different requests, so no PKCE verifier
        return Flow.from_client_config(
            client_config,
            scopes=OAUTH_SCOPES,
            redirect_uri=self.redirect_uri,
            state=state,
            autogenerate_code_verifier=False,
        )

    def get_authorization_url(self, state: Optional[str] = None) -> str:
        """Consent URL requesting offline access"""
        url, _ = self._flow(state).authorization_url(
            access_type='offline',
            prompt='consent',
            include_granted_scopes='true',
        )
        return url

    def exchange_code(self, code: str) -> Credentials:
        """Trade an authorization code for credentials"""
        flow = self._flow()
        try:
            flow.fetch_token(code=code)
        except Exception as e:
            logger.error(f"OAuth code exchange failed: {e}")
            raise AuthError(f"OAuth code exchange failed: {e}") from e
        return flow.credentials

    def get_user_info(self, access_token: str) -> Dict:
        """Profile of the token's owner from the userinfo endpoint"""
        try:
            response = requests.get(
                GOOGLE_USERINFO_URL,
                headers={'Authorization': f'Bearer {access_token}'},
                timeout=10,
            )
            response.raise_for_status()
            info = response.json()
        except (requests.RequestException, ValueError) as e:
            raise AuthError(f"Failed to load Google profile: {e}") from e

        if not info.get('email'):
            raise AuthError("Google profile has no email address")
        return info

    def complete_login(self, code: str) -> Dict:
        """
        Finish the OAuth callback: exchange the code, load the profile,
        create or update the user and store the tokens

        Returns:
            The user row
        """
        credentials = self.exchange_code(code)
        info = self.get_user_info(credentials.token)
        user = self.db.upsert_user(info['email'], info.get('name'), info.get('picture'))
        self.persist_tokens(user['email'], credentials)
        logger.info(f"User signed in: {user['email']}")
        return user

    def persist_tokens(self, email: str, credentials: Credentials):
        user = self.db.get_user_by_email(email)
        if not user:
            raise AuthError(f"Unknown user: {email}")

        scopes = credentials.scopes or OAUTH_SCOPES
        self.db.save_oauth_tokens(
            user['id'],
            access_token=credentials.token,
            refresh_token=credentials.refresh_token,
            expires_at=credentials.expiry,
            scope=' '.join(scopes),
        )

    def get_credentials(self, email: str) -> Optional[Credentials]:
        """
        Stored credentials of a user, refreshed (and re-stored) when expired

        Returns:
            Credentials, or None when the user has no usable token
        """
        user = self.db.get_user_by_email(email)
        if not user:
            return None

        tokens = self.db.get_oauth_tokens(user['id'])
        if not tokens or not tokens.get('access_token'):
            return None

        expiry = from_iso(tokens['expires_at']) if tokens.get('expires_at') else None
        credentials = Credentials(
            token=tokens['access_token'],
            refresh_token=tokens.get('refresh_token'),
            token_uri=GOOGLE_TOKEN_URI,
            client_id=self.client_id,
            client_secret=self.client_secret,
            scopes=(tokens.get('scope') or '').split() or OAUTH_SCOPES,
        )
        # google-auth compares expiry as naive UTC
        credentials.expiry = expiry.replace(tzinfo=None) if expiry else None

        if credentials.expired:
            if not credentials.refresh_token:
                logger.warning(f"Access token expired for {email} and no refresh token stored")
                return None
            try:
                credentials.refresh(Request())
            except google.auth.exceptions.RefreshError as e:
                logger.warning(f"Token refresh failed for {email}: {e}")
                return None
            self.persist_tokens(email, credentials)
            logger.info(f"Refreshed access token for {email}")

        return credentials

    def list_tokens(self, email: str) -> List[Dict]:
        user = self.db.get_user_by_email(email)
        if not user:
            return []
        return self.db.list_oauth_tokens(user['id'])

    def revoke_tokens(self, email: str, provider: str = 'google') -> bool:
        user = self.db.get_user_by_email(email)
        if not user:
            return False
        removed = self.db.delete_oauth_tokens(user['id'], provider)
        if removed:
            logger.info(f"Removed {provider} tokens for {email}")
        return removed
