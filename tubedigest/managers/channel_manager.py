#!/usr/bin/env python3
"""
Channel Selection
A user's YouTube subscriptions and the (at most ten) channels they follow
in their digest
"""

import logging
from typing import Dict, List, Optional

from tubedigest.core.constants import MAX_CHANNELS
from tubedigest.core.youtube import YouTubeClient


logger = logging.getLogger(__name__)

MOCK_CHANNELS = [
    {
        'channelId': 'UC2WmuBuFq6gL08QYG-JjXKw',
        'title': 'Fireship',
        'thumbnail': 'https://yt3.ggpht.com/ytc/AOPolaQKGjLiMnOChTcXGoElw4yQp5I8t8fR1MpVgZbDaQ=s88-c-k-c0x00ffffff-no-rj',
    },
    {
        'channelId': 'UCLKPca3kwwd-B59HNr-_lvA',
        'title': 'TechCrunch',
        'thumbnail': 'https://yt3.ggpht.com/ytc/AOPolaRMDUWp7Dg1qf8X8P0_B4myfGIGhP8LhE6XKQMDOw=s88-c-k-c0x00ffffff-no-rj',
    },
]


class ChannelLimitError(ValueError):
    """More than MAX_CHANNELS channels selected"""

    def __init__(self, message: str = 'limit_exceeded'):
        super().__init__(message)


class ChannelManager:
    """Subscriptions and channel selections per user"""

    def __init__(self, db, auth, allow_mock: bool = False):
        """
        Args:
            db: DigestDatabase
            auth: AuthManager, source of user credentials
            allow_mock: Return sample channels to users without a Google token
        """
        self.db = db
        self.auth = auth
        self.allow_mock = allow_mock

    def list_channels(self, email: str) -> List[Dict]:
        """
        The user's YouTube subscriptions

        Raises:
            YouTubeAPIError: upstream failure
        """
        credentials = self.auth.get_credentials(email)
        if credentials is None:
            if self.allow_mock:
                logger.info(f"No OAuth token for {email}, returning mock channels")
                return [dict(channel) for channel in MOCK_CHANNELS]
            logger.info(f"No OAuth token for {email}, no channels to list")
            return []

        return YouTubeClient(credentials=credentials).list_subscriptions()

    def get_selected_channels(self, email: str) -> List[Dict]:
        user = self.db.get_user_by_email(email)
        if not user:
            return []
        return [
            {'channelId': channel['channel_id'], 'title': channel['title']}
            for channel in self.db.get_user_channels(user['id'])
        ]

    def select_channels(self, email: str, channel_ids: List[str], titles: Optional[Dict[str, str]] = None) -> Dict:
        """
        Replace the user's selection

        Raises:
            ChannelLimitError: more than MAX_CHANNELS ids given
        """
        if len(channel_ids) > MAX_CHANNELS:
            raise ChannelLimitError()

        titles = titles or {}
        valid_ids = []
        for channel_id in channel_ids:
            channel_id = (channel_id or '').strip()
            if channel_id and channel_id not in valid_ids:
                valid_ids.append(channel_id)

        if not valid_ids:
            logger.info(f"No valid channel IDs from {email}, selection unchanged")
            return {'ok': True, 'count': 0}

        user = self.db.upsert_user(email)
        self.db.replace_user_channels(
            user['id'],
            [(channel_id, titles.get(channel_id) or channel_id) for channel_id in valid_ids]
        )
        logger.info(f"{email} selected {len(valid_ids)} channels")
        return {'ok': True, 'count': len(valid_ids)}

    def update_channel_selection(self, email: str, channel_id: str, selected: bool, title: Optional[str] = None) -> Dict:
        """
        Select or deselect one channel

        Raises:
            ChannelLimitError: selecting would exceed MAX_CHANNELS
        """
        user = self.db.upsert_user(email)
        current = {channel['channel_id'] for channel in self.db.get_user_channels(user['id'])}

        if selected and channel_id not in current and len(current) >= MAX_CHANNELS:
            raise ChannelLimitError()

        self.db.set_channel_selected(user['id'], channel_id, selected, title)
        return {'ok': True, 'channelId': channel_id, 'selected': selected}
