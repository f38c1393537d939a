#!/usr/bin/env python3
"""
SQLite Database Manager for TubeDigest
Users, OAuth tokens, channel selections, videos and their transcripts,
summaries and chapters, digest runs, schedules, caches and settings
"""

import os
import json
import sqlite3
from typing import Any, Dict, Iterable, List, Optional, Tuple
from datetime import datetime
from contextlib import contextmanager

from tubedigest.core.constants import (
    DATABASE_FILE, STATUS_PENDING, STATUS_PROCESSING, STATUS_SKIPPED,
    STATUS_FAILED_PERMANENT, DIGEST_SENT,
)
from tubedigest.utils.encryption import get_cipher
from tubedigest.utils.formatters import to_iso, utc_now


class DigestDatabase:
    """SQLite storage for the digest pipeline"""

    VIDEO_UPDATE_FIELDS = {
        'title', 'description', 'channel_title', 'published_at', 'duration_seconds',
        'processing_status', 'skip_reason', 'error_message', 'retry_count',
    }
    RUN_UPDATE_FIELDS = {
        'status', 'since', 'sent_at', 'message_id', 'web_view_url',
        'item_count', 'error_message',
    }
    SCHEDULE_UPDATE_FIELDS = {'next_run', 'last_run', 'enabled', 'custom_days', 'start_date'}

    def __init__(self, db_path=DATABASE_FILE):
        self.db_path = db_path

        # Ensure data directory exists
        os.makedirs(os.path.dirname(db_path) or '.', exist_ok=True)

        self._init_db()

    @contextmanager
    def _get_connection(self):
        """Context manager for database connections"""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self):
        """Initialize database schema"""
        with self._get_connection() as conn:
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    email TEXT NOT NULL UNIQUE,
                    name TEXT,
                    picture TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS oauth_tokens (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    provider TEXT NOT NULL DEFAULT 'google',
                    access_token TEXT NOT NULL,
                    refresh_token TEXT,
                    expires_at TEXT,
                    scope TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    UNIQUE(user_id, provider)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS channel_subscriptions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    channel_id TEXT NOT NULL,
                    title TEXT,
                    selected BOOLEAN DEFAULT 1,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    UNIQUE(user_id, channel_id)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS videos (
                    id TEXT PRIMARY KEY,
                    channel_id TEXT NOT NULL,
                    channel_title TEXT,
                    title TEXT NOT NULL,
                    description TEXT,
                    published_at TEXT,
                    duration_seconds INTEGER,
                    processing_status TEXT DEFAULT 'pending',
                    skip_reason TEXT,
                    error_message TEXT,
                    retry_count INTEGER DEFAULT 0,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS transcripts (
                    video_id TEXT PRIMARY KEY REFERENCES videos(id) ON DELETE CASCADE,
                    source TEXT NOT NULL,
                    has_captions BOOLEAN DEFAULT 1,
                    text TEXT,
                    language TEXT,
                    format TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS summaries (
                    video_id TEXT PRIMARY KEY REFERENCES videos(id) ON DELETE CASCADE,
                    summary TEXT NOT NULL,
                    model TEXT,
                    tokens_used INTEGER DEFAULT 0,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS chapters (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    video_id TEXT NOT NULL REFERENCES videos(id) ON DELETE CASCADE,
                    start_s INTEGER NOT NULL,
                    end_s INTEGER NOT NULL,
                    title TEXT NOT NULL,
                    UNIQUE(video_id, start_s)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS digest_runs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    status TEXT NOT NULL,
                    since TEXT,
                    sent_at TEXT,
                    message_id TEXT,
                    web_view_url TEXT,
                    item_count INTEGER DEFAULT 0,
                    error_message TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS digest_items (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    digest_run_id INTEGER NOT NULL REFERENCES digest_runs(id) ON DELETE CASCADE,
                    video_id TEXT NOT NULL REFERENCES videos(id),
                    position INTEGER NOT NULL,
                    UNIQUE(digest_run_id, video_id)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS digest_schedules (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    cadence TEXT NOT NULL,
                    start_date TEXT,
                    custom_days INTEGER,
                    next_run TEXT,
                    last_run TEXT,
                    enabled BOOLEAN DEFAULT 1,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS transcript_cache (
                    video_id TEXT PRIMARY KEY,
                    status TEXT NOT NULL,
                    reason TEXT,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS search_cache (
                    video_id TEXT PRIMARY KEY,
                    query TEXT,
                    title TEXT,
                    data TEXT NOT NULL,
                    is_active BOOLEAN DEFAULT 1,
                    expires_at TEXT NOT NULL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS settings (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    type TEXT NOT NULL DEFAULT 'text',
                    encrypted BOOLEAN DEFAULT 0,
                    description TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            cursor.execute("CREATE INDEX IF NOT EXISTS idx_videos_channel ON videos(channel_id)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_videos_published ON videos(published_at DESC)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_videos_status ON videos(processing_status)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_runs_user ON digest_runs(user_id, status)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_schedules_user ON digest_schedules(user_id)")

        self._migrate_add_video_skip_reason()

    def _migrate_add_video_skip_reason(self):
        """
        Migration: add skip_reason / retry_count to databases created before
        skip tracking existed
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("PRAGMA table_info(videos)")
            columns = [row[1] for row in cursor.fetchall()]

            if 'skip_reason' not in columns:
                cursor.execute("ALTER TABLE videos ADD COLUMN skip_reason TEXT")
            if 'retry_count' not in columns:
                cursor.execute("ALTER TABLE videos ADD COLUMN retry_count INTEGER DEFAULT 0")

    @staticmethod
    def _row_to_dict(row: Optional[sqlite3.Row]) -> Optional[Dict[str, Any]]:
        return dict(row) if row is not None else None

    # ========================
    # Users
    # ========================

    def upsert_user(self, email: str, name: Optional[str] = None, picture: Optional[str] = None) -> Dict:
        """Create the user or refresh profile fields; returns the user row"""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                INSERT INTO users (email, name, picture)
                VALUES (?, ?, ?)
                ON CONFLICT(email) DO UPDATE SET
                    name = COALESCE(excluded.name, users.name),
                    picture = COALESCE(excluded.picture, users.picture),
                    updated_at = CURRENT_TIMESTAMP
            """, (email, name, picture))
            cursor.execute("SELECT * FROM users WHERE email = ?", (email,))
            return dict(cursor.fetchone())

    def get_user_by_email(self, email: str) -> Optional[Dict]:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM users WHERE email = ?", (email,))
            return self._row_to_dict(cursor.fetchone())

    def get_user(self, user_id: int) -> Optional[Dict]:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM users WHERE id = ?", (user_id,))
            return self._row_to_dict(cursor.fetchone())

    def get_users_with_channels(self) -> List[Dict]:
        """Users that have at least one selected channel"""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                SELECT DISTINCT u.*
                FROM users u
                JOIN channel_subscriptions c ON c.user_id = u.id
                WHERE c.selected = 1
                ORDER BY u.id
            """)
            return [dict(row) for row in cursor.fetchall()]

    # ========================
    # OAuth tokens
    # ========================

    def save_oauth_tokens(
        self,
        user_id: int,
        access_token: str,
        refresh_token: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        scope: Optional[str] = None,
        provider: str = 'google'
    ):
        """
        Persist tokens encrypted at rest.
        A missing refresh token keeps the previously stored one.
        """
        cipher = get_cipher()
        encrypted_refresh = cipher.encrypt(refresh_token) if refresh_token else None

        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                INSERT INTO oauth_tokens (user_id, provider, access_token, refresh_token, expires_at, scope)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id, provider) DO UPDATE SET
                    access_token = excluded.access_token,
                    refresh_token = COALESCE(excluded.refresh_token, oauth_tokens.refresh_token),
                    expires_at = excluded.expires_at,
                    scope = COALESCE(excluded.scope, oauth_tokens.scope),
                    updated_at = CURRENT_TIMESTAMP
            """, (user_id, provider, cipher.encrypt(access_token), encrypted_refresh,
                  to_iso(expires_at), scope))

    def get_oauth_tokens(self, user_id: int, provider: str = 'google') -> Optional[Dict]:
        """Decrypted tokens, or None"""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT * FROM oauth_tokens WHERE user_id = ? AND provider = ?",
                (user_id, provider)
            )
            row = cursor.fetchone()

        if not row:
            return None

        cipher = get_cipher()
        tokens = dict(row)
        tokens['access_token'] = cipher.decrypt(row['access_token'])
        tokens['refresh_token'] = cipher.decrypt(row['refresh_token']) if row['refresh_token'] else None
        return tokens

    def list_oauth_tokens(self, user_id: int) -> List[Dict]:
        """Token metadata only; secrets are never returned"""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                SELECT provider, expires_at, scope, created_at, updated_at,
                       refresh_token IS NOT NULL AS has_refresh_token
                FROM oauth_tokens
                WHERE user_id = ?
                ORDER BY provider
            """, (user_id,))
            return [dict(row) for row in cursor.fetchall()]

    def delete_oauth_tokens(self, user_id: int, provider: str = 'google') -> bool:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "DELETE FROM oauth_tokens WHERE user_id = ? AND provider = ?",
                (user_id, provider)
            )
            return cursor.rowcount > 0

    # ========================
    # Channel selections
    # ========================

    def get_user_channels(self, user_id: int, selected_only: bool = True) -> List[Dict]:
        query = "SELECT channel_id, title, selected FROM channel_subscriptions WHERE user_id = ?"
        if selected_only:
            query += " AND selected = 1"
        query += " ORDER BY id"

        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(query, (user_id,))
            return [
                {'channel_id': row['channel_id'], 'title': row['title'], 'selected': bool(row['selected'])}
                for row in cursor.fetchall()
            ]

    def replace_user_channels(self, user_id: int, channels: List[Tuple[str, Optional[str]]]):
        """Replace the user's whole selection with (channel_id, title) pairs"""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("DELETE FROM channel_subscriptions WHERE user_id = ?", (user_id,))
            cursor.executemany("""
                INSERT INTO channel_subscriptions (user_id, channel_id, title, selected)
                VALUES (?, ?, ?, 1)
            """, [(user_id, channel_id, title) for channel_id, title in channels])

    def set_channel_selected(self, user_id: int, channel_id: str, selected: bool, title: Optional[str] = None):
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                INSERT INTO channel_subscriptions (user_id, channel_id, title, selected)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(user_id, channel_id) DO UPDATE SET
                    selected = excluded.selected,
                    title = COALESCE(excluded.title, channel_subscriptions.title)
            """, (user_id, channel_id, title, int(selected)))

    def count_selected_channels(self, user_id: int) -> int:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT COUNT(*) FROM channel_subscriptions WHERE user_id = ? AND selected = 1",
                (user_id,)
            )
            return cursor.fetchone()[0]

    # ========================
    # Videos
    # ========================

    def video_exists(self, video_id: str) -> bool:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT 1 FROM videos WHERE id = ?", (video_id,))
            return cursor.fetchone() is not None

    def add_video(
        self,
        video_id: str,
        channel_id: str,
        title: str,
        channel_title: Optional[str] = None,
        description: Optional[str] = None,
        published_at: Optional[str] = None,
        duration_seconds: Optional[int] = None,
        processing_status: str = STATUS_PENDING
    ) -> bool:
        """
        Insert a video row

        Returns:
            True if inserted, False if the video already existed
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                INSERT OR IGNORE INTO videos
                (id, channel_id, channel_title, title, description, published_at,
                 duration_seconds, processing_status)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (video_id, channel_id, channel_title, title, description, published_at,
                  duration_seconds, processing_status))
            return cursor.rowcount > 0

    def get_video(self, video_id: str) -> Optional[Dict]:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM videos WHERE id = ?", (video_id,))
            return self._row_to_dict(cursor.fetchone())

    def update_video(self, video_id: str, increment_retry: bool = False, **fields):
        """
        Update video columns; only whitelisted columns are accepted.
        Used during processing to record status, skip reasons and errors.
        """
        unknown = set(fields) - self.VIDEO_UPDATE_FIELDS
        if unknown:
            raise ValueError(f"Unknown video fields: {', '.join(sorted(unknown))}")

        updates = [f"{column} = ?" for column in fields]
        params: List[Any] = list(fields.values())
        if increment_retry:
            updates.append("retry_count = retry_count + 1")
        updates.append("updated_at = CURRENT_TIMESTAMP")
        params.append(video_id)

        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(f"""
                UPDATE videos
                SET {', '.join(updates)}
                WHERE id = ?
            """, params)

    def get_videos_without_summary(self, limit: int = 10, max_retries: int = 3) -> List[Dict]:
        """Retry candidates: not summarized, not skipped, still under the retry limit"""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                SELECT v.*
                FROM videos v
                LEFT JOIN summaries s ON s.video_id = v.id
                WHERE s.video_id IS NULL
                  AND v.processing_status NOT IN (?, ?)
                  AND v.retry_count < ?
                ORDER BY v.published_at DESC
                LIMIT ?
            """, (STATUS_SKIPPED, STATUS_FAILED_PERMANENT, max_retries, limit))
            return [dict(row) for row in cursor.fetchall()]

    def get_stuck_videos(self, older_than_minutes: int = 10) -> List[Dict]:
        """Videos left in 'processing' longer than the threshold"""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                SELECT * FROM videos
                WHERE processing_status = ?
                  AND updated_at < datetime('now', ?)
            """, (STATUS_PROCESSING, f'-{int(older_than_minutes)} minutes'))
            return [dict(row) for row in cursor.fetchall()]

    def get_summarized_videos(
        self,
        channel_ids: Iterable[str],
        since: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[Dict]:
        """
        Summarized videos of the given channels, newest first, each with
        its summary and chapters attached
        """
        channel_ids = list(channel_ids)
        if not channel_ids:
            return []

        placeholders = ', '.join('?' for _ in channel_ids)
        query = f"""
            SELECT v.*, s.summary, s.model
            FROM videos v
            JOIN summaries s ON s.video_id = v.id
            WHERE v.channel_id IN ({placeholders})
        """
        params: List[Any] = list(channel_ids)
        if since:
            query += " AND v.published_at > ?"
            params.append(since)
        query += " ORDER BY v.published_at DESC"
        if limit:
            query += " LIMIT ?"
            params.append(limit)

        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(query, params)
            videos = [dict(row) for row in cursor.fetchall()]

        return self._attach_chapters(videos)

    def _attach_chapters(self, videos: List[Dict]) -> List[Dict]:
        if not videos:
            return videos

        ids = [video['id'] for video in videos]
        placeholders = ', '.join('?' for _ in ids)
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(f"""
                SELECT video_id, start_s, end_s, title
                FROM chapters
                WHERE video_id IN ({placeholders})
                ORDER BY video_id, start_s
            """, ids)
            by_video: Dict[str, List[Dict]] = {}
            for row in cursor.fetchall():
                by_video.setdefault(row['video_id'], []).append(
                    {'start_s': row['start_s'], 'end_s': row['end_s'], 'title': row['title']}
                )

        for video in videos:
            video['chapters'] = by_video.get(video['id'], [])
        return videos

    def get_processing_counts(self) -> Dict[str, int]:
        """Video counts by processing status plus totals"""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                SELECT processing_status, COUNT(*) AS count
                FROM videos
                GROUP BY processing_status
            """)
            counts = {row['processing_status']: row['count'] for row in cursor.fetchall()}

            cursor.execute("SELECT COUNT(*) FROM videos")
            counts['total'] = cursor.fetchone()[0]
            cursor.execute("SELECT COUNT(*) FROM transcripts")
            counts['with_transcripts'] = cursor.fetchone()[0]
            cursor.execute("SELECT COUNT(*) FROM summaries")
            counts['with_summaries'] = cursor.fetchone()[0]
            return counts

    # ========================
    # Transcripts
    # ========================

    def get_transcript(self, video_id: str) -> Optional[Dict]:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM transcripts WHERE video_id = ?", (video_id,))
            return self._row_to_dict(cursor.fetchone())

    def get_transcripts_by_video_ids(self, video_ids: Iterable[str]) -> List[Dict]:
        video_ids = list(video_ids)
        if not video_ids:
            return []
        placeholders = ', '.join('?' for _ in video_ids)
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"SELECT * FROM transcripts WHERE video_id IN ({placeholders})",
                video_ids
            )
            return [dict(row) for row in cursor.fetchall()]

    def upsert_transcript(
        self,
        video_id: str,
        source: str,
        text: str,
        language: Optional[str] = None,
        caption_format: Optional[str] = None,
        has_captions: bool = True
    ):
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                INSERT INTO transcripts (video_id, source, has_captions, text, language, format)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(video_id) DO UPDATE SET
                    source = excluded.source,
                    has_captions = excluded.has_captions,
                    text = excluded.text,
                    language = excluded.language,
                    format = excluded.format
            """, (video_id, source, int(has_captions), text, language, caption_format))

    def get_transcript_source_counts(self) -> Dict[str, int]:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT source, COUNT(*) AS count FROM transcripts GROUP BY source")
            return {row['source']: row['count'] for row in cursor.fetchall()}

    # ========================
    # Summaries and chapters
    # ========================

    def upsert_summary(self, video_id: str, summary: str, model: Optional[str] = None, tokens_used: int = 0):
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                INSERT INTO summaries (video_id, summary, model, tokens_used)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(video_id) DO UPDATE SET
                    summary = excluded.summary,
                    model = excluded.model,
                    tokens_used = excluded.tokens_used,
                    updated_at = CURRENT_TIMESTAMP
            """, (video_id, summary, model, tokens_used))

    def get_summary(self, video_id: str) -> Optional[Dict]:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM summaries WHERE video_id = ?", (video_id,))
            return self._row_to_dict(cursor.fetchone())

    def replace_chapters(self, video_id: str, chapters: List[Dict]):
        """
        Upsert chapters keyed on (video_id, start_s) and drop chapters
        of this video that are no longer present
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            starts = []
            for chapter in chapters:
                start_s = int(chapter['start_s'])
                starts.append(start_s)
                cursor.execute("""
                    INSERT INTO chapters (video_id, start_s, end_s, title)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(video_id, start_s) DO UPDATE SET
                        end_s = excluded.end_s,
                        title = excluded.title
                """, (video_id, start_s, int(chapter['end_s']), chapter['title']))

            if starts:
                placeholders = ', '.join('?' for _ in starts)
                cursor.execute(
                    f"DELETE FROM chapters WHERE video_id = ? AND start_s NOT IN ({placeholders})",
                    [video_id] + starts
                )
            else:
                cursor.execute("DELETE FROM chapters WHERE video_id = ?", (video_id,))

    def get_chapters(self, video_id: str) -> List[Dict]:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                SELECT start_s, end_s, title FROM chapters
                WHERE video_id = ?
                ORDER BY start_s
            """, (video_id,))
            return [dict(row) for row in cursor.fetchall()]

    # ========================
    # Digest runs and items
    # ========================

    def create_digest_run(self, user_id: int, status: str) -> int:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "INSERT INTO digest_runs (user_id, status) VALUES (?, ?)",
                (user_id, status)
            )
            return cursor.lastrowid

    def update_digest_run(self, run_id: int, **fields):
        unknown = set(fields) - self.RUN_UPDATE_FIELDS
        if unknown:
            raise ValueError(f"Unknown digest run fields: {', '.join(sorted(unknown))}")
        if not fields:
            return

        updates = [f"{column} = ?" for column in fields] + ["updated_at = CURRENT_TIMESTAMP"]
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"UPDATE digest_runs SET {', '.join(updates)} WHERE id = ?",
                list(fields.values()) + [run_id]
            )

    def get_digest_run(self, run_id: int) -> Optional[Dict]:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM digest_runs WHERE id = ?", (run_id,))
            return self._row_to_dict(cursor.fetchone())

    def get_last_sent_run(self, user_id: int) -> Optional[Dict]:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                SELECT * FROM digest_runs
                WHERE user_id = ? AND status = ? AND sent_at IS NOT NULL
                ORDER BY sent_at DESC, id DESC
                LIMIT 1
            """, (user_id, DIGEST_SENT))
            return self._row_to_dict(cursor.fetchone())

    def get_latest_run(self, user_id: int) -> Optional[Dict]:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                SELECT * FROM digest_runs
                WHERE user_id = ?
                ORDER BY id DESC
                LIMIT 1
            """, (user_id,))
            return self._row_to_dict(cursor.fetchone())

    def add_digest_items(self, run_id: int, video_ids: List[str]):
        """Positions are 1-based in digest order"""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.executemany("""
                INSERT OR IGNORE INTO digest_items (digest_run_id, video_id, position)
                VALUES (?, ?, ?)
            """, [(run_id, video_id, position) for position, video_id in enumerate(video_ids, 1)])

    def get_digest_items(self, run_id: int) -> List[Dict]:
        """Videos of a digest run in position order, with summary and chapters"""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                SELECT v.*, i.position, s.summary
                FROM digest_items i
                JOIN videos v ON v.id = i.video_id
                LEFT JOIN summaries s ON s.video_id = v.id
                WHERE i.digest_run_id = ?
                ORDER BY i.position
            """, (run_id,))
            videos = [dict(row) for row in cursor.fetchall()]
        return self._attach_chapters(videos)

    # ========================
    # Digest schedules
    # ========================

    def create_schedule(
        self,
        user_id: int,
        cadence: str,
        next_run: Optional[str],
        start_date: Optional[str] = None,
        custom_days: Optional[int] = None
    ) -> int:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                INSERT INTO digest_schedules (user_id, cadence, start_date, custom_days, next_run, enabled)
                VALUES (?, ?, ?, ?, ?, 1)
            """, (user_id, cadence, start_date, custom_days, next_run))
            return cursor.lastrowid

    def get_schedule(self, schedule_id: int) -> Optional[Dict]:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM digest_schedules WHERE id = ?", (schedule_id,))
            return self._row_to_dict(cursor.fetchone())

    def get_schedules(self, user_id: Optional[int] = None, enabled_only: bool = True) -> List[Dict]:
        query = "SELECT * FROM digest_schedules WHERE 1 = 1"
        params: List[Any] = []
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)
        if enabled_only:
            query += " AND enabled = 1"
        query += " ORDER BY id DESC"

        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(query, params)
            return [dict(row) for row in cursor.fetchall()]

    def update_schedule(self, schedule_id: int, **fields):
        unknown = set(fields) - self.SCHEDULE_UPDATE_FIELDS
        if unknown:
            raise ValueError(f"Unknown schedule fields: {', '.join(sorted(unknown))}")
        if not fields:
            return

        updates = [f"{column} = ?" for column in fields] + ["updated_at = CURRENT_TIMESTAMP"]
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"UPDATE digest_schedules SET {', '.join(updates)} WHERE id = ?",
                list(fields.values()) + [schedule_id]
            )

    # ========================
    # Transcript availability cache
    # ========================

    def get_transcript_cache(self, video_id: str) -> Optional[Dict]:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM transcript_cache WHERE video_id = ?", (video_id,))
            return self._row_to_dict(cursor.fetchone())

    def set_transcript_cache(self, video_id: str, status: str, reason: Optional[str] = None):
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                INSERT INTO transcript_cache (video_id, status, reason, updated_at)
                VALUES (?, ?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(video_id) DO UPDATE SET
                    status = excluded.status,
                    reason = excluded.reason,
                    updated_at = CURRENT_TIMESTAMP
            """, (video_id, status, reason))

    def clear_transcript_cache(self, video_id: str):
        with self._get_connection() as conn:
            conn.execute("DELETE FROM transcript_cache WHERE video_id = ?", (video_id,))

    # ========================
    # SearchAPI result cache
    # ========================

    def get_search_cache(self, video_id: str) -> Optional[Dict]:
        """Active, unexpired cached video data"""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                SELECT data FROM search_cache
                WHERE video_id = ? AND is_active = 1 AND expires_at > ?
            """, (video_id, to_iso(utc_now())))
            row = cursor.fetchone()
        return json.loads(row['data']) if row else None

    def set_search_cache(self, video_id: str, data: Dict, expires_at: datetime, query: Optional[str] = None):
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                INSERT INTO search_cache (video_id, query, title, data, is_active, expires_at)
                VALUES (?, ?, ?, ?, 1, ?)
                ON CONFLICT(video_id) DO UPDATE SET
                    query = COALESCE(excluded.query, search_cache.query),
                    title = excluded.title,
                    data = excluded.data,
                    is_active = 1,
                    expires_at = excluded.expires_at,
                    created_at = CURRENT_TIMESTAMP
            """, (video_id, query, data.get('title'), json.dumps(data), to_iso(expires_at)))

    def search_cache_entries(self, query: str, limit: int = 10) -> List[Dict]:
        """Cached videos whose title or originating query matches"""
        pattern = f"%{query}%"
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                SELECT data FROM search_cache
                WHERE is_active = 1 AND expires_at > ?
                  AND (title LIKE ? OR query LIKE ?)
                ORDER BY created_at DESC
                LIMIT ?
            """, (to_iso(utc_now()), pattern, pattern, limit))
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete_expired_search_cache(self) -> int:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "DELETE FROM search_cache WHERE expires_at <= ? OR is_active = 0",
                (to_iso(utc_now()),)
            )
            return cursor.rowcount

    def deactivate_search_cache(self, video_id: str) -> bool:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("UPDATE search_cache SET is_active = 0 WHERE video_id = ?", (video_id,))
            return cursor.rowcount > 0

    def get_search_cache_counts(self) -> Dict[str, int]:
        now = to_iso(utc_now())
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                SELECT
                    COUNT(*) AS total,
                    SUM(CASE WHEN is_active = 1 AND expires_at > ? THEN 1 ELSE 0 END) AS active,
                    SUM(CASE WHEN expires_at <= ? THEN 1 ELSE 0 END) AS expired
                FROM search_cache
            """, (now, now))
            row = cursor.fetchone()
            return {
                'total': row['total'] or 0,
                'active': row['active'] or 0,
                'expired': row['expired'] or 0,
            }

    # ========================
    # Settings Management
    # ========================

    def get_setting(self, key: str) -> Optional[str]:
        """Setting value, decrypted if stored encrypted; None if unset"""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT value, encrypted FROM settings WHERE key = ?", (key,))
            row = cursor.fetchone()

        if not row:
            return None
        if row['encrypted']:
            return get_cipher().decrypt(row['value'])
        return row['value']

    def get_all_settings(self) -> Dict[str, Dict[str, Any]]:
        """All stored settings (decrypted) keyed by name"""
        cipher = get_cipher()
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT key, value, type, encrypted, description FROM settings ORDER BY key")
            settings = {}
            for row in cursor.fetchall():
                value = cipher.decrypt(row['value']) if row['encrypted'] else row['value']
                settings[row['key']] = {
                    'value': value,
                    'type': row['type'],
                    'description': row['description'] or '',
                    'encrypted': bool(row['encrypted']),
                }
            return settings

    def set_setting(self, key: str, value: str, setting_type: str = 'text', encrypt: bool = False):
        stored = get_cipher().encrypt(value) if encrypt else value
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                INSERT INTO settings (key, value, type, encrypted, updated_at)
                VALUES (?, ?, ?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    type = excluded.type,
                    encrypted = excluded.encrypted,
                    updated_at = CURRENT_TIMESTAMP
            """, (key, stored, setting_type, int(encrypt)))

    def delete_setting(self, key: str) -> bool:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("DELETE FROM settings WHERE key = ?", (key,))
            return cursor.rowcount > 0
