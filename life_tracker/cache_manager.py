import json
import logging
import sqlite3
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from . import config
from .database_manager import get_db_connection
from .llm_manager import generate_cache_key


class ResponseCache:
    """LLM responses cached in ai_response_cache. Cache failures never break a caller."""

    def __init__(self, default_ttl: int = config.DEFAULT_CACHE_TTL):
        self.default_ttl = default_ttl

    @staticmethod
    def get_ttl(function_name: str) -> int:
        return config.CACHE_TTL_SECONDS.get(function_name, config.DEFAULT_CACHE_TTL)

    def get(self, function_name: str, params: Any, user_id: Optional[str] = None) -> Optional[Any]:
        cache_key = generate_cache_key(function_name, params, user_id)
        try:
            conn = get_db_connection()
        except sqlite3.Error:
            return None

        try:
            row = conn.execute(
                "SELECT response, expires_at FROM ai_response_cache WHERE cache_key = ?",
                (cache_key,)
            ).fetchone()
            if not row:
                return None

            if datetime.fromisoformat(row['expires_at']) < datetime.now(timezone.utc):
                conn.execute("DELETE FROM ai_response_cache WHERE cache_key = ?", (cache_key,))
                conn.commit()
                return None

            logging.info(f"Cache hit for {function_name}")
            return json.loads(row['response'])
        except (sqlite3.Error, ValueError) as e:
            logging.error(f"Cache get error: {e}")
            return None
        finally:
            conn.close()

    def set(self, function_name: str, params: Any, response: Any, ttl_seconds: Optional[int] = None,
            user_id: Optional[str] = None, tokens_used: int = 0):
        ttl = self.default_ttl if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            return

        cache_key = generate_cache_key(function_name, params, user_id)
        request_hash = generate_cache_key('hash', params)
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=ttl)

        try:
            conn = get_db_connection()
        except sqlite3.Error:
            return

        try:
            conn.execute("""
                INSERT INTO ai_response_cache
                    (cache_key, function_name, request_hash, response, tokens_used, expires_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(cache_key) DO UPDATE SET
                    response = excluded.response,
                    tokens_used = excluded.tokens_used,
                    expires_at = excluded.expires_at
            """, (cache_key, function_name, request_hash, json.dumps(response, default=str),
                  tokens_used, expires_at.isoformat()))
            conn.commit()
            logging.debug(f"Cached response for {function_name}, expires at {expires_at}")
        except sqlite3.Error as e:
            logging.error(f"Cache set error: {e}")
            conn.rollback()
        finally:
            conn.close()

    def purge_expired(self) -> int:
        conn = get_db_connection()
        try:
            cursor = conn.execute(
                "DELETE FROM ai_response_cache WHERE expires_at < ?",
                (datetime.now(timezone.utc).isoformat(),)
            )
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()
