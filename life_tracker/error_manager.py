import logging
import json
import re
import sqlite3
import time
import traceback
from datetime import date
from typing import Optional, List, Dict, Union, Any, Tuple

from . import config
from .database_manager import get_db_connection

SENSITIVE_PATTERNS = [
    re.compile(r'Bearer\s+[A-Za-z0-9\-_.]+', re.IGNORECASE),
    re.compile(r'sk-[A-Za-z0-9\-_]+', re.IGNORECASE),
    re.compile(r'postgres(?:ql)?://[^@\s]+@', re.IGNORECASE),
    re.compile(r'password[=:]\s*\S+', re.IGNORECASE),
    re.compile(r'token[=:]\s*\S+', re.IGNORECASE),
    re.compile(r'key[=:]\s*\S+', re.IGNORECASE),
]

SAFE_ERRORS = {
    'JWT expired': 'Session expired. Please sign in again.',
    'Invalid JWT': 'Invalid session. Please sign in again.',
    'No authorization token': 'Authentication required.',
    'Authentication required': 'Please sign in to continue.',
    'Rate limit exceeded': 'Too many requests. Please wait and try again.',
    'Network request failed': 'Connection error. Please check your internet.',
}

SENSITIVE_KEYS = ('token', 'key', 'password')


def log_error(
    analysis_type: str,
    error: Exception,
    entry_id: Optional[str] = None,
    period_start: Optional[Union[date, str]] = None,
    period_end: Optional[Union[date, str]] = None,
    context: Dict = None
) -> int:
    """Log an analysis error with full context."""
    conn = get_db_connection()
    cursor = conn.cursor()

    error_details = {
        'error_type': type(error).__name__,
        'traceback': traceback.format_exc(),
        'context': sanitize_log_data(context or {})
    }

    try:
        cursor.execute("""
            INSERT INTO analysis_errors
            (analysis_type, entry_id, period_start, period_end,
             error_message, error_details)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (
            analysis_type,
            entry_id,
            str(period_start) if period_start else None,
            str(period_end) if period_end else None,
            sanitize_error(error, limit=None),
            json.dumps(error_details, default=str)
        ))
        conn.commit()
        return cursor.lastrowid
    finally:
        conn.close()


def get_failed_analyses(
    analysis_type: Optional[str] = None,
    include_resolved: bool = False
) -> List[Dict]:
    """Get failed analyses, optionally of a single type."""
    conn = get_db_connection()
    cursor = conn.cursor()

    try:
        query = "SELECT * FROM analysis_errors WHERE 1 = 1"
        params: List[Any] = []
        if analysis_type:
            query += " AND analysis_type = ?"
            params.append(analysis_type)
        if not include_resolved:
            query += " AND resolved = FALSE"
        query += " ORDER BY error_timestamp DESC, error_id DESC"

        cursor.execute(query, params)
        return [dict(row) for row in cursor.fetchall()]
    finally:
        conn.close()


def mark_resolved(
    error_ids: Union[int, List[int]],
    resolution_notes: Optional[str] = None
) -> int:
    """
    Resolve open analysis errors by id.

    Ids that are unknown or already resolved are left alone.

    Returns:
        How many errors were newly resolved.
    """
    if isinstance(error_ids, int):
        error_ids = [error_ids]
    if not error_ids:
        return 0

    placeholders = ", ".join("?" for _ in error_ids)
    conn = get_db_connection()
    try:
        cursor = conn.execute(f"""
            UPDATE analysis_errors
            SET resolved = TRUE,
                resolution_timestamp = CURRENT_TIMESTAMP,
                resolution_notes = ?
            WHERE resolved = FALSE AND error_id IN ({placeholders})
        """, [resolution_notes, *error_ids])
        conn.commit()
        logging.info(f"Resolved {cursor.rowcount} of {len(error_ids)} analysis errors")
        return cursor.rowcount
    finally:
        conn.close()


def get_error_summary(analysis_type: Optional[str] = None) -> Dict[str, Dict[str, Any]]:
    """Unresolved errors per analysis type, with the latest message for each."""
    query = """
        SELECT
            analysis_type,
            COUNT(*) as error_count,
            COUNT(DISTINCT entry_id) as entries_affected,
            COUNT(DISTINCT period_start) as periods_affected,
            MIN(error_timestamp) as earliest_error,
            MAX(error_timestamp) as latest_error,
            (SELECT e2.error_message FROM analysis_errors e2
             WHERE e2.analysis_type = e1.analysis_type AND e2.resolved = FALSE
             ORDER BY e2.error_id DESC LIMIT 1) as latest_message
        FROM analysis_errors e1
        WHERE resolved = FALSE
    """
    params: List[Any] = []
    if analysis_type:
        query += " AND analysis_type = ?"
        params.append(analysis_type)
    query += " GROUP BY analysis_type ORDER BY analysis_type"

    conn = get_db_connection()
    try:
        rows = conn.execute(query, params).fetchall()
        return {row['analysis_type']: dict(row) for row in rows}
    finally:
        conn.close()


def sanitize_error(error: Union[Exception, str, None], limit: Optional[int] = 100) -> str:
    """Error text that is safe to show a user: secrets redacted, known errors reworded."""
    if isinstance(error, Exception):
        message = str(error) or 'An error occurred'
    else:
        message = error or 'An error occurred'

    for pattern in SENSITIVE_PATTERNS:
        message = pattern.sub('[REDACTED]', message)

    if message in SAFE_ERRORS:
        return SAFE_ERRORS[message]
    return message[:limit] if limit else message


def sanitize_log_data(data: Any) -> Any:
    """Recursively redact tokens, keys and passwords before logging."""
    if isinstance(data, str):
        return '[REDACTED_TOKEN]' if 'Bearer' in data or 'sk-' in data else data
    if isinstance(data, (list, tuple)):
        return [sanitize_log_data(item) for item in data]
    if isinstance(data, dict):
        sanitized = {}
        for key, value in data.items():
            if any(marker in str(key).lower() for marker in SENSITIVE_KEYS):
                sanitized[key] = '[REDACTED]'
            else:
                sanitized[key] = sanitize_log_data(value)
        return sanitized
    return data


def check_rate_limit(
    user_id: str,
    endpoint: str,
    max_requests: Optional[int] = None,
    window_seconds: Optional[int] = None,
    now: Optional[float] = None
) -> Tuple[bool, Optional[float]]:
    """
    Fixed-window rate limit per user and endpoint.

    Windows are kept in the rate_limits table, so they carry over between
    CLI invocations.

    Returns:
        (allowed, reset_time). reset_time is only set when the request is refused.
    """
    max_requests = config.RATE_LIMIT_MAX_REQUESTS if max_requests is None else max_requests
    window_seconds = config.RATE_LIMIT_WINDOW_SECONDS if window_seconds is None else window_seconds
    key = f"{user_id}:{endpoint}"
    now = time.time() if now is None else now

    conn = get_db_connection()
    try:
        row = conn.execute(
            "SELECT request_count, reset_time FROM rate_limits WHERE rate_key = ?", (key,)
        ).fetchone()

        if row and now <= row['reset_time']:
            if row['request_count'] >= max_requests:
                logging.warning(f"Rate limit hit for {endpoint}")
                return False, row['reset_time']
            conn.execute(
                "UPDATE rate_limits SET request_count = request_count + 1 WHERE rate_key = ?", (key,)
            )
        else:
            conn.execute("""
                INSERT INTO rate_limits (rate_key, request_count, reset_time)
                VALUES (?, 1, ?)
                ON CONFLICT(rate_key) DO UPDATE SET
                    request_count = 1,
                    reset_time = excluded.reset_time
            """, (key, now + window_seconds))
        conn.commit()
        return True, None
    except sqlite3.Error as e:
        logging.error(f"Rate limit check failed for {endpoint}: {e}")
        conn.rollback()
        raise
    finally:
        conn.close()


def reset_rate_limits(user_id: Optional[str] = None):
    """Clear stored windows, for one user or everyone."""
    conn = get_db_connection()
    try:
        if user_id:
            conn.execute("DELETE FROM rate_limits WHERE rate_key LIKE ?", (f"{user_id}:%",))
        else:
            conn.execute("DELETE FROM rate_limits")
        conn.commit()
    finally:
        conn.close()
