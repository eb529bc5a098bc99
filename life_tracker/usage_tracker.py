import json
import logging
import sqlite3
import time
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Any

from .database_manager import get_db_connection, now_iso
from .llm_manager import calculate_cost


def track_usage(record: Dict[str, Any]):
    """Insert one ai_usage row. Tracking failures are logged and swallowed."""
    try:
        conn = get_db_connection()
    except sqlite3.Error:
        return

    try:
        conn.execute("""
            INSERT INTO ai_usage (
                user_id, function_name, model, input_tokens, output_tokens, total_tokens,
                cost_estimate, duration_ms, status, error_message, metadata, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            record['user_id'],
            record['function_name'],
            record.get('model'),
            record.get('input_tokens', 0),
            record.get('output_tokens', 0),
            record.get('total_tokens', 0),
            record.get('cost_estimate', 0.0),
            record.get('duration_ms', 0),
            record.get('status', 'success'),
            record.get('error_message'),
            json.dumps(record.get('metadata') or {}, default=str),
            record.get('created_at') or now_iso(),
        ))
        conn.commit()
    except sqlite3.Error as e:
        logging.error(f"Failed to track usage: {e}")
        conn.rollback()
    finally:
        conn.close()


def track_function_call(
    function_name: str,
    user_id: str,
    model: str,
    start_time: float,
    usage: Optional[Dict[str, int]] = None,
    status: str = 'success',
    error_message: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None
):
    """Record a finished LLM-backed call. start_time is a time.monotonic() value."""
    usage = usage or {}
    track_usage({
        'user_id': user_id,
        'function_name': function_name,
        'model': model,
        'input_tokens': usage.get('prompt_tokens', 0),
        'output_tokens': usage.get('completion_tokens', 0),
        'total_tokens': usage.get('total_tokens', 0),
        'cost_estimate': calculate_cost(model, usage),
        'duration_ms': int((time.monotonic() - start_time) * 1000),
        'status': status,
        'error_message': error_message,
        'metadata': metadata,
    })


def get_user_usage_stats(user_id: str, days: int = 30) -> List[Dict]:
    """Token and cost totals per function and model over the last `days` days."""
    since = (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()
    conn = get_db_connection()
    try:
        rows = conn.execute("""
            SELECT
                function_name,
                model,
                SUM(total_tokens) as total_tokens,
                SUM(cost_estimate) as total_cost,
                COUNT(*) as calls,
                SUM(CASE WHEN status = 'error' THEN 1 ELSE 0 END) as errors
            FROM ai_usage
            WHERE user_id = ? AND created_at >= ?
            GROUP BY function_name, model
            ORDER BY function_name
        """, (user_id, since)).fetchall()
        return [dict(row) for row in rows]
    except sqlite3.Error as e:
        logging.error(f"Failed to get usage stats: {e}")
        return []
    finally:
        conn.close()
