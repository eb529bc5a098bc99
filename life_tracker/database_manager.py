import sqlite3
import json
import logging
import uuid
from pathlib import Path
from datetime import datetime, timezone
from typing import List, Dict, Optional, Any, Iterable

from . import config

# Columns stored as JSON text, decoded on the way out
JSON_COLUMNS = {
    'journal_entries': ('tags', 'context_data'),
    'habits': ('completed_history',),
    'climbing_sessions': ('routes',),
    'expenses': ('tags',),
    'income': (),
    'net_worth_entries': ('assets_detail',),
    'user_profiles': ('dietary_preferences',),
}

TABLES = [
    ("journal_entries", """
    CREATE TABLE IF NOT EXISTS journal_entries (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        date TEXT NOT NULL,
        title TEXT NOT NULL,
        content TEXT NOT NULL,
        mood TEXT,
        tags TEXT DEFAULT '[]',
        ai_reflection TEXT,
        context_data TEXT DEFAULT '{}',
        meals TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );"""),

    ("habits", """
    CREATE TABLE IF NOT EXISTS habits (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        date TEXT NOT NULL,
        title TEXT NOT NULL DEFAULT '',
        description TEXT,
        frequency TEXT NOT NULL DEFAULT 'daily',
        target INTEGER NOT NULL DEFAULT 1,
        progress INTEGER NOT NULL DEFAULT 0,
        completed BOOLEAN NOT NULL DEFAULT 0,
        completed_history TEXT DEFAULT '[]',
        color TEXT DEFAULT '#3B82F6',
        created_at TEXT NOT NULL
    );"""),

    ("climbing_sessions", """
    CREATE TABLE IF NOT EXISTS climbing_sessions (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        date TEXT NOT NULL,
        location TEXT NOT NULL,
        duration INTEGER NOT NULL DEFAULT 60,
        notes TEXT,
        routes TEXT DEFAULT '[]',
        created_at TEXT NOT NULL
    );"""),

    ("expenses", """
    CREATE TABLE IF NOT EXISTS expenses (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        date TEXT NOT NULL,
        amount REAL NOT NULL,
        category TEXT NOT NULL,
        description TEXT,
        is_recurring BOOLEAN DEFAULT 0,
        tags TEXT DEFAULT '[]',
        created_at TEXT NOT NULL
    );"""),

    ("income", """
    CREATE TABLE IF NOT EXISTS income (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        date TEXT NOT NULL,
        amount REAL NOT NULL,
        category TEXT NOT NULL,
        description TEXT,
        created_at TEXT NOT NULL
    );"""),

    ("net_worth_entries", """
    CREATE TABLE IF NOT EXISTS net_worth_entries (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        date TEXT NOT NULL,
        cash_equivalents REAL NOT NULL DEFAULT 0,
        credit_cards REAL NOT NULL DEFAULT 0,
        assets REAL NOT NULL DEFAULT 0,
        liabilities REAL NOT NULL DEFAULT 0,
        assets_detail TEXT DEFAULT '[]',
        notes TEXT,
        created_at TEXT NOT NULL
    );"""),

    ("user_profiles", """
    CREATE TABLE IF NOT EXISTS user_profiles (
        user_id TEXT PRIMARY KEY,
        health_goals TEXT,
        dietary_preferences TEXT DEFAULT '[]',
        updated_at TEXT NOT NULL
    );"""),

    ("import_backups", """
    CREATE TABLE IF NOT EXISTS import_backups (
        backup_id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        backup_data TEXT NOT NULL,
        created_at TEXT NOT NULL
    );"""),

    ("ai_summaries", """
    CREATE TABLE IF NOT EXISTS ai_summaries (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        period_type TEXT NOT NULL,
        period_start TEXT NOT NULL,
        period_end TEXT NOT NULL,
        content TEXT NOT NULL,
        metadata TEXT DEFAULT '{}',
        created_at TEXT NOT NULL,
        UNIQUE(user_id, period_type, period_start)
    );"""),

    ("ai_analysis_summaries", """
    CREATE TABLE IF NOT EXISTS ai_analysis_summaries (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        type TEXT NOT NULL,
        period_key TEXT NOT NULL,
        content TEXT NOT NULL,
        metadata TEXT DEFAULT '{}',
        created_at TEXT NOT NULL
    );"""),

    ("ai_usage", """
    CREATE TABLE IF NOT EXISTS ai_usage (
        usage_id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        function_name TEXT NOT NULL,
        model TEXT,
        input_tokens INTEGER DEFAULT 0,
        output_tokens INTEGER DEFAULT 0,
        total_tokens INTEGER DEFAULT 0,
        cost_estimate REAL DEFAULT 0,
        duration_ms INTEGER DEFAULT 0,
        status TEXT NOT NULL,
        error_message TEXT,
        metadata TEXT DEFAULT '{}',
        created_at TEXT NOT NULL
    );"""),

    ("ai_response_cache", """
    CREATE TABLE IF NOT EXISTS ai_response_cache (
        cache_key TEXT PRIMARY KEY,
        function_name TEXT NOT NULL,
        request_hash TEXT NOT NULL,
        response TEXT NOT NULL,
        tokens_used INTEGER DEFAULT 0,
        expires_at TEXT NOT NULL
    );"""),

    ("rate_limits", """
    CREATE TABLE IF NOT EXISTS rate_limits (
        rate_key TEXT PRIMARY KEY,
        request_count INTEGER NOT NULL DEFAULT 0,
        reset_time REAL NOT NULL
    );"""),

    ("analysis_errors", """
    CREATE TABLE IF NOT EXISTS analysis_errors (
        error_id INTEGER PRIMARY KEY AUTOINCREMENT,
        analysis_type TEXT NOT NULL,
        entry_id TEXT,
        period_start TEXT,
        period_end TEXT,
        error_message TEXT NOT NULL,
        error_details TEXT,
        error_timestamp DATETIME DEFAULT CURRENT_TIMESTAMP,
        resolved BOOLEAN DEFAULT FALSE,
        resolution_timestamp DATETIME,
        resolution_notes TEXT
    );"""),
]

INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_journal_entries_user_date ON journal_entries(user_id, date)",
    "CREATE INDEX IF NOT EXISTS idx_habits_user_date ON habits(user_id, date)",
    "CREATE INDEX IF NOT EXISTS idx_climbing_sessions_user_date ON climbing_sessions(user_id, date)",
    "CREATE INDEX IF NOT EXISTS idx_expenses_user_date ON expenses(user_id, date)",
    "CREATE INDEX IF NOT EXISTS idx_ai_summaries_user_period ON ai_summaries(user_id, period_start, period_end)",
]


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def get_db_connection() -> sqlite3.Connection:
    """Establishes and returns a database connection."""
    try:
        Path(config.DB_PATH).parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(config.DB_PATH)
        conn.row_factory = sqlite3.Row  # Return rows as dictionary-like objects
        conn.execute("PRAGMA foreign_keys = ON;")
        return conn
    except sqlite3.Error as e:
        logging.error(f"Database connection error: {e}")
        raise


def create_tables():
    """Creates the database tables if they don't exist."""
    conn = get_db_connection()
    cursor = conn.cursor()
    try:
        logging.info("Starting database table creation...")

        for table_name, create_sql in TABLES:
            logging.debug(f"Creating table: {table_name}")
            try:
                cursor.execute(create_sql)
            except sqlite3.Error as e:
                logging.error(f"Error creating {table_name} table: {e}")
                raise

        for index_sql in INDEXES:
            cursor.execute(index_sql)

        cursor.execute("SELECT name FROM sqlite_master WHERE type='table';")
        existing_tables = {t[0] for t in cursor.fetchall()}
        missing_tables = {t[0] for t in TABLES} - existing_tables
        if missing_tables:
            logging.error(f"Failed to create tables: {missing_tables}")
            raise sqlite3.OperationalError(f"Missing tables after creation: {missing_tables}")

        conn.commit()
        logging.info("All database tables created and committed successfully")

    except sqlite3.Error as e:
        logging.error(f"SQLite error during table creation: {str(e)}")
        conn.rollback()
        raise
    finally:
        conn.close()


def row_to_dict(table: str, row: sqlite3.Row) -> Dict[str, Any]:
    """Convert a row to a plain dict, decoding the table's JSON columns."""
    data = dict(row)
    for column in JSON_COLUMNS.get(table, ()):
        if column in data and isinstance(data[column], str):
            try:
                data[column] = json.loads(data[column])
            except json.JSONDecodeError:
                logging.warning(f"Invalid JSON in {table}.{column} for row {data.get('id')}")
    return data


def _encode(table: str, values: Dict[str, Any]) -> Dict[str, Any]:
    encoded = dict(values)
    for column in JSON_COLUMNS.get(table, ()):
        if column in encoded and not isinstance(encoded[column], str):
            encoded[column] = json.dumps(encoded[column])
    return encoded


def insert_row(table: str, values: Dict[str, Any]) -> Optional[str]:
    """Insert a row into one of the tracker tables and return its id."""
    values = dict(values)
    values.setdefault('id', str(uuid.uuid4()))
    values.setdefault('created_at', now_iso())
    encoded = _encode(table, values)

    columns = ", ".join(encoded.keys())
    placeholders = ", ".join("?" for _ in encoded)

    conn = get_db_connection()
    try:
        conn.execute(f"INSERT INTO {table} ({columns}) VALUES ({placeholders})", tuple(encoded.values()))
        conn.commit()
        logging.debug(f"Inserted {table} row {values['id']}")
        return values['id']
    except sqlite3.Error as e:
        logging.error(f"Error inserting into {table} for date {values.get('date')}: {e}")
        conn.rollback()
        return None
    finally:
        conn.close()


def select_range(table: str, user_id: str, start_date: Optional[str] = None,
                 end_date: Optional[str] = None, descending: bool = False,
                 limit: Optional[int] = None) -> List[Dict[str, Any]]:
    """Rows for a user, optionally bounded by ISO dates (inclusive)."""
    query = f"SELECT * FROM {table} WHERE user_id = ?"
    params: List[Any] = [user_id]
    if start_date:
        query += " AND date >= ?"
        params.append(start_date)
    if end_date:
        query += " AND date <= ?"
        params.append(end_date)
    query += f" ORDER BY date {'DESC' if descending else 'ASC'}"
    if limit:
        query += " LIMIT ?"
        params.append(limit)

    conn = get_db_connection()
    try:
        rows = conn.execute(query, params).fetchall()
        return [row_to_dict(table, row) for row in rows]
    except sqlite3.Error as e:
        logging.error(f"Error retrieving {table} for range {start_date} - {end_date}: {e}")
        return []
    finally:
        conn.close()


# --- Journal entries ---

def insert_journal_entry(user_id: str, entry_date: str, content: str, title: Optional[str] = None,
                         mood: str = 'neutral', tags: Optional[List[str]] = None,
                         context_data: Optional[Dict] = None, ai_reflection: Optional[str] = None,
                         meals: Optional[str] = None) -> Optional[str]:
    """Inserts a single journal entry and returns its id, or None on failure."""
    timestamp = now_iso()
    return insert_row('journal_entries', {
        'user_id': user_id,
        'date': entry_date,
        'title': title or f"Journal Entry - {entry_date}",
        'content': content,
        'mood': mood,
        'tags': tags or [],
        'ai_reflection': ai_reflection,
        'context_data': context_data or {},
        'meals': meals,
        'created_at': timestamp,
        'updated_at': timestamp,
    })


def get_journal_entry(entry_id: str) -> Optional[Dict[str, Any]]:
    conn = get_db_connection()
    try:
        row = conn.execute("SELECT * FROM journal_entries WHERE id = ?", (entry_id,)).fetchone()
        return row_to_dict('journal_entries', row) if row else None
    finally:
        conn.close()


def get_journal_entries(user_id: str, start_date: Optional[str] = None,
                        end_date: Optional[str] = None) -> List[Dict[str, Any]]:
    return select_range('journal_entries', user_id, start_date, end_date)


def get_entries_by_dates(user_id: str, dates: Iterable[str]) -> List[Dict[str, Any]]:
    """Existing journal entries on any of the given dates."""
    dates = sorted({d for d in dates if d})
    if not dates:
        return []
    placeholders = ", ".join("?" for _ in dates)
    conn = get_db_connection()
    try:
        rows = conn.execute(
            f"SELECT * FROM journal_entries WHERE user_id = ? AND date IN ({placeholders}) ORDER BY date",
            [user_id, *dates]
        ).fetchall()
        return [row_to_dict('journal_entries', row) for row in rows]
    finally:
        conn.close()


def get_recent_meal_entries(user_id: str, limit: int = 7) -> List[Dict[str, Any]]:
    conn = get_db_connection()
    try:
        rows = conn.execute("""
            SELECT * FROM journal_entries
            WHERE user_id = ? AND meals IS NOT NULL AND meals != ''
            ORDER BY date DESC
            LIMIT ?
        """, (user_id, limit)).fetchall()
        return [row_to_dict('journal_entries', row) for row in rows]
    except sqlite3.Error as e:
        logging.error(f"Error retrieving recent meals: {e}")
        return []
    finally:
        conn.close()


def update_journal_entry(entry_id: str, **fields) -> bool:
    """Update selected columns of a journal entry."""
    allowed = {'title', 'content', 'mood', 'tags', 'ai_reflection', 'context_data', 'meals', 'date'}
    unknown = set(fields) - allowed
    if unknown:
        raise ValueError(f"Cannot update journal entry fields: {sorted(unknown)}")
    if not fields:
        return False

    encoded = _encode('journal_entries', fields)
    encoded['updated_at'] = now_iso()
    assignments = ", ".join(f"{column} = ?" for column in encoded)

    conn = get_db_connection()
    try:
        cursor = conn.execute(
            f"UPDATE journal_entries SET {assignments} WHERE id = ?",
            (*encoded.values(), entry_id)
        )
        conn.commit()
        return cursor.rowcount > 0
    except sqlite3.Error as e:
        logging.error(f"Error updating journal entry {entry_id}: {e}")
        conn.rollback()
        return False
    finally:
        conn.close()


def delete_journal_entries(entry_ids: List[str]) -> int:
    """Delete journal entries by id and return how many rows went away."""
    if not entry_ids:
        return 0
    placeholders = ", ".join("?" for _ in entry_ids)
    conn = get_db_connection()
    try:
        cursor = conn.execute(f"DELETE FROM journal_entries WHERE id IN ({placeholders})", list(entry_ids))
        conn.commit()
        logging.info(f"Deleted {cursor.rowcount} journal entries")
        return cursor.rowcount
    except sqlite3.Error as e:
        logging.error(f"Error deleting journal entries: {e}")
        conn.rollback()
        raise
    finally:
        conn.close()


# --- Trackers ---

def insert_habit(user_id: str, habit: Dict[str, Any]) -> Optional[str]:
    return insert_row('habits', {**habit, 'user_id': user_id})


def get_habits(user_id: str, start_date: Optional[str] = None, end_date: Optional[str] = None) -> List[Dict]:
    return select_range('habits', user_id, start_date, end_date)


def insert_climbing_session(user_id: str, session: Dict[str, Any]) -> Optional[str]:
    return insert_row('climbing_sessions', {**session, 'user_id': user_id})


def get_climbing_sessions(user_id: str, start_date: Optional[str] = None,
                          end_date: Optional[str] = None) -> List[Dict]:
    return select_range('climbing_sessions', user_id, start_date, end_date)


def insert_expense(user_id: str, expense: Dict[str, Any]) -> Optional[str]:
    return insert_row('expenses', {**expense, 'user_id': user_id})


def get_expenses(user_id: str, start_date: Optional[str] = None, end_date: Optional[str] = None) -> List[Dict]:
    return select_range('expenses', user_id, start_date, end_date)


def insert_income(user_id: str, income: Dict[str, Any]) -> Optional[str]:
    return insert_row('income', {**income, 'user_id': user_id})


def get_income(user_id: str, start_date: Optional[str] = None, end_date: Optional[str] = None) -> List[Dict]:
    return select_range('income', user_id, start_date, end_date)


def insert_net_worth_entry(user_id: str, entry: Dict[str, Any]) -> Optional[str]:
    return insert_row('net_worth_entries', {**entry, 'user_id': user_id})


def get_net_worth_entries(user_id: str, start_date: Optional[str] = None, end_date: Optional[str] = None,
                          latest_first: bool = False, limit: Optional[int] = None) -> List[Dict]:
    return select_range('net_worth_entries', user_id, start_date, end_date,
                        descending=latest_first, limit=limit)


def get_user_profile(user_id: str) -> Optional[Dict[str, Any]]:
    conn = get_db_connection()
    try:
        row = conn.execute("SELECT * FROM user_profiles WHERE user_id = ?", (user_id,)).fetchone()
        return row_to_dict('user_profiles', row) if row else None
    finally:
        conn.close()


def upsert_user_profile(user_id: str, health_goals: Optional[str] = None,
                        dietary_preferences: Optional[List[str]] = None):
    conn = get_db_connection()
    try:
        conn.execute("""
            INSERT INTO user_profiles (user_id, health_goals, dietary_preferences, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET
                health_goals = excluded.health_goals,
                dietary_preferences = excluded.dietary_preferences,
                updated_at = excluded.updated_at
        """, (user_id, health_goals, json.dumps(dietary_preferences or []), now_iso()))
        conn.commit()
    except sqlite3.Error as e:
        logging.error(f"Error saving profile for {user_id}: {e}")
        conn.rollback()
        raise
    finally:
        conn.close()


# --- Import backups ---

def insert_import_backup(backup_id: str, user_id: str, backup_data: Dict[str, Any]):
    """Store the remote copy of an import backup. Errors propagate."""
    conn = get_db_connection()
    try:
        conn.execute("""
            INSERT INTO import_backups (backup_id, user_id, backup_data, created_at)
            VALUES (?, ?, ?, ?)
        """, (backup_id, user_id, json.dumps(backup_data), now_iso()))
        conn.commit()
    except sqlite3.Error as e:
        logging.error(f"Error storing import backup {backup_id}: {e}")
        conn.rollback()
        raise
    finally:
        conn.close()


def update_import_backup(backup_id: str, backup_data: Dict[str, Any]) -> bool:
    conn = get_db_connection()
    try:
        cursor = conn.execute(
            "UPDATE import_backups SET backup_data = ? WHERE backup_id = ?",
            (json.dumps(backup_data), backup_id)
        )
        conn.commit()
        return cursor.rowcount > 0
    except sqlite3.Error as e:
        logging.error(f"Error updating import backup {backup_id}: {e}")
        conn.rollback()
        return False
    finally:
        conn.close()


def get_import_backup(backup_id: str) -> Optional[Dict[str, Any]]:
    conn = get_db_connection()
    try:
        row = conn.execute(
            "SELECT backup_data FROM import_backups WHERE backup_id = ?", (backup_id,)
        ).fetchone()
        return json.loads(row['backup_data']) if row else None
    finally:
        conn.close()


def list_import_backups(user_id: str) -> List[Dict[str, Any]]:
    conn = get_db_connection()
    try:
        rows = conn.execute(
            "SELECT backup_data FROM import_backups WHERE user_id = ? ORDER BY created_at DESC",
            (user_id,)
        ).fetchall()
        return [json.loads(row['backup_data']) for row in rows]
    finally:
        conn.close()


# --- Summaries ---

def get_summary(user_id: str, period_type: str, period_start: str, period_end: str) -> Optional[Dict]:
    """A stored summary falling inside the given period, if any."""
    conn = get_db_connection()
    try:
        row = conn.execute("""
            SELECT * FROM ai_summaries
            WHERE user_id = ? AND period_type = ?
              AND period_start >= ? AND period_end <= ?
            ORDER BY created_at DESC
            LIMIT 1
        """, (user_id, period_type, period_start, period_end)).fetchone()
        if not row:
            return None
        summary = dict(row)
        summary['metadata'] = json.loads(summary['metadata'] or '{}')
        return summary
    finally:
        conn.close()


def upsert_summary(user_id: str, period_type: str, period_start: str, period_end: str,
                   content: str, metadata: Dict[str, Any]) -> Optional[int]:
    conn = get_db_connection()
    cursor = conn.cursor()
    try:
        cursor.execute("""
            INSERT INTO ai_summaries (user_id, period_type, period_start, period_end, content, metadata, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(user_id, period_type, period_start) DO UPDATE SET
                period_end = excluded.period_end,
                content = excluded.content,
                metadata = excluded.metadata,
                created_at = excluded.created_at
        """, (user_id, period_type, period_start, period_end, content, json.dumps(metadata), now_iso()))
        conn.commit()
        return cursor.lastrowid
    except sqlite3.Error as e:
        logging.error(f"Error storing {period_type} summary: {e}")
        conn.rollback()
        return None
    finally:
        conn.close()


def get_latest_analyses(user_id: str, limit: int = 1) -> List[Dict[str, Any]]:
    conn = get_db_connection()
    try:
        rows = conn.execute("""
            SELECT * FROM ai_analysis_summaries
            WHERE user_id = ?
            ORDER BY created_at DESC
            LIMIT ?
        """, (user_id, limit)).fetchall()
        analyses = []
        for row in rows:
            analysis = dict(row)
            analysis['metadata'] = json.loads(analysis['metadata'] or '{}')
            analyses.append(analysis)
        return analyses
    finally:
        conn.close()


def insert_analysis_summaries(analyses: List[Dict[str, Any]]):
    """Store a batch of bulk analyses atomically."""
    conn = get_db_connection()
    try:
        conn.executemany("""
            INSERT INTO ai_analysis_summaries (user_id, type, period_key, content, metadata, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
        """, [
            (a['user_id'], a['type'], a['period_key'], a['content'],
             json.dumps(a.get('metadata', {})), a.get('created_at') or now_iso())
            for a in analyses
        ])
        conn.commit()
    except sqlite3.Error as e:
        logging.error(f"Error storing analyses: {e}")
        conn.rollback()
        raise
    finally:
        conn.close()
