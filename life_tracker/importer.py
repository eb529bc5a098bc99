"""
Review, de-duplication, backup and import of parsed journal entries.

Every text import writes a backup first, in two copies: a local JSON file
(the last few runs) and a row in the import_backups table. The backup lists
the ids of the rows the run inserted so the whole batch can be rolled back.
"""
import json
import logging
import random
import re
import sqlite3
import string
import time
import uuid
from collections import Counter
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Dict, Optional, Tuple, Callable, Any, Iterable

from . import config
from .database_manager import (
    get_entries_by_dates,
    insert_journal_entry,
    insert_habit,
    insert_climbing_session,
    delete_journal_entries,
    insert_import_backup,
    update_import_backup,
    get_import_backup,
    list_import_backups,
)
from .errors import ImportBackupError, RollbackError, ValidationError
from .journal_parser import parse_import_date, extract_pdf_text, parse_document
from .models import (
    DataImport,
    DuplicateMatch,
    EntryStatus,
    ImportBackup,
    ImportResults,
    ParsedEntry,
)

ConfirmCallback = Callable[[List[DuplicateMatch], List[ParsedEntry]], bool]


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _normalize(text: str) -> str:
    text = re.sub(r'[^\w\s]', '', text.lower())
    return re.sub(r'\s+', ' ', text).strip()


def calculate_similarity(text1: str, text2: str) -> float:
    """Share of positions holding the same character after normalization."""
    if not text1 or not text2:
        return 0

    norm1 = _normalize(text1)
    norm2 = _normalize(text2)
    if norm1 == norm2:
        return 1

    max_length = max(len(norm1), len(norm2))
    matches = sum(1 for a, b in zip(norm1, norm2) if a == b)
    return matches / max_length


# --- Review ---

def set_entry_status(entries: List[ParsedEntry], entry_id: str, status: EntryStatus) -> ParsedEntry:
    for entry in entries:
        if entry.id == entry_id:
            entry.status = status
            return entry
    raise ValidationError(f"No parsed entry with id {entry_id}")


def approve_all(entries: List[ParsedEntry]) -> List[ParsedEntry]:
    for entry in entries:
        entry.status = EntryStatus.APPROVED
    return entries


def approved_entries(entries: Iterable[ParsedEntry]) -> List[ParsedEntry]:
    return [entry for entry in entries if entry.status == EntryStatus.APPROVED]


def summarize_statuses(entries: Iterable[ParsedEntry]) -> Dict[str, int]:
    counts = Counter(entry.status.value for entry in entries)
    return {status.value: counts.get(status.value, 0) for status in EntryStatus}


def check_for_duplicates(
    entries: List[ParsedEntry],
    user_id: str = config.USER_ID
) -> Tuple[List[DuplicateMatch], List[ParsedEntry]]:
    """
    Compare entries against stored rows on the same date.

    Near-identical content is a duplicate and is set aside. Different content
    on an existing date stays in the import but is flagged needs_review.
    """
    import_dates = [entry.detected_date for entry in entries if entry.detected_date]
    logging.info(f"Checking for duplicates on {len(set(import_dates))} dates")

    existing_by_date: Dict[str, List[Dict[str, Any]]] = {}
    for row in get_entries_by_dates(user_id, import_dates):
        existing_by_date.setdefault(row['date'], []).append(row)

    duplicates: List[DuplicateMatch] = []
    unique: List[ParsedEntry] = []

    for entry in entries:
        candidates = existing_by_date.get(entry.detected_date or '', [])
        if not candidates:
            unique.append(entry)
            continue

        scored = [
            (calculate_similarity(_stored_content(row), entry.detected_content or ''), row)
            for row in candidates
        ]
        similarity, existing = max(scored, key=lambda pair: pair[0])

        if similarity > config.DUPLICATE_SIMILARITY_THRESHOLD:
            duplicates.append(DuplicateMatch(entry=entry, existing_entry=existing, similarity=similarity))
        else:
            entry.issues.append(
                f"Entry exists for this date but with different content ({round(similarity * 100)}% similar)"
            )
            entry.status = EntryStatus.NEEDS_REVIEW
            unique.append(entry)

    logging.info(f"Found {len(duplicates)} duplicates, {len(unique)} unique entries")
    return duplicates, unique


def _stored_content(row: Dict[str, Any]) -> str:
    context = row.get('context_data') or {}
    return row.get('content') or (context.get('content') if isinstance(context, dict) else '') or ''


# --- Backups ---

def _generate_backup_id() -> str:
    suffix = ''.join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"import_{int(time.time() * 1000)}_{suffix}"


def load_local_backups() -> List[Dict[str, Any]]:
    path = Path(config.BACKUP_FILE)
    if not path.exists():
        return []
    try:
        with open(path, 'r', encoding='utf-8') as f:
            backups = json.load(f)
        return backups if isinstance(backups, list) else []
    except json.JSONDecodeError as e:
        logging.warning(f"Local backup file {path} is unreadable: {e}")
        return []


def save_local_backups(backups: List[Dict[str, Any]]):
    """Write the local backup file, keeping only the most recent backups."""
    path = Path(config.BACKUP_FILE)
    path.parent.mkdir(parents=True, exist_ok=True)
    backups = backups[-config.MAX_LOCAL_BACKUPS:]
    with open(path, 'w', encoding='utf-8') as f:
        json.dump(backups, f, indent=2)


def create_import_backup(
    entries_to_import: List[ParsedEntry],
    original_data: str,
    selected_year: int,
    user_id: str = config.USER_ID
) -> str:
    """
    Record a backup of an import run before anything is written.

    Raises:
        ImportBackupError: if either copy could not be written
    """
    backup_id = _generate_backup_id()
    backup = ImportBackup(
        id=backup_id,
        timestamp=_utc_now(),
        total_entries=len(entries_to_import),
        imported_ids=[],
        metadata={
            'selected_year': selected_year,
            'original_data': original_data,
            'user_id': user_id,
        }
    )

    try:
        backups = load_local_backups()
        backups.append(backup.to_dict())
        save_local_backups(backups)
        insert_import_backup(backup_id, user_id, backup.to_dict())
    except (OSError, sqlite3.Error, TypeError) as e:
        logging.error(f"Failed to create backup: {e}")
        raise ImportBackupError("Could not create backup. Import cancelled for safety.") from e

    logging.info(f"Backup created: {backup_id}")
    return backup_id


def _find_backup(backup_id: str) -> Tuple[Optional[ImportBackup], List[Dict[str, Any]]]:
    """The backup (local copy preferred) and the loaded local backup list."""
    local_backups = load_local_backups()
    for data in local_backups:
        if data.get('id') == backup_id:
            return ImportBackup.from_dict(data), local_backups

    remote = get_import_backup(backup_id)
    return (ImportBackup.from_dict(remote) if remote else None), local_backups


def _store_backup(backup: ImportBackup, local_backups: List[Dict[str, Any]]):
    data = backup.to_dict()
    for index, existing in enumerate(local_backups):
        if existing.get('id') == backup.id:
            local_backups[index] = data
            save_local_backups(local_backups)
            break
    update_import_backup(backup.id, data)


def update_backup_with_imported_ids(backup_id: str, imported_ids: List[str]):
    """Attach inserted row ids to both backup copies. Failures are only logged."""
    try:
        backup, local_backups = _find_backup(backup_id)
        if not backup:
            logging.error(f"Backup {backup_id} not found while recording imported ids")
            return
        backup.imported_ids = list(imported_ids)
        _store_backup(backup, local_backups)
        logging.info(f"Backup updated with imported IDs: {len(imported_ids)}")
    except (OSError, sqlite3.Error) as e:
        logging.error(f"Failed to update backup: {e}")


def list_backups(user_id: str = config.USER_ID) -> List[ImportBackup]:
    """All known backups for a user, most recent first."""
    merged: Dict[str, Dict[str, Any]] = {}
    try:
        for data in list_import_backups(user_id):
            merged[data['id']] = data
    except sqlite3.Error as e:
        logging.error(f"Could not read remote backups: {e}")

    for data in load_local_backups():
        if data.get('metadata', {}).get('user_id') == user_id:
            merged[data['id']] = data

    backups = [ImportBackup.from_dict(data) for data in merged.values()]
    return sorted(backups, key=lambda b: b.timestamp, reverse=True)


def rollback_import(backup_id: str, user_id: str = config.USER_ID) -> bool:
    """
    Delete every row inserted by an import run and mark its backup rolled back.

    Raises:
        RollbackError: if the backup is unknown, belongs to another user,
            has nothing to roll back, or the delete fails
    """
    backup, local_backups = _find_backup(backup_id)

    if not backup or not backup.imported_ids:
        raise RollbackError('Backup not found or no entries to rollback')
    if backup.metadata.get('user_id') != user_id:
        raise RollbackError('Backup belongs to a different user')
    if backup.rolled_back:
        raise RollbackError(f"Backup {backup_id} was already rolled back at {backup.rollback_timestamp}")

    logging.info(f"Rolling back {len(backup.imported_ids)} entries...")
    try:
        deleted = delete_journal_entries(backup.imported_ids)
    except sqlite3.Error as e:
        raise RollbackError(f"Rollback failed: {e}") from e

    backup.rolled_back = True
    backup.rollback_timestamp = _utc_now()
    _store_backup(backup, local_backups)

    logging.info(f"Rollback completed successfully ({deleted} rows removed)")
    return True


# --- Import ---

def import_entries(
    parsed_entries: List[ParsedEntry],
    raw_text: str,
    selected_year: int,
    user_id: str = config.USER_ID,
    confirm: Optional[ConfirmCallback] = None
) -> ImportResults:
    """
    Import the approved entries of a parsed batch.

    Duplicates are skipped. When duplicates exist and `confirm` is given, it
    is asked whether to go on with the unique entries; a False answer
    cancels the run before anything is written. Individual insert failures
    are counted, not raised.

    Raises:
        ValidationError: nothing approved, or no user id
        ImportBackupError: the backup could not be written
    """
    if not user_id:
        raise ValidationError('No authenticated user found. Please sign in and try again.')

    approved = approved_entries(parsed_entries)
    if not approved:
        raise ValidationError('No entries approved for import')

    duplicates, unique = check_for_duplicates(approved, user_id)

    if duplicates and confirm is not None and not confirm(duplicates, unique):
        logging.info("Import cancelled after duplicate check")
        return ImportResults(successful=0, failed=0, total=len(unique),
                             duplicates_skipped=len(duplicates), cancelled=True)

    backup_id = create_import_backup(unique, raw_text, selected_year, user_id)

    successful = 0
    failed = 0
    imported_ids: List[str] = []
    import_date = _utc_now()

    for entry in unique:
        if not entry.detected_date or not entry.detected_content:
            logging.warning(f"Skipping {entry.id}: missing date or content")
            failed += 1
            continue

        title = f"Journal Entry - {entry.detected_date}"
        entry_id = insert_journal_entry(
            user_id=user_id,
            entry_date=entry.detected_date,
            content=entry.detected_content,
            title=title,
            mood='neutral',
            tags=[],
            context_data={
                'content': entry.detected_content,
                'title': title,
                'mood': 'neutral',
                'tags': [],
                'imported': True,
                'import_date': import_date,
                'import_backup_id': backup_id,
                'original_raw_date': entry.raw_match.date_text,
                'original_content_length': len(entry.detected_content),
            }
        )

        if entry_id:
            imported_ids.append(entry_id)
            successful += 1
        else:
            logging.error(f"Failed to import {entry.detected_date}")
            failed += 1

    if imported_ids:
        update_backup_with_imported_ids(backup_id, imported_ids)

    logging.info(f"Import complete: {successful} successful, {failed} failed, "
                 f"{len(duplicates)} duplicates skipped")

    return ImportResults(
        successful=successful,
        failed=failed,
        total=len(unique),
        duplicates_skipped=len(duplicates),
        backup_id=backup_id,
        can_rollback=bool(imported_ids),
        imported_ids=imported_ids
    )


def _import_dated_entries(
    entries: List[Dict[str, Any]],
    user_id: str,
    default_year: int,
    record: DataImport
):
    """Insert {date, entry|content} dicts, skipping dates that already have an entry."""
    existing_dates = {row['date'] for row in get_entries_by_dates(
        user_id, [parse_import_date(e.get('date'), default_year) for e in entries]
    )}

    for item in entries:
        raw_date = item.get('date')
        try:
            parsed_date = parse_import_date(raw_date, default_year)
            if not parsed_date:
                raise ValidationError(f'Could not parse date "{raw_date}"')
            if parsed_date in existing_dates:
                continue

            entry_id = insert_journal_entry(
                user_id=user_id,
                entry_date=parsed_date,
                content=item.get('entry') or item.get('content') or '',
                mood=item.get('mood', 'neutral'),
                tags=item.get('tags') or [],
                context_data={'imported': True, 'import_file': record.file_name}
            )
            if not entry_id:
                raise ValidationError('database insert failed')

            existing_dates.add(parsed_date)
            record.items_imported['journal_entries'] += 1
            if not record.date_range['start'] or parsed_date < record.date_range['start']:
                record.date_range['start'] = parsed_date
            if not record.date_range['end'] or parsed_date > record.date_range['end']:
                record.date_range['end'] = parsed_date
        except ValidationError as e:
            record.errors.append(f"Failed to import journal entry for {raw_date}: {e}")


def _new_data_import(file_name: str, file_type: str) -> DataImport:
    return DataImport(
        id=str(uuid.uuid4()),
        file_name=file_name,
        file_type=file_type,
        upload_date=_utc_now(),
        status='processing',
        items_imported={'journal_entries': 0, 'habits': 0, 'climbing_sessions': 0},
        date_range={'start': None, 'end': None}
    )


def import_json_data(
    data: Any,
    file_name: str,
    user_id: str = config.USER_ID,
    default_year: Optional[int] = None
) -> DataImport:
    """
    Import a JSON export: either a bare [{date, entry}] list or an object
    with a journalEntries list.
    """
    default_year = default_year or datetime.now().year
    record = _new_data_import(file_name, 'json')

    if isinstance(data, list):
        entries = data
    elif isinstance(data, dict) and isinstance(data.get('journalEntries'), list):
        entries = data['journalEntries']
    else:
        entries = []

    entries = [e for e in entries if isinstance(e, dict)]
    _import_dated_entries(entries, user_id, default_year, record)

    record.status = 'completed' if record.items_imported['journal_entries'] or not record.errors else 'error'
    logging.info(f"Imported {record.items_imported['journal_entries']} entries from {file_name}")
    return record


def import_pdf(file_path: str, user_id: str = config.USER_ID, default_year: Optional[int] = None) -> DataImport:
    """Import journal entries, habits and climbing sessions found in a PDF."""
    default_year = default_year or datetime.now().year
    record = _new_data_import(Path(file_path).name, 'pdf')

    try:
        document = parse_document(extract_pdf_text(file_path))
    except ValidationError as e:
        record.status = 'error'
        record.errors.append(str(e))
        return record

    _import_dated_entries(document.journal_entries, user_id, default_year, record)

    for habit in document.habits:
        if insert_habit(user_id, habit):
            record.items_imported['habits'] += 1
        else:
            record.errors.append(f"Failed to import habit '{habit['title']}'")

    for session in document.climbing_sessions:
        if insert_climbing_session(user_id, session):
            record.items_imported['climbing_sessions'] += 1
        else:
            record.errors.append(f"Failed to import climbing session on {session['date']}")

    record.status = 'completed'
    return record
