import csv
import json
import sqlite3
import logging
from pathlib import Path
from typing import Optional

from . import config
from .database_manager import get_journal_entries


def export_journal_csv(output_file: Optional[str] = None, user_id: str = config.USER_ID) -> int:
    """Export journal entries to a CSV file. Returns the number of rows written."""
    output_file = Path(output_file or config.EXPORT_DIR / 'journal_entries.csv')

    try:
        entries = get_journal_entries(user_id)
    except sqlite3.Error as e:
        logging.error(f"Error exporting data: {e}")
        return 0

    if not entries:
        logging.warning("No journal entries found to export")
        return 0

    output_file.parent.mkdir(parents=True, exist_ok=True)
    with open(output_file, 'w', newline='', encoding='utf-8') as f:
        writer = csv.writer(f)
        writer.writerow(['Date', 'Title', 'Mood', 'Tags', 'Content'])
        for entry in entries:
            writer.writerow([
                entry['date'],
                entry['title'],
                entry.get('mood') or '',
                ', '.join(entry.get('tags') or []),
                entry['content'],
            ])

    logging.info(f"Exported {len(entries)} entries to {output_file}")
    logging.info(f"Date range: {entries[0]['date']} to {entries[-1]['date']}")
    return len(entries)


def export_journal_json(output_file: Optional[str] = None, user_id: str = config.USER_ID) -> int:
    """Export journal entries as {"journalEntries": [...]}, the shape import-json reads."""
    output_file = Path(output_file or config.EXPORT_DIR / 'journal_entries.json')

    try:
        entries = get_journal_entries(user_id)
    except sqlite3.Error as e:
        logging.error(f"Error exporting data: {e}")
        return 0

    payload = {
        'journalEntries': [
            {
                'date': entry['date'],
                'title': entry['title'],
                'entry': entry['content'],
                'mood': entry.get('mood'),
                'tags': entry.get('tags') or [],
            }
            for entry in entries
        ]
    }

    output_file.parent.mkdir(parents=True, exist_ok=True)
    with open(output_file, 'w', encoding='utf-8') as f:
        json.dump(payload, f, indent=2, ensure_ascii=False)

    logging.info(f"Exported {len(entries)} entries to {output_file}")
    return len(entries)
