import csv
import json

from life_tracker.database_manager import insert_journal_entry
from life_tracker.export_data import export_journal_csv, export_journal_json
from life_tracker.importer import import_json_data
from life_tracker.testing import TempDatabaseTestCase


class TestExport(TempDatabaseTestCase):
    def setUp(self):
        super().setUp()
        insert_journal_entry(self.user_id, '2024-05-02', 'Second day, with a comma.', title='Two',
                             mood='good', tags=['work', 'friends'])
        insert_journal_entry(self.user_id, '2024-05-01', 'First day.', title='One')
        insert_journal_entry('someone-else', '2024-05-03', 'Not mine.')

    def test_csv(self):
        count = export_journal_csv(user_id=self.user_id)
        self.assertEqual(count, 2)

        with open(self.tmp_path / 'exports' / 'journal_entries.csv', newline='', encoding='utf-8') as f:
            rows = list(csv.reader(f))
        self.assertEqual(rows[0], ['Date', 'Title', 'Mood', 'Tags', 'Content'])
        self.assertEqual(rows[1], ['2024-05-01', 'One', 'neutral', '', 'First day.'])
        self.assertEqual(rows[2], ['2024-05-02', 'Two', 'good', 'work, friends', 'Second day, with a comma.'])

    def test_csv_nothing_to_export(self):
        output = self.tmp_path / 'empty.csv'
        self.assertEqual(export_journal_csv(str(output), user_id='nobody'), 0)
        self.assertFalse(output.exists())

    def test_json_can_be_reimported(self):
        output = self.tmp_path / 'backup.json'
        self.assertEqual(export_journal_json(str(output), user_id=self.user_id), 2)

        with open(output, encoding='utf-8') as f:
            payload = json.load(f)
        self.assertEqual(payload['journalEntries'][0], {
            'date': '2024-05-01', 'title': 'One', 'entry': 'First day.', 'mood': 'neutral', 'tags': [],
        })

        record = import_json_data(payload, 'backup.json', user_id='new-user')
        self.assertEqual(record.items_imported['journal_entries'], 2)
        self.assertEqual(record.status, 'completed')
