from unittest import mock

from life_tracker import config, main as cli
from life_tracker.database_manager import get_journal_entries
from life_tracker.error_manager import get_failed_analyses, log_error, reset_rate_limits
from life_tracker.errors import LLMError
from life_tracker.importer import list_backups
from life_tracker.testing import TempDatabaseTestCase

JOURNAL = (
    "Sun, Jun 1\tWent climbing with Sam, sent my first V6.\n"
    "Mon, Jun 2\tRest day. Read a book and went to bed early.\n"
)


class TestCli(TempDatabaseTestCase):
    def setUp(self):
        super().setUp()
        patches = [
            mock.patch.object(config, 'USER_ID', self.user_id),
            mock.patch.object(config, 'CURRENT_LLM_BACKEND', config.DEFAULT_LLM_BACKEND),
            mock.patch.object(config, 'CLI_SELECTED_MODEL', None),
            mock.patch.object(cli, 'setup_logging'),
        ]
        for patch in patches:
            patch.start()
            self.addCleanup(patch.stop)
        reset_rate_limits()
        self.journal = self.tmp_path / 'journal.txt'
        self.journal.write_text(JOURNAL, encoding='utf-8')

    def test_import_then_rollback(self):
        self.assertEqual(cli.main(['import', str(self.journal), '--year', '2025', '--yes']), 0)
        self.assertEqual([e['date'] for e in get_journal_entries(self.user_id)], ['2025-06-01', '2025-06-02'])

        backup_id = list_backups(self.user_id)[0].id
        self.assertEqual(cli.main(['rollback', backup_id, '--yes']), 0)
        self.assertEqual(get_journal_entries(self.user_id), [])

        # a second rollback is refused and reported
        self.assertEqual(cli.main(['rollback', backup_id, '--yes']), 1)

    def test_dry_run_imports_nothing(self):
        self.assertEqual(cli.main(['import', str(self.journal), '--year', '2025', '--dry-run']), 0)
        self.assertEqual(get_journal_entries(self.user_id), [])

    def test_year_out_of_range(self):
        self.assertEqual(cli.main(['import', str(self.journal), '--year', '1999']), 1)

    def test_missing_file(self):
        self.assertEqual(cli.main(['import', str(self.tmp_path / 'nope.txt')]), 1)

    def test_model_and_backend_flags(self):
        cli.main(['--backend', 'ollama', '--model', 'llama3.1:8b', 'usage'])
        self.assertEqual(config.CURRENT_LLM_BACKEND, 'ollama')
        self.assertEqual(config.CLI_SELECTED_MODEL, 'llama3.1:8b')

    def test_llm_errors_become_exit_codes(self):
        with mock.patch.object(cli, 'reflect_on_entry', side_effect=LLMError('No reflection generated')):
            self.assertEqual(cli.main(['reflect', '--text', 'A long day.']), 1)

    def test_rate_limit_holds_across_invocations(self):
        with mock.patch.object(config, 'RATE_LIMIT_MAX_REQUESTS', 2), \
                mock.patch.object(cli, 'reflect_on_entry', return_value='Well done.') as reflect:
            codes = [cli.main(['reflect', '--text', 'A long day.']) for _ in range(3)]
            # a fresh store, as a new CLI process would build it
            cli.create_tables()
            codes.append(cli.main(['reflect', '--text', 'A long day.']))

        self.assertEqual(codes, [0, 0, 1, 1])
        self.assertEqual(reflect.call_count, 2)

    def test_non_utf8_import_file(self):
        bad_file = self.tmp_path / 'bad.txt'
        bad_file.write_bytes(b'\xff\xfeSun, Jun 1\tnot text\n')
        self.assertEqual(cli.main(['import', str(bad_file), '--dry-run']), 1)
        self.assertEqual(cli.main(['import-json', str(bad_file)]), 1)

    def test_invalid_date_option(self):
        with mock.patch.object(cli, 'generate_summary') as summary:
            self.assertEqual(cli.main(['summary', 'weekly', '--date', 'yesterday']), 1)
        summary.assert_not_called()
        with mock.patch.object(cli, 'analyze_meal') as meal:
            self.assertEqual(cli.main(['meal', 'Toast', '--date', '2024-13-01']), 1)
        meal.assert_not_called()

    def test_errors_command(self):
        first = log_error('generate-summary', LLMError('Empty response from LLM'))
        log_error('bulk-analyze', LLMError('boom'))

        self.assertEqual(cli.main(['errors', '--type', 'bulk-analyze', '--list']), 0)
        self.assertEqual(cli.main(['errors', '--resolve', str(first), '--notes', 'retried']), 0)
        self.assertEqual([e['analysis_type'] for e in get_failed_analyses()], ['bulk-analyze'])
        # already resolved
        self.assertEqual(cli.main(['errors', '--resolve', str(first)]), 1)

    def test_unknown_entry_id(self):
        self.assertEqual(cli.main(['reflect', '--entry-id', 'missing']), 1)

    def test_export(self):
        cli.main(['import', str(self.journal), '--year', '2025', '--yes'])
        output = self.tmp_path / 'out.json'
        self.assertEqual(cli.main(['export', '--format', 'json', '--output', str(output)]), 0)
        self.assertTrue(output.exists())
