import json
import unittest
from unittest import mock

from life_tracker import config
from life_tracker.database_manager import get_db_connection
from life_tracker.error_manager import (
    check_rate_limit,
    get_error_summary,
    get_failed_analyses,
    log_error,
    mark_resolved,
    reset_rate_limits,
    sanitize_error,
    sanitize_log_data,
)
from life_tracker.errors import LLMError
from life_tracker.testing import TempDatabaseTestCase


class TestSanitizing(unittest.TestCase):
    def test_secrets_are_redacted(self):
        message = sanitize_error(Exception('call failed with Bearer abc.def-123 and sk-live_999'), limit=None)
        self.assertEqual(message, 'call failed with [REDACTED] and [REDACTED]')
        self.assertEqual(sanitize_error('connect postgres://me:pw@host/db'), 'connect [REDACTED]host/db')
        self.assertEqual(sanitize_error('password=hunter2 rejected'), '[REDACTED] rejected')

    def test_known_errors_are_reworded(self):
        self.assertEqual(sanitize_error('Rate limit exceeded'), 'Too many requests. Please wait and try again.')

    def test_defaults_and_truncation(self):
        self.assertEqual(sanitize_error(None), 'An error occurred')
        self.assertEqual(sanitize_error(Exception()), 'An error occurred')
        self.assertEqual(len(sanitize_error('x' * 500)), 100)
        self.assertEqual(len(sanitize_error('x' * 500, limit=None)), 500)

    def test_log_data(self):
        data = {
            'api_key': 'abc',
            'Password': 'pw',
            'nested': {'auth_token': 't', 'note': 'fine'},
            'items': ['Bearer xyz', 'plain'],
            'count': 3,
        }
        self.assertEqual(sanitize_log_data(data), {
            'api_key': '[REDACTED]',
            'Password': '[REDACTED]',
            'nested': {'auth_token': '[REDACTED]', 'note': 'fine'},
            'items': ['[REDACTED_TOKEN]', 'plain'],
            'count': 3,
        })


class TestRateLimit(TempDatabaseTestCase):
    def test_window(self):
        for _ in range(3):
            self.assertEqual(check_rate_limit('u', 'reflect', max_requests=3, window_seconds=60, now=1000),
                             (True, None))
        self.assertEqual(check_rate_limit('u', 'reflect', max_requests=3, window_seconds=60, now=1010),
                         (False, 1060))

        self.assertTrue(check_rate_limit('u', 'meal', max_requests=3, window_seconds=60, now=1010)[0])
        self.assertTrue(check_rate_limit('other', 'reflect', max_requests=3, window_seconds=60, now=1010)[0])

        # a new window opens once the old one has passed
        self.assertEqual(check_rate_limit('u', 'reflect', max_requests=3, window_seconds=60, now=1061),
                         (True, None))

    def test_window_is_stored_in_the_database(self):
        for _ in range(2):
            check_rate_limit('u', 'meal', max_requests=2, window_seconds=60, now=1000)

        conn = get_db_connection()
        try:
            row = conn.execute("SELECT request_count, reset_time FROM rate_limits WHERE rate_key = 'u:meal'").fetchone()
        finally:
            conn.close()
        self.assertEqual((row['request_count'], row['reset_time']), (2, 1060))

        # limits fall back to config when not passed
        with mock.patch.object(config, 'RATE_LIMIT_MAX_REQUESTS', 2), \
                mock.patch.object(config, 'RATE_LIMIT_WINDOW_SECONDS', 60):
            self.assertEqual(check_rate_limit('u', 'meal', now=1030), (False, 1060))

    def test_reset(self):
        check_rate_limit('u', 'meal', max_requests=1, now=1000)
        check_rate_limit('other', 'meal', max_requests=1, now=1000)
        reset_rate_limits('u')
        self.assertTrue(check_rate_limit('u', 'meal', max_requests=1, now=1001)[0])
        self.assertFalse(check_rate_limit('other', 'meal', max_requests=1, now=1001)[0])
        reset_rate_limits()
        self.assertTrue(check_rate_limit('other', 'meal', max_requests=1, now=1002)[0])


class TestErrorLog(TempDatabaseTestCase):
    def test_log_list_resolve(self):
        first = log_error('generate-summary', LLMError('Empty response from LLM'),
                          period_start='2024-05-12', period_end='2024-05-18',
                          context={'user_id': self.user_id, 'api_key': 'sk-secret'})
        second = log_error('bulk-analyze', LLMError('boom'), context={'completed': 1})

        failed = get_failed_analyses()
        self.assertEqual({e['error_id'] for e in failed}, {first, second})

        summary_errors = get_failed_analyses('generate-summary')
        self.assertEqual(len(summary_errors), 1)
        details = json.loads(summary_errors[0]['error_details'])
        self.assertEqual(details['error_type'], 'LLMError')
        self.assertEqual(details['context']['api_key'], '[REDACTED]')
        self.assertEqual(summary_errors[0]['period_start'], '2024-05-12')

        summary = get_error_summary()
        self.assertEqual(sorted(summary), ['bulk-analyze', 'generate-summary'])
        self.assertEqual(summary['bulk-analyze']['error_count'], 1)
        self.assertEqual(summary['bulk-analyze']['latest_message'], 'boom')
        self.assertEqual(list(get_error_summary('generate-summary')), ['generate-summary'])

        self.assertEqual(mark_resolved(first, 'Retried after quota reset'), 1)
        self.assertEqual(mark_resolved([first, 9999]), 0)
        self.assertEqual(mark_resolved([]), 0)
        self.assertEqual([e['error_id'] for e in get_failed_analyses()], [second])
        self.assertNotIn('generate-summary', get_error_summary())
        resolved = get_failed_analyses('generate-summary', include_resolved=True)[0]
        self.assertEqual(resolved['resolution_notes'], 'Retried after quota reset')
        self.assertTrue(resolved['resolved'])


if __name__ == '__main__':
    unittest.main()
