import unittest
from datetime import datetime, timedelta, timezone, date
from unittest import mock

from life_tracker import summary_generator
from life_tracker.database_manager import (
    get_latest_analyses,
    insert_analysis_summaries,
    insert_expense,
    insert_habit,
    insert_journal_entry,
    insert_net_worth_entry,
    upsert_summary,
)
from life_tracker.error_manager import get_failed_analyses
from life_tracker.errors import LLMError, ValidationError
from life_tracker.llm_manager import LLMResponse
from life_tracker.models import PeriodType
from life_tracker.summary_generator import (
    analyze_user_data,
    bulk_analyze,
    calculate_period,
    consistency_score,
    describe_net_worth_trend,
    extract_journal_themes,
    extract_key_events,
    generate_summary,
    group_by_month,
    is_stale,
    longest_streak,
)
from life_tracker.testing import TempDatabaseTestCase


def fake_response(text='A thoughtful summary.'):
    return LLMResponse(content=text, model='gpt-4.1-mini',
                       usage={'prompt_tokens': 100, 'completion_tokens': 50, 'total_tokens': 150})


class TestCalculatePeriod(unittest.TestCase):
    when = datetime(2024, 5, 15, 13, 30)  # a Wednesday

    def test_daily(self):
        period = calculate_period('daily', self.when)
        self.assertEqual(period.start, datetime(2024, 5, 15))
        self.assertEqual(period.end.date(), date(2024, 5, 15))
        self.assertEqual(period.end.hour, 23)

    def test_weekly_starts_sunday(self):
        period = calculate_period('weekly', self.when)
        self.assertEqual(period.start.date(), date(2024, 5, 12))
        self.assertEqual(period.end.date(), date(2024, 5, 18))

        sunday = calculate_period(PeriodType.WEEKLY, datetime(2024, 5, 12))
        self.assertEqual(sunday.start.date(), date(2024, 5, 12))

    def test_monthly_quarterly_yearly(self):
        self.assertEqual(calculate_period('monthly', self.when).end.date(), date(2024, 5, 31))
        quarter = calculate_period('quarterly', self.when)
        self.assertEqual((quarter.start.date(), quarter.end.date()), (date(2024, 4, 1), date(2024, 6, 30)))
        year = calculate_period('yearly', self.when)
        self.assertEqual((year.start.date(), year.end.date()), (date(2024, 1, 1), date(2024, 12, 31)))
        self.assertEqual(calculate_period('monthly', datetime(2024, 2, 10)).end.date(), date(2024, 2, 29))

    def test_unknown_type(self):
        with self.assertRaises(ValidationError):
            calculate_period('fortnightly', self.when)


class TestAnalysisHelpers(unittest.TestCase):
    entries = [
        {'date': '2024-05-12', 'title': 'Great send', 'content': 'x', 'mood': 'great',
         'tags': ['climbing', 'friends'], 'context_data': {'dayRating': 5}},
        {'date': '2024-05-13', 'title': '', 'content': 'A slow but steady day of work on the project.',
         'mood': 'neutral', 'tags': ['work', 'climbing'], 'context_data': {'dayRating': 4}},
        {'date': '2024-05-14', 'title': 'Tired', 'content': 'y', 'mood': 'neutral',
         'tags': [], 'context_data': {}},
    ]

    def test_themes_and_events(self):
        self.assertEqual(extract_journal_themes(self.entries), 'climbing, friends, work')
        self.assertEqual(extract_journal_themes([]), 'No consistent themes')
        self.assertEqual(extract_key_events(self.entries),
                         'Great send; A slow but steady day of work on the project.')
        self.assertEqual(extract_key_events(self.entries[2:]), 'No standout events')

    def test_analyze_user_data(self):
        analysis = analyze_user_data({
            'journal_entries': self.entries,
            'expenses': [{'amount': 10, 'category': 'groceries'}, {'amount': 4.5, 'category': 'eating out'}],
            'habits': [{'completed': True}, {'completed': False}],
            'climbing_sessions': [],
            'net_worth_entries': [{'date': '2024-05-01', 'cash_equivalents': 10}],
        })
        self.assertEqual(analysis['totalExpenses'], 14.5)
        self.assertEqual(analysis['avgDayRating'], 4.5)
        self.assertEqual(analysis['moodCounts'], {'great': 1, 'neutral': 2})
        self.assertEqual(analysis['habitCompletion']['percentage'], 50)
        self.assertEqual(analysis['journalCount'], 3)
        self.assertIsNone(analysis['netWorthChange'])

    def test_staleness(self):
        now = datetime(2024, 5, 15, 12, tzinfo=timezone.utc)
        self.assertFalse(is_stale((now - timedelta(hours=23)).isoformat(), now=now))
        self.assertTrue(is_stale((now - timedelta(hours=25)).isoformat(), now=now))
        self.assertFalse(is_stale((now - timedelta(days=6)).isoformat(), timedelta(days=7), now=now))

    def test_bulk_helpers(self):
        self.assertEqual(sorted(group_by_month(self.entries + [{'date': '2024-06-01'}])), ['2024-05', '2024-06'])
        habits = [{'date': f'2024-05-0{d}', 'completed': d != 3} for d in range(1, 7)]
        self.assertEqual(longest_streak(habits), 3)
        daily = [{'date': f'2024-05-{d:02d}'} for d in range(1, 8)]
        self.assertEqual(consistency_score(daily), 100)
        self.assertEqual(consistency_score(daily[:3]), 0)
        self.assertEqual(describe_net_worth_trend([{'date': '2024-01-01', 'cash_equivalents': 100}]),
                         'Insufficient data')
        self.assertEqual(describe_net_worth_trend([
            {'date': '2024-01-01', 'cash_equivalents': 100},
            {'date': '2024-02-01', 'cash_equivalents': 120},
        ]), 'Strong growth (+20.0%)')


class TestGenerateSummary(TempDatabaseTestCase):
    when = datetime(2024, 5, 15)

    def test_not_enough_data(self):
        with mock.patch.object(summary_generator, 'query_llm') as query:
            result = generate_summary('weekly', self.when, self.user_id)
        self.assertTrue(result['insufficient_data'])
        self.assertEqual(result['summary'], 'Not enough data for weekly summary. Keep tracking to see insights!')
        query.assert_not_called()

    def test_generates_and_stores(self):
        insert_journal_entry(self.user_id, '2024-05-13', 'Good climbing session.', tags=['climbing'],
                             context_data={'dayRating': 4})
        insert_expense(self.user_id, {'date': '2024-05-14', 'amount': 12.0, 'category': 'eating out'})
        insert_journal_entry(self.user_id, '2024-05-20', 'Outside the week.')

        with mock.patch.object(summary_generator, 'query_llm', return_value=fake_response()) as query:
            result = generate_summary('weekly', self.when, self.user_id)

        self.assertEqual(result['summary'], 'A thoughtful summary.')
        self.assertEqual(result['period']['type'], 'weekly')
        prompt = query.call_args[0][0]
        self.assertIn('"journalCount": 1', prompt)
        self.assertIn('"totalExpenses": 12.0', prompt)
        self.assertIn('Journal Themes: climbing', prompt)
        self.assertEqual(query.call_args.kwargs['max_tokens'], 800)
        self.assertEqual(query.call_args.kwargs['temperature'], 0.7)

        with mock.patch.object(summary_generator, 'query_llm') as second:
            cached = generate_summary('weekly', self.when, self.user_id)
        second.assert_not_called()
        self.assertTrue(cached['cached'])
        self.assertEqual(cached['summary'], 'A thoughtful summary.')

    def test_stale_summary_is_regenerated(self):
        period = calculate_period('weekly', self.when)
        upsert_summary(self.user_id, 'weekly', period.start.isoformat(), period.end.isoformat(), 'Old text', {})
        insert_journal_entry(self.user_id, '2024-05-13', 'Good climbing session.')

        with mock.patch.object(summary_generator, 'is_stale', return_value=True), \
                mock.patch.object(summary_generator, 'query_llm', return_value=fake_response('New text')):
            result = generate_summary('weekly', self.when, self.user_id)
        self.assertEqual(result['summary'], 'New text')

    def test_net_worth_change_in_prompt(self):
        insert_journal_entry(self.user_id, '2024-05-02', 'Checked the accounts today.')
        insert_net_worth_entry(self.user_id, {'date': '2024-05-01', 'cash_equivalents': 1000})
        insert_net_worth_entry(self.user_id, {'date': '2024-05-31', 'cash_equivalents': 1500, 'credit_cards': 100})

        with mock.patch.object(summary_generator, 'query_llm', return_value=fake_response()) as query:
            generate_summary('monthly', self.when, self.user_id)
        self.assertIn('"netWorthChange": 400.0', query.call_args[0][0])

    def test_llm_failure_is_logged(self):
        insert_journal_entry(self.user_id, '2024-05-13', 'Good climbing session.')
        with mock.patch.object(summary_generator, 'query_llm', side_effect=LLMError('Empty response from LLM')):
            with self.assertRaises(LLMError):
                generate_summary('weekly', self.when, self.user_id)

        errors = get_failed_analyses('generate-summary')
        self.assertEqual(len(errors), 1)
        self.assertEqual(errors[0]['error_message'], 'Empty response from LLM')


class TestBulkAnalyze(TempDatabaseTestCase):
    def _seed(self, month_entries=5, habits=0, expenses=0):
        for day in range(1, month_entries + 1):
            insert_journal_entry(self.user_id, f'2024-03-{day:02d}', f'March entry number {day}.', mood='good')
        insert_journal_entry(self.user_id, '2024-04-01', 'A lone April entry.')
        for i in range(habits):
            insert_habit(self.user_id, {'date': f'2024-03-{i % 28 + 1:02d}', 'title': 'Stretch', 'completed': i % 2 == 0})
        for i in range(expenses):
            insert_expense(self.user_id, {'date': f'2024-03-{i % 28 + 1:02d}', 'amount': 5, 'category': 'groceries'})

    def test_no_entries(self):
        with mock.patch.object(summary_generator, 'query_llm') as query:
            result = bulk_analyze(self.user_id)
        self.assertEqual(result, {'message': 'No journal entries to analyze', 'summaries': []})
        query.assert_not_called()

    def test_monthly_and_patterns(self):
        self._seed()
        with mock.patch.object(summary_generator, 'query_llm', return_value=fake_response()) as query:
            result = bulk_analyze(self.user_id)

        self.assertEqual(result['types'], ['monthly', 'patterns'])
        self.assertEqual(query.call_count, 2)
        stored = get_latest_analyses(self.user_id, limit=10)
        monthly = [a for a in stored if a['type'] == 'monthly'][0]
        self.assertEqual(monthly['period_key'], '2024-03')
        self.assertEqual(monthly['metadata']['entry_count'], 5)

    def test_habit_and_financial_thresholds(self):
        self._seed(month_entries=4, habits=31, expenses=51)
        with mock.patch.object(summary_generator, 'query_llm', return_value=fake_response()):
            result = bulk_analyze(self.user_id)
        self.assertEqual(result['types'], ['patterns', 'habits', 'financial'])

    def test_recent_analysis_is_reused(self):
        self._seed()
        insert_analysis_summaries([{
            'user_id': self.user_id, 'type': 'patterns', 'period_key': 'all-time', 'content': 'Earlier',
        }])
        with mock.patch.object(summary_generator, 'query_llm') as query:
            result = bulk_analyze(self.user_id)
        self.assertEqual(result['message'], 'Recent analysis already exists')
        query.assert_not_called()

        with mock.patch.object(summary_generator, 'query_llm', return_value=fake_response()):
            forced = bulk_analyze(self.user_id, force_regenerate=True)
        self.assertEqual(forced['summariesCreated'], 2)

    def test_failure_stores_nothing(self):
        self._seed()
        with mock.patch.object(summary_generator, 'query_llm', side_effect=LLMError('boom')):
            with self.assertRaises(LLMError):
                bulk_analyze(self.user_id)
        self.assertEqual(get_latest_analyses(self.user_id), [])
        self.assertEqual(len(get_failed_analyses('bulk-analyze')), 1)


if __name__ == '__main__':
    unittest.main()
