"""
Periodic summaries (daily through yearly) and the bulk historical analysis.

Both read the tracker tables for a user, reduce them to a compact analysis
dict and hand that to the LLM. Results are stored so repeat requests inside
the freshness window are served from the database.
"""
import json
import time
import logging
from calendar import monthrange
from collections import Counter, defaultdict
from datetime import datetime, timedelta, timezone, date
from typing import Dict, List, Optional, Any, Union

from . import config
from .database_manager import (
    get_journal_entries,
    get_expenses,
    get_income,
    get_habits,
    get_climbing_sessions,
    get_net_worth_entries,
    get_summary,
    upsert_summary,
    get_latest_analyses,
    insert_analysis_summaries,
    now_iso,
)
from .error_manager import log_error
from .errors import LLMError
from .llm_manager import query_llm, get_active_model
from .models import PeriodType, SummaryPeriod
from .trackers import (
    habit_completion_stats,
    climbing_stats,
    group_expenses_by_category,
    net_worth_change,
    total_net_worth,
)
from .usage_tracker import track_function_call

UserData = Dict[str, List[Dict[str, Any]]]

SUMMARY_SYSTEM_PROMPT = """You are creating a {period_type} summary for the user's life tracking data.
Your summary should be insightful, supportive, and actionable. Focus on:
1. Key achievements and positive patterns
2. Areas of growth or concern
3. Interesting insights from the data
4. Gentle suggestions for improvement
5. Encouragement and validation

Keep the tone warm, personal, and constructive. Use "you" to address the user directly."""


def calculate_period(period_type: Union[str, PeriodType], when: Optional[datetime] = None) -> SummaryPeriod:
    """Period boundaries around `when`. Weeks start on Sunday."""
    if not isinstance(period_type, PeriodType):
        period_type = PeriodType.from_string(period_type)
    when = when or datetime.now()
    day = when.date() if isinstance(when, datetime) else when

    if period_type == PeriodType.DAILY:
        start, end = day, day
    elif period_type == PeriodType.WEEKLY:
        # date.weekday() is Monday=0; shift so Sunday=0
        start = day - timedelta(days=(day.weekday() + 1) % 7)
        end = start + timedelta(days=6)
    elif period_type == PeriodType.MONTHLY:
        start = day.replace(day=1)
        end = day.replace(day=monthrange(day.year, day.month)[1])
    elif period_type == PeriodType.QUARTERLY:
        first_month = (day.month - 1) // 3 * 3 + 1
        start = date(day.year, first_month, 1)
        end = date(day.year, first_month + 2, monthrange(day.year, first_month + 2)[1])
    else:
        start = date(day.year, 1, 1)
        end = date(day.year, 12, 31)

    return SummaryPeriod(
        start=datetime.combine(start, datetime.min.time()),
        end=datetime.combine(end, datetime.max.time()),
        type=period_type
    )


def fetch_user_data_for_period(user_id: str, period: SummaryPeriod) -> UserData:
    start = period.start.date().isoformat()
    end = period.end.date().isoformat()
    return {
        'journal_entries': get_journal_entries(user_id, start, end),
        'expenses': get_expenses(user_id, start, end),
        'habits': get_habits(user_id, start, end),
        'climbing_sessions': get_climbing_sessions(user_id, start, end),
        'net_worth_entries': get_net_worth_entries(user_id, start, end, latest_first=True, limit=2),
    }


def has_enough_data(user_data: UserData) -> bool:
    return any(user_data.get(key) for key in ('journal_entries', 'expenses', 'habits', 'climbing_sessions'))


def is_stale(created_at: str, max_age: Optional[timedelta] = None, now: Optional[datetime] = None) -> bool:
    """True when created_at is older than max_age (the summary staleness window by default)."""
    max_age = max_age or timedelta(hours=config.SUMMARY_STALE_HOURS)
    now = now or datetime.now(timezone.utc)
    created = datetime.fromisoformat(created_at)
    if created.tzinfo is None:
        created = created.replace(tzinfo=timezone.utc)
    return now - created > max_age


def _day_rating(entry: Dict[str, Any]) -> Optional[float]:
    context = entry.get('context_data') or {}
    return context.get('dayRating') if isinstance(context, dict) else None


def analyze_user_data(user_data: UserData) -> Dict[str, Any]:
    entries = user_data['journal_entries']
    ratings = [r for r in (_day_rating(e) for e in entries) if r]

    return {
        'totalExpenses': sum(float(e.get('amount') or 0) for e in user_data['expenses']),
        'avgDayRating': sum(ratings) / len(ratings) if ratings else 0,
        'moodCounts': dict(Counter(e['mood'] for e in entries if e.get('mood'))),
        'habitCompletion': habit_completion_stats(user_data['habits']),
        'climbingStats': climbing_stats(user_data['climbing_sessions']),
        'expensesByCategory': group_expenses_by_category(user_data['expenses']),
        'journalCount': len(entries),
        'netWorthChange': net_worth_change(user_data['net_worth_entries']),
    }


def extract_journal_themes(entries: List[Dict[str, Any]]) -> str:
    """The five most used tags."""
    counts = Counter(tag for entry in entries for tag in (entry.get('tags') or []))
    return ', '.join(tag for tag, _ in counts.most_common(5)) or 'No consistent themes'


def extract_key_events(entries: List[Dict[str, Any]]) -> str:
    """Titles of the first three days rated 4 or better."""
    high_rated = [e for e in entries if (_day_rating(e) or 0) >= 4][:3]
    return '; '.join(e.get('title') or (e.get('content') or '')[:50] for e in high_rated) or 'No standout events'


def build_summary_prompt(user_data: UserData, period: SummaryPeriod) -> str:
    analysis = analyze_user_data(user_data)
    entries = user_data['journal_entries']
    return f"""Create a {period.type.value} summary for the period {period.start:%a %b %d %Y} to {period.end:%a %b %d %Y}.

Data Analysis:
{json.dumps(analysis, indent=2)}

Journal Themes: {extract_journal_themes(entries)}
Key Events: {extract_key_events(entries)}

Please create a comprehensive but concise summary (300-500 words) that helps the user understand their patterns and progress."""


def generate_summary(
    period_type: Union[str, PeriodType] = PeriodType.WEEKLY,
    when: Optional[datetime] = None,
    user_id: str = config.USER_ID,
    force: bool = False
) -> Dict[str, Any]:
    """
    Summary for the period containing `when`.

    Returns a dict with the summary text plus either `cached`,
    `insufficient_data` or the period bounds.
    """
    period = calculate_period(period_type, when)
    period_start = period.start.isoformat()
    period_end = period.end.isoformat()

    existing = get_summary(user_id, period.type.value, period_start, period_end)
    if existing and not force and not is_stale(existing['created_at']):
        logging.info(f"Using stored {period.type.value} summary from {existing['created_at']}")
        return {'summary': existing['content'], 'cached': True, 'createdAt': existing['created_at']}

    user_data = fetch_user_data_for_period(user_id, period)
    if not has_enough_data(user_data):
        return {
            'summary': f"Not enough data for {period.type.value} summary. Keep tracking to see insights!",
            'insufficient_data': True,
        }

    start = time.monotonic()
    model = get_active_model()
    try:
        response = query_llm(
            build_summary_prompt(user_data, period),
            system_prompt=SUMMARY_SYSTEM_PROMPT.format(period_type=period.type.value),
            temperature=0.7,
            max_tokens=800
        )
    except LLMError as e:
        track_function_call('generate-summary', user_id, model, start, status='error', error_message=str(e))
        log_error('generate-summary', e, period_start=period_start, period_end=period_end,
                  context={'user_id': user_id, 'period_type': period.type.value})
        raise

    track_function_call('generate-summary', user_id, response.model, start, usage=response.usage)

    upsert_summary(user_id, period.type.value, period_start, period_end, response.content, {
        'entry_count': len(user_data['journal_entries']),
        'expense_count': len(user_data['expenses']),
        'habit_count': len(user_data['habits']),
        'climbing_sessions': len(user_data['climbing_sessions']),
    })

    return {
        'summary': response.content,
        'period': {'type': period.type.value, 'start': period_start, 'end': period_end},
    }


# --- Bulk analysis ---

def fetch_all_user_data(user_id: str) -> UserData:
    return {
        'journal_entries': get_journal_entries(user_id),
        'expenses': get_expenses(user_id),
        'income': get_income(user_id),
        'habits': get_habits(user_id),
        'climbing_sessions': get_climbing_sessions(user_id),
        'net_worth_entries': get_net_worth_entries(user_id),
    }


def group_by_month(entries: List[Dict[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
    groups = defaultdict(list)
    for entry in entries:
        groups[str(entry['date'])[:7]].append(entry)
    return dict(groups)


def longest_streak(habits: List[Dict[str, Any]]) -> int:
    longest = current = 0
    for habit in sorted(habits, key=lambda h: str(h['date'])):
        current = current + 1 if habit.get('completed') else 0
        longest = max(longest, current)
    return longest


def analyze_mood_trends(entries: List[Dict[str, Any]]) -> Dict[str, Any]:
    by_month: Dict[str, Counter] = defaultdict(Counter)
    for entry in entries:
        if entry.get('mood'):
            by_month[str(entry['date'])[:7]][entry['mood']] += 1
    return {
        'overall': dict(Counter(e['mood'] for e in entries if e.get('mood'))),
        'byMonth': {month: dict(counts) for month, counts in by_month.items()},
        'totalEntries': len(entries),
    }


def analyze_habit_patterns(habits: List[Dict[str, Any]]) -> Dict[str, Any]:
    day_names = ['Mon', 'Tue', 'Wed', 'Thu', 'Fri', 'Sat', 'Sun']
    totals = defaultdict(lambda: [0, 0])
    for habit in habits:
        weekday = date.fromisoformat(str(habit['date'])[:10]).weekday()
        totals[weekday][0] += 1
        if habit.get('completed'):
            totals[weekday][1] += 1
    return {
        'completionByDayOfWeek': [
            {'day': day_names[day], 'completionRate': round(completed / total * 100)}
            for day, (total, completed) in sorted(totals.items())
        ]
    }


def analyze_spending_patterns(expenses: List[Dict[str, Any]]) -> Dict[str, Any]:
    by_month = defaultdict(float)
    for expense in expenses:
        by_month[str(expense['date'])[:7]] += float(expense.get('amount') or 0)
    total = sum(by_month.values())
    return {
        'monthlyTotals': dict(by_month),
        'categoryTotals': group_expenses_by_category(expenses),
        'avgPerTransaction': total / len(expenses) if expenses else 0,
    }


def _average_rating(entries: List[Dict[str, Any]], newest_days: int, oldest_days: int, today: date) -> float:
    newest = today - timedelta(days=newest_days)
    oldest = today - timedelta(days=oldest_days)
    ratings = [
        _day_rating(e) for e in entries
        if oldest < date.fromisoformat(str(e['date'])[:10]) <= newest and _day_rating(e) is not None
    ]
    return sum(ratings) / len(ratings) if ratings else 0


def consistency_score(entries: List[Dict[str, Any]]) -> float:
    """100 for daily journaling, 20 points off per extra day between entries."""
    if len(entries) < 7:
        return 0
    dates = sorted(date.fromisoformat(str(e['date'])[:10]) for e in entries)
    gaps = [(later - earlier).days for earlier, later in zip(dates, dates[1:])]
    return max(0, 100 - (sum(gaps) / len(gaps) - 1) * 20)


def identify_growth_indicators(user_data: UserData, today: Optional[date] = None) -> Dict[str, Any]:
    today = today or date.today()
    entries = user_data['journal_entries']
    recent = _average_rating(entries, 0, 30, today)
    older = _average_rating(entries, 30, 90, today)
    return {
        'dayRatingTrend': 'improving' if recent > older else 'declining',
        'recentAvgDayRating': recent,
        'consistencyScore': consistency_score(entries),
    }


def describe_net_worth_trend(entries: List[Dict[str, Any]]) -> str:
    if len(entries) < 2:
        return 'Insufficient data'
    ordered = sorted(entries, key=lambda e: str(e['date']))
    first = total_net_worth(ordered[0])
    last = total_net_worth(ordered[-1])
    if not first:
        return 'Insufficient data'

    percent = (last - first) / abs(first) * 100
    if percent > 10:
        return f"Strong growth (+{percent:.1f}%)"
    if percent > 0:
        return f"Positive growth (+{percent:.1f}%)"
    if percent > -10:
        return f"Slight decline ({percent:.1f}%)"
    return f"Significant decline ({percent:.1f}%)"


def _run_analysis(prompt: str, system_prompt: str, max_tokens: int, user_id: str, label: str) -> str:
    start = time.monotonic()
    response = query_llm(prompt, system_prompt=system_prompt, temperature=0.7, max_tokens=max_tokens)
    track_function_call('bulk-analyze', user_id, response.model, start, usage=response.usage,
                        metadata={'analysis': label})
    return response.content


def monthly_analysis(entries: List[Dict[str, Any]], user_data: UserData, month_key: str, user_id: str) -> str:
    month_expenses = [e for e in user_data['expenses'] if str(e['date']).startswith(month_key)]
    month_habits = [h for h in user_data['habits'] if str(h['date']).startswith(month_key)]
    month_climbing = [c for c in user_data['climbing_sessions'] if str(c['date']).startswith(month_key)]
    spending = sum(float(e.get('amount') or 0) for e in month_expenses)
    excerpts = "\n\n".join(
        f"{e['date']}: {e.get('mood')} - {(e.get('content') or '')[:200]}..." for e in entries[:10]
    )

    prompt = f"""Analyze this month's journal entries and life data to create a comprehensive summary.

Month: {month_key}
Journal Entries: {len(entries)}
Total Spending: ${spending:.2f}
Habit Tracking Days: {len(month_habits)}
Climbing Sessions: {len(month_climbing)}

Key Journal Excerpts:
{excerpts}

Create a summary that identifies:
1. Major themes and emotional patterns
2. Significant events or milestones
3. Progress on habits and goals
4. Financial insights
5. Overall trajectory and growth

Keep it insightful and supportive, around 400 words."""

    return _run_analysis(
        prompt,
        'You are analyzing monthly life tracking data to provide insightful summaries that help '
        'users understand their patterns and growth.',
        600, user_id, f"monthly {month_key}"
    )


def patterns_analysis(user_data: UserData, user_id: str) -> str:
    entries = user_data['journal_entries']
    prompt = f"""Analyze all-time patterns across this user's life tracking data:

Time Period: {entries[0]['date']} to {entries[-1]['date']}
Total Entries: {len(entries)}

Mood Trends:
{json.dumps(analyze_mood_trends(entries), indent=2)}

Habit Patterns:
{json.dumps(analyze_habit_patterns(user_data['habits']), indent=2)}

Spending Patterns:
{json.dumps(analyze_spending_patterns(user_data['expenses']), indent=2)}

Growth Indicators:
{json.dumps(identify_growth_indicators(user_data), indent=2)}

Create a comprehensive pattern analysis that identifies:
1. Long-term emotional and behavioral patterns
2. Seasonal or cyclical trends
3. Key life transitions and turning points
4. Persistent challenges and how they've evolved
5. Areas of consistent growth and success
6. Recommendations for leveraging positive patterns

Make it deeply insightful and actionable, around 600 words."""

    return _run_analysis(
        prompt,
        'You are a data analyst specializing in personal development, creating deep insights from '
        'life tracking data.',
        800, user_id, 'patterns'
    )


def habit_analysis(habits: List[Dict[str, Any]], user_id: str) -> str:
    by_title = defaultdict(list)
    for habit in habits:
        by_title[habit.get('title') or 'untitled'].append(habit)

    habit_stats = [
        {
            'habit': title,
            'totalDays': len(rows),
            'completionRate': round(sum(1 for r in rows if r.get('completed')) / len(rows) * 100),
            'longestStreak': longest_streak(rows),
        }
        for title, rows in by_title.items()
    ]

    prompt = f"""Analyze habit tracking data to provide insights and recommendations:

Habit Statistics:
{json.dumps(habit_stats, indent=2)}

Total Tracking Days: {len(habits)}
Unique Habits Tracked: {len(by_title)}

Create an analysis that covers:
1. Which habits show the strongest consistency
2. Patterns in habit completion (day of week, time of month, etc.)
3. Correlation between different habits
4. Recommendations for improving habit adherence
5. Celebrating successes and progress

Keep it motivational and practical, around 400 words."""

    return _run_analysis(
        prompt,
        'You are a habit formation coach analyzing tracking data to help users build better routines.',
        500, user_id, 'habits'
    )


def financial_analysis(user_data: UserData, user_id: str) -> str:
    expenses = user_data['expenses']
    total_expenses = sum(float(e.get('amount') or 0) for e in expenses)
    total_income = sum(float(i.get('amount') or 0) for i in user_data['income'])
    months = len({str(e['date'])[:7] for e in expenses}) or 1
    top_categories = sorted(group_expenses_by_category(expenses).items(), key=lambda kv: kv[1], reverse=True)[:5]

    prompt = f"""Analyze financial data to provide insights and recommendations:

Financial Overview:
- Total Expenses: ${total_expenses:.2f}
- Total Income: ${total_income:.2f}
- Average Monthly Expenses: ${total_expenses / months:.2f}
- Net Worth Trend: {describe_net_worth_trend(user_data['net_worth_entries'])}

Top Spending Categories:
{chr(10).join(f"{category}: ${amount:.2f}" for category, amount in top_categories)}

Create a financial analysis that includes:
1. Spending patterns and trends
2. Opportunities for optimization
3. Progress toward financial stability
4. Actionable recommendations
5. Positive financial habits to reinforce

Keep it constructive and encouraging, around 400 words."""

    return _run_analysis(
        prompt,
        'You are a supportive financial advisor analyzing spending data to help users improve their '
        'financial health.',
        500, user_id, 'financial'
    )


def bulk_analyze(user_id: str = config.USER_ID, force_regenerate: bool = False) -> Dict[str, Any]:
    """
    Analyze a user's whole history and store the results.

    Produces a monthly analysis for each month with enough entries, an
    all-time patterns analysis, and habit and financial analyses when
    there is enough of that data. Skipped when a recent analysis exists.
    """
    if not force_regenerate:
        existing = get_latest_analyses(user_id, limit=1)
        if existing and not is_stale(existing[0]['created_at'], timedelta(days=config.BULK_ANALYSIS_FRESH_DAYS)):
            return {
                'message': 'Recent analysis already exists',
                'lastAnalyzed': existing[0]['created_at'],
                'summaries': existing,
            }

    user_data = fetch_all_user_data(user_id)
    entries = user_data['journal_entries']
    if not entries:
        return {'message': 'No journal entries to analyze', 'summaries': []}

    analyses = []
    try:
        for month_key, month_entries in group_by_month(entries).items():
            if len(month_entries) < config.BULK_MONTH_MIN_ENTRIES:
                continue
            logging.info(f"Analyzing {month_key} ({len(month_entries)} entries)")
            analyses.append({
                'user_id': user_id,
                'type': 'monthly',
                'period_key': month_key,
                'content': monthly_analysis(month_entries, user_data, month_key, user_id),
                'metadata': {
                    'entry_count': len(month_entries),
                    'start_date': month_entries[0]['date'],
                    'end_date': month_entries[-1]['date'],
                },
            })

        analyses.append({
            'user_id': user_id,
            'type': 'patterns',
            'period_key': 'all-time',
            'content': patterns_analysis(user_data, user_id),
            'metadata': {
                'total_entries': len(entries),
                'date_range': {'start': entries[0]['date'], 'end': entries[-1]['date']},
            },
        })

        if len(user_data['habits']) > config.BULK_HABIT_MIN_ROWS:
            analyses.append({
                'user_id': user_id,
                'type': 'habits',
                'period_key': 'all-time',
                'content': habit_analysis(user_data['habits'], user_id),
                'metadata': {'total_habit_entries': len(user_data['habits'])},
            })

        if len(user_data['expenses']) > config.BULK_EXPENSE_MIN_ROWS:
            analyses.append({
                'user_id': user_id,
                'type': 'financial',
                'period_key': 'all-time',
                'content': financial_analysis(user_data, user_id),
                'metadata': {
                    'total_expenses': len(user_data['expenses']),
                    'total_income': len(user_data['income']),
                },
            })
    except LLMError as e:
        track_function_call('bulk-analyze', user_id, get_active_model(), time.monotonic(),
                            status='error', error_message=str(e))
        log_error('bulk-analyze', e, context={'user_id': user_id, 'completed': len(analyses)})
        raise

    created_at = now_iso()
    for analysis in analyses:
        analysis['created_at'] = created_at
    insert_analysis_summaries(analyses)

    return {
        'message': 'Bulk analysis completed successfully',
        'summariesCreated': len(analyses),
        'types': [a['type'] for a in analyses],
    }
