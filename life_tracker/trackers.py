import re
import logging
from collections import defaultdict
from datetime import date, datetime, time, timedelta
from typing import Dict, Any, List, Optional, Iterable, Tuple

from . import config


def _as_date(value) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not value:
        return None
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        logging.debug(f"Ignoring unparseable date '{value}'")
        return None


# --- Habits ---

def habit_streak(history: Iterable, today: Optional[date] = None) -> int:
    """Consecutive completed days ending today. A missed today means no streak."""
    today = today or date.today()
    completed = {d for d in (_as_date(value) for value in history) if d}

    streak = 0
    check = today
    while check in completed:
        streak += 1
        check -= timedelta(days=1)
    return streak


def habit_completion_stats(habits: List[Dict[str, Any]]) -> Dict[str, int]:
    total = len(habits)
    completed = sum(1 for habit in habits if habit.get('completed'))
    return {
        'total': total,
        'completed': completed,
        'percentage': round(completed / total * 100) if total else 0,
    }


# --- Climbing ---

def climbing_stats(sessions: List[Dict[str, Any]]) -> Dict[str, int]:
    routes = [route for session in sessions for route in (session.get('routes') or [])]
    completed = sum(1 for route in routes if route.get('completed'))
    return {
        'sessions': len(sessions),
        'totalRoutes': len(routes),
        'completedRoutes': completed,
        'completionRate': round(completed / len(routes) * 100) if routes else 0,
    }


def grade_send_counts(entries: Iterable[Dict[str, Any]], since: Optional[date] = None) -> Dict[str, int]:
    """
    Completed sends per tracked grade.

    Entries carry either a `routes` list or a legacy `sends` mapping of
    grade to count; grades outside the tracked set are ignored.
    """
    counts = {grade: 0 for grade in config.TRACKED_GRADES}

    for entry in entries:
        entry_date = _as_date(entry.get('date'))
        if since and (entry_date is None or entry_date < since):
            continue

        if entry.get('routes'):
            for route in entry['routes']:
                if route.get('completed') and route.get('grade') in counts:
                    counts[route['grade']] += 1
        elif entry.get('sends'):
            for grade, count in entry['sends'].items():
                if grade in counts:
                    counts[grade] += int(count)

    return counts


# --- Expenses ---

AMOUNT_PATTERN = re.compile(r'\$?(\d+\.?\d*)')


def parse_natural_language_amount(text: str) -> Dict[str, Any]:
    """Pull an amount, category and description out of text like "$12.50 lunch at the cafe"."""
    match = AMOUNT_PATTERN.search(text)
    amount = float(match.group(1)) if match else 0.0

    category = config.DEFAULT_EXPENSE_CATEGORY
    lowered = text.lower()
    for name, keywords in config.EXPENSE_CATEGORY_KEYWORDS.items():
        if any(keyword in lowered for keyword in keywords):
            category = name
            break

    description = AMOUNT_PATTERN.sub('', text, count=1).strip()
    return {
        'amount': amount,
        'description': description or text,
        'category': category,
    }


def group_expenses_by_day(expenses: List[Dict[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
    grouped = defaultdict(list)
    for expense in expenses:
        grouped[str(expense['date'])[:10]].append(expense)
    return dict(grouped)


def group_expenses_by_category(expenses: List[Dict[str, Any]]) -> Dict[str, float]:
    grouped = defaultdict(float)
    for expense in expenses:
        grouped[expense.get('category') or 'other'] += float(expense.get('amount') or 0)
    return dict(grouped)


RANGE_DAYS = {
    'week': 6,
    'month': 29,
    '3months': 89,
    '6months': 179,
    'year': 364,
}


def get_date_range(range_name: str, now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """Start and end datetimes for a named range; unknown names cover today only."""
    now = now or datetime.now()
    end = datetime.combine(now.date(), time.max)
    start = datetime.combine(now.date(), time.min)

    if range_name in RANGE_DAYS:
        start -= timedelta(days=RANGE_DAYS[range_name])
    elif range_name == 'all':
        start = start.replace(year=config.EARLIEST_IMPORT_YEAR, month=1, day=1)

    return start, end


# --- Net worth ---

def cash_net_worth(entry: Dict[str, Any]) -> float:
    return float(entry.get('cash_equivalents') or 0) - float(entry.get('credit_cards') or 0)


def total_asset_value(entry: Dict[str, Any]) -> float:
    """Active itemised assets if the entry has any, else its assets column."""
    detail = entry.get('assets_detail') or []
    if detail:
        return sum(float(asset.get('value') or 0) for asset in detail if asset.get('isActive', True))
    return float(entry.get('assets') or 0)


def total_net_worth(entry: Dict[str, Any]) -> float:
    return cash_net_worth(entry) + total_asset_value(entry) - float(entry.get('liabilities') or 0)


def net_worth_change(entries: List[Dict[str, Any]]) -> Optional[float]:
    """Latest total minus the one before it; None with fewer than two entries."""
    if len(entries) < 2:
        return None
    latest, previous = sorted(entries, key=lambda e: str(e['date']), reverse=True)[:2]
    return total_net_worth(latest) - total_net_worth(previous)


def net_worth_summary(entries: List[Dict[str, Any]]) -> Dict[str, float]:
    if not entries:
        return {
            'cashNetWorth': 0,
            'totalNetWorth': 0,
            'monthlyChange': 0,
            'monthlyChangePercent': 0,
            'allTimeHigh': 0,
            'allTimeLow': 0,
            'totalAssetValue': 0,
        }

    ordered = sorted(entries, key=lambda e: str(e['date']), reverse=True)
    latest = ordered[0]
    total = total_net_worth(latest)

    monthly_change = 0.0
    monthly_change_percent = 0.0
    if len(ordered) > 1:
        previous_total = total_net_worth(ordered[1])
        monthly_change = total - previous_total
        if previous_total:
            monthly_change_percent = monthly_change / previous_total * 100

    totals = [total_net_worth(entry) for entry in ordered]
    return {
        'cashNetWorth': cash_net_worth(latest),
        'totalNetWorth': total,
        'monthlyChange': monthly_change,
        'monthlyChangePercent': monthly_change_percent,
        'allTimeHigh': max(totals),
        'allTimeLow': min(totals),
        'totalAssetValue': total_asset_value(latest),
    }
