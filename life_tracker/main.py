import logging
import json
import sys
import argparse
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table

from . import config
from .cache_manager import ResponseCache
from .database_manager import create_tables, get_journal_entry, upsert_user_profile
from .error_manager import get_error_summary, get_failed_analyses, mark_resolved, sanitize_error, check_rate_limit
from .errors import LifeTrackerError, ValidationError
from .export_data import export_journal_csv, export_journal_json
from .importer import (
    approve_all,
    import_entries,
    import_json_data,
    import_pdf,
    list_backups,
    rollback_import,
    summarize_statuses,
)
from .journal_parser import parse_journal_text
from .llm_manager import LLMBackend
from .models import DuplicateMatch, ParsedEntry, PeriodType
from .reflection import reflect_on_entry, analyze_meal
from .summary_generator import generate_summary, bulk_analyze
from .usage_tracker import get_user_usage_stats

console = Console()

CONFIDENCE_STYLES = {'high': 'green', 'medium': 'yellow', 'low': 'red'}


def setup_logging(verbose: bool = False):
    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, config.LOG_LEVEL, logging.INFO),
        format=config.LOG_FORMAT
    )


def setup_database():
    """Initialize the database."""
    logging.info("Setting up database...")
    create_tables()


def _require_rate_limit(endpoint: str):
    allowed, reset_time = check_rate_limit(config.USER_ID, endpoint)
    if not allowed:
        wait = max(0, int(reset_time - datetime.now().timestamp()))
        raise ValidationError(f"Rate limit exceeded. Try again in {wait} seconds.")


def _read_text_file(file_path: str) -> str:
    try:
        return Path(file_path).read_text(encoding='utf-8')
    except UnicodeDecodeError as e:
        raise ValidationError(f"{file_path} is not UTF-8 text ({e.reason} at byte {e.start})") from e


def _parse_date_option(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError as e:
        raise ValidationError(f"Invalid --date {value!r}, expected YYYY-MM-DD") from e


def _date_or_today(value: Optional[str]) -> str:
    return (_parse_date_option(value) or datetime.now()).date().isoformat()


def print_review_table(entries: List[ParsedEntry]):
    table = Table(title=f"Parsed entries ({len(entries)})", show_lines=False)
    table.add_column("#", justify="right", style="dim")
    table.add_column("Date")
    table.add_column("Confidence")
    table.add_column("Status")
    table.add_column("Content", overflow="fold", max_width=60)
    table.add_column("Issues", style="red")

    for index, entry in enumerate(entries, 1):
        style = CONFIDENCE_STYLES[entry.confidence.value]
        table.add_row(
            str(index),
            entry.detected_date or entry.raw_match.date_text,
            f"[{style}]{entry.confidence.value}[/{style}]",
            entry.status.value,
            (entry.detected_content or '')[:120],
            "; ".join(entry.issues),
        )
    console.print(table)

    counts = summarize_statuses(entries)
    console.print(", ".join(f"{status}: {count}" for status, count in counts.items()))


def _confirm_duplicates(assume_yes: bool):
    def confirm(duplicates: List[DuplicateMatch], unique: List[ParsedEntry]) -> bool:
        console.print(f"[yellow]Found {len(duplicates)} duplicate entries that already exist.[/yellow]")
        for match in duplicates[:10]:
            console.print(f"  - {match.entry.detected_date} ({round(match.similarity * 100)}% similar)")
        if assume_yes:
            return True
        answer = console.input(f"Continue with importing {len(unique)} unique entries? [y/N] ")
        return answer.strip().lower() in ('y', 'yes')
    return confirm


def run_import(args) -> int:
    year = args.year or datetime.now().year
    if not config.EARLIEST_IMPORT_YEAR <= year <= datetime.now().year + 1:
        raise ValidationError(f"Year must be between {config.EARLIEST_IMPORT_YEAR} and {datetime.now().year + 1}")

    raw_text = _read_text_file(args.file)
    entries = parse_journal_text(raw_text, year)
    if not entries:
        console.print("[bold red]No journal entries found.[/bold red] Check the format.")
        return 1

    if args.approve_all:
        approve_all(entries)
    print_review_table(entries)

    if args.dry_run:
        console.print("[dim]Dry run, nothing imported.[/dim]")
        return 0

    results = import_entries(entries, raw_text, year, config.USER_ID, confirm=_confirm_duplicates(args.yes))
    if results.cancelled:
        console.print("[yellow]Import cancelled.[/yellow]")
        return 0

    console.print(
        f"[bold green]Imported {results.successful}[/bold green] of {results.total} entries "
        f"({results.failed} failed, {results.duplicates_skipped} duplicates skipped)"
    )
    if results.can_rollback:
        console.print(f"[dim]Undo with: life-tracker rollback {results.backup_id}[/dim]")
    return 0 if not results.failed else 1


def run_import_json(args) -> int:
    data = json.loads(_read_text_file(args.file))
    record = import_json_data(data, Path(args.file).name, config.USER_ID, args.year)
    _print_data_import(record)
    return 0 if record.status == 'completed' else 1


def run_import_pdf(args) -> int:
    record = import_pdf(args.file, config.USER_ID, args.year)
    _print_data_import(record)
    return 0 if record.status == 'completed' else 1


def _print_data_import(record):
    counts = ", ".join(f"{name.replace('_', ' ')}: {count}" for name, count in record.items_imported.items())
    console.print(f"[bold]{record.file_name}[/bold] {record.status} ({counts})")
    if record.date_range['start']:
        console.print(f"Date range: {record.date_range['start']} to {record.date_range['end']}")
    for error in record.errors:
        console.print(f"[red]- {error}[/red]")


def run_backups(args) -> int:
    backups = list_backups(config.USER_ID)
    if not backups:
        console.print("No import backups found.")
        return 0

    table = Table(title="Import backups")
    table.add_column("Backup ID")
    table.add_column("Created")
    table.add_column("Entries", justify="right")
    table.add_column("Imported", justify="right")
    table.add_column("Year", justify="right")
    table.add_column("Status")
    for backup in backups:
        table.add_row(
            backup.id,
            backup.timestamp[:19],
            str(backup.total_entries),
            str(len(backup.imported_ids)),
            str(backup.metadata.get('selected_year', '')),
            f"rolled back {backup.rollback_timestamp[:19]}" if backup.rolled_back else "active",
        )
    console.print(table)
    return 0


def run_rollback(args) -> int:
    if not args.yes:
        answer = console.input(f"Delete every entry imported by {args.backup_id}? [y/N] ")
        if answer.strip().lower() not in ('y', 'yes'):
            return 0
    rollback_import(args.backup_id, config.USER_ID)
    console.print(f"[bold green]Rolled back {args.backup_id}[/bold green]")
    return 0


def run_reflect(args) -> int:
    _require_rate_limit('journal-reflect')
    if args.entry_id:
        entry = get_journal_entry(args.entry_id)
        if not entry or entry['user_id'] != config.USER_ID:
            raise ValidationError(f"No journal entry with id {args.entry_id}")
        text = entry['content']
        mood = entry.get('mood') or 'neutral'
        entry_date = entry['date']
        context = entry.get('context_data') or {}
    else:
        text = args.text or sys.stdin.read()
        mood, entry_date, context = args.mood, _date_or_today(args.date), {}

    with console.status("[bold green]Reflecting...", spinner="dots"):
        reflection = reflect_on_entry(text, {}, mood, entry_date, context, config.USER_ID,
                                      entry_id=args.entry_id)
    console.print(Panel(Markdown(reflection), border_style="cyan", title="Reflection", expand=False))
    return 0


def run_meal(args) -> int:
    _require_rate_limit('meal-analyze')
    if args.diet or args.goals:
        upsert_user_profile(config.USER_ID, health_goals=args.goals, dietary_preferences=args.diet)

    meal_date = _date_or_today(args.date)
    with console.status("[bold green]Analyzing meals...", spinner="dots"):
        result = analyze_meal(args.meals, meal_date, {}, config.USER_ID)
    console.print(Panel(Markdown(result['analysis']), border_style="cyan", title="Meal analysis", expand=False))
    estimates = {k: v for k, v in result['nutritionalEstimates'].items() if v is not None}
    if estimates:
        console.print("[dim]" + ", ".join(f"{k}: {v}" for k, v in estimates.items()) + "[/dim]")
    return 0


def run_summary(args) -> int:
    _require_rate_limit('generate-summary')
    when = _parse_date_option(args.date)
    with console.status(f"[bold green]Generating {args.period} summary...", spinner="dots"):
        result = generate_summary(args.period, when, config.USER_ID, force=args.force)
    title = "Summary (stored)" if result.get('cached') else "Summary"
    console.print(Panel(Markdown(result['summary']), border_style="cyan", title=title, expand=False))
    return 0


def run_bulk_analyze(args) -> int:
    _require_rate_limit('bulk-analyze')
    with console.status("[bold green]Analyzing history...", spinner="dots"):
        result = bulk_analyze(config.USER_ID, force_regenerate=args.force)
    console.print(result['message'])
    if 'types' in result:
        console.print(f"Created {result['summariesCreated']} analyses: {', '.join(result['types'])}")
    return 0


def run_export(args) -> int:
    if args.format == 'csv':
        count = export_journal_csv(args.output, config.USER_ID)
    else:
        count = export_journal_json(args.output, config.USER_ID)
    console.print(f"Exported {count} entries")
    return 0


def run_errors(args) -> int:
    if args.resolve:
        resolved = mark_resolved(args.resolve, args.notes)
        console.print(f"Resolved {resolved} of {len(args.resolve)} error(s)")
        return 0 if resolved else 1

    summary = get_error_summary(args.type)
    if not summary:
        console.print("No unresolved errors.")
        return 0

    table = Table(title="Unresolved analysis errors")
    for column in ("Type", "Count", "Earliest", "Latest", "Last message"):
        table.add_column(column)
    for analysis_type, row in summary.items():
        table.add_row(analysis_type, str(row['error_count']), str(row['earliest_error']),
                      str(row['latest_error']), sanitize_error(row['latest_message']))
    console.print(table)

    if args.verbose_errors:
        for error in get_failed_analyses(args.type):
            console.print(f"[red]#{error['error_id']}[/red] {error['analysis_type']}: {error['error_message']}")
    return 0


def run_usage(args) -> int:
    stats = get_user_usage_stats(config.USER_ID, args.days)
    if not stats:
        console.print(f"No AI usage in the last {args.days} days.")
        return 0

    table = Table(title=f"AI usage, last {args.days} days")
    for column in ("Function", "Model", "Calls", "Errors", "Tokens", "Cost ($)"):
        table.add_column(column)
    for row in stats:
        table.add_row(row['function_name'], row['model'] or '', str(row['calls']), str(row['errors']),
                      str(row['total_tokens'] or 0), f"{row['total_cost'] or 0:.4f}")
    console.print(table)

    purged = ResponseCache().purge_expired()
    if purged:
        logging.info(f"Purged {purged} expired cache rows")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Personal life tracker')
    parser.add_argument('--backend', choices=[b.value for b in LLMBackend],
                        default=config.DEFAULT_LLM_BACKEND,
                        help=f'LLM backend to use (default: {config.DEFAULT_LLM_BACKEND})')
    parser.add_argument('--model', help='Override default model name')
    parser.add_argument('--verbose', '-v', action='store_true', help='Debug logging')
    subparsers = parser.add_subparsers(dest='command', required=True)

    subparsers.add_parser('setup', help='Initialize database').set_defaults(func=lambda args: setup_database() or 0)

    p = subparsers.add_parser('import', help='Import tab-separated journal text')
    p.add_argument('file')
    p.add_argument('--year', type=int, help='Year for dates without one (default: this year)')
    p.add_argument('--approve-all', action='store_true', help='Approve every parsed entry')
    p.add_argument('--yes', '-y', action='store_true', help='Continue past duplicates without asking')
    p.add_argument('--dry-run', action='store_true', help='Parse and review only')
    p.set_defaults(func=run_import)

    p = subparsers.add_parser('import-json', help='Import a JSON export')
    p.add_argument('file')
    p.add_argument('--year', type=int)
    p.set_defaults(func=run_import_json)

    p = subparsers.add_parser('import-pdf', help='Import journal, habits and climbing from a PDF')
    p.add_argument('file')
    p.add_argument('--year', type=int)
    p.set_defaults(func=run_import_pdf)

    subparsers.add_parser('backups', help='List import backups').set_defaults(func=run_backups)

    p = subparsers.add_parser('rollback', help='Undo an import')
    p.add_argument('backup_id')
    p.add_argument('--yes', '-y', action='store_true')
    p.set_defaults(func=run_rollback)

    p = subparsers.add_parser('reflect', help='Reflect on a journal entry')
    p.add_argument('--entry-id', help='Stored entry to reflect on (reflection is saved on it)')
    p.add_argument('--text', help='Entry text (read from stdin if omitted)')
    p.add_argument('--mood', default='neutral')
    p.add_argument('--date')
    p.set_defaults(func=run_reflect)

    p = subparsers.add_parser('meal', help='Analyze a day of meals')
    p.add_argument('meals')
    p.add_argument('--date')
    p.add_argument('--diet', nargs='*', help='Dietary preferences to save on the profile')
    p.add_argument('--goals', help='Health goals to save on the profile')
    p.set_defaults(func=run_meal)

    p = subparsers.add_parser('summary', help='Summarize a period')
    p.add_argument('period', nargs='?', default='weekly', choices=[t.value for t in PeriodType])
    p.add_argument('--date', help='Any ISO date inside the period (default: today)')
    p.add_argument('--force', action='store_true', help='Regenerate even if a fresh summary exists')
    p.set_defaults(func=run_summary)

    p = subparsers.add_parser('bulk-analyze', help='Analyze the whole history')
    p.add_argument('--force', action='store_true')
    p.set_defaults(func=run_bulk_analyze)

    p = subparsers.add_parser('export', help='Export journal entries')
    p.add_argument('--format', choices=['csv', 'json'], default='csv')
    p.add_argument('--output')
    p.set_defaults(func=run_export)

    p = subparsers.add_parser('errors', help='Show or resolve analysis errors')
    p.add_argument('--resolve', type=int, nargs='+', metavar='ERROR_ID')
    p.add_argument('--notes')
    p.add_argument('--type', help='Only errors from this analysis, e.g. generate-summary')
    p.add_argument('--list', dest='verbose_errors', action='store_true', help='List each error')
    p.set_defaults(func=run_errors)

    p = subparsers.add_parser('usage', help='Show AI usage and cost')
    p.add_argument('--days', type=int, default=30)
    p.set_defaults(func=run_usage)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)

    config.CURRENT_LLM_BACKEND = args.backend
    if args.model:
        config.CLI_SELECTED_MODEL = args.model

    if args.command != 'setup':
        create_tables()

    try:
        return args.func(args)
    except LifeTrackerError as e:
        logging.debug("Command failed", exc_info=True)
        console.print(f"[bold red]Error:[/bold red] {sanitize_error(e, limit=None)}")
        return 1
    except (OSError, json.JSONDecodeError) as e:
        console.print(f"[bold red]Error reading file:[/bold red] {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
