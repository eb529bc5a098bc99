import re
import logging
from datetime import date, datetime
from typing import List, Tuple, Optional, Dict, Any

from dateutil import parser as date_parser
from PyPDF2 import PdfReader
from PyPDF2.errors import PdfReadError

from . import config
from .errors import ValidationError
from .models import Confidence, EntryStatus, ParsedEntry, ParsedDocument, RawMatch

DateDetection = Tuple[Optional[str], float]
ContentDetection = Tuple[Optional[str], float]

# Import date tokens, most specific first: (pattern, confidence)
IMPORT_DATE_PATTERNS = [
    # "Sun, Jun 1" / "Thurs Jun 12"
    (re.compile(r'^(sun|mon|tue|wed|thu|thurs|fri|sat),?\s+([a-z]{3})\s+(\d{1,2})$', re.IGNORECASE), 0.98),
    # "June 1" / "Jun 1"
    (re.compile(r'^([a-z]{3,})\s+(\d{1,2})$', re.IGNORECASE), 0.85),
    # "2024-06-01"
    (re.compile(r'^(\d{4})-(\d{1,2})-(\d{1,2})$'), 0.95),
]

# Dates found anywhere in a line of freeform text
FREEFORM_DATE_PATTERNS = [
    re.compile(r'(\d{4})-(\d{1,2})-(\d{1,2})'),
    re.compile(r'(\d{1,2})/(\d{1,2})/(\d{4})'),
    re.compile(r'(\d{1,2})-(\d{1,2})-(\d{4})'),
    re.compile(r'(\w+)\s+(\d{1,2}),?\s+(\d{4})'),
    re.compile(r'(\d{1,2})\s+(\w+)\s+(\d{4})'),
]

HABIT_KEYWORDS = ['habit', 'routine', 'daily', 'weekly', 'goal', 'target', 'completed', 'progress']
CLIMBING_KEYWORD_PATTERN = re.compile(
    r'climb|boulder|route|\bgym\b|\bcrag\b|\bgrade\b|\bv\d+\b|\b5\.\d+', re.IGNORECASE
)
ROUTE_GRADE_PATTERN = re.compile(r'\b(?:v\d+|5\.\d+[a-d]?)\b', re.IGNORECASE)
SECTION_SPLIT_PATTERN = re.compile(r'(?:\n\s*\n|\n-{3,})')


def _safe_date(year: int, month: Optional[int], day: int) -> Optional[date]:
    if not month:
        return None
    try:
        return date(year, month, day)
    except ValueError:
        return None


def parse_date(date_text: str, target_year: int) -> DateDetection:
    """
    Parse an import date token, injecting target_year where the token has none.

    Returns:
        (ISO date or None, confidence). Confidence is 0 when nothing matched.
    """
    if not date_text or not isinstance(date_text, str):
        return None, 0

    clean_str = date_text.strip()

    for index, (pattern, confidence) in enumerate(IMPORT_DATE_PATTERNS):
        match = pattern.match(clean_str)
        if not match:
            continue

        if index == 0:
            parsed = _safe_date(target_year, config.MONTHS.get(match.group(2).lower()), int(match.group(3)))
        elif index == 1:
            parsed = _safe_date(target_year, config.MONTHS.get(match.group(1).lower()), int(match.group(2)))
        else:
            parsed = _safe_date(int(match.group(1)), int(match.group(2)), int(match.group(3)))

        if parsed:
            return parsed.isoformat(), confidence

    return None, 0


def strip_quotes(text: str) -> str:
    """Remove one pair of matching surrounding quotes."""
    if len(text) >= 2 and text[0] == text[-1] and text[0] in ('"', "'"):
        return text[1:-1]
    return text


def parse_content(content_text: str) -> ContentDetection:
    if not content_text or not isinstance(content_text, str):
        return None, 0

    content = strip_quotes(content_text.strip()).strip()
    return (content if len(content) > config.MIN_CONTENT_LENGTH else None), 0.9


def create_entry(
    date_detection: DateDetection,
    content_detection: ContentDetection,
    date_text: str,
    content_text: str,
    index: int
) -> ParsedEntry:
    """Score a detected (date, content) pair and pick its initial review status."""
    detected_date, date_confidence = date_detection
    detected_content, content_confidence = content_detection
    issues = []

    if not detected_date:
        issues.append('Could not parse date format')

    if content_confidence < 0.5:
        issues.append('Content confidence is low')

    avg_confidence = (date_confidence + content_confidence) / 2
    confidence = Confidence.LOW
    if avg_confidence > 0.7:
        confidence = Confidence.HIGH
    elif avg_confidence > 0.4:
        confidence = Confidence.MEDIUM

    status = EntryStatus.PENDING
    if confidence == Confidence.HIGH:
        status = EntryStatus.APPROVED
    elif confidence == Confidence.MEDIUM and len(issues) <= 1:
        status = EntryStatus.APPROVED
    elif issues:
        status = EntryStatus.NEEDS_REVIEW

    return ParsedEntry(
        id=f"entry-{index}",
        detected_date=detected_date,
        detected_content=detected_content,
        confidence=confidence,
        issues=issues,
        raw_match=RawMatch(date_text=date_text, content_text=content_text),
        status=status
    )


def _split_date_line(raw_line: str, target_year: int) -> Optional[Tuple[str, str, DateDetection]]:
    """
    (date_part, first_content_part, detection) when raw_line opens a new entry.

    The tab is looked for before trailing whitespace is trimmed, so a bare
    "Sun, Jun 1<TAB>" line also opens an entry whose content starts on the
    next line. This is an extension: trimming the whole line first would
    drop the tab and treat such a line as content.
    """
    line = raw_line.rstrip('\r\n').lstrip()
    if '\t' not in line:
        return None

    parts = line.split('\t')
    date_part = parts[0].strip()
    detection = parse_date(date_part, target_year)
    if detection[1] <= config.DATE_MATCH_THRESHOLD:
        return None
    return date_part, '\t'.join(parts[1:]).strip(), detection


def parse_journal_text(text: str, target_year: int) -> List[ParsedEntry]:
    """
    Split pasted journal text into candidate entries.

    An entry starts at a line of the form "<date>\t<content>" whose date token
    parses, and runs until the next such line. Lines before the first date
    line are ignored.

    Args:
        text: The pasted journal text
        target_year: Year injected into date tokens without one

    Returns:
        ParsedEntry list in document order, all with status set for review.
    """
    if not text or not text.strip():
        return []

    lines = text.split('\n')
    raw_entries = []

    i = 0
    while i < len(lines):
        date_line = _split_date_line(lines[i], target_year)
        if not date_line:
            if '\t' in lines[i]:
                logging.debug(f"Line {i + 1} has a tab but no recognizable date - skipping")
            i += 1
            continue

        date_part, first_content, (detected_date, _) = date_line
        collected = [first_content] if first_content else []

        j = i + 1
        while j < len(lines) and not _split_date_line(lines[j], target_year):
            collected.append(lines[j].strip())  # blank lines keep paragraph breaks
            j += 1

        full_content = strip_quotes('\n'.join(collected).strip()).strip()
        raw_entries.append((detected_date, full_content, date_part))
        logging.debug(f"Entry {date_part} -> {detected_date} ({len(full_content)} chars)")
        i = j

    entries = []
    for index, (detected_date, content, raw_date) in enumerate(raw_entries):
        content_detection = parse_content(content)
        if content_detection[0]:
            entries.append(create_entry((detected_date, 0.9), content_detection, raw_date, content, index))
        else:
            logging.warning(f"Dropping entry for '{raw_date}': content too short")

    logging.info(f"Parsed {len(entries)} entries from {len(lines)} lines")
    return entries


def parse_import_date(value: Any, default_year: int) -> Optional[str]:
    """Loose date parsing for JSON imports; the default year fills in missing years."""
    if not value or not isinstance(value, str):
        return None

    detected, _ = parse_date(value, default_year)
    if detected:
        return detected

    try:
        return date_parser.parse(value, default=datetime(default_year, 1, 1)).date().isoformat()
    except (ValueError, OverflowError):
        return None


# --- Freeform documents (PDF exports, notes) ---

def parse_date_string(text: str) -> Optional[str]:
    """Find a full date (with year) anywhere in a line of text."""
    for index, pattern in enumerate(FREEFORM_DATE_PATTERNS):
        match = pattern.search(text)
        if not match:
            continue

        parsed = None
        if index == 0:
            parsed = _safe_date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
        elif index in (1, 2):
            parsed = _safe_date(int(match.group(3)), int(match.group(1)), int(match.group(2)))
        else:
            if index == 3:
                candidate = f"{match.group(1)} {match.group(2)} {match.group(3)}"
            else:
                candidate = f"{match.group(2)} {match.group(1)} {match.group(3)}"
            try:
                parsed = date_parser.parse(candidate).date()
            except (ValueError, OverflowError):
                parsed = None

        if parsed:
            return parsed.isoformat()
    return None


def extract_mood(text: str) -> str:
    lower_text = text.lower()
    for mood, keywords in config.MOOD_KEYWORDS.items():
        if any(keyword in lower_text for keyword in keywords):
            return mood
    return 'neutral'


def extract_tags(text: str) -> List[str]:
    """Known topic words plus #hashtags, de-duplicated in first-seen order."""
    lower_text = text.lower()
    tags = [tag for tag in config.COMMON_TAGS if tag in lower_text]
    tags.extend(tag[1:].lower() for tag in re.findall(r'#\w+', text))
    return list(dict.fromkeys(tags))


def _quoted_or_all(content: str) -> str:
    first_quote = content.find('"')
    last_quote = content.rfind('"')
    if first_quote != -1 and last_quote != -1 and first_quote != last_quote:
        return content[first_quote + 1:last_quote]
    return content


def parse_freeform_entries(text: str) -> List[Dict[str, Any]]:
    entries = []
    current_date = None
    current_content: List[str] = []

    def flush():
        if current_date is None:
            return
        content = _quoted_or_all('\n'.join(current_content))
        if len(content) > config.MIN_FREEFORM_CONTENT_LENGTH:
            entries.append({
                'date': current_date,
                'entry': content,
                'mood': extract_mood(content),
                'tags': extract_tags(content),
            })

    for raw_line in text.split('\n'):
        line = raw_line.strip()
        if not line:
            continue

        parsed_date = parse_date_string(line)
        if parsed_date:
            flush()
            current_date = parsed_date
            current_content = []
        elif current_date:
            current_content.append(line)

    flush()
    return entries


def parse_habit_lines(text: str, today: Optional[date] = None) -> List[Dict[str, Any]]:
    today = today or date.today()
    habits = []

    for raw_line in text.split('\n'):
        line = raw_line.lower()
        if not any(keyword in line for keyword in HABIT_KEYWORDS):
            continue

        habit_match = re.search(r'(.*?)(habit|routine|goal)', line)
        if not habit_match:
            continue

        title = habit_match.group(1).strip() or 'Daily Habit'
        done = 'completed' in line or 'done' in line
        habits.append({
            'date': parse_date_string(raw_line) or today.isoformat(),
            'title': title[0].upper() + title[1:],
            'description': raw_line.strip(),
            'frequency': 'weekly' if 'weekly' in line else 'daily',
            'target': 1,
            'progress': 1 if done else 0,
            'completed': done,
            'color': '#3B82F6',
        })

    return habits


def parse_climbing_sessions(text: str) -> List[Dict[str, Any]]:
    sessions = []

    for section in SECTION_SPLIT_PATTERN.split(text):
        if not CLIMBING_KEYWORD_PATTERN.search(section):
            continue

        session_date = None
        for line in section.split('\n'):
            session_date = parse_date_string(line)
            if session_date:
                break
        if not session_date:
            continue

        location_match = re.search(r'(?:\bat\b|@)\s*([^.\n]+)', section, re.IGNORECASE)
        location = location_match.group(1).strip() if location_match else 'Unknown Location'

        duration = 90
        duration_match = re.search(r'(\d+)\s*(min|minutes|hour|hours)\b', section, re.IGNORECASE)
        if duration_match:
            duration = int(duration_match.group(1))
            if duration_match.group(2).lower().startswith('hour'):
                duration *= 60

        sent = 'sent' in section or 'completed' in section
        routes = []
        for index, grade in enumerate(ROUTE_GRADE_PATTERN.findall(section)):
            routes.append({
                'id': f"route-{index}",
                'name': f"Route {index + 1}",
                'grade': grade.upper(),
                'type': 'boulder' if grade.lower().startswith('v') else 'sport',
                'attempts': 1,
                'completed': sent,
                'notes': '',
            })

        sessions.append({
            'date': session_date,
            'location': location,
            'duration': duration,
            'routes': routes,
            'notes': section.strip(),
        })

    return sessions


def parse_document(text: str) -> ParsedDocument:
    return ParsedDocument(
        journal_entries=parse_freeform_entries(text),
        habits=parse_habit_lines(text),
        climbing_sessions=parse_climbing_sessions(text),
        raw_text=text
    )


def extract_pdf_text(file_path: str) -> str:
    """Concatenate the text of every page, pages separated by a blank line."""
    try:
        reader = PdfReader(file_path)
        pages = [page.extract_text() or '' for page in reader.pages]
    except (OSError, PdfReadError) as e:
        logging.error(f"Error parsing PDF {file_path}: {e}")
        raise ValidationError("Failed to parse PDF file. Please ensure it's a valid PDF document.") from e

    logging.info(f"Extracted {len(pages)} pages from {file_path}")
    return '\n\n'.join(pages)
