from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import List, Optional, Dict, Any

from .errors import ValidationError


class Confidence(Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class EntryStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    NEEDS_REVIEW = "needs_review"


class PeriodType(Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"

    @classmethod
    def from_string(cls, value: str) -> 'PeriodType':
        try:
            return cls(value.lower())
        except (ValueError, AttributeError):
            raise ValidationError(f"Unknown period type: {value!r}")


@dataclass
class RawMatch:
    date_text: str
    content_text: str


@dataclass
class ParsedEntry:
    """One candidate entry found by the text importer, awaiting review."""
    id: str
    detected_date: Optional[str]
    detected_content: Optional[str]
    confidence: Confidence
    issues: List[str]
    raw_match: RawMatch
    status: EntryStatus = EntryStatus.PENDING

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['confidence'] = self.confidence.value
        data['status'] = self.status.value
        return data


@dataclass
class ImportBackup:
    id: str
    timestamp: str
    total_entries: int
    imported_ids: List[str]
    metadata: Dict[str, Any]
    rolled_back: bool = False
    rollback_timestamp: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ImportBackup':
        return cls(
            id=data['id'],
            timestamp=data['timestamp'],
            total_entries=data.get('total_entries', 0),
            imported_ids=list(data.get('imported_ids') or []),
            metadata=data.get('metadata') or {},
            rolled_back=bool(data.get('rolled_back', False)),
            rollback_timestamp=data.get('rollback_timestamp'),
        )


@dataclass
class DuplicateMatch:
    entry: ParsedEntry
    existing_entry: Dict[str, Any]
    similarity: float


@dataclass
class ImportResults:
    successful: int
    failed: int
    total: int
    duplicates_skipped: int = 0
    backup_id: Optional[str] = None
    can_rollback: bool = False
    imported_ids: List[str] = field(default_factory=list)
    cancelled: bool = False


@dataclass
class DataImport:
    """Outcome of a JSON or PDF file import."""
    id: str
    file_name: str
    file_type: str  # pdf, json
    upload_date: str
    status: str  # processing, completed, error
    items_imported: Dict[str, int]
    date_range: Dict[str, Optional[str]]
    errors: List[str] = field(default_factory=list)


@dataclass
class ParsedDocument:
    journal_entries: List[Dict[str, Any]]
    habits: List[Dict[str, Any]]
    climbing_sessions: List[Dict[str, Any]]
    raw_text: str


@dataclass
class SummaryPeriod:
    start: datetime
    end: datetime
    type: PeriodType
