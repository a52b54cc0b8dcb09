"""
CRM Migration Hub - Migration Data Model

Jobs, options, per-category progress and the history projection, plus the
job state machine:

    pending -> running -> completed | failed | cancelled

Persisted and API documents use camelCase keys.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone, timedelta
from enum import Enum
from typing import Dict, Any, Optional, List, Tuple

from dateutil import parser as date_parser

from ..crm import AccountCredentials


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# =============================================================================
# ENUMS
# =============================================================================

class MigrationCategory(str, Enum):
    """Data categories that can be migrated, in canonical order."""
    CONTACTS = "contacts"
    CALENDARS = "calendars"
    WORKFLOWS = "workflows"
    OPPORTUNITIES = "opportunities"
    FORMS = "forms"
    SURVEYS = "surveys"
    TAGS = "tags"
    USERS = "users"
    COMPANIES = "companies"


ALL_CATEGORIES: Tuple[MigrationCategory, ...] = tuple(MigrationCategory)


class ConflictPolicy(str, Enum):
    """What to do when a record already exists at the destination."""
    SKIP = "skip"
    OVERWRITE = "overwrite"
    CREATE_NEW = "createNew"


class MigrationStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    MigrationStatus.COMPLETED, MigrationStatus.FAILED, MigrationStatus.CANCELLED
})

ALLOWED_TRANSITIONS: Dict[MigrationStatus, frozenset] = {
    MigrationStatus.PENDING: frozenset({MigrationStatus.RUNNING}),
    MigrationStatus.RUNNING: frozenset({
        MigrationStatus.COMPLETED, MigrationStatus.FAILED, MigrationStatus.CANCELLED
    }),
    MigrationStatus.COMPLETED: frozenset(),
    MigrationStatus.FAILED: frozenset(),
    MigrationStatus.CANCELLED: frozenset(),
}


class CategoryStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# =============================================================================
# ERRORS
# =============================================================================

class InvalidTransitionError(Exception):
    def __init__(self, current: MigrationStatus, target: MigrationStatus):
        super().__init__(f"Invalid job transition {current.value} -> {target.value}")
        self.current = current
        self.target = target


class JobNotFoundError(Exception):
    def __init__(self, job_id: str):
        super().__init__(f"Migration job not found: {job_id}")
        self.job_id = job_id


# =============================================================================
# OPTIONS
# =============================================================================

def parse_category(value: Any) -> MigrationCategory:
    try:
        return MigrationCategory(value)
    except ValueError:
        raise ValueError(f"Unknown migration category: {value}")


def parse_flag(value: Any, name: str) -> bool:
    """Real booleans, or the strings "true"/"false" from form-encoded callers. None means False."""
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    raise ValueError(f"{name} must be true or false, got {value!r}")


@dataclass(frozen=True)
class MigrationOptions:
    categories: Tuple[MigrationCategory, ...]
    conflict_policy: ConflictPolicy = ConflictPolicy.SKIP
    dry_run: bool = False

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "MigrationOptions":
        """
        Parse caller-supplied options. Categories are de-duplicated and put in
        canonical order; unknown names raise ValueError.
        """
        data = data or {}
        raw_categories = data.get("categories") or []
        if isinstance(raw_categories, str):
            raw_categories = [raw_categories]
        selected = {parse_category(c) for c in raw_categories}
        categories = tuple(c for c in ALL_CATEGORIES if c in selected)

        raw_policy = data.get("conflictPolicy") or ConflictPolicy.SKIP.value
        try:
            policy = ConflictPolicy(raw_policy)
        except ValueError:
            raise ValueError(f"Unknown conflict policy: {raw_policy}")

        return cls(
            categories=categories,
            conflict_policy=policy,
            dry_run=parse_flag(data.get("dryRun"), "dryRun")
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "categories": [c.value for c in self.categories],
            "conflictPolicy": self.conflict_policy.value,
            "dryRun": self.dry_run
        }


def parse_data_counts(data: Optional[Dict[str, Any]]) -> Dict[str, int]:
    """
    Accepts both `{category: {estimatedCount: n}}` and `{category: n}`.
    Unknown categories and non-numeric values are ignored.
    """
    counts: Dict[str, int] = {}
    for key, value in (data or {}).items():
        if key not in MigrationCategory._value2member_map_:
            continue
        if isinstance(value, dict):
            value = value.get("estimatedCount")
        if isinstance(value, (int, float)) and not isinstance(value, bool) and value >= 0:
            counts[key] = int(value)
    return counts


# =============================================================================
# PROGRESS
# =============================================================================

@dataclass
class CategoryProgress:
    """Per-category counters. processed == succeeded + failed at all times."""
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)
    status: CategoryStatus = CategoryStatus.PENDING

    @property
    def processed(self) -> int:
        return self.succeeded + self.failed

    def record_success(self) -> None:
        self.succeeded += 1
        self._clamp_total()

    def record_failure(self, message: str, max_errors: int = 100, max_length: int = 300) -> None:
        self.failed += 1
        self._clamp_total()
        self.add_error(message, max_errors, max_length)

    def add_error(self, message: str, max_errors: int = 100, max_length: int = 300) -> None:
        if len(self.errors) >= max_errors:
            return
        if len(message) > max_length:
            message = message[:max_length - 3] + "..."
        self.errors.append(message)

    def _clamp_total(self) -> None:
        if self.processed > self.total:
            self.total = self.processed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "errors": list(self.errors),
            "status": self.status.value
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CategoryProgress":
        return cls(
            total=int(data.get("total", 0)),
            succeeded=int(data.get("succeeded", 0)),
            failed=int(data.get("failed", 0)),
            errors=list(data.get("errors") or []),
            status=CategoryStatus(data.get("status", CategoryStatus.PENDING.value))
        )


# =============================================================================
# JOB
# =============================================================================

def _credentials_from_doc(data: Optional[Dict[str, Any]]) -> AccountCredentials:
    data = data or {}
    return AccountCredentials(
        api_key=data.get("apiKey") or "",
        location_id=data.get("locationId") or "",
        account_name=data.get("accountName")
    )


def new_job_id() -> str:
    return f"migration_{uuid.uuid4().hex}"


@dataclass
class MigrationJob:
    """One migration run from a source account to a destination account."""
    source: AccountCredentials
    destination: AccountCredentials
    options: MigrationOptions
    id: str = field(default_factory=new_job_id)
    status: MigrationStatus = MigrationStatus.PENDING
    category_progress: Dict[str, CategoryProgress] = field(default_factory=dict)
    data_counts: Dict[str, int] = field(default_factory=dict)
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    cancel_requested: bool = False
    error: Optional[str] = None

    @classmethod
    def create(
        cls,
        source: AccountCredentials,
        destination: AccountCredentials,
        options: MigrationOptions,
        data_counts: Optional[Dict[str, int]] = None
    ) -> "MigrationJob":
        counts = data_counts or {}
        progress = {
            c.value: CategoryProgress(total=counts.get(c.value, 0))
            for c in options.categories
        }
        return cls(
            source=source,
            destination=destination,
            options=options,
            category_progress=progress,
            data_counts={c.value: counts[c.value] for c in options.categories if c.value in counts}
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def transition_to(self, target: MigrationStatus) -> None:
        if target not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(self.status, target)
        now = utc_now_iso()
        self.status = target
        self.updated_at = now
        if target == MigrationStatus.RUNNING:
            self.started_at = now
        if target.is_terminal:
            self.finished_at = now

    def is_stale(self, threshold: timedelta, now: Optional[datetime] = None) -> bool:
        """A pending job that no worker picked up within `threshold`."""
        if self.status != MigrationStatus.PENDING:
            return False
        now = now or datetime.now(timezone.utc)
        created = date_parser.isoparse(self.created_at)
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        return now - created > threshold

    def to_dict(self, include_credentials: bool = False) -> Dict[str, Any]:
        """
        Serialize the job. With include_credentials the API keys are kept,
        but only while the job can still run.
        """
        with_secret = include_credentials and not self.is_terminal
        return {
            "id": self.id,
            "status": self.status.value,
            "sourceAccount": self.source.to_dict(include_secret=with_secret),
            "destinationAccount": self.destination.to_dict(include_secret=with_secret),
            "options": self.options.to_dict(),
            "categoryProgress": {k: v.to_dict() for k, v in self.category_progress.items()},
            "dataCounts": dict(self.data_counts),
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "startedAt": self.started_at,
            "finishedAt": self.finished_at,
            "cancelRequested": self.cancel_requested,
            "error": self.error
        }

    def to_document(self) -> Dict[str, Any]:
        return self.to_dict(include_credentials=True)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MigrationJob":
        return cls(
            id=data["id"],
            status=MigrationStatus(data.get("status", MigrationStatus.PENDING.value)),
            source=_credentials_from_doc(data.get("sourceAccount")),
            destination=_credentials_from_doc(data.get("destinationAccount")),
            options=MigrationOptions.from_dict(data.get("options")),
            category_progress={
                k: CategoryProgress.from_dict(v)
                for k, v in (data.get("categoryProgress") or {}).items()
            },
            data_counts=dict(data.get("dataCounts") or {}),
            created_at=data.get("createdAt") or utc_now_iso(),
            updated_at=data.get("updatedAt") or data.get("createdAt") or utc_now_iso(),
            started_at=data.get("startedAt"),
            finished_at=data.get("finishedAt"),
            cancel_requested=bool(data.get("cancelRequested", False)),
            error=data.get("error")
        )

    def to_history_entry(self) -> "MigrationHistoryEntry":
        return MigrationHistoryEntry(
            id=self.id,
            status=self.status.value,
            options=self.options.to_dict(),
            source_location_id=self.source.location_id,
            destination_location_id=self.destination.location_id,
            category_progress={k: v.to_dict() for k, v in self.category_progress.items()},
            error=self.error,
            created_at=self.created_at,
            started_at=self.started_at,
            finished_at=self.finished_at
        )


@dataclass(frozen=True)
class MigrationHistoryEntry:
    """Read-only audit record of a finished job."""
    id: str
    status: str
    options: Dict[str, Any]
    source_location_id: str
    destination_location_id: str
    category_progress: Dict[str, Dict[str, Any]]
    error: Optional[str]
    created_at: str
    started_at: Optional[str]
    finished_at: Optional[str]

    def to_dict(self) -> Dict[str, Any]:
        totals = {"total": 0, "succeeded": 0, "failed": 0}
        for progress in self.category_progress.values():
            for key in totals:
                totals[key] += progress.get(key, 0)
        return {
            "id": self.id,
            "status": self.status,
            "options": self.options,
            "sourceLocationId": self.source_location_id,
            "destinationLocationId": self.destination_location_id,
            "categoryProgress": self.category_progress,
            "totals": totals,
            "error": self.error,
            "createdAt": self.created_at,
            "startedAt": self.started_at,
            "finishedAt": self.finished_at
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MigrationHistoryEntry":
        return cls(
            id=data["id"],
            status=data.get("status", ""),
            options=data.get("options") or {},
            source_location_id=data.get("sourceLocationId", ""),
            destination_location_id=data.get("destinationLocationId", ""),
            category_progress=data.get("categoryProgress") or {},
            error=data.get("error"),
            created_at=data.get("createdAt", ""),
            started_at=data.get("startedAt"),
            finished_at=data.get("finishedAt")
        )
