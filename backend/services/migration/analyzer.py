"""
CRM Migration Hub - Account Analyzer

Counts a source account's records per category and estimates how long a
migration would take. Read-only. A category that can't be counted reports 0
with a note instead of failing the whole analysis.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional

from ..crm import AccountCredentials, CRMClientFactory, CRMError
from .categories import CategoryAdapter, CATEGORY_ADAPTERS
from .config import MIGRATION_ANALYSIS_MAX_PAGES, MIGRATION_SECONDS_PER_RECORD
from .models import MigrationCategory

logger = logging.getLogger(__name__)


@dataclass
class AnalysisResult:
    success: bool
    counts: Dict[str, int] = field(default_factory=dict)
    estimated_duration_seconds: float = 0.0
    notes: List[str] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "success": self.success,
            "counts": {c: {"estimatedCount": n} for c, n in self.counts.items()},
            "estimatedDurationSeconds": round(self.estimated_duration_seconds, 1),
            "notes": list(self.notes)
        }
        if self.error:
            result["error"] = self.error
        return result


class AccountAnalyzer:
    def __init__(
        self,
        client_factory: CRMClientFactory,
        adapters: Optional[Dict[MigrationCategory, CategoryAdapter]] = None,
        max_pages: int = MIGRATION_ANALYSIS_MAX_PAGES,
        seconds_per_record: Optional[Dict[str, float]] = None
    ):
        self.client_factory = client_factory
        self.adapters = adapters or CATEGORY_ADAPTERS
        self.max_pages = max_pages
        self.seconds_per_record = seconds_per_record or MIGRATION_SECONDS_PER_RECORD

    def estimate_duration(self, counts: Dict[str, int]) -> float:
        return sum(n * self.seconds_per_record.get(c, 1.0) for c, n in counts.items())

    async def analyze_source_account(self, source: AccountCredentials) -> AnalysisResult:
        client = self.client_factory.for_account(source)

        async def count(adapter: CategoryAdapter):
            try:
                return adapter.name, await adapter.count_records(client, self.max_pages), None
            except CRMError as e:
                logger.warning("Could not count %s for location %s: %s",
                               adapter.name, source.location_id, str(e))
                return adapter.name, 0, f"{adapter.name}: could not be counted ({e})"

        outcomes = await asyncio.gather(*(count(a) for a in self.adapters.values()))

        counts = {name: n for name, n, _ in outcomes}
        notes = [note for _, _, note in outcomes if note]
        result = AnalysisResult(
            success=len(notes) < len(outcomes),
            counts=counts,
            estimated_duration_seconds=self.estimate_duration(counts),
            notes=notes
        )
        if not result.success:
            result.error = "No category could be counted; check the source account credentials"

        logger.info("Analyzed location %s: %d records, ~%.0fs",
                    source.location_id, sum(counts.values()), result.estimated_duration_seconds)
        return result
