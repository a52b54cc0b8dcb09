"""
CRM Migration Hub - Category Transfer Worker

Generic record transfer for one category, parameterized by a CategoryAdapter:

1. List every source record (creation time ascending)
2. Derive each record's natural key
3. Match it against an index of destination records built at category start
4. Rewrite references to other records (e.g. an opportunity's contact) to
   their destination ids
5. Create / skip / overwrite / create a disambiguated copy per conflict policy
6. Report progress after every record and check for cancellation before each

Per-record CRM failures are counted and recorded; they never abort the
category. A listing cut short by the page cap fails the category. Anything
other than a CRMError propagates to the job manager.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional, Callable, Awaitable

from ..crm import CRMClient, CRMError
from .categories import CategoryAdapter, UnresolvedReferenceError
from .config import MIGRATION_MAX_ERRORS_PER_CATEGORY, MIGRATION_MAX_ERROR_LENGTH
from .models import CategoryProgress, CategoryStatus, ConflictPolicy

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[CategoryProgress], Awaitable[None]]
CancelPredicate = Callable[[], Awaitable[bool]]


@dataclass
class TransferResult:
    """Outcome of one category transfer."""
    succeeded: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)
    total: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    cancelled: bool = False
    status: CategoryStatus = CategoryStatus.PENDING

    def to_dict(self) -> Dict[str, Any]:
        return {
            "succeeded": self.succeeded,
            "failed": self.failed,
            "errors": list(self.errors),
            "total": self.total,
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "cancelled": self.cancelled,
            "status": self.status.value
        }


class CategoryTransferWorker:
    """Moves one category's records from a source account to a destination account."""

    def __init__(
        self,
        adapter: CategoryAdapter,
        max_errors: int = MIGRATION_MAX_ERRORS_PER_CATEGORY,
        max_error_length: int = MIGRATION_MAX_ERROR_LENGTH
    ):
        self.adapter = adapter
        self.max_errors = max_errors
        self.max_error_length = max_error_length

    async def transfer(
        self,
        source_client: CRMClient,
        destination_client: CRMClient,
        conflict_policy: ConflictPolicy = ConflictPolicy.SKIP,
        dry_run: bool = False,
        on_progress: Optional[ProgressCallback] = None,
        should_cancel: Optional[CancelPredicate] = None
    ) -> TransferResult:
        category = self.adapter.name
        progress = CategoryProgress(status=CategoryStatus.IN_PROGRESS)
        result = TransferResult()

        async def emit() -> None:
            if on_progress is not None:
                await on_progress(progress)

        try:
            records, source_complete = await self.adapter.list_all(source_client)
        except CRMError as e:
            logger.warning("Listing source %s failed: %s", category, str(e))
            return await self._fail_category(progress, result, f"Failed to list source {category}: {e}", emit)

        progress.total = len(records)
        await emit()

        if not records:
            progress.status = CategoryStatus.COMPLETED
            await emit()
            return self._finish(progress, result)

        try:
            index, destination_complete = await self._build_destination_index(destination_client)
        except CRMError as e:
            logger.warning("Listing destination %s failed: %s", category, str(e))
            return await self._fail_category(progress, result, f"Failed to list destination {category}: {e}", emit)

        if not destination_complete:
            # Unlisted destination records can't be matched; writing would create duplicates
            return await self._fail_category(
                progress, result,
                f"Destination {category} listing stopped at the page cap after {len(index)} records; nothing was written",
                emit
            )

        references: Dict[str, Any] = {}
        if not dry_run:
            try:
                references = await self.adapter.load_references(source_client, destination_client)
            except CRMError as e:
                logger.warning("Loading related records for %s failed: %s", category, str(e))
                return await self._fail_category(
                    progress, result, f"Failed to load related records for {category}: {e}", emit
                )

        logger.info("Transferring %d %s (policy=%s, dry_run=%s, %d already at destination)",
                    len(records), category, conflict_policy.value, dry_run, len(index))

        for record in records:
            if should_cancel is not None and await should_cancel():
                logger.info("Cancellation observed for %s after %d/%d records",
                            category, progress.processed, progress.total)
                result.cancelled = True
                break

            await self._transfer_record(
                record, source_client, destination_client, index, references,
                conflict_policy, dry_run, progress, result
            )
            await emit()

        if result.cancelled:
            progress.status = CategoryStatus.CANCELLED
        elif not source_complete:
            progress.status = CategoryStatus.FAILED
            progress.add_error(
                f"Source {category} listing stopped at the page cap after {len(records)} records; "
                f"later records were not migrated",
                self.max_errors, self.max_error_length
            )
        else:
            progress.status = CategoryStatus.COMPLETED
        await emit()
        return self._finish(progress, result)

    async def _build_destination_index(self, destination_client: CRMClient):
        """
        (natural key -> destination record id, listing complete).
        First record wins on duplicate keys.
        """
        records, complete = await self.adapter.list_all(destination_client)
        index: Dict[str, Optional[str]] = {}
        for record in records:
            key = self.adapter.natural_key(record)
            if key is not None and key not in index:
                index[key] = self.adapter.record_id(record)
        return index, complete

    async def _transfer_record(
        self,
        record: Dict[str, Any],
        source_client: CRMClient,
        destination_client: CRMClient,
        index: Dict[str, Optional[str]],
        references: Dict[str, Any],
        conflict_policy: ConflictPolicy,
        dry_run: bool,
        progress: CategoryProgress,
        result: TransferResult
    ) -> None:
        label = self.adapter.display_name(record)
        key = self.adapter.natural_key(record)

        try:
            if not dry_run:
                record = self.adapter.resolve_references(record, references)

            if key is None or key not in index:
                await self._create(record, key, source_client, destination_client, index, dry_run, progress)
                result.created += 1

            elif conflict_policy == ConflictPolicy.SKIP:
                result.skipped += 1

            elif conflict_policy == ConflictPolicy.OVERWRITE:
                existing_id = index[key]
                if not dry_run:
                    if existing_id is None:
                        self._record_failure(progress, f"{label}: destination record has no id to update")
                        return
                    await self.adapter.update(destination_client, existing_id, record)
                result.updated += 1

            else:
                copy_record = self.adapter.disambiguate(record, set(index))
                if copy_record is None:
                    self._record_failure(progress, f"{label}: no field available to disambiguate duplicate")
                    return
                await self._create(
                    copy_record, self.adapter.natural_key(copy_record),
                    source_client, destination_client, index, dry_run, progress
                )
                result.created += 1

        except UnresolvedReferenceError as e:
            logger.warning("Skipping %s record %s: %s", self.adapter.name, label, str(e))
            self._record_failure(progress, f"{label}: {e}")
            return

        except CRMError as e:
            logger.warning("Failed to migrate %s record %s: %s", self.adapter.name, label, str(e))
            self._record_failure(progress, f"{label}: {e}")
            return

        progress.record_success()

    async def _create(
        self,
        record: Dict[str, Any],
        key: Optional[str],
        source_client: CRMClient,
        destination_client: CRMClient,
        index: Dict[str, Optional[str]],
        dry_run: bool,
        progress: CategoryProgress
    ) -> None:
        created_id = None
        if not dry_run:
            created = await self.adapter.create(destination_client, record)
            created_id = self.adapter.record_id(created)
            for warning in await self.adapter.after_create(source_client, destination_client, record, created):
                progress.add_error(warning, self.max_errors, self.max_error_length)
        # Reserve the key so later duplicates in the same run match it
        if key is not None:
            index[key] = created_id

    def _record_failure(self, progress: CategoryProgress, message: str) -> None:
        progress.record_failure(message, self.max_errors, self.max_error_length)

    async def _fail_category(self, progress, result, message, emit) -> TransferResult:
        progress.status = CategoryStatus.FAILED
        progress.add_error(message, self.max_errors, self.max_error_length)
        await emit()
        return self._finish(progress, result)

    @staticmethod
    def _finish(progress: CategoryProgress, result: TransferResult) -> TransferResult:
        result.succeeded = progress.succeeded
        result.failed = progress.failed
        result.errors = list(progress.errors)
        result.total = progress.total
        result.status = progress.status
        return result
