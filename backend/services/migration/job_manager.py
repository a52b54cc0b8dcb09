"""
CRM Migration Hub - Migration Job Manager

Owns the job state machine and runs migrations in the background:

    pending --(execution starts)--> running --> completed | failed | cancelled

- create_migration_job persists a pending job and returns it immediately
- submit hands the job to a bounded pool of asyncio tasks
- execute_migration runs one CategoryTransferWorker per selected category,
  with bounded parallelism, persisting each category's progress slice as it
  changes
- cancel_migration is cooperative: workers observe it between records

Every state transition is written to the job store before the manager moves
on, so a restart can always recover the last known state (see recover_jobs).
"""

import asyncio
import logging
import time
from datetime import timedelta
from typing import Dict, List, Optional, Set

from ..crm import AccountCredentials, CRMClientFactory
from .categories import CategoryAdapter, CATEGORY_ADAPTERS
from .config import (
    MIGRATION_MAX_CONCURRENT_CATEGORIES, MIGRATION_MAX_CONCURRENT_JOBS,
    MIGRATION_CANCEL_POLL_SECONDS, MIGRATION_STALE_PENDING_MINUTES
)
from .job_store import MigrationJobStore
from .models import (
    MigrationJob, MigrationOptions, MigrationStatus, MigrationCategory,
    MigrationHistoryEntry, CategoryProgress, CategoryStatus, JobNotFoundError,
    utc_now_iso
)
from .validator import AccountValidator
from .worker import CategoryTransferWorker, TransferResult

logger = logging.getLogger(__name__)


class _JobRun:
    """In-flight execution state of one job."""

    def __init__(self, job: MigrationJob):
        self.job = job
        self.lock = asyncio.Lock()
        self.cancel_observed = False
        self.last_cancel_poll = time.monotonic()


class MigrationJobManager:
    """
    One instance per process. Holds the job store and CRM client factory;
    all job state lives in the store.
    """

    def __init__(
        self,
        store: MigrationJobStore,
        client_factory: CRMClientFactory,
        validator: Optional[AccountValidator] = None,
        adapters: Optional[Dict[MigrationCategory, CategoryAdapter]] = None,
        max_concurrent_categories: int = MIGRATION_MAX_CONCURRENT_CATEGORIES,
        max_concurrent_jobs: int = MIGRATION_MAX_CONCURRENT_JOBS,
        cancel_poll_interval: float = MIGRATION_CANCEL_POLL_SECONDS,
        stale_pending_after: timedelta = timedelta(minutes=MIGRATION_STALE_PENDING_MINUTES)
    ):
        self.store = store
        self.client_factory = client_factory
        self.validator = validator
        self.adapters = adapters or CATEGORY_ADAPTERS
        self.max_concurrent_categories = max(1, max_concurrent_categories)
        self.cancel_poll_interval = cancel_poll_interval
        self.stale_pending_after = stale_pending_after

        self._job_slots = asyncio.Semaphore(max(1, max_concurrent_jobs))
        self._tasks: Dict[str, asyncio.Task] = {}
        self._cancel_flags: Set[str] = set()

    # =========================================================================
    # JOB CREATION & SUBMISSION
    # =========================================================================

    async def create_migration_job(
        self,
        source: AccountCredentials,
        destination: AccountCredentials,
        options: MigrationOptions,
        data_counts: Optional[Dict[str, int]] = None
    ) -> MigrationJob:
        if not options.categories:
            raise ValueError("At least one migration category must be selected")

        job = MigrationJob.create(source, destination, options, data_counts)
        await self.store.save_job(job.to_document())

        logger.info("Created migration job %s: %s -> %s, categories=%s, policy=%s, dry_run=%s",
                    job.id, source.location_id, destination.location_id,
                    [c.value for c in options.categories],
                    options.conflict_policy.value, options.dry_run)
        return job

    def submit(self, job_id: str) -> asyncio.Task:
        """Schedule execute_migration on the background pool."""
        task = self._tasks.get(job_id)
        if task is not None and not task.done():
            return task

        task = asyncio.create_task(self._run_submitted(job_id), name=f"migration-{job_id}")
        self._tasks[job_id] = task
        task.add_done_callback(lambda _t: self._tasks.pop(job_id, None))
        return task

    async def _run_submitted(self, job_id: str) -> None:
        async with self._job_slots:
            try:
                await self.execute_migration(job_id)
            except Exception:
                logger.exception("Migration job %s crashed", job_id)

    # =========================================================================
    # EXECUTION
    # =========================================================================

    async def execute_migration(self, job_id: str) -> MigrationJob:
        document = await self.store.get_job(job_id)
        if document is None:
            raise JobNotFoundError(job_id)

        job = MigrationJob.from_dict(document)
        if job.status != MigrationStatus.PENDING:
            logger.warning("Job %s is %s, not pending; not executing", job_id, job.status.value)
            return job

        job.transition_to(MigrationStatus.RUNNING)
        await self.store.save_job(job.to_document())
        logger.info("Migration job %s running", job_id)

        run = _JobRun(job)
        if job.cancel_requested:
            self._cancel_flags.add(job_id)

        try:
            status = await self._run_job(run)
        except Exception as e:
            logger.exception("Orchestration error in migration job %s", job_id)
            job.error = f"Migration failed: {e}"
            status = MigrationStatus.FAILED

        return await self._finish(run, status)

    async def _run_job(self, run: _JobRun) -> MigrationStatus:
        job = run.job
        if self.validator is not None:
            validation = await self.validator.validate_accounts(job.source, job.destination)
            if not validation.source_ok and not validation.destination_ok:
                job.error = "Both accounts are unreachable: " + "; ".join(validation.errors)
                logger.error("Migration job %s aborted: %s", job.id, job.error)
                return MigrationStatus.FAILED

        await self._run_categories(run)
        return self._terminal_status(run)

    async def _run_categories(self, run: _JobRun) -> None:
        job = run.job
        source_client = self.client_factory.for_account(job.source)
        destination_client = self.client_factory.for_account(job.destination)
        slots = asyncio.Semaphore(self.max_concurrent_categories)
        done = {category: asyncio.Event() for category in job.options.categories}

        async def run_category(category: MigrationCategory) -> Optional[TransferResult]:
            try:
                return await transfer_category(category)
            finally:
                done[category].set()

        async def transfer_category(category: MigrationCategory) -> Optional[TransferResult]:
            name = category.value
            # Wait outside the slot so a waiting category never holds one
            for dependency in self.adapters[category].depends_on:
                if dependency in done:
                    await done[dependency].wait()

            async with slots:
                if await self._should_cancel(run):
                    progress = job.category_progress[name]
                    progress.status = CategoryStatus.CANCELLED
                    await self._persist_progress(run, name, progress)
                    return None

                async def on_progress(progress: CategoryProgress) -> None:
                    await self._persist_progress(run, name, progress)

                worker = CategoryTransferWorker(self.adapters[category])
                result = await worker.transfer(
                    source_client,
                    destination_client,
                    conflict_policy=job.options.conflict_policy,
                    dry_run=job.options.dry_run,
                    on_progress=on_progress,
                    should_cancel=lambda: self._should_cancel(run)
                )
                logger.info("Job %s category %s finished: %s (%d ok, %d failed of %d)",
                            job.id, name, result.status.value,
                            result.succeeded, result.failed, result.total)
                return result

        outcomes = await asyncio.gather(
            *(run_category(c) for c in job.options.categories),
            return_exceptions=True
        )

        crashes = []
        for category, outcome in zip(job.options.categories, outcomes):
            if isinstance(outcome, BaseException):
                logger.error("Category %s crashed in job %s", category.value, job.id,
                             exc_info=(type(outcome), outcome, outcome.__traceback__))
                progress = job.category_progress[category.value]
                progress.status = CategoryStatus.FAILED
                progress.add_error(f"Internal error: {outcome}")
                crashes.append(f"{category.value}: {outcome}")

        if crashes:
            raise RuntimeError("category worker crashed (" + "; ".join(crashes) + ")")

    async def _persist_progress(self, run: _JobRun, category: str, progress: CategoryProgress) -> None:
        """Write one category's slice; never touches other categories' fields."""
        run.job.category_progress[category] = progress
        run.job.updated_at = utc_now_iso()
        async with run.lock:
            await self.store.update_fields(run.job.id, {
                f"categoryProgress.{category}": progress.to_dict(),
                "updatedAt": run.job.updated_at
            })

    async def _should_cancel(self, run: _JobRun) -> bool:
        if run.cancel_observed:
            return True

        job_id = run.job.id
        requested = job_id in self._cancel_flags
        if not requested and time.monotonic() - run.last_cancel_poll >= self.cancel_poll_interval:
            run.last_cancel_poll = time.monotonic()
            document = await self.store.get_job(job_id)
            requested = bool(document and document.get("cancelRequested"))

        if requested:
            run.cancel_observed = True
            run.job.cancel_requested = True
            logger.info("Migration job %s observed cancellation", job_id)
        return requested

    @staticmethod
    def _category_failed(progress: CategoryProgress) -> bool:
        if progress.status == CategoryStatus.FAILED:
            return True
        return progress.failed > 0 and progress.succeeded == 0

    def _terminal_status(self, run: _JobRun) -> MigrationStatus:
        if run.cancel_observed:
            return MigrationStatus.CANCELLED
        progress = run.job.category_progress.values()
        if progress and all(self._category_failed(p) for p in progress):
            run.job.error = run.job.error or "All categories failed"
            return MigrationStatus.FAILED
        return MigrationStatus.COMPLETED

    async def _finish(self, run: _JobRun, status: MigrationStatus) -> MigrationJob:
        job = run.job
        # A cancel request accepted after the last poll must survive the final write
        if not job.cancel_requested:
            document = await self.store.get_job(job.id)
            if job.id in self._cancel_flags or (document and document.get("cancelRequested")):
                job.cancel_requested = True
        job.transition_to(status)
        # Terminal documents are written without API keys
        await self.store.save_job(job.to_document())
        await self.store.save_history_entry(job.to_history_entry().to_dict())
        self._cancel_flags.discard(job.id)

        logger.info("Migration job %s finished: %s", job.id, status.value)
        return job

    # =========================================================================
    # QUERIES & CANCELLATION
    # =========================================================================

    async def get_migration_job(self, job_id: str) -> Optional[MigrationJob]:
        document = await self.store.get_job(job_id)
        return MigrationJob.from_dict(document) if document else None

    async def cancel_migration(self, job_id: str) -> Optional[MigrationJob]:
        """
        Request cancellation. Idempotent; a terminal job is returned unchanged.
        Returns None for unknown jobs.
        """
        job = await self.get_migration_job(job_id)
        if job is None:
            return None
        if job.is_terminal:
            logger.info("Cancel ignored for job %s: already %s", job_id, job.status.value)
            return job

        self._cancel_flags.add(job_id)
        job.cancel_requested = True
        job.updated_at = utc_now_iso()
        await self.store.update_fields(job_id, {
            "cancelRequested": True,
            "updatedAt": job.updated_at
        })
        logger.info("Cancellation requested for migration job %s", job_id)
        return job

    async def get_migration_history(self) -> List[MigrationHistoryEntry]:
        entries = [MigrationHistoryEntry.from_dict(d) for d in await self.store.list_history()]
        return sorted(entries, key=lambda e: e.created_at, reverse=True)

    # =========================================================================
    # RECOVERY
    # =========================================================================

    async def find_stale_jobs(self, threshold: Optional[timedelta] = None) -> List[MigrationJob]:
        """Jobs stuck in pending for longer than `threshold`."""
        threshold = threshold or self.stale_pending_after
        pending = await self.store.list_jobs([MigrationStatus.PENDING.value])
        return [
            job for job in (MigrationJob.from_dict(d) for d in pending)
            if job.is_stale(threshold)
        ]

    async def recover_jobs(self) -> Dict[str, int]:
        """
        Startup recovery. Jobs left running by a previous process can't be
        resumed mid-category and are failed; pending jobs are resubmitted.
        """
        failed = 0
        resubmitted = 0
        documents = await self.store.list_jobs([
            MigrationStatus.PENDING.value, MigrationStatus.RUNNING.value
        ])

        for document in documents:
            job = MigrationJob.from_dict(document)
            if job.id in self._tasks:
                continue

            if job.status == MigrationStatus.RUNNING:
                job.error = "Interrupted by restart"
                await self._finish(_JobRun(job), MigrationStatus.FAILED)
                failed += 1
            else:
                if job.is_stale(self.stale_pending_after):
                    logger.warning("Resubmitting stale pending job %s (created %s)", job.id, job.created_at)
                self.submit(job.id)
                resubmitted += 1

        if failed or resubmitted:
            logger.info("Job recovery: %d interrupted jobs failed, %d pending jobs resubmitted",
                        failed, resubmitted)
        return {"failed": failed, "resubmitted": resubmitted}

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("Cancelled %d in-flight migration tasks", len(tasks))
