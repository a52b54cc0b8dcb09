"""
CRM Migration Hub - Migration Job Store

Durable persistence for migration job documents and their history entries.

- MongoMigrationJobStore: motor-backed, used by the running service
- InMemoryMigrationJobStore: process-local, used in tests and when no
  database is configured

Both store plain camelCase documents; the job manager owns the model
conversion.
"""

import copy
import logging
from abc import ABC, abstractmethod
from typing import Dict, Any, List, Optional

logger = logging.getLogger(__name__)

JOBS_COLLECTION = "crm_migration_jobs"
HISTORY_COLLECTION = "crm_migration_history"


class MigrationJobStore(ABC):
    """Document store interface for migration jobs."""

    @abstractmethod
    async def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def save_job(self, document: Dict[str, Any]) -> None:
        """Create or replace the job document with the same id."""
        pass

    @abstractmethod
    async def update_fields(self, job_id: str, fields: Dict[str, Any]) -> bool:
        """
        Set individual (dotted) fields without touching the rest of the
        document. Returns False when the job doesn't exist.
        """
        pass

    @abstractmethod
    async def list_jobs(self, statuses: Optional[List[str]] = None) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    async def save_history_entry(self, entry: Dict[str, Any]) -> None:
        """Idempotent by entry id."""
        pass

    @abstractmethod
    async def list_history(self) -> List[Dict[str, Any]]:
        """History entries, newest first."""
        pass


# =============================================================================
# MONGODB
# =============================================================================

class MongoMigrationJobStore(MigrationJobStore):
    """Job store on a motor database handle."""

    def __init__(self, db):
        self.db = db
        self.jobs = db[JOBS_COLLECTION]
        self.history = db[HISTORY_COLLECTION]

    async def ensure_indexes(self) -> None:
        await self.jobs.create_index("id", unique=True)
        await self.jobs.create_index("status")
        await self.jobs.create_index("createdAt")
        await self.history.create_index("id", unique=True)
        await self.history.create_index("createdAt")
        logger.info("Migration job store indexes ensured")

    async def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        return await self.jobs.find_one({"id": job_id}, {"_id": 0})

    async def save_job(self, document: Dict[str, Any]) -> None:
        await self.jobs.replace_one({"id": document["id"]}, document, upsert=True)

    async def update_fields(self, job_id: str, fields: Dict[str, Any]) -> bool:
        result = await self.jobs.update_one({"id": job_id}, {"$set": fields})
        return result.matched_count > 0

    async def list_jobs(self, statuses: Optional[List[str]] = None) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {}
        if statuses:
            query["status"] = {"$in": list(statuses)}
        return await self.jobs.find(query, {"_id": 0}).sort("createdAt", -1).to_list(1000)

    async def save_history_entry(self, entry: Dict[str, Any]) -> None:
        await self.history.replace_one({"id": entry["id"]}, entry, upsert=True)

    async def list_history(self) -> List[Dict[str, Any]]:
        return await self.history.find({}, {"_id": 0}).sort("createdAt", -1).to_list(1000)


# =============================================================================
# IN-MEMORY
# =============================================================================

def _set_path(document: Dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    target = document
    for part in parts[:-1]:
        child = target.get(part)
        if not isinstance(child, dict):
            child = {}
            target[part] = child
        target = child
    target[parts[-1]] = value


class InMemoryMigrationJobStore(MigrationJobStore):
    """Dict-backed store. Documents are deep-copied in and out."""

    def __init__(self):
        self._jobs: Dict[str, Dict[str, Any]] = {}
        self._history: Dict[str, Dict[str, Any]] = {}

    async def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        document = self._jobs.get(job_id)
        return copy.deepcopy(document) if document is not None else None

    async def save_job(self, document: Dict[str, Any]) -> None:
        self._jobs[document["id"]] = copy.deepcopy(document)

    async def update_fields(self, job_id: str, fields: Dict[str, Any]) -> bool:
        document = self._jobs.get(job_id)
        if document is None:
            return False
        for path, value in fields.items():
            _set_path(document, path, copy.deepcopy(value))
        return True

    async def list_jobs(self, statuses: Optional[List[str]] = None) -> List[Dict[str, Any]]:
        jobs = [
            copy.deepcopy(doc) for doc in self._jobs.values()
            if not statuses or doc.get("status") in statuses
        ]
        return sorted(jobs, key=lambda d: d.get("createdAt", ""), reverse=True)

    async def save_history_entry(self, entry: Dict[str, Any]) -> None:
        self._history[entry["id"]] = copy.deepcopy(entry)

    async def list_history(self) -> List[Dict[str, Any]]:
        entries = [copy.deepcopy(e) for e in self._history.values()]
        return sorted(entries, key=lambda e: e.get("createdAt", ""), reverse=True)
