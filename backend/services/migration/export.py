"""
CRM Migration Hub - Export Service

Read-only snapshot of a source account: one array per category, built with
the same listing logic the transfer workers use. A category that can't be
listed becomes an empty array plus a note.
"""

import asyncio
import logging
from typing import Dict, Any, List, Optional

from ..crm import AccountCredentials, CRMClientFactory, CRMError
from .categories import CategoryAdapter, CATEGORY_ADAPTERS
from .models import MigrationCategory, utc_now_iso
from .workflow_prompts import convert_workflow_to_prompt

logger = logging.getLogger(__name__)

EXPORT_FORMAT_VERSION = "1.0"


class ExportService:
    def __init__(
        self,
        client_factory: CRMClientFactory,
        adapters: Optional[Dict[MigrationCategory, CategoryAdapter]] = None
    ):
        self.client_factory = client_factory
        self.adapters = adapters or CATEGORY_ADAPTERS

    async def export_to_json(self, source: AccountCredentials) -> Dict[str, Any]:
        client = self.client_factory.for_account(source)

        async def fetch(adapter: CategoryAdapter):
            try:
                records, complete = await adapter.list_all(client)
                if not complete:
                    return adapter.name, records, f"{adapter.name}: export truncated at {len(records)} records (page cap)"
                return adapter.name, records, None
            except CRMError as e:
                logger.warning("Export of %s failed for location %s: %s",
                               adapter.name, source.location_id, str(e))
                return adapter.name, [], f"{adapter.name}: export failed ({e})"

        outcomes = await asyncio.gather(*(fetch(a) for a in self.adapters.values()))

        document: Dict[str, Any] = {
            "exportedAt": utc_now_iso(),
            "sourceLocationId": source.location_id,
            "version": EXPORT_FORMAT_VERSION,
        }
        notes: List[str] = []
        for name, records, note in outcomes:
            document[name] = records
            if note:
                notes.append(note)

        document["workflowPrompts"] = [
            {
                "workflowId": workflow.get("id"),
                "name": workflow.get("name"),
                "prompt": convert_workflow_to_prompt(workflow)
            }
            for workflow in document.get(MigrationCategory.WORKFLOWS.value, [])
        ]
        document["notes"] = notes

        logger.info("Exported location %s: %d records across %d categories (%d failed)",
                    source.location_id,
                    sum(len(records) for _, records, _ in outcomes),
                    len(outcomes), len(notes))
        return document
