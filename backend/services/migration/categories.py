"""
CRM Migration Hub - Category Adapters

One adapter per migration category. An adapter knows a category's endpoints,
response keys, writable payload and natural key; everything else (paging
policy, conflict handling, progress, cancellation) lives in the generic
transfer worker.
"""

import asyncio
import copy
import logging
import re
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional, Set, Tuple

from dateutil import parser as date_parser

from ..crm import CRMClient, CRMError
from .config import MIGRATION_PAGE_SIZE, MIGRATION_MAX_PAGES, MIGRATION_NATURAL_KEYS
from .models import MigrationCategory

logger = logging.getLogger(__name__)

CREATED_AT_FIELDS = ("dateAdded", "createdAt", "dateCreated", "createdOn")


class UnresolvedReferenceError(Exception):
    """A record points at a source-account record with no destination counterpart."""
    pass


def get_path(record: Dict[str, Any], path: str) -> Any:
    """Resolve a dotted field path ("contact.email") inside a record."""
    value: Any = record
    for part in path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def normalize_key_part(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip().lower()
    return text or None


def created_at(record: Dict[str, Any]) -> Optional[datetime]:
    for field_name in CREATED_AT_FIELDS:
        raw = record.get(field_name)
        if not raw:
            continue
        try:
            if isinstance(raw, (int, float)):
                # epoch milliseconds
                parsed = datetime.fromtimestamp(raw / 1000.0, tz=timezone.utc)
            else:
                parsed = date_parser.parse(str(raw))
        except (ValueError, OverflowError, OSError):
            continue
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    return None


def sort_by_creation(records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Creation time ascending. Stable; undated records follow the dated ones
    in source order.
    """
    def sort_key(item: Tuple[int, Dict[str, Any]]):
        index, record = item
        timestamp = created_at(record)
        if timestamp is None:
            return (1, 0.0, index)
        return (0, timestamp.timestamp(), index)

    return [record for _, record in sorted(enumerate(records), key=sort_key)]


class CategoryAdapter:
    """
    Base adapter for a plain location-scoped REST resource:

        GET  {resource_path}?locationId=...&limit=...&skip=...
        POST {resource_path}
        PUT  {resource_path}{id}
    """

    category: MigrationCategory
    resource_path: str = ""
    list_key: str = ""
    record_key: str = ""
    default_key_fields: Tuple[str, ...] = ("name",)
    location_param: Optional[str] = "locationId"
    # Categories whose transfer must finish first when selected in the same job
    depends_on: Tuple[MigrationCategory, ...] = ()

    READ_ONLY_FIELDS = frozenset({
        "id", "_id", "locationId", "dateAdded", "dateUpdated",
        "createdAt", "updatedAt", "createdBy", "updatedBy"
    })

    def __init__(
        self,
        key_fields: Optional[List[str]] = None,
        page_size: int = MIGRATION_PAGE_SIZE,
        max_pages: int = MIGRATION_MAX_PAGES
    ):
        self.key_fields: Tuple[str, ...] = tuple(key_fields or self.default_key_fields)
        self.page_size = page_size
        self.max_pages = max_pages

    @property
    def name(self) -> str:
        return self.category.value

    # =========================================================================
    # ENDPOINTS
    # =========================================================================

    def list_path(self, location_id: str) -> str:
        return self.resource_path.format(location_id=location_id)

    def create_path(self, location_id: str) -> str:
        return self.resource_path.format(location_id=location_id)

    def update_path(self, location_id: str, record_id: str) -> str:
        base = self.resource_path.format(location_id=location_id)
        return f"{base.rstrip('/')}/{record_id}"

    def list_params(self, location_id: str) -> Dict[str, Any]:
        if self.location_param:
            return {self.location_param: location_id}
        return {}

    # =========================================================================
    # READ
    # =========================================================================

    async def list_records(self, client: CRMClient, max_pages: Optional[int] = None) -> List[Dict[str, Any]]:
        """All records of this category, oldest first. A listing cut off at the page cap is logged."""
        records, complete = await self.list_all(client, max_pages)
        return records

    async def list_all(
        self,
        client: CRMClient,
        max_pages: Optional[int] = None
    ) -> Tuple[List[Dict[str, Any]], bool]:
        """
        Walk every page of this category. Returns (records oldest first,
        complete); complete is False when the page cap stopped the walk.

        When the platform reports a total, paging continues until that many
        records arrived or a page comes back empty, since a server may cap
        `limit` below the requested page size. Without a total, a short page
        is the last one.
        """
        max_pages = max_pages or self.max_pages
        records: List[Dict[str, Any]] = []
        skip = 0
        complete = False

        for _ in range(max_pages):
            page, reported_total = await client.fetch_page(
                self.list_path(client.location_id),
                self.list_key,
                limit=self.page_size,
                skip=skip,
                params=self.list_params(client.location_id)
            )
            records.extend(page)
            skip += len(page)

            if not page:
                complete = True
                break
            if reported_total is not None:
                if len(records) >= reported_total:
                    complete = True
                    break
            elif len(page) < self.page_size:
                complete = True
                break

        if not complete:
            logger.warning("Listing %s for location %s stopped at page cap (%d pages, %d records)",
                           self.name, client.location_id, max_pages, len(records))

        return sort_by_creation(records), complete

    async def count_records(self, client: CRMClient, max_pages: int) -> int:
        """Record count, trusting the platform's reported total when it gives one."""
        first_page, reported_total = await client.fetch_page(
            self.list_path(client.location_id),
            self.list_key,
            limit=self.page_size,
            skip=0,
            params=self.list_params(client.location_id)
        )
        if reported_total is not None:
            return reported_total

        count = len(first_page)
        page = first_page
        pages = 1
        while len(page) >= self.page_size and pages < max_pages:
            page, _ = await client.fetch_page(
                self.list_path(client.location_id),
                self.list_key,
                limit=self.page_size,
                skip=count,
                params=self.list_params(client.location_id)
            )
            count += len(page)
            pages += 1
        return count

    # =========================================================================
    # MATCHING
    # =========================================================================

    def natural_key(self, record: Dict[str, Any]) -> Optional[str]:
        """All key fields joined; None when the first key field is empty."""
        parts = [normalize_key_part(get_path(record, path)) for path in self.key_fields]
        if not parts or parts[0] is None:
            return None
        return "|".join(p or "" for p in parts)

    @staticmethod
    def record_id(record: Dict[str, Any]) -> Optional[str]:
        return record.get("id") or record.get("_id")

    def display_name(self, record: Dict[str, Any]) -> str:
        for field_name in ("name", "title", "email", "firstName"):
            value = record.get(field_name)
            if value:
                return str(value)
        return str(self.record_id(record) or "unknown record")

    def disambiguate(self, record: Dict[str, Any], taken: Set[str]) -> Optional[Dict[str, Any]]:
        """
        Copy of `record` whose natural key is not in `taken`, by suffixing the
        first top-level key field: "Name (2)" or "local+2@domain".
        Returns None when there is no field that can be varied.
        """
        field_name = next(
            (p for p in self.key_fields if "." not in p and record.get(p)), None
        )
        if field_name is None:
            return None
        original = str(record[field_name])
        if field_name == "phone":
            return None

        for n in range(2, 1000):
            candidate = copy.deepcopy(record)
            candidate[field_name] = _suffixed(original, n)
            key = self.natural_key(candidate)
            if key is not None and key not in taken:
                return candidate
        return None

    # =========================================================================
    # REFERENCES
    # =========================================================================

    async def load_references(self, source_client: CRMClient, destination_client: CRMClient) -> Dict[str, Any]:
        """Lookup tables for resolve_references, built once per transfer."""
        return {}

    def resolve_references(self, record: Dict[str, Any], references: Dict[str, Any]) -> Dict[str, Any]:
        """
        Copy of `record` with source-account ids rewritten to their
        destination counterparts. Raises UnresolvedReferenceError.
        """
        return record

    async def after_create(
        self,
        source_client: CRMClient,
        destination_client: CRMClient,
        record: Dict[str, Any],
        created: Dict[str, Any]
    ) -> List[str]:
        """Copy data owned by a newly created record. Returns warnings."""
        return []

    # =========================================================================
    # WRITE
    # =========================================================================

    def build_payload(self, record: Dict[str, Any], location_id: Optional[str]) -> Dict[str, Any]:
        payload = {
            k: copy.deepcopy(v) for k, v in record.items()
            if k not in self.READ_ONLY_FIELDS and v is not None
        }
        if location_id:
            payload["locationId"] = location_id
        return payload

    def _unwrap(self, response: Dict[str, Any]) -> Dict[str, Any]:
        created = response.get(self.record_key)
        return created if isinstance(created, dict) else response

    async def create(self, client: CRMClient, record: Dict[str, Any]) -> Dict[str, Any]:
        payload = self.build_payload(record, client.location_id)
        response = await client.create(self.create_path(client.location_id), payload)
        return self._unwrap(response)

    async def update(self, client: CRMClient, record_id: str, record: Dict[str, Any]) -> Dict[str, Any]:
        payload = self.build_payload(record, None)
        response = await client.update(self.update_path(client.location_id, record_id), payload)
        return self._unwrap(response)


_EMAIL_RE = re.compile(r"^([^@+]+)(?:\+[^@]*)?@(.+)$")


def _suffixed(value: str, n: int) -> str:
    match = _EMAIL_RE.match(value)
    if match:
        return f"{match.group(1)}+{n}@{match.group(2)}"
    return f"{value} ({n})"


# =============================================================================
# CATEGORY ADAPTERS
# =============================================================================

class ContactsAdapter(CategoryAdapter):
    category = MigrationCategory.CONTACTS
    resource_path = "/contacts/"
    list_key = "contacts"
    record_key = "contact"
    default_key_fields = ("email", "phone")

    def natural_key(self, record: Dict[str, Any]) -> Optional[str]:
        # First non-empty field wins (email, else phone)
        for path in self.key_fields:
            part = normalize_key_part(get_path(record, path))
            if part:
                return f"{path}:{part}"
        return None

    def display_name(self, record: Dict[str, Any]) -> str:
        full_name = " ".join(
            str(record[k]) for k in ("firstName", "lastName") if record.get(k)
        )
        return record.get("email") or full_name or record.get("phone") or super().display_name(record)

    @staticmethod
    def notes_path(contact_id: str) -> str:
        return f"/contacts/{contact_id}/notes"

    async def after_create(
        self,
        source_client: CRMClient,
        destination_client: CRMClient,
        record: Dict[str, Any],
        created: Dict[str, Any]
    ) -> List[str]:
        """Copy the source contact's notes onto the new destination contact."""
        source_id = self.record_id(record)
        destination_id = self.record_id(created)
        if not source_id or not destination_id:
            return []

        label = self.display_name(record)
        try:
            response = await source_client.request("GET", self.notes_path(source_id))
        except CRMError as e:
            logger.warning("Could not read notes of contact %s: %s", source_id, str(e))
            return [f"{label}: notes not copied ({e})"]

        warnings = []
        copied = 0
        for note in response.get("notes") or []:
            body = note.get("body") if isinstance(note, dict) else None
            if not body:
                continue
            try:
                await destination_client.create(self.notes_path(destination_id), {"body": body})
                copied += 1
            except CRMError as e:
                logger.warning("Could not copy a note of contact %s: %s", source_id, str(e))
                warnings.append(f"{label}: note not copied ({e})")

        if copied:
            logger.debug("Copied %d notes for contact %s -> %s", copied, source_id, destination_id)
        return warnings


class CalendarsAdapter(CategoryAdapter):
    category = MigrationCategory.CALENDARS
    resource_path = "/calendars/"
    list_key = "calendars"
    record_key = "calendar"


class WorkflowsAdapter(CategoryAdapter):
    category = MigrationCategory.WORKFLOWS
    resource_path = "/workflows/"
    list_key = "workflows"
    record_key = "workflow"


class OpportunitiesAdapter(CategoryAdapter):
    category = MigrationCategory.OPPORTUNITIES
    resource_path = "/opportunities/"
    list_key = "opportunities"
    record_key = "opportunity"
    default_key_fields = ("name", "contact.email")
    location_param = "location_id"
    depends_on = (MigrationCategory.CONTACTS,)

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        # Contact matching rules; build_adapters swaps in the configured contacts adapter
        self.contacts: CategoryAdapter = ContactsAdapter(page_size=self.page_size, max_pages=self.max_pages)

    def list_path(self, location_id: str) -> str:
        return "/opportunities/search"

    async def load_references(self, source_client: CRMClient, destination_client: CRMClient) -> Dict[str, Any]:
        """Source contact id -> contact natural key, and natural key -> destination contact id."""
        source_contacts, destination_contacts = await asyncio.gather(
            self.contacts.list_records(source_client),
            self.contacts.list_records(destination_client)
        )

        contact_keys: Dict[str, str] = {}
        for contact in source_contacts:
            contact_id = self.record_id(contact)
            key = self.contacts.natural_key(contact)
            if contact_id and key:
                contact_keys[contact_id] = key

        destination_ids: Dict[str, str] = {}
        for contact in destination_contacts:
            contact_id = self.record_id(contact)
            key = self.contacts.natural_key(contact)
            if contact_id and key and key not in destination_ids:
                destination_ids[key] = contact_id

        return {"contact_keys": contact_keys, "destination_contacts": destination_ids}

    def resolve_references(self, record: Dict[str, Any], references: Dict[str, Any]) -> Dict[str, Any]:
        contact_id = record.get("contactId") or get_path(record, "contact.id")
        if not contact_id:
            return record

        embedded = record.get("contact")
        key = self.contacts.natural_key(embedded) if isinstance(embedded, dict) else None
        key = key or references.get("contact_keys", {}).get(contact_id)
        destination_id = references.get("destination_contacts", {}).get(key) if key else None
        if destination_id is None:
            raise UnresolvedReferenceError(f"contact {contact_id} has no match in the destination account")

        resolved = dict(record)
        resolved["contactId"] = destination_id
        return resolved

    def build_payload(self, record: Dict[str, Any], location_id: Optional[str]) -> Dict[str, Any]:
        payload = super().build_payload(record, location_id)
        # Embedded contact is a read projection, not a writable field
        payload.pop("contact", None)
        return payload


class FormsAdapter(CategoryAdapter):
    category = MigrationCategory.FORMS
    resource_path = "/forms/"
    list_key = "forms"
    record_key = "form"


class SurveysAdapter(CategoryAdapter):
    category = MigrationCategory.SURVEYS
    resource_path = "/surveys/"
    list_key = "surveys"
    record_key = "survey"


class TagsAdapter(CategoryAdapter):
    category = MigrationCategory.TAGS
    resource_path = "/locations/{location_id}/tags"
    list_key = "tags"
    record_key = "tag"
    location_param = None

    def build_payload(self, record: Dict[str, Any], location_id: Optional[str]) -> Dict[str, Any]:
        return {"name": record.get("name")}


class UsersAdapter(CategoryAdapter):
    category = MigrationCategory.USERS
    resource_path = "/users/"
    list_key = "users"
    record_key = "user"
    default_key_fields = ("email",)

    READ_ONLY_FIELDS = CategoryAdapter.READ_ONLY_FIELDS | {"roles", "locationIds"}

    def build_payload(self, record: Dict[str, Any], location_id: Optional[str]) -> Dict[str, Any]:
        payload = super().build_payload(record, None)
        if location_id:
            payload["locationIds"] = [location_id]
        return payload


class CompaniesAdapter(CategoryAdapter):
    category = MigrationCategory.COMPANIES
    resource_path = "/businesses/"
    list_key = "businesses"
    record_key = "business"


ADAPTER_CLASSES = {
    cls.category: cls for cls in (
        ContactsAdapter, CalendarsAdapter, WorkflowsAdapter, OpportunitiesAdapter,
        FormsAdapter, SurveysAdapter, TagsAdapter, UsersAdapter, CompaniesAdapter
    )
}


def build_adapters(
    natural_keys: Optional[Dict[str, List[str]]] = None,
    page_size: int = MIGRATION_PAGE_SIZE,
    max_pages: int = MIGRATION_MAX_PAGES
) -> Dict[MigrationCategory, CategoryAdapter]:
    natural_keys = natural_keys or {}
    adapters = {
        category: cls(
            key_fields=natural_keys.get(category.value),
            page_size=page_size,
            max_pages=max_pages
        )
        for category, cls in ADAPTER_CLASSES.items()
    }
    adapters[MigrationCategory.OPPORTUNITIES].contacts = adapters[MigrationCategory.CONTACTS]
    return adapters


CATEGORY_ADAPTERS = build_adapters(MIGRATION_NATURAL_KEYS)


def get_adapter(category) -> CategoryAdapter:
    return CATEGORY_ADAPTERS[MigrationCategory(category)]
