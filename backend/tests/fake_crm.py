"""
In-process fake of the CRM REST API, served through httpx.MockTransport.

Accounts are keyed by API key; each owns one location with per-category
record lists. Every write (POST/PUT) is recorded in `writes`.
"""

import asyncio
import json
import itertools
import re
from typing import Dict, Any, List, Optional, Set, Tuple

import httpx

from services.crm import CRMClientFactory, RateLimiterRegistry
from services.migration.categories import CATEGORY_ADAPTERS

SOURCE_KEY = "src-key"
DEST_KEY = "dst-key"
SOURCE_LOCATION = "loc-source"
DEST_LOCATION = "loc-dest"

NOTES_PATH = re.compile(r"^/contacts/([^/]+)/notes$")


class FakeCRMServer:
    def __init__(self, page_limit_cap: int = 100, report_totals: bool = True):
        self.keys: Dict[str, str] = {}
        self.locations: Dict[str, Dict[str, Any]] = {}
        self.data: Dict[str, Dict[str, List[Dict[str, Any]]]] = {}
        self.notes: Dict[str, List[Dict[str, Any]]] = {}
        self.writes: List[Tuple[str, str, Dict[str, Any]]] = []
        self.requests: List[Tuple[str, str]] = []
        self.reject_values: Set[str] = set()
        self.list_failures: Set[Tuple[str, str]] = set()
        self.throttle_next = 0
        self.latency = 0.0
        self.page_limit_cap = page_limit_cap
        self.report_totals = report_totals
        self._ids = itertools.count(1)

    # =========================================================================
    # SETUP
    # =========================================================================

    def add_account(self, api_key: str, location_id: str, name: str = "Test Location", **records) -> None:
        self.keys[api_key] = location_id
        self.locations[location_id] = {"id": location_id, "name": name}
        self.data[location_id] = {category: [] for category in (a.name for a in CATEGORY_ADAPTERS.values())}
        for category, items in records.items():
            self.data[location_id][category] = [dict(item) for item in items]

    def records(self, location_id: str, category: str) -> List[Dict[str, Any]]:
        return self.data[location_id][category]

    def contact_notes(self, contact_id: str) -> List[Dict[str, Any]]:
        return self.notes.setdefault(contact_id, [])

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def client_factory(self, **client_options) -> CRMClientFactory:
        options = {"max_retries": 3, "retry_base_delay": 0.0, "retry_max_delay": 0.0}
        options.update(client_options)
        return CRMClientFactory(
            RateLimiterRegistry(rate=0),
            http_client=httpx.AsyncClient(transport=self.transport()),
            **options
        )

    # =========================================================================
    # HANDLER
    # =========================================================================

    async def handler(self, request: httpx.Request) -> httpx.Response:
        if self.latency:
            await asyncio.sleep(self.latency)

        method = request.method
        path = request.url.path
        self.requests.append((method, path))

        auth = request.headers.get("Authorization", "")
        location_id = self.keys.get(auth[len("Bearer "):]) if auth.startswith("Bearer ") else None
        if location_id is None:
            return httpx.Response(401, json={"message": "Invalid JWT"})

        if self.throttle_next > 0:
            self.throttle_next -= 1
            return httpx.Response(429, json={"message": "Too many requests"})

        notes_route = NOTES_PATH.match(path)
        if notes_route:
            return self._notes(notes_route.group(1), request)

        for adapter in CATEGORY_ADAPTERS.values():
            if method == "GET" and path == adapter.list_path(location_id):
                return self._list(location_id, adapter, request)
            if method == "POST" and path == adapter.create_path(location_id):
                return self._create(location_id, adapter, request)
            prefix = adapter.create_path(location_id).rstrip("/") + "/"
            if method == "PUT" and path.startswith(prefix):
                return self._update(location_id, adapter, path[len(prefix):], request)

        if method == "GET" and path.startswith("/locations/"):
            requested = path[len("/locations/"):]
            if requested != location_id:
                return httpx.Response(403, json={"message": "Location not accessible"})
            return httpx.Response(200, json={"location": self.locations[location_id]})

        return httpx.Response(404, json={"message": f"No route for {method} {path}"})

    def _list(self, location_id, adapter, request) -> httpx.Response:
        if (location_id, adapter.name) in self.list_failures:
            return httpx.Response(400, json={"message": f"{adapter.name} unavailable"})
        limit = min(int(request.url.params.get("limit", "20")), self.page_limit_cap)
        skip = int(request.url.params.get("skip", "0"))
        items = self.data[location_id][adapter.name]
        body: Dict[str, Any] = {adapter.list_key: items[skip:skip + limit]}
        if self.report_totals:
            body["meta"] = {"total": len(items)}
        return httpx.Response(200, json=body)

    def _notes(self, contact_id, request) -> httpx.Response:
        notes = self.contact_notes(contact_id)
        if request.method == "GET":
            return httpx.Response(200, json={"notes": notes})
        body = json.loads(request.content)
        if self._rejected(body):
            return httpx.Response(422, json={"message": "note rejected"})
        self.writes.append(("POST", request.url.path, body))
        note = dict(body, id=f"note-{next(self._ids)}")
        notes.append(note)
        return httpx.Response(201, json={"note": note})

    def _rejected(self, body: Dict[str, Any]) -> bool:
        return any(str(v) in self.reject_values for v in body.values() if isinstance(v, (str, int)))

    def _create(self, location_id, adapter, request) -> httpx.Response:
        body = json.loads(request.content)
        if self._rejected(body):
            return httpx.Response(422, json={"message": ["record rejected"]})
        self.writes.append(("POST", request.url.path, body))
        record = dict(body)
        record["id"] = f"{adapter.name}-{next(self._ids)}"
        self.data[location_id][adapter.name].append(record)
        return httpx.Response(201, json={adapter.record_key: record})

    def _update(self, location_id, adapter, record_id, request) -> httpx.Response:
        body = json.loads(request.content)
        if self._rejected(body):
            return httpx.Response(422, json={"message": "record rejected"})
        for record in self.data[location_id][adapter.name]:
            if record.get("id") == record_id:
                self.writes.append(("PUT", request.url.path, body))
                record.update(body)
                return httpx.Response(200, json={adapter.record_key: record})
        return httpx.Response(404, json={"message": "not found"})


def contact(email: Optional[str], n: int, **extra) -> Dict[str, Any]:
    record = {
        "id": f"src-contact-{n}",
        "firstName": f"Person{n}",
        "dateAdded": f"2024-01-{n:02d}T10:00:00Z",
    }
    if email:
        record["email"] = email
    record.update(extra)
    return record


def named(prefix: str, name: str, n: int) -> Dict[str, Any]:
    return {"id": f"src-{prefix}-{n}", "name": name, "dateAdded": f"2024-02-{n:02d}T10:00:00Z"}
