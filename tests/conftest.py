"""Shared fixtures: sync configs and an in-memory Airtable behind httpx.MockTransport."""

import json
import re
from typing import Any, Dict, List, Optional

import httpx
import pytest

from reverse_etl.integrations import AirtableDestination
from reverse_etl.models import SyncConfig
from reverse_etl.utils.rate_limiter import RateLimiter

API_KEY = "key-test"
BASE_ID = "appTestBase"
TABLE_ID = "tblContacts"
TABLE_URL = f"https://api.airtable.com/v0/{BASE_ID}/{TABLE_ID}"

FORMULA = re.compile(r"^\{(?P<field>.+?)\}='(?P<value>.*)'$")


def make_sync(
    mode: str = "destination_insert",
    unique_identifier_config: Optional[Dict[str, Any]] = None,
    mappings: Any = None,
    json_schema: Optional[Dict[str, Any]] = None,
    batch_support: bool = True,
    batch_size: int = 10,
    connector_name: str = "Airtable",
    **stream_fields: Any,
) -> SyncConfig:
    return SyncConfig(
        sync_id="sync-1",
        sync_run_id="run-1",
        destination_sync_mode=mode,
        unique_identifier_config=unique_identifier_config,
        mappings=mappings if mappings is not None else [],
        stream={
            "name": "Contacts",
            "url": TABLE_URL,
            "batch_support": batch_support,
            "batch_size": batch_size,
            "json_schema": json_schema or {},
            "x_airtable": {"table_id": TABLE_ID},
            **stream_fields,
        },
        destination={
            "connector_name": connector_name,
            "connection_specification": {"api_key": API_KEY, "base_id": BASE_ID},
        },
    )


class FakeAirtable:
    """
    A single Airtable table.

    GET supports ``filterByFormula`` equality and ``pageSize``/``offset``
    paging; POST creates rows; PATCH updates them. ``fail_posts`` holds the
    1-based numbers of POST calls answered with 422, ``fail_list_page`` the
    page number of a full scan answered with 500.
    """

    def __init__(
        self,
        rows: Optional[List[Dict[str, Any]]] = None,
        fail_posts: Optional[set] = None,
        fail_list_page: Optional[int] = None,
    ):
        self.rows: List[Dict[str, Any]] = [dict(r) for r in (rows or [])]
        self.requests: List[httpx.Request] = []
        self.fail_posts = fail_posts or set()
        self.fail_list_page = fail_list_page
        self._post_calls = 0
        self._next_id = 1

    def calls(self, method: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.method == method]

    def payloads(self, method: str) -> List[Dict[str, Any]]:
        return [json.loads(r.content) for r in self.calls(method)]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "GET":
            return self._list(request)
        if request.method == "POST":
            return self._create(request)
        if request.method == "PATCH":
            return self._update(request)
        return httpx.Response(405)

    def _list(self, request: httpx.Request) -> httpx.Response:
        params = request.url.params
        formula = params.get("filterByFormula")
        if formula:
            match = FORMULA.match(formula)
            field, value = match.group("field"), match.group("value").replace("''", "'")
            found = [r for r in self.rows if self._matches(r["fields"].get(field), value)]
            return httpx.Response(200, json={"records": found})

        page_size = int(params.get("pageSize", 100))
        offset = int(params.get("offset", 0))
        page_number = offset // page_size + 1
        if self.fail_list_page == page_number:
            return httpx.Response(500, json={"error": "SERVER_ERROR"})

        field = params.get("fields[]")
        page = [
            {"id": r["id"], "fields": {field: r["fields"][field]} if field in r["fields"] else {}}
            for r in self.rows[offset:offset + page_size]
        ]
        body: Dict[str, Any] = {"records": page}
        if offset + page_size < len(self.rows):
            body["offset"] = str(offset + page_size)
        return httpx.Response(200, json=body)

    @staticmethod
    def _matches(stored: Any, value: str) -> bool:
        if isinstance(stored, list):
            return any(str(item) == value for item in stored)
        return stored is not None and str(stored) == value

    def _create(self, request: httpx.Request) -> httpx.Response:
        self._post_calls += 1
        if self._post_calls in self.fail_posts:
            return httpx.Response(422, json={"error": {"type": "INVALID_VALUE_FOR_COLUMN"}})

        created = []
        for item in json.loads(request.content)["records"]:
            row = {"id": f"rec{self._next_id:03d}", "fields": dict(item["fields"])}
            self._next_id += 1
            self.rows.append(row)
            created.append(row)
        return httpx.Response(200, json={"records": created})

    def _update(self, request: httpx.Request) -> httpx.Response:
        updated = []
        for item in json.loads(request.content)["records"]:
            row = next((r for r in self.rows if r["id"] == item["id"]), None)
            if row is None:
                return httpx.Response(404, json={"error": "NOT_FOUND"})
            row["fields"].update(item["fields"])
            updated.append(row)
        return httpx.Response(200, json={"records": updated})


def make_destination(fake: FakeAirtable) -> AirtableDestination:
    """Airtable connector wired to ``fake`` with an effectively unlimited rate limit."""
    return AirtableDestination(
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(fake.handler)),
        rate_limiter=RateLimiter(calls=10000, window=1),
    )


@pytest.fixture
def fake_airtable():
    return FakeAirtable()


@pytest.fixture
def upsert_sync():
    return make_sync(
        mode="upsert",
        unique_identifier_config={"source_field": "email", "destination_field": "Email"},
        mappings=[{"mapping_type": "standard", "from": "email", "to": "Email"}],
    )
