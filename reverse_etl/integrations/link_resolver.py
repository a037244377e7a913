"""Resolve Airtable field values to record ids."""

import logging
from collections.abc import Hashable
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

import httpx

from reverse_etl.core.config import DESTINATION_CONFIGS
from reverse_etl.integrations.base import AuthenticationError, DestinationError
from reverse_etl.models.lookup import LookupIndex

logger = logging.getLogger(__name__)

RequestFn = Callable[..., Awaitable[httpx.Response]]


def build_equals_formula(field_name: str, value: Any) -> str:
    """Build ``{Name}='Alice'`` with single quotes doubled."""
    escaped = str(value).replace("'", "''")
    return f"{{{field_name}}}='{escaped}'"


class AirtableLinkResolver:
    """
    Builds value -> record id maps for one Airtable base.

    ``request`` is the rate-limited request function of the destination
    connector that owns the HTTP client.
    """

    def __init__(
        self,
        api_key: str,
        base_id: str,
        request: RequestFn,
        base_url: Optional[str] = None,
        page_size: Optional[int] = None,
    ):
        config = DESTINATION_CONFIGS["airtable"]
        self.api_key = api_key
        self.base_id = base_id
        self.request = request
        self.base_url = (base_url or config["api_base_url"]).rstrip("/")
        self.page_size = page_size or config["page_size"]

    def table_url(self, table_id: str) -> str:
        return f"{self.base_url}/{self.base_id}/{table_id}"

    def auth_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def _get_page(self, url: str, params: List[Tuple[str, Any]]) -> Dict[str, Any]:
        response = await self.request("GET", url, headers=self.auth_headers(), params=params)
        if response.status_code == 401:
            raise AuthenticationError(f"Airtable rejected the API key for base {self.base_id}")
        if not response.is_success:
            raise DestinationError(f"Airtable list failed {response.status_code}: {response.text}")
        body = response.json()
        if not isinstance(body, dict):
            raise DestinationError(f"Airtable list returned unexpected body: {body!r}")
        return body

    async def find_ids_by_values(self, table_id: str, field: str, values: Iterable[Any]) -> Dict[Any, List[str]]:
        """Resolve each distinct value with its own filtered query."""
        result: Dict[Any, List[str]] = {}
        for value in values:
            if value is None or not isinstance(value, Hashable) or value in result:
                continue
            result[value] = await self.find_ids_by_value(table_id, field, value)
        return result

    async def find_ids_by_value(self, table_id: str, field: str, value: Any) -> List[str]:
        """Ids of every row whose ``field`` equals ``value``."""
        url = self.table_url(table_id)
        base_params: List[Tuple[str, Any]] = [("filterByFormula", build_equals_formula(field, value))]
        ids: List[str] = []
        offset = None

        try:
            while True:
                params = list(base_params)
                if offset:
                    params.append(("offset", offset))
                body = await self._get_page(url, params)

                for rec in body.get("records") or []:
                    if rec.get("id"):
                        ids.append(rec["id"])

                offset = body.get("offset")
                if not offset:
                    break
        except Exception as e:
            logger.error(
                f"Airtable lookup failed for {field}={value!r}: {e}",
                extra={"context": "AirtableLinkResolver.find_ids_by_value", "table_id": table_id},
            )
            return []

        return ids

    async def build_full_index(self, table_id: str, field: str) -> LookupIndex:
        """Scan the whole table once, fetching only ``field``."""
        url = self.table_url(table_id)
        index = LookupIndex(table_id, field)
        offset = None
        pages = 0

        try:
            while True:
                params: List[Tuple[str, Any]] = [("pageSize", self.page_size), ("fields[]", field)]
                if offset:
                    params.append(("offset", offset))
                body = await self._get_page(url, params)
                pages += 1

                for rec in body.get("records") or []:
                    record_id = rec.get("id")
                    value = (rec.get("fields") or {}).get(field)
                    if not record_id or value is None:
                        continue
                    index.add_values(value, record_id)

                offset = body.get("offset")
                if not offset:
                    break
        except Exception as e:
            index.complete = False
            logger.error(
                f"Airtable full scan of {table_id}.{field} stopped after {pages} pages: {e}",
                extra={"context": "AirtableLinkResolver.build_full_index", "indexed_values": len(index)},
            )

        logger.info(f"Indexed {len(index)} values of {table_id}.{field} from {pages} pages")
        return index
