"""Airtable linked-record handler."""

import logging
from collections.abc import Hashable
from typing import Any, Callable, Dict, List, Optional, Tuple

from reverse_etl.handlers.base import DestinationHandler, HandlerContext
from reverse_etl.integrations.airtable import AirtableDestination
from reverse_etl.models import MappingRule, MappingType, SyncConfig
from reverse_etl.models.lookup import LookupIndex

logger = logging.getLogger(__name__)


def _is_blank(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


def link_index_key(linked_table_id: str, match_field: str) -> Tuple[str, str]:
    return (linked_table_id, match_field)


class AirtableHandler(DestinationHandler):
    """
    Resolves custom_mapping rules into Airtable linked-record ids.

    Rule options:
    - linked_table_id: table holding the rows to link to
    - match_field: field of that table compared with the source value
    """

    name = "airtable"

    def __init__(self, destination_factory: Callable[[], AirtableDestination] = AirtableDestination):
        self.destination_factory = destination_factory

    def transform_custom_mapping(
        self,
        mapping: MappingRule,
        record: Dict[str, Any],
        context: HandlerContext,
    ) -> Optional[List[str]]:
        source_value = record.get(mapping.source_path)
        if _is_blank(source_value):
            return None

        linked_table_id = mapping.options.get("linked_table_id")
        match_field = mapping.options.get("match_field")
        if not linked_table_id or not match_field:
            return None

        value_index = context.preload_indexes.get(link_index_key(linked_table_id, match_field))
        if value_index is None:
            return None
        if isinstance(value_index, LookupIndex):
            lookup = value_index.ids_for
        else:
            # Plain {value: [ids]} dicts are accepted too
            def lookup(value):
                return value_index.get(value) or []

        values = source_value if isinstance(source_value, list) else [source_value]
        resolved_ids: List[str] = []
        for value in values:
            if not isinstance(value, Hashable):
                continue
            for record_id in lookup(value):
                if record_id not in resolved_ids:
                    resolved_ids.append(record_id)

        return resolved_ids or None

    async def build_custom_mapping_indexes(self, sync: SyncConfig) -> Dict[Any, Any]:
        link_mappings = [m for m in sync.mappings if m.mapping_type == MappingType.CUSTOM_MAPPING]
        if not link_mappings:
            return {}

        connection = sync.destination.connection_specification
        base_id = connection.get("base_id")
        api_key = connection.get("api_key")
        if not base_id or not api_key:
            return {}

        pairs = []
        for mapping in link_mappings:
            pair = (mapping.options.get("linked_table_id"), mapping.options.get("match_field"))
            if all(pair) and pair not in pairs:
                pairs.append(pair)
        if not pairs:
            return {}

        indexes: Dict[Any, Any] = {}
        try:
            async with self.destination_factory() as destination:
                resolver = destination.link_resolver(api_key, base_id)
                for linked_table_id, match_field in pairs:
                    indexes[link_index_key(linked_table_id, match_field)] = await resolver.build_full_index(
                        linked_table_id, match_field
                    )
        except Exception as e:
            logger.error(
                f"Failed to build Airtable link indexes: {e}",
                exc_info=True,
                extra={"context": "AirtableHandler.build_custom_mapping_indexes", "sync_id": sync.sync_id},
            )
            return {}

        return indexes
