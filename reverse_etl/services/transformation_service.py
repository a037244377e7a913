"""Record transformation from source rows to destination-shaped records."""

import hashlib
import json
import logging
import re
from datetime import date, datetime
from typing import Any, Callable, Dict, Optional, Tuple, Union

from dateutil import parser as dateutil_parser
from jinja2 import Template
from jinja2.exceptions import SecurityError
from jinja2.sandbox import SandboxedEnvironment

from reverse_etl.handlers import HandlerContext, HandlerRegistry, handler_registry
from reverse_etl.models import MappingRule, MappingType, PathSegment, Record, SyncConfig
from reverse_etl.services.embedding_service import EmbeddingService

logger = logging.getLogger(__name__)

INTEGER_PATTERN = re.compile(r"[-+]?\d+")
DECIMAL_PATTERN = re.compile(r"[-+]?\d+(\.\d+)?")
ISO_DATE_PREFIX = re.compile(r"^\d{4}-\d{2}-\d{2}")
US_DATE = re.compile(r"^\d{1,2}/\d{1,2}/\d{4}$")

TRUE_TOKENS = {"true", "1", "yes", "y"}
FALSE_TOKENS = {"false", "0", "no", "n"}


# Template filters

def _normalize_phone(phone: Any) -> str:
    digits = re.sub(r'\D', '', str(phone))

    if len(digits) == 10:  # US phone
        return f"({digits[:3]}) {digits[3:6]}-{digits[6:]}"
    elif len(digits) == 11 and digits[0] == '1':  # US phone with country code
        return f"+1 ({digits[1:4]}) {digits[4:7]}-{digits[7:]}"
    return digits


def _extract_domain(value: Any) -> str:
    """Extract domain from email or URL."""
    value = str(value).lower()

    if '@' in value:
        return value.split('@')[1]

    match = re.search(r'(?:https?://)?(?:www\.)?([^/]+)', value)
    if match:
        return match.group(1)
    return value


def _clean_html(html: Any) -> str:
    """Remove HTML tags from string."""
    from bs4 import BeautifulSoup
    soup = BeautifulSoup(str(html), 'html.parser')
    return soup.get_text(strip=True)


def _default_if_blank(value: Any, default: Any = "") -> Any:
    if value is None or (isinstance(value, str) and value.strip() == ""):
        return default
    return value


BUILTIN_FILTERS: Dict[str, Callable] = {
    "uppercase": lambda x: str(x).upper(),
    "lowercase": lambda x: str(x).lower(),
    "trim": lambda x: str(x).strip(),
    "snake_case": lambda x: re.sub(r'[\s\-]+', '_', str(x).strip().lower()),
    "camel_case": lambda x: ''.join(word.capitalize() for word in str(x).split()),
    "phone_normalize": _normalize_phone,
    "email_normalize": lambda x: str(x).lower().strip(),
    "extract_domain": _extract_domain,
    "clean_html": _clean_html,
    "truncate_chars": lambda x, length=100: str(x)[:length],
    "hash": lambda x: hashlib.sha256(str(x).encode()).hexdigest(),
    "to_json": lambda x: json.dumps(x, default=str),
    "default_if_blank": _default_if_blank,
}


def assign_path(data: Dict[str, Any], segments: Tuple[PathSegment, ...], value: Any) -> None:
    """
    Write ``value`` into ``data`` following parsed destination segments.

    A final ``key[]`` segment appends to the array. An intermediate one
    descends into the array's last element, adding ``{}`` when there is none.
    """
    current = data
    last_index = len(segments) - 1

    for index, segment in enumerate(segments):
        if index == last_index:
            if segment.append:
                target = current.get(segment.key)
                if not isinstance(target, list):
                    target = current[segment.key] = []
                target.append(value)
            else:
                current[segment.key] = value
        elif segment.append:
            items = current.get(segment.key)
            if not isinstance(items, list):
                items = current[segment.key] = []
            if not items or not isinstance(items[-1], dict):
                items.append({})
            current = items[-1]
        else:
            child = current.get(segment.key)
            if not isinstance(child, dict):
                child = current[segment.key] = {}
            current = child


def parse_datetime(value: str) -> Optional[datetime]:
    """
    Parse ISO-8601, ``YYYY-MM-DD HH:MM:SS+HHMM`` or ``MM/DD/YYYY`` first,
    then anything dateutil understands (``Jan 2, 2024``).

    Naive inputs stay naive: no local timezone is assumed, so naive
    date-times are emitted without an offset.
    """
    if ISO_DATE_PREFIX.match(value):
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            pass
        try:
            return datetime.strptime(value, "%Y-%m-%d %H:%M:%S%z")
        except ValueError:
            pass
    elif US_DATE.match(value):
        try:
            return datetime.strptime(value, "%m/%d/%Y")
        except ValueError:
            pass

    try:
        return dateutil_parser.parse(value)
    except (ValueError, OverflowError):
        return None


def coerce_number(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    normalized = value.strip()
    if not DECIMAL_PATTERN.fullmatch(normalized):
        return value
    if INTEGER_PATTERN.fullmatch(normalized):
        return int(normalized)
    return float(normalized)


def coerce_boolean(value: Any) -> Any:
    if value is None or isinstance(value, bool):
        return value
    normalized = str(value).strip().lower()
    if normalized in TRUE_TOKENS:
        return True
    if normalized in FALSE_TOKENS:
        return False
    return value


def coerce_date(value: Any, fmt: str) -> Any:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        return value.isoformat()
    elif isinstance(value, str) and value.strip():
        parsed = parse_datetime(value.strip())
        if parsed is None:
            logger.debug(f"Failed to coerce date value: {value!r} ({fmt})")
            return value
    else:
        return value

    if fmt == "date":
        return parsed.strftime("%Y-%m-%d")
    return parsed.isoformat()


def coerce_value(value: Any, schema: Dict[str, Any]) -> Any:
    """Coerce ``value`` to a JSON-schema property. Unparseable values pass through."""
    if value is None or not schema:
        return value

    types = schema.get("type")
    types = [str(t) for t in (types if isinstance(types, list) else [types]) if t]
    fmt = schema.get("format")
    if not types:
        return value

    if "array" in types:
        item_schema = schema.get("items") or {}
        if not isinstance(value, list) or not item_schema:
            return value
        return [coerce_value(item, item_schema) for item in value]
    if "number" in types or "integer" in types:
        return coerce_number(value)
    if "boolean" in types:
        return coerce_boolean(value)
    if fmt in ("date", "date-time"):
        return coerce_date(value, fmt)
    return value


def apply_destination_schema(data: Dict[str, Any], properties: Dict[str, Any]) -> Dict[str, Any]:
    if not properties:
        return data
    for field_name in list(data.keys()):
        schema = properties.get(field_name)
        if schema:
            data[field_name] = coerce_value(data[field_name], schema)
    return data


class RecordTransformer:
    """Maps one source record into a destination record using a sync's mapping rules."""

    def __init__(
        self,
        handler_registry: HandlerRegistry = handler_registry,
        preload_indexes: Optional[Dict[Any, Any]] = None,
        filters: Optional[Dict[str, Callable]] = None,
        embedding_service_factory: Callable[[Dict[str, Any]], EmbeddingService] = EmbeddingService,
    ):
        self.handler_registry = handler_registry
        self.preload_indexes = preload_indexes or {}
        self.embedding_service_factory = embedding_service_factory
        self._embedding_services: Dict[str, EmbeddingService] = {}
        self._templates: Dict[str, Template] = {}

        # Templates come from user sync configuration
        self.environment = SandboxedEnvironment(autoescape=False)
        self.environment.filters.update(BUILTIN_FILTERS)
        if filters:
            self.environment.filters.update(filters)

    def compile_template(self, source: str) -> Template:
        template = self._templates.get(source)
        if template is None:
            template = self._templates[source] = self.environment.from_string(source)
        return template

    async def transform(self, sync: SyncConfig, record: Union[Record, Dict[str, Any]]) -> Dict[str, Any]:
        """
        Build the destination record.

        Never raises: a failing rule is logged and skipped, so the result may
        be partial.
        """
        payload = record.record if isinstance(record, Record) else (record or {})
        destination_data: Dict[str, Any] = {}
        context = HandlerContext(sync=sync, run_id=sync.sync_run_id, preload_indexes=self.preload_indexes)

        for mapping in sync.mappings:
            try:
                await self._apply_mapping(mapping, payload, destination_data, context)
            except SecurityError as e:
                logger.warning(
                    f"Template for {mapping.destination_path} attempted unsafe access: {e}",
                    extra={"context": "RecordTransformer.transform", "sync_id": sync.sync_id},
                )
            except Exception as e:
                logger.error(
                    f"Failed to transform {mapping.source_path} -> {mapping.destination_path}: {e}",
                    extra={"context": "RecordTransformer.transform", "sync_id": sync.sync_id},
                )

        try:
            apply_destination_schema(destination_data, sync.stream.schema_properties)
        except Exception as e:
            logger.error(
                f"Schema coercion failed: {e}",
                extra={"context": "RecordTransformer.apply_destination_schema", "sync_id": sync.sync_id},
            )

        return destination_data

    async def _apply_mapping(
        self,
        mapping: MappingRule,
        payload: Dict[str, Any],
        destination_data: Dict[str, Any],
        context: HandlerContext,
    ) -> None:
        mapping_type = mapping.mapping_type

        if mapping_type == MappingType.STANDARD:
            value = payload.get(mapping.source_path)
            if mapping.escape_quotes and isinstance(value, str):
                value = value.replace("'", "''")

        elif mapping_type == MappingType.STATIC:
            value = mapping.source_path

        elif mapping_type == MappingType.TEMPLATE:
            value = self.compile_template(str(mapping.source_path or "")).render(payload)

        elif mapping_type == MappingType.VECTOR:
            value = payload.get(mapping.source_path)
            if mapping.embedding_config:
                value = await self._embedding_service(mapping.embedding_config).generate_embedding(value)

        elif mapping_type == MappingType.CUSTOM_MAPPING:
            connector_name = context.sync.destination.connector_name if context.sync else None
            handler = self.handler_registry.handler_for(connector_name)
            value = handler.transform_custom_mapping(mapping, payload, context)
            if value is None or value == [] or value == "" or value == {}:
                return

        else:
            return

        assign_path(destination_data, mapping.segments, value)

    def _embedding_service(self, embedding_config: Dict[str, Any]) -> EmbeddingService:
        key = json.dumps(embedding_config, sort_keys=True, default=str)
        service = self._embedding_services.get(key)
        if service is None:
            service = self._embedding_services[key] = self.embedding_service_factory(embedding_config)
        return service
