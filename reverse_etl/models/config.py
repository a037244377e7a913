"""Sync configuration models."""

import logging
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional, Tuple

from pydantic import BaseModel, Field, PrivateAttr, field_validator, model_validator

logger = logging.getLogger(__name__)

ARRAY_MARKER = "[]"


class PathSegment(NamedTuple):
    """One key of a destination path; ``append`` marks an ``items[]`` segment."""
    key: str
    append: bool = False


def parse_destination_path(path: str) -> Tuple[PathSegment, ...]:
    """Parse ``a.items[].name`` into structured segments."""
    segments = []
    for part in str(path).split("."):
        if ARRAY_MARKER in part:
            segments.append(PathSegment(part.replace(ARRAY_MARKER, ""), True))
        else:
            segments.append(PathSegment(part, False))
    return tuple(segments)


class MappingType(str, Enum):
    """Types of mapping rules."""
    STANDARD = "standard"
    STATIC = "static"
    TEMPLATE = "template"
    VECTOR = "vector"
    CUSTOM_MAPPING = "custom_mapping"


class DestinationSyncMode(str, Enum):
    """How records are reconciled with existing destination rows."""
    INSERT = "destination_insert"
    UPSERT = "destination_upsert"
    UPDATE = "destination_update"


class MappingRule(BaseModel):
    """
    A single field mapping.

    ``from`` holds the source key for standard/vector/custom rules, the
    literal for static rules and the template text for template rules.
    """
    mapping_type: MappingType = MappingType.STANDARD
    source_path: Any = Field(default=None, alias="from")
    destination_path: str = Field(alias="to")
    options: Dict[str, Any] = Field(default_factory=dict)
    embedding_config: Optional[Dict[str, Any]] = None
    escape_quotes: bool = True

    _segments: Tuple[PathSegment, ...] = PrivateAttr(default=())

    def model_post_init(self, __context: Any) -> None:
        self._segments = parse_destination_path(self.destination_path)

    @property
    def segments(self) -> Tuple[PathSegment, ...]:
        return self._segments

    class Config:
        populate_by_name = True


class UniqueIdentifierConfig(BaseModel):
    """Source/destination field pair used to match existing rows."""
    source_field: Optional[str] = None
    destination_field: Optional[str] = None

    @property
    def is_complete(self) -> bool:
        return bool(self.source_field) and bool(self.destination_field)


class StreamConfig(BaseModel):
    """Destination stream metadata taken from the catalog."""
    name: str
    url: Optional[str] = None
    action: str = "create"
    batch_support: bool = False
    batch_size: int = 10
    request_rate_concurrency: Optional[int] = None
    json_schema: Dict[str, Any] = Field(default_factory=dict)
    table_id: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _lift_connector_identifiers(cls, data: Any) -> Any:
        # Catalog streams carry Airtable ids under ``x_airtable``
        if isinstance(data, dict) and not data.get("table_id"):
            x_airtable = data.get("x_airtable") or {}
            if x_airtable.get("table_id"):
                data = {**data, "table_id": x_airtable["table_id"]}
        return data

    @property
    def schema_properties(self) -> Dict[str, Any]:
        properties = self.json_schema.get("properties") if self.json_schema else None
        return properties if isinstance(properties, dict) else {}


class DestinationConfig(BaseModel):
    """Destination connector and its resolved connection settings."""
    connector_name: str
    connection_specification: Dict[str, Any] = Field(default_factory=dict)


class SyncConfig(BaseModel):
    """Everything a loader needs to deliver one sync's records."""
    sync_id: str
    sync_run_id: Optional[str] = None
    destination_sync_mode: DestinationSyncMode = DestinationSyncMode.INSERT
    unique_identifier_config: Optional[UniqueIdentifierConfig] = None
    mappings: List[MappingRule] = Field(default_factory=list)
    stream: StreamConfig
    destination: DestinationConfig

    @field_validator("destination_sync_mode", mode="before")
    @classmethod
    def _normalize_sync_mode(cls, value: Any) -> Any:
        if value is None:
            return DestinationSyncMode.INSERT
        if isinstance(value, str) and not value.startswith("destination_"):
            return f"destination_{value}"
        return value

    @field_validator("mappings", mode="before")
    @classmethod
    def _expand_legacy_mappings(cls, value: Any) -> Any:
        # Legacy configurations are a flat {source_key: "dest.path"} dict
        if isinstance(value, dict):
            return [
                {"mapping_type": "standard", "from": source_key, "to": dest_path, "escape_quotes": False}
                for source_key, dest_path in value.items()
            ]
        return value or []

    @property
    def requires_unique_identifier(self) -> bool:
        return self.destination_sync_mode in (DestinationSyncMode.UPSERT, DestinationSyncMode.UPDATE)

    @property
    def has_unique_identifier_config(self) -> bool:
        config = self.unique_identifier_config
        return config is not None and bool(config.source_field or config.destination_field)

    def infer_source_field(self, config: UniqueIdentifierConfig) -> UniqueIdentifierConfig:
        """Fill in the source field from the mapping that targets the destination field."""
        destination_field = config.destination_field
        source_field = config.source_field

        if not source_field or source_field == destination_field:
            mapping = next((m for m in self.mappings if m.destination_path == destination_field), None)
            if mapping is not None:
                source_field = mapping.source_path
                logger.info(
                    f"Inferred source_field '{source_field}' from mapping "
                    f"'{mapping.source_path}' -> '{mapping.destination_path}'"
                )
            else:
                source_field = destination_field

        return UniqueIdentifierConfig(source_field=source_field, destination_field=destination_field)

    def validation_errors(self) -> List[str]:
        """List unique identifier problems for upsert/update syncs."""
        errors = []
        if not self.requires_unique_identifier:
            return errors

        config = self.unique_identifier_config
        if config is None or not config.destination_field:
            errors.append("unique_identifier_config must specify source_field and destination_field for upsert/update")
            return errors

        properties = self.stream.schema_properties
        if properties and config.destination_field not in properties:
            errors.append(
                f"destination_field '{config.destination_field}' not found in destination schema"
            )
        return errors

    def unique_identifier(self) -> Optional[UniqueIdentifierConfig]:
        """Validated unique identifier config, or None when it cannot be used."""
        if self.validation_errors() or self.unique_identifier_config is None:
            return None
        config = self.infer_source_field(self.unique_identifier_config)
        return config if config.is_complete else None
