"""Base destination handler for custom mappings."""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from reverse_etl.models import MappingRule, SyncConfig


@dataclass
class HandlerContext:
    """What a handler may consult while resolving a custom mapping."""
    sync: Optional[SyncConfig] = None
    run_id: Optional[str] = None
    preload_indexes: Dict[Any, Any] = field(default_factory=dict)


class DestinationHandler:
    """
    Custom mapping plugin for a destination.

    The base class is the no-op used for destinations without custom
    behaviour: transforms resolve to nothing and no indexes are preloaded.
    """

    name = "default"

    def transform_custom_mapping(
        self,
        mapping: MappingRule,
        record: Dict[str, Any],
        context: HandlerContext,
    ) -> Any:
        """Return the destination value for ``mapping`` or None to leave it unset."""
        return None

    async def build_custom_mapping_indexes(self, sync: SyncConfig) -> Dict[Any, Any]:
        """Build indexes reused by every page of a batch run."""
        return {}
