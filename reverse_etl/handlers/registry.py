"""Registry mapping destination names to custom mapping handlers."""

import logging
from typing import Dict, Optional

from reverse_etl.handlers.base import DestinationHandler

logger = logging.getLogger(__name__)


class HandlerRegistry:
    """Explicit name -> handler map with a no-op default."""

    def __init__(self, default: Optional[DestinationHandler] = None):
        self._handlers: Dict[str, DestinationHandler] = {}
        self.default = default or DestinationHandler()

    def register(self, name: str, handler: DestinationHandler) -> None:
        self._handlers[name.lower()] = handler
        logger.info(f"Registered destination handler: {name}")

    def handler_for(self, name: Optional[str]) -> DestinationHandler:
        return self._handlers.get((name or "").lower(), self.default)

    def names(self) -> list[str]:
        return list(self._handlers.keys())
