"""Connector registry for destination connector implementations."""

from typing import Dict, Type, Optional
from reverse_etl.integrations.base import BaseDestination


class ConnectorRegistry:
    """Registry for destination connector implementations."""

    _connectors: Dict[str, Type[BaseDestination]] = {}

    @classmethod
    def register(cls, connector_name: str):
        """Decorator to register a destination connector class."""
        def decorator(connector_class: Type[BaseDestination]):
            cls._connectors[connector_name.lower()] = connector_class
            return connector_class
        return decorator

    @classmethod
    def get(cls, connector_name: str) -> Optional[Type[BaseDestination]]:
        """Get connector class by destination name."""
        return cls._connectors.get((connector_name or "").lower())

    @classmethod
    def list_names(cls) -> list[str]:
        """List all registered destination names."""
        return list(cls._connectors.keys())
