"""Destination-specific custom mapping handlers."""

from .base import DestinationHandler, HandlerContext
from .registry import HandlerRegistry
from .airtable import AirtableHandler, link_index_key


def build_default_registry() -> HandlerRegistry:
    """Registry with every bundled destination handler."""
    registry = HandlerRegistry()
    registry.register("Airtable", AirtableHandler())
    return registry


handler_registry = build_default_registry()

__all__ = [
    "DestinationHandler",
    "HandlerContext",
    "HandlerRegistry",
    "AirtableHandler",
    "link_index_key",
    "build_default_registry",
    "handler_registry",
]
