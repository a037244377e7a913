"""Destination connector implementations."""

from .base import BaseDestination, DestinationError, RateLimitError, AuthenticationError
from .registry import ConnectorRegistry
from .link_resolver import AirtableLinkResolver
from .airtable import AirtableDestination

__all__ = [
    "BaseDestination",
    "DestinationError",
    "RateLimitError",
    "AuthenticationError",
    "ConnectorRegistry",
    "AirtableLinkResolver",
    "AirtableDestination",
]
