"""Loader, transformation and caching services."""
