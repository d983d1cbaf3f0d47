"""Shared helpers for the flashmorse service."""
