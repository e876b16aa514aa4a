"""Shared infrastructure helpers."""

from .db import ConnectionFactory, connection_factory, require_workspace_id

__all__ = ["ConnectionFactory", "connection_factory", "require_workspace_id"]
