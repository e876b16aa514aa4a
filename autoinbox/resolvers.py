"""Workspace resolution for inbound channel accounts."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Protocol

from .core.db import ConnectionFactory

logger = logging.getLogger(__name__)


class WorkspaceResolver(Protocol):
    """Maps the channel account that received an event to its workspace."""

    def resolve(self, channel: str, account_id: str | None) -> str | None: ...


class StaticWorkspaceResolver:
    """Resolver backed by the ``WORKSPACE_ACCOUNT_MAP`` configuration.

    Keys are ``"<channel>:<account id>"``; a ``"<channel>:*"`` key acts as the
    fallback for every account on that channel.
    """

    def __init__(self, mapping: Mapping[str, str]) -> None:
        self._mapping = dict(mapping)

    def resolve(self, channel: str, account_id: str | None) -> str | None:
        if account_id:
            workspace = self._mapping.get(f"{channel}:{account_id}")
            if workspace:
                return workspace
        return self._mapping.get(f"{channel}:*")


class PostgresWorkspaceResolver:
    """Resolver reading the ``channel_accounts`` table."""

    def __init__(self, connect: ConnectionFactory) -> None:
        self._connect = connect

    def resolve(self, channel: str, account_id: str | None) -> str | None:
        if not account_id:
            return None
        with self._connect() as conn, conn.cursor() as cur:
            cur.execute(
                """
                SELECT workspace_id FROM channel_accounts
                WHERE channel = %s AND account_id = %s AND is_active
                """,
                (channel, account_id),
            )
            row = cur.fetchone()
        return str(row[0]) if row else None


class ChainedWorkspaceResolver:
    """Try each resolver in order and return the first workspace found."""

    def __init__(self, *resolvers: WorkspaceResolver) -> None:
        self._resolvers = resolvers

    def resolve(self, channel: str, account_id: str | None) -> str | None:
        for resolver in self._resolvers:
            workspace = resolver.resolve(channel, account_id)
            if workspace:
                return workspace
        logger.debug(
            "No workspace for channel account",
            extra={"channel": channel, "account_id": account_id},
        )
        return None
