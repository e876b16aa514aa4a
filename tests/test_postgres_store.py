from __future__ import annotations

import importlib.util
import os
import pathlib
import uuid

import psycopg
import pytest
import sqlalchemy as sa
from alembic.migration import MigrationContext
from alembic.operations import Operations
from sqlalchemy.engine import make_url

from autoinbox.core.db import connection_factory
from autoinbox.errors import StatusConflict
from autoinbox.escalation import (
    EscalationManager,
    EscalationReason,
    PostgresEscalationRepository,
)
from autoinbox.messages import (
    Channel,
    Message,
    MessageStatus,
    MessageType,
    PostgresMessageRepository,
)
from autoinbox.resolvers import PostgresWorkspaceResolver
from conftest import make_settings

MIGRATION = (
    pathlib.Path(__file__).resolve().parents[1]
    / "autoinbox"
    / "migrations"
    / "001_create_inbox_tables.py"
)

pytestmark = pytest.mark.integration


def _load_migration():
    module_spec = importlib.util.spec_from_file_location("inbox_migration_001", MIGRATION)
    module = importlib.util.module_from_spec(module_spec)
    module_spec.loader.exec_module(module)
    return module


def _run(engine, step) -> None:
    with engine.begin() as connection:
        with Operations.context(MigrationContext.configure(connection)):
            step()


@pytest.fixture(scope="module")
def database_url():
    url = os.getenv("TEST_DATABASE_URL")
    if not url:
        pytest.skip("TEST_DATABASE_URL not set")
    try:
        psycopg.connect(url).close()
    except psycopg.OperationalError as exc:
        pytest.skip(f"database not available: {exc}")

    engine = sa.create_engine(make_url(url).set(drivername="postgresql+psycopg"))
    migration = _load_migration()
    _run(engine, migration.upgrade)
    try:
        yield url
    finally:
        _run(engine, migration.downgrade)
        engine.dispose()


def _message(external_id: str, workspace_id: str = "ws-1") -> Message:
    return Message(
        workspace_id=workspace_id,
        channel=Channel.FACEBOOK,
        external_id=external_id,
        conversation_id="fb:post1:user-1",
        sender_id="user-1",
        text="help",
        type=MessageType.COMMENT,
        metadata={"account_id": "PAGE1"},
    )


def test_upsert_is_idempotent_per_external_id(database_url):
    repo = PostgresMessageRepository(connection_factory(database_url))
    external_id = f"c-{uuid.uuid4()}"

    first, created = repo.upsert(_message(external_id))
    again, created_again = repo.upsert(_message(external_id))
    other, other_created = repo.upsert(_message(external_id, workspace_id="ws-2"))

    assert created and not created_again and other_created
    assert again.id == first.id
    assert other.id != first.id
    assert repo.get("ws-1", first.id).metadata == {"account_id": "PAGE1"}
    assert repo.get("ws-2", first.id) is None


def test_status_transitions_are_guarded(database_url):
    repo = PostgresMessageRepository(connection_factory(database_url))
    stored, _ = repo.upsert(_message(f"c-{uuid.uuid4()}"))

    repo.update_status("ws-1", stored.id, MessageStatus.NEW, MessageStatus.COMPLETED)
    with pytest.raises(StatusConflict):
        repo.update_status("ws-1", stored.id, MessageStatus.NEW, MessageStatus.QUEUED)


def test_queue_claim_has_one_winner(database_url):
    connect = connection_factory(database_url)
    messages = PostgresMessageRepository(connect)
    manager = EscalationManager(messages, PostgresEscalationRepository(connect), make_settings())
    stored, _ = messages.upsert(_message(f"c-{uuid.uuid4()}"))

    entry = manager.enqueue("ws-1", stored.id, EscalationReason.NO_MATCH)
    assert manager.enqueue("ws-1", stored.id, EscalationReason.MANUAL).id == entry.id

    assert manager.claim("ws-1", entry.id, "emp-1").ok
    assert not manager.claim("ws-1", entry.id, "emp-2").ok
    resolved = manager.resolve("ws-1", entry.id, "emp-1", MessageStatus.COMPLETED)
    assert resolved.status is MessageStatus.COMPLETED


def test_channel_accounts_resolve_workspaces(database_url):
    account_id = f"PAGE-{uuid.uuid4().hex[:8]}"
    with psycopg.connect(database_url) as conn:
        conn.execute(
            "INSERT INTO channel_accounts (channel, account_id, workspace_id, is_active)"
            " VALUES ('facebook', %s, 'ws-db', true)",
            (account_id,),
        )

    resolver = PostgresWorkspaceResolver(connection_factory(database_url))

    assert resolver.resolve("facebook", account_id) == "ws-db"
    assert resolver.resolve("instagram", account_id) is None
