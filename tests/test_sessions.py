"""Tests for the session store."""

import json
import time

import pytest

from agentdeck.core import Message
from agentdeck.errors import CorruptState, NotFound, ValidationError


def test_create_and_get(session_store, project_dir):
    created = session_store.create("  Refactor auth ", project_path=str(project_dir), model="fake-model")

    assert created.id.startswith("session_")
    assert created.name == "Refactor auth"
    assert created.working_directory == str(project_dir)
    assert not created.archived

    loaded = session_store.get(created.id)
    assert loaded.name == "Refactor auth"
    assert loaded.model == "fake-model"
    assert loaded.created_at == created.created_at


def test_create_uses_default_model(session_store, monkeypatch):
    monkeypatch.setenv("AGENTDECK_DEFAULT_MODEL", "gpt-5.2")
    assert session_store.create("x").model == "gpt-5.2"


def test_create_requires_name(session_store):
    with pytest.raises(ValidationError):
        session_store.create("   ")


def test_ids_are_unique(session_store):
    ids = {session_store.create(f"s{i}").id for i in range(10)}
    assert len(ids) == 10


def test_get_missing(session_store):
    with pytest.raises(NotFound):
        session_store.get("session_missing")


def test_update_name_tags_model(session_store, session):
    updated = session_store.update(session.id, name="Renamed", tags=["b", "a", "a"], model="other-model")
    assert updated.name == "Renamed"
    assert updated.tags == {"a", "b"}
    assert updated.model == "other-model"
    assert updated.id == session.id
    assert updated.updated_at >= session.updated_at


def test_update_rejects_blank_name(session_store, session):
    with pytest.raises(ValidationError):
        session_store.update(session.id, name=" ")


def test_archive_hides_from_default_list(session_store, session):
    other = session_store.create("Other")
    session_store.archive(session.id)

    visible = [item.session.id for item in session_store.list_sessions()]
    assert visible == [other.id]

    everything = {item.session.id for item in session_store.list_sessions(include_archived=True)}
    assert everything == {session.id, other.id}

    assert not session_store.unarchive(session.id).archived


def test_list_sorted_by_most_recent_update(session_store):
    first = session_store.create("First")
    time.sleep(0.01)
    second = session_store.create("Second")
    time.sleep(0.01)
    session_store.append_message(first.id, Message(role="user", content="bump"))

    assert [item.session.id for item in session_store.list_sessions()] == [first.id, second.id]


def test_list_preview_and_count(session_store, session):
    session_store.append_message(session.id, Message(role="user", content="hello"))
    session_store.append_message(session.id, Message(role="agent", content="x" * 250))

    item = session_store.list_sessions()[0]
    assert item.message_count == 2
    assert item.preview == "x" * 100


def test_history_preserves_order(session_store, session):
    for content in ("hello", "world", "again"):
        session_store.append_message(session.id, Message(role="user", content=content))
    assert [m.content for m in session_store.get_messages(session.id)] == ["hello", "world", "again"]


def test_history_empty_for_new_session(session_store, session):
    assert session_store.get_messages(session.id) == []


def test_history_skips_garbage_lines(session_store, session):
    session_store.append_message(session.id, Message(role="user", content="kept"))
    path = session_store.sessions_dir / f"{session.id}.jsonl"
    with path.open("a", encoding="utf-8") as f:
        f.write("{truncated\n")
    session_store.append_message(session.id, Message(role="agent", content="also kept"))

    assert [m.content for m in session_store.get_messages(session.id)] == ["kept", "also kept"]


def test_append_rejects_unknown_role(session_store, session):
    with pytest.raises(ValidationError):
        session_store.append_message(session.id, Message(role="system", content="x"))


def test_append_to_missing_session(session_store):
    with pytest.raises(NotFound):
        session_store.append_message("session_missing", Message(role="user", content="x"))


def test_clear_messages_keeps_session(session_store, session):
    session_store.append_message(session.id, Message(role="user", content="x"))
    session_store.clear_messages(session.id)
    assert session_store.get_messages(session.id) == []
    assert session_store.get(session.id).name == session.name


def test_delete_removes_history(session_store, session):
    session_store.append_message(session.id, Message(role="user", content="x"))
    session_store.delete(session.id)

    with pytest.raises(NotFound):
        session_store.get(session.id)
    assert not (session_store.sessions_dir / f"{session.id}.jsonl").exists()
    with pytest.raises(NotFound):
        session_store.delete(session.id)


def test_metadata_is_camel_case_json(session_store, session):
    data = json.loads(session_store.metadata_path.read_text())
    record = data[session.id]
    assert set(record) >= {"projectPath", "workingDirectory", "createdAt", "updatedAt", "archived", "tags"}


def test_unreadable_metadata_is_not_overwritten(session_store, session):
    session_store.metadata_path.write_text("{broken", encoding="utf-8")
    with pytest.raises(CorruptState):
        session_store.create("another")
    assert session_store.metadata_path.read_text() == "{broken"
