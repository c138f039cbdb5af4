from __future__ import annotations

import pytest

from playback_bff.exceptions import InvalidSession
from playback_bff.persistence import SessionFilePersistence
from playback_bff.session_registry import DEFAULT_SESSION_ID, SessionRegistry
from playback_bff.session_store import InMemorySessionStore

from conftest import START_TIME, FakeClock, authorize


def test_create_generates_unique_unguessable_ids(clock):
    registry = SessionRegistry(clock=clock)
    ids = {registry.create().session_id for _ in range(50)}
    assert len(ids) == 50
    assert all(len(sid) >= 32 for sid in ids)


def test_new_session_has_no_tokens(clock):
    registry = SessionRegistry(clock=clock)
    session = registry.create(redirect_after_login="/player")

    assert session.access_token is None
    assert session.refresh_token is None
    assert session.is_pending
    assert session.created_at == session.last_used_at == START_TIME
    assert session.redirect_after_login == "/player"


def test_get_unknown_and_missing_session(clock):
    registry = SessionRegistry(clock=clock)

    with pytest.raises(InvalidSession) as unknown:
        registry.get("nope")
    assert unknown.value.status_code == 401

    with pytest.raises(InvalidSession) as missing:
        registry.get(None)
    assert missing.value.status_code == 400


def test_update_tokens_keeps_refresh_token_unless_replaced(clock):
    registry = SessionRegistry(clock=clock)
    session = authorize(registry, refresh_token="refresh-a", expires_in=3600)
    assert session.token_expiry == START_TIME + 3600

    clock.advance(100)
    session = registry.update_tokens(session.session_id, access_token="access-b", expires_in=3600)
    assert session.refresh_token == "refresh-a"
    assert session.token_expiry == START_TIME + 100 + 3600

    session = registry.update_tokens(session.session_id, access_token="access-c", expires_in=3600,
                                     refresh_token="refresh-c")
    assert session.refresh_token == "refresh-c"
    assert registry.get(session.session_id).access_token == "access-c"


def test_authorized_session_is_not_pending(clock):
    registry = SessionRegistry(clock=clock)
    assert not authorize(registry).is_pending


def test_touch_updates_last_used(clock):
    registry = SessionRegistry(clock=clock)
    session = registry.create()
    clock.advance(42)
    assert registry.touch(session.session_id).last_used_at == START_TIME + 42


def test_sweep_boundary(clock):
    retention = 24 * 60 * 60
    registry = SessionRegistry(clock=clock)
    stale = registry.create()
    clock.advance(2)
    fresh = registry.create()

    # stale: last used retention + 1 ago; fresh: retention - 1 ago
    clock.advance(retention - 1)
    removed = registry.sweep(retention)

    assert removed == [stale.session_id]
    assert registry.find(stale.session_id) is None
    assert registry.find(fresh.session_id) is not None


def test_single_user_mode_uses_fixed_session(clock):
    registry = SessionRegistry(single_user=True, clock=clock)
    first = authorize(registry)
    second = registry.create()

    assert first.session_id == second.session_id == DEFAULT_SESSION_ID
    assert registry.get(DEFAULT_SESSION_ID).access_token is None
    assert len(registry) == 1


def test_persist_and_restore_merge(tmp_path, clock):
    path = tmp_path / "sessions.json"
    registry = SessionRegistry(persistence=SessionFilePersistence(path), clock=clock)
    saved = authorize(registry, refresh_token="refresh-keep")
    registry.create()  # pending session without refresh token is not persisted
    assert registry.persist() == 1

    store = InMemorySessionStore()
    restarted = SessionRegistry(store=store, persistence=SessionFilePersistence(path), clock=FakeClock())
    local = authorize(restarted, refresh_token="refresh-local")
    assert restarted.restore() == 1

    restored = restarted.get(saved.session_id)
    assert restored.refresh_token == "refresh-keep"
    assert restored.access_token is None
    assert restarted.get(local.session_id).refresh_token == "refresh-local"


def test_restore_does_not_overwrite_live_session(tmp_path, clock):
    path = tmp_path / "sessions.json"
    registry = SessionRegistry(persistence=SessionFilePersistence(path), clock=clock)
    session = authorize(registry, access_token="live", refresh_token="old")
    registry.persist()
    registry.update_tokens(session.session_id, access_token="live-2", expires_in=3600, refresh_token="new")

    assert registry.restore() == 0
    assert registry.get(session.session_id).refresh_token == "new"
