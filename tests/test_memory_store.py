from datetime import timedelta
from pathlib import Path

import pytest

from vihara.storage.errors import ConstraintViolation, StoreError
from vihara.storage.memory import MemoryStore
from vihara.storage.models import AuditEvent, Role, Session, SessionEndReason, utcnow


def test_principal_ids_are_scoped_per_role():
    store = MemoryStore()
    admin = store.create_principal(Role.ADMIN, "root", "root@x.com", "h")
    donator = store.create_principal(Role.DONATOR, "root", "root@x.com", "h")

    assert admin.id == donator.id == 1
    assert store.get_principal(Role.ADMIN, 1).role is Role.ADMIN
    assert store.get_principal(Role.MONK, 1) is None


def test_duplicate_username_or_email_rejected_case_insensitively():
    store = MemoryStore()
    store.create_principal(Role.DONATOR, "alice", "a@x.com", "h")

    with pytest.raises(ConstraintViolation) as exc:
        store.create_principal(Role.DONATOR, "Alice", "b@x.com", "h")
    assert exc.value.detail["table"] == "donators"
    with pytest.raises(ConstraintViolation):
        store.create_principal(Role.DONATOR, "bob", "A@X.com", "h")


def test_find_principal_by_login_or_email():
    store = MemoryStore()
    created = store.create_principal(Role.MONK, "tenzin", "tenzin@vihara.lk", "h")

    assert store.find_principal(Role.MONK, "TENZIN").id == created.id
    assert store.find_principal(Role.MONK, " tenzin@vihara.lk ").id == created.id
    assert store.find_principal(Role.DOCTOR, "tenzin") is None
    assert store.find_principal(Role.MONK, "") is None

    store.set_principal_active(Role.MONK, created.id, False)
    assert store.find_principal(Role.MONK, "tenzin") is None
    assert store.find_principal(Role.MONK, "tenzin", active_only=False).active is False


def test_returned_records_are_copies():
    store = MemoryStore()
    principal = store.create_principal(Role.DOCTOR, "perera", "p@x.com", "h")
    principal.active = False

    assert store.get_principal(Role.DOCTOR, principal.id).active is True


def test_insert_session_requires_existing_principal_and_unique_token():
    store = MemoryStore()
    principal = store.create_principal(Role.ADMIN, "root", "root@x.com", "h")
    session = Session.new(principal.id, Role.ADMIN)
    store.insert_session(session)

    with pytest.raises(ConstraintViolation):
        store.insert_session(session)
    with pytest.raises(ConstraintViolation):
        store.insert_session(Session.new(99, Role.ADMIN))


def test_session_transitions_only_apply_to_active_rows():
    store = MemoryStore()
    principal = store.create_principal(Role.ADMIN, "root", "root@x.com", "h")
    session = store.insert_session(Session.new(principal.id, Role.ADMIN))
    later = session.last_activity_at + timedelta(minutes=5)

    assert store.touch_session(session.token, now=later) is True
    assert store.get_session(session.token).last_activity_at == later

    assert store.end_session(session.token, SessionEndReason.LOGGED_OUT, now=later) is True
    assert store.end_session(session.token, SessionEndReason.EXPIRED, now=later) is False
    assert store.get_session(session.token).end_reason is SessionEndReason.LOGGED_OUT
    assert store.touch_session(session.token) is False


def test_audit_events_listed_newest_first():
    store = MemoryStore()
    for action in ("login_failed", "login_success", "logout"):
        store.append_audit_event(AuditEvent(action=action))

    assert [e.action for e in store.list_audit_events()] == ["logout", "login_success", "login_failed"]
    assert [e.id for e in store.list_audit_events(action="login_success")] == [2]
    assert len(store.list_audit_events(limit=1)) == 1


def test_state_dir_snapshot_round_trip(tmp_path: Path):
    store = MemoryStore(state_dir=str(tmp_path))
    principal = store.create_principal(
        Role.DONATOR, "alice", "a@x.com", "h", display_name="Alice", profile={"phone": "0771234567"}
    )
    session = store.insert_session(Session.new(principal.id, Role.DONATOR, ip_addr="127.0.0.1"))
    store.end_session(session.token, SessionEndReason.LOGGED_OUT)
    store.append_audit_event(AuditEvent(action="registration", actor_role="donator", actor_id=1))

    assert (tmp_path / "identity_store.json").exists()

    reloaded = MemoryStore(state_dir=str(tmp_path))
    again = reloaded.get_principal(Role.DONATOR, principal.id)
    assert again.login_name == "alice"
    assert again.profile == {"phone": "0771234567"}
    assert again.created_at == principal.created_at

    restored = reloaded.get_session(session.token)
    assert restored.active is False
    assert restored.end_reason is SessionEndReason.LOGGED_OUT
    assert restored.ip_addr == "127.0.0.1"
    assert reloaded.list_audit_events()[0].action == "registration"

    # sequences continue after a reload
    assert reloaded.create_principal(Role.DONATOR, "bob", "b@x.com", "h").id == principal.id + 1
    assert reloaded.append_audit_event(AuditEvent(action="logout")).id == 2


def test_expire_and_purge():
    store = MemoryStore()
    principal = store.create_principal(Role.MONK, "tenzin", "t@x.com", "h")
    now = utcnow()
    old = Session.new(principal.id, Role.MONK, now=now - timedelta(hours=3))
    new = Session.new(principal.id, Role.MONK, now=now)
    store.insert_session(old)
    store.insert_session(new)

    assert store.expire_idle_sessions(now - timedelta(hours=1), now=now) == 1
    assert store.expire_idle_sessions(now - timedelta(hours=1), now=now) == 0
    assert store.purge_inactive_sessions(now - timedelta(days=1)) == 0
    assert store.purge_inactive_sessions(now + timedelta(seconds=1)) == 1
    assert store.get_session(old.token) is None
    assert store.get_session(new.token).active


def test_snapshot_write_failure_raises_store_error(tmp_path: Path):
    store = MemoryStore(state_dir=str(tmp_path))
    principal = store.create_principal(Role.ADMIN, "root", "root@x.com", "h")
    (tmp_path / "identity_store.json").unlink()
    (tmp_path / "identity_store.json").mkdir()

    with pytest.raises(StoreError) as exc:
        store.insert_session(Session.new(principal.id, Role.ADMIN))
    assert exc.value.operation == "persist_state"


def test_state_dir_created_on_first_write(tmp_path: Path):
    state_dir = tmp_path / "nested" / "state"
    store = MemoryStore(state_dir=str(state_dir))
    assert not state_dir.exists()

    store.create_principal(Role.MONK, "tenzin", "t@x.com", "h")

    assert (state_dir / "identity_store.json").exists()
