import json

import pytest

from conftest import build_identity
from vihara.service.errors import (
    AccountDeactivatedError,
    CurrentPasswordMismatchError,
    DuplicateIdentityError,
    InvalidCredentialsError,
    InvalidEmailError,
    InvalidRoleError,
    MissingFieldError,
    PrincipalNotFoundError,
    SessionInvalidError,
    WeakPasswordError,
)
from vihara.storage.common import audit_to_row
from vihara.storage.memory import MemoryStore
from vihara.storage.models import Role, SessionEndReason


def _alice_form(**overrides):
    form = {
        "username": "alice",
        "email": "a@x.com",
        "password": "secret1",
        "confirm_password": "secret1",
        "full_name": "Alice Example",
        "phone": "+94 11 234 5678",
    }
    form.update(overrides)
    return form


def test_register_donator_scenario(identity):
    principal_id = identity.auth.register_donator(_alice_form())

    principal = identity.store.get_principal(Role.DONATOR, principal_id)
    assert principal.login_name == "alice"
    assert principal.email == "a@x.com"
    assert principal.display_name == "Alice Example"
    assert principal.profile == {"phone": "+94 11 234 5678"}
    assert principal.active
    assert principal.password_hash.startswith("$argon2id$")
    assert "secret1" not in principal.password_hash

    with pytest.raises(DuplicateIdentityError):
        identity.auth.register_donator(_alice_form(email="other@x.com"))
    with pytest.raises(DuplicateIdentityError):
        identity.auth.register_donator(_alice_form(username="alice2"))
    with pytest.raises(DuplicateIdentityError):
        identity.auth.register_donator(_alice_form(username="ALICE", email="z@x.com"))


def test_register_reports_first_missing_field(identity):
    with pytest.raises(MissingFieldError) as exc:
        identity.auth.register_donator(_alice_form(phone="  "))
    assert exc.value.field == "phone"
    assert exc.value.message == "Field 'phone' is required"

    with pytest.raises(MissingFieldError) as exc:
        identity.auth.register_donator({"email": "a@x.com"})
    assert exc.value.field == "username"


def test_register_checks_duplicate_before_email_syntax(identity):
    identity.auth.register_donator(_alice_form())

    with pytest.raises(DuplicateIdentityError):
        identity.auth.register_donator(_alice_form(email="not-an-email"))


def test_register_rejects_bad_email(identity):
    with pytest.raises(InvalidEmailError) as exc:
        identity.auth.register_donator(_alice_form(email="not-an-email"))
    assert exc.value.message == "Invalid email format"
    assert exc.value.status_code == 400


def test_register_password_floor_is_configurable(identity, clock):
    with pytest.raises(WeakPasswordError) as exc:
        identity.auth.register_donator(_alice_form(password="12345"))
    assert exc.value.message == "Password must be at least 6 characters"

    assert identity.auth.register_donator(_alice_form(password="123456")) > 0

    strict = build_identity(clock, password_min_length=10)
    with pytest.raises(WeakPasswordError):
        strict.auth.register_donator(_alice_form())


def test_registration_audit_payload_is_scrubbed(identity):
    principal_id = identity.auth.register_donator(_alice_form())
    principal = identity.store.get_principal(Role.DONATOR, principal_id)

    events = identity.store.list_audit_events(action="registration")
    assert len(events) == 1
    event = events[0]
    assert event.actor_role == "donator"
    assert event.actor_id == principal_id
    assert event.entity == "donators"
    assert event.new_values["username"] == "alice"
    assert "password" not in event.new_values
    assert "confirm_password" not in event.new_values

    serialized = json.dumps([audit_to_row(e) for e in identity.store.list_audit_events()])
    assert "secret1" not in serialized
    assert principal.password_hash not in serialized


def test_login_success_yields_validatable_session(identity):
    principal_id = identity.auth.register_donator(_alice_form())

    result = identity.auth.login("alice", "secret1", "donator", ip_addr="10.0.0.9")

    assert result.principal.id == principal_id
    assert result.redirect == "/donator/dashboard"
    assert result.context.is_authenticated
    assert len(result.session.token) == 64

    ctx = identity.sessions.validate(result.session.token)
    assert ctx.role is Role.DONATOR
    assert ctx.principal_id == principal_id

    touched = identity.store.get_principal(Role.DONATOR, principal_id)
    assert touched.updated_at == identity.clock.current

    actions = [e.action for e in identity.store.list_audit_events()]
    assert "login_success" in actions
    assert "session_created" in actions


def test_login_accepts_email_case_insensitively(identity):
    identity.auth.register_donator(_alice_form())
    result = identity.auth.login("A@X.COM", "secret1", Role.DONATOR)
    assert result.principal.login_name == "alice"


def test_login_fresh_token_every_time(identity):
    identity.auth.register_donator(_alice_form())
    first = identity.auth.login("alice", "secret1", "donator")
    second = identity.auth.login("alice", "secret1", "donator")
    assert first.session.token != second.session.token


@pytest.mark.parametrize(
    "login, password, role",
    [
        ("alice", "wrong-password", "donator"),
        ("nobody", "secret1", "donator"),
        ("alice", "secret1", "monk"),
    ],
)
def test_login_failures_are_indistinguishable(identity, login, password, role):
    identity.auth.register_donator(_alice_form())

    with pytest.raises(InvalidCredentialsError) as exc:
        identity.auth.login(login, password, role)

    assert exc.value.message == "Invalid credentials"
    assert exc.value.detail == {"reason": "invalid_credentials"}
    failed = identity.store.list_audit_events(action="login_failed")
    assert len(failed) == 1
    assert failed[0].actor_id == 0


def test_login_validates_inputs(identity):
    with pytest.raises(MissingFieldError) as exc:
        identity.auth.login("", "secret1", "donator")
    assert exc.value.field == "username"
    with pytest.raises(MissingFieldError) as exc:
        identity.auth.login("alice", None, "donator")
    assert exc.value.field == "password"
    with pytest.raises(MissingFieldError):
        identity.auth.login("alice", "secret1", None)
    with pytest.raises(InvalidRoleError) as exc:
        identity.auth.login("alice", "secret1", "wizard")
    assert exc.value.message == "Invalid user role"


def test_deactivated_principal_cannot_login_and_loses_sessions(identity):
    principal_id = identity.auth.register_donator(_alice_form())
    result = identity.auth.login("alice", "secret1", "donator")

    identity.store.set_principal_active(Role.DONATOR, principal_id, False)

    with pytest.raises(InvalidCredentialsError):
        identity.auth.login("alice", "secret1", "donator")
    with pytest.raises(AccountDeactivatedError):
        identity.sessions.validate(result.session.token)


def test_logout_is_idempotent(identity):
    identity.auth.register_donator(_alice_form())
    result = identity.auth.login("alice", "secret1", "donator")

    identity.auth.logout(result.session.token)
    first = identity.store.get_session(result.session.token)
    identity.auth.logout(result.session.token)
    second = identity.store.get_session(result.session.token)

    assert first == second
    assert second.active is False
    assert second.end_reason is SessionEndReason.LOGGED_OUT
    assert len(identity.store.list_audit_events(action="logout")) == 1
    with pytest.raises(SessionInvalidError):
        identity.sessions.validate(result.session.token)

    identity.auth.logout(None)
    identity.auth.logout("0" * 64)


def test_change_password_wrong_current_keeps_old_password(identity):
    principal_id = identity.auth.register_donator(_alice_form())

    with pytest.raises(CurrentPasswordMismatchError) as exc:
        identity.auth.change_password(principal_id, "donator", "not-it", "newsecret")
    assert exc.value.message == "Current password is incorrect"

    assert identity.auth.login("alice", "secret1", "donator").principal.id == principal_id


def test_change_password_error_order(identity):
    principal_id = identity.auth.register_donator(_alice_form())

    with pytest.raises(PrincipalNotFoundError):
        identity.auth.change_password(999, "donator", "not-it", "x")
    with pytest.raises(CurrentPasswordMismatchError):
        identity.auth.change_password(principal_id, "donator", "not-it", "x")
    with pytest.raises(WeakPasswordError) as exc:
        identity.auth.change_password(principal_id, "donator", "secret1", "x")
    assert exc.value.message == "New password must be at least 6 characters"


def test_change_password_rotates_and_ends_other_sessions(identity):
    principal_id = identity.auth.register_donator(_alice_form())
    current = identity.auth.login("alice", "secret1", "donator")
    elsewhere = identity.auth.login("alice", "secret1", "donator")

    ended = identity.auth.change_password(
        principal_id, Role.DONATOR, "secret1", "newsecret", keep_token=current.session.token
    )

    assert ended == 1
    assert identity.sessions.validate(current.session.token).is_authenticated
    with pytest.raises(SessionInvalidError):
        identity.sessions.validate(elsewhere.session.token)
    with pytest.raises(InvalidCredentialsError):
        identity.auth.login("alice", "secret1", "donator")
    assert identity.auth.login("alice", "newsecret", "donator")
    assert identity.store.list_audit_events(action="password_changed")


def test_set_principal_active_ends_sessions(identity):
    principal_id = identity.auth.register_donator(_alice_form())
    result = identity.auth.login("alice", "secret1", "donator")

    principal = identity.auth.set_principal_active("donator", principal_id, False)

    assert principal.active is False
    row = identity.store.get_session(result.session.token)
    assert row.end_reason is SessionEndReason.DEACTIVATED
    event = identity.store.list_audit_events(action="principal_deactivated")[0]
    assert event.old_values == {"is_active": True}
    assert event.new_values == {"is_active": False, "sessions_terminated": 1}

    identity.auth.set_principal_active("donator", principal_id, True)
    assert identity.auth.login("alice", "secret1", "donator")

    with pytest.raises(PrincipalNotFoundError):
        identity.auth.set_principal_active("donator", 404, True)


def test_create_principal_for_any_role(identity):
    admin = identity.auth.create_principal(Role.ADMIN, "root", "root@x.com", "rootpass")
    assert admin.role is Role.ADMIN
    assert identity.auth.login("root", "rootpass", "admin").redirect == "/admin/dashboard"

    with pytest.raises(DuplicateIdentityError):
        identity.auth.create_principal("admin", "root", "other@x.com", "rootpass")


class _AuditlessStore(MemoryStore):
    def append_audit_event(self, event):
        raise RuntimeError("audit table locked")


def test_audit_failure_never_blocks_login(clock):
    identity = build_identity(clock, store=_AuditlessStore())
    identity.auth.register_donator(_alice_form())

    result = identity.auth.login("alice", "secret1", "donator")

    assert identity.sessions.validate(result.session.token).is_authenticated
    assert identity.audit.last_failure is not None
    assert identity.audit.last_failure.reason == "audit_write_failure"


def test_login_coerces_non_string_login_name(identity):
    principal_id = identity.auth.register_donator(_alice_form(username="12345"))

    assert identity.auth.login(12345, "secret1", "donator").principal.id == principal_id
    with pytest.raises(InvalidCredentialsError):
        identity.auth.login(54321, "secret1", "donator")
