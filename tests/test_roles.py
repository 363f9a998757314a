import logging

from helpdesk.roles import ANONYMOUS, Principal, Role, at_least, parse_role, principal_for_user
from factories import make_user


def test_role_ordering_through_at_least():
    admin = Principal(id="a", role=Role.ADMIN)
    user = Principal(id="u", role=Role.USER)

    assert at_least(admin, Role.STAFF)
    assert not at_least(user, Role.STAFF)
    assert not at_least(ANONYMOUS, Role.USER)
    assert at_least(ANONYMOUS, Role.ANONYMOUS)


def test_unknown_persisted_role_degrades_to_user(caplog):
    with caplog.at_level(logging.WARNING, logger="helpdesk.roles"):
        assert parse_role("superuser") is Role.USER
    assert "superuser" in caplog.text
    assert parse_role(" Staff ") is Role.STAFF
    assert parse_role(None) is Role.USER


def test_principal_for_user_reads_persisted_role(db):
    staff = make_user(db, email="agent@example.com", role="staff", name="Agent")

    principal = principal_for_user(staff)

    assert principal.id == staff.id
    assert principal.role is Role.STAFF
    assert principal.email == "agent@example.com"
    assert not principal.is_anonymous
    assert ANONYMOUS.is_anonymous
