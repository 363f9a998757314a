from datetime import datetime, timedelta, timezone

import pytest

from helpdesk import admin, audit
from helpdesk.models import ActivityLog, Category, EmailTemplate, Setting, TeamMember, Ticket, User
from factories import ctx_for, make_article, make_category, make_ticket, make_user


@pytest.fixture
def boss(db):
    return make_user(db, email="boss@example.com", role="admin", name="Boss")


# --------------------------------------------------------------------------------------
# Users
# --------------------------------------------------------------------------------------


def test_bogus_role_is_rejected_without_audit(db, boss):
    target = make_user(db, email="someone@example.com")

    result = admin.update_user_role(ctx_for(db, boss), target.id, "bogus")

    assert result.to_dict() == {"error": "Invalid role", "kind": "validation"}
    db.expire_all()
    assert db.get(User, target.id).role == "user"
    assert db.query(ActivityLog).count() == 0


def test_role_change_is_audited(db, boss):
    target = make_user(db, email="someone@example.com")

    result = admin.update_user_role(ctx_for(db, boss), target.id, "staff")

    assert result.data == {"user_id": target.id, "role": "staff", "changed": True}
    entry = db.query(ActivityLog).one()
    assert (entry.action, entry.entity_type, entry.entity_id) == ("update", "user", target.id)
    assert entry.user_id == boss.id


def test_staff_cannot_change_roles(db):
    agent = make_user(db, email="agent@example.com", role="staff")

    result = admin.update_user_role(ctx_for(db, agent), agent.id, "admin")

    assert result.kind == "unauthorized"
    db.expire_all()
    assert db.get(User, agent.id).role == "staff"


def test_update_user_ignores_role_field(db, boss):
    target = make_user(db, email="someone@example.com", name="Some One")

    result = admin.update_user(ctx_for(db, boss), target.id, {"name": "Renamed", "role": "admin"})

    assert result.success
    db.expire_all()
    refreshed = db.get(User, target.id)
    assert refreshed.name == "Renamed"
    assert refreshed.role == "user"


def test_update_user_email_conflict(db, boss):
    target = make_user(db, email="someone@example.com")

    result = admin.update_user(ctx_for(db, boss), target.id, {"email": "BOSS@example.com"})

    assert result.kind == "conflict"


def test_delete_user_clears_assignments(db, boss):
    agent = make_user(db, email="agent@example.com", role="staff")
    ticket = make_ticket(db, make_user(db))
    ticket.assigned_to = agent.id
    db.commit()

    result = admin.delete_user(ctx_for(db, boss), agent.id)

    assert result.success
    db.expire_all()
    assert db.get(User, agent.id) is None
    assert db.get(Ticket, ticket.id).assigned_to is None


def test_list_users_admin_only(db, boss):
    listed = admin.list_users(ctx_for(db, boss))
    refused = admin.list_users(ctx_for(db, make_user(db, email="agent@example.com", role="staff")))

    assert [u["email"] for u in listed.data["users"]]
    assert refused.kind == "unauthorized"


# --------------------------------------------------------------------------------------
# Categories
# --------------------------------------------------------------------------------------


def test_category_with_ticket_cannot_be_deleted(db, boss):
    category = make_category(db, "Network")
    make_ticket(db, make_user(db), category=category)

    result = admin.delete_category(ctx_for(db, boss), category.id)

    assert result.kind == "conflict"
    assert db.get(Category, category.id) is not None


def test_category_with_children_or_articles_cannot_be_deleted(db, boss):
    parent = make_category(db, "Hardware")
    make_category(db, "Printers", parent=parent)
    docs = make_category(db, "Docs")
    make_article(db, category=docs)

    assert admin.delete_category(ctx_for(db, boss), parent.id).kind == "conflict"
    assert admin.delete_category(ctx_for(db, boss), docs.id).kind == "conflict"


def test_category_lifecycle(db, boss):
    ctx = ctx_for(db, boss)
    created = admin.create_category(ctx, "Hardware")
    child = admin.create_category(ctx, "Printers", parent_id=created.data["category"]["id"])
    duplicate = admin.create_category(ctx, "Hardware")

    listing = admin.list_categories(ctx)
    hardware = next(c for c in listing.data["categories"] if c["name"] == "Hardware")
    deleted = admin.delete_category(ctx, child.data["category"]["id"])

    assert duplicate.kind == "conflict"
    assert [c["name"] for c in hardware["children"]] == ["Printers"]
    assert deleted.success
    actions = sorted(e.action for e in db.query(ActivityLog).all())
    assert actions == ["create", "create", "delete"]


def test_category_cannot_become_its_own_ancestor(db, boss):
    parent = make_category(db, "Hardware")
    child = make_category(db, "Printers", parent=parent)

    looped = admin.update_category(ctx_for(db, boss), parent.id, {"parent_id": child.id})
    itself = admin.update_category(ctx_for(db, boss), parent.id, {"parent_id": parent.id})
    unknown = admin.create_category(ctx_for(db, boss), "Orphan", parent_id="missing")

    assert looped.kind == "validation"
    assert itself.kind == "validation"
    assert unknown.kind == "validation"
    db.expire_all()
    assert db.get(Category, parent.id).parent_id is None


# --------------------------------------------------------------------------------------
# Team, settings, templates
# --------------------------------------------------------------------------------------


def test_team_member_crud(db, boss):
    ctx = ctx_for(db, boss)
    created = admin.create_team_member(ctx, "Agent@Example.com", "Agent", "staff")
    duplicate = admin.create_team_member(ctx, "agent@example.com", "Agent Two", "staff")
    bad_role = admin.create_team_member(ctx, "other@example.com", "Other", "user")
    member_id = created.data["team_member"]["id"]

    updated = admin.update_team_member(ctx, member_id, {"role": "admin"})
    listed = admin.list_team_members(ctx)
    deleted = admin.delete_team_member(ctx, member_id)

    assert created.data["team_member"]["email"] == "agent@example.com"
    assert duplicate.kind == "conflict"
    assert bad_role.kind == "validation"
    assert updated.data["team_member"]["role"] == "admin"
    assert listed.data["team_members"][0]["kb_article_count"] == 0
    assert deleted.success
    assert db.query(TeamMember).count() == 0


def test_team_member_with_articles_is_kept(db, boss):
    make_article(db, author_email="writer@example.com")
    member = db.query(TeamMember).one()

    result = admin.delete_team_member(ctx_for(db, boss), member.id)

    assert result.kind == "conflict"


def test_settings_upsert_by_key(db, boss):
    ctx = ctx_for(db, boss)
    first = admin.update_setting(ctx, "support_email", "help@example.com", category="email")
    second = admin.update_setting(ctx, "support_email", "desk@example.com")
    listed = admin.list_settings(ctx, category="email")

    assert first.data["setting"]["id"] == second.data["setting"]["id"]
    assert db.query(Setting).one().value == "desk@example.com"
    assert [s["key"] for s in listed.data["settings"]] == ["support_email"]

    removed = admin.delete_setting(ctx, first.data["setting"]["id"])
    assert removed.success
    assert db.query(Setting).count() == 0


def test_settings_refused_for_staff(db):
    agent = make_user(db, email="agent@example.com", role="staff")

    result = admin.update_setting(ctx_for(db, agent), "support_email", "x@example.com")

    assert result.kind == "unauthorized"
    assert db.query(Setting).count() == 0


def test_email_template_crud(db, boss):
    ctx = ctx_for(db, boss)
    created = admin.create_email_template(ctx, "welcome", "Welcome {name}", "<p>Hi {name}</p>", variables="name")
    missing_body = admin.create_email_template(ctx, "other", "Subject", "")
    duplicate = admin.create_email_template(ctx, "welcome", "Again", "Body")
    template_id = created.data["template"]["id"]

    updated = admin.update_email_template(ctx, template_id, {"subject": "Hello {name}"})
    fetched = admin.get_email_template(ctx, template_id)
    deleted = admin.delete_email_template(ctx, template_id)

    assert missing_body.kind == "validation"
    assert duplicate.kind == "conflict"
    assert updated.data["changed"] is True
    assert fetched.data["template"]["subject"] == "Hello {name}"
    assert deleted.success
    assert db.query(EmailTemplate).count() == 0


# --------------------------------------------------------------------------------------
# Reports & audit behaviour
# --------------------------------------------------------------------------------------


def test_dashboard_and_ticket_stats(db, boss):
    owner = make_user(db)
    make_ticket(db, owner, subject="One")
    make_ticket(db, owner, subject="Two", status="resolved")
    make_article(db)

    dashboard = admin.get_dashboard_stats(ctx_for(db, boss))
    stats = admin.get_ticket_stats(ctx_for(db, boss), days=7)
    bad_window = admin.get_ticket_stats(ctx_for(db, boss), days="forever")

    assert dashboard.data["stats"]["total_tickets"] == 2
    assert dashboard.data["stats"]["open_tickets"] == 1
    assert dashboard.data["stats"]["resolved_tickets"] == 1
    assert dashboard.data["stats"]["published_kb_articles"] == 1
    assert stats.data["stats"]["total"] == 2
    assert stats.data["stats"]["by_status"] == {"open": 1, "resolved": 1}
    assert stats.data["stats"]["by_category"] == {"Uncategorized": 2}
    assert bad_window.kind == "validation"


def test_activity_logs_newest_first(db, boss):
    now = datetime.now(timezone.utc)
    for minutes, details in ((10, "older"), (5, "middle"), (1, "newest")):
        db.add(
            ActivityLog(
                action="update",
                entity_type="setting",
                details=details,
                created_at=now - timedelta(minutes=minutes),
            )
        )
    db.commit()

    result = admin.get_activity_logs(ctx_for(db, boss), limit=2)
    refused = admin.get_activity_logs(ctx_for(db, make_user(db, email="agent@example.com", role="staff")))

    assert [entry["details"] for entry in result.data["logs"]] == ["newest", "middle"]
    assert refused.kind == "unauthorized"


def test_audit_failure_does_not_fail_operation(db, boss, monkeypatch, caplog):
    def broken_entry(**_):
        raise RuntimeError("audit table locked")

    monkeypatch.setattr(audit, "ActivityLog", broken_entry)

    result = admin.create_category(ctx_for(db, boss), "Network")

    assert result.success
    assert db.query(Category).filter(Category.name == "Network").count() == 1
    assert db.query(ActivityLog).count() == 0
    assert "audit table locked" in caplog.text


def test_audit_record_swallows_errors(db, caplog):
    class BrokenSession:
        rolled_back = False

        def add(self, _):
            raise RuntimeError("disk full")

        def rollback(self):
            self.rolled_back = True

    session = BrokenSession()
    audit.record(session, "delete", "category", "c1")

    assert session.rolled_back
    assert "disk full" in caplog.text
