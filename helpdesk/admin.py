"""Admin-only operations: team, users, settings, email templates, categories, reports.

Every successful mutation here is written to the activity log.
"""
from __future__ import annotations

import logging
from collections import Counter
from datetime import timedelta
from typing import Any, Mapping, Optional

from sqlalchemy import desc, func

from helpdesk import audit
from helpdesk.errors import ConflictError, NotFound, OperationResult, ValidationError
from helpdesk.guard import (
    OperationContext,
    guarded_operation,
    optional_text,
    require_choice,
    require_email,
    require_text,
)
from helpdesk.models import (
    Category,
    EmailTemplate,
    KbArticle,
    Setting,
    TeamMember,
    Ticket,
    User,
    apply_input,
    as_utc,
    isoformat,
    now_utc,
)
from helpdesk.policy import CrudAction, Resource, ResourceType, UserAction
from helpdesk.roles import ASSIGNABLE_ROLES, TEAM_ROLES
from helpdesk.sessions import normalize_email

logger = logging.getLogger(__name__)

MAX_REPORT_DAYS = 365
MAX_ACTIVITY_LOGS = 500


def _load(ctx: OperationContext, model, entity_id: str, resource_type: ResourceType, action, label: str):
    entity = (
        ctx.db.query(model)
        .filter(model.id == entity_id)
        .populate_existing()
        .with_for_update()
        .one_or_none()
    )
    if entity is None:
        raise NotFound(f"{label} not found")
    ctx.authorize(action, Resource(resource_type, id=entity.id))
    return entity


def _guard_admin(ctx: OperationContext, action, resource_type: ResourceType) -> None:
    ctx.precheck(action, resource_type)
    ctx.authorize(action, Resource(resource_type))


def _int_in_range(field_name: str, value: Any, low: int, high: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(field_name, f"Invalid {field_name}")
    if number < low or number > high:
        raise ValidationError(field_name, f"{field_name} must be between {low} and {high}")
    return number


# --------------------------------------------------------------------------------------
# Team members
# --------------------------------------------------------------------------------------


def serialize_team_member(member: TeamMember, article_count: int = 0) -> dict:
    return {
        "id": member.id,
        "email": member.email,
        "name": member.name,
        "role": member.role,
        "created_at": isoformat(member.created_at),
        "kb_article_count": article_count,
    }


@guarded_operation("Failed to fetch team members")
def list_team_members(ctx: OperationContext) -> OperationResult:
    _guard_admin(ctx, CrudAction.READ, ResourceType.TEAM_MEMBER)
    counts = dict(
        ctx.db.query(KbArticle.author_id, func.count(KbArticle.id)).group_by(KbArticle.author_id).all()
    )
    members = ctx.db.query(TeamMember).order_by(desc(TeamMember.created_at)).all()
    return OperationResult.ok(
        team_members=[serialize_team_member(m, counts.get(m.id, 0)) for m in members]
    )


@guarded_operation("Failed to create team member")
def create_team_member(ctx: OperationContext, email, name, role) -> OperationResult:
    email = require_email("email", email)
    name = require_text("name", name)
    role = require_choice("role", role, TEAM_ROLES)
    _guard_admin(ctx, CrudAction.CREATE, ResourceType.TEAM_MEMBER)

    if ctx.db.query(TeamMember).filter(TeamMember.email == email).first() is not None:
        raise ConflictError("Team member with this email already exists")
    member = TeamMember(email=email, name=name, role=role, created_at=now_utc())
    ctx.db.add(member)
    ctx.db.flush()
    member_id = member.id
    ctx.db.commit()

    ctx.audit("create", "team_member", member_id, f"Created team member: {name}")
    return OperationResult.ok(team_member=serialize_team_member(member))


@guarded_operation("Failed to update team member")
def update_team_member(ctx: OperationContext, member_id, data: Mapping[str, Any]) -> OperationResult:
    member_id = require_text("member_id", member_id, "Team member ID")
    changes: dict[str, Any] = {}
    if "email" in data:
        changes["email"] = require_email("email", data.get("email"))
    if "name" in data:
        changes["name"] = require_text("name", data.get("name"))
    if "role" in data:
        changes["role"] = require_choice("role", data.get("role"), TEAM_ROLES)
    ctx.precheck(CrudAction.UPDATE, ResourceType.TEAM_MEMBER)

    member = _load(ctx, TeamMember, member_id, ResourceType.TEAM_MEMBER, CrudAction.UPDATE, "Team member")
    new_email = changes.get("email")
    if new_email and new_email != member.email:
        clash = ctx.db.query(TeamMember).filter(TeamMember.email == new_email).first()
        if clash is not None:
            raise ConflictError("Team member with this email already exists")
    changed = apply_input(member, changes, {"email", "name", "role"})
    payload = serialize_team_member(member)
    ctx.db.commit()

    if changed:
        ctx.audit("update", "team_member", member_id, f"Updated team member: {payload['name']}")
    return OperationResult.ok(team_member=payload, changed=bool(changed))


@guarded_operation("Failed to delete team member")
def delete_team_member(ctx: OperationContext, member_id) -> OperationResult:
    member_id = require_text("member_id", member_id, "Team member ID")
    ctx.precheck(CrudAction.DELETE, ResourceType.TEAM_MEMBER)

    member = _load(ctx, TeamMember, member_id, ResourceType.TEAM_MEMBER, CrudAction.DELETE, "Team member")
    if ctx.db.query(KbArticle.id).filter(KbArticle.author_id == member.id).first() is not None:
        raise ConflictError("Cannot delete team member with knowledge base articles")
    name = member.name
    ctx.db.delete(member)
    ctx.db.commit()

    ctx.audit("delete", "team_member", member_id, f"Deleted team member: {name}")
    return OperationResult.ok(member_id=member_id)


# --------------------------------------------------------------------------------------
# Users
# --------------------------------------------------------------------------------------


def serialize_user(user: User) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "role": user.role,
        "email_verified": bool(user.email_verified),
        "created_at": isoformat(user.created_at),
    }


@guarded_operation("Failed to fetch users")
def list_users(ctx: OperationContext) -> OperationResult:
    _guard_admin(ctx, UserAction.READ, ResourceType.USER)
    users = ctx.db.query(User).order_by(desc(User.created_at)).all()
    return OperationResult.ok(users=[serialize_user(u) for u in users])


@guarded_operation("Failed to update user")
def update_user(ctx: OperationContext, user_id, data: Mapping[str, Any]) -> OperationResult:
    """Update profile fields. ``role`` in ``data`` is ignored: see update_user_role."""
    user_id = require_text("user_id", user_id, "User ID")
    changes: dict[str, Any] = dict(data)
    if "email" in data:
        changes["email"] = normalize_email(require_email("email", data.get("email")))
    if "name" in data:
        changes["name"] = optional_text(data.get("name"))
    if "email_verified" in data:
        changes["email_verified"] = bool(data.get("email_verified"))
    ctx.precheck(UserAction.UPDATE, ResourceType.USER)

    user = _load(ctx, User, user_id, ResourceType.USER, UserAction.UPDATE, "User")
    new_email = changes.get("email")
    if new_email and new_email != user.email:
        if ctx.db.query(User).filter(User.email == new_email).first() is not None:
            raise ConflictError("Email already in use")
    changed = apply_input(user, changes, {"name", "email", "email_verified", "role"})
    if changed:
        user.updated_at = now_utc()
    payload = serialize_user(user)
    ctx.db.commit()

    if changed:
        ctx.audit("update", "user", user_id, f"Updated user: {payload['email']}")
    return OperationResult.ok(user=payload, changed=bool(changed))


@guarded_operation("Failed to update user role")
def update_user_role(ctx: OperationContext, user_id, new_role) -> OperationResult:
    user_id = require_text("user_id", user_id, "User ID")
    new_role = require_choice("role", new_role, ASSIGNABLE_ROLES, "role")
    ctx.precheck(UserAction.UPDATE_ROLE, ResourceType.USER)

    user = _load(ctx, User, user_id, ResourceType.USER, UserAction.UPDATE_ROLE, "User")
    if user.role == new_role:
        ctx.db.commit()
        return OperationResult.ok(user_id=user_id, role=new_role, changed=False)
    user.role = new_role
    user.updated_at = now_utc()
    email = user.email
    ctx.db.commit()
    logger.info("Role of %s set to %s by %s", email, new_role, ctx.principal.id)

    ctx.audit("update", "user", user_id, f"Updated user role: {email} -> {new_role}")
    return OperationResult.ok(user_id=user_id, role=new_role, changed=True)


@guarded_operation("Failed to delete user")
def delete_user(ctx: OperationContext, user_id) -> OperationResult:
    user_id = require_text("user_id", user_id, "User ID")
    ctx.precheck(UserAction.DELETE, ResourceType.USER)

    user = _load(ctx, User, user_id, ResourceType.USER, UserAction.DELETE, "User")
    email = user.email
    ctx.db.query(Ticket).filter(Ticket.assigned_to == user.id).update(
        {Ticket.assigned_to: None}, synchronize_session=False
    )
    ctx.db.delete(user)
    ctx.db.commit()
    logger.info("User %s deleted by %s", email, ctx.principal.id)

    ctx.audit("delete", "user", user_id, f"Deleted user: {email}")
    return OperationResult.ok(user_id=user_id)


# --------------------------------------------------------------------------------------
# Settings
# --------------------------------------------------------------------------------------


def serialize_setting(setting: Setting) -> dict:
    return {
        "id": setting.id,
        "key": setting.key,
        "value": setting.value,
        "category": setting.category,
        "updated_at": isoformat(setting.updated_at),
    }


@guarded_operation("Failed to fetch settings")
def list_settings(ctx: OperationContext, category=None) -> OperationResult:
    category = optional_text(category)
    _guard_admin(ctx, CrudAction.READ, ResourceType.SETTING)
    q = ctx.db.query(Setting)
    if category:
        q = q.filter(Setting.category == category)
    return OperationResult.ok(settings=[serialize_setting(s) for s in q.order_by(Setting.key).all()])


@guarded_operation("Failed to update setting")
def update_setting(ctx: OperationContext, key, value, category="general") -> OperationResult:
    key = require_text("key", key)
    if not isinstance(value, str):
        raise ValidationError("value", "Value must be a string")
    category = optional_text(category) or "general"
    _guard_admin(ctx, CrudAction.UPDATE, ResourceType.SETTING)

    setting = ctx.db.query(Setting).filter(Setting.key == key).with_for_update().one_or_none()
    if setting is None:
        setting = Setting(key=key, value=value, category=category)
        ctx.db.add(setting)
    else:
        setting.value = value
    setting.updated_at = now_utc()
    ctx.db.flush()
    payload = serialize_setting(setting)
    ctx.db.commit()

    ctx.audit("update", "setting", payload["id"], f"Updated setting: {key}")
    return OperationResult.ok(setting=payload)


@guarded_operation("Failed to delete setting")
def delete_setting(ctx: OperationContext, setting_id) -> OperationResult:
    setting_id = require_text("setting_id", setting_id, "Setting ID")
    ctx.precheck(CrudAction.DELETE, ResourceType.SETTING)

    setting = _load(ctx, Setting, setting_id, ResourceType.SETTING, CrudAction.DELETE, "Setting")
    key = setting.key
    ctx.db.delete(setting)
    ctx.db.commit()

    ctx.audit("delete", "setting", setting_id, f"Deleted setting: {key}")
    return OperationResult.ok(setting_id=setting_id)


# --------------------------------------------------------------------------------------
# Email templates
# --------------------------------------------------------------------------------------

TEMPLATE_FIELDS = {"name", "subject", "body", "variables", "description"}


def serialize_template(template: EmailTemplate) -> dict:
    return {
        "id": template.id,
        "name": template.name,
        "subject": template.subject,
        "body": template.body,
        "variables": template.variables,
        "description": template.description,
        "updated_at": isoformat(template.updated_at),
    }


@guarded_operation("Failed to fetch email templates")
def list_email_templates(ctx: OperationContext) -> OperationResult:
    _guard_admin(ctx, CrudAction.READ, ResourceType.EMAIL_TEMPLATE)
    templates = ctx.db.query(EmailTemplate).order_by(EmailTemplate.name).all()
    return OperationResult.ok(templates=[serialize_template(t) for t in templates])


@guarded_operation("Failed to fetch email template")
def get_email_template(ctx: OperationContext, template_id) -> OperationResult:
    template_id = require_text("template_id", template_id, "Template ID")
    ctx.precheck(CrudAction.READ, ResourceType.EMAIL_TEMPLATE)
    template = ctx.db.get(EmailTemplate, template_id)
    if template is None:
        raise NotFound("Template not found")
    ctx.authorize(CrudAction.READ, Resource(ResourceType.EMAIL_TEMPLATE, id=template.id))
    return OperationResult.ok(template=serialize_template(template))


@guarded_operation("Failed to create email template")
def create_email_template(
    ctx: OperationContext,
    name,
    subject,
    body,
    variables="",
    description=None,
) -> OperationResult:
    name = require_text("name", name)
    subject = require_text("subject", subject)
    body = require_text("body", body)
    variables = optional_text(variables) or ""
    description = optional_text(description)
    _guard_admin(ctx, CrudAction.CREATE, ResourceType.EMAIL_TEMPLATE)

    if ctx.db.query(EmailTemplate).filter(EmailTemplate.name == name).first() is not None:
        raise ConflictError("Email template with this name already exists")
    template = EmailTemplate(
        name=name,
        subject=subject,
        body=body,
        variables=variables,
        description=description,
    )
    ctx.db.add(template)
    ctx.db.flush()
    payload = serialize_template(template)
    ctx.db.commit()

    ctx.audit("create", "email_template", payload["id"], f"Created template: {name}")
    return OperationResult.ok(template=payload)


@guarded_operation("Failed to update email template")
def update_email_template(ctx: OperationContext, template_id, data: Mapping[str, Any]) -> OperationResult:
    template_id = require_text("template_id", template_id, "Template ID")
    changes: dict[str, Any] = {}
    for field_name in ("name", "subject", "body"):
        if field_name in data:
            changes[field_name] = require_text(field_name, data.get(field_name))
    for field_name in ("variables", "description"):
        if field_name in data:
            changes[field_name] = optional_text(data.get(field_name))
    if "variables" in changes:
        changes["variables"] = changes["variables"] or ""
    ctx.precheck(CrudAction.UPDATE, ResourceType.EMAIL_TEMPLATE)

    template = _load(ctx, EmailTemplate, template_id, ResourceType.EMAIL_TEMPLATE, CrudAction.UPDATE, "Template")
    new_name = changes.get("name")
    if new_name and new_name != template.name:
        if ctx.db.query(EmailTemplate).filter(EmailTemplate.name == new_name).first() is not None:
            raise ConflictError("Email template with this name already exists")
    changed = apply_input(template, changes, TEMPLATE_FIELDS)
    if changed:
        template.updated_at = now_utc()
    payload = serialize_template(template)
    ctx.db.commit()

    if changed:
        ctx.audit("update", "email_template", template_id, f"Updated template: {payload['name']}")
    return OperationResult.ok(template=payload, changed=bool(changed))


@guarded_operation("Failed to delete email template")
def delete_email_template(ctx: OperationContext, template_id) -> OperationResult:
    template_id = require_text("template_id", template_id, "Template ID")
    ctx.precheck(CrudAction.DELETE, ResourceType.EMAIL_TEMPLATE)

    template = _load(ctx, EmailTemplate, template_id, ResourceType.EMAIL_TEMPLATE, CrudAction.DELETE, "Template")
    name = template.name
    ctx.db.delete(template)
    ctx.db.commit()

    ctx.audit("delete", "email_template", template_id, f"Deleted template: {name}")
    return OperationResult.ok(template_id=template_id)


# --------------------------------------------------------------------------------------
# Categories
# --------------------------------------------------------------------------------------


def _category_usage(ctx: OperationContext, category_id: str) -> tuple[int, int, int]:
    tickets = ctx.db.query(func.count(Ticket.id)).filter(Ticket.category_id == category_id).scalar()
    articles = ctx.db.query(func.count(KbArticle.id)).filter(KbArticle.category_id == category_id).scalar()
    children = ctx.db.query(func.count(Category.id)).filter(Category.parent_id == category_id).scalar()
    return tickets or 0, articles or 0, children or 0


def _check_parent(ctx: OperationContext, category_id: Optional[str], parent_id: Optional[str]) -> None:
    """Reject unknown parents and any parent chain that would loop back to ``category_id``."""
    seen: set[str] = set()
    current = parent_id
    while current is not None:
        if current == category_id or current in seen:
            raise ValidationError("parent_id", "A category cannot be its own ancestor")
        seen.add(current)
        parent = ctx.db.get(Category, current)
        if parent is None:
            raise ValidationError("parent_id", "Invalid parent category")
        current = parent.parent_id


def serialize_category(ctx: OperationContext, category: Category) -> dict:
    tickets, articles, _ = _category_usage(ctx, category.id)
    return {
        "id": category.id,
        "name": category.name,
        "parent": {"id": category.parent.id, "name": category.parent.name} if category.parent else None,
        "children": [{"id": c.id, "name": c.name} for c in sorted(category.children, key=lambda c: c.name)],
        "ticket_count": tickets,
        "kb_article_count": articles,
    }


@guarded_operation("Failed to fetch categories")
def list_categories(ctx: OperationContext) -> OperationResult:
    _guard_admin(ctx, CrudAction.READ, ResourceType.CATEGORY)
    categories = ctx.db.query(Category).order_by(Category.name).all()
    return OperationResult.ok(categories=[serialize_category(ctx, c) for c in categories])


@guarded_operation("Failed to create category")
def create_category(ctx: OperationContext, name, parent_id=None) -> OperationResult:
    name = require_text("name", name)
    parent_id = optional_text(parent_id)
    _guard_admin(ctx, CrudAction.CREATE, ResourceType.CATEGORY)

    _check_parent(ctx, None, parent_id)
    if ctx.db.query(Category).filter(Category.name == name).first() is not None:
        raise ConflictError("Category with this name already exists")
    category = Category(name=name, parent_id=parent_id)
    ctx.db.add(category)
    ctx.db.flush()
    category_id = category.id
    ctx.db.commit()

    ctx.audit("create", "category", category_id, f"Created category: {name}")
    return OperationResult.ok(category={"id": category_id, "name": name, "parent_id": parent_id})


@guarded_operation("Failed to update category")
def update_category(ctx: OperationContext, category_id, data: Mapping[str, Any]) -> OperationResult:
    category_id = require_text("category_id", category_id, "Category ID")
    changes: dict[str, Any] = {}
    if "name" in data:
        changes["name"] = require_text("name", data.get("name"))
    if "parent_id" in data:
        changes["parent_id"] = optional_text(data.get("parent_id"))
    ctx.precheck(CrudAction.UPDATE, ResourceType.CATEGORY)

    category = _load(ctx, Category, category_id, ResourceType.CATEGORY, CrudAction.UPDATE, "Category")
    if "parent_id" in changes:
        _check_parent(ctx, category.id, changes["parent_id"])
    new_name = changes.get("name")
    if new_name and new_name != category.name:
        if ctx.db.query(Category).filter(Category.name == new_name).first() is not None:
            raise ConflictError("Category with this name already exists")
    changed = apply_input(category, changes, {"name", "parent_id"})
    payload = {"id": category.id, "name": category.name, "parent_id": category.parent_id}
    ctx.db.commit()

    if changed:
        ctx.audit("update", "category", category_id, f"Updated category: {payload['name']}")
    return OperationResult.ok(category=payload, changed=bool(changed))


@guarded_operation("Failed to delete category")
def delete_category(ctx: OperationContext, category_id) -> OperationResult:
    category_id = require_text("category_id", category_id, "Category ID")
    ctx.precheck(CrudAction.DELETE, ResourceType.CATEGORY)

    category = _load(ctx, Category, category_id, ResourceType.CATEGORY, CrudAction.DELETE, "Category")
    tickets, articles, children = _category_usage(ctx, category.id)
    if tickets or articles:
        raise ConflictError("Cannot delete category with associated tickets or articles")
    if children:
        raise ConflictError("Cannot delete category with subcategories")
    name = category.name
    ctx.db.delete(category)
    ctx.db.commit()

    ctx.audit("delete", "category", category_id, f"Deleted category: {name}")
    return OperationResult.ok(category_id=category_id)


# --------------------------------------------------------------------------------------
# Reports
# --------------------------------------------------------------------------------------


@guarded_operation("Failed to fetch dashboard stats")
def get_dashboard_stats(ctx: OperationContext) -> OperationResult:
    _guard_admin(ctx, CrudAction.READ, ResourceType.REPORT)
    db = ctx.db
    stats = {
        "total_tickets": db.query(func.count(Ticket.id)).scalar(),
        "open_tickets": db.query(func.count(Ticket.id)).filter(Ticket.status == "open").scalar(),
        "resolved_tickets": db.query(func.count(Ticket.id)).filter(Ticket.status == "resolved").scalar(),
        "total_users": db.query(func.count(User.id)).scalar(),
        "total_kb_articles": db.query(func.count(KbArticle.id)).scalar(),
        "published_kb_articles": db.query(func.count(KbArticle.id)).filter(KbArticle.published.is_(True)).scalar(),
        "team_members": db.query(func.count(TeamMember.id)).scalar(),
    }
    return OperationResult.ok(stats=stats)


@guarded_operation("Failed to fetch ticket stats")
def get_ticket_stats(ctx: OperationContext, days=30) -> OperationResult:
    days = _int_in_range("days", days, 1, MAX_REPORT_DAYS)
    _guard_admin(ctx, CrudAction.READ, ResourceType.REPORT)

    start = now_utc() - timedelta(days=days)
    tickets = ctx.db.query(Ticket).filter(Ticket.open_date >= start).all()
    by_status: Counter = Counter()
    by_priority: Counter = Counter()
    by_category: Counter = Counter()
    by_date: Counter = Counter()
    for ticket in tickets:
        by_status[ticket.status] += 1
        by_priority[ticket.priority.name if ticket.priority else "None"] += 1
        by_category[ticket.category.name if ticket.category else "Uncategorized"] += 1
        by_date[as_utc(ticket.open_date).date().isoformat()] += 1
    return OperationResult.ok(
        stats={
            "total": len(tickets),
            "by_status": dict(by_status),
            "by_priority": dict(by_priority),
            "by_category": dict(by_category),
            "by_date": dict(sorted(by_date.items())),
        }
    )


@guarded_operation("Failed to fetch activity logs")
def get_activity_logs(ctx: OperationContext, limit=50) -> OperationResult:
    limit = _int_in_range("limit", limit, 1, MAX_ACTIVITY_LOGS)
    _guard_admin(ctx, CrudAction.READ, ResourceType.ACTIVITY_LOG)
    entries = audit.list_recent(ctx.db, limit)
    return OperationResult.ok(logs=[audit.serialize_entry(e) for e in entries])
