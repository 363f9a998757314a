from __future__ import annotations

import logging
from collections import defaultdict
from typing import Iterable, Optional

from sqlalchemy import desc, func, or_
from sqlalchemy.orm import Session

from helpdesk.errors import NotFound, OperationResult, Unauthorized, ValidationError
from helpdesk.guard import (
    OperationContext,
    guarded_operation,
    optional_text,
    require_choice,
    require_email,
    require_text,
)
from helpdesk.models import (
    TICKET_STATUSES,
    Category,
    Priority,
    Ticket,
    TicketReply,
    User,
    isoformat,
    now_utc,
)
from helpdesk.notifier import TICKET_CREATED, TICKET_UPDATED
from helpdesk.policy import Resource, ResourceType, TicketAction, authorize, can_see_internal_notes
from helpdesk.roles import Principal, Role, at_least, principal_for_user
from helpdesk.sessions import normalize_email, upsert_user_by_email

logger = logging.getLogger(__name__)

TICKET_LOOKUP_MISS = "Ticket not found or email does not match"


# --------------------------------------------------------------------------------------
# Data access
# --------------------------------------------------------------------------------------


def _replies_for(
    db: Session,
    ticket_ids: Iterable[str],
    principal: Principal,
    include_internal: bool = True,
) -> dict[str, list[TicketReply]]:
    """Load replies grouped by ticket; internal notes only reach staff."""
    ids = list(ticket_ids)
    grouped: dict[str, list[TicketReply]] = defaultdict(list)
    if not ids:
        return grouped
    q = db.query(TicketReply).filter(TicketReply.ticket_id.in_(ids))
    if not (include_internal and can_see_internal_notes(principal)):
        q = q.filter(TicketReply.is_internal.is_(False))
    for reply in q.order_by(TicketReply.created_at, TicketReply.id).all():
        grouped[reply.ticket_id].append(reply)
    return grouped


def _load_ticket(ctx: OperationContext, ticket_id: str, action: TicketAction) -> Ticket:
    """Fetch the current row under lock and re-check the policy against it."""
    ticket = (
        ctx.db.query(Ticket)
        .filter(Ticket.id == ticket_id)
        .populate_existing()
        .with_for_update()
        .one_or_none()
    )
    if ticket is None:
        raise NotFound("Ticket not found")
    if action is TicketAction.READ_OWN:
        # Someone else's ticket reads the same as a missing one.
        try:
            ctx.authorize(action, Resource.for_ticket(ticket))
        except Unauthorized:
            raise NotFound("Ticket not found") from None
    else:
        ctx.authorize(action, Resource.for_ticket(ticket))
    return ticket


def _ensure_exists(db: Session, model, value: Optional[str], field_name: str, label: str) -> Optional[str]:
    if value is None:
        return None
    if db.get(model, value) is None:
        raise ValidationError(field_name, f"Invalid {label}")
    return value


def serialize_reply(reply: TicketReply) -> dict:
    return {
        "id": reply.id,
        "ticket_id": reply.ticket_id,
        "author_id": reply.author_id,
        "author_type": reply.author_type,
        "message": reply.message,
        "is_internal": bool(reply.is_internal),
        "created_at": isoformat(reply.created_at),
    }


def serialize_ticket(ticket: Ticket, replies: Iterable[TicketReply]) -> dict:
    user = ticket.user
    return {
        "id": ticket.id,
        "subject": ticket.subject,
        "status": ticket.status,
        "open_date": isoformat(ticket.open_date),
        "last_update": isoformat(ticket.last_update),
        "user_id": ticket.user_id,
        "user": {"name": user.name, "email": user.email} if user else None,
        "assigned_to": ticket.assigned_to,
        "category": {"id": ticket.category.id, "name": ticket.category.name} if ticket.category else None,
        "priority": (
            {"id": ticket.priority.id, "name": ticket.priority.name, "level": ticket.priority.level}
            if ticket.priority
            else None
        ),
        "replies": [serialize_reply(reply) for reply in replies],
    }


def _update_payload(ticket: Ticket, message: Optional[str] = None) -> dict:
    return {
        "ticket_id": ticket.id,
        "subject": ticket.subject,
        "status": ticket.status,
        "message": message,
    }


# --------------------------------------------------------------------------------------
# Customer-facing operations
# --------------------------------------------------------------------------------------


@guarded_operation("Failed to create ticket. Please try again.")
def create_ticket(
    ctx: OperationContext,
    subject,
    message,
    name=None,
    email=None,
    category_id=None,
    priority_id=None,
) -> OperationResult:
    subject = require_text("subject", subject)
    message = require_text("message", message)
    category_id = optional_text(category_id)
    priority_id = optional_text(priority_id)
    guest = ctx.principal.is_anonymous
    if guest:
        name = require_text("name", name)
        email = require_email("email", email)
        action = TicketAction.CREATE_AS_GUEST
    else:
        action = TicketAction.CREATE_AS_SELF
    ctx.precheck(action, ResourceType.TICKET)

    ctx.authorize(action, Resource(ResourceType.TICKET))
    if guest:
        owner = upsert_user_by_email(ctx.db, email, name)
    else:
        owner = ctx.db.get(User, ctx.principal.id)
    _ensure_exists(ctx.db, Category, category_id, "category_id", "category")
    _ensure_exists(ctx.db, Priority, priority_id, "priority_id", "priority")

    now = now_utc()
    ticket = Ticket(
        subject=subject,
        status="open",
        user_id=owner.id,
        category_id=category_id,
        priority_id=priority_id,
        open_date=now,
        last_update=now,
    )
    ctx.db.add(ticket)
    ctx.db.flush()
    ctx.db.add(
        TicketReply(
            ticket_id=ticket.id,
            author_id=owner.id,
            author_type="customer",
            message=message,
            is_internal=False,
            created_at=now,
        )
    )
    ticket_id, owner_email = ticket.id, owner.email
    ctx.db.commit()
    logger.info("Ticket %s created for %s", ticket_id, owner_email)

    ctx.notify(owner_email, TICKET_CREATED, {"ticket_id": ticket_id, "subject": subject})
    return OperationResult.ok(ticket_id=ticket_id)


@guarded_operation("Failed to fetch ticket. Please try again.")
def get_ticket_status(ctx: OperationContext, ticket_id, email) -> OperationResult:
    """Look up a ticket by id and owner email; safe without signing in.

    A wrong id and a wrong email produce the same error.
    """
    ticket_id = require_text("ticket_id", ticket_id, "Ticket ID")
    email = normalize_email(require_text("email", email))
    ctx.precheck(TicketAction.READ_OWN, ResourceType.TICKET)

    ticket = (
        ctx.db.query(Ticket)
        .join(User, Ticket.user_id == User.id)
        .filter(Ticket.id == ticket_id, User.email == email)
        .one_or_none()
    )
    if ticket is None:
        raise NotFound(TICKET_LOOKUP_MISS)
    ctx.authorize(TicketAction.READ_OWN, Resource.for_ticket(ticket), claimed_email=email)

    replies = _replies_for(ctx.db, [ticket.id], ctx.principal, include_internal=False)
    return OperationResult.ok(ticket=serialize_ticket(ticket, replies[ticket.id]))


@guarded_operation("Failed to fetch tickets")
def list_my_tickets(ctx: OperationContext) -> OperationResult:
    if not at_least(ctx.principal, Role.USER):
        raise Unauthorized()
    principal = ctx.refresh()
    if not at_least(principal, Role.USER):
        raise Unauthorized()
    tickets = (
        ctx.db.query(Ticket)
        .filter(Ticket.user_id == principal.id)
        .order_by(desc(Ticket.last_update))
        .all()
    )
    visible = [
        ticket
        for ticket in tickets
        if authorize(principal, TicketAction.READ_OWN, Resource.for_ticket(ticket)).allowed
    ]
    replies = _replies_for(ctx.db, [t.id for t in visible], principal, include_internal=False)
    return OperationResult.ok(tickets=[serialize_ticket(t, replies[t.id]) for t in visible])


@guarded_operation("Failed to add reply")
def add_ticket_reply(ctx: OperationContext, ticket_id, message, is_internal=False) -> OperationResult:
    """Add a reply. Staff may post internal notes; customers only post public replies
    on tickets they own."""
    ticket_id = require_text("ticket_id", ticket_id, "Ticket ID")
    message = require_text("message", message)
    is_internal = bool(is_internal)

    if is_internal:
        action = TicketAction.REPLY_INTERNAL
        ctx.precheck(action, ResourceType.TICKET)
    elif authorize(ctx.principal, TicketAction.REPLY_PUBLIC, Resource(ResourceType.TICKET)).allowed:
        action = TicketAction.REPLY_PUBLIC
    else:
        action = TicketAction.READ_OWN
        ctx.precheck(action, ResourceType.TICKET)

    ticket = _load_ticket(ctx, ticket_id, action)
    staff_reply = action is not TicketAction.READ_OWN
    now = now_utc()
    reply = TicketReply(
        ticket_id=ticket.id,
        author_id=ctx.principal.id,
        author_type="staff" if staff_reply else "customer",
        message=message,
        is_internal=is_internal and staff_reply,
        created_at=now,
    )
    ctx.db.add(reply)
    ticket.last_update = now
    ctx.db.flush()
    reply_id = reply.id
    owner_email = ticket.user.email if ticket.user else None
    payload = _update_payload(ticket, message)
    ctx.db.commit()

    if staff_reply and not is_internal:
        ctx.notify(owner_email, TICKET_UPDATED, payload)
    return OperationResult.ok(reply_id=reply_id)


# --------------------------------------------------------------------------------------
# Staff operations
# --------------------------------------------------------------------------------------


@guarded_operation("Failed to fetch tickets")
def list_tickets_for_staff(
    ctx: OperationContext,
    status=None,
    priority=None,
    category=None,
    search=None,
) -> OperationResult:
    status = optional_text(status)
    if status is not None:
        require_choice("status", status, TICKET_STATUSES)
    priority = optional_text(priority)
    category = optional_text(category)
    search = optional_text(search)
    ctx.precheck(TicketAction.READ_ANY, ResourceType.TICKET)
    ctx.authorize(TicketAction.READ_ANY, Resource(ResourceType.TICKET))

    q = ctx.db.query(Ticket)
    if status:
        q = q.filter(Ticket.status == status)
    if search:
        pattern = f"%{search.lower()}%"
        q = q.filter(or_(func.lower(Ticket.subject).like(pattern), Ticket.id.contains(search)))
    if priority:
        q = q.join(Priority, Ticket.priority_id == Priority.id).filter(func.lower(Priority.name) == priority.lower())
    if category:
        q = q.join(Category, Ticket.category_id == Category.id).filter(func.lower(Category.name) == category.lower())
    tickets = q.order_by(desc(Ticket.last_update)).all()

    replies = _replies_for(ctx.db, [t.id for t in tickets], ctx.principal, include_internal=False)
    return OperationResult.ok(tickets=[serialize_ticket(t, replies[t.id]) for t in tickets])


@guarded_operation("Failed to fetch ticket")
def get_ticket_for_staff(ctx: OperationContext, ticket_id) -> OperationResult:
    ticket_id = require_text("ticket_id", ticket_id, "Ticket ID")
    ctx.precheck(TicketAction.READ_ANY, ResourceType.TICKET)
    ticket = ctx.db.get(Ticket, ticket_id)
    if ticket is None:
        raise NotFound("Ticket not found")
    ctx.authorize(TicketAction.READ_ANY, Resource.for_ticket(ticket))
    replies = _replies_for(ctx.db, [ticket.id], ctx.principal)
    return OperationResult.ok(ticket=serialize_ticket(ticket, replies[ticket.id]))


@guarded_operation("Failed to update ticket status")
def update_ticket_status(ctx: OperationContext, ticket_id, status) -> OperationResult:
    ticket_id = require_text("ticket_id", ticket_id, "Ticket ID")
    status = require_choice("status", status, TICKET_STATUSES, "status")
    ctx.precheck(TicketAction.UPDATE_STATUS, ResourceType.TICKET)

    ticket = _load_ticket(ctx, ticket_id, TicketAction.UPDATE_STATUS)
    previous = ticket.status
    if previous == status:
        ctx.db.commit()
        return OperationResult.ok(ticket_id=ticket_id, status=status, changed=False)
    ticket.status = status
    ticket.last_update = now_utc()
    owner_email = ticket.user.email if ticket.user else None
    payload = _update_payload(ticket)
    ctx.db.commit()

    ctx.audit("update_status", "ticket", ticket_id, f"Status changed: {previous} -> {status}")
    ctx.notify(owner_email, TICKET_UPDATED, payload)
    return OperationResult.ok(ticket_id=ticket_id, status=status, changed=True)


@guarded_operation("Failed to update ticket priority")
def update_ticket_priority(ctx: OperationContext, ticket_id, priority_id) -> OperationResult:
    ticket_id = require_text("ticket_id", ticket_id, "Ticket ID")
    priority_id = optional_text(priority_id)
    ctx.precheck(TicketAction.UPDATE_PRIORITY, ResourceType.TICKET)

    ticket = _load_ticket(ctx, ticket_id, TicketAction.UPDATE_PRIORITY)
    _ensure_exists(ctx.db, Priority, priority_id, "priority_id", "priority")
    previous = ticket.priority_id
    if previous == priority_id:
        ctx.db.commit()
        return OperationResult.ok(ticket_id=ticket_id, changed=False)
    ticket.priority_id = priority_id
    ticket.last_update = now_utc()
    ctx.db.commit()

    ctx.audit("update_priority", "ticket", ticket_id, f"Priority changed: {previous} -> {priority_id}")
    return OperationResult.ok(ticket_id=ticket_id, changed=True)


@guarded_operation("Failed to update ticket category")
def update_ticket_category(ctx: OperationContext, ticket_id, category_id) -> OperationResult:
    ticket_id = require_text("ticket_id", ticket_id, "Ticket ID")
    category_id = optional_text(category_id)
    ctx.precheck(TicketAction.UPDATE_CATEGORY, ResourceType.TICKET)

    ticket = _load_ticket(ctx, ticket_id, TicketAction.UPDATE_CATEGORY)
    _ensure_exists(ctx.db, Category, category_id, "category_id", "category")
    previous = ticket.category_id
    if previous == category_id:
        ctx.db.commit()
        return OperationResult.ok(ticket_id=ticket_id, changed=False)
    ticket.category_id = category_id
    ticket.last_update = now_utc()
    ctx.db.commit()

    ctx.audit("update_category", "ticket", ticket_id, f"Category changed: {previous} -> {category_id}")
    return OperationResult.ok(ticket_id=ticket_id, changed=True)


@guarded_operation("Failed to assign ticket")
def assign_ticket(ctx: OperationContext, ticket_id, assignee_id) -> OperationResult:
    ticket_id = require_text("ticket_id", ticket_id, "Ticket ID")
    assignee_id = optional_text(assignee_id)
    ctx.precheck(TicketAction.UPDATE_ASSIGNMENT, ResourceType.TICKET)

    ticket = _load_ticket(ctx, ticket_id, TicketAction.UPDATE_ASSIGNMENT)
    if assignee_id is not None:
        assignee = ctx.db.get(User, assignee_id)
        if assignee is None or not at_least(principal_for_user(assignee), Role.STAFF):
            raise ValidationError("assignee_id", "Assignee must be a staff member")
    previous = ticket.assigned_to
    if previous == assignee_id:
        ctx.db.commit()
        return OperationResult.ok(ticket_id=ticket_id, changed=False)
    ticket.assigned_to = assignee_id
    ticket.last_update = now_utc()
    ctx.db.commit()

    ctx.audit("assign", "ticket", ticket_id, f"Assignee changed: {previous} -> {assignee_id}")
    return OperationResult.ok(ticket_id=ticket_id, changed=True)


# --------------------------------------------------------------------------------------
# Ticket form lookups
# --------------------------------------------------------------------------------------


@guarded_operation("Failed to fetch categories")
def list_categories_public(ctx: OperationContext) -> OperationResult:
    rows = ctx.db.query(Category.id, Category.name).order_by(Category.name).all()
    return OperationResult.ok(categories=[{"id": row.id, "name": row.name} for row in rows])


@guarded_operation("Failed to fetch priorities")
def list_priorities(ctx: OperationContext) -> OperationResult:
    rows = ctx.db.query(Priority).order_by(Priority.level).all()
    return OperationResult.ok(
        priorities=[{"id": row.id, "name": row.name, "level": row.level} for row in rows]
    )
