"""Resource policy engine.

Single source of truth for "can this principal do this action to this
resource". Decisions are pure functions of (principal, action, resource,
claimed email): no I/O, no clock, safe to call speculatively.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from helpdesk.roles import Principal, Role, at_least
from helpdesk.sessions import normalize_email


class ResourceType(str, Enum):
    TICKET = "ticket"
    KB_ARTICLE = "kb_article"
    CATEGORY = "category"
    SETTING = "setting"
    EMAIL_TEMPLATE = "email_template"
    TEAM_MEMBER = "team_member"
    USER = "user"
    REPORT = "report"
    ACTIVITY_LOG = "activity_log"


class TicketAction(str, Enum):
    CREATE_AS_SELF = "create_as_self"
    CREATE_AS_GUEST = "create_as_guest"
    READ_OWN = "read_own"
    READ_ANY = "read_any"
    READ_INTERNAL = "read_internal"
    UPDATE_STATUS = "update_status"
    UPDATE_ASSIGNMENT = "update_assignment"
    UPDATE_PRIORITY = "update_priority"
    UPDATE_CATEGORY = "update_category"
    REPLY_PUBLIC = "reply_public"
    REPLY_INTERNAL = "reply_internal"


class KbAction(str, Enum):
    READ_PUBLISHED = "read_published"
    READ_ANY = "read_any"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    PUBLISH = "publish"


class CrudAction(str, Enum):
    READ = "read"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class UserAction(str, Enum):
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    UPDATE_ROLE = "update_role"


Action = Union[TicketAction, KbAction, CrudAction, UserAction]


@dataclass(frozen=True)
class Resource:
    type: ResourceType
    id: Optional[str] = None
    owner_id: Optional[str] = None
    owner_email: Optional[str] = None
    published: Optional[bool] = None

    @classmethod
    def for_ticket(cls, ticket) -> "Resource":
        owner = ticket.user
        return cls(
            type=ResourceType.TICKET,
            id=ticket.id,
            owner_id=ticket.user_id,
            owner_email=owner.email if owner is not None else None,
        )

    @classmethod
    def for_article(cls, article) -> "Resource":
        return cls(type=ResourceType.KB_ARTICLE, id=article.id, published=bool(article.published))


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: str = ""

    @classmethod
    def allow(cls) -> "Decision":
        return cls(True, "allowed")

    @classmethod
    def deny(cls, reason: str) -> "Decision":
        return cls(False, reason)

    def __bool__(self) -> bool:
        return self.allowed


# --------------------------------------------------------------------------------------
# Policy table: minimum role per (resource type, action)
# --------------------------------------------------------------------------------------
_ADMIN_ONLY_TYPES = (
    ResourceType.CATEGORY,
    ResourceType.SETTING,
    ResourceType.EMAIL_TEMPLATE,
    ResourceType.TEAM_MEMBER,
    ResourceType.REPORT,
    ResourceType.ACTIVITY_LOG,
)

MINIMUM_ROLE: dict[tuple[ResourceType, Action], Role] = {
    (ResourceType.TICKET, TicketAction.CREATE_AS_SELF): Role.USER,
    (ResourceType.TICKET, TicketAction.READ_ANY): Role.STAFF,
    (ResourceType.TICKET, TicketAction.READ_INTERNAL): Role.STAFF,
    (ResourceType.TICKET, TicketAction.UPDATE_STATUS): Role.STAFF,
    (ResourceType.TICKET, TicketAction.UPDATE_ASSIGNMENT): Role.STAFF,
    (ResourceType.TICKET, TicketAction.UPDATE_PRIORITY): Role.STAFF,
    (ResourceType.TICKET, TicketAction.UPDATE_CATEGORY): Role.STAFF,
    (ResourceType.TICKET, TicketAction.REPLY_PUBLIC): Role.STAFF,
    (ResourceType.TICKET, TicketAction.REPLY_INTERNAL): Role.STAFF,
    (ResourceType.KB_ARTICLE, KbAction.READ_ANY): Role.STAFF,
    (ResourceType.KB_ARTICLE, KbAction.CREATE): Role.STAFF,
    (ResourceType.KB_ARTICLE, KbAction.UPDATE): Role.STAFF,
    (ResourceType.KB_ARTICLE, KbAction.DELETE): Role.STAFF,
    (ResourceType.KB_ARTICLE, KbAction.PUBLISH): Role.STAFF,
}
MINIMUM_ROLE.update(
    {(resource_type, action): Role.ADMIN for resource_type in _ADMIN_ONLY_TYPES for action in CrudAction}
)
MINIMUM_ROLE.update({(ResourceType.USER, action): Role.ADMIN for action in UserAction})

# The str mixin makes CrudAction.READ == UserAction.READ, so the table lookup
# alone cannot tell enums apart.
ACTIONS_BY_TYPE: dict[ResourceType, type] = {
    ResourceType.TICKET: TicketAction,
    ResourceType.KB_ARTICLE: KbAction,
    ResourceType.USER: UserAction,
}
ACTIONS_BY_TYPE.update({resource_type: CrudAction for resource_type in _ADMIN_ONLY_TYPES})


def authorize(
    principal: Principal,
    action: Action,
    resource: Resource,
    claimed_email: Optional[str] = None,
) -> Decision:
    """Decide whether ``principal`` may perform ``action`` on ``resource``.

    Anything the table does not name is denied. Ownership only ever grants
    READ_OWN on a ticket; it never lifts a principal past its role ceiling.
    """
    if resource.type is ResourceType.TICKET and action is TicketAction.CREATE_AS_GUEST:
        if principal.is_anonymous:
            return Decision.allow()
        return Decision.deny("signed-in principals create tickets as themselves")

    if resource.type is ResourceType.TICKET and action is TicketAction.READ_OWN:
        return _authorize_read_own(principal, resource, claimed_email)

    if resource.type is ResourceType.KB_ARTICLE and action is KbAction.READ_PUBLISHED:
        if at_least(principal, Role.STAFF) or resource.published is not False:
            return Decision.allow()
        return Decision.deny("article is not published")

    minimum = None
    if isinstance(action, ACTIONS_BY_TYPE[resource.type]):
        minimum = MINIMUM_ROLE.get((resource.type, action))
    if minimum is None:
        return Decision.deny(f"{action.value} is not defined for {resource.type.value}")
    if at_least(principal, minimum):
        return Decision.allow()
    return Decision.deny(f"requires {minimum.label}")


def _authorize_read_own(principal: Principal, resource: Resource, claimed_email: Optional[str]) -> Decision:
    if at_least(principal, Role.STAFF):
        return Decision.allow()
    if claimed_email is None:
        claimed_email = principal.email
    claimed = normalize_email(claimed_email)
    owner = normalize_email(resource.owner_email)
    if resource.id is None:
        # Type-level check: the ownership half is decided once the ticket is loaded.
        return Decision.allow()
    if claimed and owner and claimed == owner:
        return Decision.allow()
    return Decision.deny("email does not match ticket owner")


def can_see_internal_notes(principal: Principal) -> bool:
    return authorize(principal, TicketAction.READ_INTERNAL, Resource(ResourceType.TICKET)).allowed
