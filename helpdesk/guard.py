"""Guarded operation machinery.

Every state change and role-sensitive read runs as ``op(ctx, ...)`` under
``guarded_operation``: validate, pre-check the policy, load the current
resource and principal, re-check, mutate, commit once, then audit and notify.
Any ``HelpdeskError`` rolls the transaction back and becomes the result's
``error``.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from functools import wraps
from typing import Any, Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from helpdesk import audit
from helpdesk.errors import HelpdeskError, OperationResult, Unauthorized, ValidationError
from helpdesk.notifier import Notifier, NullNotifier
from helpdesk.policy import Action, Resource, ResourceType, authorize
from helpdesk.roles import Principal
from helpdesk.sessions import refresh_principal

logger = logging.getLogger(__name__)


@dataclass
class OperationContext:
    db: Session
    principal: Principal
    notifier: Notifier = field(default_factory=NullNotifier)
    ip_address: Optional[str] = None

    def precheck(self, action: Action, resource_type: ResourceType) -> None:
        """Role-level check against the request principal; touches no data."""
        self._enforce(action, Resource(resource_type))

    def refresh(self) -> Principal:
        self.principal = refresh_principal(self.db, self.principal)
        return self.principal

    def authorize(self, action: Action, resource: Resource, claimed_email: Optional[str] = None) -> None:
        """Re-check against the persisted principal and the freshly loaded resource."""
        self.refresh()
        self._enforce(action, resource, claimed_email)

    def _enforce(self, action: Action, resource: Resource, claimed_email: Optional[str] = None) -> None:
        decision = authorize(self.principal, action, resource, claimed_email=claimed_email)
        if not decision.allowed:
            logger.info(
                "Denied %s on %s/%s for %s (%s): %s",
                action.value,
                resource.type.value,
                resource.id or "*",
                self.principal.id or "anonymous",
                self.principal.role.label,
                decision.reason,
            )
            raise Unauthorized()

    def audit(
        self,
        action: str,
        entity_type: str,
        entity_id: Optional[str] = None,
        details: Optional[str] = None,
    ) -> None:
        audit.record(
            self.db,
            action,
            entity_type,
            entity_id=entity_id,
            details=details,
            actor_id=self.principal.id,
            ip_address=self.ip_address,
        )

    def notify(self, address: Optional[str], kind: str, data: dict[str, Any]) -> None:
        try:
            result = self.notifier.notify(address, kind, data)
        except Exception as exc:
            logger.warning("Notifier raised for %s to %s: %s", kind, address, exc)
            return
        if result.status != "sent":
            logger.info("Notification %s to %s skipped: %s", kind, address, result.reason)


def guarded_operation(failure_message: str):
    def decorator(func):
        @wraps(func)
        def wrapper(ctx: OperationContext, *args, **kwargs) -> OperationResult:
            try:
                return func(ctx, *args, **kwargs)
            except HelpdeskError as exc:
                ctx.db.rollback()
                return OperationResult.fail(exc)
            except SQLAlchemyError:
                ctx.db.rollback()
                logger.exception("%s", failure_message)
                return OperationResult.failure(failure_message)

        return wrapper

    return decorator


# --------------------------------------------------------------------------------------
# Input validation helpers
# --------------------------------------------------------------------------------------


def require_text(field_name: str, value: Any, label: Optional[str] = None) -> str:
    cleaned = value.strip() if isinstance(value, str) else ""
    if not cleaned:
        raise ValidationError(field_name, f"{label or field_name.capitalize()} is required")
    return cleaned


def optional_text(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    return value.strip() or None


def require_choice(field_name: str, value: Any, choices: Iterable[str], label: Optional[str] = None) -> str:
    if not isinstance(value, str) or value not in choices:
        raise ValidationError(field_name, f"Invalid {label or field_name}")
    return value


def require_email(field_name: str, value: Any) -> str:
    cleaned = require_text(field_name, value, "Email")
    if "@" not in cleaned or " " in cleaned:
        raise ValidationError(field_name, "Email is invalid")
    return cleaned.lower()
