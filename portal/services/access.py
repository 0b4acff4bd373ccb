"""
Access control layer.

A pure decision function over a closed set of roles and actions. The policy
is a table of Action -> {Role -> Rule}; a rule is either DENY or a tuple of
conditions that must all hold for the given AccessContext. Anything missing
from the table is denied.
"""
import enum
from dataclasses import dataclass
from typing import Dict, Optional, Tuple, Union

from ..errors import Forbidden
from ..logging import structlog


log = structlog.get_logger(__name__)


class Role(str, enum.Enum):
    ADMIN = "admin"
    EMPLOYEE = "employee"
    WORKER = "worker"
    CLIENT = "client"

    @property
    def is_internal(self) -> bool:
        return self in (Role.EMPLOYEE, Role.WORKER)

    @classmethod
    def parse(cls, value) -> Optional["Role"]:
        if isinstance(value, Role):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None


class Action(str, enum.Enum):
    PROJECT_LIST = "project.list"
    PROJECT_VIEW = "project.view"
    PROJECT_UPDATE = "project.update"
    PROJECT_CREATE = "project.create"
    PROJECT_DELETE = "project.delete"
    ASSIGNMENT_MANAGE = "assignment.manage"
    TASK_CREATE = "task.create"
    TASK_UPDATE = "task.update"
    TASK_DELETE = "task.delete"
    UPDATE_CREATE = "update.create"
    INVITATION_MANAGE = "invitation.manage"
    ESTIMATE_VIEW = "estimate.view"
    ESTIMATE_MANAGE = "estimate.manage"
    IMAGE_VIEW = "image.view"
    IMAGE_UPLOAD = "image.upload"
    IMAGE_UPDATE = "image.update"
    IMAGE_DELETE = "image.delete"
    CHANGE_REQUEST_VIEW = "change_request.view"
    CHANGE_REQUEST_CREATE = "change_request.create"
    CHANGE_REQUEST_REVIEW = "change_request.review"
    WORK_ORDER_LIST = "work_order.list"
    WORK_ORDER_CREATE = "work_order.create"
    WORK_ORDER_UPDATE = "work_order.update"
    WORK_ORDER_VIEW = "work_order.view"
    WORK_ORDER_DELETE = "work_order.delete"
    WORK_ORDER_STATS = "work_order.stats"
    WORK_ORDER_MATERIALS = "work_order.materials"
    WORK_ORDER_INVITATIONS = "work_order.invitations"
    WORK_ORDER_INVITATION_DELETE = "work_order.invitation_delete"
    SIGNATURE_VIEW = "signature.view"
    SIGNATURE_ADD = "signature.add"
    DOCUMENT_LIST = "document.list"
    DOCUMENT_CREATE = "document.create"
    DOCUMENT_UPDATE = "document.update"
    DOCUMENT_DELETE = "document.delete"
    DOCUMENT_SHARE = "document.share"
    DOCUMENT_REVOKE = "document.revoke"
    DOCUMENT_VIEW = "document.view"
    DOCUMENT_DOWNLOAD = "document.download"
    CLIENT_DIRECTORY = "client.directory"
    USER_MANAGE = "user.manage"
    AUDIT_VIEW = "audit.view"


class Condition(str, enum.Enum):
    ASSIGNED = "assigned"
    OWNER = "owner"
    SHARE_ACTIVE = "share_active"
    CAN_DOWNLOAD = "can_download"


@dataclass(frozen=True)
class AccessContext:
    """Facts about the caller's relation to the resource, computed from the store."""
    assigned: bool = False
    is_owner: bool = False
    share_active: bool = False
    can_download: bool = False

    def holds(self, condition: Condition) -> bool:
        if condition is Condition.ASSIGNED:
            return self.assigned
        if condition is Condition.OWNER:
            return self.is_owner
        if condition is Condition.SHARE_ACTIVE:
            return self.share_active
        if condition is Condition.CAN_DOWNLOAD:
            return self.can_download
        return False


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: str = ""

    def __bool__(self) -> bool:
        return self.allowed


Rule = Union[None, Tuple[Condition, ...]]

DENY: Rule = None
ALLOW: Rule = ()
ASSIGNED: Rule = (Condition.ASSIGNED,)


def _internal(rule: Rule) -> Dict[Role, Rule]:
    return {Role.EMPLOYEE: rule, Role.WORKER: rule}


def _row(admin: Rule, internal: Rule, client: Rule) -> Dict[Role, Rule]:
    row = {Role.ADMIN: admin, Role.CLIENT: client}
    row.update(_internal(internal))
    return row


POLICY: Dict[Action, Dict[Role, Rule]] = {
    # Row-level filtering for list actions happens in the queries
    Action.PROJECT_LIST: _row(ALLOW, ALLOW, ALLOW),
    Action.PROJECT_VIEW: _row(ALLOW, ASSIGNED, ASSIGNED),
    Action.PROJECT_UPDATE: _row(ALLOW, ASSIGNED, DENY),
    Action.PROJECT_CREATE: _row(ALLOW, DENY, DENY),
    Action.PROJECT_DELETE: _row(ALLOW, DENY, DENY),
    Action.ASSIGNMENT_MANAGE: _row(ALLOW, DENY, DENY),
    Action.TASK_CREATE: _row(ALLOW, ASSIGNED, DENY),
    Action.TASK_UPDATE: _row(ALLOW, ASSIGNED, DENY),
    Action.TASK_DELETE: _row(ALLOW, DENY, DENY),
    Action.UPDATE_CREATE: _row(ALLOW, ASSIGNED, DENY),
    Action.INVITATION_MANAGE: _row(ALLOW, ASSIGNED, DENY),
    Action.ESTIMATE_VIEW: _row(ALLOW, ASSIGNED, ASSIGNED),
    Action.ESTIMATE_MANAGE: _row(ALLOW, DENY, DENY),
    Action.IMAGE_VIEW: _row(ALLOW, ASSIGNED, ASSIGNED),
    Action.IMAGE_UPLOAD: _row(ALLOW, ASSIGNED, DENY),
    Action.IMAGE_UPDATE: _row(ALLOW, ASSIGNED, DENY),
    Action.IMAGE_DELETE: _row(ALLOW, DENY, DENY),
    Action.CHANGE_REQUEST_VIEW: _row(ALLOW, ASSIGNED, ASSIGNED),
    Action.CHANGE_REQUEST_CREATE: _row(DENY, DENY, (Condition.ASSIGNED, Condition.OWNER)),
    Action.CHANGE_REQUEST_REVIEW: _row(ALLOW, DENY, DENY),
    Action.WORK_ORDER_LIST: _row(ALLOW, ALLOW, DENY),
    Action.WORK_ORDER_CREATE: _row(ALLOW, ASSIGNED, DENY),
    Action.WORK_ORDER_UPDATE: _row(ALLOW, ASSIGNED, DENY),
    Action.WORK_ORDER_VIEW: _row(ALLOW, ASSIGNED, DENY),
    Action.WORK_ORDER_DELETE: _row(ALLOW, DENY, DENY),
    Action.WORK_ORDER_STATS: _row(ALLOW, DENY, DENY),
    Action.WORK_ORDER_MATERIALS: _row(ALLOW, ASSIGNED, DENY),
    Action.WORK_ORDER_INVITATIONS: _row(ALLOW, ASSIGNED, DENY),
    Action.WORK_ORDER_INVITATION_DELETE: _row(ALLOW, DENY, DENY),
    Action.SIGNATURE_VIEW: _row(ALLOW, ASSIGNED, DENY),
    Action.SIGNATURE_ADD: _row(ALLOW, ASSIGNED, DENY),
    Action.DOCUMENT_LIST: _row(ALLOW, ALLOW, ALLOW),
    Action.DOCUMENT_CREATE: _row(ALLOW, ALLOW, DENY),
    Action.DOCUMENT_UPDATE: _row(ALLOW, ALLOW, DENY),
    Action.DOCUMENT_DELETE: _row(ALLOW, DENY, DENY),
    Action.DOCUMENT_SHARE: _row(ALLOW, ALLOW, DENY),
    Action.DOCUMENT_REVOKE: _row(ALLOW, ALLOW, DENY),
    Action.DOCUMENT_VIEW: _row(ALLOW, ALLOW, (Condition.SHARE_ACTIVE,)),
    Action.DOCUMENT_DOWNLOAD: _row(ALLOW, ALLOW, (Condition.SHARE_ACTIVE, Condition.CAN_DOWNLOAD)),
    Action.CLIENT_DIRECTORY: _row(ALLOW, ALLOW, DENY),
    Action.USER_MANAGE: _row(ALLOW, DENY, DENY),
    Action.AUDIT_VIEW: _row(ALLOW, DENY, DENY),
}


def decide(role, action, context: Optional[AccessContext] = None) -> Decision:
    """
    Decide whether a role may perform an action.

    Args:
        role: Role (or its string value) of the caller
        action: Action (or its string value) being attempted
        context: Relation of the caller to the resource; defaults to no relation

    Returns:
        Decision; allowed only if the table has a non-DENY rule for the pair
        and every condition of that rule holds
    """
    parsed_role = Role.parse(role)
    if parsed_role is None:
        return Decision(False, "unknown_role")
    try:
        parsed_action = action if isinstance(action, Action) else Action(str(action))
    except ValueError:
        return Decision(False, "unknown_action")

    row = POLICY.get(parsed_action)
    if row is None or parsed_role not in row:
        return Decision(False, "no_rule")
    rule = row[parsed_role]
    if rule is DENY:
        return Decision(False, "denied_by_policy")

    ctx = context or AccessContext()
    unmet = [c.value for c in rule if not ctx.holds(c)]
    if unmet:
        return Decision(False, "unmet:" + ",".join(unmet))
    return Decision(True, "allowed")


def enforce(identity, action: Action, context: Optional[AccessContext] = None) -> Decision:
    """Raise Forbidden unless the identity may perform the action."""
    decision = decide(identity.role, action, context)
    if not decision.allowed:
        log.warning(
            "access_denied",
            user_id=str(identity.user_id),
            role=getattr(identity.role, "value", identity.role),
            action=getattr(action, "value", action),
            reason=decision.reason,
        )
        raise Forbidden()
    return decision
