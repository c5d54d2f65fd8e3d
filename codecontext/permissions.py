"""
Memory Permissions & Access Control
===================================

Decides whether a team member may perform an action on a resource and
keeps the trail of every decision.

Resolution order for ``check_permission`` (first decisive result wins):

1. Explicit permission rules for the user on the resource (or on every
   resource of that type). A rule decides when it lists the action and all
   of its conditions hold.
2. The member's capability set. It is seeded from the role's default
   matrix when the member is added and may carry per-member overrides.
3. For memory resources, the memory's visibility: the creator always
   passes, ``private`` blocks everyone else, ``team_only`` and ``public``
   pass for any team member. The result is capability AND visibility.

Rules, access requests and the audit log live in a PermissionRepository.
The default repository is in-memory and keeps the most recent 10,000 audit
entries.

Usage:
    from codecontext.permissions import PermissionEngine, RulePermission

    engine = PermissionEngine(team_store)

    if await engine.check_permission(member_id, "delete", "memory", memory_id):
        ...

    request_id = await engine.create_access_request(
        requester_id, "memory", memory_id, [RulePermission("read")]
    )
    await engine.approve_access_request(request_id, admin_id)
"""

import logging
from abc import ABC, abstractmethod
from collections import Counter, deque
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Iterable, Optional

from codecontext.errors import InvalidTransition, NotFound, StorageFailure
from codecontext.project_memory import Clock, IdFactory, as_utc, _enum_value
from codecontext.team_memory import Action, TeamMemoryStore, Visibility

logger = logging.getLogger(__name__)

DEFAULT_AUDIT_CAP = 10000
TOP_ACTION_LIMIT = 10
UNKNOWN_USER_NAME = "Unknown"

PERMISSION_CHANGE_ACTIONS = frozenset({
    "create_permission_rule",
    "update_permission_rule",
    "delete_permission_rule",
    "bulk_update_permissions",
})


class ResourceType(Enum):
    MEMORY = "memory"
    TEAM = "team"
    PROJECT = "project"
    PERMISSION_RULE = "permission_rule"


class RequestStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"


class ConditionType(Enum):
    TIME_WINDOW = "time_window"             # value: {"start": ..., "end": ...}
    MEMORY_TYPE = "memory_type"             # value: memory type string
    APPROVAL_REQUIRED = "approval_required"  # value unused


def _resource_type(value: ResourceType | str) -> str:
    # Unknown resource types are allowed; they simply match no memory checks
    return value.value if isinstance(value, ResourceType) else str(value)


def _parse_time(value: datetime | str) -> datetime:
    """Raises ValueError for anything that is not a datetime or ISO string."""
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if not isinstance(value, datetime):
        raise ValueError(f"Not a timestamp: {value!r}")
    return as_utc(value)


_ACTIONS = frozenset(a.value for a in Action)


# =============================================================================
# Records
# =============================================================================

@dataclass
class RulePermission:
    """A single action and whether the rule grants or refuses it."""
    action: str
    granted: bool = True

    def __post_init__(self):
        self.action = _enum_value(self.action, Action)


@dataclass
class RuleCondition:
    type: str                               # ConditionType value
    value: Any = None

    def __post_init__(self):
        self.type = _enum_value(self.type, ConditionType)


@dataclass
class PermissionRule:
    id: str
    resource_type: str
    subject_id: str
    permissions: list[RulePermission]
    created_by: str
    created_at: datetime
    resource_id: Optional[str] = None       # None applies to every resource of the type
    subject_type: str = "user"
    expires_at: Optional[datetime] = None
    conditions: list[RuleCondition] = field(default_factory=list)
    is_active: bool = True

    def permission_for(self, action: str) -> Optional[RulePermission]:
        for permission in self.permissions:
            if permission.action == action:
                return permission
        return None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and as_utc(self.expires_at) < now


@dataclass
class AccessRequest:
    id: str
    requester_id: str
    resource_type: str
    resource_id: str
    requested_permissions: list[RulePermission]
    created_at: datetime
    status: str = RequestStatus.PENDING.value
    justification: str = ""
    expires_at: Optional[datetime] = None   # bounds the rule created on approval
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    denied_by: Optional[str] = None
    deny_reason: Optional[str] = None


@dataclass
class AuditLogEntry:
    id: str
    user_id: str
    user_name: str
    action: str
    resource_type: str
    resource_id: str
    resource_name: str
    timestamp: datetime
    success: bool
    error_message: Optional[str] = None
    metadata: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "user_name": self.user_name,
            "action": self.action,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "resource_name": self.resource_name,
            "timestamp": self.timestamp.isoformat(),
            "success": self.success,
            "error_message": self.error_message,
            "metadata": self.metadata,
        }


@dataclass
class PermissionUpdate:
    """One entry of a bulk permission update."""
    user_id: str
    resource_type: str
    permissions: list[RulePermission]
    resource_id: Optional[str] = None


@dataclass
class ComplianceReport:
    start: datetime
    end: datetime
    total_actions: int
    unique_users: int
    permission_changes: int
    access_requests: int
    security_events: int
    top_actions: list[tuple[str, int]]
    risk_events: list[AuditLogEntry]

    def to_dict(self) -> dict:
        return {
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "total_actions": self.total_actions,
            "unique_users": self.unique_users,
            "permission_changes": self.permission_changes,
            "access_requests": self.access_requests,
            "security_events": self.security_events,
            "top_actions": [{"action": a, "count": c} for a, c in self.top_actions],
            "risk_events": [e.to_dict() for e in self.risk_events],
        }


# =============================================================================
# Repository
# =============================================================================

class PermissionRepository(ABC):
    """Storage for permission rules, access requests and audit entries."""

    @abstractmethod
    def save_rule(self, rule: PermissionRule) -> None:
        """Insert or replace a rule."""

    @abstractmethod
    def get_rule(self, rule_id: str) -> Optional[PermissionRule]:
        ...

    @abstractmethod
    def list_rules(self) -> list[PermissionRule]:
        """All rules in creation order."""

    @abstractmethod
    def deactivate_rule(self, rule_id: str) -> bool:
        ...

    @abstractmethod
    def save_request(self, request: AccessRequest) -> None:
        """Insert or replace an access request."""

    @abstractmethod
    def get_request(self, request_id: str) -> Optional[AccessRequest]:
        ...

    @abstractmethod
    def list_requests(self) -> list[AccessRequest]:
        """All access requests in creation order."""

    @abstractmethod
    def append_audit(self, entry: AuditLogEntry) -> None:
        ...

    @abstractmethod
    def list_audit(self) -> list[AuditLogEntry]:
        """Retained audit entries, oldest first."""


class InMemoryPermissionRepository(PermissionRepository):
    """
    Process-local repository.

    The audit log keeps only the most recent ``audit_cap`` entries; older
    entries are dropped silently.
    """

    def __init__(self, audit_cap: int = DEFAULT_AUDIT_CAP):
        self._rules: dict[str, PermissionRule] = {}
        self._requests: dict[str, AccessRequest] = {}
        self._audit: deque[AuditLogEntry] = deque(maxlen=audit_cap)

    def save_rule(self, rule: PermissionRule) -> None:
        self._rules[rule.id] = rule

    def get_rule(self, rule_id: str) -> Optional[PermissionRule]:
        return self._rules.get(rule_id)

    def list_rules(self) -> list[PermissionRule]:
        return list(self._rules.values())

    def deactivate_rule(self, rule_id: str) -> bool:
        rule = self._rules.get(rule_id)
        if rule is None:
            return False
        rule.is_active = False
        return True

    def save_request(self, request: AccessRequest) -> None:
        self._requests[request.id] = request

    def get_request(self, request_id: str) -> Optional[AccessRequest]:
        return self._requests.get(request_id)

    def list_requests(self) -> list[AccessRequest]:
        return list(self._requests.values())

    def append_audit(self, entry: AuditLogEntry) -> None:
        self._audit.append(entry)

    def list_audit(self) -> list[AuditLogEntry]:
        return list(self._audit)


# =============================================================================
# Engine
# =============================================================================

class PermissionEngine:
    """
    Advisory access control for a team's memories.

    Every permission check and every mutating action is written to the audit
    log, including failures.
    """

    def __init__(
        self,
        store: TeamMemoryStore,
        repository: Optional[PermissionRepository] = None,
        clock: Optional[Clock] = None,
        id_factory: Optional[IdFactory] = None,
    ):
        """
        Args:
            store: Team store used to resolve members and memories
            repository: Rule/request/audit storage (in-memory by default)
            clock: Current-time source; defaults to the store's clock
            id_factory: Id generator; defaults to the store's
        """
        self.store = store
        self.repository = repository or InMemoryPermissionRepository(store.config.audit_cap)
        self.clock = clock or store.clock
        self.new_id = id_factory or store.new_id

    def _now(self) -> datetime:
        return as_utc(self.clock())

    # =========================================================================
    # Permission checks
    # =========================================================================

    async def check_permission(
        self,
        user_id: str,
        action: Action | str,
        resource_type: ResourceType | str,
        resource_id: Optional[str] = None,
    ) -> bool:
        """
        Decide whether ``user_id`` may perform ``action`` on a resource.

        Unknown users and unknown actions are refused. Storage failures are
        audited and then propagate to the caller.
        """
        action = action.value if isinstance(action, Action) else str(action)
        resource_type = _resource_type(resource_type)
        metadata = {"requested_action": action}

        if action not in _ACTIONS:
            await self._audit(user_id, "permission_check", resource_type, resource_id,
                              False, f"Unknown action: {action}", metadata)
            logger.warning("Denied %s unknown action %s on %s:%s", user_id, action, resource_type, resource_id)
            return False

        try:
            user = await self.store.get_team_member(user_id)
            if user is None:
                await self._audit(user_id, "permission_check", resource_type, resource_id,
                                  False, "User not found", metadata)
                return False

            explicit = await self._check_explicit_permissions(user_id, action, resource_type, resource_id)
            if explicit is not None:
                result = explicit
            else:
                # Seeded from the role matrix when the member is added
                result = action in user.permissions
                if resource_type == ResourceType.MEMORY.value and resource_id:
                    result = result and await self._check_memory_visibility(user_id, resource_id)
        except StorageFailure as e:
            await self._audit(user_id, "permission_check", resource_type, resource_id,
                              False, str(e), metadata)
            raise

        await self._audit(user_id, "permission_check", resource_type, resource_id,
                          result, None, metadata)
        if not result:
            logger.warning("Denied %s %s on %s:%s", user_id, action, resource_type, resource_id)
        return result

    async def _check_explicit_permissions(
        self,
        user_id: str,
        action: str,
        resource_type: str,
        resource_id: Optional[str],
    ) -> Optional[bool]:
        """The granted flag of the first applicable rule, or None if no rule decides."""
        now = self._now()
        for rule in self.repository.list_rules():
            if not rule.is_active or rule.is_expired(now):
                continue
            if rule.resource_type != resource_type:
                continue
            if rule.subject_type != "user" or rule.subject_id != user_id:
                continue
            if rule.resource_id is not None and rule.resource_id != resource_id:
                continue

            permission = rule.permission_for(action)
            if permission is None:
                continue
            if rule.conditions and not await self._evaluate_conditions(
                rule.conditions, user_id, resource_type, resource_id
            ):
                continue
            return permission.granted
        return None

    async def _check_memory_visibility(self, user_id: str, memory_id: str) -> bool:
        try:
            memory = await self.store.get_team_memory(memory_id)
        except NotFound:
            return False

        if memory.created_by == user_id:
            return True
        if memory.visibility == Visibility.PRIVATE.value:
            return False
        return memory.visibility in (Visibility.TEAM_ONLY.value, Visibility.PUBLIC.value)

    async def _evaluate_conditions(
        self,
        conditions: Iterable[RuleCondition],
        user_id: str,
        resource_type: str,
        resource_id: Optional[str],
    ) -> bool:
        for condition in conditions:
            ctype = condition.type

            if ctype == ConditionType.TIME_WINDOW.value:
                window = condition.value or {}
                if not isinstance(window, dict):
                    logger.warning("Ignoring rule with malformed time window: %r", window)
                    return False
                start, end = window.get("start"), window.get("end")
                now = self._now()
                try:
                    if start is not None and now < _parse_time(start):
                        return False
                    if end is not None and now > _parse_time(end):
                        return False
                except ValueError as e:
                    logger.warning("Ignoring rule with malformed time window: %s", e)
                    return False

            elif ctype == ConditionType.MEMORY_TYPE.value:
                if resource_type != ResourceType.MEMORY.value or not resource_id:
                    return False
                try:
                    memory = await self.store.get_team_memory(resource_id)
                except NotFound:
                    return False
                if memory.type != condition.value:
                    return False

            elif ctype == ConditionType.APPROVAL_REQUIRED.value:
                if not self._has_approval(user_id, resource_type, resource_id):
                    return False

        return True

    def _has_approval(self, user_id: str, resource_type: str, resource_id: Optional[str]) -> bool:
        return any(
            r.requester_id == user_id
            and r.resource_type == resource_type
            and r.resource_id == resource_id
            and r.status == RequestStatus.APPROVED.value
            for r in self.repository.list_requests()
        )

    # =========================================================================
    # Permission rules
    # =========================================================================

    async def create_permission_rule(
        self,
        resource_type: ResourceType | str,
        subject_id: str,
        permissions: list[RulePermission],
        created_by: str,
        resource_id: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        conditions: Optional[list[RuleCondition]] = None,
        is_active: bool = True,
    ) -> str:
        """Create an explicit rule for a user. Returns the rule id."""
        rule = PermissionRule(
            id=self.new_id(),
            resource_type=_resource_type(resource_type),
            resource_id=resource_id,
            subject_id=subject_id,
            permissions=list(permissions),
            created_by=created_by,
            created_at=self._now(),
            expires_at=as_utc(expires_at),
            conditions=list(conditions or []),
            is_active=is_active,
        )
        self.repository.save_rule(rule)
        await self._audit(created_by, "create_permission_rule", ResourceType.PERMISSION_RULE.value,
                          rule.id, True)
        logger.info("Created permission rule %s for %s on %s:%s",
                    rule.id, subject_id, rule.resource_type, resource_id or "*")
        return rule.id

    async def update_permission_rule(self, rule_id: str, updated_by: str, **updates) -> bool:
        """
        Replace fields of an existing rule.

        Returns False if the rule does not exist. Unknown fields raise ValueError.
        """
        rule = self.repository.get_rule(rule_id)
        if rule is None:
            await self._audit(updated_by, "update_permission_rule", ResourceType.PERMISSION_RULE.value,
                              rule_id, False, str(NotFound("permission rule", rule_id)))
            return False

        editable = {"permissions", "resource_id", "expires_at", "conditions", "is_active"}
        unknown = set(updates) - editable
        if unknown:
            raise ValueError(f"Cannot update rule fields: {', '.join(sorted(unknown))}")
        if "expires_at" in updates:
            updates["expires_at"] = as_utc(updates["expires_at"])

        self.repository.save_rule(replace(rule, **updates))
        await self._audit(updated_by, "update_permission_rule", ResourceType.PERMISSION_RULE.value,
                          rule_id, True, None, {"fields": sorted(updates)})
        logger.info("Updated permission rule %s", rule_id)
        return True

    async def delete_permission_rule(self, rule_id: str, deleted_by: str) -> bool:
        """Deactivate a rule. The rule stays in the repository for auditing."""
        if not self.repository.deactivate_rule(rule_id):
            await self._audit(deleted_by, "delete_permission_rule", ResourceType.PERMISSION_RULE.value,
                              rule_id, False, str(NotFound("permission rule", rule_id)))
            return False

        await self._audit(deleted_by, "delete_permission_rule", ResourceType.PERMISSION_RULE.value,
                          rule_id, True)
        logger.info("Deactivated permission rule %s", rule_id)
        return True

    async def get_permission_rules(
        self,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        subject_id: Optional[str] = None,
        is_active: Optional[bool] = None,
    ) -> list[PermissionRule]:
        rules = self.repository.list_rules()
        if resource_type is not None:
            rules = [r for r in rules if r.resource_type == _resource_type(resource_type)]
        if resource_id is not None:
            rules = [r for r in rules if r.resource_id == resource_id]
        if subject_id is not None:
            rules = [r for r in rules if r.subject_id == subject_id]
        if is_active is not None:
            rules = [r for r in rules if r.is_active == is_active]
        return rules

    async def bulk_update_permissions(self, updates: list[PermissionUpdate], updated_by: str) -> bool:
        """Create one rule per update, then audit the batch as a whole."""
        for item in updates:
            await self.create_permission_rule(
                resource_type=item.resource_type,
                resource_id=item.resource_id,
                subject_id=item.user_id,
                permissions=item.permissions,
                created_by=updated_by,
            )
        await self._audit(updated_by, "bulk_update_permissions", ResourceType.PERMISSION_RULE.value,
                          "bulk", True, None, {"count": len(updates)})
        return True

    # =========================================================================
    # Access requests
    # =========================================================================

    async def create_access_request(
        self,
        requester_id: str,
        resource_type: ResourceType | str,
        resource_id: str,
        requested_permissions: list[RulePermission],
        justification: str = "",
        expires_at: Optional[datetime] = None,
    ) -> str:
        """Open a pending access request. Returns the request id."""
        request = AccessRequest(
            id=self.new_id(),
            requester_id=requester_id,
            resource_type=_resource_type(resource_type),
            resource_id=resource_id,
            requested_permissions=list(requested_permissions),
            created_at=self._now(),
            justification=justification,
            expires_at=as_utc(expires_at),
        )
        self.repository.save_request(request)
        await self._audit(requester_id, "create_access_request", request.resource_type, resource_id, True)
        logger.info("Access request %s opened by %s", request.id, requester_id)
        return request.id

    def _pending_request(self, request_id: str, target: RequestStatus) -> AccessRequest:
        request = self.repository.get_request(request_id)
        if request is None:
            raise NotFound("access request", request_id)
        if request.status != RequestStatus.PENDING.value:
            raise InvalidTransition(request_id, request.status, target.value)
        return request

    async def approve_access_request(self, request_id: str, approver_id: str, strict: bool = False) -> bool:
        """
        Approve a pending request and grant the requested permissions.

        The granted rule expires with the request's ``expires_at``. Returns
        False for unknown or non-pending requests unless ``strict`` is set,
        in which case NotFound or InvalidTransition is raised.
        """
        try:
            request = self._pending_request(request_id, RequestStatus.APPROVED)
        except (NotFound, InvalidTransition) as e:
            await self._audit(approver_id, "approve_access_request", "access_request", request_id,
                              False, str(e))
            if strict:
                raise
            return False

        request.status = RequestStatus.APPROVED.value
        request.approved_by = approver_id
        request.approved_at = self._now()
        self.repository.save_request(request)
        await self._audit(approver_id, "approve_access_request", request.resource_type,
                          request.resource_id, True, None, {"request_id": request_id})

        await self.create_permission_rule(
            resource_type=request.resource_type,
            resource_id=request.resource_id,
            subject_id=request.requester_id,
            permissions=request.requested_permissions,
            created_by=approver_id,
            expires_at=request.expires_at,
        )
        logger.info("Access request %s approved by %s", request_id, approver_id)
        return True

    async def deny_access_request(
        self,
        request_id: str,
        denier_id: str,
        reason: str = "",
        strict: bool = False,
    ) -> bool:
        """Deny a pending request. Same failure handling as approve_access_request."""
        try:
            request = self._pending_request(request_id, RequestStatus.DENIED)
        except (NotFound, InvalidTransition) as e:
            await self._audit(denier_id, "deny_access_request", "access_request", request_id,
                              False, str(e))
            if strict:
                raise
            return False

        request.status = RequestStatus.DENIED.value
        request.denied_by = denier_id
        request.deny_reason = reason
        self.repository.save_request(request)
        await self._audit(denier_id, "deny_access_request", request.resource_type,
                          request.resource_id, True, None, {"request_id": request_id, "reason": reason})
        logger.info("Access request %s denied by %s", request_id, denier_id)
        return True

    async def get_access_requests(
        self,
        requester_id: Optional[str] = None,
        status: Optional[RequestStatus | str] = None,
        resource_type: Optional[str] = None,
    ) -> list[AccessRequest]:
        """Access requests, newest first."""
        requests = self.repository.list_requests()
        if requester_id is not None:
            requests = [r for r in requests if r.requester_id == requester_id]
        if status is not None:
            status = _enum_value(status, RequestStatus)
            requests = [r for r in requests if r.status == status]
        if resource_type is not None:
            requests = [r for r in requests if r.resource_type == _resource_type(resource_type)]
        # Stable sort on reversed creation order keeps same-instant requests newest first
        return sorted(reversed(requests), key=lambda r: r.created_at, reverse=True)

    # =========================================================================
    # Sharing
    # =========================================================================

    async def share_memory(
        self,
        memory_id: str,
        shared_by: str,
        shared_with: list[str],
        permissions: list[RulePermission],
        message: Optional[str] = None,
    ) -> bool:
        """
        Grant ``permissions`` on a memory to each recipient.

        Requires ``share`` on the memory; a refusal returns False and is
        audited.
        """
        if not await self.check_permission(shared_by, Action.SHARE, ResourceType.MEMORY, memory_id):
            await self._audit(shared_by, "share_memory", ResourceType.MEMORY.value, memory_id,
                              False, "Permission denied", {"shared_with": list(shared_with)})
            return False

        for user_id in shared_with:
            await self.create_permission_rule(
                resource_type=ResourceType.MEMORY,
                resource_id=memory_id,
                subject_id=user_id,
                permissions=permissions,
                created_by=shared_by,
            )
        await self._audit(shared_by, "share_memory", ResourceType.MEMORY.value, memory_id, True, None,
                          {"shared_with": list(shared_with), "message": message})
        logger.info("Memory %s shared by %s with %d members", memory_id, shared_by, len(shared_with))
        return True

    async def revoke_memory_access(self, memory_id: str, revoked_by: str, revoked_from: str) -> bool:
        """
        Deactivate every active rule ``revoked_from`` holds on a memory.

        Requires ``admin`` on the memory.
        """
        if not await self.check_permission(revoked_by, Action.ADMIN, ResourceType.MEMORY, memory_id):
            await self._audit(revoked_by, "revoke_memory_access", ResourceType.MEMORY.value, memory_id,
                              False, "Permission denied", {"revoked_from": revoked_from})
            return False

        rules = await self.get_permission_rules(
            resource_type=ResourceType.MEMORY.value,
            resource_id=memory_id,
            subject_id=revoked_from,
            is_active=True,
        )
        for rule in rules:
            await self.delete_permission_rule(rule.id, revoked_by)
        await self._audit(revoked_by, "revoke_memory_access", ResourceType.MEMORY.value, memory_id, True,
                          None, {"revoked_from": revoked_from, "rules": len(rules)})
        logger.info("Revoked %d rules on memory %s from %s", len(rules), memory_id, revoked_from)
        return True

    # =========================================================================
    # Audit
    # =========================================================================

    async def _audit(
        self,
        user_id: str,
        action: str,
        resource_type: str,
        resource_id: Optional[str],
        success: bool,
        error_message: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> None:
        try:
            member = await self.store.get_team_member(user_id)
        except StorageFailure as e:
            # The entry is still written; only the display name is lost
            logger.warning("Audit could not resolve user %s: %s", user_id, e)
            member = None

        self.repository.append_audit(AuditLogEntry(
            id=self.new_id(),
            user_id=user_id,
            user_name=member.name if member else UNKNOWN_USER_NAME,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id or "",
            resource_name=resource_id or "",
            timestamp=self._now(),
            success=success,
            error_message=error_message,
            metadata=metadata or {},
        ))

    async def get_audit_logs(
        self,
        user_id: Optional[str] = None,
        action: Optional[str] = None,
        resource_type: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[AuditLogEntry]:
        """Retained audit entries matching the filters, newest first."""
        logs = self.repository.list_audit()
        if user_id is not None:
            logs = [e for e in logs if e.user_id == user_id]
        if action is not None:
            logs = [e for e in logs if e.action == action]
        if resource_type is not None:
            logs = [e for e in logs if e.resource_type == _resource_type(resource_type)]
        if start is not None:
            logs = [e for e in logs if e.timestamp >= as_utc(start)]
        if end is not None:
            logs = [e for e in logs if e.timestamp <= as_utc(end)]

        logs = sorted(reversed(logs), key=lambda e: e.timestamp, reverse=True)
        return logs[:limit] if limit else logs

    async def generate_compliance_report(self, start: datetime, end: datetime) -> ComplianceReport:
        """
        Summarize the audit log between ``start`` and ``end`` (inclusive).

        Risk events are failed actions and any delete or admin action.
        """
        logs = await self.get_audit_logs(start=start, end=end)
        action_counts = Counter(e.action for e in logs)

        return ComplianceReport(
            start=as_utc(start),
            end=as_utc(end),
            total_actions=len(logs),
            unique_users=len({e.user_id for e in logs}),
            permission_changes=sum(1 for e in logs if e.action in PERMISSION_CHANGE_ACTIONS),
            access_requests=sum(1 for e in logs if "access_request" in e.action),
            security_events=sum(1 for e in logs if not e.success),
            top_actions=action_counts.most_common(TOP_ACTION_LIMIT),
            risk_events=[
                e for e in logs
                if not e.success or "delete" in e.action or "admin" in e.action
            ],
        )
