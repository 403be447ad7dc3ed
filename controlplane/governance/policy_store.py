"""
PermissionPolicyStore: Role and Action Policy Tables

Holds the role → action permission table, the privilege level each action
implies, and the action sets the decision gate consults (mutating,
high-autonomy, approval-required).
"""

from typing import Dict, Iterable, List, Optional, Set
import threading
import logging

from . import Role, role_level

logger = logging.getLogger(__name__)


# Minimum role level an action implies
DEFAULT_ACTION_PRIVILEGES: Dict[str, int] = {
    "read": 10,
    "export": 30,
    "create": 50,
    "update": 50,
    "publish": 50,
    "unpublish": 50,
    "seo_autopilot": 60,
    "deploy": 60,
    "rollback": 60,
    "delete": 70,
    "bulk_update": 70,
    "autonomous_execute": 70,
    "data_decision": 70,
    "grant_override": 70,
    "bulk_delete": 90,
    "cutover": 90,
    "configure": 90,
    "manage_users": 90,
    "set_security_mode": 90,
    "manage_roles": 100,
    "manage_policies": 100,
}

_EDITOR = {"read", "create", "update", "publish", "unpublish"}
_OPS = _EDITOR | {"deploy", "rollback", "seo_autopilot"}
_MANAGER = _OPS | {"export", "delete", "bulk_update", "autonomous_execute", "data_decision", "grant_override"}
_SYSTEM_ADMIN = _MANAGER | {"bulk_delete", "cutover", "configure", "manage_users", "set_security_mode"}

DEFAULT_ROLE_PERMISSIONS: Dict[Role, Set[str]] = {
    Role.SUPER_ADMIN: {"*"},
    Role.SYSTEM_ADMIN: _SYSTEM_ADMIN,
    Role.MANAGER: _MANAGER,
    Role.OPS: _OPS,
    Role.EDITOR: _EDITOR,
    Role.ANALYST: {"read", "export"},
    Role.VIEWER: {"read"},
}

READ_ONLY_ACTIONS = {"read", "export"}

HIGH_AUTONOMY_ACTIONS = {
    "autonomous_execute",
    "seo_autopilot",
    "data_decision",
    "bulk_update",
    "bulk_delete",
}

ALWAYS_REQUIRE_APPROVAL = {
    "delete",
    "bulk_delete",
    "deploy",
    "cutover",
    "manage_users",
    "manage_roles",
    "manage_policies",
}

SUPERVISED_REQUIRE_APPROVAL = {
    "autonomous_execute",
    "seo_autopilot",
    "data_decision",
    "bulk_update",
    "publish",
    "export",
}

_APPROVAL_TYPES = {
    "delete": "delete-content",
    "bulk_delete": "delete-content",
    "manage_users": "user-role-change",
    "manage_roles": "user-role-change",
    "deploy": "deployment",
    "cutover": "deployment",
    "export": "data-export",
}


def approval_type(action: str) -> str:
    return _APPROVAL_TYPES.get(action, "general")


class PermissionPolicyStore:
    """
    Stores role permissions and action policy sets.
    Lookups return None when the table cannot answer, and the gate treats
    None as deny.
    """

    def __init__(
        self,
        role_permissions: Optional[Dict[Role, Set[str]]] = None,
        action_privileges: Optional[Dict[str, int]] = None,
    ):
        self._lock = threading.Lock()
        self.role_permissions: Dict[Role, Set[str]] = {
            role: set(actions)
            for role, actions in (role_permissions or DEFAULT_ROLE_PERMISSIONS).items()
        }
        self.action_privileges: Dict[str, int] = dict(action_privileges or DEFAULT_ACTION_PRIVILEGES)
        self.high_autonomy_actions: Set[str] = set(HIGH_AUTONOMY_ACTIONS)
        self.always_require_approval: Set[str] = set(ALWAYS_REQUIRE_APPROVAL)
        self.supervised_require_approval: Set[str] = set(SUPERVISED_REQUIRE_APPROVAL)

    def is_permitted(self, roles: Iterable[str], action: str, resource: str = "*") -> Optional[bool]:
        """
        True/False when the table knows the answer; None when the action is
        unknown or none of the roles exist.
        """
        with self._lock:
            if action not in self.action_privileges:
                return None

            known_roles: List[Role] = []
            for name in roles:
                try:
                    known_roles.append(Role(name))
                except ValueError:
                    logger.debug(f"Ignoring unknown role {name!r}")
            if not known_roles:
                return None

            for role in known_roles:
                permitted = self.role_permissions.get(role, set())
                if "*" in permitted or action in permitted:
                    return True
            return False

    def privilege_of(self, action: str) -> Optional[int]:
        with self._lock:
            return self.action_privileges.get(action)

    def is_mutating(self, action: str) -> bool:
        return action not in READ_ONLY_ACTIONS

    def is_high_autonomy(self, action: str) -> bool:
        return action in self.high_autonomy_actions

    def required_approvals(self, action: str, supervised: bool) -> List[str]:
        """Approval types needed for ``action``; empty when none apply."""
        if action in self.always_require_approval:
            return [approval_type(action)]
        if supervised and action in self.supervised_require_approval:
            return [approval_type(action)]
        return []

    def register_action(self, action: str, privilege: int, roles: Iterable[Role] = ()) -> None:
        """Add an action to the table and grant it to ``roles``."""
        with self._lock:
            self.action_privileges[action] = privilege
            for role in roles:
                self.role_permissions.setdefault(role, set()).add(action)
        logger.info(f"Registered action {action} at privilege {privilege}")

    def grant(self, role: Role, action: str) -> None:
        with self._lock:
            self.role_permissions.setdefault(role, set()).add(action)

    def revoke(self, role: Role, action: str) -> None:
        with self._lock:
            self.role_permissions.get(role, set()).discard(action)

    def level_of(self, roles: Iterable[str]) -> int:
        return role_level(roles)
