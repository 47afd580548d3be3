"""
Permission Gate Module

Role-based access checks per entity type, with per-entity specific grants
layered on top. Role tables and user role assignments are supplied at
construction and mutable at runtime through the admin calls.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple, Union

logger = logging.getLogger(__name__)


DEFAULT_ROLE = "user"
ADMIN_ROLE = "admin"


class PermissionAction(Enum):
    """Actions a role table can authorize"""
    VIEW = "view"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass
class EntityPermissions:
    """Roles allowed to perform each action on one entity type"""
    view_roles: Set[str] = field(default_factory=set)
    create_roles: Set[str] = field(default_factory=set)
    update_roles: Set[str] = field(default_factory=set)
    delete_roles: Set[str] = field(default_factory=set)

    def roles_for(self, action: PermissionAction) -> Set[str]:
        return getattr(self, f"{action.value}_roles")

    @classmethod
    def from_dict(cls, data: Dict[str, Iterable[str]]) -> 'EntityPermissions':
        return cls(**{
            f"{action.value}_roles": set(data.get(f"{action.value}_roles") or ())
            for action in PermissionAction
        })

    def to_dict(self) -> Dict[str, List[str]]:
        return {
            f"{action.value}_roles": sorted(self.roles_for(action))
            for action in PermissionAction
        }


GrantKey = Tuple[str, str, str, PermissionAction]


class PermissionGate:
    """
    Authorization checks for entity operations.

    Evaluation order: admin role passes everything; otherwise a role listed
    for the entity type and action passes; otherwise view/update/delete fall
    back to a specific grant for (user, entity type, entity id, action).
    Grants only add permissions: revoking a specific grant never overrides a
    role grant.
    """

    def __init__(
        self,
        entity_permissions: Optional[Dict[str, Union[EntityPermissions, Dict[str, Iterable[str]]]]] = None,
        user_roles: Optional[Dict[str, Iterable[str]]] = None,
        default_role: str = DEFAULT_ROLE,
    ):
        self.default_role = default_role
        self._entity_permissions: Dict[str, EntityPermissions] = {}
        for entity_type, permissions in (entity_permissions or {}).items():
            self.set_entity_permissions(entity_type, permissions)
        self._user_roles: Dict[str, Set[str]] = {
            user_id: set(roles) for user_id, roles in (user_roles or {}).items()
        }
        self._specific_grants: Set[GrantKey] = set()

    @classmethod
    def with_defaults(cls, user_roles: Optional[Dict[str, Iterable[str]]] = None,
                      default_role: Optional[str] = None) -> 'PermissionGate':
        """Gate with the standard account role table"""
        if default_role is None:
            from .config import get_config
            default_role = get_config().default_role
        return cls(
            entity_permissions={
                "account": EntityPermissions(
                    view_roles={"user", "sales", "manager"},
                    create_roles={"sales", "manager"},
                    update_roles={"sales", "manager"},
                    delete_roles={"manager"},
                ),
            },
            user_roles=user_roles,
            default_role=default_role,
        )

    # Checks

    def can_view(self, user_id: str, entity_type: str, entity_id: Optional[str] = None) -> bool:
        return self._check(user_id, entity_type, PermissionAction.VIEW, entity_id)

    def can_create(self, user_id: str, entity_type: str) -> bool:
        return self._check(user_id, entity_type, PermissionAction.CREATE)

    def can_update(self, user_id: str, entity_type: str, entity_id: Optional[str] = None) -> bool:
        return self._check(user_id, entity_type, PermissionAction.UPDATE, entity_id)

    def can_delete(self, user_id: str, entity_type: str, entity_id: Optional[str] = None) -> bool:
        return self._check(user_id, entity_type, PermissionAction.DELETE, entity_id)

    def check(self, user_id: str, entity_type: str, action: Union[PermissionAction, str],
              entity_id: Optional[str] = None) -> bool:
        """Check an action given by name or enum member"""
        return self._check(user_id, entity_type, PermissionAction(action), entity_id)

    def filter_by_permission(self, user_id: str, entity_type: str, entities: List[Any],
                             id_getter: Optional[Callable[[Any], str]] = None) -> List[Any]:
        """
        Keep the entities the user may view.

        A blanket role grant returns the list unchanged without consulting
        specific grants; otherwise each entity is checked individually.
        """
        if self._has_role_permission(user_id, entity_type, PermissionAction.VIEW):
            return list(entities)

        id_getter = id_getter or _entity_id
        return [
            entity for entity in entities
            if self._has_specific_permission(user_id, entity_type, id_getter(entity), PermissionAction.VIEW)
        ]

    def _check(self, user_id: str, entity_type: str, action: PermissionAction,
               entity_id: Optional[str] = None) -> bool:
        if self._has_role_permission(user_id, entity_type, action):
            return True
        if action is PermissionAction.CREATE or entity_id is None:
            return False
        return self._has_specific_permission(user_id, entity_type, entity_id, action)

    def _has_role_permission(self, user_id: str, entity_type: str, action: PermissionAction) -> bool:
        roles = self.get_user_roles(user_id)
        if ADMIN_ROLE in roles:
            return True

        permissions = self._entity_permissions.get(entity_type)
        if permissions is None:
            return False
        return bool(set(roles) & permissions.roles_for(action))

    def _has_specific_permission(self, user_id: str, entity_type: str, entity_id: str,
                                 action: PermissionAction) -> bool:
        if entity_type not in self._entity_permissions:
            return False
        return (user_id, entity_type, entity_id, action) in self._specific_grants

    # Administration

    def get_user_roles(self, user_id: str) -> List[str]:
        """Assigned roles, or the default role when none are assigned"""
        roles = self._user_roles.get(user_id)
        if not roles:
            return [self.default_role]
        return sorted(roles)

    def add_user_role(self, user_id: str, role: str) -> None:
        self._user_roles.setdefault(user_id, set()).add(role)
        logger.info(f"Added role {role} to user {user_id}")

    def remove_user_role(self, user_id: str, role: str) -> None:
        roles = self._user_roles.get(user_id)
        if roles and role in roles:
            roles.discard(role)
            logger.info(f"Removed role {role} from user {user_id}")

    def grant_specific_permission(self, user_id: str, entity_type: str, entity_id: str,
                                  action: Union[PermissionAction, str]) -> None:
        """
        Grant one action on one entity.

        Raises:
            ValueError: for create, which has no per-entity grant path
        """
        action = PermissionAction(action)
        if action is PermissionAction.CREATE:
            raise ValueError("Create permission cannot be granted per entity")
        self._specific_grants.add((user_id, entity_type, entity_id, action))
        logger.info(f"Granted {action.value} on {entity_type}:{entity_id} to user {user_id}")

    def revoke_specific_permission(self, user_id: str, entity_type: str, entity_id: str,
                                   action: Union[PermissionAction, str]) -> None:
        action = PermissionAction(action)
        self._specific_grants.discard((user_id, entity_type, entity_id, action))
        logger.info(f"Revoked {action.value} on {entity_type}:{entity_id} from user {user_id}")

    def set_entity_permissions(self, entity_type: str,
                               permissions: Union[EntityPermissions, Dict[str, Iterable[str]]]) -> None:
        """Replace the role table for one entity type"""
        if not isinstance(permissions, EntityPermissions):
            permissions = EntityPermissions.from_dict(permissions)
        self._entity_permissions[entity_type] = permissions

    def get_entity_permissions(self, entity_type: str) -> Optional[EntityPermissions]:
        return self._entity_permissions.get(entity_type)


def _entity_id(entity: Any) -> str:
    if isinstance(entity, dict):
        return entity.get('id')
    return getattr(entity, 'id', None)
