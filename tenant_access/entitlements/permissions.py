"""
Permission resolver: (role, feature, permission_type) -> bool.

Pure authorization matrix with no knowledge of tiers or subscription status.
Default deny: unknown roles or permission types never pass.
"""

import logging
from typing import Dict, FrozenSet, Mapping, Optional, Union

from tenant_access.constants.permissions import (
    DEFAULT_MIN_ROLE,
    FEATURE_MIN_ROLES,
    FEATURE_ROLE_SCOPES,
    ROLE_AUTHORITY,
    PermissionType,
    Role,
)

logger = logging.getLogger(__name__)


class PermissionResolver:
    """
    Static role matrix keyed by role authority.

    Higher roles inherit every permission of lower roles on the same feature,
    except for scoped features, which only the listed roles can reach.
    The tables are copied at construction so the resolver is immutable.
    """

    def __init__(
        self,
        default_min_role: Optional[Mapping[PermissionType, Role]] = None,
        feature_min_roles: Optional[Mapping[str, Mapping[PermissionType, Role]]] = None,
        feature_scopes: Optional[Mapping[str, FrozenSet[Role]]] = None,
    ):
        self._default_min_role: Dict[PermissionType, Role] = dict(
            default_min_role if default_min_role is not None else DEFAULT_MIN_ROLE
        )
        self._feature_min_roles: Dict[str, Dict[PermissionType, Role]] = {
            feature: dict(mins)
            for feature, mins in (
                feature_min_roles if feature_min_roles is not None else FEATURE_MIN_ROLES
            ).items()
        }
        self._feature_scopes: Dict[str, FrozenSet[Role]] = {
            feature: frozenset(roles)
            for feature, roles in (
                feature_scopes if feature_scopes is not None else FEATURE_ROLE_SCOPES
            ).items()
        }

    def check(
        self,
        role: Union[Role, str, None],
        feature: str,
        permission_type: Union[PermissionType, str, None],
    ) -> bool:
        parsed_role = Role.parse(role)
        parsed_type = PermissionType.parse(permission_type)

        if parsed_role is None or parsed_type is None:
            logger.warning(
                "Denying permission check with unknown role or permission type",
                extra={
                    "role": str(role),
                    "feature": feature,
                    "permission_type": str(permission_type),
                },
            )
            return False

        scope = self._feature_scopes.get(feature)
        if scope is not None:
            return parsed_role in scope

        min_role = self._feature_min_roles.get(feature, {}).get(parsed_type)
        if min_role is None:
            min_role = self._default_min_role.get(parsed_type)
        if min_role is None:
            return False

        return ROLE_AUTHORITY[parsed_role] >= ROLE_AUTHORITY[min_role]

    def min_role_for(self, feature: str, permission_type: Union[PermissionType, str]) -> Optional[Role]:
        """Lowest role that passes check(), or None if only a scoped set does."""
        parsed_type = PermissionType.parse(permission_type)
        if parsed_type is None or feature in self._feature_scopes:
            return None
        return self._feature_min_roles.get(feature, {}).get(
            parsed_type, self._default_min_role.get(parsed_type)
        )
