"""Group to permission mapping.

Directory groups and SAML group attributes are mapped into one permission
vocabulary by case-insensitive substring tiers. Every authenticated user
receives the base permissions.
"""

from dataclasses import dataclass
from typing import Iterable, Sequence

BASE_PERMISSIONS = ("read:posts", "create:posts")


@dataclass(frozen=True)
class PermissionTier:
    """Grants permissions when any group contains one of the markers"""
    name: str
    markers: tuple[str, ...]
    permissions: tuple[str, ...]

    def matches(self, groups: Iterable[str]) -> bool:
        lowered = [group.lower() for group in groups]
        return any(marker.lower() in group for group in lowered for marker in self.markers)


SAML_TIERS = (
    PermissionTier("admin", ("admin",), ("admin:*", "delete:*", "manage:*")),
    PermissionTier("moderator", ("moderator",), ("moderate:*", "delete:posts")),
)

LDAP_TIERS = (
    PermissionTier(
        "admin",
        ("Administrators", "Domain Admins", "Enterprise Admins", "admins"),
        ("admin:*", "delete:*", "manage:*", "users:*"),
    ),
    PermissionTier(
        "moderator",
        ("Moderators", "Content Managers", "Editors"),
        ("moderate:*", "delete:posts", "edit:*"),
    ),
    PermissionTier(
        "developer",
        ("Developers", "Engineers", "DevOps"),
        ("deploy:*", "config:*", "logs:*"),
    ),
)


def map_groups_to_permissions(
    groups: Iterable[str],
    tiers: Sequence[PermissionTier]
) -> list[str]:
    """Map group names to permissions (order preserved, no duplicates)"""
    groups = list(groups)
    permissions = list(BASE_PERMISSIONS)
    for tier in tiers:
        if tier.matches(groups):
            permissions.extend(p for p in tier.permissions if p not in permissions)
    return permissions


def group_common_name(group: str) -> str:
    """CN of a group DN ("CN=Domain Admins,OU=Groups,..." -> "Domain Admins")"""
    first = group.split(",", 1)[0]
    key, sep, value = first.partition("=")
    if sep and key.strip().lower() == "cn":
        return value.strip()
    return group
