"""
Canonical agency permission matrix for Agency Desk.

IMPORTANT: This is the single source of truth for agency roles, per-role
default capabilities and subscription tier limits. All permission checks
MUST reference these constants. UI permission gating is UX only.

Role Hierarchy (within one agency):
- OWNER: full access, billing and agency settings, may manage other owners
- MANAGER: team oversight, may add/remove staff and managers, never owners
- STAFF: own tasks, chat and basic features

A membership stores a denormalized copy of its role's defaults. Individual
flags may be overridden per membership; the four legacy aliases always
mirror their modern counterparts.
"""

import re
from enum import Enum
from typing import FrozenSet, Iterable, Mapping


class AgencyRole(str, Enum):
    """Role of a user within an agency."""
    OWNER = "owner"
    MANAGER = "manager"
    STAFF = "staff"


class MemberStatus(str, Enum):
    """Lifecycle status of an agency membership."""
    ACTIVE = "active"
    INVITED = "invited"
    REVOKED = "revoked"


class SystemRole(str, Enum):
    """System-level role stored on the user record."""
    OWNER = "owner"
    ADMIN = "admin"
    USER = "user"


SUPER_ADMIN = "super_admin"


class SubscriptionTier(str, Enum):
    """Agency subscription tier."""
    STARTER = "starter"
    PROFESSIONAL = "professional"
    ENTERPRISE = "enterprise"


class AgencyPermission(str, Enum):
    """
    Granular capability flags stored on each membership.

    Keys match the JSON keys persisted in agency_members.permissions.
    """
    # Tasks
    CREATE_TASKS = "can_create_tasks"
    EDIT_OWN_TASKS = "can_edit_own_tasks"
    EDIT_ALL_TASKS = "can_edit_all_tasks"
    DELETE_OWN_TASKS = "can_delete_own_tasks"
    DELETE_ALL_TASKS = "can_delete_all_tasks"
    ASSIGN_TASKS = "can_assign_tasks"
    VIEW_ALL_TASKS = "can_view_all_tasks"
    REORDER_TASKS = "can_reorder_tasks"

    # Team
    VIEW_TEAM_TASKS = "can_view_team_tasks"
    VIEW_TEAM_STATS = "can_view_team_stats"
    MANAGE_TEAM = "can_manage_team"

    # Chat
    USE_CHAT = "can_use_chat"
    DELETE_OWN_MESSAGES = "can_delete_own_messages"
    DELETE_ALL_MESSAGES = "can_delete_all_messages"
    PIN_MESSAGES = "can_pin_messages"

    # Features
    VIEW_STRATEGIC_GOALS = "can_view_strategic_goals"
    EDIT_STRATEGIC_GOALS = "can_edit_strategic_goals"
    VIEW_ARCHIVE = "can_view_archive"
    USE_AI_FEATURES = "can_use_ai_features"
    MANAGE_TEMPLATES = "can_manage_templates"
    VIEW_ACTIVITY_LOG = "can_view_activity_log"

    # Legacy aliases (deprecated, mirrored from the flags above)
    EDIT_ANY_TASK = "can_edit_any_task"
    DELETE_TASKS = "can_delete_tasks"
    DELETE_ANY_MESSAGE = "can_delete_any_message"
    MANAGE_STRATEGIC_GOALS = "can_manage_strategic_goals"


# alias -> source flag
LEGACY_ALIASES: dict[AgencyPermission, AgencyPermission] = {
    AgencyPermission.EDIT_ANY_TASK: AgencyPermission.EDIT_ALL_TASKS,
    AgencyPermission.DELETE_TASKS: AgencyPermission.DELETE_ALL_TASKS,
    AgencyPermission.DELETE_ANY_MESSAGE: AgencyPermission.DELETE_ALL_MESSAGES,
    AgencyPermission.MANAGE_STRATEGIC_GOALS: AgencyPermission.EDIT_STRATEGIC_GOALS,
}

ALL_PERMISSION_KEYS: FrozenSet[str] = frozenset(p.value for p in AgencyPermission)


def _grant(granted: Iterable[AgencyPermission]) -> dict[str, bool]:
    """Build a full permission dict with only the given flags set."""
    granted = set(granted)
    flags = {p.value: p in granted for p in AgencyPermission}
    return sync_legacy_aliases(flags)


_MANAGER_DENIED = frozenset({
    AgencyPermission.DELETE_ALL_TASKS,
    AgencyPermission.MANAGE_TEAM,
    AgencyPermission.DELETE_ALL_MESSAGES,
    AgencyPermission.EDIT_STRATEGIC_GOALS,
})

_STAFF_GRANTED = frozenset({
    AgencyPermission.CREATE_TASKS,
    AgencyPermission.EDIT_OWN_TASKS,
    AgencyPermission.DELETE_OWN_TASKS,
    AgencyPermission.USE_CHAT,
    AgencyPermission.DELETE_OWN_MESSAGES,
    AgencyPermission.USE_AI_FEATURES,
    AgencyPermission.VIEW_ACTIVITY_LOG,
})


def sync_legacy_aliases(permissions: dict[str, bool]) -> dict[str, bool]:
    """Set every legacy alias to the value of the flag it mirrors (in place)."""
    for alias, source in LEGACY_ALIASES.items():
        permissions[alias.value] = bool(permissions.get(source.value, False))
    return permissions


DEFAULT_PERMISSIONS: dict[AgencyRole, Mapping[str, bool]] = {
    AgencyRole.OWNER: _grant(AgencyPermission),
    AgencyRole.MANAGER: _grant(p for p in AgencyPermission if p not in _MANAGER_DENIED),
    AgencyRole.STAFF: _grant(_STAFF_GRANTED),
}

# Granting any of these to a manager or staff member is recorded as a security event
ELEVATED_PERMISSIONS: FrozenSet[AgencyPermission] = frozenset({
    AgencyPermission.DELETE_ALL_TASKS,
    AgencyPermission.DELETE_ALL_MESSAGES,
    AgencyPermission.MANAGE_TEAM,
    AgencyPermission.EDIT_STRATEGIC_GOALS,
    AgencyPermission.EDIT_ALL_TASKS,
    AgencyPermission.VIEW_ALL_TASKS,
})

# Roles that may manage team membership (route-level gate)
ADMIN_ROLES: tuple[AgencyRole, ...] = (AgencyRole.OWNER, AgencyRole.MANAGER)


# =============================================================================
# Subscription tiers
# =============================================================================

SUBSCRIPTION_LIMITS: dict[SubscriptionTier, dict[str, int]] = {
    SubscriptionTier.STARTER: {"users": 10, "storage_mb": 1024},
    SubscriptionTier.PROFESSIONAL: {"users": 50, "storage_mb": 5120},
    SubscriptionTier.ENTERPRISE: {"users": 999, "storage_mb": 51200},
}

DEFAULT_SUBSCRIPTION_TIER = SubscriptionTier.PROFESSIONAL


# =============================================================================
# Agency slugs
# =============================================================================

SLUG_MAX_LENGTH = 50
SLUG_PATTERN = re.compile(r"^[a-z0-9]$|^[a-z0-9][a-z0-9-]*[a-z0-9]$")


def generate_agency_slug(name: str) -> str:
    """
    Generate a URL-friendly slug from an agency name.

    "Smith Insurance" -> "smith-insurance"
    """
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    return slug[:SLUG_MAX_LENGTH].rstrip("-")


def is_valid_slug(slug: str) -> bool:
    return 1 <= len(slug) <= SLUG_MAX_LENGTH and bool(SLUG_PATTERN.match(slug))


# =============================================================================
# Lookups
# =============================================================================

def get_default_permissions(role: AgencyRole) -> dict[str, bool]:
    """Return a fresh, mutable copy of a role's default permission set."""
    return dict(DEFAULT_PERMISSIONS[AgencyRole(role)])


def has_permission(
    permissions: Mapping[str, bool] | None,
    permission: AgencyPermission,
) -> bool:
    """Check a single flag. Missing sets and missing keys are denials."""
    if not permissions:
        return False
    return permissions.get(permission.value) is True


def invalid_permission_keys(updates: Mapping[str, object]) -> list[str]:
    """Return keys in an override payload that are not known permission flags."""
    return sorted(key for key in updates if key not in ALL_PERMISSION_KEYS)


def merge_permissions(
    base: Mapping[str, bool],
    overrides: Mapping[str, bool] | None = None,
) -> dict[str, bool]:
    """Apply overrides on top of a base permission set and resync aliases."""
    merged = {key: bool(base.get(key, False)) for key in ALL_PERMISSION_KEYS}
    if overrides:
        merged.update({key: bool(value) for key, value in overrides.items()})
    return sync_legacy_aliases(merged)


def elevated_permissions_granted(
    role: AgencyRole,
    overrides: Mapping[str, bool],
) -> list[str]:
    """List elevated flags turned on by overrides beyond the role's defaults."""
    if role == AgencyRole.OWNER:
        return []
    defaults = DEFAULT_PERMISSIONS[role]
    return sorted(
        perm.value
        for perm in ELEVATED_PERMISSIONS
        if overrides.get(perm.value) is True and not defaults.get(perm.value)
    )


def is_agency_admin(role: AgencyRole | str | None) -> bool:
    return role in (AgencyRole.OWNER, AgencyRole.MANAGER)
