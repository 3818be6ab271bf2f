"""Role derivation and the feature-gate predicate library.

The role is a projection of (identity, live subscription status) and is
recomputed at every load and refresh boundary. Predicates only read the
derived ``role`` off the user object; none of them consult storage.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable

from prompt_share.core.state import Prompt, Role, SubscriptionStatus, User

UNLIMITED = "unlimited"

INVITE_LIMITS: dict[Role, int] = {
    Role.ADMIN: 999,
    Role.PRO: 10,
    Role.GENERAL: 5,
}


@dataclass(frozen=True)
class RoleLimits:
    """Per-role allowances shown in the UI and used by the limit helpers."""

    saves: int | str
    forks_per_month: int | str
    invites_per_month: int
    export_collections: bool
    api_access: bool


ROLE_LIMITS: dict[Role, RoleLimits] = {
    Role.GENERAL: RoleLimits(
        saves=10, forks_per_month=3, invites_per_month=5, export_collections=False, api_access=False
    ),
    Role.PRO: RoleLimits(
        saves=UNLIMITED,
        forks_per_month=UNLIMITED,
        invites_per_month=10,
        export_collections=True,
        api_access=True,
    ),
    Role.ADMIN: RoleLimits(
        saves=UNLIMITED,
        forks_per_month=UNLIMITED,
        invites_per_month=999,
        export_collections=True,
        api_access=True,
    ),
}

NO_ACCESS = RoleLimits(
    saves=0, forks_per_month=0, invites_per_month=0, export_collections=False, api_access=False
)


@dataclass(frozen=True)
class Decision:
    allowed: bool
    message: str | None = None


def derive_role(
    email: str | None,
    subscription_status: SubscriptionStatus | str | None,
    allow_list: Iterable[str],
) -> Role:
    """Compute the effective role: allow-list > active subscription > general.

    Deterministic and independent of any previously stored role.
    """
    allowed = {e.strip().lower() for e in allow_list}
    if email and email.strip().lower() in allowed:
        return Role.ADMIN
    if isinstance(subscription_status, SubscriptionStatus):
        status = subscription_status
    else:
        status = normalise_status(subscription_status)
    if status == SubscriptionStatus.ACTIVE:
        return Role.PRO
    return Role.GENERAL


def normalise_status(raw: str | None) -> SubscriptionStatus | None:
    """Map a backend status string onto the client enum; unknown values become None."""
    if not raw:
        return None
    value = raw.strip().lower()
    if value == "canceled":
        value = "cancelled"
    try:
        return SubscriptionStatus(value)
    except ValueError:
        return None


# --- Predicates ---


def is_admin(user: User | None) -> bool:
    return user is not None and user.role == Role.ADMIN


def has_pro_features(user: User | None) -> bool:
    """Admins and pro subscribers."""
    return user is not None and user.role in (Role.ADMIN, Role.PRO)


def should_hide_payment_features(user: User | None) -> bool:
    """Admins never see payment options."""
    return is_admin(user)


def has_affiliate_access(user: User | None) -> bool:
    if user is None:
        return False
    return is_admin(user) or user.is_affiliate


def get_invite_limit(user: User | None) -> int:
    if user is None:
        return 0
    return INVITE_LIMITS[user.role]


# --- Role limits ---


def get_user_limits(user: User | None) -> RoleLimits:
    if user is None:
        return NO_ACCESS
    return ROLE_LIMITS[user.role]


def has_feature_access(user: User | None, feature: str) -> bool:
    """True if the user's role grants any access to ``feature``."""
    if user is None:
        return False
    value = getattr(get_user_limits(user), feature)
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value > 0
    return value == UNLIMITED


def can_save_more(user: User | None, current_save_count: int) -> Decision:
    limit = get_user_limits(user).saves
    if limit == UNLIMITED:
        return Decision(True)
    if current_save_count >= limit:
        return Decision(
            False, f"Free users are limited to {limit} saves. Upgrade to Pro for unlimited saves!"
        )
    return Decision(True)


def can_fork_more(user: User | None, forks_this_month: int) -> Decision:
    limit = get_user_limits(user).forks_per_month
    if limit == UNLIMITED:
        return Decision(True)
    if forks_this_month >= limit:
        return Decision(
            False,
            f"Free users are limited to {limit} forks per month. "
            "Upgrade to Pro for unlimited forking!",
        )
    return Decision(True)


def can_export(user: User | None) -> Decision:
    if user is None:
        return Decision(False, "Please sign in to export prompts")
    if has_feature_access(user, "export_collections"):
        return Decision(True)
    return Decision(False, "Export feature is only available for Pro users. Upgrade to unlock!")


def can_access_affiliate(user: User | None) -> Decision:
    if user is None:
        return Decision(False, "Please sign in to access affiliate program")
    if has_affiliate_access(user):
        return Decision(True)
    return Decision(False, "You need to be an approved affiliate to access this dashboard")


def forks_this_month(prompts: Iterable[Prompt], user_id: str, now: datetime) -> int:
    """Count the user's forks created in the calendar month of ``now``."""
    count = 0
    for prompt in prompts:
        if prompt.user_id != user_id or not prompt.parent_id or not prompt.created_at:
            continue
        try:
            created = datetime.fromisoformat(prompt.created_at.replace("Z", "+00:00"))
        except ValueError:
            continue
        if (created.year, created.month) == (now.year, now.month):
            count += 1
    return count


def save_limit_text(user: User | None, current_save_count: int) -> str:
    limit = get_user_limits(user).saves
    if limit == UNLIMITED:
        return "Unlimited saves"
    return f"{current_save_count}/{limit} saves used"


def fork_limit_text(user: User | None, forks: int) -> str:
    limit = get_user_limits(user).forks_per_month
    if limit == UNLIMITED:
        return "Unlimited forks"
    return f"{forks}/{limit} forks this month"
