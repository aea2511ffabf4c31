"""
Permission checks for time clock operations.
"""
from typing import Optional

from ..models.models import User


def _role_names(user: User) -> set:
    return {(getattr(r, "name", None) or "").lower() for r in user.roles}


def is_admin(user: User) -> bool:
    """Check if user has admin role."""
    return "admin" in _role_names(user)


def is_supervisor(user: User) -> bool:
    """Check if user has supervisor role."""
    return "supervisor" in _role_names(user)


def is_worker(user: User) -> bool:
    """Check if user has worker role."""
    return "worker" in _role_names(user)


def get_user_role(user: User) -> str:
    """Get user's primary role."""
    if is_admin(user):
        return "admin"
    if is_supervisor(user):
        return "supervisor"
    if is_worker(user):
        return "worker"
    return "user"


def can_supervise(user: User) -> bool:
    """Approve overrides, acknowledge alerts, expand geofences."""
    return is_admin(user) or is_supervisor(user)


def can_view_user_events(user: User, target_user_id: Optional[str]) -> bool:
    """Workers see their own ledger; supervisors and admins see everyone's in the business."""
    if can_supervise(user):
        return True
    return target_user_id is not None and str(target_user_id) == str(user.id)
