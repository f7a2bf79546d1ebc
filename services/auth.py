"""Caller resolution and the access guard every operation goes through."""
from __future__ import annotations

from functools import wraps
from typing import Optional

from flask import session

from models import Role, UserProfile
from .errors import InsufficientRole, Unapproved, Unauthenticated


def login_user(user_id: str) -> None:
    session['user_id'] = user_id


def logout_user() -> None:
    session.pop('user_id', None)


def resolve_caller() -> Optional[str]:
    """Identity bound to the current connection, or None."""
    return session.get('user_id') or None


def find_profile(caller_id: Optional[str]) -> Optional[UserProfile]:
    if not caller_id:
        return None
    return UserProfile.query.filter_by(user_id=caller_id).first()


class AccessGuard:
    """Resolves a caller to an approved profile holding the required role.

    ``required_role`` reads as a gate rather than an exact match:
    ``Role.MEMBER`` admits members and admins, ``Role.ADMIN`` admits admins
    only and ``Role.STUDENT`` admits students only.
    """

    def authorize(self, caller_id: Optional[str], required_role: Optional[Role] = None) -> UserProfile:
        if not caller_id:
            raise Unauthenticated('Not authenticated.')
        profile = find_profile(caller_id)
        if profile is None or not profile.is_approved:
            raise Unapproved('Your account is waiting for approval.')
        if required_role is Role.MEMBER and not profile.is_club_operator:
            raise InsufficientRole('Club member access required.')
        if required_role is Role.ADMIN and profile.role != Role.ADMIN.value:
            raise InsufficientRole('Admin access required.')
        if required_role is Role.STUDENT and profile.role != Role.STUDENT.value:
            raise InsufficientRole('Student access required.')
        return profile


def login_required(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        if not resolve_caller():
            raise Unauthenticated('Not authenticated.')
        return view(*args, **kwargs)

    return wrapped
