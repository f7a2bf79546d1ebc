"""User profiles: first-login registration and admin approval."""
from __future__ import annotations

from typing import List, Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError

from models import ActionType, Role, UserProfile, db
from .audit import AuditLog
from .auth import find_profile
from .base import ServiceBase
from .errors import DuplicateProfile, InvalidInput, NotFound, Unauthenticated
from .validation import optional_text, require_bool, require_text

SELF_SERVICE_ROLES = (Role.STUDENT.value, Role.MEMBER.value)


class ProfileService(ServiceBase):
    def __init__(self, *, audit: Optional[AuditLog] = None, **kwargs):
        super().__init__(**kwargs)
        self.audit = audit or AuditLog(clock=self.clock, guard=self.guard)

    def current_profile(self, caller_id: Optional[str]) -> Optional[UserProfile]:
        if not caller_id:
            raise Unauthenticated('Not authenticated.')
        return find_profile(caller_id)

    def create_profile(
        self,
        caller_id: Optional[str],
        *,
        role,
        name,
        email='',
        student_id=None,
        phone=None,
        department=None,
        year=None,
    ) -> UserProfile:
        """Register the caller. The very first profile becomes an approved admin."""
        if not caller_id:
            raise Unauthenticated('Not authenticated.')
        if role not in SELF_SERVICE_ROLES:
            raise InvalidInput('role must be student or member.')
        role = Role(role).value
        name = require_text(name, 'name', 120)
        email = optional_text(email, 'email') or ''
        with self._transaction('Create profile'):
            if find_profile(caller_id) is not None:
                raise DuplicateProfile('A profile already exists for this account.')
            details = dict(
                user_id=caller_id,
                name=name,
                email=email,
                student_id=optional_text(student_id, 'student_id', 64),
                phone=optional_text(phone, 'phone', 30),
                department=optional_text(department, 'department', 120),
                year=optional_text(year, 'year', 16),
            )
            profile = self._claim_founder(details) if self._is_first_profile() else None
            if profile is None:
                profile = UserProfile(role=role, is_approved=False, **details)
                db.session.add(profile)
                db.session.flush()
                self.audit.record(
                    profile.id,
                    ActionType.USER_REGISTERED,
                    f'{role} registration submitted for {name}',
                    target_id=profile.id,
                )
            else:
                self.audit.record(
                    profile.id,
                    ActionType.USER_APPROVED,
                    f'Admin account created for {name}',
                    target_id=profile.id,
                )
        current_app.logger.info('Profile %s created with role %s', profile.id, profile.role)
        return profile

    @staticmethod
    def _is_first_profile() -> bool:
        return UserProfile.query.first() is None

    @staticmethod
    def _claim_founder(details: dict) -> Optional[UserProfile]:
        """Insert the founding admin, or return None if another login claimed it first."""
        profile = UserProfile(role=Role.ADMIN.value, is_approved=True, is_founder=True, **details)
        try:
            with db.session.begin_nested():
                db.session.add(profile)
        except IntegrityError:
            current_app.logger.info('Founder slot already taken; registering %s normally', details['user_id'])
            return None
        return profile

    def list_pending(self, caller_id: Optional[str]) -> List[UserProfile]:
        self.guard.authorize(caller_id, Role.ADMIN)
        return UserProfile.query.filter_by(is_approved=False).order_by(UserProfile.name).all()

    def list_approved(self, caller_id: Optional[str]) -> List[UserProfile]:
        self.guard.authorize(caller_id, Role.ADMIN)
        return UserProfile.query.filter_by(is_approved=True).order_by(UserProfile.name).all()

    def set_approval(self, caller_id: Optional[str], profile_id: str, is_approved, reason=None) -> UserProfile:
        is_approved = require_bool(is_approved, 'is_approved')
        reason = optional_text(reason, 'reason', 1000)
        with self._transaction('Update approval'):
            admin = self.guard.authorize(caller_id, Role.ADMIN)
            target = db.session.get(UserProfile, profile_id)
            if target is None:
                raise NotFound('User profile not found.')
            target.is_approved = is_approved
            db.session.flush()
            verb = 'Approved' if is_approved else 'Rejected'
            self.audit.record(
                admin.id,
                ActionType.USER_APPROVED if is_approved else ActionType.USER_REJECTED,
                f"{verb} {target.role} {target.name}{f': {reason}' if reason else ''}",
                target_id=target.id,
                metadata={'student_name': target.name},
            )
        current_app.logger.info('Profile %s approval set to %s', profile_id, is_approved)
        return target
