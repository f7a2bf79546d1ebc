"""Semester registry: rental periods and the single active semester."""
from __future__ import annotations

from typing import List, Optional

from flask import current_app
from sqlalchemy import func, select

from models import ActionType, Role, Semester, db
from .audit import AuditLog
from .base import ServiceBase
from .errors import DuplicateCode, InvalidInput, NotFound, StorageError
from .updates import SemesterUpdate
from .validation import parse_date, require_bool, require_text


class SemesterRegistry(ServiceBase):
    """Creates semesters and moves the active flag between them.

    Activation locks every currently active row, clears the flag, flushes,
    then sets it on the target, all inside one transaction. The count is
    checked again before commit, and the partial unique index on
    ``semester.is_active`` rejects a second active row at the database.
    """

    def __init__(self, *, audit: Optional[AuditLog] = None, **kwargs):
        super().__init__(**kwargs)
        self.audit = audit or AuditLog(clock=self.clock, guard=self.guard)

    @staticmethod
    def _get(semester_id: str) -> Semester:
        semester = db.session.get(Semester, semester_id)
        if semester is None:
            raise NotFound('Semester not found.')
        return semester

    @staticmethod
    def _ensure_unique_code(code: str, exclude_id: Optional[str] = None) -> None:
        query = Semester.query.filter_by(code=code)
        if exclude_id:
            query = query.filter(Semester.id != exclude_id)
        if query.first() is not None:
            raise DuplicateCode(f'Semester code already exists: {code}')

    @staticmethod
    def _deactivate_others(keep_id: Optional[str] = None) -> None:
        stmt = select(Semester).where(Semester.is_active.is_(True)).with_for_update()
        for semester in db.session.execute(stmt).scalars():
            if semester.id != keep_id:
                semester.is_active = False
        db.session.flush()

    @staticmethod
    def _assert_single_active() -> None:
        active = db.session.execute(
            select(func.count()).select_from(Semester).where(Semester.is_active.is_(True))
        ).scalar_one()
        if active > 1:
            raise StorageError('More than one semester would be active.')

    def create(
        self,
        caller_id: Optional[str],
        *,
        code,
        name,
        start_date,
        end_date,
        activate=False,
    ) -> Semester:
        code = require_text(code, 'code', 32)
        name = require_text(name, 'name', 120)
        start = parse_date(start_date, 'start_date')
        end = parse_date(end_date, 'end_date')
        activate = require_bool(activate, 'activate')
        if start > end:
            raise InvalidInput('start_date must not be after end_date.')
        with self._transaction('Create semester'):
            profile = self.guard.authorize(caller_id, Role.MEMBER)
            self._ensure_unique_code(code)
            if activate:
                self._deactivate_others()
            semester = Semester(code=code, name=name, start_date=start, end_date=end, is_active=activate)
            db.session.add(semester)
            db.session.flush()
            self._assert_single_active()
            self.audit.record(
                profile.id,
                ActionType.SEMESTER_CREATED,
                f'Created semester: {name} ({code})',
                target_id=semester.id,
            )
        current_app.logger.info('Semester %s created (active=%s)', code, activate)
        return semester

    def set_active(self, caller_id: Optional[str], semester_id: str) -> Semester:
        with self._transaction('Activate semester'):
            profile = self.guard.authorize(caller_id, Role.MEMBER)
            semester = self._get(semester_id)
            self._deactivate_others(keep_id=semester.id)
            semester.is_active = True
            db.session.flush()
            self._assert_single_active()
            self.audit.record(
                profile.id,
                ActionType.SEMESTER_UPDATED,
                f'Activated semester: {semester.name} ({semester.code})',
                target_id=semester.id,
            )
        current_app.logger.info('Semester %s activated', semester.code)
        return semester

    def update(self, caller_id: Optional[str], semester_id: str, update: SemesterUpdate) -> Semester:
        changes = update.changes()
        with self._transaction('Update semester'):
            profile = self.guard.authorize(caller_id, Role.MEMBER)
            semester = self._get(semester_id)
            if 'code' in changes:
                code = require_text(changes['code'], 'code', 32)
                self._ensure_unique_code(code, exclude_id=semester.id)
                semester.code = code
            if 'name' in changes:
                semester.name = require_text(changes['name'], 'name', 120)
            if 'start_date' in changes:
                semester.start_date = parse_date(changes['start_date'], 'start_date')
            if 'end_date' in changes:
                semester.end_date = parse_date(changes['end_date'], 'end_date')
            if semester.start_date > semester.end_date:
                raise InvalidInput('start_date must not be after end_date.')
            if 'is_active' in changes:
                if require_bool(changes['is_active'], 'is_active'):
                    db.session.flush()
                    self._deactivate_others(keep_id=semester.id)
                    semester.is_active = True
                else:
                    semester.is_active = False
            db.session.flush()
            self._assert_single_active()
            self.audit.record(
                profile.id,
                ActionType.SEMESTER_UPDATED,
                f"Updated semester: {semester.name} ({', '.join(sorted(changes)) or 'no changes'})",
                target_id=semester.id,
            )
        current_app.logger.info('Semester %s updated: %s', semester.code, sorted(changes))
        return semester

    def get_active(self, caller_id: Optional[str]) -> Optional[Semester]:
        self.guard.authorize(caller_id)
        return Semester.query.filter_by(is_active=True).first()

    def list_all(self, caller_id: Optional[str]) -> List[Semester]:
        self.guard.authorize(caller_id)
        return Semester.query.order_by(Semester.start_date.desc(), Semester.code).all()
