"""Rental lifecycle: direct rentals, returns and overdue projection."""
from __future__ import annotations

import datetime
import math
from dataclasses import dataclass
from typing import List, Optional

from flask import current_app
from sqlalchemy import select

from models import ActionType, Rental, Role, Semester, UserProfile, as_utc, db
from .audit import AuditLog
from .base import ServiceBase
from .errors import (
    AlreadyReturned,
    InsufficientRole,
    InvalidSemester,
    NotFound,
    Unapproved,
    Unauthenticated,
)
from .inventory import InventoryLedger
from .validation import parse_fee, parse_timestamp, require_quantity

DEFAULT_DAILY_LATE_FEE = 10.0
ONE_DAY = datetime.timedelta(days=1)


@dataclass(frozen=True)
class OverdueStatus:
    is_overdue: bool
    overdue_days: int
    projected_fee: float


NOT_OVERDUE = OverdueStatus(is_overdue=False, overdue_days=0, projected_fee=0.0)


def project_overdue_status(rental, now: datetime.datetime, daily_rate: float = DEFAULT_DAILY_LATE_FEE) -> OverdueStatus:
    """Overdue state of ``rental`` as seen at ``now``.

    Every started day past the due date counts as a full day. Returned
    rentals are never overdue. Works on anything exposing ``due_date`` and
    ``is_returned``, so it needs no database.
    """
    if rental.is_returned:
        return NOT_OVERDUE
    due = as_utc(rental.due_date)
    now = as_utc(now)
    if now <= due:
        return NOT_OVERDUE
    days = math.ceil((now - due) / ONE_DAY)
    return OverdueStatus(is_overdue=True, overdue_days=days, projected_fee=days * daily_rate)


def default_due_date(semester: Semester) -> datetime.datetime:
    end = semester.end_date
    return datetime.datetime(end.year, end.month, end.day, tzinfo=datetime.timezone.utc)


@dataclass(frozen=True)
class RentalSnapshot:
    rental: Rental
    overdue: OverdueStatus

    def to_dict(self):
        payload = self.rental.to_dict()
        payload.update(
            is_overdue=self.overdue.is_overdue,
            overdue_days=self.overdue.overdue_days,
            calculated_late_fee=self.overdue.projected_fee,
        )
        return payload


class RentalWorkflow(ServiceBase):
    def __init__(
        self,
        *,
        inventory: Optional[InventoryLedger] = None,
        audit: Optional[AuditLog] = None,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.audit = audit or AuditLog(clock=self.clock, guard=self.guard)
        self.inventory = inventory or InventoryLedger(clock=self.clock, guard=self.guard, audit=self.audit)

    @property
    def daily_rate(self) -> float:
        return float(self.config('DAILY_LATE_FEE', DEFAULT_DAILY_LATE_FEE))

    def snapshot(self, rental: Rental, now: Optional[datetime.datetime] = None) -> RentalSnapshot:
        return RentalSnapshot(rental, project_overdue_status(rental, now or self.now(), self.daily_rate))

    def open_rental(
        self,
        *,
        operator: UserProfile,
        student: UserProfile,
        equipment_id: str,
        semester: Semester,
        quantity: int,
        due_date: Optional[datetime.datetime] = None,
        request_id: Optional[str] = None,
    ) -> Rental:
        """Reserve stock and create an open rental inside the current transaction."""
        equipment = self.inventory.reserve(equipment_id, quantity)
        rental = Rental(
            student_id=student.id,
            equipment_id=equipment.id,
            semester_id=semester.id,
            request_id=request_id,
            quantity=quantity,
            start_date=self.now(),
            due_date=due_date or default_due_date(semester),
            is_returned=False,
            rented_by=operator.id,
        )
        db.session.add(rental)
        db.session.flush()
        prefix = 'Direct rental: ' if request_id is None else ''
        self.audit.record(
            operator.id,
            ActionType.EQUIPMENT_RENTED,
            f'{prefix}Rented {quantity}x {equipment.name} to {student.name}',
            target_id=rental.id,
            metadata={'equipment_name': equipment.name, 'student_name': student.name, 'quantity': quantity},
        )
        return rental

    def create_direct(
        self,
        caller_id: Optional[str],
        *,
        student_id: str,
        equipment_id: str,
        semester_id: str,
        quantity,
        due_date=None,
    ) -> Rental:
        quantity = require_quantity(quantity)
        due = parse_timestamp(due_date, 'due_date') if due_date is not None else None
        with self._transaction('Direct rental'):
            operator = self.guard.authorize(caller_id, Role.MEMBER)
            student = db.session.get(UserProfile, student_id)
            if student is None or not student.is_approved or student.role != Role.STUDENT.value:
                raise NotFound('Student not found or not approved.')
            semester = db.session.get(Semester, semester_id)
            if semester is None or not semester.is_active:
                raise InvalidSemester('Invalid or inactive semester.')
            rental = self.open_rental(
                operator=operator,
                student=student,
                equipment_id=equipment_id,
                semester=semester,
                quantity=quantity,
                due_date=due,
            )
        current_app.logger.info('Direct rental %s opened for student %s', rental.id, student_id)
        return rental

    def process_return(self, caller_id: Optional[str], rental_id: str, late_fee=None) -> Rental:
        override = parse_fee(late_fee) if late_fee is not None else None
        with self._transaction('Return'):
            operator = self.guard.authorize(caller_id, Role.MEMBER)
            stmt = (
                select(Rental)
                .where(Rental.id == rental_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            rental = db.session.execute(stmt).scalar_one_or_none()
            if rental is None:
                raise NotFound('Rental not found.')
            if rental.is_returned:
                raise AlreadyReturned('Equipment already returned.')
            now = self.now()
            projected = project_overdue_status(rental, now, self.daily_rate)
            fee = projected.projected_fee if override is None else override
            equipment = self.inventory.release(rental.equipment_id, rental.quantity)
            rental.is_returned = True
            rental.return_date = now
            rental.late_fee = fee
            db.session.flush()
            student_name = rental.student.name if rental.student else None
            details = f'Returned {rental.quantity}x {equipment.name} from {student_name}'
            if fee:
                details += f' (Late fee: {fee:g})'
            self.audit.record(
                operator.id,
                ActionType.EQUIPMENT_RETURNED,
                details,
                target_id=rental.id,
                metadata={
                    'equipment_name': equipment.name,
                    'student_name': student_name,
                    'quantity': rental.quantity,
                    'late_fee': fee,
                },
            )
        current_app.logger.info('Rental %s returned, late fee %s', rental_id, fee)
        return rental

    def list_overdue(self, caller_id: Optional[str]) -> List[RentalSnapshot]:
        """Open rentals past due, most overdue first.

        Rentals with the same overdue day count keep due-date order.
        """
        self.guard.authorize(caller_id, Role.MEMBER)
        now = self.now()
        open_rentals = Rental.query.filter_by(is_returned=False).order_by(Rental.due_date).all()
        snapshots = [self.snapshot(rental, now) for rental in open_rentals]
        overdue = [s for s in snapshots if s.overdue.is_overdue]
        return sorted(overdue, key=lambda s: s.overdue.overdue_days, reverse=True)

    def overdue_count(self, caller_id: Optional[str]) -> int:
        try:
            return len(self.list_overdue(caller_id))
        except (Unauthenticated, Unapproved, InsufficientRole):
            return 0

    def list_mine(self, caller_id: Optional[str]) -> List[RentalSnapshot]:
        profile = self.guard.authorize(caller_id, Role.STUDENT)
        now = self.now()
        rentals = Rental.query.filter_by(student_id=profile.id).order_by(Rental.start_date.desc()).all()
        return [self.snapshot(rental, now) for rental in rentals]

    def list_all(self, caller_id: Optional[str]) -> List[RentalSnapshot]:
        self.guard.authorize(caller_id, Role.MEMBER)
        now = self.now()
        rentals = Rental.query.order_by(Rental.start_date.desc()).all()
        return [self.snapshot(rental, now) for rental in rentals]
