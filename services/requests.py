"""Student rental requests and their review state machine."""
from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

from flask import current_app
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from models import ActionType, Equipment, Rental, RentalRequest, RequestStatus, Role, Semester, db
from .audit import AuditLog
from .base import ServiceBase
from .errors import (
    AlreadyReviewed,
    DuplicatePendingRequest,
    InsufficientRole,
    InsufficientStock,
    InvalidInput,
    InvalidSemester,
    NotFound,
    Unapproved,
    Unauthenticated,
)
from .rentals import RentalWorkflow
from .validation import optional_text, parse_timestamp, require_quantity

REVIEW_DECISIONS = (RequestStatus.APPROVED, RequestStatus.REJECTED)


@dataclass(frozen=True)
class ReviewResult:
    request: RentalRequest
    rental: Optional[Rental] = None


def _parse_status(value) -> RequestStatus:
    try:
        return RequestStatus(value)
    except ValueError as exc:
        raise InvalidInput(f'Unknown request status: {value}') from exc


class RequestWorkflow(ServiceBase):
    """pending -> approved | rejected. Both outcomes are terminal.

    Submitting never touches inventory; stock is reserved only when a
    request is approved, and re-checked under the equipment row lock at that
    point. Of two approvals competing for the last units, the first to take
    the lock wins and the second fails with ``InsufficientStock``.
    """

    def __init__(self, *, rentals: Optional[RentalWorkflow] = None, audit: Optional[AuditLog] = None, **kwargs):
        super().__init__(**kwargs)
        self.audit = audit or AuditLog(clock=self.clock, guard=self.guard)
        self.rentals = rentals or RentalWorkflow(clock=self.clock, guard=self.guard, audit=self.audit)

    def submit(self, caller_id: Optional[str], *, equipment_id: str, semester_id: str, quantity) -> RentalRequest:
        quantity = require_quantity(quantity)
        with self._transaction('Submit request'):
            student = self.guard.authorize(caller_id, Role.STUDENT)
            equipment = db.session.get(Equipment, equipment_id)
            if equipment is None or not equipment.is_active:
                raise NotFound('Equipment not found or inactive.')
            if equipment.available_quantity < quantity:
                raise InsufficientStock('Insufficient equipment available.')
            semester = db.session.get(Semester, semester_id)
            if semester is None or not semester.is_active:
                raise InvalidSemester(
                    'Invalid or inactive semester. Please contact the club admin to activate a semester.'
                )
            existing = RentalRequest.query.filter_by(
                student_id=student.id,
                equipment_id=equipment.id,
                status=RequestStatus.PENDING.value,
            ).first()
            if existing is not None:
                raise DuplicatePendingRequest('You already have a pending request for this equipment.')
            request = RentalRequest(
                student_id=student.id,
                equipment_id=equipment.id,
                semester_id=semester.id,
                quantity=quantity,
                status=RequestStatus.PENDING.value,
                request_date=self.now(),
            )
            db.session.add(request)
            try:
                db.session.flush()
            except IntegrityError as exc:
                raise DuplicatePendingRequest('You already have a pending request for this equipment.') from exc
            self.audit.record(
                student.id,
                ActionType.REQUEST_SUBMITTED,
                f'Submitted request for {quantity}x {equipment.name}',
                target_id=request.id,
                metadata={'equipment_name': equipment.name, 'student_name': student.name, 'quantity': quantity},
            )
        current_app.logger.info('Request %s submitted by %s', request.id, student.id)
        return request

    def review(
        self,
        caller_id: Optional[str],
        request_id: str,
        decision,
        *,
        reason=None,
        due_date=None,
    ) -> ReviewResult:
        decision = _parse_status(decision)
        if decision not in REVIEW_DECISIONS:
            raise InvalidInput('decision must be approved or rejected.')
        reason = optional_text(reason, 'reason', 1000)
        due = parse_timestamp(due_date, 'due_date') if due_date is not None else None
        rental = None
        with self._transaction('Review request'):
            reviewer = self.guard.authorize(caller_id, Role.MEMBER)
            stmt = (
                select(RentalRequest)
                .where(RentalRequest.id == request_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            request = db.session.execute(stmt).scalar_one_or_none()
            if request is None:
                raise NotFound('Request not found.')
            if request.status != RequestStatus.PENDING.value:
                raise AlreadyReviewed('Request has already been reviewed.')
            if decision is RequestStatus.APPROVED:
                semester = db.session.get(Semester, request.semester_id)
                if semester is None:
                    raise NotFound('Semester not found.')
                rental = self.rentals.open_rental(
                    operator=reviewer,
                    student=request.student,
                    equipment_id=request.equipment_id,
                    semester=semester,
                    quantity=request.quantity,
                    due_date=due,
                    request_id=request.id,
                )
            request.status = decision.value
            request.reason = reason
            request.reviewed_by = reviewer.id
            request.review_date = self.now()
            db.session.flush()
            student_name = request.student.name if request.student else None
            equipment_name = request.equipment.name if request.equipment else None
            verb = 'Approved' if decision is RequestStatus.APPROVED else 'Rejected'
            self.audit.record(
                reviewer.id,
                ActionType.REQUEST_APPROVED if decision is RequestStatus.APPROVED else ActionType.REQUEST_REJECTED,
                f"{verb} request from {student_name} for {equipment_name}{f': {reason}' if reason else ''}",
                target_id=request.id,
                metadata={'equipment_name': equipment_name, 'student_name': student_name, 'quantity': request.quantity},
            )
        current_app.logger.info('Request %s %s by %s', request_id, decision.value, reviewer.id)
        return ReviewResult(request=request, rental=rental)

    def list_mine(self, caller_id: Optional[str]) -> List[RentalRequest]:
        student = self.guard.authorize(caller_id, Role.STUDENT)
        return (
            RentalRequest.query.filter_by(student_id=student.id)
            .order_by(RentalRequest.request_date.desc())
            .all()
        )

    def list_all(self, caller_id: Optional[str], status=None) -> List[RentalRequest]:
        self.guard.authorize(caller_id, Role.MEMBER)
        query = RentalRequest.query
        if status:
            query = query.filter_by(status=_parse_status(status).value)
        return query.order_by(RentalRequest.request_date.desc()).all()

    def pending_count(self, caller_id: Optional[str]) -> int:
        try:
            self.guard.authorize(caller_id, Role.MEMBER)
        except (Unauthenticated, Unapproved, InsufficientRole):
            return 0
        return RentalRequest.query.filter_by(status=RequestStatus.PENDING.value).count()
