import datetime

import pytest

from models import ActionType, AuditEntry, Equipment, Rental, RentalRequest, RequestStatus, Role, db
from services.errors import (
    AlreadyReviewed,
    DuplicatePendingRequest,
    InsufficientRole,
    InsufficientStock,
    InvalidInput,
    InvalidSemester,
    NotFound,
)
from services.requests import RequestWorkflow

from conftest import DUE, START, make_equipment, make_profile, make_semester, run_concurrently


def _available(equipment_id):
    db.session.expire_all()
    return db.session.get(Equipment, equipment_id).available_quantity


def _submit(workflow, student, equipment, semester, quantity=2):
    return workflow.submit(student.user_id, equipment_id=equipment.id, semester_id=semester.id, quantity=quantity)


def test_submit_approve_return_scenario(workflow, rentals, clock, alice, member, racket, semester):
    request = _submit(workflow, alice, racket, semester, quantity=2)
    assert request.status == RequestStatus.PENDING.value
    assert _available(racket.id) == 5

    result = workflow.review(member.user_id, request.id, 'approved')
    assert _available(racket.id) == 3
    rental = result.rental
    assert rental.request_id == request.id
    assert rental.quantity == 2
    assert rental.is_returned is False
    assert rental.to_dict()['due_date'] == DUE.isoformat()
    assert rental.to_dict()['start_date'] == START.isoformat()
    assert result.request.status == RequestStatus.APPROVED.value
    assert result.request.reviewed_by == member.id

    clock.set(DUE + datetime.timedelta(days=1, hours=12))
    returned = rentals.process_return(member.user_id, rental.id)
    assert returned.late_fee == 20
    assert returned.is_returned is True
    assert _available(racket.id) == 5


def test_second_approval_fails_when_stock_ran_out(workflow, alice, bob, member, semester):
    equipment = make_equipment(name='Kayak paddle', total=4)
    first = _submit(workflow, alice, equipment, semester, quantity=3)
    second = _submit(workflow, bob, equipment, semester, quantity=3)

    approved = workflow.review(member.user_id, first.id, 'approved')
    assert _available(equipment.id) == 1

    with pytest.raises(InsufficientStock):
        workflow.review(member.user_id, second.id, 'approved')

    assert _available(equipment.id) == 1
    assert db.session.get(RentalRequest, second.id).status == RequestStatus.PENDING.value
    assert Rental.query.count() == 1
    rental = db.session.get(Rental, approved.rental.id)
    assert rental.quantity == 3
    assert rental.is_returned is False


def test_reviewing_twice_fails_and_leaves_state_unchanged(workflow, alice, member, racket, semester):
    request = _submit(workflow, alice, racket, semester)
    workflow.review(member.user_id, request.id, 'rejected', reason='Out of season')

    for decision in ('approved', 'rejected'):
        with pytest.raises(AlreadyReviewed):
            workflow.review(member.user_id, request.id, decision)

    stored = db.session.get(RentalRequest, request.id)
    assert stored.status == RequestStatus.REJECTED.value
    assert stored.reason == 'Out of season'
    assert _available(racket.id) == 5
    assert Rental.query.count() == 0


def test_rejection_has_no_inventory_effect(workflow, alice, member, racket, semester):
    request = _submit(workflow, alice, racket, semester, quantity=5)
    result = workflow.review(member.user_id, request.id, 'rejected')
    assert result.rental is None
    assert _available(racket.id) == 5
    entry = AuditEntry.query.filter_by(action_type=ActionType.REQUEST_REJECTED.value).one()
    assert entry.target_id == request.id


def test_one_pending_request_per_student_and_equipment(workflow, alice, bob, member, racket, semester):
    first = _submit(workflow, alice, racket, semester, quantity=1)
    with pytest.raises(DuplicatePendingRequest):
        _submit(workflow, alice, racket, semester, quantity=1)

    _submit(workflow, bob, racket, semester, quantity=1)
    _submit(workflow, alice, make_equipment(name='Shuttlecocks'), semester, quantity=1)

    workflow.review(member.user_id, first.id, 'rejected')
    _submit(workflow, alice, racket, semester, quantity=1)

    pending = RentalRequest.query.filter_by(student_id=alice.id, equipment_id=racket.id, status='pending').count()
    assert pending == 1


def test_submit_validates_equipment_and_semester(workflow, alice, racket, semester):
    with pytest.raises(InsufficientStock):
        _submit(workflow, alice, racket, semester, quantity=6)
    with pytest.raises(NotFound):
        workflow.submit(alice.user_id, equipment_id='missing', semester_id=semester.id, quantity=1)
    with pytest.raises(NotFound):
        _submit(workflow, alice, make_equipment(name='Broken net', active=False), semester, quantity=1)
    with pytest.raises(InvalidSemester):
        _submit(workflow, alice, racket, make_semester(code='S25', active=False), quantity=1)
    with pytest.raises(InvalidInput):
        _submit(workflow, alice, racket, semester, quantity=0)
    assert RentalRequest.query.count() == 0
    assert AuditEntry.query.count() == 0


def test_only_students_submit_requests(workflow, member, racket, semester):
    with pytest.raises(InsufficientRole):
        _submit(workflow, member, racket, semester)


def test_students_cannot_review(workflow, alice, bob, racket, semester):
    request = _submit(workflow, alice, racket, semester)
    with pytest.raises(InsufficientRole):
        workflow.review(bob.user_id, request.id, 'approved')


def test_review_rejects_unknown_decision(workflow, member, alice, racket, semester):
    request = _submit(workflow, alice, racket, semester)
    with pytest.raises(InvalidInput):
        workflow.review(member.user_id, request.id, 'pending')
    with pytest.raises(NotFound):
        workflow.review(member.user_id, 'missing', 'approved')


def test_approval_honours_due_date_override(workflow, alice, member, racket, semester):
    request = _submit(workflow, alice, racket, semester)
    result = workflow.review(member.user_id, request.id, 'approved', due_date='2025-02-15T17:00:00Z')
    assert result.rental.to_dict()['due_date'] == '2025-02-15T17:00:00+00:00'


def test_approval_writes_rental_and_review_entries(workflow, alice, member, racket, semester):
    request = _submit(workflow, alice, racket, semester)
    workflow.review(member.user_id, request.id, 'approved')
    kinds = [e.action_type for e in AuditEntry.query.order_by(AuditEntry.id)]
    assert kinds == [
        ActionType.REQUEST_SUBMITTED.value,
        ActionType.EQUIPMENT_RENTED.value,
        ActionType.REQUEST_APPROVED.value,
    ]


def test_listing_and_pending_count(workflow, alice, bob, member, racket, semester):
    _submit(workflow, alice, racket, semester, quantity=1)
    done = _submit(workflow, bob, racket, semester, quantity=1)
    workflow.review(member.user_id, done.id, 'approved')

    assert [r.student_id for r in workflow.list_mine(alice.user_id)] == [alice.id]
    assert len(workflow.list_all(member.user_id)) == 2
    assert len(workflow.list_all(member.user_id, status='pending')) == 1
    assert workflow.pending_count(member.user_id) == 1
    assert workflow.pending_count(alice.user_id) == 0
    assert workflow.pending_count(None) == 0


def test_concurrent_approvals_for_the_last_units(file_app, clock):
    make_profile('member', Role.MEMBER)
    make_profile('alice')
    make_profile('bob')
    equipment_id = make_equipment(name='Kayak paddle', total=4).id
    semester_id = make_semester().id
    workflow = RequestWorkflow(clock=clock)
    request_ids = [
        workflow.submit(student, equipment_id=equipment_id, semester_id=semester_id, quantity=3).id
        for student in ('alice', 'bob')
    ]
    db.session.remove()

    def approve(request_id):
        return lambda: workflow.review('member', request_id, 'approved').rental.id

    outcomes = run_concurrently(file_app, *(approve(r) for r in request_ids))

    failures = [o for o in outcomes if isinstance(o, Exception)]
    assert len(failures) == 1, outcomes
    assert isinstance(failures[0], InsufficientStock)
    assert Rental.query.count() == 1
    assert RentalRequest.query.filter_by(status=RequestStatus.PENDING.value).count() == 1
    assert _available(equipment_id) == 1
