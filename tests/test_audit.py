import pytest

from models import ActionType, AuditEntry
from services.errors import InsufficientRole, InsufficientStock, InvalidInput, Unapproved

from conftest import make_profile


def _submit(workflow, student, equipment, semester, quantity=1):
    return workflow.submit(student.user_id, equipment_id=equipment.id, semester_id=semester.id, quantity=quantity)


def test_each_operation_appends_one_entry(workflow, rentals, audit, member, alice, racket, semester):
    request = _submit(workflow, alice, racket, semester)
    assert AuditEntry.query.count() == 1
    result = workflow.review(member.user_id, request.id, 'approved')
    assert AuditEntry.query.count() == 3
    rentals.process_return(member.user_id, result.rental.id)
    assert AuditEntry.query.count() == 4

    newest = audit.history(member.user_id, limit=1)[0]
    assert newest.action_type == ActionType.EQUIPMENT_RETURNED.value
    assert newest.actor_id == member.id
    assert newest.meta == {
        'equipment_name': 'Badminton racket',
        'student_name': 'Alice',
        'quantity': 1,
        'late_fee': 0,
    }


def test_failed_operation_leaves_no_entry(workflow, alice, racket, semester):
    with pytest.raises(InsufficientStock):
        _submit(workflow, alice, racket, semester, quantity=9)
    assert AuditEntry.query.count() == 0


def test_history_filters_and_orders_newest_first(workflow, audit, clock, member, alice, bob, racket, semester):
    first = _submit(workflow, alice, racket, semester)
    clock.advance(minutes=5)
    _submit(workflow, bob, racket, semester)
    clock.advance(minutes=5)
    workflow.review(member.user_id, first.id, 'rejected')

    entries = audit.history(member.user_id)
    assert [e.action_type for e in entries] == [
        ActionType.REQUEST_REJECTED.value,
        ActionType.REQUEST_SUBMITTED.value,
        ActionType.REQUEST_SUBMITTED.value,
    ]
    assert [e.actor_id for e in entries[1:]] == [bob.id, alice.id]

    submitted = audit.history(member.user_id, action_type='request_submitted')
    assert len(submitted) == 2
    by_alice = audit.history(member.user_id, actor_id=alice.id)
    assert [e.target_id for e in by_alice] == [first.id]


def test_history_limit_is_clamped(app, audit, member):
    for n in range(6):
        audit.record(member.id, ActionType.EQUIPMENT_UPDATED, f'Change {n}')
    assert len(audit.history(member.user_id, limit=4)) == 4

    app.config['AUDIT_MAX_LIMIT'] = 3
    assert len(audit.history(member.user_id)) == 3
    assert len(audit.history(member.user_id, limit=50)) == 3

    with pytest.raises(InvalidInput):
        audit.history(member.user_id, limit=0)
    with pytest.raises(InvalidInput):
        audit.history(member.user_id, limit='many')


def test_history_requires_club_member(audit, alice):
    with pytest.raises(InsufficientRole):
        audit.history(alice.user_id)


def test_my_history_only_shows_own_actions(workflow, audit, member, alice, bob, racket, semester):
    request = _submit(workflow, alice, racket, semester)
    _submit(workflow, bob, racket, semester)
    workflow.review(member.user_id, request.id, 'rejected')

    mine = audit.my_history(alice.user_id)
    assert [e.action_type for e in mine] == [ActionType.REQUEST_SUBMITTED.value]
    assert mine[0].to_dict()['actor_name'] == 'Alice'
    assert [e.action_type for e in audit.my_history(member.user_id)] == [ActionType.REQUEST_REJECTED.value]


def test_my_history_needs_approved_profile(audit, app):
    make_profile('dave', approved=False)
    with pytest.raises(Unapproved):
        audit.my_history('dave')


def test_unknown_action_type_is_rejected(audit, member):
    with pytest.raises(InvalidInput):
        audit.history(member.user_id, action_type='equipment_stolen')
    with pytest.raises(InvalidInput):
        audit.record(member.id, 'equipment_stolen', 'nope')


def test_entry_serializes_string_id(audit, member):
    entry = audit.record(member.id, ActionType.SEMESTER_CREATED, 'Created W25', metadata={'note': None})
    payload = entry.to_dict()
    assert payload['id'] == str(entry.id)
    assert payload['metadata'] is None
    assert payload['timestamp'] == '2025-01-10T09:00:00+00:00'
