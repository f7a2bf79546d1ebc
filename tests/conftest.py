import datetime
import threading

import pytest

from app import create_app
from models import Equipment, Role, Semester, UserProfile, db
from services.audit import AuditLog
from services.inventory import InventoryLedger
from services.profiles import ProfileService
from services.rentals import RentalWorkflow
from services.requests import RequestWorkflow
from services.semesters import SemesterRegistry

START = datetime.datetime(2025, 1, 10, 9, 0, tzinfo=datetime.timezone.utc)
SEMESTER_END = datetime.date(2025, 4, 30)
DUE = datetime.datetime(2025, 4, 30, tzinfo=datetime.timezone.utc)


class FakeClock:
    def __init__(self, now):
        self.current = now

    def __call__(self):
        return self.current

    def advance(self, **kwargs):
        self.current += datetime.timedelta(**kwargs)

    def set(self, value):
        self.current = value


@pytest.fixture
def clock():
    return FakeClock(START)


@pytest.fixture
def app(clock):
    app = create_app('testing', {'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:', 'CLOCK': clock})
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def file_app(tmp_path, clock):
    """App on a file database so that worker threads get their own connections."""
    app = create_app('testing', {
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'rentals.db'}",
        'SQLALCHEMY_ENGINE_OPTIONS': {'connect_args': {'check_same_thread': False, 'timeout': 15}},
        'CLOCK': clock,
    })
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


def run_concurrently(app, *jobs):
    """Run each job in its own thread and app context, all released at once.

    Returns one outcome per job: its return value or the exception it raised.
    """
    barrier = threading.Barrier(len(jobs))
    outcomes = [None] * len(jobs)

    def worker(index, job):
        with app.app_context():
            try:
                barrier.wait(timeout=10)
                outcomes[index] = job()
            except Exception as exc:
                outcomes[index] = exc
            finally:
                db.session.remove()

    threads = [threading.Thread(target=worker, args=(i, job)) for i, job in enumerate(jobs)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)
    return outcomes


def make_profile(user_id, role=Role.STUDENT, approved=True, name=None):
    profile = UserProfile(
        user_id=user_id,
        role=role.value,
        is_approved=approved,
        name=name or user_id.title(),
        email=f'{user_id}@campus.example',
    )
    db.session.add(profile)
    db.session.commit()
    return profile


def make_equipment(name='Badminton racket', category='Racket sports', total=5, active=True):
    equipment = Equipment(
        name=name,
        category=category,
        total_quantity=total,
        available_quantity=total,
        is_active=active,
    )
    db.session.add(equipment)
    db.session.commit()
    return equipment


def make_semester(code='W25', active=True, start=datetime.date(2025, 1, 6), end=SEMESTER_END):
    semester = Semester(code=code, name=f'Semester {code}', start_date=start, end_date=end, is_active=active)
    db.session.add(semester)
    db.session.commit()
    return semester


@pytest.fixture
def admin(app):
    return make_profile('admin', Role.ADMIN)


@pytest.fixture
def member(app):
    return make_profile('member', Role.MEMBER)


@pytest.fixture
def alice(app):
    return make_profile('alice')


@pytest.fixture
def bob(app):
    return make_profile('bob')


@pytest.fixture
def racket(app):
    return make_equipment()


@pytest.fixture
def semester(app):
    return make_semester()


@pytest.fixture
def audit(app, clock):
    return AuditLog(clock=clock)


@pytest.fixture
def inventory(clock, audit):
    return InventoryLedger(clock=clock, audit=audit)


@pytest.fixture
def semesters(clock, audit):
    return SemesterRegistry(clock=clock, audit=audit)


@pytest.fixture
def rentals(clock, audit, inventory):
    return RentalWorkflow(clock=clock, audit=audit, inventory=inventory)


@pytest.fixture
def workflow(clock, audit, rentals):
    return RequestWorkflow(clock=clock, audit=audit, rentals=rentals)


@pytest.fixture
def profiles(clock, audit):
    return ProfileService(clock=clock, audit=audit)
