import datetime
import uuid
from datetime import timezone
from enum import Enum

from flask_sqlalchemy import SQLAlchemy

# SQLAlchemy instance (initialized by app)
db = SQLAlchemy()


class Role(str, Enum):
    STUDENT = 'student'
    MEMBER = 'member'
    ADMIN = 'admin'


class RequestStatus(str, Enum):
    PENDING = 'pending'
    APPROVED = 'approved'
    REJECTED = 'rejected'


class ActionType(str, Enum):
    REQUEST_SUBMITTED = 'request_submitted'
    REQUEST_APPROVED = 'request_approved'
    REQUEST_REJECTED = 'request_rejected'
    EQUIPMENT_RENTED = 'equipment_rented'
    EQUIPMENT_RETURNED = 'equipment_returned'
    USER_REGISTERED = 'user_registered'
    USER_APPROVED = 'user_approved'
    USER_REJECTED = 'user_rejected'
    EQUIPMENT_ADDED = 'equipment_added'
    EQUIPMENT_UPDATED = 'equipment_updated'
    SEMESTER_CREATED = 'semester_created'
    SEMESTER_UPDATED = 'semester_updated'


def _new_id():
    return uuid.uuid4().hex


def _utcnow():
    return datetime.datetime.now(timezone.utc)


def as_utc(value):
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _iso(value):
    if value is None:
        return None
    if isinstance(value, datetime.datetime):
        return as_utc(value).isoformat()
    return value.isoformat()


class UserProfile(db.Model):
    __tablename__ = 'user_profile'
    id = db.Column(db.String(32), primary_key=True, default=_new_id)
    # stable identity handed over by the identity provider
    user_id = db.Column(db.String(128), unique=True, nullable=False, index=True)
    role = db.Column(db.String(16), nullable=False, default=Role.STUDENT.value, index=True)
    is_approved = db.Column(db.Boolean, nullable=False, default=False, index=True)
    student_id = db.Column(db.String(64), nullable=True)
    name = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(255), nullable=False, default='')
    phone = db.Column(db.String(30), nullable=True)
    department = db.Column(db.String(120), nullable=True)
    year = db.Column(db.String(16), nullable=True)
    # True on the first profile only, NULL on every other row
    is_founder = db.Column(db.Boolean, nullable=True, unique=True)

    @property
    def is_club_operator(self):
        return self.role in (Role.MEMBER.value, Role.ADMIN.value)

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'role': self.role,
            'is_approved': self.is_approved,
            'student_id': self.student_id,
            'name': self.name,
            'email': self.email,
            'phone': self.phone,
            'department': self.department,
            'year': self.year,
        }


class Equipment(db.Model):
    __tablename__ = 'equipment'
    __table_args__ = (
        db.CheckConstraint('total_quantity >= 0', name='ck_equipment_total_non_negative'),
        db.CheckConstraint(
            'available_quantity >= 0 AND available_quantity <= total_quantity',
            name='ck_equipment_available_range',
        ),
    )
    id = db.Column(db.String(32), primary_key=True, default=_new_id)
    name = db.Column(db.String(120), nullable=False)
    category = db.Column(db.String(80), nullable=False, index=True)
    description = db.Column(db.Text, nullable=True)
    total_quantity = db.Column(db.Integer, nullable=False, default=1)
    available_quantity = db.Column(db.Integer, nullable=False, default=1)
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'category': self.category,
            'description': self.description,
            'total_quantity': self.total_quantity,
            'available_quantity': self.available_quantity,
            'is_active': self.is_active,
        }


class Semester(db.Model):
    __tablename__ = 'semester'
    __table_args__ = (
        # at most one row may carry is_active = true
        db.Index(
            'uq_semester_single_active',
            'is_active',
            unique=True,
            sqlite_where=db.text('is_active'),
            postgresql_where=db.text('is_active'),
        ),
    )
    id = db.Column(db.String(32), primary_key=True, default=_new_id)
    code = db.Column(db.String(32), unique=True, nullable=False, index=True)
    name = db.Column(db.String(120), nullable=False)
    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date, nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=False)

    def to_dict(self):
        return {
            'id': self.id,
            'code': self.code,
            'name': self.name,
            'start_date': _iso(self.start_date),
            'end_date': _iso(self.end_date),
            'is_active': self.is_active,
        }


class RentalRequest(db.Model):
    __tablename__ = 'rental_request'
    __table_args__ = (
        db.CheckConstraint('quantity > 0', name='ck_request_quantity_positive'),
        # one pending request per student and equipment
        db.Index(
            'uq_request_single_pending',
            'student_id',
            'equipment_id',
            unique=True,
            sqlite_where=db.text("status = 'pending'"),
            postgresql_where=db.text("status = 'pending'"),
        ),
    )
    id = db.Column(db.String(32), primary_key=True, default=_new_id)
    student_id = db.Column(db.String(32), db.ForeignKey('user_profile.id'), nullable=False, index=True)
    equipment_id = db.Column(db.String(32), db.ForeignKey('equipment.id'), nullable=False, index=True)
    semester_id = db.Column(db.String(32), db.ForeignKey('semester.id'), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(16), nullable=False, default=RequestStatus.PENDING.value, index=True)
    reason = db.Column(db.Text, nullable=True)
    request_date = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    reviewed_by = db.Column(db.String(32), db.ForeignKey('user_profile.id'), nullable=True)
    review_date = db.Column(db.DateTime(timezone=True), nullable=True)

    student = db.relationship('UserProfile', foreign_keys=[student_id])
    reviewer = db.relationship('UserProfile', foreign_keys=[reviewed_by])
    equipment = db.relationship('Equipment', backref=db.backref('requests', lazy=True))
    semester = db.relationship('Semester')

    def to_dict(self):
        return {
            'id': self.id,
            'student_id': self.student_id,
            'student_name': self.student.name if self.student else None,
            'equipment_id': self.equipment_id,
            'equipment_name': self.equipment.name if self.equipment else None,
            'semester_id': self.semester_id,
            'semester_code': self.semester.code if self.semester else None,
            'quantity': self.quantity,
            'status': self.status,
            'reason': self.reason,
            'request_date': _iso(self.request_date),
            'reviewed_by': self.reviewed_by,
            'reviewer_name': self.reviewer.name if self.reviewer else None,
            'review_date': _iso(self.review_date),
        }


class Rental(db.Model):
    __tablename__ = 'rental'
    __table_args__ = (
        db.CheckConstraint('quantity > 0', name='ck_rental_quantity_positive'),
        db.CheckConstraint('late_fee IS NULL OR late_fee >= 0', name='ck_rental_late_fee_non_negative'),
    )
    id = db.Column(db.String(32), primary_key=True, default=_new_id)
    student_id = db.Column(db.String(32), db.ForeignKey('user_profile.id'), nullable=False, index=True)
    equipment_id = db.Column(db.String(32), db.ForeignKey('equipment.id'), nullable=False, index=True)
    semester_id = db.Column(db.String(32), db.ForeignKey('semester.id'), nullable=False, index=True)
    # direct rentals have no originating request
    request_id = db.Column(db.String(32), db.ForeignKey('rental_request.id'), nullable=True)
    quantity = db.Column(db.Integer, nullable=False)
    start_date = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    due_date = db.Column(db.DateTime(timezone=True), nullable=False, index=True)
    return_date = db.Column(db.DateTime(timezone=True), nullable=True)
    late_fee = db.Column(db.Float, nullable=True)
    is_returned = db.Column(db.Boolean, nullable=False, default=False, index=True)
    rented_by = db.Column(db.String(32), db.ForeignKey('user_profile.id'), nullable=False)

    student = db.relationship('UserProfile', foreign_keys=[student_id])
    operator = db.relationship('UserProfile', foreign_keys=[rented_by])
    equipment = db.relationship('Equipment', backref=db.backref('rentals', lazy=True))
    semester = db.relationship('Semester')
    request = db.relationship('RentalRequest', backref=db.backref('rental', uselist=False))

    def to_dict(self):
        return {
            'id': self.id,
            'student_id': self.student_id,
            'student_name': self.student.name if self.student else None,
            'equipment_id': self.equipment_id,
            'equipment_name': self.equipment.name if self.equipment else None,
            'semester_id': self.semester_id,
            'semester_code': self.semester.code if self.semester else None,
            'request_id': self.request_id,
            'quantity': self.quantity,
            'start_date': _iso(self.start_date),
            'due_date': _iso(self.due_date),
            'return_date': _iso(self.return_date),
            'late_fee': self.late_fee,
            'is_returned': self.is_returned,
            'rented_by': self.rented_by,
            'rented_by_name': self.operator.name if self.operator else None,
        }


class AuditEntry(db.Model):
    __tablename__ = 'audit_entry'
    id = db.Column(db.Integer, primary_key=True)
    actor_id = db.Column(db.String(32), db.ForeignKey('user_profile.id'), nullable=False, index=True)
    action_type = db.Column(db.String(32), nullable=False, index=True)
    target_id = db.Column(db.String(64), nullable=True)
    details = db.Column(db.Text, nullable=False)
    timestamp = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow, index=True)
    # "metadata" is reserved on declarative classes
    meta = db.Column('metadata', db.JSON, nullable=True)

    actor = db.relationship('UserProfile')

    def to_dict(self):
        return {
            'id': str(self.id),
            'actor_id': self.actor_id,
            'actor_name': self.actor.name if self.actor else None,
            'action_type': self.action_type,
            'target_id': self.target_id,
            'details': self.details,
            'timestamp': _iso(self.timestamp),
            'metadata': self.meta,
        }
