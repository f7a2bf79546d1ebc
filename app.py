from __future__ import annotations

import os

from flask import Flask, jsonify, request
from sqlalchemy import event

from config import BaseConfig, config_by_name
from models import db
from services.audit import AuditLog
from services.auth import AccessGuard, login_required, login_user, logout_user, resolve_caller
from services.errors import InvalidInput, NotFound, RentalServiceError
from services.inventory import InventoryLedger
from services.profiles import ProfileService
from services.rentals import RentalWorkflow
from services.requests import RequestWorkflow
from services.semesters import SemesterRegistry
from services.stats import DashboardService
from services.updates import EquipmentUpdate, SemesterUpdate


def _load_config(app: Flask, config_name: str | None, test_config: dict | None) -> None:
    resolved_name = config_name or os.environ.get('FLASK_CONFIG', 'development')
    config_cls = config_by_name.get(resolved_name, BaseConfig)
    app.config.from_object(config_cls)
    if test_config:
        app.config.update(test_config)


def _serialize_sqlite_writes(engine) -> None:
    """Open every SQLite transaction with BEGIN IMMEDIATE.

    pysqlite defers BEGIN until the first write, so a read-then-write unit
    of work could interleave with another one. Taking the write lock up
    front serializes them; other backends keep their own locking.
    """

    @event.listens_for(engine, 'connect')
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, 'begin')
    def _begin_immediate(conn):
        conn.exec_driver_sql('BEGIN IMMEDIATE')


def _payload() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise InvalidInput('Request body must be a JSON object.')
    return data


def _required(data: dict, key: str):
    if key not in data or data[key] is None:
        raise InvalidInput(f'{key} is required.')
    return data[key]


def create_app(config_name: str | None = None, test_config: dict | None = None):
    if isinstance(config_name, dict) and test_config is None:
        test_config = config_name
        config_name = None
    app = Flask(__name__)
    _load_config(app, config_name, test_config)
    app.logger.setLevel(app.config.get('LOG_LEVEL', 'INFO'))
    db.init_app(app)
    with app.app_context():
        if db.engine.dialect.name == 'sqlite':
            _serialize_sqlite_writes(db.engine)

    clock = app.config.get('CLOCK')
    guard = AccessGuard()
    audit = AuditLog(clock=clock, guard=guard)
    inventory = InventoryLedger(clock=clock, guard=guard, audit=audit)
    rentals = RentalWorkflow(clock=clock, guard=guard, audit=audit, inventory=inventory)
    requests_workflow = RequestWorkflow(clock=clock, guard=guard, audit=audit, rentals=rentals)
    semesters = SemesterRegistry(clock=clock, guard=guard, audit=audit)
    profiles = ProfileService(clock=clock, guard=guard, audit=audit)
    dashboard = DashboardService(clock=clock, guard=guard)

    @app.errorhandler(RentalServiceError)
    def handle_service_error(exc: RentalServiceError):
        app.logger.info('%s %s rejected: %s (%s)', request.method, request.path, exc.kind, exc)
        return jsonify(exc.to_dict()), exc.status_code

    @app.after_request
    def set_security_headers(response):
        response.headers.setdefault('X-Frame-Options', 'DENY')
        response.headers.setdefault('X-Content-Type-Options', 'nosniff')
        response.headers.setdefault('Cache-Control', 'no-store')
        return response

    # -- identity and profiles -------------------------------------------

    @app.route('/api/login', methods=['POST'])
    def login():
        if not app.config.get('DEV_LOGIN'):
            raise NotFound('Not found.')
        user_id = _required(_payload(), 'user_id')
        if not isinstance(user_id, str) or not user_id.strip():
            raise InvalidInput('user_id must be a non-empty string.')
        login_user(user_id.strip())
        return jsonify({'user_id': user_id.strip()})

    @app.route('/api/logout', methods=['POST'])
    def logout():
        logout_user()
        return jsonify({'ok': True})

    @app.route('/api/me', methods=['GET'])
    @login_required
    def me():
        profile = profiles.current_profile(resolve_caller())
        return jsonify({'user_id': resolve_caller(), 'profile': profile.to_dict() if profile else None})

    @app.route('/api/profile', methods=['POST'])
    def create_profile():
        data = _payload()
        profile = profiles.create_profile(
            resolve_caller(),
            role=data.get('role', 'student'),
            name=data.get('name'),
            email=data.get('email', ''),
            student_id=data.get('student_id'),
            phone=data.get('phone'),
            department=data.get('department'),
            year=data.get('year'),
        )
        return jsonify(profile.to_dict()), 201

    @app.route('/api/users/pending', methods=['GET'])
    def pending_users():
        return jsonify([p.to_dict() for p in profiles.list_pending(resolve_caller())])

    @app.route('/api/users', methods=['GET'])
    def approved_users():
        return jsonify([p.to_dict() for p in profiles.list_approved(resolve_caller())])

    @app.route('/api/users/<profile_id>/approval', methods=['POST'])
    def update_user_approval(profile_id: str):
        data = _payload()
        profile = profiles.set_approval(
            resolve_caller(),
            profile_id,
            _required(data, 'is_approved'),
            reason=data.get('reason'),
        )
        return jsonify(profile.to_dict())

    # -- inventory ---------------------------------------------------------

    @app.route('/api/equipment', methods=['GET'])
    def list_equipment():
        items = inventory.list_active(resolve_caller(), category=request.args.get('category'))
        return jsonify([e.to_dict() for e in items])

    @app.route('/api/equipment/categories', methods=['GET'])
    def equipment_categories():
        return jsonify(inventory.categories(resolve_caller()))

    @app.route('/api/equipment', methods=['POST'])
    def add_equipment():
        data = _payload()
        equipment = inventory.add_equipment(
            resolve_caller(),
            name=data.get('name'),
            category=data.get('category'),
            total_quantity=_required(data, 'total_quantity'),
            description=data.get('description'),
            is_active=data.get('is_active', True),
        )
        return jsonify(equipment.to_dict()), 201

    @app.route('/api/equipment/<equipment_id>', methods=['PATCH'])
    def update_equipment(equipment_id: str):
        update = EquipmentUpdate.from_json(_payload())
        equipment = inventory.update_equipment(resolve_caller(), equipment_id, update)
        return jsonify(equipment.to_dict())

    @app.route('/api/equipment/<equipment_id>/total', methods=['PUT'])
    def adjust_equipment_total(equipment_id: str):
        data = _payload()
        equipment = inventory.adjust_total(resolve_caller(), equipment_id, _required(data, 'total_quantity'))
        return jsonify(equipment.to_dict())

    # -- semesters -----------------------------------------------------------

    @app.route('/api/semesters', methods=['GET'])
    def list_semesters():
        return jsonify([s.to_dict() for s in semesters.list_all(resolve_caller())])

    @app.route('/api/semesters/active', methods=['GET'])
    def active_semester():
        semester = semesters.get_active(resolve_caller())
        return jsonify(semester.to_dict() if semester else None)

    @app.route('/api/semesters', methods=['POST'])
    def create_semester():
        data = _payload()
        semester = semesters.create(
            resolve_caller(),
            code=data.get('code'),
            name=data.get('name'),
            start_date=_required(data, 'start_date'),
            end_date=_required(data, 'end_date'),
            activate=data.get('activate', False),
        )
        return jsonify(semester.to_dict()), 201

    @app.route('/api/semesters/<semester_id>', methods=['PATCH'])
    def update_semester(semester_id: str):
        update = SemesterUpdate.from_json(_payload())
        semester = semesters.update(resolve_caller(), semester_id, update)
        return jsonify(semester.to_dict())

    @app.route('/api/semesters/<semester_id>/activate', methods=['POST'])
    def activate_semester(semester_id: str):
        return jsonify(semesters.set_active(resolve_caller(), semester_id).to_dict())

    # -- requests ------------------------------------------------------------

    @app.route('/api/requests', methods=['POST'])
    def submit_request():
        data = _payload()
        rental_request = requests_workflow.submit(
            resolve_caller(),
            equipment_id=_required(data, 'equipment_id'),
            semester_id=_required(data, 'semester_id'),
            quantity=_required(data, 'quantity'),
        )
        return jsonify(rental_request.to_dict()), 201

    @app.route('/api/requests/mine', methods=['GET'])
    def my_requests():
        return jsonify([r.to_dict() for r in requests_workflow.list_mine(resolve_caller())])

    @app.route('/api/requests', methods=['GET'])
    def all_requests():
        items = requests_workflow.list_all(resolve_caller(), status=request.args.get('status'))
        return jsonify([r.to_dict() for r in items])

    @app.route('/api/requests/pending/count', methods=['GET'])
    def pending_requests_count():
        return jsonify({'count': requests_workflow.pending_count(resolve_caller())})

    @app.route('/api/requests/<request_id>/review', methods=['POST'])
    def review_request(request_id: str):
        data = _payload()
        result = requests_workflow.review(
            resolve_caller(),
            request_id,
            _required(data, 'decision'),
            reason=data.get('reason'),
            due_date=data.get('due_date'),
        )
        return jsonify({
            'request': result.request.to_dict(),
            'rental': result.rental.to_dict() if result.rental else None,
        })

    # -- rentals ---------------------------------------------------------------

    @app.route('/api/rentals', methods=['POST'])
    def create_direct_rental():
        data = _payload()
        rental = rentals.create_direct(
            resolve_caller(),
            student_id=_required(data, 'student_id'),
            equipment_id=_required(data, 'equipment_id'),
            semester_id=_required(data, 'semester_id'),
            quantity=_required(data, 'quantity'),
            due_date=data.get('due_date'),
        )
        return jsonify(rental.to_dict()), 201

    @app.route('/api/rentals/mine', methods=['GET'])
    def my_rentals():
        return jsonify([s.to_dict() for s in rentals.list_mine(resolve_caller())])

    @app.route('/api/rentals', methods=['GET'])
    def all_rentals():
        return jsonify([s.to_dict() for s in rentals.list_all(resolve_caller())])

    @app.route('/api/rentals/overdue', methods=['GET'])
    def overdue_rentals():
        return jsonify([s.to_dict() for s in rentals.list_overdue(resolve_caller())])

    @app.route('/api/rentals/overdue/count', methods=['GET'])
    def overdue_rentals_count():
        return jsonify({'count': rentals.overdue_count(resolve_caller())})

    @app.route('/api/rentals/<rental_id>/return', methods=['POST'])
    def return_rental(rental_id: str):
        data = _payload()
        rental = rentals.process_return(resolve_caller(), rental_id, late_fee=data.get('late_fee'))
        return jsonify(rental.to_dict())

    # -- audit and dashboard -------------------------------------------------

    @app.route('/api/transactions', methods=['GET'])
    def transaction_history():
        entries = audit.history(
            resolve_caller(),
            action_type=request.args.get('action_type'),
            actor_id=request.args.get('actor_id'),
            limit=request.args.get('limit'),
        )
        return jsonify([e.to_dict() for e in entries])

    @app.route('/api/transactions/mine', methods=['GET'])
    def my_transaction_history():
        entries = audit.my_history(resolve_caller(), limit=request.args.get('limit'))
        return jsonify([e.to_dict() for e in entries])

    @app.route('/api/dashboard/stats', methods=['GET'])
    def dashboard_stats():
        return jsonify(dashboard.stats(resolve_caller()).to_dict())

    return app


if __name__ == '__main__':
    application = create_app()
    with application.app_context():
        db.create_all()
    application.run(debug=True)
