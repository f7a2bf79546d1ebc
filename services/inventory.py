"""Equipment inventory and the quantity conservation rules."""
from __future__ import annotations

from typing import List, Optional

from flask import current_app
from sqlalchemy import case, select, update

from models import ActionType, Equipment, Role, db
from .audit import AuditLog
from .base import ServiceBase
from .errors import InsufficientStock, InvalidAdjustment, NotFound
from .updates import EquipmentUpdate
from .validation import optional_text, require_bool, require_int, require_quantity, require_text


class InventoryLedger(ServiceBase):
    """Owns ``available_quantity``.

    ``reserve`` and ``release`` run inside the caller's transaction and never
    commit on their own. Every change to the counters is a single
    conditional ``UPDATE``, so the stock check and the write happen in one
    statement and never act on a stale read. A zero row count means the
    condition failed; the row is then re-read only to pick the error.
    """

    def __init__(self, *, audit: Optional[AuditLog] = None, **kwargs):
        super().__init__(**kwargs)
        self.audit = audit or AuditLog(clock=self.clock, guard=self.guard)

    @staticmethod
    def _reload(equipment_id: str) -> Equipment:
        equipment = db.session.get(Equipment, equipment_id, populate_existing=True)
        if equipment is None:
            raise NotFound('Equipment not found.')
        return equipment

    def _lock(self, equipment_id: str) -> Equipment:
        stmt = (
            select(Equipment)
            .where(Equipment.id == equipment_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        equipment = db.session.execute(stmt).scalar_one_or_none()
        if equipment is None:
            raise NotFound('Equipment not found.')
        return equipment

    def reserve(self, equipment_id: str, quantity: int) -> Equipment:
        quantity = require_quantity(quantity)
        stmt = (
            update(Equipment)
            .where(
                Equipment.id == equipment_id,
                Equipment.is_active.is_(True),
                Equipment.available_quantity >= quantity,
            )
            .values(available_quantity=Equipment.available_quantity - quantity)
            .execution_options(synchronize_session=False)
        )
        if db.session.execute(stmt).rowcount == 0:
            equipment = self._reload(equipment_id)
            if not equipment.is_active:
                raise InsufficientStock(f'{equipment.name} is not available for rental.')
            raise InsufficientStock(
                f'Insufficient equipment available: {equipment.available_quantity} x {equipment.name} left.'
            )
        return self._reload(equipment_id)

    def release(self, equipment_id: str, quantity: int) -> Equipment:
        quantity = require_quantity(quantity)
        restored = Equipment.available_quantity + quantity
        stmt = (
            update(Equipment)
            .where(Equipment.id == equipment_id)
            .values(
                available_quantity=case(
                    (restored > Equipment.total_quantity, Equipment.total_quantity),
                    else_=restored,
                )
            )
            .execution_options(synchronize_session=False)
        )
        before = self._reload(equipment_id)
        if before.available_quantity + quantity > before.total_quantity:
            current_app.logger.warning(
                'Release of %s x %s would exceed total %s; clamping.',
                quantity, equipment_id, before.total_quantity,
            )
        db.session.execute(stmt)
        return self._reload(equipment_id)

    def _apply_total(self, equipment_id: str, new_total) -> Equipment:
        """Set the total and move ``available`` by the same delta."""
        new_total = require_int(new_total, 'total_quantity', minimum=None)
        if new_total < 0:
            raise InvalidAdjustment(f'total_quantity cannot be negative: {new_total}.')
        delta = new_total - Equipment.total_quantity
        stmt = (
            update(Equipment)
            .where(Equipment.id == equipment_id, Equipment.available_quantity + delta >= 0)
            .ordered_values(
                (Equipment.available_quantity, Equipment.available_quantity + delta),
                (Equipment.total_quantity, new_total),
            )
            .execution_options(synchronize_session=False)
        )
        if db.session.execute(stmt).rowcount == 0:
            equipment = self._reload(equipment_id)
            rented_out = equipment.total_quantity - equipment.available_quantity
            raise InvalidAdjustment(
                f'{rented_out} x {equipment.name} are rented out; total cannot drop to {new_total}.'
            )
        return self._reload(equipment_id)

    def adjust_total(self, caller_id: Optional[str], equipment_id: str, new_total) -> Equipment:
        with self._transaction('Adjust equipment total'):
            profile = self.guard.authorize(caller_id, Role.MEMBER)
            old_total = self._lock(equipment_id).total_quantity
            equipment = self._apply_total(equipment_id, new_total)
            self.audit.record(
                profile.id,
                ActionType.EQUIPMENT_UPDATED,
                f'Adjusted {equipment.name} total from {old_total} to {equipment.total_quantity}',
                target_id=equipment.id,
                metadata={'equipment_name': equipment.name, 'quantity': equipment.total_quantity},
            )
        current_app.logger.info('Equipment %s total adjusted to %s', equipment.id, equipment.total_quantity)
        return equipment

    def add_equipment(
        self,
        caller_id: Optional[str],
        *,
        name,
        category,
        total_quantity,
        description=None,
        is_active=True,
    ) -> Equipment:
        name = require_text(name, 'name', 120)
        category = require_text(category, 'category', 80)
        total = require_int(total_quantity, 'total_quantity')
        description = optional_text(description, 'description', 2000)
        is_active = require_bool(is_active, 'is_active')
        with self._transaction('Add equipment'):
            profile = self.guard.authorize(caller_id, Role.MEMBER)
            equipment = Equipment(
                name=name,
                category=category,
                description=description,
                total_quantity=total,
                available_quantity=total,
                is_active=is_active,
            )
            db.session.add(equipment)
            db.session.flush()
            self.audit.record(
                profile.id,
                ActionType.EQUIPMENT_ADDED,
                f'Added equipment: {name} ({total} units)',
                target_id=equipment.id,
                metadata={'equipment_name': name, 'quantity': total},
            )
        current_app.logger.info('Equipment %s added (%s units)', equipment.id, total)
        return equipment

    def update_equipment(self, caller_id: Optional[str], equipment_id: str, patch: EquipmentUpdate) -> Equipment:
        changes = patch.changes()
        with self._transaction('Update equipment'):
            profile = self.guard.authorize(caller_id, Role.MEMBER)
            equipment = self._lock(equipment_id)
            if 'total_quantity' in changes:
                equipment = self._apply_total(equipment_id, changes['total_quantity'])
            if 'name' in changes:
                equipment.name = require_text(changes['name'], 'name', 120)
            if 'category' in changes:
                equipment.category = require_text(changes['category'], 'category', 80)
            if 'description' in changes:
                equipment.description = optional_text(changes['description'], 'description', 2000)
            if 'is_active' in changes:
                equipment.is_active = require_bool(changes['is_active'], 'is_active')
            db.session.flush()
            self.audit.record(
                profile.id,
                ActionType.EQUIPMENT_UPDATED,
                f"Updated equipment: {equipment.name} ({', '.join(sorted(changes)) or 'no changes'})",
                target_id=equipment.id,
                metadata={'equipment_name': equipment.name},
            )
        current_app.logger.info('Equipment %s updated: %s', equipment.id, sorted(changes))
        return equipment

    def list_active(self, caller_id: Optional[str], category: Optional[str] = None) -> List[Equipment]:
        self.guard.authorize(caller_id)
        query = Equipment.query.filter_by(is_active=True)
        if category:
            query = query.filter_by(category=category)
        return query.order_by(Equipment.name).all()

    def categories(self, caller_id: Optional[str]) -> List[str]:
        self.guard.authorize(caller_id)
        rows = db.session.execute(
            select(Equipment.category).where(Equipment.is_active.is_(True)).distinct()
        ).scalars()
        return sorted(set(rows))
