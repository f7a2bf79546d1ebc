"""Dashboard counters for club members."""
from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Optional

from models import Equipment, Rental, RentalRequest, RequestStatus, Role, UserProfile
from .base import ServiceBase
from .rentals import project_overdue_status


@dataclass(frozen=True)
class DashboardStats:
    total_equipment: int
    active_rentals: int
    pending_requests: int
    overdue_rentals: int
    total_students: int
    pending_users: int

    def to_dict(self):
        return asdict(self)


class DashboardService(ServiceBase):
    def stats(self, caller_id: Optional[str]) -> DashboardStats:
        self.guard.authorize(caller_id, Role.MEMBER)
        now = self.now()
        open_rentals = Rental.query.filter_by(is_returned=False).all()
        return DashboardStats(
            total_equipment=Equipment.query.filter_by(is_active=True).count(),
            active_rentals=len(open_rentals),
            pending_requests=RentalRequest.query.filter_by(status=RequestStatus.PENDING.value).count(),
            overdue_rentals=sum(1 for r in open_rentals if project_overdue_status(r, now).is_overdue),
            total_students=UserProfile.query.filter_by(role=Role.STUDENT.value, is_approved=True).count(),
            pending_users=UserProfile.query.filter_by(is_approved=False).count(),
        )
