"""Service layer package for encapsulating business logic."""

from .errors import RentalServiceError  # noqa: F401
from .auth import AccessGuard, login_user, logout_user, login_required, resolve_caller  # noqa: F401
from .audit import AuditLog  # noqa: F401
from .inventory import InventoryLedger  # noqa: F401
from .semesters import SemesterRegistry  # noqa: F401
from .rentals import RentalWorkflow, project_overdue_status  # noqa: F401
from .requests import RequestWorkflow  # noqa: F401
from .profiles import ProfileService  # noqa: F401
from .stats import DashboardService  # noqa: F401
from .updates import EquipmentUpdate, SemesterUpdate, UNSET  # noqa: F401
