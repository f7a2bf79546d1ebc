"""Shared plumbing for the domain services."""
from __future__ import annotations

import datetime
from contextlib import contextmanager
from typing import Callable, Optional

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from models import as_utc, db
from .auth import AccessGuard
from .errors import RentalServiceError, StorageError


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class ServiceBase:
    """Holds the clock and guard, and wraps each operation in one unit of work."""

    def __init__(
        self,
        *,
        clock: Optional[Callable[[], datetime.datetime]] = None,
        guard: Optional[AccessGuard] = None,
    ):
        self.clock = clock or utcnow
        self.guard = guard or AccessGuard()

    def now(self) -> datetime.datetime:
        return as_utc(self.clock())

    @staticmethod
    def config(key, default=None):
        return current_app.config.get(key, default)

    @contextmanager
    def _transaction(self, label: str):
        """Commit everything done in the block, or roll all of it back.

        Guard lookups, state changes and the audit append share the session
        transaction, so a failure in any of them leaves no trace.
        """
        try:
            yield
            db.session.commit()
        except RentalServiceError:
            db.session.rollback()
            raise
        except SQLAlchemyError as exc:
            current_app.logger.exception('%s transaction failed: %s', label, exc)
            db.session.rollback()
            raise StorageError(f'{label} failed, please try again later.') from exc
