"""Append-only audit trail of state-changing actions."""
from __future__ import annotations

from typing import List, Optional

from models import ActionType, AuditEntry, Role, db
from .base import ServiceBase
from .errors import InvalidInput


def _parse_action_type(value) -> ActionType:
    try:
        return ActionType(value)
    except ValueError as exc:
        raise InvalidInput(f'Unknown action type: {value}') from exc


class AuditLog(ServiceBase):
    """Writes entries inside the caller's transaction and serves history reads.

    No update or delete path exists. ``record`` only stages
    the row; the enclosing operation commits it together with the change it
    describes, or rolls both back.
    """

    def record(
        self,
        actor_id: str,
        action_type,
        details: str,
        *,
        target_id: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> AuditEntry:
        meta = {k: v for k, v in (metadata or {}).items() if v is not None} or None
        entry = AuditEntry(
            actor_id=actor_id,
            action_type=_parse_action_type(action_type).value,
            target_id=target_id,
            details=details,
            timestamp=self.now(),
            meta=meta,
        )
        db.session.add(entry)
        db.session.flush()
        return entry

    def _limit(self, limit, default_key: str, fallback: int) -> int:
        default = self.config(default_key, fallback)
        cap = self.config('AUDIT_MAX_LIMIT', 500)
        if limit is None:
            return min(default, cap)
        try:
            limit = int(limit)
        except (TypeError, ValueError) as exc:
            raise InvalidInput('limit must be an integer.') from exc
        if limit <= 0:
            raise InvalidInput('limit must be positive.')
        return min(limit, cap)

    def history(
        self,
        caller_id: Optional[str],
        *,
        action_type=None,
        actor_id: Optional[str] = None,
        limit=None,
    ) -> List[AuditEntry]:
        self.guard.authorize(caller_id, Role.MEMBER)
        query = AuditEntry.query
        if action_type:
            query = query.filter_by(action_type=_parse_action_type(action_type).value)
        if actor_id:
            query = query.filter_by(actor_id=actor_id)
        return (
            query.order_by(AuditEntry.timestamp.desc(), AuditEntry.id.desc())
            .limit(self._limit(limit, 'AUDIT_DEFAULT_LIMIT', 100))
            .all()
        )

    def my_history(self, caller_id: Optional[str], *, limit=None) -> List[AuditEntry]:
        profile = self.guard.authorize(caller_id)
        return (
            AuditEntry.query.filter_by(actor_id=profile.id)
            .order_by(AuditEntry.timestamp.desc(), AuditEntry.id.desc())
            .limit(self._limit(limit, 'MY_HISTORY_LIMIT', 50))
            .all()
        )
