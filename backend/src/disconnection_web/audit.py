from __future__ import annotations

from datetime import datetime, timezone

from .models import AuditAction, AuditItem
from .repositories import UtilityRepository
from .store import AuditRecord, PlannedAudit

UNKNOWN_ACTOR = "Unknown"


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def resolve_actor(name: str | None) -> str:
    if name is None:
        return UNKNOWN_ACTOR
    normalized = name.strip()
    return normalized or UNKNOWN_ACTOR


def to_audit_item(record: AuditRecord) -> AuditItem:
    return AuditItem(
        audit_id=record.audit_id,
        action=record.action,  # type: ignore[arg-type]
        performed_by=record.performed_by,
        details=record.details,
        timestamp=record.timestamp,
    )


class AuditTrailRecorder:
    """Builds audit rows for larger units of work, or appends them on their own.

    Rows from ``entry`` are written by whichever repository call carries them, so a
    failed audit write fails that whole call.
    """

    def __init__(self, repository: UtilityRepository) -> None:
        self._repository = repository

    def entry(
        self,
        action: AuditAction,
        actor: str | None,
        details: str,
        timestamp: datetime | None = None,
    ) -> PlannedAudit:
        return PlannedAudit(
            action=action,
            performed_by=resolve_actor(actor),
            details=details,
            timestamp=timestamp or _now_utc(),
        )

    def record(
        self,
        action: AuditAction,
        actor: str | None,
        details: str,
        timestamp: datetime | None = None,
    ) -> AuditRecord:
        return self._repository.append_audit(self.entry(action, actor, details, timestamp))

    def list_entries(self, limit: int | None = None) -> list[AuditItem]:
        return [to_audit_item(record) for record in self._repository.list_audit(limit)]
