"""Compliance audit trail for validation sessions.

Every mutating action goes through ``AuditLogger.log``. Writes use their own
database session, so an audit failure can neither roll back nor abort the
action that triggered it; failed entries are logged and kept in a bounded
buffer for reconciliation.
"""

from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Mapping, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from factcheck.database.models import ValidationAuditLog
from factcheck.repositories.audit_log_repository import AuditLogRepository
from factcheck.schemas.validation import AuditAction, TargetType
from factcheck.utils.logging import get_logger

LOGGER = get_logger(__name__)

UNKNOWN = "unknown"
_FAILURE_FIELDS = ("failed_at", "error")


@dataclass(frozen=True)
class RequestMeta:
    """Request provenance recorded with each entry."""

    ip_address: str = UNKNOWN
    user_agent: str = UNKNOWN

    @classmethod
    def from_headers(cls, headers: Mapping[str, str]) -> "RequestMeta":
        """Client IP from X-Forwarded-For (first hop), then X-Real-IP."""
        forwarded = headers.get("x-forwarded-for")
        ip_address = forwarded.split(",")[0].strip() if forwarded else None
        ip_address = ip_address or headers.get("x-real-ip") or UNKNOWN
        return cls(ip_address=ip_address, user_agent=headers.get("user-agent") or UNKNOWN)


SYSTEM_REQUEST = RequestMeta(ip_address="system", user_agent="factcheck-pipeline")


def cap_snapshot(value: Optional[str], max_chars: int) -> Optional[str]:
    if value is None:
        return None
    return value[:max_chars]


class AuditLogger:
    """Writes and reads the validation audit trail."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        snapshot_max_chars: int = 1000,
        failed_buffer_size: int = 1000,
    ):
        self.session_factory = session_factory
        self.snapshot_max_chars = snapshot_max_chars
        self.failed_entries: Deque[Dict[str, Any]] = deque(maxlen=failed_buffer_size)

    async def log(
        self,
        session_id: UUID,
        user_id: str,
        action: AuditAction,
        target_type: Optional[TargetType] = None,
        target_id: Optional[str] = None,
        previous_value: Optional[str] = None,
        new_value: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        request_meta: Optional[RequestMeta] = None,
    ) -> bool:
        """Record one action.

        Args:
            session_id: Session the action belongs to
            user_id: Acting user (or "system")
            action: Audited action kind
            target_type: What was acted on
            target_id: ID of the target
            previous_value: Snapshot before the change (capped)
            new_value: Snapshot after the change (capped)
            metadata: Free-form context
            request_meta: Client provenance

        Returns:
            True if the entry was stored; False if it went to ``failed_entries``
        """
        meta = request_meta or RequestMeta()
        entry = {
            "session_id": session_id,
            "user_id": user_id,
            "action": action.value,
            "target_type": target_type.value if target_type else None,
            "target_id": target_id,
            "previous_value": cap_snapshot(previous_value, self.snapshot_max_chars),
            "new_value": cap_snapshot(new_value, self.snapshot_max_chars),
            "extra_metadata": metadata,
            "ip_address": meta.ip_address,
            "user_agent": meta.user_agent,
        }

        try:
            await self._write(entry)
            return True
        except Exception as e:
            # Audit failures must not abort the audited action
            LOGGER.error(
                f"[AUDIT] Failed to record {action.value}: {e}",
                extra={"session_id": str(session_id), "action": action.value},
                exc_info=True
            )
            self.failed_entries.append({**entry, "failed_at": datetime.now(timezone.utc), "error": str(e)})
            return False

    async def history(self, session_id: UUID) -> List[ValidationAuditLog]:
        """Audit entries of a session, newest first."""
        async with self.session_factory() as db_session:
            return await AuditLogRepository(db_session).list_by_session(session_id)

    def drain_failed(self) -> List[Dict[str, Any]]:
        """Hand over and clear the failed entries for reconciliation."""
        entries = list(self.failed_entries)
        self.failed_entries.clear()
        return entries

    async def reconcile_failed(self) -> int:
        """Retry every buffered entry once.

        Entries that fail again go back into the buffer with the new error.

        Returns:
            Number of entries written
        """
        pending = self.drain_failed()
        written = 0
        for failed in pending:
            entry = {key: value for key, value in failed.items() if key not in _FAILURE_FIELDS}
            try:
                await self._write(entry)
                written += 1
            except Exception as e:
                LOGGER.error(
                    f"[AUDIT] Reconciliation of {entry['action']} failed again: {e}",
                    extra={"session_id": str(entry["session_id"]), "action": entry["action"]}
                )
                self.failed_entries.append({**failed, "error": str(e)})

        if pending:
            LOGGER.info(
                f"[AUDIT] Reconciled {written}/{len(pending)} buffered entries",
                extra={"still_failed": len(pending) - written}
            )
        return written

    async def _write(self, entry: Dict[str, Any]) -> None:
        async with self.session_factory() as db_session:
            await AuditLogRepository(db_session).create(**entry)
