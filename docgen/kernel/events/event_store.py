"""
Activity recorder for append-only audit logging of generation runs.

Recording is best-effort: a failure to write the audit trail is logged and
never fails the pipeline.
"""

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select, desc
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docgen.kernel.models.event_log import ActivityLog, ActivityType
from docgen.logging_config import get_logger

logger = get_logger(__name__)


class ActivityRecorder:
    """
    Writes ActivityLog rows in their own session.

    Usage:
        recorder = ActivityRecorder(session_maker)
        await recorder.record(
            ActivityType.GENERATION_STARTED,
            "Bulk generation started for document: Thesis",
            {"run_id": run.id, "document_id": document.id, "resume": False},
        )
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        *,
        enabled: bool = True,
    ):
        self.session_maker = session_maker
        self.enabled = enabled

    async def record(
        self,
        event_type: ActivityType,
        message: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> Optional[ActivityLog]:
        """
        Append one activity record.

        Returns the stored record, or None when recording is disabled or the
        write failed.
        """
        if not self.enabled:
            return None

        payload = self._serialize_payload(context or {})
        entry = ActivityLog(
            event_type=event_type.value,
            message=message,
            run_id=_as_uuid(payload.get("run_id")),
            document_id=_as_uuid(payload.get("document_id")),
            context=payload,
        )
        try:
            async with self.session_maker() as session:
                session.add(entry)
                await session.commit()
        except SQLAlchemyError as exc:
            logger.warning(
                "Activity record %s could not be stored: %s", event_type.value, exc,
            )
            return None
        return entry

    async def history(
        self,
        run_id: uuid.UUID,
        event_types: Optional[List[ActivityType]] = None,
        limit: int = 100,
    ) -> List[ActivityLog]:
        """Activity for one run, newest first."""
        query = select(ActivityLog).where(ActivityLog.run_id == run_id)
        if event_types:
            query = query.where(ActivityLog.event_type.in_([t.value for t in event_types]))
        query = query.order_by(desc(ActivityLog.created_at)).limit(limit)

        async with self.session_maker() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    def _serialize_payload(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Convert payload values to JSON-serializable types."""
        result = {}
        for key, value in payload.items():
            if isinstance(value, uuid.UUID):
                result[key] = str(value)
            elif isinstance(value, datetime):
                result[key] = value.isoformat()
            elif isinstance(value, dict):
                result[key] = self._serialize_payload(value)
            elif isinstance(value, list):
                result[key] = [
                    self._serialize_payload(v) if isinstance(v, dict)
                    else str(v) if isinstance(v, uuid.UUID)
                    else v.isoformat() if isinstance(v, datetime)
                    else v
                    for v in value
                ]
            else:
                result[key] = value
        return result


def _as_uuid(value: Any) -> Optional[uuid.UUID]:
    if value is None:
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None
