"""Command audit log -- one record per dispatched task."""

from __future__ import annotations

import logging
from datetime import datetime

from pydantic import BaseModel
from sqlalchemy import select

from foreman.storage.database import Database
from foreman.storage.models import CommandAudit

logger = logging.getLogger(__name__)


class AuditRecord(BaseModel):
    run_id: str
    command: str
    cwd: str
    started_at: datetime
    finished_at: datetime
    exit_code: int
    artifact_refs: list[str] = []


class AuditLog:
    """Append-only writer/reader for the command_audit table."""

    def __init__(self, database: Database) -> None:
        self._db = database

    async def append(self, record: AuditRecord) -> None:
        async with self._db.session() as session:
            session.add(CommandAudit(**record.model_dump()))
            await session.commit()
        logger.debug("Audited %s (run %s, exit %d)", record.command, record.run_id, record.exit_code)

    async def list(self, run_id: str | None = None, limit: int = 50) -> list[AuditRecord]:
        async with self._db.session() as session:
            q = select(CommandAudit).order_by(CommandAudit.started_at.desc()).limit(limit)
            if run_id:
                q = q.where(CommandAudit.run_id == run_id)
            result = await session.execute(q)
            return [
                AuditRecord(
                    run_id=row.run_id,
                    command=row.command,
                    cwd=row.cwd,
                    started_at=row.started_at,
                    finished_at=row.finished_at,
                    exit_code=row.exit_code,
                    artifact_refs=row.artifact_refs,
                )
                for row in result.scalars().all()
            ]
