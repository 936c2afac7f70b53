"""
Backup Service - JSON export of a user's trading journal, written daily
to disk by the cron job or downloaded on demand
"""
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

import aiofiles

from crud.journal import JournalRepository
from database_models import utc_now

logger = logging.getLogger(__name__)


class BackupUserNotFound(Exception):
    pass


def _row_to_dict(row) -> Dict[str, Any]:
    data = {}
    for column in row.__table__.columns:
        value = getattr(row, column.key)
        if isinstance(value, datetime):
            value = value.isoformat() + "Z"
        data[column.name] = value
    return data


class BackupService:
    """Scheduled runs write {backup_dir}/{user_id}/{YYYY-MM-DD}.json, overwriting same-day runs."""

    def __init__(self, repository: JournalRepository, backup_dir: Optional[str] = None):
        self.repository = repository
        self.backup_dir = Path(backup_dir) if backup_dir else None

    async def build_backup(self, user, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        The export document for one user: edges, logs and macro logs.

        Args:
            user: anything with ``id`` and ``email`` (an AuthUser row or the
                signed-in AuthenticatedUser)
        """
        now = now or utc_now()
        edges = await self.repository.list_edges(user.id)
        logs = await self.repository.list_logs(user.id)
        macro_logs = await self.repository.list_macro_logs(user.id)

        return {
            "exportedAt": now.isoformat() + "Z",
            "userId": user.id,
            "userEmail": user.email,
            "stats": {
                "totalEdges": len(edges),
                "totalLogs": len(logs),
                "totalMacroLogs": len(macro_logs),
            },
            "edges": [_row_to_dict(row) for row in edges],
            "logs": [_row_to_dict(row) for row in logs],
            "macroLogs": [_row_to_dict(row) for row in macro_logs],
        }

    async def backup_user(self, email: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Write the export for the user with this email to disk.

        Returns:
            Dict with the stored path and per-table counts

        Raises:
            BackupUserNotFound: no auth user has this email
        """
        now = now or utc_now()
        user = await self.repository.get_user_by_email(email)
        if user is None:
            raise BackupUserNotFound(email)

        backup = await self.build_backup(user, now)

        user_dir = self.backup_dir / user.id
        user_dir.mkdir(parents=True, exist_ok=True)
        path = user_dir / f"{now.date().isoformat()}.json"
        async with aiofiles.open(path, "w", encoding="utf-8") as f:
            await f.write(json.dumps(backup, indent=2))

        logger.info(f"Backup created successfully: {path}")
        return {"path": str(path), "stats": backup["stats"]}
