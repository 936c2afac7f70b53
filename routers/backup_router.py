"""
Backup Router - journal exports: the scheduled daily file and the signed-in
user's own download
"""
import json
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import Response
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from auth_utils import AuthenticatedUser, get_current_user
from config.settings import Settings
from crud.journal import JournalRepository
from database import get_db
from database_models import utc_now
from routers.cron_router import check_cron_authorization
from routers.dependencies import get_settings
from services.backup_service import BackupService, BackupUserNotFound
from utils.responses import error_response, success_response

logger = logging.getLogger(__name__)

backup_router = APIRouter(prefix="/api/backup", tags=["backup"])


@backup_router.get("")
async def download_backup(
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Download the caller's journal as edgeofict-backup-YYYY-MM-DD.json."""
    now = utc_now()
    try:
        backup = await BackupService(JournalRepository(db)).build_backup(user, now)
    except SQLAlchemyError as e:
        logger.error(f"[Backup] Export failed for user {user.id}: {e}")
        return error_response("Failed to export data. Please try again.", status=500, code="server")

    filename = f"edgeofict-backup-{now.date().isoformat()}.json"
    return Response(
        content=json.dumps(backup, indent=2),
        media_type="application/json",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@backup_router.get("/auto")
async def auto_backup(
    request: Request,
    settings: Settings = Depends(get_settings),
    db: AsyncSession = Depends(get_db),
):
    """Daily JSON export of the configured user's journal. Cron only."""
    denied = check_cron_authorization(request, settings.cron_secret)
    if denied is not None:
        return denied

    if not settings.backup_user_email:
        logger.error("[Backup] BACKUP_USER_EMAIL is not configured")
        return error_response("Backup user not configured", status=500, code="server")

    service = BackupService(JournalRepository(db), settings.backup_dir)
    try:
        outcome = await service.backup_user(settings.backup_user_email)
    except BackupUserNotFound:
        logger.error("[Backup] Backup user not found")
        return error_response("User not found", status=404, code="notFound")
    except (SQLAlchemyError, OSError) as e:
        logger.error(f"[Backup] Backup failed: {e}")
        return error_response("Backup failed", status=500, code="server")

    return success_response({"success": True, "message": "Backup created successfully", **outcome})
