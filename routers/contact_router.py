"""
Contact Router - public contact form, rate limited per client IP
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from crud.journal import JournalRepository
from database import get_db
from utils.responses import error_response, success_response

logger = logging.getLogger(__name__)

contact_router = APIRouter(prefix="/api/contact", tags=["contact"])

CONTACT_LIMIT_PER_HOUR = 3


class ContactRequest(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    message: Optional[str] = None


async def contact_rate_limit(request: Request) -> None:
    await request.app.state.contact_limiter(request)


@contact_router.post("", dependencies=[Depends(contact_rate_limit)])
async def submit_contact(body: ContactRequest, db: AsyncSession = Depends(get_db)):
    name = (body.name or "").strip()
    email = (body.email or "").strip()
    message = (body.message or "").strip()
    if not name or not email or not message:
        return error_response("Name, email and message are required", status=400, code="validation")

    await JournalRepository(db).add_contact_message(name, email, message)
    await db.commit()
    logger.info("Contact message stored")
    return success_response({"success": True})
