from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_messaging_service
from db.database import get_db
from schemas.api import MessageItem, MessagingRequest, MessagingResponse
from services.messaging_service import DecryptedMessage, MessagingService

logger = logging.getLogger(__name__)
router = APIRouter()


def _item(message: DecryptedMessage) -> MessageItem:
    return MessageItem(
        id=message.id,
        sender_type=message.sender_type,
        message=message.message,
        is_read=message.is_read,
        created_at=message.created_at,
    )


@router.post("/messages", response_model=MessagingResponse)
async def anonymous_messaging(
    body: MessagingRequest,
    db: AsyncSession = Depends(get_db),
    service: MessagingService = Depends(get_messaging_service),
):
    """Load or send whistleblower messages for a tracking id."""
    try:
        if body.action == "load":
            messages = await service.load(db, body.tracking_id)
            return MessagingResponse(messages=[_item(m) for m in messages])

        sent = await service.send(db, body.tracking_id, body.message)
        return MessagingResponse(sent=_item(sent))
    except ValueError as exc:
        # Validation messages carry no report data.
        raise HTTPException(status_code=400, detail=str(exc))
